from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import router
from .config import Settings, get_settings, runtime_secret_issues
from .runtime import RelayRuntime

logger = logging.getLogger(__name__)


def _configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(settings.log_level)
    logging.getLogger("whatsapp_relay").setLevel(level if isinstance(level, int) else logging.INFO)


def create_app(settings: Settings | None = None, runtime: RelayRuntime | None = None) -> FastAPI:
    settings = settings or (runtime.settings if runtime is not None else get_settings())
    _configure_logging(settings)

    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set the missing secrets or relax WHATSAPP_SIGNATURE_MODE."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    relay_runtime = runtime or RelayRuntime.build(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        relay_runtime.initialize()
        try:
            yield
        finally:
            relay_runtime.close()

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.docs_enabled else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.docs_enabled else None,
    )
    app.state.runtime = relay_runtime
    app.include_router(router, prefix=settings.api_prefix.rstrip("/"))
    return app


app = create_app()
