#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from whatsapp_relay.config import get_settings
from whatsapp_relay.history import HistoryStore
from whatsapp_relay.runtime import create_history_repository


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _parse_fact(raw: str) -> tuple[str, str]:
    if "=" not in raw:
        raise argparse.ArgumentTypeError(f"expected name=value, got {raw!r}")
    name, value = raw.split("=", 1)
    name = name.strip()
    value = value.strip()
    if not name or not value:
        raise argparse.ArgumentTypeError(f"fact name and value must not be empty: {raw!r}")
    return name, value


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Write business facts (biz:<name> settings) to the configured history store "
            "and optionally reset user conversations."
        )
    )
    parser.add_argument(
        "--fact",
        dest="facts",
        type=_parse_fact,
        action="append",
        default=[],
        help="Business fact as name=value, e.g. opening_hours='9 to 5'. Repeatable.",
    )
    parser.add_argument(
        "--reset",
        dest="reset_ids",
        action="append",
        default=[],
        help="WhatsApp id whose conversation history should be hidden from now on. Repeatable.",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="Print the stored business facts after applying changes.",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = parse_args()

    if not args.facts and not args.reset_ids and not args.list:
        raise SystemExit("nothing to do: pass --fact, --reset or --list")

    store = HistoryStore(create_history_repository(get_settings()))
    if not store.enabled:
        raise SystemExit("history store is not configured (see GOOGLE_SHEETS_ID / HISTORY_STORE_BACKEND)")

    failures = 0
    try:
        for name, value in args.facts:
            if store.business_facts.set(name, value).ok:
                print(f"set biz:{name}")
            else:
                failures += 1
        for user_id in args.reset_ids:
            result = store.reset_conversation(user_id.strip())
            if result.ok and result.value is not None:
                print(f"reset {user_id} at {result.value.isoformat()}")
            else:
                failures += 1
        if args.list:
            for name, value in sorted(store.business_facts.all().value.items()):
                print(f"{name}: {value}")
    finally:
        store.close()

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
