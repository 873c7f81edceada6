from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from showsync.config_manager import ConfigManager
from showsync.errors import ShowSyncError
from showsync.files import write_text_atomic
from showsync.state_store import StateStore
from showsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def _read_entries(path: Path) -> list[dict]:
    if not path.exists():
        return []
    data = json.loads(path.read_text(encoding="utf-8") or "[]")
    if isinstance(data, dict):
        data = data.get("entries", [])
    return list(data)


def _write_entries(path: Path, entries: list[dict]) -> None:
    write_text_atomic(path, json.dumps(entries, indent=4, ensure_ascii=False) + "\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="showsync")
    parser.add_argument("--config", default=os.getenv("SHOWSYNC_CONFIG", "config.yaml"))
    parser.add_argument("--log-level", default=os.getenv("SHOWSYNC_LOG_LEVEL", "INFO"))
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="reconcile a calendar export into the scheduler entry list")
    sync.add_argument("calendar", type=Path, help="ICS file")
    sync.add_argument("schedule", type=Path, help="scheduler entry list (JSON)")
    sync.add_argument("--dry-run", action="store_true")

    adopt = commands.add_parser("adopt", help="seed an empty manifest from the scheduler entry list")
    adopt.add_argument("schedule", type=Path)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=str(args.log_level).upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config_manager = ConfigManager(args.config)
    try:
        config = config_manager.load()
    except ShowSyncError as exc:
        logger.error("Cannot load %s: %s [%s]", args.config, exc, exc.code)
        return 2
    engine = SyncEngine(config_manager, StateStore(config.sync.state_db))

    if args.command == "adopt":
        manifest, entries = engine.adopt(_read_entries(args.schedule))
        _write_entries(args.schedule, entries)
        print(f"Adopted {len(manifest['events'])} events")
        return 0

    result = engine.run_once(
        args.calendar.read_bytes(),
        _read_entries(args.schedule),
        trigger="cli",
        dry_run=True if args.dry_run else None,
    )
    print(json.dumps(result.to_dict(), indent=2))
    if result.status != "success":
        return 1
    if not result.dry_run:
        _write_entries(args.schedule, result.entries)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
