from __future__ import annotations

import argparse
import logging
import os

import uvicorn

from calsync.config_manager import ConfigManager
from calsync.state_store import StateStore
from calsync.sync_engine import SyncEngine


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="calsync", description="Sync an iCalendar feed into a CalDAV calendar")
    parser.add_argument("--config", default=os.getenv("CALSYNC_CONFIG_PATH", "config.yaml"))
    parser.add_argument("--state", default=os.getenv("CALSYNC_STATE_PATH", "data/state.db"))
    parser.add_argument("--log-level", default=os.getenv("CALSYNC_LOG_LEVEL", "INFO"))
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the admin API and the background scheduler")
    sync_parser = subparsers.add_parser("sync", help="Run one sync pass")
    sync_parser.add_argument("--dry-run", action="store_true", help="Show changes without modifying the calendar")
    subparsers.add_parser("fetch", help="List synced events currently in the calendar")
    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "serve"
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "serve":
        os.environ["CALSYNC_CONFIG_PATH"] = args.config
        os.environ["CALSYNC_STATE_PATH"] = args.state
        host = os.getenv("CALSYNC_HOST", "0.0.0.0")
        port = int(os.getenv("CALSYNC_PORT", "8080"))
        uvicorn.run("calsync.web_admin:create_app", factory=True, host=host, port=port, reload=False)
        return 0

    engine = SyncEngine(ConfigManager(args.config), StateStore(args.state))
    if args.command == "fetch":
        for event in engine.fetch():
            print(event)
        return 0

    result = engine.run_once(trigger="cli", dry_run=True if args.dry_run else None)
    print(result.message)
    return 0 if result.status == "success" else 1


if __name__ == "__main__":
    raise SystemExit(main())
