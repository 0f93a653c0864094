from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Sequence

from rental_sync.common.db import dispose_engines, run_alembic_upgrade
from rental_sync.config import ConfigError, get_config


def _run_server(args: argparse.Namespace) -> int:
    import uvicorn

    from rental_sync.api.main import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


async def _run_sync(site_id: str) -> int:
    from rental_sync.api.main import build_services

    services = build_services(get_config())
    try:
        status = await services.engine.run(site_id)
    finally:
        await services.engine.session.close()
        await dispose_engines()
    print(json.dumps({key: status[key] for key in ("status", "message", "lastResult")}, ensure_ascii=False, default=str))
    return 0 if status.get("status") == "success" else 1


async def _run_offline_sync(site_id: str) -> int:
    from rental_sync.api.main import build_services

    services = build_services(get_config())
    try:
        status = await services.offline.run_sync(site_id)
    finally:
        await dispose_engines()
    print(json.dumps(status.as_dict(), ensure_ascii=False, default=str))
    return 1 if status.last_error else 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rental_sync", description="Vendor order synchronization")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server_parser = subparsers.add_parser("server", help="Serve the HTTP API and run the schedulers")
    server_parser.add_argument("--host", default="0.0.0.0")
    server_parser.add_argument("--port", type=int, default=8000)

    sync_parser = subparsers.add_parser("sync", help="Scrape one site once and exit")
    sync_parser.add_argument("--site-id", dest="site_id", required=True)

    offline_parser = subparsers.add_parser("offline-sync", help="Run offline reconciliation once for a site")
    offline_parser.add_argument("--site-id", dest="site_id", required=True)

    upgrade_parser = subparsers.add_parser("db-upgrade", help="Apply Alembic migrations")
    upgrade_parser.add_argument("--revision", default="head")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    parsed = parser.parse_args(list(argv) if argv is not None else sys.argv[1:])

    try:
        if parsed.command == "server":
            return _run_server(parsed)
        if parsed.command == "sync":
            return asyncio.run(_run_sync(parsed.site_id))
        if parsed.command == "offline-sync":
            return asyncio.run(_run_offline_sync(parsed.site_id))
        if parsed.command == "db-upgrade":
            run_alembic_upgrade(get_config().database_url, parsed.revision)
            return 0
    except ConfigError as exc:
        print(f"[rental_sync] configuration error: {exc}", file=sys.stderr)
        return 2

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
