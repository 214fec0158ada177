from __future__ import annotations

import argparse
import asyncio
import json

from app.core.config import settings
from app.core.logging import setup_logging
from app.db.session import init_engine, session_scope
from app.repo import list_all_servers, list_enabled_servers
from app.services.gateway.client import build_gateway_client
from app.services.gateway.prober import FleetProber
from app.services.gateway.selector import pick_optimal


async def main() -> None:
    parser = argparse.ArgumentParser(description="Log in to every panel and report which ones answer")
    parser.add_argument("--all", action="store_true", help="include disabled servers")
    args = parser.parse_args()

    setup_logging(settings.log_level)
    if not settings.database_url:
        raise SystemExit("DATABASE_URL is missing")
    init_engine(settings.database_url)

    async with session_scope() as session:
        servers = await (list_all_servers(session) if args.all else list_enabled_servers(session))

    if not servers:
        raise SystemExit("No servers in DB. Add one with app.scripts.add_server first.")

    reachable = await FleetProber(build_gateway_client(settings)).probe(servers)
    ok_ids = {s.id for s in reachable}
    best = pick_optimal(reachable) if reachable else None

    print(
        json.dumps(
            {
                "servers": [
                    {
                        "id": s.id,
                        "name": s.label,
                        "enabled": s.status,
                        "active_subscribers": s.active_subscribers,
                        "reachable": s.id in ok_ids,
                    }
                    for s in servers
                ],
                "least_loaded": best.label if best else None,
            },
            ensure_ascii=False,
            indent=2,
        )
    )


if __name__ == "__main__":
    asyncio.run(main())
