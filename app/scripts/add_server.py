from __future__ import annotations

import argparse
import asyncio
import json

from app.core.config import settings
from app.core.logging import setup_logging
from app.db.session import init_engine, session_scope
from app.repo import insert_server
from app.services.gateway.client import build_gateway_client
from app.services.gateway.secrets import encrypt_panel_password


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Register a 3x-ui panel as a gateway server")
    p.add_argument("--name", required=True, help="server_name, e.g. nl-1")
    p.add_argument("--ip", required=True, help="public address used in share links")
    p.add_argument("--country", default="")
    p.add_argument("--api-url", required=True, help="panel base url, e.g. https://1.2.3.4:2053/path")
    p.add_argument("--username", required=True)
    p.add_argument("--password", required=True)
    p.add_argument("--inbound-id", type=int, required=True)
    p.add_argument("--port", type=int, default=443)
    p.add_argument("--sni", default=None)
    p.add_argument("--public-key", default=None)
    p.add_argument("--short-id", default=None)
    p.add_argument("--flow", default="xtls-rprx-vision")
    p.add_argument("--disabled", action="store_true")
    p.add_argument("--no-probe", action="store_true", help="skip the login check")
    return p


async def main() -> None:
    args = _parser().parse_args()
    setup_logging(settings.log_level)
    if not settings.database_url:
        raise SystemExit("DATABASE_URL is missing")
    init_engine(settings.database_url)

    async with session_scope() as session:
        server = await insert_server(
            session,
            server_name=args.name,
            server_ip=args.ip,
            country=args.country,
            status=not args.disabled,
            xui_api_url=args.api_url.rstrip("/"),
            xui_username=args.username,
            xui_password=encrypt_panel_password(args.password, settings.panel_secret_key),
            inbound_id=args.inbound_id,
            server_port=args.port,
            vless_sni=args.sni,
            vless_public_key=args.public_key,
            vless_sid=args.short_id,
            vless_flow=args.flow,
        )
        await session.commit()

    reachable = None
    if not args.no_probe:
        reachable = await build_gateway_client(settings).test_reachability(server)

    print(json.dumps({"id": server.id, "server_name": server.server_name, "reachable": reachable}, ensure_ascii=False))


if __name__ == "__main__":
    asyncio.run(main())
