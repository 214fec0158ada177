from __future__ import annotations

import argparse
import asyncio
import json
from datetime import datetime, timezone

from app.core.config import settings
from app.db.session import init_engine, session_scope
from app.repo import insert_promo_code


async def main() -> None:
    parser = argparse.ArgumentParser(description="Create a promo code")
    parser.add_argument("code")
    parser.add_argument("--discount", type=int, required=True, help="percent, 0..100")
    parser.add_argument("--valid-for", default="all", help='"all", a plan, or "90days,365days"')
    parser.add_argument("--max-usage", type=int, default=None)
    parser.add_argument("--one-time", action="store_true")
    parser.add_argument("--expires", default=None, help="ISO date, UTC")
    args = parser.parse_args()

    if not 0 <= args.discount <= 100:
        raise SystemExit("--discount must be within 0..100")
    expires_at = None
    if args.expires:
        expires_at = datetime.fromisoformat(args.expires)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

    if not settings.database_url:
        raise SystemExit("DATABASE_URL is missing")
    init_engine(settings.database_url)

    async with session_scope() as session:
        promo = await insert_promo_code(
            session,
            code=args.code,
            discount_percent=args.discount,
            valid_for=args.valid_for,
            max_usage=args.max_usage,
            is_one_time=args.one_time,
            expires_at=expires_at,
        )
        await session.commit()

    print(json.dumps({"id": promo.id, "code": promo.code, "discount_percent": promo.discount_percent}))


if __name__ == "__main__":
    asyncio.run(main())
