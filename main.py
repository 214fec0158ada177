"""
GramVPN bot entrypoint.

Required env vars:
 - BOT_TOKEN
 - DATABASE_URL (postgres://... in production, sqlite+aiosqlite://... for local runs)
Optional: GATEWAY_MODE (xui|fake), PANEL_SECRET_KEY, SUBSCRIPTION_BASE_URL, LOG_LEVEL
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import sys

from app.bot.app import run_bot
from app.core.config import settings
from app.core.logging import setup_logging
from app.db.session import dispose_engine, init_engine, session_scope
from app.services.bundle.builder import BundleBuilder
from app.services.gateway.client import build_gateway_client
from app.services.promo.ledger import PromoLedger
from app.services.provisioning.orchestrator import ProvisioningOrchestrator

log = logging.getLogger(__name__)


def _run_alembic_upgrade_head() -> None:
    subprocess.check_call([sys.executable, "-m", "alembic", "upgrade", "head"])
    log.info("alembic_upgrade_head_done")


def build_orchestrator() -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(
        session_scope,
        build_gateway_client(settings),
        bundle_builder=BundleBuilder.from_settings(settings),
        ledger=PromoLedger(referral_bonus_days=settings.referral_bonus_days),
        trial_days=settings.trial_days,
    )


async def main() -> None:
    setup_logging(settings.log_level)
    settings.require_runtime()
    init_engine(settings.database_url)
    _run_alembic_upgrade_head()

    log.info("gateway_mode mode=%s", settings.gateway_mode)
    try:
        await run_bot(build_orchestrator())
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
