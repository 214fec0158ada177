import logging

from aiogram import Bot, Dispatcher
from aiogram.fsm.storage.memory import MemoryStorage

from app.bot.handlers.referrals import router as referrals_router
from app.bot.handlers.start import router as start_router
from app.bot.handlers.subscription import router as subscription_router
from app.bot.middlewares import CorrelationIdMiddleware, RateLimitMiddleware
from app.core.config import settings
from app.services.provisioning.orchestrator import ProvisioningOrchestrator

log = logging.getLogger(__name__)


def build_dispatcher(orchestrator: ProvisioningOrchestrator) -> Dispatcher:
    dp = Dispatcher(storage=MemoryStorage())
    # handlers receive it as the `orchestrator` argument
    dp["orchestrator"] = orchestrator
    dp.message.middleware(CorrelationIdMiddleware())
    dp.callback_query.middleware(CorrelationIdMiddleware())
    dp.callback_query.middleware(RateLimitMiddleware(min_interval_sec=1.0))

    dp.include_router(start_router)
    dp.include_router(subscription_router)
    dp.include_router(referrals_router)
    return dp


async def run_bot(orchestrator: ProvisioningOrchestrator) -> None:
    bot = Bot(token=settings.bot_token)
    dp = build_dispatcher(orchestrator)
    log.info("bot_start")
    await dp.start_polling(bot)
