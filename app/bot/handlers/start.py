from __future__ import annotations

import logging

from aiogram import Router
from aiogram.filters import CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, Message

from app.bot.keyboards import kb_main
from app.bot.ui import text_home
from app.services.provisioning.orchestrator import ProvisioningOrchestrator

log = logging.getLogger(__name__)

router = Router()


def _referral_code(text: str | None) -> str | None:
    # /start ref_<CODE>
    parts = (text or "").split(maxsplit=1)
    if len(parts) != 2:
        return None
    payload = parts[1].strip()
    if not payload.startswith("ref_"):
        return None
    return payload[len("ref_") :].strip().upper() or None


async def _home(orchestrator: ProvisioningOrchestrator, tg_id: int) -> tuple[str, bool]:
    status = await orchestrator.get_status(tg_id)
    info = status.value if status.ok else None
    return text_home(info), not (info and info.active)


@router.message(CommandStart())
async def cmd_start(message: Message, state: FSMContext, orchestrator: ProvisioningOrchestrator) -> None:
    tg_id = message.from_user.id
    await state.clear()

    res = await orchestrator.get_or_create_user(
        tg_id,
        display_name=message.from_user.full_name,
        referral_code=_referral_code(message.text),
    )
    if not res.ok:
        await message.answer(res.message)
        return

    await message.answer(
        "Привет! 👋\n\n"
        "GramVPN подключает сразу все наши локации одной ссылкой.\n"
        "Начни с бесплатного пробного периода или выбери тариф."
    )
    text, trial_button = await _home(orchestrator, tg_id)
    await message.answer(text, reply_markup=kb_main(trial_available=trial_button), parse_mode="HTML")


@router.callback_query(lambda c: c.data == "nav:home")
async def on_home(cb: CallbackQuery, state: FSMContext, orchestrator: ProvisioningOrchestrator) -> None:
    await state.clear()
    text, trial_button = await _home(orchestrator, cb.from_user.id)
    await cb.message.edit_text(text, reply_markup=kb_main(trial_available=trial_button), parse_mode="HTML")
    await cb.answer()
