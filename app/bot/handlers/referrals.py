from __future__ import annotations

from aiogram import Router
from aiogram.types import CallbackQuery

from app.bot.keyboards import kb_back_home
from app.services.provisioning.orchestrator import ProvisioningOrchestrator

router = Router()


@router.callback_query(lambda c: c.data == "ref:stats")
async def on_ref_stats(cb: CallbackQuery, orchestrator: ProvisioningOrchestrator) -> None:
    tg_id = cb.from_user.id
    user_res = await orchestrator.get_or_create_user(tg_id, display_name=cb.from_user.full_name)
    stats_res = await orchestrator.get_referral_stats(tg_id)
    if not user_res.ok or not stats_res.ok:
        await cb.answer((user_res.message if not user_res.ok else stats_res.message), show_alert=True)
        return

    me = await cb.bot.me()
    link = f"https://t.me/{me.username}?start=ref_{user_res.value.ref_code}"
    stats = stats_res.value
    await cb.message.edit_text(
        "👥 <b>Пригласи друга</b>\n\n"
        f"Твоя ссылка:\n<code>{link}</code>\n\n"
        f"Приглашено: <b>{stats.referrals_count}</b>\n"
        f"Бонусных дней: <b>{stats.bonus_days_earned}</b>",
        reply_markup=kb_back_home(),
        parse_mode="HTML",
    )
    await cb.answer()
