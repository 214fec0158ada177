from __future__ import annotations

import logging

from aiogram import F, Router
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import BufferedInputFile, CallbackQuery, Message

from app.bot.keyboards import kb_back_home, kb_checkout, kb_connect, kb_plans
from app.bot.ui import text_checkout, text_outcome, text_plans, text_status
from app.services.bundle.builder import qr_png
from app.services.errors import UnknownPlanError
from app.services.provisioning.orchestrator import ProvisioningOrchestrator, ProvisionOutcome, Result
from app.services.provisioning.plans import get_plan

log = logging.getLogger(__name__)

router = Router()


class CheckoutFSM(StatesGroup):
    waiting_promo = State()


async def _send_outcome(message: Message, res: Result[ProvisionOutcome]) -> None:
    if not res.ok:
        await message.edit_text(f"⚠️ {res.message}", reply_markup=kb_back_home())
        return

    outcome = res.value
    await message.edit_text(
        text_outcome(outcome),
        reply_markup=kb_connect(outcome.bundle.import_deep_link),
        parse_mode="HTML",
    )
    qr_file = BufferedInputFile(qr_png(outcome.bundle.direct), filename="gramvpn.png")
    await message.answer_photo(photo=qr_file, caption="QR-код подписки для V2rayTun")


@router.callback_query(lambda c: c.data == "sub:trial")
async def on_trial(
    cb: CallbackQuery, orchestrator: ProvisioningOrchestrator, log_extra: dict | None = None
) -> None:
    log.info("trial_requested tg_id=%s", cb.from_user.id, extra=log_extra or {})
    await cb.answer("Создаю подключение…")
    await cb.message.edit_text("⏳ Подключаю серверы, это займёт несколько секунд…")
    res = await orchestrator.start_trial(cb.from_user.id, display_name=cb.from_user.full_name)
    await _send_outcome(cb.message, res)


@router.callback_query(lambda c: c.data == "sub:plans")
async def on_plans(cb: CallbackQuery, state: FSMContext, orchestrator: ProvisioningOrchestrator) -> None:
    await state.clear()
    plans = orchestrator.get_plans()
    await cb.message.edit_text(text_plans(plans), reply_markup=kb_plans(plans), parse_mode="HTML")
    await cb.answer()


@router.callback_query(F.data.startswith("sub:plan:"))
async def on_plan_chosen(cb: CallbackQuery, state: FSMContext) -> None:
    kind = cb.data.split(":", 2)[2]
    try:
        plan = get_plan(kind)
    except UnknownPlanError as e:
        await cb.answer(e.user_message, show_alert=True)
        return

    await state.set_data({"plan": plan.kind})
    await cb.message.edit_text(
        text_checkout(plan, plan.price_rub, None, 0),
        reply_markup=kb_checkout(price_rub=plan.price_rub),
        parse_mode="HTML",
    )
    await cb.answer()


@router.callback_query(lambda c: c.data == "sub:promo")
async def on_promo_prompt(cb: CallbackQuery, state: FSMContext) -> None:
    data = await state.get_data()
    if not data.get("plan"):
        await cb.answer("Сначала выбери тариф", show_alert=True)
        return
    await state.set_state(CheckoutFSM.waiting_promo)
    await cb.message.edit_text("🏷 Отправь промокод одним сообщением:", reply_markup=kb_back_home())
    await cb.answer()


@router.message(CheckoutFSM.waiting_promo)
async def on_promo_entered(message: Message, state: FSMContext, orchestrator: ProvisioningOrchestrator) -> None:
    data = await state.get_data()
    plan = get_plan(data["plan"])
    code = (message.text or "").strip().upper()

    check = await orchestrator.validate_promo_code(code)
    if not check.valid:
        await message.answer(f"⚠️ {check.message}\nПопробуй другой код или вернись назад.", reply_markup=kb_back_home())
        return
    if not orchestrator.ledger.is_applicable_to_plan(check.scope, plan.kind):
        await message.answer(
            "⚠️ Промокод не действует для выбранного тарифа.",
            reply_markup=kb_checkout(price_rub=plan.price_rub),
        )
        await state.set_state(None)
        return

    discount = int(check.discount_percent or 0)
    price = orchestrator.ledger.compute_discounted_price(plan.price_rub, discount)
    await state.set_state(None)
    await state.update_data(promo=check.code)
    await message.answer(
        text_checkout(plan, price, check.code, discount),
        reply_markup=kb_checkout(price_rub=price, with_promo_button=False),
        parse_mode="HTML",
    )


@router.callback_query(lambda c: c.data == "sub:buy")
async def on_buy(
    cb: CallbackQuery,
    state: FSMContext,
    orchestrator: ProvisioningOrchestrator,
    log_extra: dict | None = None,
) -> None:
    data = await state.get_data()
    plan_kind = data.get("plan")
    if not plan_kind:
        await cb.answer("Сначала выбери тариф", show_alert=True)
        return

    await state.clear()
    log.info("purchase_requested tg_id=%s plan=%s promo=%s", cb.from_user.id, plan_kind, data.get("promo"), extra=log_extra or {})
    await cb.answer("Оформляю подписку…")
    await cb.message.edit_text("⏳ Подключаю серверы, это займёт несколько секунд…")
    # payment collection is simulated: reaching this button counts as paid
    res = await orchestrator.create_subscription(
        cb.from_user.id,
        plan_kind,
        promo_code=data.get("promo"),
        display_name=cb.from_user.full_name,
    )
    await _send_outcome(cb.message, res)


@router.callback_query(lambda c: c.data == "sub:status")
async def on_status(cb: CallbackQuery, orchestrator: ProvisioningOrchestrator) -> None:
    res = await orchestrator.get_status(cb.from_user.id)
    if not res.ok:
        await cb.answer(res.message, show_alert=True)
        return
    await cb.message.edit_text(text_status(res.value), reply_markup=kb_back_home(), parse_mode="HTML")
    await cb.answer()
