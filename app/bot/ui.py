from __future__ import annotations

from html import escape

from app.core.time import fmt_dt_msk
from app.services.provisioning.orchestrator import ProvisionOutcome, StatusInfo
from app.services.provisioning.plans import TRIAL, Plan


def text_home(status: StatusInfo | None) -> str:
    if status is None:
        line = "📊 Подписка: статус недоступен"
    elif status.active:
        kind = "пробный период" if status.subscription_kind == TRIAL else status.subscription_kind
        line = f"📊 Подписка: <b>{kind}</b>, осталось <b>{status.days_remaining}</b> дн."
    else:
        line = "📊 Подписка: нет активной"
    return "🏠 <b>Главное меню</b>\n" + line


def text_plans(plans: list[Plan]) -> str:
    rows = [f"• {p.title}: <b>{p.price_rub} ₽</b> ({p.duration_days} дн.)" for p in plans]
    return "💳 <b>Тарифы GramVPN</b>\n\n" + "\n".join(rows)


def text_checkout(plan: Plan, price_rub: int, promo: str | None, discount: int) -> str:
    lines = [f"Тариф: <b>{plan.title}</b> ({plan.duration_days} дн.)"]
    if promo:
        lines.append(f"Промокод <code>{escape(promo)}</code>: скидка {discount}%")
        lines.append(f"Цена: <s>{plan.price_rub} ₽</s> <b>{price_rub} ₽</b>")
    else:
        lines.append(f"Цена: <b>{price_rub} ₽</b>")
    return "\n".join(lines)


def text_outcome(outcome: ProvisionOutcome) -> str:
    sub = outcome.subscription
    return (
        f"{escape(outcome.message)}\n\n"
        f"Действует до: <b>{fmt_dt_msk(sub.end_at)}</b>\n"
        f"Серверов в подписке: <b>{outcome.servers_used}</b>\n\n"
        f"Ссылка на подписку:\n<code>{escape(outcome.bundle.direct)}</code>"
    )


def text_status(status: StatusInfo) -> str:
    if not status.active:
        return "📊 <b>Моя подписка</b>\n\nАктивной подписки нет."
    kind = "пробный период" if status.subscription_kind == TRIAL else status.subscription_kind
    text = (
        "📊 <b>Моя подписка</b>\n\n"
        f"Тариф: <b>{kind}</b>\n"
        f"До: <b>{fmt_dt_msk(status.end_at)}</b>\n"
        f"Осталось: <b>{status.days_remaining}</b> дн."
    )
    if status.subscription_link:
        text += f"\n\nСсылка на подписку:\n<code>{escape(status.subscription_link)}</code>"
    return text
