from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from app.services.provisioning.plans import Plan


def kb_main(*, trial_available: bool = True) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    if trial_available:
        b.button(text="🎁 Пробный период 3 дня", callback_data="sub:trial")
    b.button(text="💳 Тарифы", callback_data="sub:plans")
    b.button(text="📊 Моя подписка", callback_data="sub:status")
    b.button(text="👥 Пригласить друга", callback_data="ref:stats")
    b.adjust(1)
    return b.as_markup()


def kb_back_home() -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="⬅️ Назад", callback_data="nav:home")
    b.adjust(1)
    return b.as_markup()


def kb_plans(plans: list[Plan]) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    for p in plans:
        b.button(text=f"{p.title} — {p.price_rub} ₽", callback_data=f"sub:plan:{p.kind}")
    b.button(text="⬅️ Назад", callback_data="nav:home")
    b.adjust(1)
    return b.as_markup()


def kb_checkout(*, price_rub: int, with_promo_button: bool = True) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    label = "✅ Получить бесплатно" if price_rub == 0 else f"✅ Оплатить {price_rub} ₽"
    b.button(text=label, callback_data="sub:buy")
    if with_promo_button:
        b.button(text="🏷 Ввести промокод", callback_data="sub:promo")
    b.button(text="⬅️ К тарифам", callback_data="sub:plans")
    b.adjust(1)
    return b.as_markup()


def kb_connect(import_link: str) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="📲 Открыть в V2rayTun", url=import_link)
    b.button(text="⬅️ В меню", callback_data="nav:home")
    b.adjust(1)
    return b.as_markup()
