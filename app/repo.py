from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.time import ensure_aware, utcnow
from app.db.models import GatewayServer, Payment, PromoCode, ReferralBonus, Subscription, User

log = logging.getLogger(__name__)


# ---- users -------------------------------------------------------------------


async def get_user_by_tg_id(session: AsyncSession, tg_id: int) -> User | None:
    return await session.scalar(select(User).where(User.tg_id == tg_id).limit(1))


async def get_user_by_ref_code(session: AsyncSession, ref_code: str) -> User | None:
    code = (ref_code or "").strip().upper()
    if not code:
        return None
    return await session.scalar(select(User).where(User.ref_code == code).limit(1))


async def ref_code_exists(session: AsyncSession, ref_code: str) -> bool:
    found = await session.scalar(select(User.id).where(User.ref_code == ref_code).limit(1))
    return found is not None


async def insert_user(
    session: AsyncSession,
    *,
    tg_id: int,
    ref_code: str,
    display_name: str | None = None,
    referred_by_user_id: int | None = None,
) -> User:
    user = User(
        tg_id=tg_id,
        display_name=(display_name or None),
        ref_code=ref_code,
        referred_by_user_id=referred_by_user_id,
        subscription_active=False,
    )
    session.add(user)
    await session.flush()
    return user


async def update_user_subscription(
    session: AsyncSession,
    user: User,
    *,
    active: bool,
    link: str | None,
) -> None:
    user.subscription_active = active
    user.subscription_link = link
    user.updated_at = utcnow()
    await session.flush()


# ---- subscriptions -----------------------------------------------------------


async def insert_subscription(
    session: AsyncSession,
    *,
    user_id: int,
    plan_kind: str,
    start_at: datetime,
    end_at: datetime,
    servers_used: int,
) -> Subscription:
    sub = Subscription(
        user_id=user_id,
        plan_kind=plan_kind,
        start_at=start_at,
        end_at=end_at,
        is_active=True,
        servers_used=servers_used,
    )
    session.add(sub)
    await session.flush()
    return sub


async def get_active_subscription(
    session: AsyncSession,
    user_id: int,
    *,
    now: datetime | None = None,
) -> Subscription | None:
    """Active subscription for the user, expiring stale rows on the way.

    There is no background sweeper: a row whose end_at has passed is flipped
    to inactive here, and the user's flag follows.
    """
    now = now or utcnow()
    q = (
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.is_active == True)  # noqa: E712
        .order_by(Subscription.id.desc())
    )
    rows = list((await session.scalars(q)).all())

    current: Subscription | None = None
    expired_any = False
    for sub in rows:
        if ensure_aware(sub.end_at) <= now:
            sub.is_active = False
            expired_any = True
            log.info("subscription_expired sub_id=%s user_id=%s", sub.id, user_id)
        elif current is None:
            current = sub

    if expired_any:
        if current is None:
            await session.execute(
                update(User).where(User.id == user_id).values(subscription_active=False, updated_at=now)
            )
        await session.flush()
    return current


async def get_subscription_by_kind(session: AsyncSession, user_id: int, plan_kind: str) -> Subscription | None:
    q = (
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.plan_kind == plan_kind)
        .order_by(Subscription.id.desc())
        .limit(1)
    )
    return await session.scalar(q)


# ---- servers -----------------------------------------------------------------


async def list_enabled_servers(session: AsyncSession) -> list[GatewayServer]:
    q = (
        select(GatewayServer)
        .where(GatewayServer.status == True)  # noqa: E712
        .order_by(GatewayServer.active_subscribers.asc(), GatewayServer.id.asc())
    )
    return list((await session.scalars(q)).all())


async def increment_server_subscribers(session: AsyncSession, server_ids: Iterable[int]) -> None:
    ids = list(server_ids)
    if not ids:
        return
    await session.execute(
        update(GatewayServer)
        .where(GatewayServer.id.in_(ids))
        .values(active_subscribers=GatewayServer.active_subscribers + 1)
        .execution_options(synchronize_session=False)
    )


# ---- payments ----------------------------------------------------------------


async def insert_payment(
    session: AsyncSession,
    *,
    user_id: int,
    amount: int,
    payment_method: str,
    subscription_id: int | None,
    promo_code_used: str | None = None,
    discount_applied: int = 0,
) -> Payment:
    payment = Payment(
        user_id=user_id,
        amount=int(amount),
        currency="RUB",
        payment_method=payment_method,
        subscription_id=subscription_id,
        promo_code_used=promo_code_used,
        discount_applied=int(discount_applied),
        paid_at=utcnow(),
    )
    session.add(payment)
    await session.flush()
    return payment


# ---- promo codes -------------------------------------------------------------


async def get_promo_code(session: AsyncSession, code: str) -> PromoCode | None:
    normalized = (code or "").strip().upper()
    if not normalized:
        return None
    q = select(PromoCode).where(func.upper(PromoCode.code) == normalized).limit(1)
    return await session.scalar(q)


async def increment_promo_usage(session: AsyncSession, promo_id: int) -> bool:
    """usage_count += 1 unless that would pass max_usage. False when capped."""
    res = await session.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promo_id,
            (PromoCode.max_usage.is_(None)) | (PromoCode.usage_count < PromoCode.max_usage),
        )
        .values(usage_count=PromoCode.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    return bool(res.rowcount)


async def promo_used_by_user(session: AsyncSession, user_id: int, code: str) -> bool:
    found = await session.scalar(
        select(Payment.id)
        .where(Payment.user_id == user_id, func.upper(Payment.promo_code_used) == code.strip().upper())
        .limit(1)
    )
    return found is not None


# ---- referral bonuses --------------------------------------------------------


async def insert_referral_bonus(
    session: AsyncSession,
    *,
    referrer_user_id: int,
    referred_user_id: int,
    bonus_days: int,
) -> ReferralBonus:
    bonus = ReferralBonus(
        referrer_user_id=referrer_user_id,
        referred_user_id=referred_user_id,
        bonus_days=int(bonus_days),
    )
    session.add(bonus)
    await session.flush()
    return bonus


async def get_referral_totals(session: AsyncSession, referrer_user_id: int) -> tuple[int, int]:
    """Returns (referrals_count, bonus_days_earned)."""
    row = (
        await session.execute(
            select(
                func.count(ReferralBonus.id),
                func.coalesce(func.sum(ReferralBonus.bonus_days), 0),
            ).where(ReferralBonus.referrer_user_id == referrer_user_id)
        )
    ).one()
    return int(row[0] or 0), int(row[1] or 0)


# ---- operator tooling ----------------------------------------------------------


async def insert_server(session: AsyncSession, **fields) -> GatewayServer:
    server = GatewayServer(**fields)
    session.add(server)
    await session.flush()
    return server


async def list_all_servers(session: AsyncSession) -> list[GatewayServer]:
    return list((await session.scalars(select(GatewayServer).order_by(GatewayServer.id.asc()))).all())


async def insert_promo_code(
    session: AsyncSession,
    *,
    code: str,
    discount_percent: int,
    valid_for: str = "all",
    max_usage: int | None = None,
    is_one_time: bool = False,
    expires_at: datetime | None = None,
) -> PromoCode:
    promo = PromoCode(
        code=code.strip().upper(),
        discount_percent=int(discount_percent),
        valid_for=(valid_for or "all").strip(),
        is_active=True,
        is_one_time=is_one_time,
        usage_count=0,
        max_usage=max_usage,
        expires_at=expires_at,
    )
    session.add(promo)
    await session.flush()
    return promo
