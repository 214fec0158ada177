from __future__ import annotations

import logging
import math
import secrets
import string
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.time import ensure_aware, utcnow
from app.db.models import PromoCode, User
from app.repo import (
    get_promo_code,
    get_referral_totals,
    increment_promo_usage,
    insert_referral_bonus,
    promo_used_by_user,
)
from app.services.errors import (
    PromoCodeError,
    PromoCodeExhaustedError,
    PromoCodeExpiredError,
    PromoCodeNotFoundError,
    PromoCodePlanMismatchError,
)

log = logging.getLogger(__name__)

REF_CODE_ALPHABET = string.ascii_uppercase + string.digits
REF_CODE_LENGTH = 5


@dataclass(frozen=True)
class PromoValidation:
    code: str
    valid: bool
    discount_percent: int | None = None
    scope: str | None = None
    reason: str | None = None  # error code when invalid
    message: str | None = None


@dataclass(frozen=True)
class ReferralStats:
    referrals_count: int
    bonus_days_earned: int


class PromoLedger:
    def __init__(self, *, referral_bonus_days: int = 7):
        self.referral_bonus_days = referral_bonus_days

    # ---- promo codes ---------------------------------------------------------

    @staticmethod
    def is_applicable_to_plan(scope: str | None, plan_kind: str) -> bool:
        """``all``, an exact plan, or a comma separated list of plans."""
        scope = (scope or "all").strip()
        if scope == "all":
            return True
        if scope == plan_kind:
            return True
        return plan_kind in {p.strip() for p in scope.split(",") if p.strip()}

    @staticmethod
    def compute_discounted_price(base_price: int, discount_percent: int) -> int:
        d = min(100, max(0, int(discount_percent)))
        # half-up like the storefront, not banker's rounding
        price = math.floor(base_price * (1 - d / 100) + 0.5)
        return max(0, min(int(base_price), price))

    async def _load_valid(self, session: AsyncSession, code: str, now: datetime | None = None) -> PromoCode:
        promo = await get_promo_code(session, code)
        if promo is None or not promo.is_active:
            raise PromoCodeNotFoundError(code)
        now = now or utcnow()
        if promo.expires_at is not None and ensure_aware(promo.expires_at) <= now:
            raise PromoCodeExpiredError(code)
        if promo.max_usage is not None and int(promo.usage_count or 0) >= int(promo.max_usage):
            raise PromoCodeExhaustedError(code)
        return promo

    async def validate(self, session: AsyncSession, code: str, *, now: datetime | None = None) -> PromoValidation:
        normalized = (code or "").strip().upper()
        try:
            promo = await self._load_valid(session, normalized, now)
        except PromoCodeError as e:
            return PromoValidation(code=normalized, valid=False, reason=e.code, message=e.user_message)
        return PromoValidation(
            code=promo.code,
            valid=True,
            discount_percent=int(promo.discount_percent),
            scope=promo.valid_for,
        )

    async def check_for_plan(
        self,
        session: AsyncSession,
        code: str,
        plan_kind: str,
        *,
        user_id: int | None = None,
        now: datetime | None = None,
    ) -> PromoCode:
        """A promo code usable for this plan (and user), or the reason it is not."""
        normalized = (code or "").strip().upper()
        promo = await self._load_valid(session, normalized, now)
        if not self.is_applicable_to_plan(promo.valid_for, plan_kind):
            raise PromoCodePlanMismatchError(normalized)
        if promo.is_one_time and user_id is not None and await promo_used_by_user(session, user_id, promo.code):
            raise PromoCodeExhaustedError(normalized, f"one-time promo code already used: {normalized}")
        return promo

    async def record_usage(self, session: AsyncSession, promo: PromoCode) -> None:
        if not await increment_promo_usage(session, promo.id):
            raise PromoCodeExhaustedError(promo.code)
        log.info("promo_usage_recorded code=%s", promo.code)

    # ---- referrals -----------------------------------------------------------

    @staticmethod
    def generate_ref_code() -> str:
        return "".join(secrets.choice(REF_CODE_ALPHABET) for _ in range(REF_CODE_LENGTH))

    async def grant_referral_bonus(
        self,
        session: AsyncSession,
        referrer: User,
        referred: User,
        days: int | None = None,
    ) -> None:
        days = self.referral_bonus_days if days is None else days
        await insert_referral_bonus(
            session,
            referrer_user_id=referrer.id,
            referred_user_id=referred.id,
            bonus_days=days,
        )
        log.info("referral_bonus_granted referrer=%s referred=%s days=%s", referrer.tg_id, referred.tg_id, days)

    async def referral_stats(self, session: AsyncSession, user: User) -> ReferralStats:
        count, days = await get_referral_totals(session, user.id)
        return ReferralStats(referrals_count=count, bonus_days_earned=days)
