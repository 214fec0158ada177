from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncContextManager, Awaitable, Callable, Generic, Iterator, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.time import days_left, to_epoch_seconds, utcnow
from app.db.models import GatewayServer, PromoCode, Subscription, User
from app.repo import (
    get_active_subscription,
    get_subscription_by_kind,
    get_user_by_ref_code,
    get_user_by_tg_id,
    increment_server_subscribers,
    insert_payment,
    insert_subscription,
    insert_user,
    list_enabled_servers,
    ref_code_exists,
    update_user_subscription,
)
from app.services.bundle.builder import BundleBuilder, SubscriptionBundle
from app.services.errors import (
    AlreadySubscribedError,
    EmptyBundleError,
    GatewayError,
    GatewayProvisionError,
    NoServersAvailableError,
    ProvisioningError,
    ProvisioningFailedError,
    StoreError,
    TrialAlreadyUsedError,
)
from app.services.gateway.client import GatewayClient
from app.services.gateway.panel import ProvisionRequest
from app.services.gateway.prober import FleetProber
from app.services.gateway.selector import pick_all_reachable
from app.services.promo.ledger import PromoLedger, PromoValidation, ReferralStats
from app.services.provisioning.plans import TRIAL, Plan, get_plan, get_plans, trial_plan

log = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

REF_CODE_ATTEMPTS = 8

PAYMENT_FREE_TRIAL = "free_trial"
PAYMENT_PROMO_100 = "promo_code_100"
PAYMENT_PAID = "paid"


@contextmanager
def _store_step(operation: str) -> Iterator[None]:
    """Tag a database failure with the store call that raised it."""
    try:
        yield
    except SQLAlchemyError as e:
        raise StoreError(operation, e) from e


@dataclass(frozen=True)
class Result(Generic[T]):
    """What the chat surface gets back: a value or a failure it can show."""

    ok: bool
    value: T | None = None
    error_code: str | None = None
    message: str | None = None
    error: ProvisioningError | None = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ProvisioningError) -> "Result[T]":
        return cls(ok=False, error_code=error.code, message=error.user_message, error=error)


@dataclass(frozen=True)
class ProvisionOutcome:
    user: User
    subscription: Subscription
    bundle: SubscriptionBundle
    servers_used: int
    amount: int
    discount_percent: int
    payment_method: str
    message: str
    failures: tuple[GatewayError, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class StatusInfo:
    subscription_kind: str | None
    days_remaining: int
    active: bool
    end_at: datetime | None = None
    subscription_link: str | None = None


class ProvisioningOrchestrator:
    """Trial and paid provisioning across every healthy panel.

    A run goes eligibility -> probe -> fan-out -> bundle -> persist. Store
    access is split into two short transactions around the gateway work so
    no database connection is held while panels are being called.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        gateway: GatewayClient,
        *,
        bundle_builder: BundleBuilder | None = None,
        ledger: PromoLedger | None = None,
        trial_days: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.prober = FleetProber(gateway)
        self.bundle_builder = bundle_builder or BundleBuilder()
        self.ledger = ledger or PromoLedger()
        self.trial_days = trial_days
        self.clock = clock

    # ---- public surface ------------------------------------------------------

    @staticmethod
    def get_plans() -> list[Plan]:
        return get_plans()

    async def start_trial(self, external_user_id: int, display_name: str | None = None) -> Result[ProvisionOutcome]:
        return await self._guard(
            "start_trial",
            external_user_id,
            lambda: self._provision(external_user_id, trial_plan(self.trial_days), None, display_name),
        )

    async def create_subscription(
        self,
        external_user_id: int,
        plan_kind: str,
        promo_code: str | None = None,
        display_name: str | None = None,
    ) -> Result[ProvisionOutcome]:
        async def _run() -> ProvisionOutcome:
            plan = get_plan(plan_kind)
            return await self._provision(external_user_id, plan, (promo_code or "").strip() or None, display_name)

        return await self._guard("create_subscription", external_user_id, _run)

    async def validate_promo_code(self, code: str) -> PromoValidation:
        normalized = (code or "").strip().upper()
        try:
            async with self.session_factory() as session:
                return await self.ledger.validate(session, normalized, now=self.clock())
        except SQLAlchemyError as e:
            err = StoreError("validate_promo_code", e)
            log.exception("promo_validate_store_failed code=%s", normalized)
            return PromoValidation(code=normalized, valid=False, reason=err.code, message=err.user_message)

    async def get_status(self, external_user_id: int) -> Result[StatusInfo]:
        async def _run() -> StatusInfo:
            now = self.clock()
            async with self.session_factory() as session:
                with _store_step("get_user_by_tg_id"):
                    user = await get_user_by_tg_id(session, external_user_id)
                if user is None:
                    return StatusInfo(subscription_kind=None, days_remaining=0, active=False)
                with _store_step("get_active_subscription"):
                    sub = await get_active_subscription(session, user.id, now=now)
                    await session.commit()
                if sub is None:
                    return StatusInfo(subscription_kind=None, days_remaining=0, active=False)
                return StatusInfo(
                    subscription_kind=sub.plan_kind,
                    days_remaining=days_left(sub.end_at, now),
                    active=True,
                    end_at=sub.end_at,
                    subscription_link=user.subscription_link,
                )

        return await self._guard("get_status", external_user_id, _run)

    async def get_or_create_user(
        self,
        external_user_id: int,
        display_name: str | None = None,
        referral_code: str | None = None,
    ) -> Result[User]:
        async def _run() -> User:
            async with self.session_factory() as session:
                with _store_step("ensure_user"):
                    return await self._ensure_user(session, external_user_id, display_name, referral_code)

        return await self._guard("get_or_create_user", external_user_id, _run)

    async def get_referral_stats(self, external_user_id: int) -> Result[ReferralStats]:
        async def _run() -> ReferralStats:
            async with self.session_factory() as session:
                with _store_step("get_user_by_tg_id"):
                    user = await get_user_by_tg_id(session, external_user_id)
                if user is None:
                    return ReferralStats(referrals_count=0, bonus_days_earned=0)
                with _store_step("referral_stats"):
                    return await self.ledger.referral_stats(session, user)

        return await self._guard("get_referral_stats", external_user_id, _run)

    # ---- internals -----------------------------------------------------------

    async def _guard(self, op: str, external_user_id: int, fn: Callable[[], Awaitable[T]]) -> Result[T]:
        extra = {"tg_id": external_user_id}
        try:
            return Result.success(await fn())
        except EmptyBundleError as e:
            log.exception("%s_invariant_broken tg_id=%s", op, external_user_id, extra=extra)
            return Result.failure(e)
        except StoreError as e:
            log.exception("%s_store_failed tg_id=%s step=%s", op, external_user_id, e.operation, extra=extra)
            return Result.failure(e)
        except ProvisioningError as e:
            log.warning("%s_failed tg_id=%s code=%s detail=%s", op, external_user_id, e.code, e, extra=extra)
            return Result.failure(e)
        except SQLAlchemyError as e:
            log.exception("%s_store_failed tg_id=%s", op, external_user_id, extra=extra)
            return Result.failure(StoreError(op, e))

    async def _ensure_user(
        self,
        session: AsyncSession,
        external_user_id: int,
        display_name: str | None,
        referral_code: str | None = None,
    ) -> User:
        user = await get_user_by_tg_id(session, external_user_id)
        if user is not None:
            return user

        for attempt in range(REF_CODE_ATTEMPTS):
            code = self.ledger.generate_ref_code()
            if await ref_code_exists(session, code):
                continue
            # looked up per attempt, a rollback expires loaded rows
            referrer = await get_user_by_ref_code(session, referral_code) if referral_code else None
            if referrer is not None and int(referrer.tg_id) == int(external_user_id):
                referrer = None
            try:
                user = await insert_user(
                    session,
                    tg_id=external_user_id,
                    ref_code=code,
                    display_name=display_name,
                    referred_by_user_id=referrer.id if referrer else None,
                )
                if referrer is not None:
                    await self.ledger.grant_referral_bonus(session, referrer, user)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await get_user_by_tg_id(session, external_user_id)
                if existing is not None:
                    return existing
                log.warning("ref_code_collision tg_id=%s attempt=%s", external_user_id, attempt + 1)
                continue
            log.info("user_created tg_id=%s ref_code=%s referred=%s", external_user_id, code, bool(referrer))
            return user

        raise StoreError("insert_user", RuntimeError(f"no free referral code after {REF_CODE_ATTEMPTS} attempts"))

    async def _check_eligibility(self, session: AsyncSession, user: User, plan_kind: str) -> None:
        # a trial row, active or not, answers a second trial request first
        if plan_kind == TRIAL and await get_subscription_by_kind(session, user.id, TRIAL) is not None:
            raise TrialAlreadyUsedError(f"user {user.tg_id} already used the trial")
        active = await get_active_subscription(session, user.id, now=self.clock())
        # keep lazy expiry even when the run is rejected
        await session.commit()
        if active is not None:
            raise AlreadySubscribedError(f"user {user.tg_id} already has {active.plan_kind} until {active.end_at}")

    async def _provision(
        self,
        external_user_id: int,
        plan: Plan,
        promo_code: str | None,
        display_name: str | None,
    ) -> ProvisionOutcome:
        extra = {"tg_id": external_user_id, "plan": plan.kind}

        # Eligible
        async with self.session_factory() as session:
            with _store_step("ensure_user"):
                user = await self._ensure_user(session, external_user_id, display_name)
            with _store_step("check_eligibility"):
                await self._check_eligibility(session, user, plan.kind)
            promo: PromoCode | None = None
            if promo_code and plan.kind != TRIAL:
                with _store_step("check_promo_code"):
                    promo = await self.ledger.check_for_plan(
                        session, promo_code, plan.kind, user_id=user.id, now=self.clock()
                    )
            with _store_step("list_enabled_servers"):
                servers = await list_enabled_servers(session)

        discount = int(promo.discount_percent) if promo else 0
        amount = self.ledger.compute_discounted_price(plan.price_rub, discount) if promo else plan.price_rub

        # Probing
        reachable = await self.prober.probe(servers)
        if not reachable:
            raise NoServersAvailableError(f"{len(servers)} enabled servers, none reachable")

        # Provisioning
        targets = pick_all_reachable(reachable)
        request = ProvisionRequest(external_user_id=external_user_id, plan_kind=plan.kind, duration_days=plan.duration_days)
        start_at = self.clock()
        results = await asyncio.gather(
            *(self.gateway.provision(server, request) for server in targets),
            return_exceptions=True,
        )

        succeeded: list[tuple[GatewayServer, str]] = []
        failures: list[GatewayError] = []
        for server, res in zip(targets, results):
            if isinstance(res, Exception) and not isinstance(res, GatewayError):
                log.error(
                    "server_provision_crashed server=%s",
                    server.server_name,
                    exc_info=res,
                    extra={**extra, "server": server.server_name},
                )
                res = GatewayProvisionError(server.server_name, f"unexpected error: {res!r}")
            if isinstance(res, GatewayError):
                failures.append(res)
                log.warning(
                    "server_provision_failed server=%s reason=%s",
                    server.server_name,
                    res.reason,
                    extra={**extra, "server": server.server_name},
                )
            elif isinstance(res, BaseException):
                raise res
            else:
                _client, uri = res
                succeeded.append((server, uri))
        if not succeeded:
            raise ProvisioningFailedError(failures)

        # Bundle
        end_at = start_at + timedelta(days=plan.duration_days)
        bundle = self.bundle_builder.build([uri for _, uri in succeeded], external_user_id, to_epoch_seconds(end_at))

        # Persisting
        if plan.kind == TRIAL:
            method = PAYMENT_FREE_TRIAL
        elif promo is not None and amount == 0:
            method = PAYMENT_PROMO_100
        else:
            method = PAYMENT_PAID

        try:
            async with self.session_factory() as session:
                user_row = await session.get(User, user.id)
                sub = await insert_subscription(
                    session,
                    user_id=user.id,
                    plan_kind=plan.kind,
                    start_at=start_at,
                    end_at=end_at,
                    servers_used=len(succeeded),
                )
                await update_user_subscription(session, user_row, active=True, link=bundle.direct)
                await increment_server_subscribers(session, [server.id for server, _ in succeeded])
                await insert_payment(
                    session,
                    user_id=user.id,
                    amount=amount,
                    payment_method=method,
                    subscription_id=sub.id,
                    promo_code_used=promo.code if promo else None,
                    discount_applied=discount,
                )
                if promo is not None:
                    await self.ledger.record_usage(session, promo)
                await session.commit()
        except IntegrityError as e:
            log.warning("subscription_insert_conflict tg_id=%s", external_user_id, extra=extra)
            raise await self._explain_conflict(user, plan.kind, e) from e
        except SQLAlchemyError as e:
            raise StoreError("persist_subscription", e) from e

        log.info(
            "subscription_created tg_id=%s plan=%s servers=%s failed=%s amount=%s",
            external_user_id,
            plan.kind,
            len(succeeded),
            len(failures),
            amount,
            extra=extra,
        )
        return ProvisionOutcome(
            user=user_row,
            subscription=sub,
            bundle=bundle,
            servers_used=len(succeeded),
            amount=amount,
            discount_percent=discount,
            payment_method=method,
            message=_result_message(plan, method, discount, len(succeeded)),
            failures=tuple(failures),
        )

    async def _explain_conflict(self, user: User, plan_kind: str, cause: IntegrityError) -> ProvisioningError:
        """A concurrent run won the insert; say which invariant it hit."""
        async with self.session_factory() as session:
            if plan_kind == TRIAL and await get_subscription_by_kind(session, user.id, TRIAL) is not None:
                return TrialAlreadyUsedError(f"user {user.tg_id} used the trial concurrently")
            if await get_active_subscription(session, user.id, now=self.clock()) is not None:
                return AlreadySubscribedError(f"user {user.tg_id} subscribed concurrently")
        return StoreError("persist_subscription", cause)


def _result_message(plan: Plan, method: str, discount: int, servers: int) -> str:
    if method == PAYMENT_FREE_TRIAL:
        return f"🎉 Пробный период на {plan.duration_days} дн. активирован! Доступно локаций: {servers}."
    if method == PAYMENT_PROMO_100:
        return f"🎉 Промокод на 100% применён! Подписка «{plan.title}» бесплатно, серверов: {servers}."
    if discount > 0:
        return f"🎉 Скидка {discount}% применена! Подписка на {plan.duration_days} дн., серверов: {servers}."
    return f"Подписка «{plan.title}» оформлена на {plan.duration_days} дн., серверов: {servers}."
