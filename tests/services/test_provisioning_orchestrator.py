import re
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.config import Settings
from app.core.time import ensure_aware, utcnow
from app.db.models import GatewayServer, Payment, PromoCode, ReferralBonus, Subscription, User
from app.repo import insert_promo_code, insert_subscription
from app.services.bundle.builder import BundleBuilder
from app.services.gateway.fake import FakeGatewayClient
from app.services.gateway.session_cache import SessionCache
from app.services.provisioning import orchestrator as orchestrator_module
from app.services.provisioning.orchestrator import ProvisioningOrchestrator
from tests.factories import make_server


class _Clock:
    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self):
        return self.now


def _orchestrator(session_factory, gateway, **kwargs) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(session_factory, gateway, **kwargs)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return int(await session.scalar(select(func.count(model.id))))


async def _subscribers(session_factory) -> dict[str, int]:
    async with session_factory() as session:
        rows = (await session.execute(select(GatewayServer.server_name, GatewayServer.active_subscribers))).all()
    return {name: count for name, count in rows}


async def _promo(session_factory, **kwargs) -> None:
    async with session_factory() as session:
        await insert_promo_code(session, **kwargs)
        await session.commit()


async def test_start_trial_end_to_end(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"), make_server("de-1"), make_server("off-1", enabled=False))
    orch = _orchestrator(session_factory, fake_gateway)
    started = utcnow()

    res = await orch.start_trial(42, display_name="Alex")

    assert res.ok, res.message
    outcome = res.value
    assert re.fullmatch(r"[A-Z0-9]{5}", outcome.user.ref_code)
    assert outcome.user.tg_id == 42
    assert outcome.user.subscription_active is True
    assert outcome.user.subscription_link == outcome.bundle.direct
    assert outcome.subscription.plan_kind == "trial"
    end_at = ensure_aware(outcome.subscription.end_at)
    assert started + timedelta(days=3) <= end_at <= utcnow() + timedelta(days=3)
    assert outcome.servers_used == 2
    assert len(outcome.bundle.uris) == 2
    assert outcome.payment_method == "free_trial"
    assert outcome.amount == 0

    async with session_factory() as session:
        payment = await session.scalar(select(Payment))
        user = await session.scalar(select(User).where(User.tg_id == 42))
    assert (payment.amount, payment.payment_method) == (0, "free_trial")
    assert user.subscription_active is True
    assert await _subscribers(session_factory) == {"nl-1": 1, "de-1": 1, "off-1": 0}
    assert "off-1" not in fake_gateway.login_calls


async def test_default_settings_bundle_decodes_to_uris(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"), make_server("de-1"))
    orch = _orchestrator(session_factory, fake_gateway, bundle_builder=BundleBuilder.from_settings(Settings()))

    res = await orch.start_trial(42)

    assert res.ok, res.message
    bundle = res.value.bundle
    assert bundle.decoded().split("\n") == list(bundle.uris)
    assert len(bundle.uris) == 2


async def test_trial_only_once(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    orch = _orchestrator(session_factory, fake_gateway)

    first = await orch.start_trial(42)
    second = await orch.start_trial(42)

    assert first.ok
    assert not second.ok
    assert second.error_code == "trial_already_used"
    assert await _count(session_factory, Subscription) == 1


async def test_trial_refused_even_after_it_expired(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    clock = _Clock()
    orch = _orchestrator(session_factory, fake_gateway, clock=clock)
    assert (await orch.start_trial(42)).ok

    clock.now += timedelta(days=4)
    res = await orch.start_trial(42)

    assert res.error_code == "trial_already_used"
    status = await orch.get_status(42)
    assert status.value.active is False


async def test_active_subscription_blocks_any_plan(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    orch = _orchestrator(session_factory, fake_gateway)
    assert (await orch.start_trial(42)).ok
    calls_before = sum(fake_gateway.provision_calls.values())

    for plan in ("30days", "90days", "365days"):
        res = await orch.create_subscription(42, plan)
        assert res.error_code == "already_subscribed"
        assert res.message == "У вас уже есть активная подписка."

    assert sum(fake_gateway.provision_calls.values()) == calls_before
    assert await _count(session_factory, Subscription) == 1


async def test_paid_plan_after_trial_expired(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    clock = _Clock()
    orch = _orchestrator(session_factory, fake_gateway, clock=clock)
    assert (await orch.start_trial(42)).ok

    clock.now += timedelta(days=3, minutes=1)
    res = await orch.create_subscription(42, "30days")

    assert res.ok, res.message
    assert res.value.amount == 150
    assert res.value.payment_method == "paid"
    async with session_factory() as session:
        active = (await session.scalars(select(Subscription).where(Subscription.is_active == True))).all()  # noqa: E712
    assert [s.plan_kind for s in active] == ["30days"]


async def test_partial_failure_uses_the_healthy_servers(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"), make_server("de-1"), make_server("fi-1"))
    fake_gateway.failing = {"de-1"}
    orch = _orchestrator(session_factory, fake_gateway)

    res = await orch.create_subscription(42, "30days")

    assert res.ok, res.message
    assert res.value.servers_used == 2
    assert len(res.value.bundle.uris) == 2
    assert res.value.bundle.decoded().split("\n") == list(res.value.bundle.uris)
    assert [f.server_name for f in res.value.failures] == ["de-1"]
    assert await _subscribers(session_factory) == {"nl-1": 1, "de-1": 0, "fi-1": 1}


async def test_unexpected_server_error_counts_as_that_server_failing(session_factory, add_servers):
    await add_servers(make_server("nl-1"), make_server("de-1"))

    class BrokenPanel(FakeGatewayClient):
        async def provision_client(self, server, token, request):
            if server.server_name == "de-1":
                raise KeyError("clients")
            return await super().provision_client(server, token, request)

    gateway = BrokenPanel(session_cache=SessionCache())
    orch = _orchestrator(session_factory, gateway)

    res = await orch.create_subscription(42, "30days")

    assert res.ok, res.message
    assert res.value.servers_used == 1
    assert [f.code for f in res.value.failures] == ["gateway_provision"]
    assert res.value.failures[0].server_name == "de-1"
    assert "KeyError" in res.value.failures[0].reason
    assert len(gateway.clients["nl-1"]) == 1
    assert await _subscribers(session_factory) == {"nl-1": 1, "de-1": 0}


async def test_full_failure_persists_nothing(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"), make_server("de-1"), make_server("fi-1"))
    fake_gateway.failing = {"nl-1", "de-1", "fi-1"}
    orch = _orchestrator(session_factory, fake_gateway)

    res = await orch.create_subscription(42, "30days")
    trial = await orch.start_trial(42)

    assert res.error_code == "provisioning_failed"
    assert trial.error_code == "provisioning_failed"
    for name in ("nl-1", "de-1", "fi-1"):
        assert name in str(res.error)
    assert await _count(session_factory, Subscription) == 0
    assert await _count(session_factory, Payment) == 0
    assert await _subscribers(session_factory) == {"nl-1": 0, "de-1": 0, "fi-1": 0}


async def test_no_reachable_servers(session_factory, add_servers, fake_gateway):
    orch = _orchestrator(session_factory, fake_gateway)
    assert (await orch.start_trial(1)).error_code == "no_servers"

    await add_servers(make_server("nl-1"))
    fake_gateway.unreachable = {"nl-1"}
    res = await orch.start_trial(1)

    assert res.error_code == "no_servers"
    assert fake_gateway.provision_calls == {}


async def test_promo_errors_fail_before_any_gateway_call(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    await _promo(session_factory, code="LONG", discount_percent=30, valid_for="365days")
    await _promo(session_factory, code="OLD", discount_percent=30, expires_at=utcnow() - timedelta(days=1))
    orch = _orchestrator(session_factory, fake_gateway)

    mismatch = await orch.create_subscription(42, "30days", promo_code="long")
    expired = await orch.create_subscription(42, "30days", promo_code="OLD")
    missing = await orch.create_subscription(42, "30days", promo_code="NOPE")

    assert mismatch.error_code == "promo_plan_mismatch"
    assert expired.error_code == "promo_expired"
    assert missing.error_code == "promo_not_found"
    assert fake_gateway.login_calls == {}
    assert await _count(session_factory, Subscription) == 0


async def test_discount_promo_sets_amount_and_counts_usage(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    await _promo(session_factory, code="SPRING20", discount_percent=20, valid_for="90days,365days")
    orch = _orchestrator(session_factory, fake_gateway)

    res = await orch.create_subscription(42, "90days", promo_code="spring20")

    assert res.ok, res.message
    assert res.value.amount == 280
    assert res.value.discount_percent == 20
    assert "20%" in res.value.message
    async with session_factory() as session:
        payment = await session.scalar(select(Payment))
        promo = await session.scalar(select(PromoCode).where(PromoCode.code == "SPRING20"))
    assert (payment.amount, payment.payment_method, payment.promo_code_used, payment.discount_applied) == (
        280,
        "paid",
        "SPRING20",
        20,
    )
    assert promo.usage_count == 1


async def test_full_discount_promo_is_free(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    await _promo(session_factory, code="FREE", discount_percent=100)
    orch = _orchestrator(session_factory, fake_gateway)

    res = await orch.create_subscription(42, "30days", promo_code="FREE")

    assert res.ok, res.message
    assert res.value.amount == 0
    assert res.value.payment_method == "promo_code_100"


async def test_promo_usage_untouched_when_provisioning_fails(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    await _promo(session_factory, code="SPRING20", discount_percent=20)
    fake_gateway.failing = {"nl-1"}
    orch = _orchestrator(session_factory, fake_gateway)

    res = await orch.create_subscription(42, "90days", promo_code="SPRING20")

    assert res.error_code == "provisioning_failed"
    async with session_factory() as session:
        promo = await session.scalar(select(PromoCode))
    assert promo.usage_count == 0


async def test_one_time_promo_cannot_be_reused_by_the_same_user(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    await _promo(session_factory, code="HELLO", discount_percent=50, is_one_time=True)
    clock = _Clock()
    orch = _orchestrator(session_factory, fake_gateway, clock=clock)
    assert (await orch.create_subscription(42, "30days", promo_code="HELLO")).ok

    clock.now += timedelta(days=31)
    again = await orch.create_subscription(42, "30days", promo_code="HELLO")
    other_user = await orch.create_subscription(43, "30days", promo_code="HELLO")

    assert again.error_code == "promo_exhausted"
    assert other_user.ok


async def test_unknown_plan_touches_nothing(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    orch = _orchestrator(session_factory, fake_gateway)

    res = await orch.create_subscription(42, "7days")

    assert res.error_code == "unknown_plan"
    assert await _count(session_factory, User) == 0
    assert fake_gateway.login_calls == {}


async def test_concurrent_insert_is_reported_as_already_subscribed(session_factory, add_servers):
    await add_servers(make_server("nl-1"))

    class RacingGateway(FakeGatewayClient):
        """Another run for the same user commits while this one is at the panels."""

        async def provision_client(self, server, token, request):
            client = await super().provision_client(server, token, request)
            async with session_factory() as session:
                user = await session.scalar(select(User).where(User.tg_id == request.external_user_id))
                now = utcnow()
                await insert_subscription(
                    session,
                    user_id=user.id,
                    plan_kind="30days",
                    start_at=now,
                    end_at=now + timedelta(days=30),
                    servers_used=1,
                )
                await session.commit()
            return client

    orch = _orchestrator(session_factory, RacingGateway(session_cache=SessionCache()))

    res = await orch.create_subscription(42, "90days")

    assert res.error_code == "already_subscribed"
    assert await _count(session_factory, Subscription) == 1
    assert await _count(session_factory, Payment) == 0


async def test_store_errors_become_failure_results(session_factory, add_servers, fake_gateway, monkeypatch):
    await add_servers(make_server("nl-1"))

    async def _broken(session):
        raise OperationalError("SELECT servers", {}, Exception("database is locked"))

    monkeypatch.setattr(orchestrator_module, "list_enabled_servers", _broken)
    orch = _orchestrator(session_factory, fake_gateway)

    res = await orch.start_trial(42)

    assert not res.ok
    assert res.error_code == "store_error"
    assert res.error.operation == "list_enabled_servers"
    assert "list_enabled_servers" in str(res.error)


async def test_status_reports_days_and_lazy_expiry(session_factory, add_servers, fake_gateway):
    await add_servers(make_server("nl-1"))
    clock = _Clock()
    orch = _orchestrator(session_factory, fake_gateway, clock=clock)

    unknown = await orch.get_status(42)
    assert (unknown.value.active, unknown.value.days_remaining) == (False, 0)

    await orch.start_trial(42)
    fresh = await orch.get_status(42)
    assert (fresh.value.subscription_kind, fresh.value.days_remaining, fresh.value.active) == ("trial", 3, True)

    clock.now += timedelta(days=2, hours=1)
    assert (await orch.get_status(42)).value.days_remaining == 1

    clock.now += timedelta(days=1)
    expired = await orch.get_status(42)
    assert expired.value.active is False
    async with session_factory() as session:
        user = await session.scalar(select(User).where(User.tg_id == 42))
        sub = await session.scalar(select(Subscription))
    assert user.subscription_active is False
    assert sub.is_active is False


async def test_referral_code_grants_bonus_once(session_factory, fake_gateway):
    orch = _orchestrator(session_factory, fake_gateway)
    referrer = (await orch.get_or_create_user(1, display_name="Referrer")).value

    invited = await orch.get_or_create_user(2, display_name="Friend", referral_code=referrer.ref_code.lower())
    again = await orch.get_or_create_user(2, referral_code=referrer.ref_code)
    stranger = await orch.get_or_create_user(3, referral_code="ZZZZZ")

    assert invited.value.referred_by_user_id == referrer.id
    assert again.value.ref_code == invited.value.ref_code
    assert stranger.value.referred_by_user_id is None
    assert await _count(session_factory, ReferralBonus) == 1
    stats = await orch.get_referral_stats(1)
    assert (stats.value.referrals_count, stats.value.bonus_days_earned) == (1, 7)


async def test_ref_code_collision_is_retried(session_factory, fake_gateway, monkeypatch):
    orch = _orchestrator(session_factory, fake_gateway)
    codes = iter(["AAAAA", "AAAAA", "BBBBB"])
    monkeypatch.setattr(orch.ledger, "generate_ref_code", lambda: next(codes))

    first = await orch.get_or_create_user(1)
    second = await orch.get_or_create_user(2)

    assert first.value.ref_code == "AAAAA"
    assert second.value.ref_code == "BBBBB"


async def test_validate_promo_code_surface(session_factory, fake_gateway):
    await _promo(session_factory, code="SPRING20", discount_percent=20, valid_for="90days,365days")
    orch = _orchestrator(session_factory, fake_gateway)

    ok = await orch.validate_promo_code(" spring20 ")
    bad = await orch.validate_promo_code("WINTER")

    assert (ok.valid, ok.discount_percent) == (True, 20)
    assert (bad.valid, bad.reason) == (False, "promo_not_found")


def test_plan_catalogue():
    plans = {p.kind: (p.duration_days, p.price_rub) for p in ProvisioningOrchestrator.get_plans()}

    assert plans == {"30days": (30, 150), "90days": (90, 350), "365days": (365, 1100)}
