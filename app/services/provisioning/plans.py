from __future__ import annotations

from dataclasses import dataclass

from app.services.errors import UnknownPlanError

TRIAL = "trial"


@dataclass(frozen=True)
class Plan:
    kind: str
    duration_days: int
    price_rub: int
    title: str


PAID_PLANS: dict[str, Plan] = {
    "30days": Plan("30days", 30, 150, "1 месяц"),
    "90days": Plan("90days", 90, 350, "3 месяца"),
    "365days": Plan("365days", 365, 1100, "1 год"),
}


def trial_plan(days: int = 3) -> Plan:
    return Plan(TRIAL, days, 0, "Пробный период")


def get_plans() -> list[Plan]:
    return list(PAID_PLANS.values())


def get_plan(kind: str) -> Plan:
    plan = PAID_PLANS.get((kind or "").strip())
    if plan is None:
        raise UnknownPlanError(kind)
    return plan
