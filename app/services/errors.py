"""Error taxonomy for the provisioning workflow.

Every class carries a stable ``code`` for callers that branch on the
failure kind and a ``user_message`` the chat surface shows verbatim.
"""

from __future__ import annotations


class ProvisioningError(RuntimeError):
    code = "provisioning_error"
    user_message = "Не удалось выполнить операцию. Попробуйте позже."


# ---- eligibility -------------------------------------------------------------


class EligibilityError(ProvisioningError):
    code = "not_eligible"


class AlreadySubscribedError(EligibilityError):
    code = "already_subscribed"
    user_message = "У вас уже есть активная подписка."


class TrialAlreadyUsedError(EligibilityError):
    code = "trial_already_used"
    user_message = "Пробный период уже был использован."


class UnknownPlanError(ProvisioningError):
    code = "unknown_plan"
    user_message = "Такого тарифа нет."

    def __init__(self, plan_kind: str):
        super().__init__(f"unknown plan: {plan_kind}")
        self.plan_kind = plan_kind


# ---- gateway (per server) ----------------------------------------------------


class GatewayError(ProvisioningError):
    code = "gateway_error"

    def __init__(self, server_name: str, message: str):
        super().__init__(f"{server_name}: {message}")
        self.server_name = server_name
        self.reason = message


class GatewayAuthError(GatewayError):
    code = "gateway_auth"


class GatewayUnavailableError(GatewayError):
    code = "gateway_unavailable"


class GatewayProvisionError(GatewayError):
    code = "gateway_provision"

    def __init__(self, server_name: str, message: str, raw: str | None = None):
        super().__init__(server_name, message)
        self.raw = raw


# ---- fleet -------------------------------------------------------------------


class NoServersAvailableError(ProvisioningError):
    code = "no_servers"
    user_message = "Сейчас нет доступных серверов. Попробуйте через несколько минут."


class ProvisioningFailedError(ProvisioningError):
    code = "provisioning_failed"
    user_message = "Не удалось создать подключение ни на одном сервере. Попробуйте позже."

    def __init__(self, failures: list[GatewayError]):
        reasons = "; ".join(str(f) for f in failures) or "no servers attempted"
        super().__init__(f"provisioning failed on every server: {reasons}")
        self.failures = failures


# ---- promo codes -------------------------------------------------------------


class PromoCodeError(ProvisioningError):
    code = "promo_invalid"

    def __init__(self, promo_code: str, message: str | None = None):
        super().__init__(message or f"promo code rejected: {promo_code}")
        self.promo_code = promo_code


class PromoCodeNotFoundError(PromoCodeError):
    code = "promo_not_found"
    user_message = "Промокод не найден или неактивен."


class PromoCodeExpiredError(PromoCodeError):
    code = "promo_expired"
    user_message = "Срок действия промокода истёк."


class PromoCodeExhaustedError(PromoCodeError):
    code = "promo_exhausted"
    user_message = "Лимит использований промокода исчерпан."


class PromoCodePlanMismatchError(PromoCodeError):
    code = "promo_plan_mismatch"
    user_message = "Промокод не действует для выбранного тарифа."


# ---- internal ----------------------------------------------------------------


class EmptyBundleError(ProvisioningError):
    """Bundle requested with zero URIs; the orchestrator must stop before this."""

    code = "empty_bundle"


class StoreError(ProvisioningError):
    code = "store_error"

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"store operation {operation} failed: {cause}")
        self.operation = operation
