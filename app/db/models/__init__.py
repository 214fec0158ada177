from .user import User
from .subscription import Subscription
from .gateway_server import GatewayServer
from .payment import Payment
from .promo_code import PromoCode
from .referral_bonus import ReferralBonus

__all__ = [
    "User",
    "Subscription",
    "GatewayServer",
    "Payment",
    "PromoCode",
    "ReferralBonus",
]
