from .forging_event_service import ForgingEventService
from .pledge_service import PledgeService, PledgeSummary
from .checkout_service import CheckoutService
from .margin_helper import MarginHelperService, calculate_tier_margins, all_tiers_profitable
from .notification_service import NotificationService

__all__ = [
    "ForgingEventService",
    "PledgeService",
    "PledgeSummary",
    "CheckoutService",
    "MarginHelperService",
    "calculate_tier_margins",
    "all_tiers_profitable",
    "NotificationService",
]
