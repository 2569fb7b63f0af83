"""
Subscriptions, preferences, fan-out, digests and delivery.
"""

from .delivery import DeliveryDispatcher, NotificationInbox
from .digest import DigestBuilder
from .fanout import FanoutEngine
from .preferences import PreferenceEvaluator, QuietHoursStatus
from .subscriptions import SubscriptionRegistry

__all__ = [
    "DeliveryDispatcher",
    "DigestBuilder",
    "FanoutEngine",
    "NotificationInbox",
    "PreferenceEvaluator",
    "QuietHoursStatus",
    "SubscriptionRegistry",
]
