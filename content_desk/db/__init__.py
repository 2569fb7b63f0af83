"""
Database package for Content Desk.
"""

from .audit_models import ContentAuditLogModel
from .audit_service import AuditService
from .base import Base, get_db, get_engine, get_session_local, init_database
from .models import (
    ArticleModel,
    DigestBucketModel,
    FailedDeliveryModel,
    NewsItemModel,
    NotificationModel,
    NotificationPreferenceModel,
    PublishEventModel,
    ScheduledPublicationModel,
    SubscriptionModel,
)

__all__ = [
    "ArticleModel",
    "AuditService",
    "Base",
    "ContentAuditLogModel",
    "DigestBucketModel",
    "FailedDeliveryModel",
    "NewsItemModel",
    "NotificationModel",
    "NotificationPreferenceModel",
    "PublishEventModel",
    "ScheduledPublicationModel",
    "SubscriptionModel",
    "get_db",
    "get_engine",
    "get_session_local",
    "init_database",
]
