"""
Canonical enums for Content Desk.

Stored columns hold the ``.value`` strings; services accept either the enum
member or its string value.
"""

from enum import Enum


class ArticleStatus(str, Enum):
    """Editorial status of an article."""

    DRAFT = "draft"
    REVIEW = "review"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class NewsStatus(str, Enum):
    """News items have no review step."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class ContentType(str, Enum):
    ARTICLE = "article"
    NEWS = "news"


class Role(str, Enum):
    """Actor roles supplied by the identity collaborator."""

    AUTHOR = "author"
    EDITOR = "editor"
    ADMIN = "admin"
    SYSTEM = "system"


class ChangeType(str, Enum):
    """Audit log change types."""

    CREATED = "created"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    PUBLISHED = "published"
    REJECTED = "rejected"
    ARCHIVED = "archived"
    RESTORED = "restored"
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    SCHEDULE_CANCELLED = "schedule_cancelled"
    SCHEDULE_FAILED = "schedule_failed"


class ScheduleStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    FAILED = "failed"


ACTIVE_SCHEDULE_STATUSES = (ScheduleStatus.SCHEDULED.value, ScheduleStatus.PROCESSING.value)


class SubscriptionType(str, Enum):
    CATEGORY = "category"
    TAG = "tag"
    AUTHOR = "author"


class Frequency(str, Enum):
    """Delivery frequency, ordered from most to least immediate."""

    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"


FREQUENCY_RANK = {
    Frequency.IMMEDIATE.value: 0,
    Frequency.DAILY.value: 1,
    Frequency.WEEKLY.value: 2,
}


class DigestFrequency(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"


class NotificationType(str, Enum):
    NEW_ARTICLE = "new_article"
    NEW_NEWS = "new_news"
    DIGEST = "digest"
    SCHEDULE_DUE = "schedule_due"


class Channel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"


class DeliveryState(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class EventStatus(str, Enum):
    """Status of a durable publish event awaiting fan-out."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
