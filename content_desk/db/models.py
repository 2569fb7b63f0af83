"""
SQLAlchemy models for Content Desk.

All timestamps are stored in UTC. SQLite returns them naive; ``to_dict`` and
the services normalize them through ``as_utc``.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from ..primitives import as_utc, isoformat, utc_now
from .base import Base

content_type_enum = Enum("article", "news", name="content_type")
digest_type_enum = Enum("daily", "weekly", name="digest_type")

# published_at must be set exactly when the content is published
PUBLISHED_AT_INVARIANT = "(status = 'published') = (published_at IS NOT NULL)"


class ArticleModel(Base):
    """Editorial article. Status changes go through the lifecycle controller."""

    __tablename__ = "articles"

    id = Column(String(36), primary_key=True)
    title = Column(String(500), nullable=False)
    status = Column(
        Enum("draft", "review", "published", "archived", name="article_status"),
        nullable=False,
        default="draft",
        index=True,
    )
    author_id = Column(String(128), nullable=False, index=True)
    category_id = Column(String(128), nullable=True, index=True)
    tags = Column(JSON, nullable=False, default=list)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(PUBLISHED_AT_INVARIANT, name="ck_articles_published_at"),
        Index("ix_articles_status_published_at", "status", "published_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "content_type": "article",
            "title": self.title,
            "status": self.status,
            "author_id": self.author_id,
            "category_id": self.category_id,
            "tags": list(self.tags or []),
            "published_at": isoformat(self.published_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class NewsItemModel(Base):
    """Short news item. Published straight from draft, no review step."""

    __tablename__ = "news_items"

    id = Column(String(36), primary_key=True)
    title = Column(String(500), nullable=False)
    status = Column(
        Enum("draft", "published", "archived", name="news_status"),
        nullable=False,
        default="draft",
        index=True,
    )
    source_name = Column(String(200), nullable=True)
    category_id = Column(String(128), nullable=True, index=True)
    tags = Column(JSON, nullable=False, default=list)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(PUBLISHED_AT_INVARIANT, name="ck_news_items_published_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "content_type": "news",
            "title": self.title,
            "status": self.status,
            "source_name": self.source_name,
            "category_id": self.category_id,
            "tags": list(self.tags or []),
            "published_at": isoformat(self.published_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class ScheduledPublicationModel(Base):
    """A future publication of one piece of content."""

    __tablename__ = "scheduled_publications"

    id = Column(String(36), primary_key=True)
    content_id = Column(String(36), nullable=False)
    content_type = Column(content_type_enum, nullable=False, default="article")
    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    status = Column(
        Enum(
            "scheduled",
            "processing",
            "executed",
            "cancelled",
            "failed",
            name="schedule_status",
        ),
        nullable=False,
        default="scheduled",
    )
    auto_publish = Column(Boolean, nullable=False, default=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String(128), nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claimed_by = Column(String(64), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        # At most one active schedule per content item
        Index(
            "uq_scheduled_publications_active",
            "content_id",
            "content_type",
            unique=True,
            postgresql_where=text("status IN ('scheduled', 'processing')"),
            sqlite_where=text("status IN ('scheduled', 'processing')"),
        ),
        Index("ix_scheduled_publications_due", "status", "scheduled_for"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "content_id": self.content_id,
            "content_type": self.content_type,
            "scheduled_for": isoformat(self.scheduled_for),
            "timezone": self.timezone,
            "status": self.status,
            "auto_publish": self.auto_publish,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "notes": self.notes,
            "created_by": self.created_by,
            "claimed_at": isoformat(self.claimed_at),
            "claimed_by": self.claimed_by,
            "executed_at": isoformat(self.executed_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class SubscriptionModel(Base):
    """A user's standing interest in a category, tag or author."""

    __tablename__ = "user_subscriptions"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    type = Column(
        Enum("category", "tag", "author", name="subscription_type"), nullable=False
    )
    target = Column(String(200), nullable=False)
    frequency = Column(
        Enum("immediate", "daily", "weekly", name="subscription_frequency"),
        nullable=False,
        default="immediate",
    )
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "target", name="uq_user_subscriptions_key"),
        Index("ix_user_subscriptions_match", "type", "target", "is_active"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "target": self.target,
            "frequency": self.frequency,
            "is_active": self.is_active,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class NotificationPreferenceModel(Base):
    """Per-user delivery preferences."""

    __tablename__ = "notification_preferences"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), nullable=False, unique=True)
    in_app_enabled = Column(Boolean, nullable=False, default=True)
    email_enabled = Column(Boolean, nullable=False, default=True)
    push_enabled = Column(Boolean, nullable=False, default=False)
    digest_frequency = Column(
        Enum("none", "daily", "weekly", name="digest_frequency"),
        nullable=False,
        default="daily",
    )
    # "HH:MM" in the user's timezone
    quiet_hours_start = Column(String(5), nullable=True)
    quiet_hours_end = Column(String(5), nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")
    # {category_id: {"enabled": bool, "frequency": str}}
    categories = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def enabled_channels(self) -> list:
        channels = []
        if self.in_app_enabled:
            channels.append("in_app")
        if self.email_enabled:
            channels.append("email")
        if self.push_enabled:
            channels.append("push")
        return channels

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "user_id": self.user_id,
            "in_app_enabled": self.in_app_enabled,
            "email_enabled": self.email_enabled,
            "push_enabled": self.push_enabled,
            "digest_frequency": self.digest_frequency,
            "quiet_hours_start": self.quiet_hours_start,
            "quiet_hours_end": self.quiet_hours_end,
            "timezone": self.timezone,
            "categories": dict(self.categories or {}),
        }


class NotificationModel(Base):
    """A notification addressed to one user, delivered per channel."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    type = Column(
        Enum("new_article", "new_news", "digest", "schedule_due", name="notification_type"),
        nullable=False,
    )
    title = Column(String(500), nullable=False)
    message = Column(Text, nullable=True)
    data = Column(JSON, nullable=False, default=dict)
    content_id = Column(String(36), nullable=True)
    content_type = Column(content_type_enum, nullable=True)
    # Set on schedule reminders
    schedule_id = Column(String(36), nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    # {"in_app": "pending", "email": "sent", ...}
    delivery_status = Column(JSON, nullable=False, default=dict)
    delivery_attempts = Column(Integer, nullable=False, default=0)
    next_delivery_at = Column(DateTime(timezone=True), nullable=True)
    delivery_complete = Column(Boolean, nullable=False, default=False)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        # One notification per user per content item; reminders are per schedule
        Index(
            "uq_notifications_content",
            "user_id",
            "type",
            "content_id",
            unique=True,
            postgresql_where=text("type != 'schedule_due'"),
            sqlite_where=text("type != 'schedule_due'"),
        ),
        Index(
            "uq_notifications_schedule_reminder",
            "user_id",
            "schedule_id",
            unique=True,
            postgresql_where=text("type = 'schedule_due'"),
            sqlite_where=text("type = 'schedule_due'"),
        ),
        Index("ix_notifications_delivery", "delivery_complete", "scheduled_for"),
        Index("ix_notifications_user_read", "user_id", "is_read"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data or {},
            "content_id": self.content_id,
            "content_type": self.content_type,
            "schedule_id": self.schedule_id,
            "scheduled_for": isoformat(self.scheduled_for),
            "delivery_status": dict(self.delivery_status or {}),
            "delivery_attempts": self.delivery_attempts,
            "next_delivery_at": isoformat(self.next_delivery_at),
            "is_read": self.is_read,
            "read_at": isoformat(self.read_at),
            "created_at": isoformat(self.created_at),
        }


class DigestBucketModel(Base):
    """Content references waiting for a user's next digest."""

    __tablename__ = "notification_digest_buckets"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), nullable=False)
    digest_type = Column(digest_type_enum, nullable=False)
    pending_items = Column(JSON, nullable=False, default=list)
    period_start = Column(DateTime(timezone=True), nullable=True)
    # Bumped on every write; guards the read-and-clear
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "digest_type", name="uq_digest_buckets_user_type"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "digest_type": self.digest_type,
            "pending_items": list(self.pending_items or []),
            "period_start": isoformat(self.period_start),
            "version": self.version,
        }


class DigestRouteModel(Base):
    """Content routed to a user's digest. Outlives the bucket it was drained from."""

    __tablename__ = "notification_digest_routes"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), nullable=False)
    content_type = Column(content_type_enum, nullable=False)
    content_id = Column(String(36), nullable=False)
    digest_type = Column(digest_type_enum, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        # Each content item reaches a user's digests once
        UniqueConstraint(
            "user_id", "content_type", "content_id", name="uq_digest_routes_user_content"
        ),
    )


class PublishEventModel(Base):
    """Durable record of a publish awaiting subscriber fan-out."""

    __tablename__ = "publish_events"

    id = Column(String(36), primary_key=True)
    content_id = Column(String(36), nullable=False, index=True)
    content_type = Column(content_type_enum, nullable=False)
    status = Column(
        Enum("pending", "processing", "done", "failed", name="publish_event_status"),
        nullable=False,
        default="pending",
    )
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index("ix_publish_events_due", "status", "next_attempt_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "content_id": self.content_id,
            "content_type": self.content_type,
            "status": self.status,
            "attempts": self.attempts,
            "next_attempt_at": isoformat(self.next_attempt_at),
            "last_error": self.last_error,
            "result": self.result,
            "claimed_at": isoformat(self.claimed_at),
            "created_at": isoformat(self.created_at),
        }


class FailedDeliveryModel(Base):
    """A notification channel that exhausted its delivery attempts."""

    __tablename__ = "failed_deliveries"

    id = Column(String(36), primary_key=True)
    notification_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(128), nullable=False)
    channel = Column(String(20), nullable=False)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_resolved(self) -> bool:
        return as_utc(self.resolved_at) is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "channel": self.channel,
            "error": self.error,
            "attempts": self.attempts,
            "created_at": isoformat(self.created_at),
            "resolved_at": isoformat(self.resolved_at),
        }
