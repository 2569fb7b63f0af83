"""Create content desk tables

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-17

Articles, news items, scheduled publications, the content audit log,
subscriptions, preferences, notifications, digest buckets and routes, the
publish event queue and the failed-delivery queue.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "a1c4e7f20b31"
down_revision = None
branch_labels = None
depends_on = None

PUBLISHED_AT_INVARIANT = "(status = 'published') = (published_at IS NOT NULL)"


# Named types shared by several tables are created once, up front
CONTENT_TYPE = postgresql.ENUM("article", "news", name="content_type", create_type=False)
DIGEST_TYPE = postgresql.ENUM("daily", "weekly", name="digest_type", create_type=False)


def _content_type() -> sa.Enum:
    return CONTENT_TYPE


def _digest_type() -> sa.Enum:
    return DIGEST_TYPE


def upgrade() -> None:
    bind = op.get_bind()
    CONTENT_TYPE.create(bind, checkfirst=True)
    DIGEST_TYPE.create(bind, checkfirst=True)

    op.create_table(
        "articles",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column(
            "status",
            sa.Enum("draft", "review", "published", "archived", name="article_status"),
            nullable=False,
        ),
        sa.Column("author_id", sa.String(length=128), nullable=False),
        sa.Column("category_id", sa.String(length=128), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(PUBLISHED_AT_INVARIANT, name="ck_articles_published_at"),
    )
    op.create_index("ix_articles_status", "articles", ["status"])
    op.create_index("ix_articles_author_id", "articles", ["author_id"])
    op.create_index("ix_articles_category_id", "articles", ["category_id"])
    op.create_index("ix_articles_status_published_at", "articles", ["status", "published_at"])

    op.create_table(
        "news_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column(
            "status",
            sa.Enum("draft", "published", "archived", name="news_status"),
            nullable=False,
        ),
        sa.Column("source_name", sa.String(length=200), nullable=True),
        sa.Column("category_id", sa.String(length=128), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(PUBLISHED_AT_INVARIANT, name="ck_news_items_published_at"),
    )
    op.create_index("ix_news_items_status", "news_items", ["status"])
    op.create_index("ix_news_items_category_id", "news_items", ["category_id"])

    op.create_table(
        "scheduled_publications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("content_id", sa.String(length=36), nullable=False),
        sa.Column("content_type", _content_type(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "scheduled", "processing", "executed", "cancelled", "failed",
                name="schedule_status",
            ),
            nullable=False,
        ),
        sa.Column("auto_publish", sa.Boolean(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(length=64), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    # At most one active schedule per content item
    op.create_index(
        "uq_scheduled_publications_active",
        "scheduled_publications",
        ["content_id", "content_type"],
        unique=True,
        postgresql_where=sa.text("status IN ('scheduled', 'processing')"),
        sqlite_where=sa.text("status IN ('scheduled', 'processing')"),
    )
    op.create_index(
        "ix_scheduled_publications_due", "scheduled_publications", ["status", "scheduled_for"]
    )

    op.create_table(
        "content_audit_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("content_id", sa.String(length=36), nullable=False),
        sa.Column("content_type", sa.String(length=20), nullable=False),
        sa.Column("changed_by", sa.String(length=128), nullable=False),
        sa.Column("change_type", sa.String(length=40), nullable=False),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_content_audit_log_changed_by", "content_audit_log", ["changed_by"])
    op.create_index("ix_content_audit_log_change_type", "content_audit_log", ["change_type"])
    op.create_index("ix_content_audit_log_created_at", "content_audit_log", ["created_at"])
    op.create_index(
        "ix_content_audit_log_content_ts", "content_audit_log", ["content_id", "created_at"]
    )

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "type",
            sa.Enum("category", "tag", "author", name="subscription_type"),
            nullable=False,
        ),
        sa.Column("target", sa.String(length=200), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("immediate", "daily", "weekly", name="subscription_frequency"),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "type", "target", name="uq_user_subscriptions_key"),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])
    op.create_index(
        "ix_user_subscriptions_match", "user_subscriptions", ["type", "target", "is_active"]
    )

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False, unique=True),
        sa.Column("in_app_enabled", sa.Boolean(), nullable=False),
        sa.Column("email_enabled", sa.Boolean(), nullable=False),
        sa.Column("push_enabled", sa.Boolean(), nullable=False),
        sa.Column(
            "digest_frequency",
            sa.Enum("none", "daily", "weekly", name="digest_frequency"),
            nullable=False,
        ),
        sa.Column("quiet_hours_start", sa.String(length=5), nullable=True),
        sa.Column("quiet_hours_end", sa.String(length=5), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("categories", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "new_article", "new_news", "digest", "schedule_due",
                name="notification_type",
            ),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("content_id", sa.String(length=36), nullable=True),
        sa.Column("content_type", _content_type(), nullable=True),
        sa.Column("schedule_id", sa.String(length=36), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_status", sa.JSON(), nullable=False),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False),
        sa.Column("next_delivery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_complete", sa.Boolean(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "uq_notifications_content",
        "notifications",
        ["user_id", "type", "content_id"],
        unique=True,
        postgresql_where=sa.text("type != 'schedule_due'"),
        sqlite_where=sa.text("type != 'schedule_due'"),
    )
    op.create_index(
        "uq_notifications_schedule_reminder",
        "notifications",
        ["user_id", "schedule_id"],
        unique=True,
        postgresql_where=sa.text("type = 'schedule_due'"),
        sqlite_where=sa.text("type = 'schedule_due'"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index(
        "ix_notifications_delivery", "notifications", ["delivery_complete", "scheduled_for"]
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "is_read"])

    op.create_table(
        "notification_digest_buckets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "digest_type", _digest_type(), nullable=False
        ),
        sa.Column("pending_items", sa.JSON(), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "digest_type", name="uq_digest_buckets_user_type"),
    )

    op.create_table(
        "notification_digest_routes",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("content_type", _content_type(), nullable=False),
        sa.Column("content_id", sa.String(length=36), nullable=False),
        sa.Column("digest_type", _digest_type(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id", "content_type", "content_id", name="uq_digest_routes_user_content"
        ),
    )

    op.create_table(
        "publish_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("content_id", sa.String(length=36), nullable=False),
        sa.Column("content_type", _content_type(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "processing", "done", "failed", name="publish_event_status"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_publish_events_content_id", "publish_events", ["content_id"])
    op.create_index("ix_publish_events_due", "publish_events", ["status", "next_attempt_at"])

    op.create_table(
        "failed_deliveries",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("notification_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_failed_deliveries_notification_id", "failed_deliveries", ["notification_id"]
    )


def downgrade() -> None:
    op.drop_table("failed_deliveries")
    op.drop_table("publish_events")
    op.drop_table("notification_digest_routes")
    op.drop_table("notification_digest_buckets")
    op.drop_table("notifications")
    op.drop_table("notification_preferences")
    op.drop_table("user_subscriptions")
    op.drop_table("content_audit_log")
    op.drop_table("scheduled_publications")
    op.drop_table("news_items")
    op.drop_table("articles")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in (
            "publish_event_status",
            "digest_type",
            "notification_type",
            "digest_frequency",
            "subscription_frequency",
            "subscription_type",
            "schedule_status",
            "content_type",
            "news_status",
            "article_status",
        ):
            sa.Enum(name=enum_name).drop(bind, checkfirst=True)
