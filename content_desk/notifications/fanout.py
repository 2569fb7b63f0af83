"""
Subscriber fan-out on publish.

For a newly published piece of content:
1. Resolve active subscriptions matching its category, tags or author
2. Collapse them to distinct users (the most immediate frequency wins)
3. Apply each user's category overrides and quiet hours
4. Route: immediate notification, deferred notification, or digest bucket

Fan-out is idempotent per (user, content), so a publish event can be
processed again after a partial failure without duplicating anything.
Publish events are claimed with the same conditional update the scheduler
uses and retried with exponential backoff.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..content.store import ContentRef, load_content
from ..db.models import (
    DigestBucketModel,
    DigestRouteModel,
    NotificationModel,
    PublishEventModel,
)
from ..enums import (
    FREQUENCY_RANK,
    ContentType,
    EventStatus,
    Frequency,
    NotificationType,
)
from ..errors import ConflictError, StateError
from ..primitives import Clock, as_utc, enum_value, generate_ulid, utc_now
from .digest import pending_delivery_status, period_start_for
from .preferences import PreferenceEvaluator
from .subscriptions import SubscriptionRegistry

logger = structlog.get_logger()

NOTIFICATION_TYPE_FOR = {
    ContentType.ARTICLE.value: NotificationType.NEW_ARTICLE.value,
    ContentType.NEWS.value: NotificationType.NEW_NEWS.value,
}

# Optimistic bucket append retries before giving up on a user
BUCKET_APPEND_RETRIES = 3


class FanoutEngine:
    """Turns a publish into per-user notifications and digest entries.

    Usage:
        engine = FanoutEngine(db)
        result = engine.notify_on_publish(article.id)
        # {"notified": 3, "queued": 1, "skipped": 0, "failed": 0}
    """

    def __init__(
        self,
        db: Session,
        registry: Optional[SubscriptionRegistry] = None,
        preferences: Optional[PreferenceEvaluator] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()
        self.registry = registry or SubscriptionRegistry(db, clock=clock)
        self.preferences = preferences or PreferenceEvaluator(
            db, settings=self.settings, clock=clock
        )

    def notify_on_publish(
        self, content_id: str, content_type: Any = ContentType.ARTICLE
    ) -> Dict[str, int]:
        """Notify every interested user about published content.

        Returns:
            {"notified": n, "queued": n, "skipped": n, "failed": n} where
            notified counts notifications created and queued counts digest
            bucket entries
        """
        content_type = enum_value(content_type)
        content = load_content(self.db, content_type, content_id)
        if content.status != "published":
            raise StateError(content.status, "published", "Only published content is fanned out")
        ref = ContentRef.from_model(content)

        recipients = self._recipients(ref)
        now = as_utc(self.clock())
        summary = {"notified": 0, "queued": 0, "skipped": 0, "failed": 0}

        for user_id, frequency in recipients.items():
            try:
                outcome = self._route(user_id, frequency, ref, now)
            except Exception:
                self.db.rollback()
                logger.exception(
                    "fanout_recipient_failed", user_id=user_id, content_id=content_id
                )
                summary["failed"] += 1
                continue
            summary[outcome] += 1

        logger.info(
            "fanout_completed",
            content_id=content_id,
            content_type=content_type,
            recipients=len(recipients),
            **summary,
        )
        return summary

    def _recipients(self, ref: ContentRef) -> Dict[str, str]:
        """Distinct users with the most immediate matching frequency."""
        recipients: Dict[str, str] = {}
        for subscription in self.registry.find_matching(
            category_id=ref.category_id, tags=ref.tags, author_id=ref.author_id
        ):
            current = recipients.get(subscription.user_id)
            if current is None or FREQUENCY_RANK[subscription.frequency] < FREQUENCY_RANK[current]:
                recipients[subscription.user_id] = subscription.frequency
        return recipients

    def _route(self, user_id: str, frequency: str, ref: ContentRef, now: datetime) -> str:
        effective = self.preferences.get_effective_frequency(
            user_id, ref.category_id, frequency
        )
        if effective is None:
            return "skipped"

        if effective == Frequency.IMMEDIATE.value:
            quiet = self.preferences.get_quiet_hours_status(user_id, now)
            deliver_at = quiet.next_active_time if quiet.in_quiet_hours else now
            return "notified" if self._notify(user_id, ref, deliver_at, now) else "skipped"

        if not self.preferences.wants_digests(user_id):
            return "skipped"
        return "queued" if self._append_to_bucket(user_id, effective, ref, now) else "skipped"

    def _notify(self, user_id: str, ref: ContentRef, deliver_at: datetime, now: datetime) -> bool:
        """Create the user's notification unless one exists for this content."""
        notification_type = NOTIFICATION_TYPE_FOR[ref.content_type]
        existing = (
            self.db.query(NotificationModel.id)
            .filter(
                NotificationModel.user_id == user_id,
                NotificationModel.type == notification_type,
                NotificationModel.content_id == ref.content_id,
            )
            .first()
        )
        if existing is not None:
            return False

        label = "article" if ref.content_type == ContentType.ARTICLE.value else "news"
        self.db.add(
            NotificationModel(
                id=generate_ulid(),
                user_id=user_id,
                type=notification_type,
                title=f"New {label}: {ref.title}",
                message=ref.title,
                data={
                    "content_id": ref.content_id,
                    "content_type": ref.content_type,
                    "category_id": ref.category_id,
                    "deferred": deliver_at > now,
                },
                content_id=ref.content_id,
                content_type=ref.content_type,
                scheduled_for=deliver_at,
                delivery_status=pending_delivery_status(),
                created_at=now,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent fan-out created it first
            self.db.rollback()
            return False
        return True

    def _append_to_bucket(
        self, user_id: str, digest_type: str, ref: ContentRef, now: datetime
    ) -> bool:
        """Add the content to the user's digest bucket once.

        A route row records that the content reached this user's digests, so
        replaying the event after the bucket was drained adds nothing.

        Raises:
            ConflictError: the bucket kept changing under us
        """
        item = ref.to_item()
        item["added_at"] = now.isoformat()

        for _ in range(BUCKET_APPEND_RETRIES):
            if self._already_routed(user_id, ref):
                return False

            bucket = (
                self.db.query(DigestBucketModel)
                .filter(
                    DigestBucketModel.user_id == user_id,
                    DigestBucketModel.digest_type == digest_type,
                )
                .first()
            )
            if bucket is None:
                self.db.add(
                    DigestBucketModel(
                        id=generate_ulid(),
                        user_id=user_id,
                        digest_type=digest_type,
                        pending_items=[item],
                        period_start=period_start_for(digest_type, now),
                        version=1,
                        updated_at=now,
                    )
                )
                self.db.add(self._route_row(user_id, digest_type, ref, now))
                try:
                    self.db.commit()
                except IntegrityError:
                    self.db.rollback()
                    continue
                return True

            items = list(bucket.pending_items or [])
            result = self.db.execute(
                update(DigestBucketModel)
                .where(
                    DigestBucketModel.id == bucket.id,
                    DigestBucketModel.version == bucket.version,
                )
                .values(
                    pending_items=items + [item],
                    period_start=as_utc(bucket.period_start) or period_start_for(digest_type, now),
                    version=bucket.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self.db.add(self._route_row(user_id, digest_type, ref, now))
                try:
                    self.db.commit()
                except IntegrityError:
                    self.db.rollback()
                    continue
                return True
            self.db.rollback()

        raise ConflictError(f"Digest bucket for '{user_id}' kept changing")

    def _already_routed(self, user_id: str, ref: ContentRef) -> bool:
        return (
            self.db.query(DigestRouteModel.id)
            .filter(
                DigestRouteModel.user_id == user_id,
                DigestRouteModel.content_type == ref.content_type,
                DigestRouteModel.content_id == ref.content_id,
            )
            .first()
            is not None
        )

    @staticmethod
    def _route_row(
        user_id: str, digest_type: str, ref: ContentRef, now: datetime
    ) -> DigestRouteModel:
        return DigestRouteModel(
            id=generate_ulid(),
            user_id=user_id,
            content_type=ref.content_type,
            content_id=ref.content_id,
            digest_type=digest_type,
            created_at=now,
        )

    # -------------------------------------------------------------------------
    # Publish event queue
    # -------------------------------------------------------------------------

    def process_event(self, event_id: str) -> bool:
        """Fan out one pending publish event.

        Returns:
            True if the event completed, False if it was claimed elsewhere or
            has to be retried
        """
        now = as_utc(self.clock())
        claimed = self.db.execute(
            update(PublishEventModel)
            .where(
                PublishEventModel.id == event_id,
                PublishEventModel.status == EventStatus.PENDING.value,
            )
            .values(status=EventStatus.PROCESSING.value, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if claimed.rowcount == 0:
            logger.debug("publish_event_claimed_elsewhere", event_id=event_id)
            return False

        event = self.db.get(PublishEventModel, event_id)
        try:
            result = self.notify_on_publish(event.content_id, event.content_type)
        except Exception as e:
            self.db.rollback()
            self._retry(event_id, str(e))
            return False

        if result["failed"]:
            self._retry(event_id, f"{result['failed']} recipient(s) failed", result)
            return False

        self.db.execute(
            update(PublishEventModel)
            .where(PublishEventModel.id == event_id)
            .values(
                status=EventStatus.DONE.value,
                result=result,
                last_error=None,
                claimed_at=None,
                updated_at=as_utc(self.clock()),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return True

    def process_pending(self, limit: int = 50) -> Dict[str, int]:
        """Process every due pending publish event.

        Returns:
            {"done": n, "retried": n, "skipped": n}
        """
        now = as_utc(self.clock())
        event_ids = [
            row.id
            for row in self.db.query(PublishEventModel.id)
            .filter(
                PublishEventModel.status == EventStatus.PENDING.value,
                PublishEventModel.next_attempt_at <= now,
            )
            .order_by(PublishEventModel.created_at.asc())
            .limit(limit)
            .all()
        ]
        summary = {"done": 0, "retried": 0, "skipped": 0}
        for event_id in event_ids:
            if self.process_event(event_id):
                summary["done"] += 1
            elif self._status(event_id) in (EventStatus.PENDING.value, EventStatus.FAILED.value):
                summary["retried"] += 1
            else:
                summary["skipped"] += 1
        return summary

    def process_for_content(self, content_id: str, content_type: Any = ContentType.ARTICLE) -> int:
        """Process pending events for one content item.

        Wired as the lifecycle ``on_publish`` hook so fan-out happens right
        after a publish; the worker picks up anything this misses.
        """
        event_ids = [
            row.id
            for row in self.db.query(PublishEventModel.id)
            .filter(
                PublishEventModel.content_id == content_id,
                PublishEventModel.content_type == enum_value(content_type),
                PublishEventModel.status == EventStatus.PENDING.value,
            )
            .all()
        ]
        return sum(1 for event_id in event_ids if self.process_event(event_id))

    def recover_stuck(self) -> int:
        """Return events stuck in 'processing' past the lease to 'pending'.

        Fan-out is idempotent per (user, content), so replaying a recovered
        event only reaches the recipients the dead worker missed.

        Returns:
            Number of events recovered
        """
        now = as_utc(self.clock())
        cutoff = now - timedelta(seconds=self.settings.fanout_processing_lease_seconds)
        result = self.db.execute(
            update(PublishEventModel)
            .where(
                PublishEventModel.status == EventStatus.PROCESSING.value,
                PublishEventModel.claimed_at < cutoff,
            )
            .values(
                status=EventStatus.PENDING.value,
                claimed_at=None,
                next_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount:
            logger.warning("stuck_publish_events_recovered", count=result.rowcount)
        return result.rowcount

    def list_events(self, status: Optional[Any] = None, limit: int = 100) -> List[PublishEventModel]:
        query = self.db.query(PublishEventModel)
        if status is not None:
            query = query.filter(PublishEventModel.status == enum_value(status))
        return query.order_by(PublishEventModel.created_at.desc()).limit(limit).all()

    def _retry(self, event_id: str, error: str, result: Optional[Dict[str, int]] = None) -> None:
        event = self.db.get(PublishEventModel, event_id)
        self.db.refresh(event)
        attempts = (event.attempts or 0) + 1
        exhausted = attempts >= self.settings.fanout_max_attempts
        now = as_utc(self.clock())
        delay = timedelta(seconds=self.settings.fanout_backoff_base_seconds * 2 ** attempts)

        self.db.execute(
            update(PublishEventModel)
            .where(PublishEventModel.id == event_id)
            .values(
                status=(EventStatus.FAILED if exhausted else EventStatus.PENDING).value,
                attempts=attempts,
                next_attempt_at=now + delay,
                last_error=error[:2000],
                result=result,
                claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.warning(
            "publish_event_retry" if not exhausted else "publish_event_failed",
            event_id=event_id,
            attempts=attempts,
            error=error,
        )

    def _status(self, event_id: str) -> Optional[str]:
        event = self.db.get(PublishEventModel, event_id)
        if event is None:
            return None
        self.db.refresh(event)
        return event.status
