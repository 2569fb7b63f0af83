"""
Digest builder.

Users with daily or weekly frequency collect content references in a digest
bucket. When a bucket's period has elapsed, its items are read and cleared
in one version-guarded update and turned into a single ``digest``
notification, which the delivery path then sends like any other.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import DigestBucketModel, NotificationModel
from ..enums import Channel, DeliveryState, Frequency, NotificationType
from ..errors import ValidationError
from ..primitives import Clock, as_utc, enum_value, generate_ulid, utc_now

logger = structlog.get_logger()

PERIOD_LENGTH = {
    Frequency.DAILY.value: timedelta(days=1),
    Frequency.WEEKLY.value: timedelta(days=7),
}


def digest_type_for(value: Any) -> str:
    digest_type = enum_value(value)
    if digest_type not in PERIOD_LENGTH:
        raise ValidationError(f"Invalid digest type '{value}'; expected daily or weekly")
    return digest_type


def period_start_for(digest_type: str, when: datetime) -> datetime:
    """Start of the digest period containing ``when``.

    Daily periods start at 00:00 UTC, weekly periods on Monday 00:00 UTC.
    """
    start = as_utc(when).replace(hour=0, minute=0, second=0, microsecond=0)
    if digest_type == Frequency.WEEKLY.value:
        start = start - timedelta(days=start.weekday())
    return start


def pending_delivery_status() -> Dict[str, str]:
    return {channel.value: DeliveryState.PENDING.value for channel in Channel}


class DigestBuilder:
    """Assembles digest notifications from pending buckets."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def peek(self, user_id: str, digest_type: Any) -> List[Dict[str, Any]]:
        """Pending items for a user's digest, without clearing them."""
        bucket = self._bucket(user_id, digest_type_for(digest_type))
        return list(bucket.pending_items or []) if bucket else []

    def build_due(
        self,
        digest_type: Any,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> Dict[str, int]:
        """Build a digest for every bucket whose period has elapsed.

        Args:
            digest_type: "daily" or "weekly"
            now: Evaluation time (default: clock)
            force: Build every non-empty bucket regardless of its period

        Returns:
            {"built": n, "items": n, "skipped": n}
        """
        digest_type = digest_type_for(digest_type)
        now = as_utc(now or self.clock())
        period = PERIOD_LENGTH[digest_type]
        summary = {"built": 0, "items": 0, "skipped": 0}

        buckets = (
            self.db.query(DigestBucketModel)
            .filter(DigestBucketModel.digest_type == digest_type)
            .order_by(DigestBucketModel.user_id)
            .all()
        )
        for bucket in buckets:
            if not bucket.pending_items:
                continue
            period_start = as_utc(bucket.period_start) or now
            if not force and period_start + period > now:
                continue

            built = self._drain(bucket, digest_type, now)
            if built is None:
                summary["skipped"] += 1
            else:
                summary["built"] += 1
                summary["items"] += built

        if summary["built"] or summary["skipped"]:
            logger.info("digests_built", digest_type=digest_type, **summary)
        return summary

    def build_for_user(self, user_id: str, digest_type: Any) -> Optional[NotificationModel]:
        """Build one user's digest now, regardless of its period."""
        digest_type = digest_type_for(digest_type)
        bucket = self._bucket(user_id, digest_type)
        if bucket is None or not bucket.pending_items:
            return None
        if self._drain(bucket, digest_type, as_utc(self.clock())) is None:
            return None
        return (
            self.db.query(NotificationModel)
            .filter(
                NotificationModel.user_id == user_id,
                NotificationModel.type == NotificationType.DIGEST.value,
            )
            .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
            .first()
        )

    def _drain(
        self, bucket: DigestBucketModel, digest_type: str, now: datetime
    ) -> Optional[int]:
        """Clear the bucket and create its digest notification atomically.

        Returns:
            Number of items in the digest, or None if the bucket changed
            since it was read
        """
        items = list(bucket.pending_items or [])
        version = bucket.version
        user_id = bucket.user_id
        period_start = as_utc(bucket.period_start)

        try:
            result = self.db.execute(
                update(DigestBucketModel)
                .where(
                    DigestBucketModel.id == bucket.id,
                    DigestBucketModel.version == version,
                )
                .values(pending_items=[], period_start=None, version=version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.rollback()
                logger.debug("digest_bucket_changed", user_id=user_id, digest_type=digest_type)
                return None

            label = "Daily" if digest_type == Frequency.DAILY.value else "Weekly"
            self.db.add(
                NotificationModel(
                    id=generate_ulid(),
                    user_id=user_id,
                    type=NotificationType.DIGEST.value,
                    title=f"{label} digest: {len(items)} new item{'s' if len(items) != 1 else ''}",
                    message="\n".join(item.get("title", "") for item in items),
                    data={
                        "digest_type": digest_type,
                        "period_start": period_start.isoformat() if period_start else None,
                        "items": items,
                    },
                    content_id=None,
                    content_type=None,
                    scheduled_for=now,
                    delivery_status=pending_delivery_status(),
                    created_at=now,
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("digest_built", user_id=user_id, digest_type=digest_type, items=len(items))
        return len(items)

    def _bucket(self, user_id: str, digest_type: str) -> Optional[DigestBucketModel]:
        return (
            self.db.query(DigestBucketModel)
            .filter(
                DigestBucketModel.user_id == user_id,
                DigestBucketModel.digest_type == digest_type,
            )
            .first()
        )
