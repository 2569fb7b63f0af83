"""
Notification delivery.

Notifications become deliverable at ``scheduled_for`` (immediately, at the
end of a user's quiet hours, or when a digest is built). Each channel is
tracked separately in ``delivery_status``. A channel failure is retried with
exponential backoff; after ``delivery_max_attempts`` the channel is marked
failed and lands in the failed-delivery queue for operators.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import httpx
import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import FailedDeliveryModel, NotificationModel
from ..enums import Channel, DeliveryState
from ..errors import DeliveryError, NotFoundError, StateError
from ..primitives import Clock, as_utc, generate_ulid, utc_now
from .preferences import PreferenceEvaluator

logger = structlog.get_logger()


class DeliveryChannel(ABC):
    """Sends a notification through one channel.

    Implementations raise DeliveryError when the send fails.
    """

    name: str = ""

    @abstractmethod
    def send(self, notification: NotificationModel) -> None:
        ...


class InAppChannel(DeliveryChannel):
    """The stored notification row is the in-app delivery."""

    name = Channel.IN_APP.value

    def send(self, notification: NotificationModel) -> None:
        return None


class LogChannel(DeliveryChannel):
    """Logs instead of sending. Used when no delivery webhook is configured."""

    def __init__(self, name: str):
        self.name = name

    def send(self, notification: NotificationModel) -> None:
        logger.info(
            "notification_logged",
            channel=self.name,
            notification_id=notification.id,
            user_id=notification.user_id,
            title=notification.title,
        )


class WebhookChannel(DeliveryChannel):
    """Hands the notification to the delivery collaborator over HTTP."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.name = name
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, notification: NotificationModel) -> None:
        payload = {
            "channel": self.name,
            "notification": notification.to_dict(),
        }
        try:
            response = self.client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(self.name, str(e)) from e

    def close(self) -> None:
        self.client.close()


def default_channels(settings: Settings) -> Dict[str, DeliveryChannel]:
    channels: Dict[str, DeliveryChannel] = {Channel.IN_APP.value: InAppChannel()}
    for channel in (Channel.EMAIL.value, Channel.PUSH.value):
        if settings.delivery_webhook_url:
            channels[channel] = WebhookChannel(
                channel,
                settings.delivery_webhook_url,
                timeout=settings.delivery_timeout_seconds,
            )
        else:
            channels[channel] = LogChannel(channel)
    return channels


class DeliveryDispatcher:
    """Delivers due notifications through the user's enabled channels."""

    def __init__(
        self,
        db: Session,
        channels: Optional[Dict[str, DeliveryChannel]] = None,
        preferences: Optional[PreferenceEvaluator] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()
        self.channels = channels if channels is not None else default_channels(self.settings)
        self.preferences = preferences or PreferenceEvaluator(
            db, settings=self.settings, clock=clock
        )

    def deliver_pending(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> Dict[str, int]:
        """Deliver every notification that is due.

        Returns:
            {"delivered": n, "retried": n, "failed": n}
        """
        now = as_utc(now or self.clock())
        due = (
            self.db.query(NotificationModel)
            .filter(
                NotificationModel.delivery_complete.is_(False),
                NotificationModel.scheduled_for <= now,
                or_(
                    NotificationModel.next_delivery_at.is_(None),
                    NotificationModel.next_delivery_at <= now,
                ),
            )
            .order_by(NotificationModel.scheduled_for.asc())
            .limit(limit)
            .all()
        )

        summary = {"delivered": 0, "retried": 0, "failed": 0}
        for notification in due:
            outcome = self.deliver(notification, now)
            summary[outcome] += 1

        if due:
            logger.info("deliveries_processed", **summary)
        return summary

    def deliver(self, notification: NotificationModel, now: datetime) -> str:
        """Attempt every pending channel of one notification.

        Returns:
            "delivered", "retried" or "failed"
        """
        enabled = set(self.preferences.enabled_channels(notification.user_id))
        statuses: Dict[str, str] = dict(notification.delivery_status or {})
        errors: Dict[str, str] = {}

        for channel_name, state in statuses.items():
            if state != DeliveryState.PENDING.value:
                continue
            channel = self.channels.get(channel_name)
            if channel_name not in enabled or channel is None:
                statuses[channel_name] = DeliveryState.SKIPPED.value
                continue
            try:
                channel.send(notification)
            except DeliveryError as e:
                errors[channel_name] = e.reason
                continue
            statuses[channel_name] = DeliveryState.SENT.value

        outcome = "delivered"
        if errors:
            attempts = (notification.delivery_attempts or 0) + 1
            notification.delivery_attempts = attempts
            if attempts >= self.settings.delivery_max_attempts:
                outcome = "failed"
                for channel_name, error in errors.items():
                    statuses[channel_name] = DeliveryState.FAILED.value
                    self.db.add(
                        FailedDeliveryModel(
                            id=generate_ulid(),
                            notification_id=notification.id,
                            user_id=notification.user_id,
                            channel=channel_name,
                            error=error[:2000],
                            attempts=attempts,
                            created_at=now,
                        )
                    )
                notification.next_delivery_at = None
            else:
                outcome = "retried"
                delay = self.settings.delivery_backoff_base_seconds * 2 ** attempts
                notification.next_delivery_at = now + timedelta(seconds=delay)

        notification.delivery_status = statuses
        notification.delivery_complete = all(
            state != DeliveryState.PENDING.value for state in statuses.values()
        )
        self.db.commit()

        if errors:
            logger.warning(
                "notification_delivery_failed",
                notification_id=notification.id,
                channels=sorted(errors),
                attempts=notification.delivery_attempts,
                final=outcome == "failed",
            )
        return outcome

    # -------------------------------------------------------------------------
    # Failed-delivery queue
    # -------------------------------------------------------------------------

    def list_failed(self, limit: int = 50, include_resolved: bool = False) -> List[FailedDeliveryModel]:
        query = self.db.query(FailedDeliveryModel)
        if not include_resolved:
            query = query.filter(FailedDeliveryModel.resolved_at.is_(None))
        return query.order_by(FailedDeliveryModel.created_at.desc()).limit(limit).all()

    def resolve_failed(self, failed_id: str) -> FailedDeliveryModel:
        """Mark a failed delivery as handled without retrying it."""
        failed = self._failed(failed_id)
        failed.resolved_at = self.clock()
        self.db.commit()
        self.db.refresh(failed)
        return failed

    def requeue_failed(self, failed_id: str) -> NotificationModel:
        """Put the failed channel back to pending and resolve the entry."""
        failed = self._failed(failed_id)
        notification = self.db.get(NotificationModel, failed.notification_id)
        if notification is None:
            raise NotFoundError("Notification", failed.notification_id)

        statuses = dict(notification.delivery_status or {})
        statuses[failed.channel] = DeliveryState.PENDING.value
        notification.delivery_status = statuses
        notification.delivery_complete = False
        notification.delivery_attempts = 0
        notification.next_delivery_at = None
        failed.resolved_at = self.clock()
        self.db.commit()
        self.db.refresh(notification)
        logger.info("failed_delivery_requeued", failed_id=failed_id, channel=failed.channel)
        return notification

    def _failed(self, failed_id: str) -> FailedDeliveryModel:
        failed = self.db.get(FailedDeliveryModel, failed_id)
        if failed is None:
            raise NotFoundError("FailedDelivery", failed_id)
        if failed.is_resolved:
            raise StateError("resolved", "resolved", f"Failed delivery '{failed_id}' is already resolved")
        return failed


class NotificationInbox:
    """Read side of notifications for one user."""

    def __init__(self, db: Session, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> List[NotificationModel]:
        """Visible notifications (scheduled_for reached), newest first."""
        query = self.db.query(NotificationModel).filter(
            NotificationModel.user_id == user_id,
            NotificationModel.scheduled_for <= as_utc(now or self.clock()),
        )
        if unread_only:
            query = query.filter(NotificationModel.is_read.is_(False))
        return (
            query.order_by(NotificationModel.scheduled_for.desc(), NotificationModel.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def unread_count(self, user_id: str) -> int:
        return (
            self.db.query(NotificationModel)
            .filter(
                NotificationModel.user_id == user_id,
                NotificationModel.is_read.is_(False),
                NotificationModel.scheduled_for <= as_utc(self.clock()),
            )
            .count()
        )

    def mark_read(self, notification_id: str, user_id: str) -> NotificationModel:
        notification = self.db.get(NotificationModel, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFoundError("Notification", notification_id)
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = self.clock()
            self.db.commit()
            self.db.refresh(notification)
        return notification

    def mark_all_read(self, user_id: str) -> int:
        now = self.clock()
        notifications = (
            self.db.query(NotificationModel)
            .filter(
                NotificationModel.user_id == user_id,
                NotificationModel.is_read.is_(False),
                NotificationModel.scheduled_for <= as_utc(now),
            )
            .all()
        )
        for notification in notifications:
            notification.is_read = True
            notification.read_at = now
        self.db.commit()
        return len(notifications)
