"""
Scheduled publication.

Execution flow for ``process_due``:
1. Select: rows with status='scheduled' and scheduled_for <= now
2. Claim: conditional UPDATE scheduled -> processing; zero rows means another
   worker won the row, which is counted as skipped
3. Execute: run the publish handler registered for the content type
4. Complete: mark executed, or count an attempt and requeue / fail

The scheduler holds no state between calls. Any number of processes may run
``process_due`` concurrently; the claim guarantees each due row is executed
by exactly one of them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..content.lifecycle import LifecycleController
from ..content.store import load_content
from ..content.transitions import EDITORIAL, PUBLISHABLE_STATUS
from ..db.audit_service import AuditService
from ..db.models import NotificationModel, ScheduledPublicationModel
from ..enums import (
    ChangeType,
    ContentType,
    DeliveryState,
    NotificationType,
    Role,
    ScheduleStatus,
)
from ..errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from ..primitives import (
    SYSTEM_ACTOR,
    Actor,
    Clock,
    enum_value,
    generate_ulid,
    isoformat,
    resolve_timezone,
    to_utc,
    utc_now,
)

logger = structlog.get_logger()

PublishHandler = Callable[[str], Any]

SCHEDULING_ROLES = EDITORIAL | {Role.SYSTEM}


class Scheduler:
    """Schedules content for future publication and executes due schedules.

    Usage:
        scheduler = Scheduler(db)
        scheduler.schedule_publication(article.id, when, "Europe/Berlin", True, editor)
        summary = scheduler.process_due()
    """

    def __init__(
        self,
        db: Session,
        lifecycle: Optional[LifecycleController] = None,
        handlers: Optional[Dict[str, PublishHandler]] = None,
        audit: Optional[AuditService] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        worker_id: Optional[str] = None,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()
        self.audit = audit or AuditService(db, clock=clock)
        self.lifecycle = lifecycle or LifecycleController(
            db, audit=self.audit, scheduler=self, settings=self.settings, clock=clock
        )
        self.worker_id = worker_id or f"scheduler-{uuid.uuid4().hex[:8]}"
        self.handlers: Dict[str, PublishHandler] = {
            ContentType.ARTICLE.value: lambda content_id: self.lifecycle.publish_now(
                content_id, SYSTEM_ACTOR
            ),
            ContentType.NEWS.value: lambda content_id: self.lifecycle.publish_news(
                content_id, SYSTEM_ACTOR
            ),
        }
        if handlers:
            self.handlers.update(handlers)

    def register_handler(self, content_type: Any, handler: PublishHandler) -> None:
        self.handlers[enum_value(content_type)] = handler

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def schedule_publication(
        self,
        content_id: str,
        scheduled_for: datetime,
        timezone: str = "UTC",
        auto_publish: bool = True,
        actor: Actor = SYSTEM_ACTOR,
        content_type: Any = ContentType.ARTICLE,
        notes: Optional[str] = None,
    ) -> ScheduledPublicationModel:
        """Schedule content for publication.

        Any existing active schedule for the same content is cancelled in
        the same transaction, so at most one is ever active.

        Raises:
            PermissionDeniedError: actor may not schedule
            ValidationError: unknown timezone or time not in the future
            NotFoundError: content does not exist
            StateError: content is not awaiting publication
            ConflictError: the content is being published right now
        """
        self._authorize(actor)
        content_type = enum_value(content_type)
        tz_name = timezone or "UTC"
        resolve_timezone(tz_name)
        when = to_utc(scheduled_for, tz_name)

        now = self.clock()
        if when <= now:
            raise ValidationError("Scheduled time must be in the future")

        content = load_content(self.db, content_type, content_id)
        expected = PUBLISHABLE_STATUS[content_type]
        if content.status != expected:
            raise StateError(content.status, ScheduleStatus.SCHEDULED.value)

        in_flight = (
            self.db.query(ScheduledPublicationModel)
            .filter(
                ScheduledPublicationModel.content_id == content_id,
                ScheduledPublicationModel.content_type == content_type,
                ScheduledPublicationModel.status == ScheduleStatus.PROCESSING.value,
            )
            .first()
        )
        if in_flight is not None:
            raise ConflictError(f"Content '{content_id}' is being published right now")

        schedule = ScheduledPublicationModel(
            id=generate_ulid(),
            content_id=content_id,
            content_type=content_type,
            scheduled_for=when,
            timezone=tz_name,
            status=ScheduleStatus.SCHEDULED.value,
            auto_publish=auto_publish,
            attempts=0,
            notes=notes,
            created_by=actor.actor_id,
            created_at=now,
            updated_at=now,
        )
        try:
            replaced = self.db.execute(
                update(ScheduledPublicationModel)
                .where(
                    ScheduledPublicationModel.content_id == content_id,
                    ScheduledPublicationModel.content_type == content_type,
                    ScheduledPublicationModel.status == ScheduleStatus.SCHEDULED.value,
                )
                .values(status=ScheduleStatus.CANCELLED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            self.db.add(schedule)
            self.db.flush()
            self.audit.write(
                content_id,
                actor.actor_id,
                ChangeType.SCHEDULED,
                old_values={"status": content.status},
                new_values={
                    "schedule_id": schedule.id,
                    "scheduled_for": when.isoformat(),
                    "timezone": tz_name,
                    "auto_publish": auto_publish,
                    "replaced_schedules": replaced,
                },
                notes=notes,
                content_type=content_type,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(
                f"Another schedule for '{content_id}' was created concurrently"
            ) from None
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "publication_scheduled",
            schedule_id=schedule.id,
            content_id=content_id,
            content_type=content_type,
            scheduled_for=when.isoformat(),
            replaced=replaced,
        )
        return schedule

    def cancel_schedule(self, schedule_id: str, actor: Optional[Actor] = None) -> bool:
        """Cancel a schedule that has not been claimed yet.

        Returns:
            True if cancelled, False if the row already left 'scheduled'
        """
        if actor is not None:
            self._authorize(actor)
        schedule = self.get(schedule_id)
        now = self.clock()
        try:
            result = self.db.execute(
                update(ScheduledPublicationModel)
                .where(
                    ScheduledPublicationModel.id == schedule_id,
                    ScheduledPublicationModel.status == ScheduleStatus.SCHEDULED.value,
                )
                .values(status=ScheduleStatus.CANCELLED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.rollback()
                logger.info(
                    "schedule_cancel_ignored",
                    schedule_id=schedule_id,
                    status=schedule.status,
                )
                return False
            self.audit.write(
                schedule.content_id,
                actor.actor_id if actor else SYSTEM_ACTOR.actor_id,
                ChangeType.SCHEDULE_CANCELLED,
                old_values={"status": ScheduleStatus.SCHEDULED.value},
                new_values={
                    "schedule_id": schedule_id,
                    "status": ScheduleStatus.CANCELLED.value,
                },
                content_type=schedule.content_type,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("schedule_cancelled", schedule_id=schedule_id)
        return True

    def reschedule(
        self,
        schedule_id: str,
        new_time: datetime,
        timezone: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> ScheduledPublicationModel:
        """Move a not-yet-claimed schedule to a new time."""
        if actor is not None:
            self._authorize(actor)
        schedule = self.get(schedule_id)
        if schedule.status != ScheduleStatus.SCHEDULED.value:
            raise StateError(schedule.status, ScheduleStatus.SCHEDULED.value)

        tz_name = timezone or schedule.timezone
        resolve_timezone(tz_name)
        when = to_utc(new_time, tz_name)
        now = self.clock()
        if when <= now:
            raise ValidationError("Scheduled time must be in the future")

        previous = isoformat(schedule.scheduled_for)
        try:
            result = self.db.execute(
                update(ScheduledPublicationModel)
                .where(
                    ScheduledPublicationModel.id == schedule_id,
                    ScheduledPublicationModel.status == ScheduleStatus.SCHEDULED.value,
                )
                .values(scheduled_for=when, timezone=tz_name, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise StateError(
                    ScheduleStatus.PROCESSING.value, ScheduleStatus.SCHEDULED.value
                )
            self.audit.write(
                schedule.content_id,
                actor.actor_id if actor else SYSTEM_ACTOR.actor_id,
                ChangeType.RESCHEDULED,
                old_values={"scheduled_for": previous},
                new_values={"scheduled_for": when.isoformat(), "timezone": tz_name},
                content_type=schedule.content_type,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(schedule)
        logger.info("schedule_moved", schedule_id=schedule_id, scheduled_for=when.isoformat())
        return schedule

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def process_due(self) -> Dict[str, int]:
        """Execute every due schedule this process manages to claim.

        Returns:
            {"processed": n, "failed": n, "skipped": n}
        """
        now = self.clock()
        summary = {"processed": 0, "failed": 0, "skipped": 0}

        for schedule_id in self._due_candidates(now):
            try:
                schedule = self._claim(schedule_id, now)
            except ConflictError:
                logger.debug("schedule_claimed_elsewhere", schedule_id=schedule_id)
                summary["skipped"] += 1
                continue

            if self._execute(schedule):
                summary["processed"] += 1
            else:
                summary["failed"] += 1

        if any(summary.values()):
            logger.info("due_schedules_processed", **summary)
        return summary

    def _due_candidates(self, now: datetime) -> List[str]:
        rows = (
            self.db.query(ScheduledPublicationModel.id)
            .filter(
                ScheduledPublicationModel.status == ScheduleStatus.SCHEDULED.value,
                ScheduledPublicationModel.scheduled_for <= now,
            )
            .order_by(ScheduledPublicationModel.scheduled_for.asc())
            .limit(self.settings.sweep_batch_size)
            .all()
        )
        return [row.id for row in rows]

    def _claim(self, schedule_id: str, now: datetime) -> ScheduledPublicationModel:
        """Atomically move a row from scheduled to processing.

        Raises:
            ConflictError: the row is no longer 'scheduled'
        """
        result = self.db.execute(
            update(ScheduledPublicationModel)
            .where(
                ScheduledPublicationModel.id == schedule_id,
                ScheduledPublicationModel.status == ScheduleStatus.SCHEDULED.value,
            )
            .values(
                status=ScheduleStatus.PROCESSING.value,
                claimed_at=now,
                claimed_by=self.worker_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 0:
            raise ConflictError(f"Schedule '{schedule_id}' was claimed by another worker")

        schedule = self.db.get(ScheduledPublicationModel, schedule_id)
        self.db.refresh(schedule)
        logger.info("schedule_claimed", schedule_id=schedule_id, worker_id=self.worker_id)
        return schedule

    def _execute(self, schedule: ScheduledPublicationModel) -> bool:
        schedule_id = schedule.id
        try:
            if schedule.auto_publish:
                self._publish(schedule)
            else:
                self._remind(schedule)
        except Exception as e:
            self.db.rollback()
            self._record_failure(schedule_id, str(e))
            return False

        self._mark_executed(schedule_id)
        return True

    def _publish(self, schedule: ScheduledPublicationModel) -> None:
        handler = self.handlers.get(schedule.content_type)
        if handler is None:
            raise ValidationError(f"No publish handler for '{schedule.content_type}'")

        content = load_content(self.db, schedule.content_type, schedule.content_id)
        if content.status == "published":
            # Published by an earlier attempt that died before completing
            logger.info(
                "schedule_content_already_published",
                schedule_id=schedule.id,
                content_id=schedule.content_id,
            )
            return
        handler(schedule.content_id)

    def _remind(self, schedule: ScheduledPublicationModel) -> None:
        """Notify the scheduling editor instead of publishing. Once per schedule."""
        existing = (
            self.db.query(NotificationModel)
            .filter(
                NotificationModel.user_id == schedule.created_by,
                NotificationModel.type == NotificationType.SCHEDULE_DUE.value,
                NotificationModel.schedule_id == schedule.id,
            )
            .first()
        )
        if existing is not None:
            return

        content = load_content(self.db, schedule.content_type, schedule.content_id)
        now = self.clock()
        self.db.add(
            NotificationModel(
                id=generate_ulid(),
                user_id=schedule.created_by,
                type=NotificationType.SCHEDULE_DUE.value,
                title=f"Ready to publish: {content.title}",
                message="A scheduled publication is due and waits for manual publishing.",
                data={"schedule_id": schedule.id, "content_id": schedule.content_id},
                content_id=schedule.content_id,
                content_type=schedule.content_type,
                schedule_id=schedule.id,
                scheduled_for=now,
                delivery_status={"in_app": DeliveryState.PENDING.value},
                created_at=now,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            # An earlier attempt of this schedule already reminded the editor
            self.db.rollback()
            return
        logger.info(
            "schedule_reminder_created",
            schedule_id=schedule.id,
            user_id=schedule.created_by,
        )

    def _mark_executed(self, schedule_id: str) -> None:
        now = self.clock()
        self.db.execute(
            update(ScheduledPublicationModel)
            .where(
                ScheduledPublicationModel.id == schedule_id,
                ScheduledPublicationModel.status == ScheduleStatus.PROCESSING.value,
            )
            .values(
                status=ScheduleStatus.EXECUTED.value,
                executed_at=now,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info("schedule_executed", schedule_id=schedule_id)

    def _record_failure(self, schedule_id: str, error: str) -> None:
        schedule = self.db.get(ScheduledPublicationModel, schedule_id)
        self.db.refresh(schedule)
        attempts = (schedule.attempts or 0) + 1
        exhausted = attempts >= self.settings.schedule_max_attempts
        status = ScheduleStatus.FAILED if exhausted else ScheduleStatus.SCHEDULED
        now = self.clock()

        try:
            self.db.execute(
                update(ScheduledPublicationModel)
                .where(
                    ScheduledPublicationModel.id == schedule_id,
                    ScheduledPublicationModel.status == ScheduleStatus.PROCESSING.value,
                )
                .values(
                    status=status.value,
                    attempts=attempts,
                    last_error=error[:2000],
                    claimed_at=None,
                    claimed_by=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if exhausted:
                self.audit.write(
                    schedule.content_id,
                    SYSTEM_ACTOR.actor_id,
                    ChangeType.SCHEDULE_FAILED,
                    old_values={"status": ScheduleStatus.PROCESSING.value},
                    new_values={
                        "schedule_id": schedule_id,
                        "status": ScheduleStatus.FAILED.value,
                        "attempts": attempts,
                    },
                    notes=error[:500],
                    content_type=schedule.content_type,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.warning(
            "schedule_execution_failed",
            schedule_id=schedule_id,
            attempts=attempts,
            final=exhausted,
            error=error,
        )

    def recover_stuck(self) -> int:
        """Return rows stuck in 'processing' past the lease to 'scheduled'.

        Returns:
            Number of rows recovered
        """
        now = self.clock()
        cutoff = now - timedelta(seconds=self.settings.schedule_processing_lease_seconds)
        result = self.db.execute(
            update(ScheduledPublicationModel)
            .where(
                ScheduledPublicationModel.status == ScheduleStatus.PROCESSING.value,
                ScheduledPublicationModel.claimed_at < cutoff,
            )
            .values(
                status=ScheduleStatus.SCHEDULED.value,
                claimed_at=None,
                claimed_by=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount:
            logger.warning("stuck_schedules_recovered", count=result.rowcount)
        return result.rowcount

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, schedule_id: str) -> ScheduledPublicationModel:
        schedule = self.db.get(ScheduledPublicationModel, schedule_id)
        if schedule is None:
            raise NotFoundError("ScheduledPublication", schedule_id)
        return schedule

    def list_for_content(
        self, content_id: str, content_type: Any = ContentType.ARTICLE
    ) -> List[ScheduledPublicationModel]:
        return (
            self.db.query(ScheduledPublicationModel)
            .filter(
                ScheduledPublicationModel.content_id == content_id,
                ScheduledPublicationModel.content_type == enum_value(content_type),
            )
            .order_by(ScheduledPublicationModel.created_at.desc())
            .all()
        )

    def get_upcoming(self, limit: int = 20) -> List[ScheduledPublicationModel]:
        """Pending schedules that are not yet due, soonest first."""
        return (
            self.db.query(ScheduledPublicationModel)
            .filter(
                ScheduledPublicationModel.status == ScheduleStatus.SCHEDULED.value,
                ScheduledPublicationModel.scheduled_for > self.clock(),
            )
            .order_by(ScheduledPublicationModel.scheduled_for.asc())
            .limit(limit)
            .all()
        )

    def get_overdue(self) -> List[ScheduledPublicationModel]:
        """Pending schedules older than the overdue grace window."""
        cutoff = self.clock() - timedelta(
            seconds=self.settings.schedule_overdue_grace_seconds
        )
        return (
            self.db.query(ScheduledPublicationModel)
            .filter(
                ScheduledPublicationModel.status == ScheduleStatus.SCHEDULED.value,
                ScheduledPublicationModel.scheduled_for < cutoff,
            )
            .order_by(ScheduledPublicationModel.scheduled_for.asc())
            .all()
        )

    def _authorize(self, actor: Actor) -> None:
        if actor.role not in SCHEDULING_ROLES:
            raise PermissionDeniedError(
                f"Role '{actor.role.value}' may not schedule publications"
            )
