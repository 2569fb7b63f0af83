"""
Content lifecycle controller.

Every transition is one transaction: a conditional status update, the audit
entry and, for publishes, a pending publish event for subscriber fan-out.
Either all of them commit or none does. The optional ``on_publish`` hook
runs after the commit; its failures are logged and never undo a publish.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Union

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.audit_service import AuditService
from ..db.models import ArticleModel, PublishEventModel, ScheduledPublicationModel
from ..enums import ArticleStatus, ChangeType, ContentType, EventStatus, ScheduleStatus
from ..errors import StateError, ValidationError
from ..primitives import Actor, Clock, generate_ulid, isoformat, utc_now
from .schemas import ApproveOptions, RejectData
from .store import ContentModel, load_content
from .transitions import validate

if TYPE_CHECKING:
    from ..scheduling.scheduler import Scheduler

logger = structlog.get_logger()

PublishHook = Callable[[str, str], Any]


class LifecycleController:
    """Drives articles (and news items) through their status machine.

    Usage:
        lifecycle = LifecycleController(db)
        lifecycle.submit_for_review(article.id, author)
        lifecycle.approve(article.id, editor, ApproveOptions())
    """

    def __init__(
        self,
        db: Session,
        audit: Optional[AuditService] = None,
        scheduler: Optional["Scheduler"] = None,
        on_publish: Optional[PublishHook] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()
        self.audit = audit or AuditService(db, clock=clock)
        self.scheduler = scheduler
        self.on_publish = on_publish

    # -------------------------------------------------------------------------
    # Editorial operations
    # -------------------------------------------------------------------------

    def submit_for_review(self, article_id: str, actor: Actor) -> ArticleModel:
        """Move a draft into review."""
        article = load_content(self.db, ContentType.ARTICLE, article_id)
        target = validate("submit", article.status, actor, owner_id=article.author_id)
        return self._apply(article, actor, target, ChangeType.SUBMITTED)

    def approve(
        self,
        article_id: str,
        actor: Actor,
        options: Optional[ApproveOptions] = None,
    ) -> Union[ArticleModel, ScheduledPublicationModel]:
        """Approve an article under review.

        Publishes it now, or, when ``scheduled_at`` is given, schedules it
        and leaves it in review until the scheduler publishes it.

        Returns:
            The published ArticleModel or the new ScheduledPublicationModel
        """
        options = options or ApproveOptions()
        article = load_content(self.db, ContentType.ARTICLE, article_id)
        target = validate("approve", article.status, actor)

        if options.scheduled_at is not None:
            return self._get_scheduler().schedule_publication(
                article.id,
                options.scheduled_at,
                timezone=options.timezone,
                auto_publish=options.auto_publish,
                actor=actor,
                content_type=ContentType.ARTICLE,
                notes=options.notes,
            )

        if not options.publish_immediately:
            raise ValidationError(
                "scheduled_at is required when publish_immediately is false"
            )

        return self._apply(
            article,
            actor,
            target,
            ChangeType.PUBLISHED,
            notes=options.notes,
            publish=True,
        )

    def reject(self, article_id: str, actor: Actor, data: RejectData) -> ArticleModel:
        """Reject an article under review.

        return_to_draft sends it back to draft; otherwise a rejection without
        resubmission archives it, and a rejection allowing resubmission leaves
        it in review. Active schedules for the article are cancelled.
        """
        reason = (data.reason or "").strip()
        min_length = self.settings.reject_reason_min_length
        if len(reason) < min_length:
            raise ValidationError(
                f"Rejection reason must be at least {min_length} characters"
            )

        article = load_content(self.db, ContentType.ARTICLE, article_id)
        current = validate("reject", article.status, actor)

        if data.return_to_draft:
            target = ArticleStatus.DRAFT.value
        elif not data.allow_resubmission:
            target = ArticleStatus.ARCHIVED.value
        else:
            target = current

        return self._apply(
            article,
            actor,
            target,
            ChangeType.REJECTED,
            notes=f"Article rejected: {reason}",
            extra={
                "reason": reason,
                "feedback": data.feedback,
                "return_to_draft": data.return_to_draft,
                "allow_resubmission": data.allow_resubmission,
            },
            cancel_schedules=True,
        )

    def archive(self, article_id: str, actor: Actor) -> ArticleModel:
        article = load_content(self.db, ContentType.ARTICLE, article_id)
        target = validate("archive", article.status, actor)
        return self._apply(article, actor, target, ChangeType.ARCHIVED)

    def restore(self, article_id: str, actor: Actor) -> ArticleModel:
        """Bring an archived article back to draft."""
        article = load_content(self.db, ContentType.ARTICLE, article_id)
        target = validate("restore", article.status, actor)
        return self._apply(article, actor, target, ChangeType.RESTORED)

    def publish_now(self, article_id: str, actor: Actor) -> ArticleModel:
        """Publish an article under review. Used by the scheduler."""
        article = load_content(self.db, ContentType.ARTICLE, article_id)
        target = validate("publish", article.status, actor)
        return self._apply(article, actor, target, ChangeType.PUBLISHED, publish=True)

    def publish_news(self, news_id: str, actor: Actor) -> ContentModel:
        """Publish a news item straight from draft."""
        item = load_content(self.db, ContentType.NEWS, news_id)
        target = validate("publish", item.status, actor, content_type="news")
        return self._apply(
            item,
            actor,
            target,
            ChangeType.PUBLISHED,
            publish=True,
            content_type=ContentType.NEWS.value,
        )

    def archive_news(self, news_id: str, actor: Actor) -> ContentModel:
        item = load_content(self.db, ContentType.NEWS, news_id)
        target = validate("archive", item.status, actor, content_type="news")
        return self._apply(
            item, actor, target, ChangeType.ARCHIVED, content_type=ContentType.NEWS.value
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _apply(
        self,
        content: ContentModel,
        actor: Actor,
        target: str,
        change_type: ChangeType,
        notes: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        publish: bool = False,
        cancel_schedules: bool = False,
        content_type: str = ContentType.ARTICLE.value,
    ) -> ContentModel:
        now = self.clock()
        current = content.status
        published_at = now if target == ArticleStatus.PUBLISHED.value else None
        model = type(content)

        old_values = {"status": current, "published_at": isoformat(content.published_at)}
        new_values: Dict[str, Any] = {
            "status": target,
            "published_at": isoformat(published_at),
        }
        if extra:
            new_values.update(extra)

        try:
            # Conditional on the status we validated against
            result = self.db.execute(
                update(model)
                .where(model.id == content.id, model.status == current)
                .values(status=target, published_at=published_at, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise StateError(
                    current, target, "Content was changed concurrently; reload and retry"
                )

            if cancel_schedules:
                cancelled = self._cancel_active_schedules(content.id, content_type, now)
                if cancelled:
                    new_values["cancelled_schedules"] = cancelled

            self.audit.write(
                content.id,
                actor.actor_id,
                change_type,
                old_values=old_values,
                new_values=new_values,
                notes=notes,
                content_type=content_type,
            )

            if publish:
                self.db.add(
                    PublishEventModel(
                        id=generate_ulid(),
                        content_id=content.id,
                        content_type=content_type,
                        status=EventStatus.PENDING.value,
                        attempts=0,
                        next_attempt_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                )

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(content)
        logger.info(
            "content_transitioned",
            content_id=content.id,
            content_type=content_type,
            from_status=current,
            to_status=target,
            change_type=change_type.value,
            actor_id=actor.actor_id,
        )

        if publish:
            self._fire_on_publish(content.id, content_type)
        return content

    def _cancel_active_schedules(self, content_id: str, content_type: str, now) -> int:
        result = self.db.execute(
            update(ScheduledPublicationModel)
            .where(
                ScheduledPublicationModel.content_id == content_id,
                ScheduledPublicationModel.content_type == content_type,
                ScheduledPublicationModel.status == ScheduleStatus.SCHEDULED.value,
            )
            .values(status=ScheduleStatus.CANCELLED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def _fire_on_publish(self, content_id: str, content_type: str) -> None:
        if self.on_publish is None:
            return
        try:
            self.on_publish(content_id, content_type)
        except Exception:
            # The publish is committed; fan-out retries from the event queue
            self.db.rollback()
            logger.exception(
                "publish_hook_failed", content_id=content_id, content_type=content_type
            )

    def _get_scheduler(self) -> "Scheduler":
        if self.scheduler is None:
            from ..scheduling.scheduler import Scheduler

            self.scheduler = Scheduler(
                self.db,
                lifecycle=self,
                audit=self.audit,
                settings=self.settings,
                clock=self.clock,
            )
        return self.scheduler
