"""
Content Audit Log Service.

Records an entry for every lifecycle transition and schedule change. Entries
are added to the caller's session and flushed, never committed here: the
caller commits the entry together with the change it describes.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, desc
from sqlalchemy.orm import Session

from ..enums import Role
from ..errors import PermissionDeniedError, ValidationError
from ..primitives import Actor, Clock, as_utc, enum_value, generate_ulid, utc_now
from .audit_models import ContentAuditLogModel

logger = structlog.get_logger()


class AuditService:
    """Service for writing and reading content audit entries.

    Usage:
        audit = AuditService(db_session)
        audit.write(article.id, actor.actor_id, "submitted",
                    old_values={"status": "draft"}, new_values={"status": "review"})
        db_session.commit()
    """

    def __init__(self, db: Session, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    def write(
        self,
        content_id: str,
        changed_by: str,
        change_type: Any,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        content_type: Any = "article",
    ) -> ContentAuditLogModel:
        """Add an audit entry to the current transaction.

        Args:
            content_id: ID of the affected content
            changed_by: ID of the acting identity
            change_type: Kind of change (see ``ChangeType``)
            old_values: Relevant values before the change
            new_values: Relevant values after the change
            notes: Optional human-readable note
            content_type: "article" or "news"

        Returns:
            The pending ContentAuditLogModel (flushed, not committed)
        """
        entry = ContentAuditLogModel(
            id=generate_ulid(),
            content_id=content_id,
            content_type=enum_value(content_type),
            changed_by=changed_by,
            change_type=enum_value(change_type),
            old_values=old_values,
            new_values=new_values,
            notes=notes,
            created_at=self.clock(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def read(
        self,
        content_id: str,
        page: int = 1,
        limit: int = 20,
    ) -> List[ContentAuditLogModel]:
        """Return entries for a content item, newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        return (
            self.db.query(ContentAuditLogModel)
            .filter(ContentAuditLogModel.content_id == content_id)
            .order_by(desc(ContentAuditLogModel.created_at), desc(ContentAuditLogModel.id))
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

    def count(self, content_id: str) -> int:
        return (
            self.db.query(ContentAuditLogModel)
            .filter(ContentAuditLogModel.content_id == content_id)
            .count()
        )

    def query_by_actor(
        self,
        changed_by: str,
        limit: int = 100,
    ) -> List[ContentAuditLogModel]:
        """Return entries recorded for one actor, newest first."""
        return (
            self.db.query(ContentAuditLogModel)
            .filter(ContentAuditLogModel.changed_by == changed_by)
            .order_by(desc(ContentAuditLogModel.created_at), desc(ContentAuditLogModel.id))
            .limit(limit)
            .all()
        )

    def query_recent(
        self,
        limit: int = 100,
        change_type: Optional[Any] = None,
    ) -> List[ContentAuditLogModel]:
        """Return the most recent entries, optionally of one change type."""
        query = self.db.query(ContentAuditLogModel)
        if change_type is not None:
            query = query.filter(
                ContentAuditLogModel.change_type == enum_value(change_type)
            )
        return (
            query.order_by(desc(ContentAuditLogModel.created_at), desc(ContentAuditLogModel.id))
            .limit(limit)
            .all()
        )

    def purge_older_than(self, cutoff: datetime, actor: Actor) -> int:
        """Delete entries created before ``cutoff``. Admin only.

        This is the retention path; it bypasses the ORM so the
        append-only guard on individual entries does not apply.

        Returns:
            Number of entries removed
        """
        if not actor.has_role(Role.ADMIN):
            raise PermissionDeniedError("Only admins may purge the audit log")

        cutoff = as_utc(cutoff)
        result = self.db.execute(
            delete(ContentAuditLogModel)
            .where(ContentAuditLogModel.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.warning(
            "audit_log_purged",
            cutoff=cutoff.isoformat(),
            removed=result.rowcount,
            actor_id=actor.actor_id,
        )
        return result.rowcount
