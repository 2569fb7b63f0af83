"""
Content Audit Log Database Models.

Every lifecycle transition and schedule change is recorded with old/new
values, the acting identity and an optional note. Entries are append-only:
the ORM refuses to update or delete them. The only removal path is the
administrative retention purge in ``AuditService.purge_older_than``.
"""

from typing import Any, Dict

from sqlalchemy import JSON, Column, DateTime, Index, String, Text, event

from ..errors import ImmutabilityError
from ..primitives import isoformat, utc_now
from .base import Base


class ContentAuditLogModel(Base):
    """Audit log entry for one change to one piece of content."""

    __tablename__ = "content_audit_log"

    # Primary key (ULID for sortability and uniqueness)
    id = Column(String(36), primary_key=True)

    # What content was affected
    content_id = Column(String(36), nullable=False)
    content_type = Column(String(20), nullable=False, default="article")

    # Who performed the change
    changed_by = Column(String(128), nullable=False, index=True)

    # What kind of change (created, submitted, published, rejected, ...)
    change_type = Column(String(40), nullable=False, index=True)

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        index=True,
    )

    __table_args__ = (
        Index("ix_content_audit_log_content_ts", "content_id", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "content_id": self.content_id,
            "content_type": self.content_type,
            "changed_by": self.changed_by,
            "change_type": self.change_type,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "notes": self.notes,
            "created_at": isoformat(self.created_at),
        }


@event.listens_for(ContentAuditLogModel, "before_update")
def _refuse_update(mapper, connection, target) -> None:
    raise ImmutabilityError(f"Audit entry '{target.id}' is append-only")


@event.listens_for(ContentAuditLogModel, "before_delete")
def _refuse_delete(mapper, connection, target) -> None:
    raise ImmutabilityError(f"Audit entry '{target.id}' is append-only")
