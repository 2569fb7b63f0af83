"""
Tests for the content audit log model and service.

Verifies:
- ContentAuditLogModel structure and to_dict()
- AuditService.write() joins the caller's transaction
- Read ordering, pagination and query helpers
- Entries cannot be updated or deleted through the ORM
- Retention purge is admin-only
"""

from datetime import datetime, timedelta, timezone

import pytest

from content_desk.db.audit_models import ContentAuditLogModel
from content_desk.db.audit_service import AuditService
from content_desk.enums import ChangeType
from content_desk.errors import ImmutabilityError, PermissionDeniedError, ValidationError
from content_desk.primitives import generate_ulid


@pytest.fixture
def audit(db_session, clock):
    return AuditService(db_session, clock=clock)


class TestContentAuditLogModel:
    """Tests for ContentAuditLogModel structure."""

    def test_model_has_required_columns(self):
        columns = {c.name for c in ContentAuditLogModel.__table__.columns}
        required = {
            "id", "content_id", "content_type", "changed_by", "change_type",
            "old_values", "new_values", "notes", "created_at",
        }
        assert required.issubset(columns)

    def test_to_dict_output(self):
        entry = ContentAuditLogModel(
            id="entry-1",
            content_id="article-1",
            content_type="article",
            changed_by="editor-1",
            change_type="rejected",
            old_values={"status": "review"},
            new_values={"status": "draft"},
            notes="Article rejected: needs sources",
            created_at=datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc),
        )

        result = entry.to_dict()

        assert result["id"] == "entry-1"
        assert result["change_type"] == "rejected"
        assert result["old_values"] == {"status": "review"}
        assert result["new_values"] == {"status": "draft"}
        assert result["created_at"] == "2026-03-02T12:00:00+00:00"


class TestAuditServiceWrite:
    """Tests for AuditService.write()."""

    def test_write_stores_enum_values(self, audit, db_session):
        entry = audit.write(
            "article-1",
            "author-1",
            ChangeType.SUBMITTED,
            old_values={"status": "draft"},
            new_values={"status": "review"},
        )
        db_session.commit()

        stored = db_session.get(ContentAuditLogModel, entry.id)
        assert stored.change_type == "submitted"
        assert stored.content_type == "article"
        assert stored.changed_by == "author-1"

    def test_write_does_not_commit(self, audit, db_session):
        """The entry disappears with the caller's rollback."""
        audit.write("article-1", "author-1", ChangeType.CREATED)
        db_session.rollback()

        assert audit.count("article-1") == 0

    def test_write_uses_injected_clock(self, audit, clock, db_session):
        entry = audit.write("article-1", "author-1", ChangeType.CREATED)
        db_session.commit()

        assert entry.to_dict()["created_at"] == clock().isoformat()


class TestAuditServiceRead:
    """Tests for read ordering and queries."""

    def _write_three(self, audit, clock, db_session):
        for change in (ChangeType.CREATED, ChangeType.SUBMITTED, ChangeType.PUBLISHED):
            audit.write("article-1", "editor-1", change)
            clock.advance(minutes=1)
        db_session.commit()

    def test_read_newest_first(self, audit, clock, db_session):
        self._write_three(audit, clock, db_session)

        entries = audit.read("article-1")

        assert [e.change_type for e in entries] == ["published", "submitted", "created"]

    def test_same_timestamp_keeps_write_order(self, audit, db_session):
        """Entries written at one clock tick still read newest first."""
        changes = [ChangeType.CREATED, ChangeType.SUBMITTED, ChangeType.PUBLISHED] * 10
        for change in changes:
            audit.write("article-1", "editor-1", change)
        db_session.commit()

        entries = audit.read("article-1", limit=100)

        assert [e.change_type for e in entries] == [c.value for c in reversed(changes)]

    def test_read_paginates(self, audit, clock, db_session):
        self._write_three(audit, clock, db_session)

        first = audit.read("article-1", page=1, limit=2)
        second = audit.read("article-1", page=2, limit=2)

        assert [e.change_type for e in first] == ["published", "submitted"]
        assert [e.change_type for e in second] == ["created"]

    def test_read_rejects_bad_page(self, audit):
        with pytest.raises(ValidationError):
            audit.read("article-1", page=0)

    def test_read_filters_by_content(self, audit, db_session):
        audit.write("article-1", "editor-1", ChangeType.CREATED)
        audit.write("article-2", "editor-1", ChangeType.CREATED)
        db_session.commit()

        assert audit.count("article-1") == 1
        assert [e.content_id for e in audit.read("article-2")] == ["article-2"]

    def test_query_by_actor(self, audit, db_session):
        audit.write("article-1", "editor-1", ChangeType.PUBLISHED)
        audit.write("article-2", "editor-2", ChangeType.PUBLISHED)
        db_session.commit()

        entries = audit.query_by_actor("editor-2")

        assert len(entries) == 1
        assert entries[0].content_id == "article-2"

    def test_query_recent_by_change_type(self, audit, db_session):
        audit.write("article-1", "editor-1", ChangeType.REJECTED)
        audit.write("article-2", "editor-1", ChangeType.PUBLISHED)
        db_session.commit()

        entries = audit.query_recent(change_type=ChangeType.REJECTED)

        assert [e.content_id for e in entries] == ["article-1"]


class TestAuditImmutability:
    """Entries are append-only."""

    def test_update_is_refused(self, audit, db_session):
        entry = audit.write("article-1", "editor-1", ChangeType.CREATED)
        db_session.commit()

        entry.notes = "rewritten history"
        with pytest.raises(ImmutabilityError):
            db_session.flush()
        db_session.rollback()

    def test_delete_is_refused(self, audit, db_session):
        entry = audit.write("article-1", "editor-1", ChangeType.CREATED)
        db_session.commit()

        db_session.delete(entry)
        with pytest.raises(ImmutabilityError):
            db_session.flush()
        db_session.rollback()

        assert audit.count("article-1") == 1


class TestAuditPurge:
    """Tests for the retention purge."""

    def test_purge_requires_admin(self, audit, editor):
        with pytest.raises(PermissionDeniedError):
            audit.purge_older_than(datetime.now(timezone.utc), editor)

    def test_purge_removes_only_old_entries(self, audit, clock, db_session, admin):
        audit.write("article-1", "editor-1", ChangeType.CREATED)
        clock.advance(days=400)
        audit.write("article-1", "editor-1", ChangeType.PUBLISHED)
        db_session.commit()

        removed = audit.purge_older_than(clock() - timedelta(days=365), admin)

        assert removed == 1
        assert [e.change_type for e in audit.read("article-1")] == ["published"]


class TestIdentifiers:
    """Tests for generated primary keys."""

    def test_ulids_increase_within_one_millisecond(self):
        ids = [generate_ulid() for _ in range(500)]

        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)
