"""
Tests for scheduled publication.

Verifies:
- Scheduling validation (time, timezone, role, content status)
- At most one active schedule per content item
- process_due() executes each due schedule exactly once
- Failure handling: requeue until max attempts, then failed
- Stuck-row recovery, upcoming and overdue queries
"""

from datetime import datetime, timedelta

import pytest

from content_desk.db.audit_service import AuditService
from content_desk.db.models import ArticleModel, NotificationModel, ScheduledPublicationModel
from content_desk.enums import ACTIVE_SCHEDULE_STATUSES
from content_desk.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from content_desk.primitives import SYSTEM_ACTOR, as_utc
from content_desk.scheduling.scheduler import Scheduler


def active_schedules(db_session, content_id):
    return (
        db_session.query(ScheduledPublicationModel)
        .filter(
            ScheduledPublicationModel.content_id == content_id,
            ScheduledPublicationModel.status.in_(ACTIVE_SCHEDULE_STATUSES),
        )
        .all()
    )


def published_entries(db_session, content_id):
    return [e for e in AuditService(db_session).read(content_id, limit=100) if e.change_type == "published"]


class TestSchedulePublication:
    """Tests for schedule_publication()."""

    def test_schedules_future_publication(self, make_article, scheduler, editor, clock, db_session):
        article = make_article("review")
        when = clock() + timedelta(hours=2)

        schedule = scheduler.schedule_publication(article.id, when, "UTC", True, editor)

        assert schedule.status == "scheduled"
        assert schedule.created_by == "editor-1"
        assert as_utc(schedule.scheduled_for) == when
        entries = AuditService(db_session).read(article.id)
        assert entries[0].change_type == "scheduled"

    def test_naive_time_is_read_in_timezone(self, make_article, scheduler, editor):
        article = make_article("review")

        schedule = scheduler.schedule_publication(
            article.id, datetime(2026, 3, 3, 9, 0), "Europe/Berlin", True, editor
        )

        # CET is UTC+1 in early March
        assert as_utc(schedule.scheduled_for).hour == 8
        assert schedule.timezone == "Europe/Berlin"

    def test_past_time_fails(self, make_article, scheduler, editor, clock):
        article = make_article("review")

        with pytest.raises(ValidationError):
            scheduler.schedule_publication(article.id, clock() - timedelta(minutes=1), "UTC", True, editor)

    def test_unknown_timezone_fails(self, make_article, scheduler, editor, clock):
        article = make_article("review")

        with pytest.raises(ValidationError):
            scheduler.schedule_publication(
                article.id, clock() + timedelta(hours=1), "Mars/Olympus", True, editor
            )

    def test_author_cannot_schedule(self, make_article, scheduler, author, clock):
        article = make_article("review")

        with pytest.raises(PermissionDeniedError):
            scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", True, author)

    def test_draft_cannot_be_scheduled(self, make_article, scheduler, editor, clock):
        article = make_article()

        with pytest.raises(StateError):
            scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", True, editor)

    def test_missing_content(self, scheduler, editor, clock):
        with pytest.raises(NotFoundError):
            scheduler.schedule_publication("missing", clock() + timedelta(hours=1), "UTC", True, editor)

    def test_second_schedule_cancels_first(self, make_article, scheduler, editor, clock, db_session):
        article = make_article("review")
        first = scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", True, editor)

        second = scheduler.schedule_publication(article.id, clock() + timedelta(hours=5), "UTC", True, editor)

        db_session.refresh(first)
        assert first.status == "cancelled"
        assert [s.id for s in active_schedules(db_session, article.id)] == [second.id]

    def test_schedule_while_processing_conflicts(self, make_article, scheduler, editor, clock):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        clock.advance(minutes=10)
        scheduler._claim(schedule.id, clock())

        with pytest.raises(ConflictError):
            scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", True, editor)

    def test_news_item_can_be_scheduled(self, news, scheduler, editor, clock, db_session):
        item = news.create_draft("Exchange halts withdrawals")
        scheduler.schedule_publication(
            item.id, clock() + timedelta(minutes=5), "UTC", True, editor, content_type="news"
        )
        clock.advance(minutes=6)

        summary = scheduler.process_due()

        assert summary["processed"] == 1
        assert news.get(item.id).status == "published"


class TestCancelAndReschedule:
    """Tests for cancel_schedule() and reschedule()."""

    def test_cancel_before_claim(self, make_article, scheduler, editor, clock, db_session):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)

        assert scheduler.cancel_schedule(schedule.id) is True
        clock.advance(minutes=10)
        summary = scheduler.process_due()

        assert summary["processed"] == 0
        assert db_session.get(ArticleModel, article.id).status == "review"

    def test_cancel_twice_returns_false(self, make_article, scheduler, editor, clock):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        scheduler.cancel_schedule(schedule.id)

        assert scheduler.cancel_schedule(schedule.id) is False

    def test_cancel_after_claim_is_ignored(self, make_article, scheduler, editor, clock):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        clock.advance(minutes=10)
        scheduler._claim(schedule.id, clock())

        assert scheduler.cancel_schedule(schedule.id) is False
        assert scheduler.get(schedule.id).status == "processing"

    def test_cancel_missing_schedule(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.cancel_schedule("missing")

    def test_reschedule_moves_time(self, make_article, scheduler, editor, clock, db_session):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", True, editor)
        new_time = clock() + timedelta(days=1)
        clock.advance(seconds=1)

        moved = scheduler.reschedule(schedule.id, new_time, actor=editor)

        assert as_utc(moved.scheduled_for) == new_time
        assert AuditService(db_session).read(article.id)[0].change_type == "rescheduled"

    def test_reschedule_cancelled_fails(self, make_article, scheduler, editor, clock):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", True, editor)
        scheduler.cancel_schedule(schedule.id)

        with pytest.raises(StateError):
            scheduler.reschedule(schedule.id, clock() + timedelta(days=1))

    def test_reschedule_into_past_fails(self, make_article, scheduler, editor, clock):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", True, editor)

        with pytest.raises(ValidationError):
            scheduler.reschedule(schedule.id, clock() - timedelta(hours=1))


class TestProcessDue:
    """Tests for process_due()."""

    def test_publishes_due_schedule(self, make_article, scheduler, editor, clock, db_session):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        clock.advance(minutes=5)

        summary = scheduler.process_due()

        assert summary == {"processed": 1, "failed": 0, "skipped": 0}
        published = db_session.get(ArticleModel, article.id)
        assert published.status == "published"
        assert published.published_at is not None
        executed = scheduler.get(schedule.id)
        assert executed.status == "executed"
        assert executed.claimed_by == "test-worker"
        assert published_entries(db_session, article.id)[0].changed_by == SYSTEM_ACTOR.actor_id

    def test_not_yet_due_is_left_alone(self, make_article, scheduler, editor, clock):
        article = make_article("review")
        scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", True, editor)

        assert scheduler.process_due() == {"processed": 0, "failed": 0, "skipped": 0}

    def test_second_sweep_does_nothing(self, make_article, scheduler, editor, clock, db_session):
        article = make_article("review")
        scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        clock.advance(minutes=5)

        first = scheduler.process_due()
        second = scheduler.process_due()

        assert first["processed"] == 1
        assert second == {"processed": 0, "failed": 0, "skipped": 0}
        assert len(published_entries(db_session, article.id)) == 1

    def test_lost_claim_is_skipped(self, make_article, scheduler, editor, clock, db_session, monkeypatch):
        """A sweep holding a stale candidate list skips rows another sweep took."""
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        clock.advance(minutes=5)
        scheduler.process_due()

        monkeypatch.setattr(scheduler, "_due_candidates", lambda now: [schedule.id])
        summary = scheduler.process_due()

        assert summary == {"processed": 0, "failed": 0, "skipped": 1}
        assert len(published_entries(db_session, article.id)) == 1

    def test_concurrent_sweeps_publish_once(
        self, make_article, scheduler, editor, clock, db_session, session_factory, settings
    ):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        clock.advance(minutes=5)

        other_session = session_factory()
        other = Scheduler(other_session, settings=settings, clock=clock, worker_id="other-worker")
        candidates = other._due_candidates(clock())
        scheduler.process_due()
        for schedule_id in candidates:
            with pytest.raises(ConflictError):
                other._claim(schedule_id, clock())
        other_session.close()

        assert candidates == [schedule.id]
        assert len(published_entries(db_session, article.id)) == 1

    def test_already_published_content_is_not_republished(
        self, make_article, scheduler, lifecycle, editor, clock, db_session
    ):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        lifecycle.publish_now(article.id, editor)
        clock.advance(minutes=5)

        calls = []
        scheduler.register_handler("article", calls.append)
        summary = scheduler.process_due()

        assert summary["processed"] == 1
        assert calls == []
        assert scheduler.get(schedule.id).status == "executed"

    def test_failure_requeues_then_fails(self, make_article, db_session, lifecycle, editor, clock):
        from content_desk.config import Settings

        settings = Settings(_env_file=None, schedule_max_attempts=2)
        scheduler = Scheduler(db_session, lifecycle=lifecycle, settings=settings, clock=clock)

        def broken(content_id):
            raise RuntimeError("publish handler exploded")

        scheduler.register_handler("article", broken)
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        clock.advance(minutes=5)

        first = scheduler.process_due()
        requeued = scheduler.get(schedule.id)
        assert first == {"processed": 0, "failed": 1, "skipped": 0}
        assert requeued.status == "scheduled"
        assert requeued.attempts == 1
        assert "exploded" in requeued.last_error

        second = scheduler.process_due()
        failed = scheduler.get(schedule.id)
        assert second["failed"] == 1
        assert failed.status == "failed"
        assert failed.attempts == 2
        assert AuditService(db_session).read(article.id)[0].change_type == "schedule_failed"
        assert db_session.get(ArticleModel, article.id).status == "review"

    def test_reminder_instead_of_publish(self, make_article, scheduler, editor, clock, db_session):
        article = make_article("review")
        scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", False, editor)
        clock.advance(minutes=5)

        summary = scheduler.process_due()

        assert summary["processed"] == 1
        assert db_session.get(ArticleModel, article.id).status == "review"
        reminder = db_session.query(NotificationModel).one()
        assert reminder.user_id == "editor-1"
        assert reminder.type == "schedule_due"
        assert reminder.schedule_id is not None

    def test_each_schedule_reminds_once(self, make_article, scheduler, editor, clock, db_session):
        """A later schedule for the same content gets its own reminder."""
        article = make_article("review")
        first = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", False, editor)
        clock.advance(minutes=5)
        scheduler.process_due()
        second = scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", False, editor)
        clock.advance(hours=1)

        scheduler.process_due()
        scheduler._remind(scheduler.get(second.id))

        reminders = db_session.query(NotificationModel).filter_by(type="schedule_due").all()
        assert sorted(r.schedule_id for r in reminders) == sorted([first.id, second.id])


class TestRecoveryAndQueries:
    """Tests for recover_stuck(), get_upcoming() and get_overdue()."""

    def test_recover_stuck_processing_row(self, make_article, scheduler, editor, clock, settings):
        article = make_article("review")
        schedule = scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)
        clock.advance(minutes=5)
        scheduler._claim(schedule.id, clock())

        assert scheduler.recover_stuck() == 0
        clock.advance(seconds=settings.schedule_processing_lease_seconds + 1)

        assert scheduler.recover_stuck() == 1
        assert scheduler.get(schedule.id).status == "scheduled"
        assert scheduler.process_due()["processed"] == 1

    def test_upcoming_sorted_soonest_first(self, make_article, scheduler, editor, clock):
        later = make_article("review", title="Later")
        sooner = make_article("review", title="Sooner")
        scheduler.schedule_publication(later.id, clock() + timedelta(hours=5), "UTC", True, editor)
        scheduler.schedule_publication(sooner.id, clock() + timedelta(hours=1), "UTC", True, editor)

        upcoming = scheduler.get_upcoming(limit=10)

        assert [s.content_id for s in upcoming] == [sooner.id, later.id]

    def test_overdue_after_grace_window(self, make_article, scheduler, editor, clock, settings):
        article = make_article("review")
        scheduler.schedule_publication(article.id, clock() + timedelta(minutes=5), "UTC", True, editor)

        clock.advance(minutes=10)
        assert scheduler.get_overdue() == []

        clock.advance(seconds=settings.schedule_overdue_grace_seconds)
        assert [s.content_id for s in scheduler.get_overdue()] == [article.id]

    def test_list_for_content(self, make_article, scheduler, editor, clock):
        article = make_article("review")
        scheduler.schedule_publication(article.id, clock() + timedelta(hours=1), "UTC", True, editor)
        scheduler.schedule_publication(article.id, clock() + timedelta(hours=2), "UTC", True, editor)

        statuses = sorted(s.status for s in scheduler.list_for_content(article.id))

        assert statuses == ["cancelled", "scheduled"]
