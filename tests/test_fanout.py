"""
Tests for subscriber fan-out.

Verifies:
- One notification per user per content, however many subscriptions match
- Routing by effective frequency: immediate, deferred, digest bucket
- Idempotent re-runs
- Publish event queue claims, retries and backoff
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from content_desk.config import Settings
from content_desk.content.lifecycle import LifecycleController
from content_desk.db.models import (
    DigestBucketModel,
    DigestRouteModel,
    NotificationModel,
    PublishEventModel,
)
from content_desk.errors import StateError
from content_desk.notifications.digest import DigestBuilder
from content_desk.notifications.fanout import FanoutEngine
from content_desk.notifications.preferences import PreferenceEvaluator
from content_desk.notifications.subscriptions import SubscriptionRegistry
from content_desk.primitives import as_utc


@pytest.fixture
def registry(db_session, clock):
    return SubscriptionRegistry(db_session, clock=clock)


@pytest.fixture
def preferences(db_session, settings, clock):
    return PreferenceEvaluator(db_session, settings=settings, clock=clock)


@pytest.fixture
def engine_(db_session, settings, clock):
    return FanoutEngine(db_session, settings=settings, clock=clock)


def notifications_for(db_session, user_id):
    return db_session.query(NotificationModel).filter_by(user_id=user_id).all()


class TestNotifyOnPublish:
    """Tests for notify_on_publish()."""

    def test_immediate_subscriber_is_notified(self, make_article, registry, engine_, db_session):
        registry.subscribe("user-u", "category", "defi", "immediate")
        article = make_article("published", category_id="defi")

        result = engine_.notify_on_publish(article.id)

        assert result["notified"] == 1
        assert result["queued"] == 0
        rows = notifications_for(db_session, "user-u")
        assert len(rows) == 1
        assert rows[0].content_id == article.id
        assert rows[0].type == "new_article"
        assert set(rows[0].delivery_status.values()) == {"pending"}

    def test_multiple_matches_notify_once(self, make_article, registry, engine_, db_session):
        registry.subscribe("user-u", "category", "defi")
        registry.subscribe("user-u", "tag", "stablecoins")
        registry.subscribe("user-u", "author", "author-1")
        article = make_article("published", category_id="defi", tags=["Stablecoins"])

        result = engine_.notify_on_publish(article.id)

        assert result["notified"] == 1
        assert len(notifications_for(db_session, "user-u")) == 1

    def test_most_immediate_frequency_wins(self, make_article, registry, engine_, db_session):
        registry.subscribe("user-u", "category", "defi", "weekly")
        registry.subscribe("user-u", "tag", "stablecoins", "immediate")
        article = make_article("published", category_id="defi", tags=["stablecoins"])

        result = engine_.notify_on_publish(article.id)

        assert result == {"notified": 1, "queued": 0, "skipped": 0, "failed": 0}

    def test_weekly_subscriber_goes_to_digest(self, make_article, registry, engine_, db_session, settings, clock):
        registry.subscribe("user-w", "category", "defi", "weekly")
        article = make_article("published", category_id="defi")

        result = engine_.notify_on_publish(article.id)

        assert result["notified"] == 0
        assert result["queued"] == 1
        assert notifications_for(db_session, "user-w") == []
        bucket = db_session.query(DigestBucketModel).filter_by(user_id="user-w").one()
        assert bucket.digest_type == "weekly"
        assert [item["content_id"] for item in bucket.pending_items] == [article.id]

        clock.advance(days=7)
        DigestBuilder(db_session, settings=settings, clock=clock).build_due("weekly")
        digest = notifications_for(db_session, "user-w")
        assert len(digest) == 1
        assert [item["content_id"] for item in digest[0].data["items"]] == [article.id]

    def test_rerun_is_idempotent(self, make_article, registry, engine_, db_session):
        registry.subscribe("user-u", "category", "defi", "immediate")
        registry.subscribe("user-d", "category", "defi", "daily")
        article = make_article("published", category_id="defi")
        engine_.notify_on_publish(article.id)

        again = engine_.notify_on_publish(article.id)

        assert again == {"notified": 0, "queued": 0, "skipped": 2, "failed": 0}
        assert len(notifications_for(db_session, "user-u")) == 1
        bucket = db_session.query(DigestBucketModel).filter_by(user_id="user-d").one()
        assert len(bucket.pending_items) == 1

    def test_rerun_after_digest_is_built_adds_nothing(
        self, make_article, registry, engine_, db_session, settings, clock
    ):
        """Content already sent in a digest is not queued for the next one."""
        registry.subscribe("user-d", "category", "defi", "daily")
        article = make_article("published", category_id="defi")
        engine_.notify_on_publish(article.id)
        clock.advance(days=1)
        DigestBuilder(db_session, settings=settings, clock=clock).build_due("daily")

        again = engine_.notify_on_publish(article.id)

        assert again == {"notified": 0, "queued": 0, "skipped": 1, "failed": 0}
        bucket = db_session.query(DigestBucketModel).filter_by(user_id="user-d").one()
        assert bucket.pending_items == []
        digests = notifications_for(db_session, "user-d")
        assert len(digests) == 1
        assert [item["content_id"] for item in digests[0].data["items"]] == [article.id]

    def test_digest_route_is_recorded(self, make_article, registry, engine_, db_session):
        registry.subscribe("user-w", "category", "defi", "weekly")
        article = make_article("published", category_id="defi")

        engine_.notify_on_publish(article.id)

        route = db_session.query(DigestRouteModel).filter_by(user_id="user-w").one()
        assert route.content_id == article.id
        assert route.content_type == "article"
        assert route.digest_type == "weekly"

    def test_quiet_hours_defer_notification(self, make_article, registry, engine_, db_session, clock):
        registry.subscribe("user-u", "category", "defi")
        article = make_article("published", category_id="defi")
        clock.set(datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc))

        result = engine_.notify_on_publish(article.id)

        assert result["notified"] == 1
        row = notifications_for(db_session, "user-u")[0]
        # Default quiet hours end at 08:00 UTC
        assert as_utc(row.scheduled_for) == datetime(2026, 3, 3, 8, 0, tzinfo=timezone.utc)
        assert row.data["deferred"] is True

    def test_disabled_category_is_skipped(self, make_article, registry, preferences, engine_, db_session):
        registry.subscribe("user-u", "category", "defi")
        preferences.update_category_preference("user-u", "defi", enabled=False)
        article = make_article("published", category_id="defi")

        result = engine_.notify_on_publish(article.id)

        assert result["skipped"] == 1
        assert notifications_for(db_session, "user-u") == []

    def test_category_override_routes_to_digest(self, make_article, registry, preferences, engine_):
        registry.subscribe("user-u", "tag", "stablecoins", "immediate")
        preferences.update_category_preference("user-u", "defi", frequency="daily")
        article = make_article("published", category_id="defi", tags=["stablecoins"])

        assert engine_.notify_on_publish(article.id)["queued"] == 1

    def test_no_digests_wanted(self, make_article, registry, preferences, engine_):
        registry.subscribe("user-u", "category", "defi", "daily")
        preferences.update_preferences("user-u", digest_frequency="none")
        article = make_article("published", category_id="defi")

        assert engine_.notify_on_publish(article.id)["skipped"] == 1

    def test_unpublished_content_is_refused(self, make_article, engine_):
        article = make_article("review")

        with pytest.raises(StateError):
            engine_.notify_on_publish(article.id)

    def test_news_items(self, news, lifecycle, editor, registry, engine_, db_session):
        registry.subscribe("user-u", "category", "markets")
        item = news.create_draft("Exchange halts withdrawals", category_id="markets")
        lifecycle.publish_news(item.id, editor)

        assert engine_.notify_on_publish(item.id, "news")["notified"] == 1
        assert notifications_for(db_session, "user-u")[0].type == "new_news"

    def test_recipient_failure_is_isolated(self, make_article, registry, engine_, db_session, monkeypatch):
        registry.subscribe("user-a", "category", "defi")
        registry.subscribe("user-b", "category", "defi")
        article = make_article("published", category_id="defi")
        original = engine_._route

        def flaky(user_id, frequency, ref, now):
            if user_id == "user-a":
                raise RuntimeError("preference store timeout")
            return original(user_id, frequency, ref, now)

        monkeypatch.setattr(engine_, "_route", flaky)
        result = engine_.notify_on_publish(article.id)

        assert result["failed"] == 1
        assert result["notified"] == 1


class TestPublishEvents:
    """Tests for the publish event queue."""

    def test_process_pending_completes_event(self, make_article, registry, engine_, db_session):
        registry.subscribe("user-u", "category", "defi")
        article = make_article("published", category_id="defi")

        summary = engine_.process_pending()

        assert summary == {"done": 1, "retried": 0, "skipped": 0}
        event = db_session.query(PublishEventModel).one()
        assert event.status == "done"
        assert event.result["notified"] == 1
        assert len(notifications_for(db_session, "user-u")) == 1

    def test_done_event_is_not_processed_again(self, make_article, engine_, db_session):
        make_article("published")
        engine_.process_pending()

        assert engine_.process_pending() == {"done": 0, "retried": 0, "skipped": 0}
        event = db_session.query(PublishEventModel).one()
        assert engine_.process_event(event.id) is False

    def test_failure_backs_off_then_fails(self, make_article, db_session, clock, monkeypatch):
        settings = Settings(_env_file=None, fanout_max_attempts=2, fanout_backoff_base_seconds=30)
        engine_ = FanoutEngine(db_session, settings=settings, clock=clock)
        make_article("published")

        def boom(content_id, content_type="article"):
            raise RuntimeError("subscription store unavailable")

        monkeypatch.setattr(engine_, "notify_on_publish", boom)

        assert engine_.process_pending() == {"done": 0, "retried": 1, "skipped": 0}
        event = db_session.query(PublishEventModel).one()
        assert event.status == "pending"
        assert event.attempts == 1
        assert as_utc(event.next_attempt_at) == clock() + timedelta(seconds=60)

        # Not due again until the backoff elapses
        assert engine_.process_pending() == {"done": 0, "retried": 0, "skipped": 0}

        clock.advance(seconds=60)
        engine_.process_pending()
        db_session.refresh(event)
        assert event.status == "failed"
        assert event.attempts == 2
        assert "unavailable" in event.last_error

    def test_stuck_event_is_recovered_after_lease(
        self, make_article, registry, engine_, db_session, settings, clock
    ):
        registry.subscribe("user-u", "category", "defi")
        make_article("published", category_id="defi")
        event = db_session.query(PublishEventModel).one()
        # Claimed by a worker that died before finishing
        db_session.execute(
            update(PublishEventModel)
            .where(PublishEventModel.id == event.id)
            .values(status="processing", claimed_at=clock())
            .execution_options(synchronize_session=False)
        )
        db_session.commit()

        assert engine_.process_pending() == {"done": 0, "retried": 0, "skipped": 0}
        assert engine_.recover_stuck() == 0

        clock.advance(seconds=settings.fanout_processing_lease_seconds + 1)

        assert engine_.recover_stuck() == 1
        assert engine_.process_pending()["done"] == 1
        db_session.refresh(event)
        assert event.status == "done"
        assert event.claimed_at is None
        assert len(notifications_for(db_session, "user-u")) == 1

    def test_claim_records_claimed_at(self, make_article, engine_, db_session, clock, monkeypatch):
        make_article("published")
        event = db_session.query(PublishEventModel).one()
        seen = []

        def record(content_id, content_type="article"):
            db_session.refresh(event)
            seen.append((event.status, as_utc(event.claimed_at)))
            return {"notified": 0, "queued": 0, "skipped": 0, "failed": 0}

        monkeypatch.setattr(engine_, "notify_on_publish", record)

        assert engine_.process_event(event.id) is True
        assert seen == [("processing", clock())]

    def test_lifecycle_hook_fans_out_immediately(self, make_article, registry, db_session, settings, clock, editor):
        registry.subscribe("user-u", "category", "defi")
        engine_ = FanoutEngine(db_session, settings=settings, clock=clock)
        lifecycle = LifecycleController(
            db_session,
            on_publish=engine_.process_for_content,
            settings=settings,
            clock=clock,
        )
        article = make_article("review", category_id="defi")

        lifecycle.approve(article.id, editor)

        assert len(notifications_for(db_session, "user-u")) == 1
        assert db_session.query(PublishEventModel).one().status == "done"

    def test_list_events(self, make_article, engine_):
        make_article("published")

        assert [e.status for e in engine_.list_events(status="pending")] == ["pending"]
