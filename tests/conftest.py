"""Test configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from content_desk.config import Settings
from content_desk.content.lifecycle import LifecycleController
from content_desk.content.store import ArticleStore, NewsStore
from content_desk.db import audit_models, models  # noqa: F401
from content_desk.db.base import Base
from content_desk.enums import Role
from content_desk.primitives import Actor
from content_desk.scheduling.scheduler import Scheduler

# Monday, noon UTC: outside the default 22:00-08:00 quiet hours
START = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock passed to services as ``clock=``."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


@pytest.fixture
def engine():
    """In-memory database shared by every connection of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    """Create a fresh in-memory database for each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, database_url="sqlite:///:memory:")


@pytest.fixture
def author() -> Actor:
    return Actor(actor_id="author-1", role=Role.AUTHOR)


@pytest.fixture
def other_author() -> Actor:
    return Actor(actor_id="author-2", role=Role.AUTHOR)


@pytest.fixture
def editor() -> Actor:
    return Actor(actor_id="editor-1", role=Role.EDITOR)


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id="admin-1", role=Role.ADMIN)


@pytest.fixture
def articles(db_session, clock) -> ArticleStore:
    return ArticleStore(db_session, clock=clock)


@pytest.fixture
def news(db_session, clock) -> NewsStore:
    return NewsStore(db_session, clock=clock)


@pytest.fixture
def lifecycle(db_session, settings, clock) -> LifecycleController:
    return LifecycleController(db_session, settings=settings, clock=clock)


@pytest.fixture
def scheduler(db_session, lifecycle, settings, clock) -> Scheduler:
    scheduler = Scheduler(
        db_session,
        lifecycle=lifecycle,
        settings=settings,
        clock=clock,
        worker_id="test-worker",
    )
    lifecycle.scheduler = scheduler
    return scheduler


@pytest.fixture
def make_article(articles, lifecycle, author, editor, clock):
    """Create an article and drive it to the requested status.

    The clock moves one second after every step so audit entries of later
    steps sort after earlier ones.
    """

    def _make(status: str = "draft", category_id: str = "defi", tags=None, title="Rates"):
        article = articles.create_draft(
            title=title,
            author_id=author.actor_id,
            category_id=category_id,
            tags=tags or [],
        )
        clock.advance(seconds=1)
        if status in ("review", "published", "archived"):
            lifecycle.submit_for_review(article.id, author)
            clock.advance(seconds=1)
        if status in ("published", "archived"):
            lifecycle.approve(article.id, editor)
            clock.advance(seconds=1)
        if status == "archived":
            lifecycle.archive(article.id, editor)
            clock.advance(seconds=1)
        return articles.get(article.id)

    return _make
