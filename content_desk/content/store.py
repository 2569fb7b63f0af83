"""
Content entity store.

Creates drafts and loads content. Status changes after creation belong to
the lifecycle controller; the ingestion collaborator only ever calls
``create_draft``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple, Union

import structlog
from sqlalchemy import desc
from sqlalchemy.orm import Session

from ..db.audit_service import AuditService
from ..db.models import ArticleModel, NewsItemModel
from ..enums import ChangeType, ContentType
from ..errors import NotFoundError, ValidationError
from ..primitives import Actor, Clock, as_utc, enum_value, generate_ulid, utc_now

logger = structlog.get_logger()

ContentModel = Union[ArticleModel, NewsItemModel]

MODEL_FOR_TYPE = {
    ContentType.ARTICLE.value: ArticleModel,
    ContentType.NEWS.value: NewsItemModel,
}


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Lower-case, strip and de-duplicate tags, keeping first-seen order."""
    seen: List[str] = []
    for tag in tags or []:
        value = str(tag).strip().lower()
        if value and value not in seen:
            seen.append(value)
    return seen


def model_for(content_type: Any):
    try:
        return MODEL_FOR_TYPE[enum_value(content_type)]
    except KeyError:
        raise ValidationError(f"Unknown content type: {content_type}") from None


def load_content(db: Session, content_type: Any, content_id: str) -> ContentModel:
    """Load an article or news item, raising NotFoundError if missing."""
    model = model_for(content_type)
    content = db.get(model, content_id)
    if content is None:
        raise NotFoundError(enum_value(content_type).capitalize(), content_id)
    return content


@dataclass(frozen=True)
class ContentRef:
    """What fan-out needs to know about a piece of published content."""

    content_type: str
    content_id: str
    title: str
    category_id: Optional[str] = None
    author_id: Optional[str] = None
    tags: Tuple[str, ...] = field(default_factory=tuple)
    published_at: Optional[str] = None

    @classmethod
    def from_model(cls, content: ContentModel) -> "ContentRef":
        published_at = as_utc(content.published_at)
        return cls(
            content_type="news" if isinstance(content, NewsItemModel) else "article",
            content_id=content.id,
            title=content.title,
            category_id=content.category_id,
            author_id=getattr(content, "author_id", None),
            tags=tuple(content.tags or ()),
            published_at=published_at.isoformat() if published_at else None,
        )

    def to_item(self) -> dict:
        """Digest bucket entry for this content."""
        return {
            "content_type": self.content_type,
            "content_id": self.content_id,
            "title": self.title,
            "category_id": self.category_id,
            "published_at": self.published_at,
        }


class ArticleStore:
    """Creates and reads articles."""

    def __init__(
        self,
        db: Session,
        audit: Optional[AuditService] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.audit = audit or AuditService(db, clock=clock)

    def create_draft(
        self,
        title: str,
        author_id: str,
        category_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        actor: Optional[Actor] = None,
    ) -> ArticleModel:
        """Create an article in draft status and record its creation."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("title must not be empty")
        if not author_id:
            raise ValidationError("author_id is required")

        now = self.clock()
        article = ArticleModel(
            id=generate_ulid(),
            title=title,
            status="draft",
            author_id=author_id,
            category_id=category_id,
            tags=normalize_tags(tags),
            published_at=None,
            created_at=now,
            updated_at=now,
        )
        try:
            self.db.add(article)
            self.db.flush()
            self.audit.write(
                article.id,
                actor.actor_id if actor else author_id,
                ChangeType.CREATED,
                new_values={"status": "draft", "title": title},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("article_created", article_id=article.id, author_id=author_id)
        return article

    def get(self, article_id: str) -> ArticleModel:
        return load_content(self.db, ContentType.ARTICLE, article_id)

    def list(
        self,
        status: Optional[Any] = None,
        author_id: Optional[str] = None,
        category_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ArticleModel]:
        """List articles with optional filtering, newest first."""
        query = self.db.query(ArticleModel)
        if status is not None:
            query = query.filter(ArticleModel.status == enum_value(status))
        if author_id:
            query = query.filter(ArticleModel.author_id == author_id)
        if category_id:
            query = query.filter(ArticleModel.category_id == category_id)
        return (
            query.order_by(desc(ArticleModel.created_at))
            .offset(offset)
            .limit(limit)
            .all()
        )


class NewsStore:
    """Creates and reads news items."""

    def __init__(
        self,
        db: Session,
        audit: Optional[AuditService] = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.audit = audit or AuditService(db, clock=clock)

    def create_draft(
        self,
        title: str,
        source_name: Optional[str] = None,
        category_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        actor: Optional[Actor] = None,
    ) -> NewsItemModel:
        title = (title or "").strip()
        if not title:
            raise ValidationError("title must not be empty")

        now = self.clock()
        item = NewsItemModel(
            id=generate_ulid(),
            title=title,
            status="draft",
            source_name=source_name,
            category_id=category_id,
            tags=normalize_tags(tags),
            published_at=None,
            created_at=now,
            updated_at=now,
        )
        try:
            self.db.add(item)
            self.db.flush()
            self.audit.write(
                item.id,
                actor.actor_id if actor else "ingestion",
                ChangeType.CREATED,
                new_values={"status": "draft", "title": title},
                content_type=ContentType.NEWS,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("news_item_created", news_id=item.id, source=source_name)
        return item

    def get(self, news_id: str) -> NewsItemModel:
        return load_content(self.db, ContentType.NEWS, news_id)

    def list(
        self,
        status: Optional[Any] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[NewsItemModel]:
        query = self.db.query(NewsItemModel)
        if status is not None:
            query = query.filter(NewsItemModel.status == enum_value(status))
        return (
            query.order_by(desc(NewsItemModel.created_at))
            .offset(offset)
            .limit(limit)
            .all()
        )
