"""
Editorial API routes.

Endpoints for drafting, reviewing and publishing articles and news items.
Domain errors propagate to the exception handlers registered in ``api.py``.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_actor
from ..db.audit_service import AuditService
from ..db.base import get_db
from ..db.models import ScheduledPublicationModel
from ..enums import ArticleStatus, NewsStatus
from ..notifications.fanout import FanoutEngine
from ..primitives import Actor
from .lifecycle import LifecycleController
from .schemas import ApproveOptions, ArticleCreate, NewsCreate, RejectData
from .store import ArticleStore, NewsStore

router = APIRouter(tags=["Content"])


def get_lifecycle(db: Session = Depends(get_db)) -> LifecycleController:
    """Lifecycle controller that fans out right after each publish."""
    return LifecycleController(
        db, on_publish=lambda content_id, content_type: FanoutEngine(db).process_for_content(
            content_id, content_type
        )
    )


# =============================================================================
# Article Endpoints
# =============================================================================


@router.post("/articles", status_code=201)
async def create_article(
    payload: ArticleCreate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Create a new draft article."""
    article = ArticleStore(db).create_draft(
        title=payload.title,
        author_id=payload.author_id or actor.actor_id,
        category_id=payload.category_id,
        tags=payload.tags,
        actor=actor,
    )
    return {"status": "success", "article": article.to_dict()}


@router.get("/articles")
async def list_articles(
    status: Optional[ArticleStatus] = None,
    author_id: Optional[str] = None,
    category_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    articles = ArticleStore(db).list(
        status=status,
        author_id=author_id,
        category_id=category_id,
        limit=limit,
        offset=offset,
    )
    return [a.to_dict() for a in articles]


@router.get("/articles/{article_id}")
async def get_article(article_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return ArticleStore(db).get(article_id).to_dict()


@router.post("/articles/{article_id}/submit")
async def submit_article(
    article_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> Dict[str, Any]:
    """Submit a draft for editorial review."""
    return lifecycle.submit_for_review(article_id, actor).to_dict()


@router.post("/articles/{article_id}/approve")
async def approve_article(
    article_id: str,
    options: Optional[ApproveOptions] = None,
    actor: Actor = Depends(get_actor),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> Dict[str, Any]:
    """Approve an article: publish now or schedule it."""
    result = lifecycle.approve(article_id, actor, options or ApproveOptions())
    if isinstance(result, ScheduledPublicationModel):
        return {"status": "scheduled", "schedule": result.to_dict()}
    return {"status": "published", "article": result.to_dict()}


@router.post("/articles/{article_id}/reject")
async def reject_article(
    article_id: str,
    data: RejectData,
    actor: Actor = Depends(get_actor),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> Dict[str, Any]:
    return lifecycle.reject(article_id, actor, data).to_dict()


@router.post("/articles/{article_id}/archive")
async def archive_article(
    article_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> Dict[str, Any]:
    return lifecycle.archive(article_id, actor).to_dict()


@router.post("/articles/{article_id}/restore")
async def restore_article(
    article_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> Dict[str, Any]:
    return lifecycle.restore(article_id, actor).to_dict()


@router.get("/articles/{article_id}/audit")
async def article_audit(
    article_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Audit history of an article, newest first."""
    ArticleStore(db).get(article_id)
    audit = AuditService(db)
    entries = audit.read(article_id, page=page, limit=limit)
    return {
        "entries": [e.to_dict() for e in entries],
        "page": page,
        "limit": limit,
        "total": audit.count(article_id),
    }


# =============================================================================
# News Endpoints
# =============================================================================


@router.post("/news", status_code=201)
async def create_news(
    payload: NewsCreate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    item = NewsStore(db).create_draft(
        title=payload.title,
        source_name=payload.source_name,
        category_id=payload.category_id,
        tags=payload.tags,
        actor=actor,
    )
    return {"status": "success", "news": item.to_dict()}


@router.get("/news")
async def list_news(
    status: Optional[NewsStatus] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [n.to_dict() for n in NewsStore(db).list(status=status, limit=limit, offset=offset)]


@router.get("/news/{news_id}")
async def get_news(news_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return NewsStore(db).get(news_id).to_dict()


@router.post("/news/{news_id}/publish")
async def publish_news(
    news_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> Dict[str, Any]:
    return lifecycle.publish_news(news_id, actor).to_dict()


@router.post("/news/{news_id}/archive")
async def archive_news(
    news_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> Dict[str, Any]:
    return lifecycle.archive_news(news_id, actor).to_dict()
