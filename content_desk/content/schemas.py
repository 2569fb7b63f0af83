"""
Request models for editorial operations.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ArticleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=500)
    author_id: Optional[str] = Field(
        default=None, description="Defaults to the acting identity"
    )
    category_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class NewsCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=500)
    source_name: Optional[str] = None
    category_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class ApproveOptions(BaseModel):
    """How an approved article goes out.

    ``scheduled_at`` takes precedence over ``publish_immediately``; a naive
    ``scheduled_at`` is read in ``timezone``.
    """

    model_config = ConfigDict(extra="forbid")

    publish_immediately: bool = True
    scheduled_at: Optional[datetime] = None
    timezone: str = "UTC"
    auto_publish: bool = True
    notes: Optional[str] = None


class RejectData(BaseModel):
    """Rejection details. The reason length is checked by the controller."""

    model_config = ConfigDict(extra="forbid")

    reason: str
    return_to_draft: bool = True
    allow_resubmission: bool = True
    feedback: Optional[str] = None
