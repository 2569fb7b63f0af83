"""
Editorial content: entity store, transition rules and lifecycle controller.
"""

from .lifecycle import LifecycleController
from .schemas import ApproveOptions, RejectData
from .store import ArticleStore, ContentRef, NewsStore

__all__ = [
    "ApproveOptions",
    "ArticleStore",
    "ContentRef",
    "LifecycleController",
    "NewsStore",
    "RejectData",
]
