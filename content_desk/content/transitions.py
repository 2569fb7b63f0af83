"""
Transition table and permission gate for content status changes.

Pure functions with no database access, so every rule can be tested in
isolation:

- submit: draft -> review; authors may only submit their own content
- approve / publish: review -> published
- reject: review -> draft, archived, or unchanged (decided by the caller)
- archive: published -> archived
- restore: archived -> draft
- publish_news: news draft -> published

Roles:
- author: submit (own content only)
- editor, admin: every editorial action
- system: publish only (the scheduler's identity)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from ..enums import ArticleStatus, NewsStatus, Role
from ..errors import PermissionDeniedError, StateError
from ..primitives import Actor

EDITORIAL = frozenset({Role.EDITOR, Role.ADMIN})


@dataclass(frozen=True)
class Transition:
    """One allowed status change."""

    action: str
    sources: FrozenSet[str]
    # None when the caller picks the target (reject)
    target: Optional[str]
    roles: FrozenSet[Role]
    own_content_roles: FrozenSet[Role] = frozenset()


ARTICLE_TRANSITIONS: Dict[str, Transition] = {
    "submit": Transition(
        action="submit",
        sources=frozenset({ArticleStatus.DRAFT.value}),
        target=ArticleStatus.REVIEW.value,
        roles=EDITORIAL,
        own_content_roles=frozenset({Role.AUTHOR}),
    ),
    "approve": Transition(
        action="approve",
        sources=frozenset({ArticleStatus.REVIEW.value}),
        target=ArticleStatus.PUBLISHED.value,
        roles=EDITORIAL,
    ),
    "reject": Transition(
        action="reject",
        sources=frozenset({ArticleStatus.REVIEW.value}),
        target=None,
        roles=EDITORIAL,
    ),
    "publish": Transition(
        action="publish",
        sources=frozenset({ArticleStatus.REVIEW.value}),
        target=ArticleStatus.PUBLISHED.value,
        roles=EDITORIAL | {Role.SYSTEM},
    ),
    "archive": Transition(
        action="archive",
        sources=frozenset({ArticleStatus.PUBLISHED.value}),
        target=ArticleStatus.ARCHIVED.value,
        roles=EDITORIAL,
    ),
    "restore": Transition(
        action="restore",
        sources=frozenset({ArticleStatus.ARCHIVED.value}),
        target=ArticleStatus.DRAFT.value,
        roles=EDITORIAL,
    ),
}

NEWS_TRANSITIONS: Dict[str, Transition] = {
    "publish": Transition(
        action="publish",
        sources=frozenset({NewsStatus.DRAFT.value}),
        target=NewsStatus.PUBLISHED.value,
        roles=EDITORIAL | {Role.SYSTEM},
    ),
    "archive": Transition(
        action="archive",
        sources=frozenset({NewsStatus.PUBLISHED.value}),
        target=NewsStatus.ARCHIVED.value,
        roles=EDITORIAL,
    ),
}

# Status from which each content type can be (scheduled for) publication
PUBLISHABLE_STATUS = {
    "article": ArticleStatus.REVIEW.value,
    "news": NewsStatus.DRAFT.value,
}


def get_transition(action: str, content_type: str = "article") -> Transition:
    table = NEWS_TRANSITIONS if content_type == "news" else ARTICLE_TRANSITIONS
    try:
        return table[action]
    except KeyError:
        raise ValueError(f"Unknown {content_type} action: {action}") from None


def authorize(
    transition: Transition,
    actor: Actor,
    owner_id: Optional[str] = None,
) -> None:
    """Raise PermissionDeniedError if the actor may not perform the transition."""
    if actor.role in transition.roles:
        return
    if actor.role in transition.own_content_roles:
        if owner_id is not None and owner_id == actor.actor_id:
            return
        raise PermissionDeniedError(
            f"Role '{actor.role.value}' may only {transition.action} its own content"
        )
    raise PermissionDeniedError(
        f"Role '{actor.role.value}' may not {transition.action} content"
    )


def check_transition(transition: Transition, current: str) -> str:
    """Raise StateError if ``current`` is not a legal source.

    Returns:
        The target status, or ``current`` for caller-decided transitions
    """
    if current not in transition.sources:
        raise StateError(current, transition.target or transition.action)
    return transition.target or current


def validate(
    action: str,
    current: str,
    actor: Actor,
    owner_id: Optional[str] = None,
    content_type: str = "article",
) -> str:
    """Run the permission gate and the transition table for one action.

    Returns:
        The target status
    """
    transition = get_transition(action, content_type)
    authorize(transition, actor, owner_id)
    return check_transition(transition, current)
