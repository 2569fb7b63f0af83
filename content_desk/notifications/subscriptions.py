"""
Subscription registry.

A subscription is a user's standing interest in a category, tag or author.
Subscriptions are never deleted; unsubscribing deactivates them so that
resubscribing restores the same row.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models import SubscriptionModel
from ..enums import Frequency, SubscriptionType
from ..errors import NotFoundError, ValidationError
from ..primitives import Clock, enum_value, generate_ulid, utc_now

logger = structlog.get_logger()


def _coerce(enum_cls, value: Any, field: str) -> str:
    try:
        return enum_cls(enum_value(value)).value
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}'; expected one of: {allowed}") from None


def normalize_target(sub_type: str, target: Any) -> str:
    value = str(target or "").strip()
    if not value:
        raise ValidationError("Subscription target must not be empty")
    if sub_type == SubscriptionType.TAG.value:
        value = value.lower()
    return value


class SubscriptionRegistry:
    """Service for managing user subscriptions."""

    def __init__(self, db: Session, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    def subscribe(
        self,
        user_id: str,
        type: Any,
        target: Any,
        frequency: Any = Frequency.IMMEDIATE,
    ) -> SubscriptionModel:
        """Create or re-activate a subscription (upsert on user, type, target)."""
        if not user_id:
            raise ValidationError("user_id is required")
        sub_type = _coerce(SubscriptionType, type, "subscription type")
        freq = _coerce(Frequency, frequency, "frequency")
        target = normalize_target(sub_type, target)

        for _ in range(2):
            existing = self._find(user_id, sub_type, target)
            now = self.clock()
            if existing is not None:
                existing.frequency = freq
                existing.is_active = True
                existing.updated_at = now
                self.db.commit()
                self.db.refresh(existing)
                logger.info(
                    "subscription_updated",
                    subscription_id=existing.id,
                    user_id=user_id,
                    type=sub_type,
                    target=target,
                )
                return existing

            subscription = SubscriptionModel(
                id=generate_ulid(),
                user_id=user_id,
                type=sub_type,
                target=target,
                frequency=freq,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            self.db.add(subscription)
            try:
                self.db.commit()
            except IntegrityError:
                # Concurrent subscribe created the row; update it instead
                self.db.rollback()
                continue
            self.db.refresh(subscription)
            logger.info(
                "subscription_created",
                subscription_id=subscription.id,
                user_id=user_id,
                type=sub_type,
                target=target,
            )
            return subscription

        raise ValidationError("Could not store subscription; please retry")

    def get(self, subscription_id: str) -> SubscriptionModel:
        subscription = self.db.get(SubscriptionModel, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def update(
        self,
        subscription_id: str,
        user_id: str,
        frequency: Optional[Any] = None,
        is_active: Optional[bool] = None,
    ) -> SubscriptionModel:
        """Change frequency or active flag of one of the user's subscriptions."""
        subscription = self._owned(subscription_id, user_id)
        if frequency is not None:
            subscription.frequency = _coerce(Frequency, frequency, "frequency")
        if is_active is not None:
            subscription.is_active = is_active
        subscription.updated_at = self.clock()
        self.db.commit()
        self.db.refresh(subscription)
        return subscription

    def deactivate(self, subscription_id: str, user_id: str) -> SubscriptionModel:
        return self.update(subscription_id, user_id, is_active=False)

    def unsubscribe(self, user_id: str, type: Any, target: Any) -> bool:
        """Deactivate by key. Returns False when no such subscription exists."""
        sub_type = _coerce(SubscriptionType, type, "subscription type")
        existing = self._find(user_id, sub_type, normalize_target(sub_type, target))
        if existing is None:
            return False
        existing.is_active = False
        existing.updated_at = self.clock()
        self.db.commit()
        logger.info("subscription_deactivated", subscription_id=existing.id, user_id=user_id)
        return True

    def list(
        self,
        user_id: str,
        type: Optional[Any] = None,
        is_active: Optional[bool] = None,
        frequency: Optional[Any] = None,
    ) -> List[SubscriptionModel]:
        query = self.db.query(SubscriptionModel).filter(SubscriptionModel.user_id == user_id)
        if type is not None:
            query = query.filter(
                SubscriptionModel.type == _coerce(SubscriptionType, type, "subscription type")
            )
        if is_active is not None:
            query = query.filter(SubscriptionModel.is_active == is_active)
        if frequency is not None:
            query = query.filter(
                SubscriptionModel.frequency == _coerce(Frequency, frequency, "frequency")
            )
        return query.order_by(SubscriptionModel.created_at.desc()).all()

    def stats(self, user_id: str) -> Dict[str, Any]:
        """Counts of a user's subscriptions; the breakdowns cover active ones."""
        subscriptions = self.list(user_id)
        active = [s for s in subscriptions if s.is_active]
        by_type = {member.value: 0 for member in SubscriptionType}
        by_frequency = {member.value: 0 for member in Frequency}
        for subscription in active:
            by_type[subscription.type] += 1
            by_frequency[subscription.frequency] += 1
        return {
            "total": len(subscriptions),
            "active": len(active),
            "by_type": by_type,
            "by_frequency": by_frequency,
        }

    def find_matching(
        self,
        category_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        author_id: Optional[str] = None,
    ) -> List[SubscriptionModel]:
        """Active subscriptions interested in content with these attributes."""
        clauses = []
        if category_id:
            clauses.append(
                and_(
                    SubscriptionModel.type == SubscriptionType.CATEGORY.value,
                    SubscriptionModel.target == category_id,
                )
            )
        tag_values = sorted({str(t).strip().lower() for t in tags or [] if str(t).strip()})
        if tag_values:
            clauses.append(
                and_(
                    SubscriptionModel.type == SubscriptionType.TAG.value,
                    SubscriptionModel.target.in_(tag_values),
                )
            )
        if author_id:
            clauses.append(
                and_(
                    SubscriptionModel.type == SubscriptionType.AUTHOR.value,
                    SubscriptionModel.target == author_id,
                )
            )
        if not clauses:
            return []

        return (
            self.db.query(SubscriptionModel)
            .filter(SubscriptionModel.is_active.is_(True), or_(*clauses))
            .order_by(SubscriptionModel.user_id, SubscriptionModel.id)
            .all()
        )

    def _find(self, user_id: str, sub_type: str, target: str) -> Optional[SubscriptionModel]:
        return (
            self.db.query(SubscriptionModel)
            .filter(
                SubscriptionModel.user_id == user_id,
                SubscriptionModel.type == sub_type,
                SubscriptionModel.target == target,
            )
            .first()
        )

    def _owned(self, subscription_id: str, user_id: str) -> SubscriptionModel:
        subscription = self.get(subscription_id)
        if subscription.user_id != user_id:
            raise NotFoundError("Subscription", subscription_id)
        return subscription
