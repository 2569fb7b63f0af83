"""
Notification API routes: subscriptions, preferences, inbox, fan-out,
digests and the failed-delivery queue.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from ..auth import get_actor
from ..db.base import get_db
from ..enums import ContentType, DigestFrequency, Frequency, Role, SubscriptionType
from ..errors import PermissionDeniedError
from ..primitives import Actor
from .delivery import DeliveryDispatcher, NotificationInbox
from .digest import DigestBuilder
from .fanout import FanoutEngine
from .preferences import PreferenceEvaluator
from .subscriptions import SubscriptionRegistry

router = APIRouter(tags=["Notifications"])


class SubscriptionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: SubscriptionType
    target: str
    frequency: Frequency = Frequency.IMMEDIATE


class SubscriptionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    frequency: Optional[Frequency] = None
    is_active: Optional[bool] = None


class CategoryOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    frequency: Optional[Frequency] = None


class PreferencesUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    in_app_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    push_enabled: Optional[bool] = None
    digest_frequency: Optional[DigestFrequency] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: Optional[str] = None
    categories: Optional[Dict[str, CategoryOverride]] = None


def _require_operator(actor: Actor) -> None:
    if not actor.has_role(Role.SYSTEM, Role.ADMIN, Role.EDITOR):
        raise PermissionDeniedError("Operator role required")


# =============================================================================
# Subscription Endpoints
# =============================================================================


@router.post("/subscriptions", status_code=201)
async def subscribe(
    payload: SubscriptionCreate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    subscription = SubscriptionRegistry(db).subscribe(
        actor.actor_id, payload.type, payload.target, payload.frequency
    )
    return subscription.to_dict()


@router.get("/subscriptions")
async def list_subscriptions(
    type: Optional[SubscriptionType] = None,
    is_active: Optional[bool] = None,
    frequency: Optional[Frequency] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    subscriptions = SubscriptionRegistry(db).list(
        actor.actor_id, type=type, is_active=is_active, frequency=frequency
    )
    return [s.to_dict() for s in subscriptions]


@router.get("/subscriptions/stats")
async def subscription_stats(
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return SubscriptionRegistry(db).stats(actor.actor_id)


@router.patch("/subscriptions/{subscription_id}")
async def update_subscription(
    subscription_id: str,
    payload: SubscriptionUpdate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    subscription = SubscriptionRegistry(db).update(
        subscription_id,
        actor.actor_id,
        frequency=payload.frequency,
        is_active=payload.is_active,
    )
    return subscription.to_dict()


@router.delete("/subscriptions/{subscription_id}")
async def deactivate_subscription(
    subscription_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return SubscriptionRegistry(db).deactivate(subscription_id, actor.actor_id).to_dict()


# =============================================================================
# Preference Endpoints
# =============================================================================


@router.get("/preferences")
async def get_preferences(
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return PreferenceEvaluator(db).get_preferences(actor.actor_id).to_dict()


@router.put("/preferences")
async def update_preferences(
    payload: PreferencesUpdate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True, mode="json")
    prefs = PreferenceEvaluator(db).update_preferences(actor.actor_id, **changes)
    return prefs.to_dict()


@router.get("/preferences/quiet-hours")
async def quiet_hours_status(
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return PreferenceEvaluator(db).get_quiet_hours_status(actor.actor_id).to_dict()


# =============================================================================
# Inbox Endpoints
# =============================================================================


@router.get("/notifications")
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    inbox = NotificationInbox(db)
    notifications = inbox.list_for_user(
        actor.actor_id, unread_only=unread_only, limit=limit, offset=offset
    )
    return {
        "notifications": [n.to_dict() for n in notifications],
        "unread": inbox.unread_count(actor.actor_id),
    }


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return NotificationInbox(db).mark_read(notification_id, actor.actor_id).to_dict()


@router.post("/notifications/read-all")
async def mark_all_read(
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, int]:
    return {"marked": NotificationInbox(db).mark_all_read(actor.actor_id)}


# =============================================================================
# Operator Endpoints
# =============================================================================


@router.post("/fanout/{content_type}/{content_id}")
async def trigger_fanout(
    content_type: ContentType,
    content_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, int]:
    """Fan out a published content item again. Idempotent."""
    _require_operator(actor)
    return FanoutEngine(db).notify_on_publish(content_id, content_type)


@router.post("/digests/{digest_type}/build")
async def build_digests(
    digest_type: Frequency,
    force: bool = False,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, int]:
    _require_operator(actor)
    return DigestBuilder(db).build_due(digest_type, force=force)


@router.post("/deliveries/process")
async def process_deliveries(
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, int]:
    _require_operator(actor)
    return DeliveryDispatcher(db).deliver_pending(limit=limit)


@router.get("/deliveries/failed")
async def failed_deliveries(
    include_resolved: bool = False,
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    _require_operator(actor)
    failed = DeliveryDispatcher(db).list_failed(limit=limit, include_resolved=include_resolved)
    return [f.to_dict() for f in failed]


@router.post("/deliveries/failed/{failed_id}/requeue")
async def requeue_failed_delivery(
    failed_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    _require_operator(actor)
    return DeliveryDispatcher(db).requeue_failed(failed_id).to_dict()


@router.post("/deliveries/failed/{failed_id}/resolve")
async def resolve_failed_delivery(
    failed_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    _require_operator(actor)
    return DeliveryDispatcher(db).resolve_failed(failed_id).to_dict()
