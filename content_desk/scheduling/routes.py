"""
Scheduling API routes.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from ..auth import get_actor
from ..content.lifecycle import LifecycleController
from ..content.routes import get_lifecycle
from ..db.base import get_db
from ..enums import ContentType, Role
from ..errors import PermissionDeniedError
from ..primitives import Actor
from .scheduler import Scheduler

router = APIRouter(prefix="/schedules", tags=["Scheduling"])


class ScheduleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content_id: str
    content_type: ContentType = ContentType.ARTICLE
    scheduled_for: datetime
    timezone: str = "UTC"
    auto_publish: bool = True
    notes: Optional[str] = None


class ScheduleMove(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scheduled_for: datetime
    timezone: Optional[str] = None


def get_scheduler(
    db: Session = Depends(get_db),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> Scheduler:
    return Scheduler(db, lifecycle=lifecycle)


@router.post("", status_code=201)
async def create_schedule(
    payload: ScheduleCreate,
    actor: Actor = Depends(get_actor),
    scheduler: Scheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    schedule = scheduler.schedule_publication(
        payload.content_id,
        payload.scheduled_for,
        timezone=payload.timezone,
        auto_publish=payload.auto_publish,
        actor=actor,
        content_type=payload.content_type,
        notes=payload.notes,
    )
    return {"status": "success", "schedule": schedule.to_dict()}


@router.get("/upcoming")
async def upcoming_schedules(
    limit: int = Query(20, ge=1, le=500),
    scheduler: Scheduler = Depends(get_scheduler),
) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in scheduler.get_upcoming(limit)]


@router.get("/overdue")
async def overdue_schedules(
    scheduler: Scheduler = Depends(get_scheduler),
) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in scheduler.get_overdue()]


@router.post("/process-due")
async def process_due(
    actor: Actor = Depends(get_actor),
    scheduler: Scheduler = Depends(get_scheduler),
) -> Dict[str, int]:
    """Run one sweep. For external cron triggers."""
    if not actor.has_role(Role.SYSTEM, Role.ADMIN):
        raise PermissionDeniedError("Only system or admin actors may trigger a sweep")
    return scheduler.process_due()


@router.get("/{schedule_id}")
async def get_schedule(
    schedule_id: str,
    scheduler: Scheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    return scheduler.get(schedule_id).to_dict()


@router.post("/{schedule_id}/cancel")
async def cancel_schedule(
    schedule_id: str,
    actor: Actor = Depends(get_actor),
    scheduler: Scheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    cancelled = scheduler.cancel_schedule(schedule_id, actor)
    return {"cancelled": cancelled, "schedule": scheduler.get(schedule_id).to_dict()}


@router.post("/{schedule_id}/reschedule")
async def reschedule(
    schedule_id: str,
    payload: ScheduleMove,
    actor: Actor = Depends(get_actor),
    scheduler: Scheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    schedule = scheduler.reschedule(
        schedule_id, payload.scheduled_for, timezone=payload.timezone, actor=actor
    )
    return schedule.to_dict()
