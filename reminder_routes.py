"""
Reminder API routes (admin).

    POST /api/reminders/send        mail one registration now
    POST /api/reminders/create      same as /send, for older clients
    POST /api/reminders/scheduled   mail every registration whose reminder is due
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from core_deps import acquire_database, get_mailer, require_admin
from mailer import Mailer
from rate_limit import ADMIN_LIMIT, limiter
from reminders import send_reminder, send_scheduled_reminders

logger = logging.getLogger(__name__)

reminder_router = APIRouter(prefix="/api/reminders", tags=["Reminders"])


def _overrides(body: Dict[str, Any]) -> Dict[str, Any]:
    return {key: body[key] for key in ("subject", "text", "html") if isinstance(body.get(key), str)}


@reminder_router.post("/send", name="send_reminder")
@reminder_router.post("/create", name="create_reminder")
@limiter.limit(ADMIN_LIMIT)
async def send_reminder_route(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    mailer: Mailer = Depends(get_mailer),
    actor: str = Depends(require_admin),
):
    body = body or {}
    return await send_reminder(
        db,
        mailer,
        body.get("entity") or "visitors",
        body.get("entityId"),
        event_date=body.get("eventDate"),
        **_overrides(body),
    )


@reminder_router.post("/scheduled", name="send_scheduled_reminders")
@limiter.limit(ADMIN_LIMIT)
async def send_scheduled_reminders_route(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    mailer: Mailer = Depends(get_mailer),
    actor: str = Depends(require_admin),
):
    body = body or {}
    return await send_scheduled_reminders(
        db,
        mailer,
        body.get("entity") or "visitors",
        schedule_days=body.get("scheduleDays"),
        entity_id=body.get("entityId"),
        **_overrides(body),
    )
