"""Ticket API routes: validation and entry passes for gate scanners, and upgrades."""
import asyncio
import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import Response
from motor.motor_asyncio import AsyncIOMotorDatabase

from config import DEBUG_TICKETS, TICKET_SCAN_SCAN_LIMIT
from core_deps import acquire_database, get_mailer, get_payment_client, require_admin
from entry_pass import render_entry_pass
from errors import PaymentRequired
from mailer import Mailer
from payments import PaymentClient
from rate_limit import SCAN_LIMIT, UPGRADE_LIMIT, limiter
from ticket_resolver import debug_check, requires_payment, resolve_ticket, ticket_view
from upgrades import upgrade_ticket

logger = logging.getLogger(__name__)

ticket_router = APIRouter(prefix="/api/tickets", tags=["Tickets"])

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]")


def _incoming(body: Any) -> Any:
    """`ticketId` wins over `raw`; a bare JSON value is the payload itself."""
    if not isinstance(body, dict):
        return body
    if body.get("ticketId") is not None:
        return body["ticketId"]
    return body.get("raw")


@ticket_router.post("/validate", name="validate_ticket")
@limiter.limit(SCAN_LIMIT)
async def validate_ticket(
    request: Request,
    body: Any = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
):
    resolved = await resolve_ticket(db, _incoming(body), scan_limit=TICKET_SCAN_SCAN_LIMIT)
    return {"success": True, "ticket": ticket_view(resolved, include_raw_form=DEBUG_TICKETS)}


@ticket_router.post("/scan", name="scan_ticket")
@limiter.limit(SCAN_LIMIT)
async def scan_ticket(
    request: Request,
    body: Any = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
):
    resolved = await resolve_ticket(db, _incoming(body), scan_limit=TICKET_SCAN_SCAN_LIMIT)
    if requires_payment(resolved.record):
        logger.info(f"[{resolved.collection}] Scan refused for '{resolved.key}': payment pending.")
        raise PaymentRequired()

    view = ticket_view(resolved)
    png = await asyncio.to_thread(render_entry_pass, view)
    filename = _UNSAFE_FILENAME.sub("", str(view["ticket_code"])) or "pass"
    return Response(
        content=png,
        media_type="image/png",
        headers={"Content-Disposition": f"inline; filename=ticket-{filename}.png"},
    )


@ticket_router.post("/debug-check", name="debug_check_ticket")
async def debug_check_ticket(
    body: Any = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    actor: str = Depends(require_admin),
):
    return {"success": True, "debug": await debug_check(db, _incoming(body))}


@ticket_router.post("/upgrade", name="upgrade_ticket")
@limiter.limit(UPGRADE_LIMIT)
async def upgrade_ticket_route(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    payments: PaymentClient = Depends(get_payment_client),
    mailer: Mailer = Depends(get_mailer),
):
    body = body or {}
    result = await upgrade_ticket(
        db,
        payments,
        mailer,
        entity_type=body.get("entity_type"),
        entity_id=body.get("entity_id"),
        new_category=body.get("new_category"),
        amount=body.get("amount"),
        email=body.get("email"),
    )
    return result.to_response()
