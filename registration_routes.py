"""
Registration API routes.

    POST /api/{role_plural}                     submit a registration form
    GET  /api/{role_plural}                     list (admin)
    GET  /api/{role_plural}/stats               total, paid and free counts (admin)
    GET  /api/{role_plural}/{id}                fetch one
    PUT  /api/{role_plural}/{id}                general update (admin)
    POST /api/{role_plural}/{id}/confirm        whitelisted update (admin)
    POST /api/{role_plural}/{id}/approve        approval decision (admin)
    POST /api/{role_plural}/{id}/cancel         approval decision (admin)
    POST /api/{role_plural}/{id}/resend-email   resend the ticket email
    POST /api/admin/fields/{role}               sync admin-configured field indexes

Responses are sent as soon as the document is stored; emails go out through
the background task manager.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from background_tasks import BackgroundTaskManager, notify_admins, send_logged
from config import ADMIN_EMAILS, APPROVAL_ROLES, EXHIBITOR_ADMIN_EMAILS
from core_deps import acquire_database, get_background_tasks, get_mailer, require_admin
from emails import (
    build_acknowledgement_email,
    build_admin_notification,
    build_confirmation_email,
    build_decision_email,
)
from errors import ValidationError
from field_names import load_admin_fields
from index_management import sync_fields_to_collection
from mailer import Mailer
from rate_limit import ADMIN_LIMIT, REGISTER_POST_LIMIT, limiter
from registrations import (
    confirm_registration,
    get_registration,
    list_registrations,
    registration_stats,
    resolve_role,
    save_registration,
    set_registration_status,
    update_registration,
)
from utils import doc_to_output

logger = logging.getLogger(__name__)

registration_router = APIRouter(prefix="/api", tags=["Registrations"])


def _admin_recipients(role: str):
    return EXHIBITOR_ADMIN_EMAILS if role in APPROVAL_ROLES else ADMIN_EMAILS


def _form_from_body(body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Accepts the form itself or a `{"form": {...}}` / `{"_rawForm": {...}}` wrapper."""
    if not isinstance(body, dict) or not body:
        raise ValidationError("Registration form must be a non-empty JSON object")
    form = body.get("form")
    if isinstance(form, dict):
        return form
    if list(body) == ["_rawForm"] and isinstance(body["_rawForm"], dict):
        return body["_rawForm"]
    return body


async def _queue_registration_mail(
    tasks: BackgroundTaskManager,
    mailer: Mailer,
    role: str,
    collection_name: str,
    doc: Dict[str, Any],
) -> Dict[str, Any]:
    queued = {"queued": False}
    email = doc.get("email")
    if email:
        if role in APPROVAL_ROLES:
            message = build_acknowledgement_email(role, doc)
        else:
            message = build_confirmation_email(collection_name, doc)
        task_id = await tasks.create_task(send_logged(mailer, email, message), task_name=f"{role}_confirmation")
        queued = {"queued": task_id is not None, "to": email}

    if role in APPROVAL_ROLES:
        notification = build_admin_notification(
            f"New {role} registered.",
            f"New {role} registration, ID: {doc.get('_id')}",
            doc,
        )
        await tasks.create_task(
            notify_admins(mailer, _admin_recipients(role), notification),
            task_name=f"{role}_admin_notify",
        )
    return queued


@registration_router.post("/admin/fields/{role}", name="sync_admin_fields")
@limiter.limit(ADMIN_LIMIT)
async def sync_admin_fields(
    request: Request,
    role: str,
    body: Optional[Dict[str, Any]] = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    actor: str = Depends(require_admin),
):
    role, collection_name = resolve_role(role)
    fields = (body or {}).get("fields")
    if not isinstance(fields, list):
        fields, _ = await load_admin_fields(db, role)
    result = await sync_fields_to_collection(db, collection_name, fields)
    return {"success": not result["errors"], "collection": collection_name, **result}


@registration_router.post("/{role_plural}", name="create_registration")
@limiter.limit(REGISTER_POST_LIMIT)
async def create_registration(
    request: Request,
    role_plural: str,
    body: Optional[Dict[str, Any]] = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    mailer: Mailer = Depends(get_mailer),
    tasks: BackgroundTaskManager = Depends(get_background_tasks),
):
    role, collection_name = resolve_role(role_plural)
    form = _form_from_body(body)

    fields, _ = await load_admin_fields(db, role)
    result = await save_registration(db, role, form, allowed_fields=fields or None)

    if result.existed:
        mail = {"queued": False, "reason": "existing registration"}
    else:
        mail = await _queue_registration_mail(tasks, mailer, role, collection_name, result.doc)

    return {
        "success": True,
        "message": f"{role.capitalize()} {'updated' if result.existed else 'registered'}",
        "insertedId": result.id,
        "id": result.id,
        "ticket_code": result.doc.get("ticket_code"),
        "saved": doc_to_output(result.doc),
        "existed": result.existed,
        "mail": mail,
    }


@registration_router.get("/{role_plural}", name="list_registrations")
@limiter.limit(ADMIN_LIMIT)
async def list_registrations_route(
    request: Request,
    role_plural: str,
    limit: int = Query(default=500, ge=1, le=5000),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    actor: str = Depends(require_admin),
):
    docs = await list_registrations(db, role_plural, limit=limit)
    return {"success": True, "count": len(docs), "items": [doc_to_output(d) for d in docs]}


@registration_router.get("/{role_plural}/stats", name="registration_stats")
@limiter.limit(ADMIN_LIMIT)
async def registration_stats_route(
    request: Request,
    role_plural: str,
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    actor: str = Depends(require_admin),
):
    return {"success": True, **await registration_stats(db, role_plural)}


@registration_router.get("/{role_plural}/{entity_id}", name="get_registration")
async def get_registration_route(
    role_plural: str,
    entity_id: str,
    db: AsyncIOMotorDatabase = Depends(acquire_database),
):
    doc = await get_registration(db, role_plural, entity_id)
    return {"success": True, "item": doc_to_output(doc)}


@registration_router.post("/{role_plural}/{entity_id}/confirm", name="confirm_registration")
async def confirm_registration_route(
    role_plural: str,
    entity_id: str,
    body: Optional[Dict[str, Any]] = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    actor: str = Depends(require_admin),
):
    result = await confirm_registration(db, role_plural, entity_id, body or {})
    response = {"success": True, "changed": result.changed, "updated": doc_to_output(result.doc)}
    if result.note:
        response["note"] = result.note
    return response


@registration_router.put("/{role_plural}/{entity_id}", name="update_registration")
@limiter.limit(ADMIN_LIMIT)
async def update_registration_route(
    request: Request,
    role_plural: str,
    entity_id: str,
    body: Optional[Dict[str, Any]] = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    actor: str = Depends(require_admin),
):
    role, _ = resolve_role(role_plural)
    fields, _ = await load_admin_fields(db, role)
    result = await update_registration(db, role, entity_id, body or {}, allowed_fields=fields or None)
    response = {"success": True, "changed": result.changed, "updated": doc_to_output(result.doc)}
    if result.note:
        response["note"] = result.note
    return response


async def _decide(
    role_plural: str,
    entity_id: str,
    status: str,
    body: Optional[Dict[str, Any]],
    db: AsyncIOMotorDatabase,
    mailer: Mailer,
    tasks: BackgroundTaskManager,
    actor: str,
) -> Dict[str, Any]:
    role, collection_name = resolve_role(role_plural)
    if role not in APPROVAL_ROLES:
        raise ValidationError(f"{collection_name} do not go through approval")
    admin = str((body or {}).get("admin") or actor)
    updated = await set_registration_status(db, role, entity_id, status, actor=admin)

    if updated.get("email"):
        message = build_decision_email(role, collection_name, updated, status)
        await tasks.create_task(send_logged(mailer, updated["email"], message), task_name=f"{role}_{status}_mail")
    notification = build_admin_notification(
        f"{role.capitalize()} {status}",
        f"{role.capitalize()} {status}, ID: {updated['_id']}",
        updated,
    )
    await tasks.create_task(
        notify_admins(mailer, _admin_recipients(role), notification),
        task_name=f"{role}_{status}_admin_notify",
    )
    return {"success": True, "id": str(updated["_id"]), "status": status, "updated": doc_to_output(updated)}


@registration_router.post("/{role_plural}/{entity_id}/approve", name="approve_registration")
async def approve_registration(
    role_plural: str,
    entity_id: str,
    body: Optional[Dict[str, Any]] = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    mailer: Mailer = Depends(get_mailer),
    tasks: BackgroundTaskManager = Depends(get_background_tasks),
    actor: str = Depends(require_admin),
):
    return await _decide(role_plural, entity_id, "approved", body, db, mailer, tasks, actor)


@registration_router.post("/{role_plural}/{entity_id}/cancel", name="cancel_registration")
async def cancel_registration(
    role_plural: str,
    entity_id: str,
    body: Optional[Dict[str, Any]] = Body(default=None),
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    mailer: Mailer = Depends(get_mailer),
    tasks: BackgroundTaskManager = Depends(get_background_tasks),
    actor: str = Depends(require_admin),
):
    return await _decide(role_plural, entity_id, "cancelled", body, db, mailer, tasks, actor)


@registration_router.post("/{role_plural}/{entity_id}/resend-email", name="resend_registration_email")
@limiter.limit(REGISTER_POST_LIMIT)
async def resend_registration_email(
    request: Request,
    role_plural: str,
    entity_id: str,
    db: AsyncIOMotorDatabase = Depends(acquire_database),
    mailer: Mailer = Depends(get_mailer),
):
    role, collection_name = resolve_role(role_plural)
    doc = await get_registration(db, role, entity_id)
    if not doc.get("email"):
        raise ValidationError("Registration has no email address")
    result = await mailer.send_mail(to=doc["email"], **build_confirmation_email(collection_name, doc))
    return {"success": bool(result.get("success")), "mail": result}
