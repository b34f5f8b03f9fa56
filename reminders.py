"""
Event reminder mails (reminders.py)
================================================================================

`send_reminder` mails one registration immediately. `send_scheduled_reminders`
walks a role collection and mails each registration whose event is a
scheduled number of days away (7, 3, 1 and 0 by default).

The days-until value of every sent reminder is recorded in `reminders_sent`
on the registration, so a scheduled run never repeats a reminder for the
same day. All mail goes through the logged mailer.
"""

import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from config import EVENT_DATE
from emails import build_reminder_email
from errors import UpstreamFailure, ValidationError
from mailer import Mailer
from registrations import EMAIL_KEYS, get_registration, resolve_role
from utils import safe_objectid, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE_DAYS = (7, 3, 1, 0)
# Stored keys are normalized, so camelCase spellings arrive lower-cased
EVENT_DATE_PATHS = (
    ("event_date",), ("eventdate",), ("eventDate",), ("date",),
    ("event", "date"), ("eventdetails", "date"), ("eventDetails", "date"), ("event_details", "date"),
)
EVENT_NAME_PATHS = (("eventdetails", "name"), ("eventDetails", "name"), ("event_details", "name"), ("event", "name"))
# Roles whose reminders carry an upgrade link
TICKETED_ROLES = frozenset({"visitor", "exhibitor", "speaker", "awardee"})


def _lookup(doc: Dict[str, Any], path) -> Any:
    node: Any = doc
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def parse_date(value: Any) -> Optional[datetime.date]:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace("Z", "+00:00")
    try:
        return datetime.datetime.fromisoformat(text).date()
    except ValueError:
        pass
    try:
        return datetime.date.fromisoformat(text[:10])
    except ValueError:
        return None


def event_date_for(doc: Dict[str, Any], override: Any = None) -> Optional[datetime.date]:
    """An explicit date wins, then the first date stored on the record, then EVENT_DATE."""
    candidates = [override] + [_lookup(doc, path) for path in EVENT_DATE_PATHS] + [EVENT_DATE]
    for candidate in candidates:
        parsed = parse_date(candidate)
        if parsed is not None:
            return parsed
    return None


def days_until(event_date: Optional[datetime.date], today: Optional[datetime.date] = None) -> Optional[int]:
    if event_date is None:
        return None
    today = today or utcnow().date()
    return (event_date - today).days


def event_name_for(doc: Dict[str, Any]) -> Optional[str]:
    for path in EVENT_NAME_PATHS:
        value = _lookup(doc, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    event = doc.get("event")
    return event.strip() if isinstance(event, str) and event.strip() else None


def recipient_for(doc: Dict[str, Any]) -> Optional[str]:
    for key in EMAIL_KEYS + ("emailAddress", "contactEmail"):
        value = doc.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _reminders_sent(doc: Dict[str, Any]) -> List[int]:
    sent = []
    for value in doc.get("reminders_sent") or []:
        try:
            sent.append(int(value))
        except (TypeError, ValueError):
            continue
    return sent


def _schedule(schedule_days: Optional[Iterable[Any]]) -> set:
    if schedule_days is None:
        return set(DEFAULT_SCHEDULE_DAYS)
    if isinstance(schedule_days, (str, int)):
        schedule_days = [schedule_days]
    days = set()
    for value in schedule_days:
        try:
            days.add(int(value))
        except (TypeError, ValueError):
            continue
    return days


async def _mark_reminder_sent(collection: AsyncIOMotorCollection, doc: Dict[str, Any], days: int) -> None:
    """Record a sent reminder. Failures are logged, not raised."""
    sent = _reminders_sent(doc)
    if days not in sent:
        sent.append(days)
    now = utcnow()
    try:
        await collection.update_one(
            {"_id": doc["_id"]},
            {"$set": {"reminders_sent": sent, "last_reminder_at": now, "updatedAt": now}},
        )
    except PyMongoError as e:
        logger.warning(f"⚠️ [{collection.name}] Could not record reminder for {doc['_id']}: {e}")


def _message(collection_name: str, role: str, doc: Dict[str, Any], event_date, days, overrides: Dict[str, Any]):
    message = build_reminder_email(
        collection_name,
        doc,
        event_date,
        days,
        event_name=event_name_for(doc),
        with_upgrade_link=role in TICKETED_ROLES,
    )
    for key in ("subject", "text", "html"):
        if overrides.get(key):
            message[key] = overrides[key]
    return message


async def send_reminder(
    db: AsyncIOMotorDatabase,
    mailer: Mailer,
    entity: str,
    entity_id: str,
    event_date: Any = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """
    Mail one registration now.

    Raises NotFound for an unknown id, ValidationError when the record has no
    address and UpstreamFailure when the mailer reports a failure.
    """
    if not entity_id:
        raise ValidationError("entityId required")
    role, collection_name = resolve_role(entity or "visitors")
    doc = await get_registration(db, role, entity_id)
    to = recipient_for(doc)
    if not to:
        raise ValidationError("Registration has no email address")

    ev_date = event_date_for(doc, event_date)
    days = days_until(ev_date)
    result = await mailer.send_mail(to=to, **_message(collection_name, role, doc, ev_date, days, overrides))
    if not result.get("success"):
        logger.warning(f"⚠️ [{collection_name}] Reminder to {to} failed: {result.get('error')}")
        raise UpstreamFailure("mailer failure", raw=result.get("error"))

    await _mark_reminder_sent(db[collection_name], doc, days if days is not None else 0)
    logger.info(f"[{collection_name}] Reminder sent to {to} for {entity_id} (days until event: {days}).")
    return {"success": True, "sentTo": to, "daysUntil": days}


async def send_scheduled_reminders(
    db: AsyncIOMotorDatabase,
    mailer: Mailer,
    entity: str,
    schedule_days: Optional[Iterable[Any]] = None,
    entity_id: Optional[str] = None,
    limit: int = 1000,
    today: Optional[datetime.date] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """Send due reminders for a role; per-record failures are collected, not raised."""
    role, collection_name = resolve_role(entity or "visitors")
    collection = db[collection_name]
    due_days = _schedule(schedule_days)

    if entity_id:
        doc = await collection.find_one({"_id": safe_objectid(entity_id, "entityId")})
        docs = [doc] if doc else []
    else:
        docs = await collection.find({}).limit(limit).to_list(length=limit)

    processed = sent = skipped = 0
    errors: List[Dict[str, Any]] = []
    for doc in docs:
        processed += 1
        ev_date = event_date_for(doc)
        days = days_until(ev_date, today)
        to = recipient_for(doc)
        if days is None or days not in due_days or days in _reminders_sent(doc) or not to:
            skipped += 1
            continue

        result = await mailer.send_mail(to=to, **_message(collection_name, role, doc, ev_date, days, overrides))
        if not result.get("success"):
            errors.append({"id": str(doc["_id"]), "error": result.get("error") or "Unknown send failure"})
            continue
        await _mark_reminder_sent(collection, doc, days)
        sent += 1

    logger.info(
        f"[{collection_name}] Scheduled reminders: processed={processed}, sent={sent}, "
        f"skipped={skipped}, errors={len(errors)}"
    )
    return {"success": True, "processed": processed, "sent": sent, "skipped": skipped, "errors": errors}
