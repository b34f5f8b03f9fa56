"""
Registration Store (registrations.py)
================================================================================

Persists registration documents into per-role collections (`visitors`,
`exhibitors`, `partners`, `speakers`, `awardees`).

Core guarantees:
- Resubmitting with the same (email, role) touches the existing document and
  never allocates a second ticket code (`$setOnInsert` upsert).
- Every created document leaves `save_registration` with a ticket code that
  is unique in its collection. Collisions are reported by the write
  primitives as a `WriteOutcome` value and retried in a bounded loop.
- A stored ticket code is never replaced by confirm/update calls unless the
  caller passes `force=True`.
"""

import json
import logging
import datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import APPROVAL_ROLES, ROLE_COLLECTIONS, TICKET_CODE_MAX_ATTEMPTS
from errors import Conflict, NotFound, StorageExhausted, ValidationError
from field_names import normalize_allowed_fields, safe_field_name
from index_management import ensure_email_role_index, ensure_ticket_code_index
from ticket_codes import generate_ticket_code
from utils import safe_objectid, utcnow

logger = logging.getLogger(__name__)

RAW_FORM_KEY = "_rawForm"
# Compared against normalized keys, so lower-cased spellings are listed too
RESERVED_KEYS = frozenset({
    "_id", "id", "role", "status", RAW_FORM_KEY, "_rawform",
    "createdAt", "createdat", "updatedAt", "updatedat",
})
# Normalized spellings of email-ish keys, in preference order
EMAIL_KEYS = ("email", "email_address", "emailaddress", "contact_email", "contactemail")
IDENTITY_KEYS = frozenset(EMAIL_KEYS)

CONFIRM_WHITELIST = frozenset({
    "ticket_code", "ticket_category", "txId", "email", "name", "company",
    "mobile", "designation", "slots", "other_details", "payment_status",
})
# General admin edits: confirm fields plus pricing, profile and reminder bookkeeping
UPDATE_WHITELIST = CONFIRM_WHITELIST | frozenset({
    "company_type", "purpose", "category", "ticket_label", "ticket_price", "ticket_gst",
    "ticket_total", "organization", "awardType", "awardOther", "bio", "proof_path",
    "registered_at", "reminders_sent", "last_reminder_at",
})
TIMESTAMP_FIELDS = frozenset({"registered_at", "last_reminder_at"})


@dataclass
class WriteOutcome:
    """Result of a single write attempt: the stored document, or the key that conflicted."""
    doc: Optional[Dict[str, Any]] = None
    conflict: Optional[str] = None
    existed: bool = False

    @property
    def ok(self) -> bool:
        return self.conflict is None and self.doc is not None


@dataclass
class SaveResult:
    id: str
    doc: Dict[str, Any]
    existed: bool


@dataclass
class ConfirmResult:
    doc: Dict[str, Any]
    changed: bool
    note: Optional[str] = None


# ============================================================================
# Roles
# ============================================================================

def resolve_role(role: str) -> Tuple[str, str]:
    """
    Map a singular or plural role name to (role, collection_name).

    Raises ValidationError for anything outside the five known roles.
    """
    name = str(role or "").strip().lower()
    if name in ROLE_COLLECTIONS:
        return name, ROLE_COLLECTIONS[name]
    for singular, collection_name in ROLE_COLLECTIONS.items():
        if name == collection_name:
            return singular, collection_name
    raise ValidationError(f"Unknown registration role '{role}'")


def initial_status(role: str) -> str:
    return "pending" if role in APPROVAL_ROLES else "new"


# ============================================================================
# Document mapping
# ============================================================================

def map_form_to_doc(form: Dict[str, Any], allowed: Optional[Set[str]] = None) -> Dict[str, Any]:
    """
    Normalize every key of a submitted form.

    Top-level keys win over keys from a nested `_rawForm`. The whitelist, when
    given, filters everything except identity keys (email), which are always
    kept so resubmissions can be deduplicated.
    """
    mapped: Dict[str, Any] = {}

    def _take(key: Any, value: Any) -> None:
        safe = safe_field_name(key)
        if not safe or safe in RESERVED_KEYS or safe in mapped:
            return
        if allowed is not None and safe not in allowed and safe not in IDENTITY_KEYS:
            return
        mapped[safe] = value

    for key, value in form.items():
        if key == RAW_FORM_KEY:
            continue
        _take(key, value)

    nested = form.get(RAW_FORM_KEY)
    if isinstance(nested, dict):
        for key, value in nested.items():
            _take(key, value)

    return mapped


def extract_email(doc: Dict[str, Any]) -> Optional[str]:
    for key in EMAIL_KEYS:
        value = doc.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    return None


def _conflicting_key(error: DuplicateKeyError) -> str:
    """Name the field whose unique index rejected a write."""
    details = error.details or {}
    pattern = details.get("keyPattern") or details.get("keyValue") or {}
    if "ticket_code" in pattern:
        return "ticket_code"
    if "email" in pattern:
        return "email"
    message = str(error)
    if "ticket_code" in message:
        return "ticket_code"
    if "email" in message:
        return "email"
    return "_id"


# ============================================================================
# Write primitives
# ============================================================================

async def upsert_by_identity(
    collection: AsyncIOMotorCollection,
    identity: Dict[str, Any],
    on_insert: Dict[str, Any],
    now,
) -> WriteOutcome:
    """
    Atomic insert-only-default upsert.

    `on_insert` is only applied when no document matches `identity`; an
    existing document just gets its `updatedAt` bumped.
    """
    try:
        before = await collection.find_one_and_update(
            identity,
            {"$setOnInsert": on_insert, "$set": {"updatedAt": now}},
            upsert=True,
            return_document=ReturnDocument.BEFORE,
        )
    except DuplicateKeyError as e:
        return WriteOutcome(conflict=_conflicting_key(e))

    if before is not None:
        return WriteOutcome(doc={**before, "updatedAt": now}, existed=True)
    stored = await collection.find_one(identity)
    return WriteOutcome(doc=stored)


async def insert_document(collection: AsyncIOMotorCollection, doc: Dict[str, Any]) -> WriteOutcome:
    try:
        to_insert = dict(doc)
        result = await collection.insert_one(to_insert)
    except DuplicateKeyError as e:
        return WriteOutcome(conflict=_conflicting_key(e))
    return WriteOutcome(doc={**doc, "_id": result.inserted_id})


async def assign_missing_ticket_code(collection: AsyncIOMotorCollection, doc: Dict[str, Any]) -> Dict[str, Any]:
    """Give a legacy document without a code one, without touching an existing code."""
    for _ in range(TICKET_CODE_MAX_ATTEMPTS):
        candidate = generate_ticket_code()
        try:
            updated = await collection.find_one_and_update(
                {"_id": doc["_id"], "ticket_code": {"$in": [None, ""]}},
                {"$set": {"ticket_code": candidate}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            continue
        if updated is None:
            # Someone else assigned one in the meantime
            return await collection.find_one({"_id": doc["_id"]}) or doc
        return updated
    raise StorageExhausted()


# ============================================================================
# Public operations
# ============================================================================

async def save_registration(
    db: AsyncIOMotorDatabase,
    role: str,
    form: Dict[str, Any],
    allowed_fields: Optional[Iterable[Any]] = None,
) -> SaveResult:
    """
    Save a submitted registration form.

    With an email: idempotent upsert on (email, role). Without one: a plain
    insert, so repeated email-less submissions create separate records.
    Returns the stored document and whether it already existed.
    """
    role, collection_name = resolve_role(role)
    if not isinstance(form, dict):
        raise ValidationError("Registration form must be a JSON object")

    collection = db[collection_name]
    allowed = normalize_allowed_fields(allowed_fields)
    mapped = map_form_to_doc(form, allowed)
    email = extract_email(mapped)
    supplied_code = mapped.pop("ticket_code", None)
    supplied_code = str(supplied_code).strip() if supplied_code not in (None, "") else None

    now = utcnow()
    doc: Dict[str, Any] = {
        **mapped,
        RAW_FORM_KEY: form,
        "role": role,
        "status": initial_status(role),
        "createdAt": now,
        "updatedAt": now,
    }

    await ensure_ticket_code_index(db, collection_name)

    if email:
        doc["email"] = email
        await ensure_email_role_index(db, collection_name)
        return await _save_with_identity(collection, role, doc, supplied_code, now)
    return await _save_without_identity(collection, role, doc, supplied_code)


async def _save_with_identity(
    collection: AsyncIOMotorCollection,
    role: str,
    doc: Dict[str, Any],
    supplied_code: Optional[str],
    now,
) -> SaveResult:
    identity = {"email": doc["email"], "role": role}
    on_insert = {k: v for k, v in doc.items() if k not in identity and k != "updatedAt"}

    for attempt in range(1, TICKET_CODE_MAX_ATTEMPTS + 1):
        on_insert["ticket_code"] = supplied_code if (attempt == 1 and supplied_code) else generate_ticket_code()
        outcome = await upsert_by_identity(collection, identity, on_insert, now)

        if outcome.ok:
            stored = outcome.doc
            if not stored.get("ticket_code"):
                stored = await assign_missing_ticket_code(collection, stored)
            logger.info(
                f"[{collection.name}] Registration {'updated' if outcome.existed else 'created'} "
                f"for '{identity['email']}' (ticket_code={stored.get('ticket_code')})."
            )
            return SaveResult(id=str(stored["_id"]), doc=stored, existed=outcome.existed)

        if outcome.conflict == "email":
            # A concurrent submission for the same identity won the insert
            existing = await collection.find_one(identity)
            if existing:
                return SaveResult(id=str(existing["_id"]), doc=existing, existed=True)

        logger.warning(
            f"[{collection.name}] Duplicate {outcome.conflict} on registration upsert "
            f"(attempt {attempt}/{TICKET_CODE_MAX_ATTEMPTS}). Regenerating ticket code."
        )

    logger.error(f"[{collection.name}] Ticket code allocation exhausted for '{identity['email']}'.")
    raise StorageExhausted()


async def _save_without_identity(
    collection: AsyncIOMotorCollection,
    role: str,
    doc: Dict[str, Any],
    supplied_code: Optional[str],
) -> SaveResult:
    for attempt in range(1, TICKET_CODE_MAX_ATTEMPTS + 1):
        doc["ticket_code"] = supplied_code if (attempt == 1 and supplied_code) else generate_ticket_code()
        outcome = await insert_document(collection, doc)
        if outcome.ok:
            stored = outcome.doc
            logger.info(f"[{collection.name}] Registration created without email (ticket_code={stored['ticket_code']}).")
            return SaveResult(id=str(stored["_id"]), doc=stored, existed=False)
        logger.warning(
            f"[{collection.name}] Duplicate {outcome.conflict} on registration insert "
            f"(attempt {attempt}/{TICKET_CODE_MAX_ATTEMPTS}). Regenerating ticket code."
        )

    logger.error(f"[{collection.name}] Ticket code allocation exhausted for email-less registration.")
    raise StorageExhausted()


async def get_registration(db: AsyncIOMotorDatabase, role: str, entity_id: str) -> Dict[str, Any]:
    role, collection_name = resolve_role(role)
    oid = safe_objectid(entity_id)
    doc = await db[collection_name].find_one({"_id": oid})
    if not doc:
        raise NotFound(f"{role.capitalize()} not found")
    return doc


async def list_registrations(db: AsyncIOMotorDatabase, role: str, limit: int = 500) -> List[Dict[str, Any]]:
    _, collection_name = resolve_role(role)
    cursor = db[collection_name].find({}).sort("createdAt", -1).limit(limit)
    return await cursor.to_list(length=limit)


def _protect_ticket_code(update: Dict[str, Any], existing: Dict[str, Any], force: bool) -> None:
    """Drop an incoming ticket_code that would replace the stored one."""
    if "ticket_code" not in update:
        return
    incoming = str(update["ticket_code"] or "").strip()
    current = str(existing.get("ticket_code") or "").strip()
    if not incoming:
        del update["ticket_code"]
    elif current and incoming != current and not force:
        logger.info(f"Ignoring ticket_code change '{current}' -> '{incoming}' (not forced).")
        del update["ticket_code"]
    else:
        update["ticket_code"] = incoming


def _parse_force(value: Any) -> bool:
    """Only a real `True` or the string "true" (any case) forces a ticket_code change."""
    if isinstance(value, bool):
        return value
    return isinstance(value, str) and value.strip().lower() == "true"


def _parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    if isinstance(value, datetime.datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.datetime.fromisoformat(value.strip().replace("Z", "+00:00").replace(" ", "T", 1))
    except ValueError:
        return None


async def _load_for_update(db: AsyncIOMotorDatabase, role: str, entity_id: str):
    role, collection_name = resolve_role(role)
    collection = db[collection_name]
    oid = safe_objectid(entity_id)
    existing = await collection.find_one({"_id": oid})
    if not existing:
        raise NotFound(f"{role.capitalize()} not found")
    return collection, oid, existing


async def _write_update(
    collection: AsyncIOMotorCollection,
    oid: ObjectId,
    existing: Dict[str, Any],
    update: Dict[str, Any],
    force: bool,
) -> ConfirmResult:
    _protect_ticket_code(update, existing, force)

    if "email" in update and isinstance(update["email"], str):
        update["email"] = update["email"].strip().lower()
    if isinstance(update.get("slots"), str):
        try:
            update["slots"] = json.loads(update["slots"])
        except ValueError:
            logger.debug(f"[{collection.name}] slots for {oid} is not JSON; storing as text.")

    if not update:
        return ConfirmResult(doc=existing, changed=False, note="No changes applied (ticket_code protected)")

    update["updatedAt"] = utcnow()
    try:
        after = await collection.find_one_and_update(
            {"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError as e:
        raise Conflict(f"{_conflicting_key(e)} already in use") from e
    return ConfirmResult(doc=after or existing, changed=True)


async def confirm_registration(
    db: AsyncIOMotorDatabase,
    role: str,
    entity_id: str,
    payload: Dict[str, Any],
) -> ConfirmResult:
    """
    Apply a whitelisted update to a registration.

    `ticket_code` is write-once: a different code is silently dropped unless
    `force` is true in the payload.
    """
    collection, oid, existing = await _load_for_update(db, role, entity_id)
    payload = dict(payload or {})
    force = _parse_force(payload.pop("force", False))
    update = {k: v for k, v in payload.items() if k in CONFIRM_WHITELIST}
    return await _write_update(collection, oid, existing, update, force)


async def update_registration(
    db: AsyncIOMotorDatabase,
    role: str,
    entity_id: str,
    payload: Dict[str, Any],
    allowed_fields: Optional[Iterable[Any]] = None,
) -> ConfirmResult:
    """
    General admin edit of a registration.

    Keys outside UPDATE_WHITELIST are normalized like form fields and must
    then match an admin-configured field. `ticket_code` gets the same write-once
    protection as confirm; `status` only changes through approve/cancel.
    """
    collection, oid, existing = await _load_for_update(db, role, entity_id)
    payload = dict(payload or {})
    force = _parse_force(payload.pop("force", False))
    allowed = UPDATE_WHITELIST | (normalize_allowed_fields(allowed_fields) or set())

    update: Dict[str, Any] = {}
    for key, value in payload.items():
        field = key if key in UPDATE_WHITELIST else safe_field_name(key)
        if not field or field in RESERVED_KEYS or field not in allowed or field in update:
            continue
        if field in TIMESTAMP_FIELDS:
            value = _parse_timestamp(value)
            if value is None:
                continue
        update[field] = value

    if not update:
        raise ValidationError("No valid fields to update")
    result = await _write_update(collection, oid, existing, update, force)
    if result.changed:
        logger.info(f"[{collection.name}] {entity_id} updated: {sorted(k for k in update if k != 'updatedAt')}.")
    return result


async def registration_stats(db: AsyncIOMotorDatabase, role: str) -> Dict[str, int]:
    """Counts for the admin dashboard: all, paid (has a txId) and free-tier registrations."""
    _, collection_name = resolve_role(role)
    collection = db[collection_name]
    return {
        "total": await collection.count_documents({}),
        "paid": await collection.count_documents({"txId": {"$exists": True, "$nin": [None, ""]}}),
        "free": await collection.count_documents(
            {"ticket_category": {"$regex": "(free|general|^0$)", "$options": "i"}}
        ),
    }


async def set_registration_status(
    db: AsyncIOMotorDatabase,
    role: str,
    entity_id: str,
    status: str,
    actor: str = "web-admin",
) -> Dict[str, Any]:
    """Record an admin decision (`approved` or `cancelled`)."""
    if status not in ("approved", "cancelled"):
        raise ValidationError(f"Unsupported status '{status}'")
    role, collection_name = resolve_role(role)
    oid = safe_objectid(entity_id)
    now = utcnow()
    updated = await db[collection_name].find_one_and_update(
        {"_id": oid},
        {"$set": {
            "status": status,
            "updatedAt": now,
            f"{status}_by": actor,
            f"{status}_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound(f"{role.capitalize()} not found")
    logger.info(f"[{collection_name}] {entity_id} marked '{status}' by '{actor}'.")
    return updated
