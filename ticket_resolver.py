"""
Ticket Resolver (ticket_resolver.py)
================================================================================

Turns whatever a scanner, QR reader or a person typing at the gate produced
into exactly one registration record.

Two stages:

1. Extraction (`extract_ticket_key`): a pure function from an arbitrary
   payload (JSON object, JSON string, base64-encoded JSON, free text, number)
   to a single lookup key, or None.

2. Lookup (`find_ticket`): walks the role collections in a fixed order and,
   within each collection, tries progressively looser queries. The first hit
   wins. The last tier is a bounded scan and can be disabled with
   `TICKET_SCAN_SCAN_LIMIT=0`.

Lookups are read-only. Errors inside a single tier are logged and the next
tier is tried, so one malformed legacy document cannot break scanning.
"""

import base64
import binascii
import json
import logging
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from config import DEBUG_TICKETS, ROLE_COLLECTIONS, TICKET_SCAN_SCAN_LIMIT
from errors import InvalidPayload, TicketNotFound
from utils import doc_to_output

logger = logging.getLogger(__name__)

# Payload keys that may carry the ticket, in preference order
TICKET_ALIASES = (
    "ticket_code", "ticketCode", "ticket_id", "ticketId", "ticket", "ticketNo",
    "ticketno", "ticketid", "code", "c", "id", "tk", "t",
)
# Document fields that may hold a ticket in older records
CANDIDATE_FIELDS = (
    "ticket_code", "ticket_code_num", "ticketCode", "ticket_id", "ticketId", "ticket",
    "ticketNo", "ticketno", "ticketid", "code", "c", "id", "tk", "t",
)
ROLE_SEARCH_ORDER = ("visitor", "exhibitor", "partner", "speaker", "awardee")

MAX_PAYLOAD_CHARS = 8192
MAX_SCAN_NODES = 2000
MAX_REPARSE_DEPTH = 3

_CAMEL_BOUNDARY = re.compile(r"([A-Z])")
_BASE64_SHAPE = re.compile(r"^[A-Za-z0-9+/=]+$")
_TOKEN = re.compile(r"(?<![A-Za-z0-9._-])[A-Za-z0-9._-]{3,64}(?![A-Za-z0-9._-])")
_WHOLE_TOKEN = re.compile(r"^[A-Za-z0-9._-]{3,64}$")
_DIGITS = re.compile(r"(?<!\d)\d{3,12}(?!\d)")


def _snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", key).lower()


def _alias_keys(aliases) -> List[str]:
    keys: List[str] = []
    for alias in aliases:
        for variant in (alias, _snake_case(alias)):
            if variant not in keys:
                keys.append(variant)
    return keys


PAYLOAD_KEYS = _alias_keys(TICKET_ALIASES)
DOCUMENT_ALIAS_KEYS = frozenset(_alias_keys(CANDIDATE_FIELDS))


@dataclass
class ResolvedTicket:
    record: Dict[str, Any]
    role: str
    collection: str
    key: str


# ============================================================================
# Stage 1: extraction
# ============================================================================

def _try_json(text: str) -> Any:
    text = text.strip()
    if not text or text[0] not in "{[\"":
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _looks_like_base64(text: str) -> bool:
    return len(text) >= 4 and len(text) % 4 == 0 and bool(_BASE64_SHAPE.match(text))


def _b64_decode(text: str) -> Optional[str]:
    try:
        return base64.b64decode(text, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None


def _scalar_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, tuple)):
        return None
    if isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _from_text(text: str) -> Optional[str]:
    """Token first, then a bare digit run."""
    match = _TOKEN.search(text)
    if match:
        return match.group(0)
    match = _DIGITS.search(text)
    return match.group(0) if match else None


def _from_structure(obj: Any, depth: int = 0) -> Optional[str]:
    """Alias keys first, then the first non-empty scalar in a bounded deep scan."""
    if isinstance(obj, dict):
        for key in PAYLOAD_KEYS:
            if key in obj:
                text = _scalar_text(obj[key])
                if text:
                    return text

    queue = deque([obj])
    visited = 0
    while queue and visited < MAX_SCAN_NODES:
        node = queue.popleft()
        visited += 1
        if isinstance(node, dict):
            queue.extend(v for v in node.values() if v is not None)
            continue
        if isinstance(node, (list, tuple)):
            queue.extend(node)
            continue
        if isinstance(node, str) and depth < MAX_REPARSE_DEPTH:
            nested = _try_json(node)
            if nested is None and _looks_like_base64(node.strip()):
                decoded = _b64_decode(node.strip())
                nested = _try_json(decoded) if decoded else None
            if isinstance(nested, (dict, list)):
                found = _from_structure(nested, depth + 1)
                if found:
                    return found
                continue
        text = _scalar_text(node)
        if text:
            return text
    return None


def extract_ticket_key(payload: Any) -> Optional[str]:
    """
    Reduce a raw scan payload to a single lookup key.

    Accepts dicts, lists, numbers and strings. Strings are tried as JSON, then
    as base64 (of JSON or of text), then searched for a ticket-shaped token,
    then for a run of 3-12 digits. Returns None when nothing usable is found.
    """
    if payload is None or isinstance(payload, bool):
        return None
    if isinstance(payload, (int, float)):
        return str(payload)
    if isinstance(payload, (dict, list, tuple)):
        return _from_structure(payload)
    if not isinstance(payload, str):
        return None

    text = payload.strip()[:MAX_PAYLOAD_CHARS]
    if not text:
        return None

    parsed = _try_json(text)
    if isinstance(parsed, (dict, list)):
        found = _from_structure(parsed)
        if found:
            return found
    elif isinstance(parsed, (str, int, float)) and not isinstance(parsed, bool):
        inner = str(parsed).strip()
        if inner and inner != text:
            return extract_ticket_key(inner)

    if _looks_like_base64(text):
        decoded = _b64_decode(text)
        if decoded:
            nested = _try_json(decoded)
            if isinstance(nested, (dict, list)):
                found = _from_structure(nested)
                if found:
                    return found
            elif not _WHOLE_TOKEN.match(text) and decoded.isprintable():
                # Plain ticket codes are also valid base64; only trust decoded text
                # when the original could not be a code itself.
                found = _from_text(decoded)
                if found:
                    return found

    return _from_text(text)


# ============================================================================
# Stage 2: lookup
# ============================================================================

def _numeric(key: str) -> Optional[int]:
    if key.isdigit() and len(key) <= 15:
        return int(key)
    return None


def _anchored(key: str) -> Dict[str, Any]:
    return {"$regex": f"^{re.escape(key)}$", "$options": "i"}


def _value_matches(value: Any, key: str, key_num: Optional[int]) -> bool:
    if value is None or isinstance(value, (dict, list, bool)):
        return False
    if key_num is not None and isinstance(value, (int, float)) and value == key_num:
        return True
    text = str(value).strip()
    return text == key or text.lower() == key.lower()


def _deep_alias_match(doc: Dict[str, Any], key: str, key_num: Optional[int]) -> bool:
    """Look for the key under any alias-named field at any depth, bounded."""
    queue = deque([doc])
    visited = 0
    while queue and visited < MAX_SCAN_NODES:
        node = queue.popleft()
        visited += 1
        if isinstance(node, dict):
            for field, value in node.items():
                if field == "_id":
                    continue
                if isinstance(value, (dict, list)):
                    queue.append(value)
                elif field in DOCUMENT_ALIAS_KEYS and _value_matches(value, key, key_num):
                    return True
        elif isinstance(node, list):
            queue.extend(item for item in node if isinstance(item, (dict, list)))
    return False


def _tier_queries(key: str) -> List[Dict[str, Any]]:
    key_num = _numeric(key)

    exact: Dict[str, Any] = {"ticket_code": key}
    if key_num is not None:
        exact = {"$or": [{"ticket_code": key}, {"ticket_code_num": key_num}, {"ticket_code": key_num}]}

    aliases: List[Dict[str, Any]] = []
    for field in CANDIDATE_FIELDS:
        aliases.append({field: key})
        aliases.append({field: _anchored(key)})
        if key_num is not None:
            aliases.append({field: key_num})

    return [exact, {"ticket_code": _anchored(key)}, {"$or": aliases}]


async def _scan_collection(
    collection: AsyncIOMotorCollection,
    key: str,
    scan_limit: int,
) -> Optional[Dict[str, Any]]:
    key_num = _numeric(key)
    clauses = [{field: {"$exists": True}} for field in CANDIDATE_FIELDS]
    clauses.append({"_rawForm": {"$exists": True}})
    cursor = collection.find({"$or": clauses}).limit(scan_limit)
    async for doc in cursor:
        for field in CANDIDATE_FIELDS:
            if field in doc and _value_matches(doc[field], key, key_num):
                return doc
        if _deep_alias_match(doc, key, key_num):
            return doc
    return None


async def _find_in_collection(
    collection: AsyncIOMotorCollection,
    key: str,
    scan_limit: int,
) -> Optional[Dict[str, Any]]:
    for tier, query in enumerate(_tier_queries(key), start=1):
        try:
            doc = await collection.find_one(query)
        except PyMongoError as e:
            logger.warning(f"[{collection.name}] Ticket lookup tier {tier} failed: {e}")
            continue
        if doc:
            if DEBUG_TICKETS:
                logger.debug(f"[{collection.name}] Ticket '{key}' matched at tier {tier}.")
            return doc

    if scan_limit <= 0:
        return None
    try:
        return await _scan_collection(collection, key, scan_limit)
    except PyMongoError as e:
        logger.warning(f"[{collection.name}] Ticket fallback scan failed: {e}")
        return None


async def find_ticket(
    db: AsyncIOMotorDatabase,
    key: str,
    scan_limit: int = TICKET_SCAN_SCAN_LIMIT,
) -> Optional[ResolvedTicket]:
    """Search every role collection in order; the first match wins."""
    key = str(key).strip()
    if not key:
        return None
    for role in ROLE_SEARCH_ORDER:
        collection_name = ROLE_COLLECTIONS[role]
        doc = await _find_in_collection(db[collection_name], key, scan_limit)
        if doc:
            return ResolvedTicket(record=doc, role=role, collection=collection_name, key=key)
    return None


async def resolve_ticket(
    db: AsyncIOMotorDatabase,
    payload: Any,
    scan_limit: int = TICKET_SCAN_SCAN_LIMIT,
) -> ResolvedTicket:
    """
    Extract a key from `payload` and look it up.

    Raises InvalidPayload when nothing can be extracted and TicketNotFound
    when no collection holds the key.
    """
    key = extract_ticket_key(payload)
    if not key:
        if DEBUG_TICKETS:
            logger.info(f"Could not extract a ticket key from payload: {payload!r}"[:500])
        raise InvalidPayload()

    resolved = await find_ticket(db, key, scan_limit)
    if resolved is None:
        logger.info(f"Ticket '{key}' not found in any role collection.")
        raise TicketNotFound(key=key if DEBUG_TICKETS else None)
    return resolved


# ============================================================================
# Views
# ============================================================================

def ticket_view(resolved: ResolvedTicket, include_raw_form: bool = False) -> Dict[str, Any]:
    """
    Public shape of a resolved ticket.

    `raw_row` is the stored document; the submitted `_rawForm` is left out of
    it unless `include_raw_form` is set.
    """
    doc = resolved.record
    view = {
        "ticket_code": doc.get("ticket_code") or resolved.key,
        "entity_type": resolved.collection,
        "entity_id": str(doc.get("_id")) if doc.get("_id") is not None else None,
        "name": doc.get("name") or doc.get("full_name") or "",
        "email": doc.get("email") or "",
        "company": doc.get("company") or doc.get("org") or "",
        "category": doc.get("ticket_category") or doc.get("category") or "",
    }
    raw_row = doc_to_output(doc)
    if not include_raw_form:
        raw_row.pop("_rawForm", None)
    view["raw_row"] = raw_row
    return view


PAID_STATUSES = frozenset({"paid", "success", "captured"})
AMOUNT_FIELDS = ("ticket_total", "ticket_price", "amount")


def requires_payment(record: Dict[str, Any]) -> bool:
    """True when the registration carries a positive price that has not been paid."""
    if record.get("txId"):
        return False
    if str(record.get("payment_status") or "").strip().lower() in PAID_STATUSES:
        return False
    for field in AMOUNT_FIELDS:
        try:
            if float(record.get(field) or 0) > 0:
                return True
        except (TypeError, ValueError):
            continue
    return False


async def debug_check(db: AsyncIOMotorDatabase, payload: Any) -> Dict[str, Any]:
    """Report which collections carry ticket-like fields, for diagnosing failed scans."""
    key = extract_ticket_key(payload)
    if not key:
        raise InvalidPayload()

    checked = []
    for role in ROLE_SEARCH_ORDER:
        collection_name = ROLE_COLLECTIONS[role]
        try:
            sample = await db[collection_name].find_one({})
        except PyMongoError as e:
            checked.append({"coll": collection_name, "error": str(e)})
            continue
        has_ticket_field = bool(sample) and any(
            sample.get(field) for field in ("ticket_code", "ticketId", "code", "_rawForm")
        )
        checked.append({"coll": collection_name, "sampleHasTicketCode": has_ticket_field})
    return {"ticketKey": key, "checkedCollections": checked}
