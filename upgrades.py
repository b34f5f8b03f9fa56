"""
Ticket upgrade flow (upgrades.py)
================================================================================

Paid upgrades are delegated to the payment service: the caller receives a
checkout URL and nothing is written locally until payment completes.

Free upgrades apply immediately:
    1. load the registration (NotFound / ValidationError)
    2. keep its ticket code, or assign one if it never had one (best-effort)
    3. record the new `ticket_category` on the registration (required)
    4. copy a legacy `code` into `ticket_code` when that is empty (best-effort)
    5. re-sync the `tickets` record for that code (best-effort)
    6. email the holder a manage link (best-effort)

The call succeeds once the category is recorded.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import TICKET_CODE_MAX_ATTEMPTS
from emails import build_upgrade_email, display_name
from errors import StorageExhausted, ValidationError
from index_management import ensure_ticket_code_index
from mailer import Mailer
from payments import PaymentClient
from registrations import assign_missing_ticket_code, get_registration, resolve_role
from utils import doc_to_output, safe_objectid, utcnow

logger = logging.getLogger(__name__)

TICKETS_COLLECTION = "tickets"


@dataclass
class UpgradeResult:
    entity_type: str
    entity_id: str
    new_category: str
    checkout_url: Optional[str] = None
    ticket_code: Optional[str] = None
    ticket: Optional[Dict[str, Any]] = None
    mail: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def upgraded(self) -> bool:
        return self.checkout_url is None

    def to_response(self) -> Dict[str, Any]:
        if not self.upgraded:
            return {"success": True, "checkoutUrl": self.checkout_url}
        return {
            "success": True,
            "upgraded": True,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "new_category": self.new_category,
            "ticket_code": self.ticket_code,
            "ticket": doc_to_output(self.ticket),
        }


def _parse_amount(amount: Any) -> float:
    if amount in (None, ""):
        return 0.0
    if isinstance(amount, bool):
        raise ValidationError("amount must be a number")
    try:
        price = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("amount must be a number")
    if not math.isfinite(price) or price < 0:
        raise ValidationError("amount must be a non-negative number")
    return price


async def _assign_code(collection: AsyncIOMotorCollection, entity: Dict[str, Any]) -> Optional[str]:
    """Assign a code to a registration that never had one. Failures are logged, not raised."""
    try:
        updated = await assign_missing_ticket_code(collection, entity)
    except (StorageExhausted, PyMongoError) as e:
        logger.warning(f"⚠️ [{collection.name}] Could not assign a ticket code to {entity['_id']} during upgrade: {e}")
        return None
    entity.update(updated)
    logger.info(f"[{collection.name}] Assigned ticket code '{updated.get('ticket_code')}' to {entity['_id']} during upgrade.")
    return updated.get("ticket_code")


async def _backfill_ticket_code(collection: AsyncIOMotorCollection, entity_id: Any, ticket_code: str) -> None:
    """Copy a legacy `code` into `ticket_code`, only while the registration has none."""
    try:
        await collection.update_one(
            {"_id": entity_id, "ticket_code": {"$in": [None, ""]}},
            {"$set": {"ticket_code": ticket_code}},
        )
    except PyMongoError as e:
        logger.warning(f"⚠️ [{collection.name}] Could not record legacy code '{ticket_code}' on {entity_id}: {e}")


async def _sync_ticket_record(
    db: AsyncIOMotorDatabase,
    role: str,
    entity_id: str,
    entity: Dict[str, Any],
    ticket_code: str,
    new_category: str,
    email: Optional[str],
) -> Optional[Dict[str, Any]]:
    """Upsert the `tickets` row for this code. Failures are logged, not raised."""
    await ensure_ticket_code_index(db, TICKETS_COLLECTION)
    now = utcnow()
    update = {
        "$set": {
            "entity_type": role,
            "entity_id": entity_id,
            "name": display_name(entity),
            "email": email or None,
            "company": entity.get("company") or None,
            "category": new_category,
            "meta": {"upgradedFrom": "self-service", "upgradedAt": now},
            "updatedAt": now,
        },
        "$setOnInsert": {"createdAt": now},
    }
    for attempt in range(1, TICKET_CODE_MAX_ATTEMPTS + 1):
        try:
            return await db[TICKETS_COLLECTION].find_one_and_update(
                {"ticket_code": ticket_code},
                update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # A concurrent upsert inserted the row first; the next attempt matches it
            logger.warning(f"[tickets] Upsert race on '{ticket_code}' (attempt {attempt}/{TICKET_CODE_MAX_ATTEMPTS}).")
        except PyMongoError as e:
            logger.warning(f"⚠️ [tickets] Ticket record sync failed for '{ticket_code}': {e}")
            return None
    logger.warning(f"⚠️ [tickets] Gave up syncing ticket record '{ticket_code}'.")
    return None


async def upgrade_ticket(
    db: AsyncIOMotorDatabase,
    payments: PaymentClient,
    mailer: Optional[Mailer],
    entity_type: str,
    entity_id: str,
    new_category: str,
    amount: Any = None,
    email: Optional[str] = None,
) -> UpgradeResult:
    if not entity_type or not entity_id or not new_category:
        raise ValidationError("entity_type, entity_id and new_category are required")
    role, collection_name = resolve_role(entity_type)
    safe_objectid(entity_id, "entity_id")
    new_category = str(new_category).strip()
    price = _parse_amount(amount)

    if price > 0:
        checkout_url = await payments.create_order(
            amount=price,
            description=f"Ticket Upgrade - {new_category}",
            reference_id=str(entity_id),
            metadata={"entity_type": collection_name, "new_category": new_category},
        )
        return UpgradeResult(collection_name, str(entity_id), new_category, checkout_url=checkout_url)

    entity = await get_registration(db, role, entity_id)
    collection = db[collection_name]

    ticket_code = entity.get("ticket_code") or entity.get("code")
    if ticket_code:
        ticket_code = str(ticket_code)
    else:
        ticket_code = await _assign_code(collection, entity)

    recipient = (email or "").strip() or entity.get("email") or entity.get("contact_email") or ""

    now = utcnow()
    await collection.update_one(
        {"_id": entity["_id"]},
        {"$set": {"ticket_category": new_category, "upgradedAt": now, "updatedAt": now}},
    )
    logger.info(f"✔️ [{collection_name}] {entity_id} upgraded to '{new_category}' (ticket_code={ticket_code}).")

    if ticket_code and not entity.get("ticket_code"):
        await _backfill_ticket_code(collection, entity["_id"], ticket_code)

    ticket = None
    if ticket_code:
        ticket = await _sync_ticket_record(db, role, str(entity["_id"]), entity, ticket_code, new_category, recipient)

    mail_result = None
    if recipient and mailer is not None:
        message = build_upgrade_email(collection_name, str(entity["_id"]), display_name(entity), new_category, ticket_code)
        mail_result = await mailer.send_mail(to=recipient, **message)
        if not mail_result.get("success"):
            logger.warning(f"⚠️ Upgrade confirmation email to {recipient} failed: {mail_result.get('error')}")

    return UpgradeResult(
        entity_type=collection_name,
        entity_id=str(entity["_id"]),
        new_category=new_category,
        ticket_code=ticket_code,
        ticket=ticket,
        mail=mail_result,
    )
