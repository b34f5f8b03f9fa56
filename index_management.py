"""Index management for registration, ticket and audit collections."""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import OperationFailure

from config import ROLE_COLLECTIONS
from field_names import safe_field_name
from utils import utcnow

logger = logging.getLogger(__name__)

TICKET_CODE_INDEX = "unique_ticket_code"
EMAIL_ROLE_INDEX = "unique_email_role"
DYNAMIC_FIELDS_COLLECTION = "dynamic_fields"

IndexKeys = Union[str, List[Tuple[str, Any]]]


def _key_doc(keys: Sequence[Tuple[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in keys}


_COMPARED_OPTIONS = ("unique", "sparse", "partialFilterExpression")


def _same_definition(existing: Dict[str, Any], keys: Sequence[Tuple[str, Any]], options: Dict[str, Any]) -> bool:
    if dict(existing.get("key", {})) != _key_doc(keys):
        return False
    return all(existing.get(opt) == options.get(opt) for opt in _COMPARED_OPTIONS)


# (collection full name, index name) -> definition already ensured by this process
_ensured: Dict[Tuple[str, str], str] = {}


def forget_ensured_indexes() -> None:
    _ensured.clear()


async def _get_index(collection: AsyncIOMotorCollection, name: str) -> Optional[Dict[str, Any]]:
    try:
        indexes = await collection.list_indexes().to_list(None)
    except Exception as e:
        logger.error(f"[{collection.name}] Error listing indexes: {e}")
        return None
    return next((index for index in indexes if index.get("name") == name), None)


async def ensure_index(
    collection: AsyncIOMotorCollection,
    keys: IndexKeys,
    name: str,
    **options: Any,
) -> bool:
    """
    Creates a regular index if it does not already exist.

    Idempotent and safe to race across instances. An existing index with the
    same name but different keys or uniqueness options is dropped and
    recreated. Definitions already ensured by this process are not checked
    again. Never raises: index creation is a best-effort side effect of the
    write path.
    """
    if isinstance(keys, str):
        keys = [(keys, ASCENDING)]
    log_prefix = f"[{collection.name}]"
    cache_key = (collection.full_name, name)
    definition = repr((_key_doc(keys), sorted(options.items())))
    if _ensured.get(cache_key) == definition:
        return True

    try:
        existing = await _get_index(collection, name)
        if existing:
            if _same_definition(existing, keys, options):
                logger.debug(f"{log_prefix} Index '{name}' already exists.")
                _ensured[cache_key] = definition
                return True
            logger.warning(
                f"{log_prefix} Index '{name}' definition mismatch. "
                f"Existing: {dict(existing)}, expected keys {_key_doc(keys)} with {options}. Recreating."
            )
            await collection.drop_index(name)

        await collection.create_index(keys, name=name, background=True, **options)
        logger.info(f"{log_prefix} ✔️ Ensured index '{name}'.")
        _ensured[cache_key] = definition
        return True
    except OperationFailure as e:
        # Another instance won the race with an equivalent index
        if "already exists" in str(e) or "IndexOptionsConflict" in str(e) or "IndexKeySpecsConflict" in str(e):
            logger.warning(f"{log_prefix} Index '{name}' created concurrently: {e}")
            return True
        logger.warning(f"{log_prefix} ⚠️ Failed to ensure index '{name}': {getattr(e, 'details', e)}")
        return False
    except Exception as e:
        logger.warning(f"{log_prefix} ⚠️ Failed to ensure index '{name}': {e}")
        return False


async def ensure_ticket_code_index(db: AsyncIOMotorDatabase, collection_name: str) -> bool:
    """Unique sparse index on ticket_code; documents without a code are allowed."""
    return await ensure_index(
        db[collection_name],
        [("ticket_code", ASCENDING)],
        TICKET_CODE_INDEX,
        unique=True,
        sparse=True,
    )


async def ensure_email_role_index(db: AsyncIOMotorDatabase, collection_name: str) -> bool:
    """
    Unique (email, role) index limited to documents that carry an email.

    A sparse compound index would still index email-less documents because
    `role` is always present, so a partial filter is used instead.
    """
    return await ensure_index(
        db[collection_name],
        [("email", ASCENDING), ("role", ASCENDING)],
        EMAIL_ROLE_INDEX,
        unique=True,
        partialFilterExpression={"email": {"$type": "string"}},
    )


async def ensure_core_indexes(db: AsyncIOMotorDatabase) -> None:
    """Ensure startup indexes on every role collection and the support collections."""
    for collection_name in ROLE_COLLECTIONS.values():
        await ensure_ticket_code_index(db, collection_name)
        await ensure_email_role_index(db, collection_name)
        await ensure_index(db[collection_name], [("createdAt", -1)], "created_at_desc")
    await ensure_ticket_code_index(db, "tickets")
    await ensure_index(db.tickets, [("entity_type", ASCENDING), ("entity_id", ASCENDING)], "entity_ref")
    await ensure_index(db.mail_logs, [("createdAt", -1)], "created_at_desc")
    await ensure_index(db.mail_logs, [("status", ASCENDING)], "status")
    await ensure_index(
        db[DYNAMIC_FIELDS_COLLECTION],
        [("collectionName", ASCENDING), ("fieldName", ASCENDING)],
        "collection_field",
        unique=True,
    )
    await ensure_index(db.registration_configs, [("page", ASCENDING)], "page")
    logger.info("✔️ Core MongoDB indexes ensured (role collections, tickets, mail_logs, dynamic_fields).")


def dynamic_index_name(field_name: str) -> str:
    return f"dyn_{field_name}_idx"


async def sync_fields_to_collection(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    fields: List[Any],
) -> Dict[str, list]:
    """
    Track admin-configured fields for a collection and keep one sparse index
    per tracked field.

    Fields newly present in `fields` are recorded and indexed; tracked fields
    no longer configured have their index dropped and tracking row removed.
    Per-field failures are collected in `errors` and do not stop the sync.
    """
    tracker = db[DYNAMIC_FIELDS_COLLECTION]
    target = db[collection_name]

    desired: Dict[str, Dict[str, str]] = {}
    for field in fields or []:
        raw_name = field.get("name") if isinstance(field, dict) else field
        safe = safe_field_name(raw_name)
        if not safe:
            continue
        field_type = field.get("type", "text") if isinstance(field, dict) else "text"
        desired[safe] = {"origName": str(raw_name), "fieldType": str(field_type or "text")}

    tracked_rows = await tracker.find({"collectionName": collection_name}).to_list(None)
    tracked_names = {row.get("fieldName") for row in tracked_rows}

    added: List[str] = []
    removed: List[str] = []
    errors: List[Dict[str, str]] = []

    for field_name, meta in desired.items():
        if field_name in tracked_names:
            continue
        try:
            await tracker.update_one(
                {"collectionName": collection_name, "fieldName": field_name},
                {"$set": {
                    "collectionName": collection_name,
                    "fieldName": field_name,
                    "origName": meta["origName"],
                    "fieldType": meta["fieldType"],
                    "createdAt": utcnow(),
                }},
                upsert=True,
            )
            await target.create_index(
                [(field_name, ASCENDING)], name=dynamic_index_name(field_name), sparse=True, background=True
            )
            added.append(field_name)
        except Exception as e:
            errors.append({"add": field_name, "error": str(e)})

    for row in tracked_rows:
        field_name = row.get("fieldName")
        if field_name in desired:
            continue
        try:
            if await _get_index(target, dynamic_index_name(field_name)):
                await target.drop_index(dynamic_index_name(field_name))
            await tracker.delete_one({"_id": row["_id"]})
            removed.append(field_name)
        except Exception as e:
            errors.append({"remove": field_name, "error": str(e)})

    if errors:
        logger.warning(f"[{collection_name}] Dynamic field sync finished with {len(errors)} error(s): {errors}")
    else:
        logger.info(f"[{collection_name}] Dynamic field sync: added={added}, removed={removed}")
    return {"added": added, "removed": removed, "errors": errors}
