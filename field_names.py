"""
Field name normalization.

Admin-configured form fields and user-submitted keys arrive with arbitrary
spelling ("Company Name", "e-mail", "1st Choice"). Everything written to a
registration document goes through `safe_field_name` so stored keys are
snake_case, `[a-z0-9_]` only, and start with a letter or underscore.
"""
import re
import logging
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

DIGIT_PREFIX = "f_"

_SEPARATORS = re.compile(r"[\s-]+")
_UNSAFE_CHARS = re.compile(r"[^a-z0-9_]")
_SAFE_START = re.compile(r"^[a-z_]")


def safe_field_name(name: Any) -> Optional[str]:
    """
    Map a raw field name onto the storage key namespace.

    Deterministic and idempotent. Returns None when nothing usable remains.
    """
    if name is None:
        return None
    s = str(name).strip()
    if not s:
        return None
    s = _SEPARATORS.sub("_", s.lower())
    s = _UNSAFE_CHARS.sub("", s)
    if not s:
        return None
    if not _SAFE_START.match(s):
        s = f"{DIGIT_PREFIX}{s}"
    return s


def normalize_allowed_fields(fields: Optional[Iterable[Any]]) -> Optional[Set[str]]:
    """
    Build a write whitelist from admin field definitions.

    Accepts dicts with a `name` key or plain strings. None means "no whitelist".
    """
    if fields is None:
        return None
    allowed: Set[str] = set()
    for field in fields:
        raw = field.get("name") if isinstance(field, dict) else field
        safe = safe_field_name(raw)
        if safe:
            allowed.add(safe)
    return allowed


async def load_admin_fields(db: AsyncIOMotorDatabase, role: str) -> Tuple[list, Set[str]]:
    """
    Read the admin form configuration for a role page.

    Returns the raw field list and its normalized names. A missing or broken
    config yields empty results; registration must not fail because of it.
    """
    try:
        doc: Optional[Dict[str, Any]] = await db.registration_configs.find_one({"page": role})
    except Exception as e:
        logger.warning(f"[{role}] Could not load admin field config: {e}")
        return [], set()

    config = (doc or {}).get("config") or {}
    fields = config.get("fields") if isinstance(config, dict) else None
    if not isinstance(fields, list):
        return [], set()
    return fields, normalize_allowed_fields(fields) or set()
