"""Utility functions for ids, timestamps and JSON output of stored documents."""
import re
import datetime
from typing import Any, Dict, Optional

from bson.objectid import ObjectId

from errors import ValidationError

_OBJECTID_SHAPE = re.compile(r"^[0-9a-fA-F]{24}$")


def utcnow() -> datetime.datetime:
    """Timezone-aware UTC now, truncated to the millisecond precision MongoDB stores."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


# ============================================================================
# ObjectId handling
# ============================================================================

def safe_objectid(value: Any, field_name: str = "id") -> ObjectId:
    """Parse a 24-hex id string, raising ValidationError (400) otherwise."""
    if isinstance(value, ObjectId):
        return value
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required")
    if not isinstance(value, str) or not _OBJECTID_SHAPE.match(value):
        raise ValidationError(f"Invalid {field_name} format")
    return ObjectId(value)


# ============================================================================
# JSON output
# ============================================================================

def make_json_serializable(obj: Any) -> Any:
    """Convert BSON values (ObjectId, datetimes, nested documents) into JSON-safe ones."""
    if isinstance(obj, dict):
        return {str(key): make_json_serializable(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [make_json_serializable(item) for item in obj]
    if isinstance(obj, (datetime.datetime, datetime.date, datetime.time)):
        return obj.isoformat()
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    return str(obj)


def doc_to_output(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Replace `_id` with a string `id` and make the document JSON-safe."""
    if doc is None:
        return None
    out = dict(doc)
    _id = out.pop("_id", None)
    out["id"] = str(_id) if _id is not None else None
    return make_json_serializable(out)
