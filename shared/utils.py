from __future__ import annotations
import re
import time
import uuid
from typing import Any

from shared.errors import InvalidArgument

# ========================================
#           INPUT VALIDATION HELPERS
# ========================================
"""
Helpers the event parsers and server components call to decide whether an
identity coming off the wire is well-formed before anything touches storage.
"""

# Document ids issued by the user store are 24 hex digits
_OBJECT_ID_RE = re.compile(r'^[0-9a-fA-F]{24}$')


def is_uuid_v4(s: Any) -> bool:
    """
    enforces that ids are valid UUIDv4s in canonical string form
    """
    try:
        u = uuid.UUID(s)
        return u.version == 4 and str(u) == s.lower()
    except Exception:
        return False


def is_object_id(s: Any) -> bool:
    """
    returns True for a 24 hex digit document id, otherwise False.
    """
    return isinstance(s, str) and bool(_OBJECT_ID_RE.fullmatch(s))


def is_identity(s: Any) -> bool:
    """A user identity is either a UUIDv4 or a document id."""
    return is_uuid_v4(s) or is_object_id(s)


def require_identity(value: Any, field_name: str) -> str:
    """Return value unchanged if it is a well-formed identity, else raise InvalidArgument."""
    if not is_identity(value):
        raise InvalidArgument(f"{field_name} must be a valid user identity")
    return value


def require_identities(**fields: Any) -> None:
    for name, value in fields.items():
        require_identity(value, name)


def require_text(value: Any, field_name: str) -> str:
    """
    Non-empty text after stripping whitespace.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{field_name} must be non-empty text")
    return value.strip()


def new_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


def direct_key(user_a: str, user_b: str) -> str:
    """Order-independent key for a participant pair."""
    return ":".join(sorted((user_a, user_b)))
