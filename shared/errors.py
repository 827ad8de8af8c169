from __future__ import annotations

from typing import Optional


class RealtimeError(Exception):
    """Base class for errors that are reported back to the initiating session."""

    code = "INTERNAL"

    def __init__(self, detail: str = "", *, ref: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.ref = ref


class InvalidArgument(RealtimeError):
    """Malformed identities or missing required fields; raised before any side effect."""

    code = "INVALID_ARGUMENT"


class Conflict(RealtimeError):
    """Duplicate friend request, already friends, or a uniqueness constraint hit."""

    code = "CONFLICT"


class NotFound(RealtimeError):
    """The referenced friend request, notification or conversation does not exist."""

    code = "NOT_FOUND"


class StorageFailure(RealtimeError):
    """A durable read or write failed; the whole operation is aborted."""

    code = "STORAGE_FAILURE"


class DeliveryFailure(RealtimeError):
    """A push to a session failed. Logged only, never reported to the sender."""

    code = "DELIVERY_FAILURE"
