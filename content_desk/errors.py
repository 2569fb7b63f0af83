"""
Domain errors for Content Desk.

Every error carries a stable machine-readable ``code`` and a human-readable
``message`` so the HTTP layer and the CLI can report it uniformly.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ContentDeskError(Exception):
    """Base class for all Content Desk errors."""

    code = "content_desk_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses."""
        result: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(ContentDeskError):
    """Malformed input: bad reason length, past schedule time, unknown timezone."""

    code = "validation_error"


class StateError(ContentDeskError):
    """Illegal lifecycle transition."""

    code = "invalid_state"

    def __init__(self, current: str, attempted: str, message: Optional[str] = None):
        self.current = current
        self.attempted = attempted
        super().__init__(
            message or f"Cannot move from '{current}' to '{attempted}'",
            details={"current": current, "attempted": attempted},
        )


class PermissionDeniedError(ContentDeskError):
    """The actor's role does not allow the operation."""

    code = "permission_denied"


class NotFoundError(ContentDeskError):
    """A referenced entity does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} '{entity_id}' not found",
            details={"entity": entity, "id": entity_id},
        )


class ConflictError(ContentDeskError):
    """A concurrent actor won a conditional update (claim lost, bucket changed)."""

    code = "conflict"


class DeliveryError(ContentDeskError):
    """A delivery channel failed to send a notification."""

    code = "delivery_failed"

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(
            f"Delivery via {channel} failed: {reason}",
            details={"channel": channel},
        )


class ImmutabilityError(ContentDeskError):
    """Attempt to modify an append-only record."""

    code = "immutable_record"
