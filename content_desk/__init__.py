"""
Content Desk

Editorial workflow, scheduled publishing and subscriber notifications.
"""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("content-desk")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"

from .errors import (
    ConflictError,
    ContentDeskError,
    DeliveryError,
    ImmutabilityError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from .primitives import Actor

__all__ = [
    "Actor",
    "ConflictError",
    "ContentDeskError",
    "DeliveryError",
    "ImmutabilityError",
    "NotFoundError",
    "PermissionDeniedError",
    "StateError",
    "ValidationError",
]
