"""
Actor resolution for the HTTP API.

Authentication happens upstream; the gateway forwards the authenticated
identity in ``X-Actor-Id`` and ``X-Actor-Role``.
"""

from fastapi import Header, HTTPException

from .enums import Role
from .primitives import Actor


def get_actor(
    x_actor_id: str = Header(..., min_length=1),
    x_actor_role: str = Header(...),
) -> Actor:
    """FastAPI dependency returning the acting identity."""
    try:
        role = Role(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role '{x_actor_role}'") from None
    return Actor(actor_id=x_actor_id, role=role)
