"""Request actor resolution.

Sessions and sign-in live in the gateway in front of this service. It
authenticates the caller and forwards who they are in two headers:

- ``X-Actor-Id``: the user id
- ``X-Actor-Role``: ``buyer``, ``seller`` or ``admin``

Whether an actor is the buyer or seller of a particular order is decided
by the order core, not here.
"""
import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from orders.models import Actor, ActorRole

logger = logging.getLogger(__name__)

# Roles a caller may claim; system and webhook actors are internal only
REQUEST_ROLES = (ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN)

class AuthError(Exception):
    """Raised when a request does not carry a usable actor."""
    pass

def resolve_actor(actor_id: Optional[str], role: Optional[str]) -> Actor:
    """Build an ``Actor`` from forwarded identity values.

    Raises:
        AuthError: If either value is missing or the role is not allowed
    """
    if not actor_id or not actor_id.strip():
        raise AuthError("Missing actor id")
    if not role:
        raise AuthError("Missing actor role")
    try:
        actor_role = ActorRole(role.strip().lower())
    except ValueError:
        raise AuthError(f"Unknown actor role: {role}")
    if actor_role not in REQUEST_ROLES:
        raise AuthError(f"Role {actor_role.value} cannot be claimed by a request")
    return Actor(actor_id=actor_id.strip(), role=actor_role)

async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None)
) -> Actor:
    """FastAPI dependency for the calling actor.

    Raises:
        HTTPException: 401 if the identity headers are missing or invalid
    """
    try:
        return resolve_actor(x_actor_id, x_actor_role)
    except AuthError as e:
        logger.warning(f"Rejected request actor: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e)
        )

async def get_admin_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None)
) -> Actor:
    """FastAPI dependency that also requires the admin role."""
    actor = await get_current_actor(x_actor_id, x_actor_role)
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required"
        )
    return actor

__all__ = [
    'AuthError',
    'get_admin_actor',
    'get_current_actor',
    'resolve_actor',
]
