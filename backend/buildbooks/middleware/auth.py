"""Authentication and authorization dependencies for BuildBooks.

Provides:
- JWT creation / validation
- ``get_current_actor()`` dependency
- ``require_permission()`` dependency factory

Users and passwords live in the external identity service; this module only
verifies the bearer token it issues and turns the claims into an ``Actor``.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from buildbooks.config import settings
from buildbooks.rbac import VALID_ROLES, Actor, check_permissions

# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------


def create_access_token(data: dict[str, Any]) -> str:
    """Create a signed JWT containing *sub* (username), *role*, and *exp*."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    to_encode.update({"exp": expire})

    # Ensure user_id is serialised as a string so the JWT payload stays
    # JSON-compatible (UUIDs are not natively serialisable).
    if "user_id" in to_encode and not isinstance(to_encode["user_id"], str):
        to_encode["user_id"] = str(to_encode["user_id"])

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def token_for_actor(actor: Actor) -> str:
    return create_access_token({
        "sub": actor.username,
        "user_id": actor.user_id,
        "role": actor.role,
        "grants": sorted(actor.grants),
        "revokes": sorted(actor.revokes),
    })


# ---------------------------------------------------------------------------
# OAuth2 scheme (tokens are issued by the identity service)
# ---------------------------------------------------------------------------

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")

# ---------------------------------------------------------------------------
# Current-actor dependency
# ---------------------------------------------------------------------------


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """Decode the JWT and return the ``Actor`` it describes.

    Raises ``HTTPException(401)`` when the token is invalid or incomplete.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception

    username: str | None = payload.get("sub")
    role: str | None = payload.get("role")
    if username is None or role not in VALID_ROLES:
        raise credentials_exception

    return Actor(
        user_id=str(payload.get("user_id") or username),
        username=username,
        role=role,
        grants=frozenset(payload.get("grants") or ()),
        revokes=frozenset(payload.get("revokes") or ()),
    )


# ---------------------------------------------------------------------------
# Permission-checking dependency factory
# ---------------------------------------------------------------------------


def require_permission(*permissions: str):
    """Return a FastAPI dependency that ensures the authenticated actor has
    ALL of the specified permissions.

    Usage::

        @router.get("/accounts")
        async def list_accounts(
            db: AsyncSession = Depends(get_db),
            actor: Actor = Depends(require_permission("chart_of_accounts.view")),
        ):
            ...
    """

    async def _check_permission(
        actor: Actor = Depends(get_current_actor),
    ) -> Actor:
        check_permissions(actor, *permissions)
        return actor

    return _check_permission
