"""
Service JWT authentication for the operational API.

Callers present an HS256 token signed with ``service_auth_secret`` either as
``Authorization: Bearer <token>`` or in the ``X-Service-Token`` header.
When no secret is configured, authentication is disabled and every caller
is treated as a local operator with all permissions.

Usage:
    from passport_sync.core.auth import Permissions, require_permission

    @router.post("/endpoint", dependencies=[require_permission(Permissions.SYNC_WRITE)])
    async def endpoint():
        pass
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from passport_sync.exceptions import FatalConfig
from passport_sync.settings import settings

logger = logging.getLogger(__name__)


class Permissions:
    """Permission constants for the operational API."""

    SYNC_READ = "sync.read"
    SYNC_WRITE = "sync.write"

    ALL = [SYNC_READ, SYNC_WRITE]


class ServiceTokenPayload(BaseModel):
    """Service authentication token payload."""

    service_name: str
    iss: str  # issuer
    sub: str  # subject (service identifier)
    aud: str  # audience
    iat: int  # issued at
    exp: int  # expires at
    permissions: list[str] = []
    environment: str = "production"


class AuthenticatedService(BaseModel):
    """The caller of an operational endpoint."""

    service_name: str | None = None
    permissions: list[str] = []
    auth_enabled: bool = True


def _get_service_auth_secret() -> str:
    if not settings.service_auth_secret:
        raise FatalConfig("service_auth_secret is not configured")
    return settings.service_auth_secret


def verify_service_token(token: str) -> ServiceTokenPayload:
    """Verify a service JWT token.

    Args:
        token: The JWT token to verify

    Returns:
        The decoded token payload

    Raises:
        HTTPException: If the token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            _get_service_auth_secret(),
            algorithms=["HS256"],
            audience=settings.service_auth_audience,
            issuer=settings.service_auth_issuer,
            options={"verify_exp": True},
        )
        return ServiceTokenPayload(**payload)
    except jwt.ExpiredSignatureError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Service token has expired",
        ) from e
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid service token: {e}",
        ) from e


def create_service_token(
    service_name: str,
    permissions: list[str] | None = None,
    expires_hours: int = 24,
) -> str:
    """Create a service JWT token for calling the operational API.

    Args:
        service_name: Name of the calling service
        permissions: List of permission strings
        expires_hours: Token validity in hours

    Returns:
        The signed JWT token
    """
    now = datetime.now(timezone.utc)
    expires = now + timedelta(hours=expires_hours)

    payload = {
        "service_name": service_name,
        "iss": settings.service_auth_issuer,
        "sub": f"service:{service_name}",
        "aud": settings.service_auth_audience,
        "iat": int(now.timestamp()),
        "exp": int(expires.timestamp()),
        "permissions": permissions or [],
        "environment": os.getenv("ENVIRONMENT", "production"),
    }

    return jwt.encode(payload, _get_service_auth_secret(), algorithm="HS256")


def _get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def get_current_service(request: Request) -> AuthenticatedService:
    """Authenticate the caller.

    Raises:
        HTTPException: If authentication is enabled and no valid token is found
    """
    if not settings.service_auth_secret:
        return AuthenticatedService(permissions=list(Permissions.ALL), auth_enabled=False)

    token = _get_bearer_token(request) or request.headers.get("X-Service-Token")
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Provide a service token.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_service_token(token)
    return AuthenticatedService(
        service_name=payload.service_name,
        permissions=payload.permissions,
    )


# Type alias for dependency injection
CurrentServiceDep = Annotated[AuthenticatedService, Depends(get_current_service)]


def require_permission(permission: str) -> Any:
    """Create a dependency that requires a specific permission.

    Args:
        permission: The required permission string

    Returns:
        A FastAPI dependency
    """

    async def check_permission(caller: CurrentServiceDep) -> AuthenticatedService:
        if permission not in caller.permissions:
            logger.warning(
                "Service %s denied: missing permission %s",
                caller.service_name,
                permission,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required permission: {permission}",
            )
        return caller

    return Depends(check_permission)
