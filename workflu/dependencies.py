"""
WorkFlu - FastAPI Dependencies

Shared dependencies for authentication, database sessions, RBAC and the
service container.

Tokens are issued by the identity provider. A token is accepted from:
1. Authorization: Bearer <token> header
2. access_token cookie
"""

import uuid
from typing import List, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.models.user import User, UserRole
from workflu.utils.error_handling import (
    AuthenticationException,
    AuthorizationException,
    ConfigurationException,
    ErrorCode,
)
from workflu.utils.security import verify_access_token


# HTTP Bearer token security
security = HTTPBearer(auto_error=False)


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials:
        return credentials.credentials
    token = request.cookies.get("access_token")
    if token and token.startswith("Bearer "):
        token = token[7:]
    return token


async def _load_user(token: str, db: AsyncSession) -> User:
    payload = verify_access_token(token)
    if not payload:
        raise AuthenticationException("Invalid or expired token", code=ErrorCode.TOKEN_INVALID)

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationException("Invalid token payload", code=ErrorCode.TOKEN_INVALID)

    try:
        user_uuid = uuid.UUID(user_id)
    except ValueError:
        raise AuthenticationException("Invalid user ID in token", code=ErrorCode.TOKEN_INVALID)

    user = await db.get(User, user_uuid)
    if not user:
        raise AuthenticationException("User not found")
    if not user.is_active:
        raise AuthorizationException("User account is deactivated", code=ErrorCode.ACCOUNT_DISABLED)
    return user


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_async_session),
) -> User:
    """
    Get the current authenticated user from JWT token.

    Raises:
        AuthenticationException: If the token is missing, invalid or unknown
        AuthorizationException: If the account is deactivated
    """
    token = _extract_token(request, credentials)
    if not token:
        raise AuthenticationException("Not authenticated")
    return await _load_user(token, db)


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_async_session),
) -> Optional[User]:
    """
    Get current user if authenticated, otherwise return None.
    Used by dependencies that report missing authentication themselves.
    """
    token = _extract_token(request, credentials)
    if not token:
        return None
    try:
        return await _load_user(token, db)
    except AuthenticationException:
        return None


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/admin-only")
        async def admin_endpoint(user: User = Depends(require_role([UserRole.ADMIN]))):
            ...
    """
    async def role_checker(
        current_user: User = Depends(get_current_user),
    ) -> User:
        if current_user.role not in allowed_roles:
            raise AuthorizationException(
                f"Access denied. Required roles: {[r.value for r in allowed_roles]}",
                required_roles=[r.value for r in allowed_roles],
                code=ErrorCode.INSUFFICIENT_PERMISSIONS,
            )
        return current_user

    return role_checker


def require_admin():
    return require_role([UserRole.ADMIN])


def get_services(request: Request) -> ServiceContainer:
    """The process-wide service container built at startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigurationException("Service container not initialized")
    return services
