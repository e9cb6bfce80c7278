"""FastAPI dependencies."""

import hmac
from typing import Optional

from fastapi import Header
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity.config import settings
from tapidentity.db.session import get_db
from tapidentity.errors import (
    ForbiddenError,
    NotFoundError,
    ReportingDisabledError,
    ServiceUnavailableError,
    UnauthorizedError,
)


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


async def get_current_user_id(
    x_authenticated_user_id: Optional[str] = Header(None, alias="X-Authenticated-User-Id")
) -> str:
    """
    Authenticated user id, as set by the upstream session layer.

    Raises:
        UnauthorizedError: 401 if no user is authenticated
    """
    if not x_authenticated_user_id:
        raise UnauthorizedError()
    return x_authenticated_user_id


async def require_admin_api_key(
    x_admin_api_key: Optional[str] = Header(None, alias="X-Admin-API-Key")
) -> None:
    """
    Dependency to require admin API key for protected endpoints.

    Args:
        x_admin_api_key: Admin API key from X-Admin-API-Key header

    Raises:
        ServiceUnavailableError: 503 if no admin key is configured
        UnauthorizedError: 401 if header missing
        ForbiddenError: 403 if invalid
    """
    if not settings.admin_api_key:
        raise ServiceUnavailableError("Admin API key not configured")

    if not x_admin_api_key:
        raise UnauthorizedError()

    if not hmac.compare_digest(x_admin_api_key.encode(), settings.admin_api_key.encode()):
        raise ForbiddenError()


async def require_internal_secret(
    x_internal_secret: Optional[str] = Header(None, alias="x-internal-secret")
) -> None:
    """
    Dependency guarding internal job endpoints.

    An unset ``internal_job_secret`` rejects every caller.

    Raises:
        UnauthorizedError: 401 if the secret is missing or wrong
    """
    expected = settings.internal_job_secret
    if not expected or not x_internal_secret:
        raise UnauthorizedError("Unauthorized")
    if not hmac.compare_digest(x_internal_secret.encode(), expected.encode()):
        raise UnauthorizedError("Unauthorized")


async def require_reporting_enabled() -> None:
    """Raises ReportingDisabledError (404) when reporting is switched off."""
    if not settings.enable_reporting:
        raise ReportingDisabledError()


async def require_executive_view_enabled() -> None:
    """Raises NotFoundError (404) when the executive view is switched off."""
    if not settings.enable_executive_view:
        raise NotFoundError("Executive view is disabled")
