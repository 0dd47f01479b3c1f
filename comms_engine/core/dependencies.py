"""FastAPI dependencies for request context and shared runtime objects."""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .database import get_session

logger = logging.getLogger(__name__)


def _parse_uuid_header(value: str | None, header: str, required: bool) -> UUID | None:
    if not value:
        if required:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{header} header required",
            )
        return None
    try:
        return UUID(value)
    except ValueError:
        logger.warning(f"Invalid {header} header: {value}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {header} format",
        )


def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header()] = None,
) -> UUID:
    """Tenant context, resolved upstream by the authentication layer."""
    return _parse_uuid_header(x_tenant_id, "X-Tenant-ID", required=True)


def get_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> UUID:
    return _parse_uuid_header(x_user_id, "X-User-ID", required=True)


def get_optional_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> UUID | None:
    return _parse_uuid_header(x_user_id, "X-User-ID", required=False)


# Runtime objects built in the application lifespan


def _app_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ').capitalize()} not initialized",
        )
    return value


def get_priority_index(request: Request):
    return _app_state(request, "priority_index")


def get_channel_providers(request: Request):
    return _app_state(request, "channel_providers")


def get_connection_directory(request: Request):
    return _app_state(request, "connection_directory")


def get_queue_processor(request: Request):
    return _app_state(request, "queue_processor")


# Type aliases for cleaner dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_session)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
TenantIdDep = Annotated[UUID, Depends(get_tenant_id)]
UserIdDep = Annotated[UUID, Depends(get_user_id)]
OptionalUserIdDep = Annotated[UUID | None, Depends(get_optional_user_id)]
