"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    close_db,
    get_engine,
    get_session,
    get_session_context,
    get_session_factory,
    init_db,
)
from .dependencies import (
    OptionalUserIdDep,
    SessionDep,
    SettingsDep,
    TenantIdDep,
    UserIdDep,
    get_channel_providers,
    get_connection_directory,
    get_priority_index,
    get_queue_processor,
)
from .errors import (
    CommsError,
    NotConfiguredError,
    NotFoundError,
    ProviderError,
    StateConflictError,
    ValidationError,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "get_engine",
    "get_session_factory",
    "get_session",
    "get_session_context",
    "init_db",
    "close_db",
    # Dependencies
    "SessionDep",
    "SettingsDep",
    "TenantIdDep",
    "UserIdDep",
    "OptionalUserIdDep",
    "get_priority_index",
    "get_channel_providers",
    "get_connection_directory",
    "get_queue_processor",
    # Errors
    "CommsError",
    "ValidationError",
    "NotConfiguredError",
    "ProviderError",
    "NotFoundError",
    "StateConflictError",
]
