"""
webtestkit
==========
Authentication and session-storage for browser-driven test suites.

Roles log in once during a dedicated setup phase; the resulting storage
state (cookies + localStorage) is written atomically to
``{storageDir}/{role}.json`` and reused by every parallel test worker
until it goes stale.

CLI Usage:
    python -m webtestkit --config auth.json <command>

    Commands:
        setup [ROLE ...]      Log roles in (reuses fresh sessions)
        status                Show stored sessions and their age
        clear [ROLE]          Delete one or all stored sessions
        cleanup               Delete sessions older than 24h
        bootstrap ROLE        Headed browser for a manual login
        check-credentials     Report missing credential env vars
"""

from .errors import (
    AuthError,
    ConfigurationError,
    SetupError,
    StorageStateError,
    WebTestKitError,
)
from .run_config import AuthConfig, load_auth_config
from .auth import (
    AuthSetup,
    AuthSetupResult,
    StorageStateStore,
    get_storage_state_path,
    run_auth_setup,
)

__all__ = [
    # Errors
    "WebTestKitError",
    "ConfigurationError",
    "AuthError",
    "SetupError",
    "StorageStateError",
    # Config
    "AuthConfig",
    "load_auth_config",
    # Setup / storage
    "AuthSetup",
    "AuthSetupResult",
    "StorageStateStore",
    "run_auth_setup",
    "get_storage_state_path",
]

__version__ = "1.0.0"
