"""
Authentication Module
=====================
Logs browser test sessions in, once per role, and keeps the resulting
storage state on disk for parallel test workers to reuse.

Architecture:
    - ``AuthSetup``           — orchestrator: credentials → provider → retry → save
    - ``StorageStateStore``   — one atomic JSON file per role, freshness checks
    - ``AuthProvider``        — abstract base (OIDC / Form / Token / Custom)
    - ``AuthFactory``         — builds the provider named by ``auth.provider``
    - ``OIDCFlow``            — multi-phase OIDC login through the browser
    - IdP adapters            — keycloak, azure-ad, okta, generic
    - ``LoginRetrier``        — one retry, then an actionable ``AuthError``
    - ``get_credentials``     — env-var lookup per role, fails fast

Extending:
    New IdP  → subclass ``IdpAdapter`` + ``register_adapter``.
    New auth scheme → subclass ``CustomAuthProvider`` and point
    ``auth.custom.factory`` at it.

Usage::

    from webtestkit.auth import AuthSetup

    setup = AuthSetup(auth_config, browser)
    await setup.run_all()
    context = await browser.new_context(
        storage_state=setup.get_storage_state_path("admin"),
    )
"""

from .credentials import (
    Credentials,
    MissingCredential,
    format_missing_credentials,
    get_credentials,
    has_credentials,
    validate_credentials,
)
from .totp import generate_totp_code, verify_totp_code
from .session_store import CleanupResult, StorageStateMetadata, StorageStateStore
from .base_auth import AuthProvider
from .idp_adapters import (
    IdpAdapter,
    detect_idp_type,
    get_adapter,
    list_adapters,
    register_adapter,
)
from .oidc_flow import OIDCFlow, OIDCFlowResult
from .oidc_auth import OIDCAuthProvider
from .form_auth import FormAuthProvider
from .token_auth import TokenAuthProvider
from .custom_auth import CustomAuthProvider
from .auth_factory import AuthFactory, create_provider
from .retry import REMEDIATION_BY_PHASE, LoginRetrier, RetryState
from .auth_setup import (
    AuthSetup,
    AuthSetupResult,
    get_storage_state_path,
    run_auth_setup,
)

__all__ = [
    # Credentials / TOTP
    "Credentials",
    "MissingCredential",
    "get_credentials",
    "validate_credentials",
    "format_missing_credentials",
    "has_credentials",
    "generate_totp_code",
    "verify_totp_code",
    # Storage
    "StorageStateStore",
    "StorageStateMetadata",
    "CleanupResult",
    # Providers
    "AuthProvider",
    "OIDCAuthProvider",
    "FormAuthProvider",
    "TokenAuthProvider",
    "CustomAuthProvider",
    "AuthFactory",
    "create_provider",
    # OIDC
    "OIDCFlow",
    "OIDCFlowResult",
    "IdpAdapter",
    "register_adapter",
    "get_adapter",
    "list_adapters",
    "detect_idp_type",
    # Retry / orchestration
    "LoginRetrier",
    "RetryState",
    "REMEDIATION_BY_PHASE",
    "AuthSetup",
    "AuthSetupResult",
    "run_auth_setup",
    "get_storage_state_path",
]
