"""
Authentication Factory
======================
Builds the ``AuthProvider`` selected by ``auth.provider`` for one role.

Built-in providers: ``oidc``, ``form``, ``token``, ``custom``.

Adding a provider type:
    1. Write an ``AuthProvider`` subclass
    2. Write a builder ``(auth_config, role, env) -> provider``
    3. Call ``AuthFactory.register("name", builder)``

The orchestrator never imports provider modules directly; it only calls
``create_provider``.

Usage::

    from webtestkit.auth.auth_factory import create_provider

    provider = create_provider(auth_config, "admin", env=os.environ)
    await provider.login(page, credentials)
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional

from ..errors import ConfigurationError
from ..run_config import AuthConfig
from .base_auth import AuthProvider
from .custom_auth import load_custom_provider_class
from .form_auth import FormAuthProvider
from .oidc_auth import OIDCAuthProvider
from .token_auth import TokenAuthProvider

logger = logging.getLogger(__name__)

ProviderBuilder = Callable[[AuthConfig, str, Optional[Mapping[str, str]]], AuthProvider]


# ---------------------------------------------------------------------------
# Provider Registry
# ---------------------------------------------------------------------------

# Global registry: maps provider type → builder
_PROVIDER_REGISTRY: Dict[str, ProviderBuilder] = {}


class AuthFactory:
    """Registry of provider builders keyed by the ``auth.provider`` value."""

    @staticmethod
    def register(provider_type: str, builder: ProviderBuilder) -> None:
        _PROVIDER_REGISTRY[provider_type.lower()] = builder
        logger.debug(f"[AUTH-FACTORY] Registered provider: {provider_type}")

    @staticmethod
    def create(
        auth_config: AuthConfig,
        role: str,
        env: Optional[Mapping[str, str]] = None,
    ) -> AuthProvider:
        """Build the configured provider for *role* and tag it with the role.

        Raises:
            ConfigurationError: unknown role or provider, or an unusable section.
        """
        auth_config.role(role)
        builder = _PROVIDER_REGISTRY.get(auth_config.provider)
        if builder is None:
            raise ConfigurationError(
                f"No auth provider registered for {auth_config.provider!r}. "
                f"Available: {', '.join(_PROVIDER_REGISTRY)}",
                field="auth.provider",
            )
        provider = builder(auth_config, role, env)
        provider.set_role(role)
        logger.debug(
            f"[AUTH-FACTORY] Built {type(provider).__name__} for role '{role}'"
        )
        return provider

    @staticmethod
    def list_providers() -> List[str]:
        """Return names of all registered provider types."""
        return list(_PROVIDER_REGISTRY.keys())


def create_provider(
    auth_config: AuthConfig,
    role: str,
    env: Optional[Mapping[str, str]] = None,
) -> AuthProvider:
    return AuthFactory.create(auth_config, role, env)


# ---------------------------------------------------------------------------
# Built-in builders
# ---------------------------------------------------------------------------

def _build_oidc(auth_config: AuthConfig, role: str, env) -> AuthProvider:
    return OIDCAuthProvider(auth_config.oidc_for_role(role), env=env)


def _build_form(auth_config: AuthConfig, role: str, env) -> AuthProvider:
    return FormAuthProvider(auth_config.form)


def _build_token(auth_config: AuthConfig, role: str, env) -> AuthProvider:
    return TokenAuthProvider(auth_config.token)


def _build_custom(auth_config: AuthConfig, role: str, env) -> AuthProvider:
    custom = auth_config.custom
    if custom is None or not custom.factory:
        raise ConfigurationError(
            "auth.provider is 'custom' but auth.custom.factory is not set",
            field="auth.custom.factory",
            remediation="Point auth.custom.factory at 'package.module:ClassName'",
        )
    cls = load_custom_provider_class(custom.factory)
    return cls(custom.options)


def _auto_register() -> None:
    """Register the built-in provider types.  Called once at module load time."""
    AuthFactory.register("oidc", _build_oidc)
    AuthFactory.register("form", _build_form)
    AuthFactory.register("token", _build_token)
    AuthFactory.register("custom", _build_custom)


_auto_register()
