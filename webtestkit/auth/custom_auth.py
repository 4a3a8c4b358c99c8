"""
Custom Auth Provider
====================
Extension point for login schemes the built-in providers don't cover.
There is no default behaviour: subclass, implement the abstract methods,
and point ``auth.custom.factory`` at the class::

    # myproject/sso.py
    class CorporateSSO(CustomAuthProvider):
        async def login(self, page, credentials): ...
        async def is_session_valid(self, page): ...
        async def logout(self, page): ...

    # config
    auth:
      provider: custom
      custom:
        factory: "myproject.sso:CorporateSSO"
        options: {realm: staging}

``options`` arrive as ``self.options``.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any, Dict, Mapping, Optional, Type

from ..errors import ConfigurationError
from .base_auth import AuthProvider

logger = logging.getLogger(__name__)


class CustomAuthProvider(AuthProvider):
    """Base for user-supplied providers."""

    provider_type = "custom"

    def __init__(self, options: Optional[Mapping[str, Any]] = None):
        super().__init__()
        self.options: Dict[str, Any] = dict(options or {})


def load_custom_provider_class(factory: str) -> Type[CustomAuthProvider]:
    """Import ``package.module:ClassName`` and check it is a ``CustomAuthProvider``.

    Raises:
        ConfigurationError: malformed path, import failure, or wrong type.
    """
    where = "auth.custom.factory"
    module_name, sep, attr = (factory or "").partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"{where} must look like 'package.module:ClassName'; got {factory!r}",
            field=where,
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(
            f"Cannot import custom auth provider module {module_name!r}: {exc}",
            field=where,
            remediation="Make sure the module is importable from the test run",
        ) from exc

    cls = getattr(module, attr, None)
    if not isinstance(cls, type) or not issubclass(cls, CustomAuthProvider):
        raise ConfigurationError(
            f"{factory!r} is not a CustomAuthProvider subclass",
            field=where,
        )
    logger.debug(f"[AUTH-FACTORY] Loaded custom provider {factory}")
    return cls
