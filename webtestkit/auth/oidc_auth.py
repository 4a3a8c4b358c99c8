"""
OIDC Auth Provider
==================
``AuthProvider`` over ``OIDCFlow``.  Resolves the IdP adapter once (with
config selectors merged in) and runs a fresh flow per ``login`` call.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Mapping, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..errors import ConfigurationError
from ..run_config import OIDCConfig
from .base_auth import AuthProvider, origin_of
from .credentials import Credentials
from .idp_adapters import IdpAdapter, get_adapter
from .oidc_flow import OIDCFlow
from .totp import generate_totp_code

logger = logging.getLogger(__name__)

_LOGOUT_TIMEOUT_MS = 5_000
_IDP_LOGOUT_SETTLE_MS = 10_000


class OIDCAuthProvider(AuthProvider):
    """Browser-driven OIDC login via an identity-provider adapter.

    Args:
        config:  Role-resolved OIDC config.
        env:     Mapping holding the TOTP secret (default: ``os.environ``).
        adapter: IdP strategy override (default: registry lookup by ``idp_type``).
        clock:   Wall clock passed to the flow for TOTP generation.
    """

    provider_type = "oidc"

    def __init__(
        self,
        config: OIDCConfig,
        env: Optional[Mapping[str, str]] = None,
        adapter: Optional[IdpAdapter] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__()
        self.config = config
        self.env = os.environ if env is None else env
        self.adapter = adapter or get_adapter(config.idp_type, config.idp_selectors)
        self._clock = clock

    def validate(self) -> None:
        """Fail fast on a missing or malformed TOTP secret, before any browser work."""
        mfa = self.config.mfa
        if mfa is None or not mfa.enabled or mfa.type != "totp":
            return
        if not mfa.totp_secret_env:
            raise ConfigurationError(
                f'TOTP MFA is enabled but no secret variable is configured for role "{self.role}"',
                field="auth.oidc.mfa.totpSecretEnv", role=self.role,
                remediation="Set auth.oidc.mfa.totpSecretEnv or the role's totpSecretEnv",
            )
        generate_totp_code(mfa.totp_secret_env, self.env)

    async def login(self, page: Page, credentials: Credentials) -> None:
        flow = OIDCFlow(
            self.config, self.adapter,
            role=self.role or "unknown", env=self.env, clock=self._clock,
        )
        await flow.execute(page, credentials)

    async def is_session_valid(self, page: Page) -> bool:
        try:
            return await self._matches_success(page, self.config.login_url, self.config.success)
        except PlaywrightError as exc:
            logger.debug(f"[OIDC] Session validation failed: {exc}")
            return False

    async def refresh_session(self, page: Page) -> bool:
        """Reload to let the app renew its tokens silently, then re-check."""
        logger.debug("[OIDC] Attempting session refresh")
        try:
            await page.reload(wait_until="networkidle")
        except PlaywrightError as exc:
            logger.warning(f"[OIDC] Session refresh error: {exc}")
            return False
        valid = await self.is_session_valid(page)
        logger.debug(f"[OIDC] Session refresh result: valid={valid}")
        return valid

    async def logout(self, page: Page) -> None:
        logout = self.config.logout
        if logout is not None and logout.url:
            await page.goto(logout.url, wait_until="networkidle")
            if logout.idp_logout:
                await page.wait_for_load_state("networkidle", timeout=_IDP_LOGOUT_SETTLE_MS)
            logger.info(f"[OIDC] Logged out '{self.role}' via {logout.url}")
            return

        base = origin_of(self.config.login_url)
        urls = [f"{base}/logout", f"{base}/api/logout", f"{base}/auth/logout"]
        if await self._try_logout_urls(page, urls, _LOGOUT_TIMEOUT_MS):
            return

        await page.context.clear_cookies()
        logger.info(f"[OIDC] No logout endpoint answered — cleared cookies for '{self.role}'")
