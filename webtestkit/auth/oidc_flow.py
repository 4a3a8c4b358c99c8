"""
OIDC Flow Engine
================
Drives a real browser through an OIDC login UI.  It never speaks the
protocol itself: the app under test does the redirects, we fill forms.

Phases, strictly ordered, each with its own bounded wait and its own
``AuthError.phase`` tag:

    1. navigation  — open ``loginUrl``; wait for the IdP host
                     (``idpLoginUrl``) or any URL change (SPAs may not change)
    2. credentials — adapter fills username / password and submits
    3. mfa         — only if ``mfa.enabled``:
                       totp → fresh window, generate, fill, submit
                       push → wait for the URL to leave the MFA page
                       sms  → unsupported, fails
    4. callback    — back on the app, success condition within ``callbackMs``

The engine does not retry; ``LoginRetrier`` wraps it.

Usage::

    flow = OIDCFlow(auth_config.oidc_for_role("admin"), role="admin", env=os.environ)
    result = await flow.run(page, credentials)   # → OIDCFlowResult
    await flow.execute(page, credentials)        # raises AuthError instead
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeout

from ..errors import AuthError, ConfigurationError
from ..run_config import MfaConfig, OIDCConfig
from .base_auth import bounded, wait_for_login_success
from .credentials import Credentials
from .idp_adapters import IdpAdapter, IdpPageError, get_adapter
from .totp import generate_totp_code, wait_for_fresh_window

logger = logging.getLogger(__name__)

_MFA_PROMPT_TIMEOUT_MS = 10_000
_TOTP_FRESH_THRESHOLD_S = 5
_MFA_URL_MARKERS = ("mfa", "2fa", "/signin/verify")


@dataclass(frozen=True)
class OIDCFlowResult:
    success: bool
    final_url: str
    duration_ms: float
    phase: str
    """Phase the flow ended in (``callback`` on success)."""
    error: Optional[AuthError] = None


def _on_mfa_page(url: str) -> bool:
    url = url.lower()
    return any(marker in url for marker in _MFA_URL_MARKERS)


class OIDCFlow:
    """One OIDC login through the browser for one role.

    Args:
        config:            Role-resolved OIDC config (``AuthConfig.oidc_for_role``).
        adapter:           IdP strategy (default: from ``config.idp_type``).
        role:              Role name used to tag errors.
        env:               Mapping holding the TOTP secret (default: ``os.environ``).
        clock:             Wall clock for TOTP generation (injectable for tests).
        sleep:             Sleep used while waiting for a fresh TOTP window.
        skip_idp_redirect: Start directly on the IdP page (no redirect wait).
    """

    def __init__(
        self,
        config: OIDCConfig,
        adapter: Optional[IdpAdapter] = None,
        *,
        role: str = "unknown",
        env: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
        skip_idp_redirect: bool = False,
    ):
        self.config = config
        self.adapter = adapter or get_adapter(config.idp_type, config.idp_selectors)
        self.role = role
        self.env = os.environ if env is None else env
        self.skip_idp_redirect = skip_idp_redirect
        self._clock = clock
        self._sleep = sleep
        self._phase = "navigation"

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    async def run(self, page: Page, credentials: Credentials) -> OIDCFlowResult:
        """Execute the flow and report the outcome instead of raising.

        ``ConfigurationError`` still propagates: it is not a login failure.
        """
        start = time.monotonic()
        try:
            await self.execute(page, credentials)
        except AuthError as exc:
            duration = (time.monotonic() - start) * 1000
            return OIDCFlowResult(
                success=False, final_url=page.url, duration_ms=duration,
                phase=exc.phase, error=exc,
            )
        duration = (time.monotonic() - start) * 1000
        return OIDCFlowResult(
            success=True, final_url=page.url, duration_ms=duration, phase="callback",
        )

    async def execute(self, page: Page, credentials: Credentials) -> None:
        """Execute all phases.

        Raises:
            AuthError:          tagged with the phase that failed.
            ConfigurationError: TOTP secret missing or invalid.
        """
        start = time.monotonic()
        logger.info(
            f"[OIDC] Starting login for '{self.role}' "
            f"(idp={self.adapter.idp_type}, url={self.config.login_url[:80]})"
        )

        try:
            self._phase = "navigation"
            await self._navigate(page)
            if not self.skip_idp_redirect and self.config.login_url != self.config.idp_login_url:
                await self._wait_for_idp_redirect(page)

            self._phase = "credentials"
            await self._enter_credentials(page, credentials)

            if self.config.mfa is not None and self.config.mfa.enabled:
                self._phase = "mfa"
                await self._handle_mfa(page, self.config.mfa)

            self._phase = "callback"
            await self._dismiss_prompts(page)
            await self._wait_for_callback(page)

        except AuthError as exc:
            logger.error(
                f"[OIDC] Login failed for '{self.role}' in phase {exc.phase} "
                f"after {time.monotonic() - start:.1f}s: {exc.message}"
            )
            raise
        except PlaywrightError as exc:
            logger.error(f"[OIDC] Unexpected page state in phase {self._phase}: {exc}")
            raise AuthError(
                f"Unexpected page state during {self._phase}: {exc}",
                self.role, self._phase,
            ) from exc

        logger.info(
            f"[OIDC] Login complete for '{self.role}' in "
            f"{time.monotonic() - start:.1f}s → {page.url[:100]}"
        )

    # -----------------------------------------------------------------------
    # Phase 1: navigation
    # -----------------------------------------------------------------------

    async def _navigate(self, page: Page) -> None:
        timeout = self.config.timeouts.login_flow_ms
        url = self.config.login_url
        logger.debug(f"[OIDC] Navigating to {url}")
        try:
            await bounded(
                page.goto(url, wait_until="domcontentloaded", timeout=timeout),
                timeout, phase="navigation", role=self.role,
                message=f"Navigation to login URL {url} did not complete",
                remediation=f"Verify the login URL is correct and accessible: {url}",
            )
        except PlaywrightError as exc:
            raise AuthError(
                f"Failed to navigate to login URL: {exc}",
                self.role, "navigation",
                remediation=f"Verify the login URL is correct and accessible: {url}",
            ) from exc

    async def _wait_for_idp_redirect(self, page: Page) -> None:
        timeout = self.config.timeouts.idp_redirect_ms

        if self.config.idp_login_url:
            host = urlparse(self.config.idp_login_url).netloc
            if host and host in page.url:
                return
            logger.debug(f"[OIDC] Waiting for redirect to {host}")
            await bounded(
                page.wait_for_url(lambda u: host in u, timeout=timeout),
                timeout, phase="navigation", role=self.role,
                message=f"Application did not redirect to the IdP ({host})",
                remediation="The application may not have redirected to the IdP login page",
            )
            return

        original = page.url
        try:
            await asyncio.wait_for(
                page.wait_for_url(lambda u: u != original, timeout=timeout),
                timeout=timeout / 1000,
            )
        except (asyncio.TimeoutError, PlaywrightTimeout):
            logger.debug("[OIDC] URL did not change — assuming in-page (SPA) login")
            return

        if self.adapter.url_patterns and not self.adapter.matches_url(page.url):
            logger.warning(
                f"[OIDC] Landed on {page.url[:80]}, which does not look like "
                f"a {self.adapter.idp_type} page"
            )

    # -----------------------------------------------------------------------
    # Phase 2: credentials
    # -----------------------------------------------------------------------

    async def _enter_credentials(self, page: Page, credentials: Credentials) -> None:
        timeout = self.config.timeouts.login_flow_ms
        remediation = "Check if the IdP selectors are correct for username/password fields"
        logger.debug(f"[OIDC] Filling credentials on {self.adapter.idp_type} page")
        try:
            await bounded(
                self.adapter.fill_credentials(page, credentials, timeout),
                timeout, phase="credentials", role=self.role,
                message="Could not complete credential entry on the IdP page",
                remediation=remediation,
            )
        except IdpPageError as exc:
            raise AuthError(
                str(exc), self.role, "credentials", exc.idp_response,
                "Complete the pending action for this account manually, then re-run setup",
            ) from exc
        except PlaywrightError as exc:
            raise AuthError(
                f"Failed to fill credentials on IdP page: {exc}",
                self.role, "credentials", remediation=remediation,
            ) from exc

    # -----------------------------------------------------------------------
    # Phase 3: MFA
    # -----------------------------------------------------------------------

    async def _handle_mfa(self, page: Page, mfa: MfaConfig) -> None:
        logger.info(f"[OIDC] Handling {mfa.type} MFA for '{self.role}'")
        if mfa.type == "totp":
            await self._handle_totp(page, mfa)
        elif mfa.type == "push":
            await self._handle_push(page, mfa)
        elif mfa.type == "sms":
            raise AuthError(
                "SMS-based MFA is not supported for automated testing",
                self.role, "mfa",
                remediation="Configure TOTP-based MFA for the test account instead",
            )
        else:
            logger.debug("[OIDC] MFA type is none — skipping")

    async def _handle_totp(self, page: Page, mfa: MfaConfig) -> None:
        if not mfa.totp_secret_env:
            raise ConfigurationError(
                "TOTP MFA is enabled but no secret variable is configured",
                field="auth.oidc.mfa.totpSecretEnv", role=self.role,
                remediation="Set mfa.totpSecretEnv (or the role's totpSecretEnv)",
            )
        remediation = "Check TOTP input selector configuration and verify the secret is correct"
        input_sel, submit_sel = self.adapter.totp_selectors(
            mfa.totp_input_selector, mfa.totp_submit_selector
        )

        await bounded(
            page.wait_for_selector(input_sel, state="visible", timeout=_MFA_PROMPT_TIMEOUT_MS),
            _MFA_PROMPT_TIMEOUT_MS, phase="mfa", role=self.role,
            message="TOTP prompt did not appear", remediation=remediation,
        )

        await wait_for_fresh_window(
            _TOTP_FRESH_THRESHOLD_S, clock=self._clock, sleep=self._sleep
        )
        code = generate_totp_code(mfa.totp_secret_env, self.env, for_time=self._clock())

        try:
            await bounded(
                self.adapter.submit_totp(
                    page, code, _MFA_PROMPT_TIMEOUT_MS, input_sel, submit_sel
                ),
                _MFA_PROMPT_TIMEOUT_MS, phase="mfa", role=self.role,
                message="Could not submit the TOTP code", remediation=remediation,
            )
        except PlaywrightError as exc:
            raise AuthError(
                f"Failed to complete TOTP MFA: {exc}",
                self.role, "mfa", remediation=remediation,
            ) from exc

    async def _handle_push(self, page: Page, mfa: MfaConfig) -> None:
        timeout = mfa.push_timeout_ms
        logger.info(f"[OIDC] Waiting up to {timeout / 1000:.0f}s for push approval")
        await bounded(
            page.wait_for_url(lambda u: not _on_mfa_page(u), timeout=timeout),
            timeout, phase="mfa", role=self.role,
            message="Push MFA approval was not received",
            remediation="Approve the push notification on your device or configure TOTP instead",
        )

    # -----------------------------------------------------------------------
    # Phase 4: callback
    # -----------------------------------------------------------------------

    async def _dismiss_prompts(self, page: Page) -> None:
        try:
            await self.adapter.dismiss_post_login_prompts(page)
        except PlaywrightError as exc:
            logger.debug(f"[OIDC] Post-login prompt not handled: {exc}")

    async def _wait_for_callback(self, page: Page) -> None:
        success = self.config.success
        timeout = success.timeout_ms or self.config.timeouts.callback_ms
        logger.debug(f"[OIDC] Waiting up to {timeout / 1000:.0f}s for the success condition")

        try:
            ok = await asyncio.wait_for(
                wait_for_login_success(page, success, timeout), timeout=timeout / 1000 + 1
            )
        except asyncio.TimeoutError:
            ok = False

        if not ok:
            idp_response = await self.adapter.detect_error(page)
            raise AuthError(
                "Authentication callback failed",
                self.role, "callback", idp_response,
                "Verify credentials are correct and the success URL/selector configuration",
            )
