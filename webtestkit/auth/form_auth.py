"""
Form Auth Provider
==================
Single-page login: go to ``loginUrl``, fill the configured username and
password selectors, click submit, wait for the success condition.  No IdP
redirect, no MFA.
"""

from __future__ import annotations

import logging

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..run_config import FormConfig
from .base_auth import (
    AuthProvider,
    click_element,
    detect_error_text,
    fill_field,
    origin_of,
    wait_for_login_success,
)
from .credentials import Credentials

logger = logging.getLogger(__name__)

_LOGOUT_TIMEOUT_MS = 5_000


class FormAuthProvider(AuthProvider):
    provider_type = "form"

    def __init__(self, config: FormConfig):
        super().__init__()
        self.config = config

    async def login(self, page: Page, credentials: Credentials) -> None:
        cfg = self.config
        logger.info(f"[FORM] Logging in '{self.role}' at {cfg.login_url[:80]}")

        # ── Step 1: Navigate ─────────────────────────────────────
        try:
            await self.bounded(
                page.goto(cfg.login_url, wait_until="domcontentloaded",
                          timeout=cfg.navigation_timeout_ms),
                cfg.navigation_timeout_ms, "navigation",
                f"Login page {cfg.login_url} did not load",
                remediation=f"Verify the login URL is correct and accessible: {cfg.login_url}",
            )
        except PlaywrightError as exc:
            raise self.error(
                f"Failed to navigate to login page: {exc}", "navigation",
                remediation=f"Verify the login URL is correct and accessible: {cfg.login_url}",
            ) from exc

        # ── Step 2: Fill + submit ────────────────────────────────
        remediation = "Check that the username, password and submit selectors are correct"
        try:
            await self.bounded(
                self._fill_and_submit(page, credentials),
                cfg.navigation_timeout_ms, "credentials",
                "Could not fill and submit the login form", remediation=remediation,
            )
        except PlaywrightError as exc:
            raise self.error(
                f"Failed to fill credentials: {exc}", "credentials", remediation=remediation,
            ) from exc

        # ── Step 3: Success condition ────────────────────────────
        timeout = cfg.success.timeout_ms or cfg.success_timeout_ms
        if not await wait_for_login_success(page, cfg.success, timeout):
            error_text = await detect_error_text(page)
            raise self.error(
                "Login failed - success condition not met", "callback", error_text,
                "Verify credentials are correct and the success URL/selector configuration",
            )

        logger.info(f"[FORM] Login successful for '{self.role}'")

    async def _fill_and_submit(self, page: Page, credentials: Credentials) -> None:
        sel = self.config.selectors
        await fill_field(page, sel.username, credentials.username)
        await fill_field(page, sel.password, credentials.password)
        await click_element(page, sel.submit)

    async def is_session_valid(self, page: Page) -> bool:
        try:
            return await self._matches_success(page, self.config.login_url, self.config.success)
        except PlaywrightError as exc:
            logger.debug(f"[FORM] Session validation failed: {exc}")
            return False

    async def logout(self, page: Page) -> None:
        base = origin_of(self.config.login_url)
        urls = [f"{base}/logout", f"{base}/api/logout", f"{base}/signout"]
        if not await self._try_logout_urls(page, urls, _LOGOUT_TIMEOUT_MS):
            await page.context.clear_cookies()
            logger.info(f"[FORM] Cleared cookies for '{self.role}' (no logout endpoint)")
