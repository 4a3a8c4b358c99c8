"""
Token Auth Provider
===================
API credential exchange instead of a login UI:

    1. POST ``{usernameField: u, passwordField: p, **additionalFields}``
       as JSON to ``tokenEndpoint`` (``requests``, off the event loop)
    2. Pull ``tokenField`` out of the JSON response
    3. Write ``{token, headerName, headerPrefix, timestamp}`` into the app
       origin's localStorage under ``webtestkit_auth_token``

The orchestrator then saves the context like any other provider, so the
token travels inside the storage-state file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import requests
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..run_config import TokenConfig
from .base_auth import IDP_RESPONSE_EXCERPT, AuthProvider, origin_of
from .credentials import Credentials

logger = logging.getLogger(__name__)

TOKEN_STORAGE_KEY = "webtestkit_auth_token"

_STORE_JS = """
([key, value]) => { localStorage.setItem(key, value); }
"""
_READ_JS = """
(key) => localStorage.getItem(key)
"""
_REMOVE_JS = """
(key) => { localStorage.removeItem(key); }
"""


class TokenAuthProvider(AuthProvider):
    provider_type = "token"

    def __init__(self, config: TokenConfig, session: Optional[requests.Session] = None):
        super().__init__()
        self.config = config
        self._session = session or requests.Session()
        self._token: Optional[str] = None

    # ── Login flow ────────────────────────────────────────────────

    async def login(self, page: Page, credentials: Credentials) -> None:
        logger.info(f"[TOKEN] Requesting token for '{self.role}' from {self.config.token_endpoint}")
        token = await self.bounded(
            self._acquire_token(credentials),
            self.config.timeout_ms, "credentials",
            "Token endpoint did not answer",
            remediation="Check token endpoint URL and network connectivity",
        )
        await self._store_token(page, token)
        self._token = token
        logger.info(f"[TOKEN] Token stored for '{self.role}'")

    async def _acquire_token(self, credentials: Credentials) -> str:
        cfg = self.config
        body: Dict[str, Any] = {
            cfg.username_field: credentials.username,
            cfg.password_field: credentials.password,
            **cfg.additional_fields,
        }

        loop = asyncio.get_running_loop()
        try:
            resp = await loop.run_in_executor(
                None,
                lambda: self._session.post(
                    cfg.token_endpoint, json=body, timeout=cfg.timeout_ms / 1000
                ),
            )
            resp.raise_for_status()
        except requests.HTTPError as exc:
            text = exc.response.text[:IDP_RESPONSE_EXCERPT] if exc.response is not None else None
            raise self.error(
                f"Token request failed: {exc}", "credentials", text,
                "Check credentials and token endpoint configuration",
            ) from exc
        except requests.RequestException as exc:
            raise self.error(
                f"Token acquisition failed: {exc}", "credentials",
                remediation="Check token endpoint URL and network connectivity",
            ) from exc

        try:
            data = resp.json()
        except ValueError:
            data = None
        token = data.get(cfg.token_field) if isinstance(data, dict) else None
        if not token or not isinstance(token, str):
            excerpt = (json.dumps(data) if data is not None else resp.text)[:IDP_RESPONSE_EXCERPT]
            raise self.error(
                f"Token not found in response (expected field: {cfg.token_field})",
                "callback", excerpt,
                f'Check that the token endpoint returns the token in "{cfg.token_field}"',
            )
        return token

    async def _store_token(self, page: Page, token: str) -> None:
        cfg = self.config
        target = cfg.app_url or origin_of(cfg.token_endpoint)
        try:
            if origin_of(page.url) != origin_of(target):
                await self.bounded(
                    page.goto(target, wait_until="domcontentloaded", timeout=cfg.timeout_ms),
                    cfg.timeout_ms, "navigation", f"App page {target} did not load",
                    remediation="Check auth.token.appUrl",
                )
            value = json.dumps({
                "token": token,
                "headerName": cfg.header_name,
                "headerPrefix": cfg.header_prefix,
                "timestamp": int(time.time() * 1000),
            })
            await page.evaluate(_STORE_JS, [TOKEN_STORAGE_KEY, value])
        except PlaywrightError as exc:
            raise self.error(
                f"Failed to store token in the browser: {exc}", "callback",
                remediation="Check auth.token.appUrl points at the application origin",
            ) from exc

    # ── Session ───────────────────────────────────────────────────

    async def is_session_valid(self, page: Page) -> bool:
        try:
            raw = await page.evaluate(_READ_JS, TOKEN_STORAGE_KEY)
        except PlaywrightError as exc:
            logger.debug(f"[TOKEN] Cannot read localStorage: {exc}")
            return False
        if not raw:
            return False
        try:
            return bool(json.loads(raw).get("token"))
        except (ValueError, AttributeError):
            return False

    async def logout(self, page: Page) -> None:
        await page.evaluate(_REMOVE_JS, TOKEN_STORAGE_KEY)
        self._token = None
        logger.debug("[TOKEN] Token cleared from localStorage")

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def auth_header(self) -> Optional[Dict[str, str]]:
        """``{headerName: prefix + token}`` for API clients, once logged in."""
        if not self._token:
            return None
        return {self.config.header_name: f"{self.config.header_prefix}{self._token}"}
