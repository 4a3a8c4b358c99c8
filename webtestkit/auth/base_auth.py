"""
Base Auth Provider (Abstract)
=============================
Defines the contract that ALL auth providers must implement, plus the
bounded-wait helpers they share.

Variants (selected by ``auth.provider``, see ``auth_factory.py``):
    - ``oidc``   — multi-phase browser flow through an identity provider
    - ``form``   — single login page, direct submit
    - ``token``  — API credential exchange, token injected into storage
    - ``custom`` — user-supplied subclass of ``CustomAuthProvider``

Design principles:
    - Every browser wait is bounded: ``bounded()`` wraps it in
      ``asyncio.wait_for`` and turns a timeout into a phase-tagged
      ``AuthError``.  Only the wait is cancelled; navigation teardown
      belongs to the browser owner.
    - Providers never persist anything.  The orchestrator saves the
      context's ``storage_state`` through ``StorageStateStore``.
    - Providers never retry.  ``LoginRetrier`` is layered on top.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, List, Optional
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeout

from ..errors import AuthError
from ..run_config import SuccessCondition
from .credentials import Credentials

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared selectors / defaults
# ---------------------------------------------------------------------------

ERROR_SELECTORS: List[str] = [
    ".error-message",
    ".alert-danger",
    ".error",
    '[role="alert"]',
    ".login-error",
    "#error-message",
]

DEFAULT_ELEMENT_TIMEOUT_MS = 5_000
IDP_RESPONSE_EXCERPT = 200


# ---------------------------------------------------------------------------
# Bounded waits
# ---------------------------------------------------------------------------

async def bounded(
    awaitable: Awaitable[Any],
    timeout_ms: float,
    *,
    phase: str,
    role: str,
    message: str,
    remediation: Optional[str] = None,
) -> Any:
    """Await *awaitable* for at most *timeout_ms*.

    Raises:
        AuthError: tagged with *phase* on an asyncio or Playwright timeout.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except (asyncio.TimeoutError, PlaywrightTimeout) as exc:
        raise AuthError(
            f"{message} (timed out after {timeout_ms / 1000:.0f}s)",
            role, phase, remediation=remediation,
        ) from exc


def url_matches(url: str, pattern: str) -> bool:
    """Substring match, or ``fnmatch`` glob when *pattern* has ``*`` / ``?``."""
    if not pattern:
        return False
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(url, pattern)
    return pattern in url


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


async def wait_for_login_success(
    page: Page,
    success: SuccessCondition,
    timeout_ms: float = DEFAULT_ELEMENT_TIMEOUT_MS,
) -> bool:
    """Wait until the success condition holds.

    With both ``url`` and ``selector`` set, whichever is satisfied first
    wins; the wait fails only when both do.  With neither, waits for the
    network to go idle and reports success.

    Returns:
        True on success, False on timeout.
    """
    if success.url and url_matches(page.url, success.url):
        return True

    if success.is_empty:
        try:
            await page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeout:
            logger.debug("[AUTH] Network never went idle — continuing")
        return True

    waiters = []
    if success.url:
        pattern = success.url
        waiters.append(asyncio.ensure_future(
            page.wait_for_url(lambda u: url_matches(u, pattern), timeout=timeout_ms)
        ))
    if success.selector:
        waiters.append(asyncio.ensure_future(
            page.wait_for_selector(success.selector, state="visible", timeout=timeout_ms)
        ))

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000
    pending = set(waiters)
    try:
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            done, pending = await asyncio.wait(
                pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                exc = task.exception()
                if exc is None:
                    return True
                if not isinstance(exc, (PlaywrightTimeout, asyncio.TimeoutError)):
                    logger.debug(f"[AUTH] Success check failed: {exc}")
        return False
    finally:
        for task in pending:
            task.cancel()


# ---------------------------------------------------------------------------
# Element helpers
# ---------------------------------------------------------------------------

async def fill_field(
    page: Page,
    selector: str,
    value: str,
    timeout_ms: float = DEFAULT_ELEMENT_TIMEOUT_MS,
) -> None:
    """Wait for *selector* to be visible, then replace its value."""
    await page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
    await page.fill(selector, value, timeout=timeout_ms)


async def click_element(
    page: Page,
    selector: str,
    timeout_ms: float = DEFAULT_ELEMENT_TIMEOUT_MS,
) -> None:
    await page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
    await page.click(selector, timeout=timeout_ms)


async def is_element_visible(
    page: Page,
    selector: str,
    timeout_ms: float = 0,
) -> bool:
    """True if *selector* is (or becomes, within *timeout_ms*) visible."""
    try:
        if timeout_ms:
            await page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
            return True
        el = await page.query_selector(selector)
        return bool(el) and await el.is_visible()
    except PlaywrightTimeout:
        return False
    except PlaywrightError as exc:
        logger.debug(f"[AUTH] Visibility check failed for {selector}: {exc}")
        return False


async def detect_error_text(
    page: Page,
    selectors: Optional[List[str]] = None,
) -> Optional[str]:
    """First visible login-error message on the page, trimmed, or None."""
    for sel in selectors or ERROR_SELECTORS:
        try:
            el = await page.query_selector(sel)
            if el and await el.is_visible():
                text = (await el.text_content() or "").strip()
                if text:
                    return text[:IDP_RESPONSE_EXCERPT]
        except PlaywrightError:
            continue
    return None


# ---------------------------------------------------------------------------
# Abstract provider
# ---------------------------------------------------------------------------

class AuthProvider(ABC):
    """Capability set shared by every provider variant.

    Subclasses MUST implement:
        - ``login(page, credentials)``  — raise ``AuthError`` on failure
        - ``is_session_valid(page)``    — cheap check, no side effects
        - ``logout(page)``
    and MAY override ``refresh_session(page)``.
    """

    provider_type: str = ""

    def __init__(self):
        self.role = ""

    def set_role(self, role: str) -> None:
        """Role name used to tag errors raised by this provider."""
        self.role = role

    def validate(self) -> None:
        """Hook: raise ``ConfigurationError`` for problems detectable before login."""

    # ── Login flow ────────────────────────────────────────────────

    @abstractmethod
    async def login(self, page: Page, credentials: Credentials) -> None:
        """Authenticate *page*'s context.

        Args:
            page:        A fresh page in the context that will be saved.
            credentials: Resolved username / password.

        Raises:
            AuthError: tagged with the phase that failed.
        """
        ...

    @abstractmethod
    async def is_session_valid(self, page: Page) -> bool:
        ...

    async def refresh_session(self, page: Page) -> bool:
        """Try to extend the session in place.  Default: unsupported."""
        logger.debug(f"[AUTH] Session refresh not supported by {self.provider_type or 'provider'}")
        return False

    @abstractmethod
    async def logout(self, page: Page) -> None:
        ...

    # ── Shared helpers ────────────────────────────────────────────

    def error(
        self,
        message: str,
        phase: str,
        idp_response: Optional[str] = None,
        remediation: Optional[str] = None,
    ) -> AuthError:
        return AuthError(message, self.role or "unknown", phase, idp_response, remediation)

    async def bounded(
        self,
        awaitable: Awaitable[Any],
        timeout_ms: float,
        phase: str,
        message: str,
        remediation: Optional[str] = None,
    ) -> Any:
        return await bounded(
            awaitable, timeout_ms,
            phase=phase, role=self.role or "unknown",
            message=message, remediation=remediation,
        )

    async def _matches_success(
        self,
        page: Page,
        login_url: str,
        success: SuccessCondition,
        timeout_ms: float = 1_000,
    ) -> bool:
        """Cheap post-login check: off the login page and success indicators present."""
        current = page.url
        if login_url and login_url in current:
            return False
        if success.url and not url_matches(current, success.url):
            return False
        if success.selector:
            return await is_element_visible(page, success.selector, timeout_ms=timeout_ms)
        return True

    async def _try_logout_urls(self, page: Page, urls: List[str], timeout_ms: float) -> bool:
        """Visit candidate logout URLs until one answers below HTTP 400."""
        for url in urls:
            try:
                resp = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            except PlaywrightError as exc:
                logger.debug(f"[AUTH] Logout via {url} failed: {exc}")
                continue
            if resp is None or resp.status < 400:
                logger.info(f"[AUTH] Logged out via {url}")
                return True
        return False
