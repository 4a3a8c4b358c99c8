"""
Identity-Provider Adapters
==========================
One strategy per login-page flavour.  Each adapter knows where the
username / password / submit controls live on its IdP, how to dismiss
post-login prompts ("Stay signed in?"), and where the TOTP input is.

Built-ins:
    - ``keycloak``  — single page; fails fast on "required action" pages
    - ``azure-ad``  — two-step (email → Next → password), "Stay signed in? → No"
    - ``okta``      — identifier-first, password on the same or next step
    - ``generic``   — config-driven selectors with common defaults and a
                      label-based fallback for the username and
                      password fields
                      (``auth0`` resolves here too)

Adding an IdP:
    1. Subclass ``IdpAdapter`` and set ``idp_type`` + ``default_selectors``
    2. Call ``register_adapter(MyAdapter)``
    3. Set ``auth.oidc.idpType`` to the new name.  Nothing else changes.

Selectors from config (``auth.oidc.idpSelectors``, then per-role
``oidcOverrides``) are merged field-by-field over the adapter defaults.

Usage::

    from webtestkit.auth.idp_adapters import get_adapter

    adapter = get_adapter("keycloak", overrides=oidc_config.idp_selectors)
    await adapter.fill_credentials(page, credentials, timeout_ms=30_000)
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple, Type

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeout

from ..errors import WebTestKitError
from ..run_config import IdpSelectors
from .base_auth import (
    ERROR_SELECTORS,
    click_element,
    detect_error_text,
    fill_field,
    is_element_visible,
)
from .credentials import Credentials

logger = logging.getLogger(__name__)


class IdpPageError(WebTestKitError):
    """The IdP showed a page the adapter cannot get past."""

    def __init__(self, message: str, idp_response: Optional[str] = None):
        super().__init__(message)
        self.idp_response = idp_response


# ---------------------------------------------------------------------------
# Generic defaults
# ---------------------------------------------------------------------------

_GENERIC_USERNAME: List[str] = [
    'input[type="email"]',
    'input[name="username"]',
    'input[name="email"]',
    'input[id*="username"]',
    'input[id*="email"]',
    'input[autocomplete="username"]',
]

_GENERIC_PASSWORD: List[str] = [
    'input[type="password"]',
    'input[name="password"]',
    'input[id*="password"]',
    'input[autocomplete="current-password"]',
]

_GENERIC_SUBMIT: List[str] = [
    'button[type="submit"]',
    'input[type="submit"]',
    'button:has-text("Sign in")',
    'button:has-text("Log in")',
    'button:has-text("Login")',
    'button:has-text("Submit")',
]

_GENERIC_TOTP_INPUT: List[str] = [
    'input[name*="otp"]',
    'input[name*="totp"]',
    'input[name*="code"]',
    'input[name*="token"]',
    'input[type="tel"][maxlength="6"]',
    'input[autocomplete="one-time-code"]',
]

_GENERIC_TOTP_SUBMIT: List[str] = [
    'button[type="submit"]',
    'input[type="submit"]',
    'button:has-text("Verify")',
    'button:has-text("Submit")',
]

_USERNAME_LABEL_RE = re.compile(r"user\s*name|e-?mail|login|user id", re.IGNORECASE)
_PASSWORD_LABEL_RE = re.compile(r"password|passcode", re.IGNORECASE)

_STEP_SETTLE_MS = 5_000
_PROMPT_WAIT_MS = 3_000


# ---------------------------------------------------------------------------
# Base adapter (= generic behaviour)
# ---------------------------------------------------------------------------

class IdpAdapter:
    """Login-page strategy.  The base class implements the generic flow.

    Class attributes:
        idp_type:          Registry key.
        url_patterns:      Lower-case substrings that identify the IdP's host/path.
        default_selectors: Built-in selectors; config overrides win per field.
        two_step:          True = username and password are always on separate
                           steps; False/None = detect from the page.
    """

    idp_type: str = "generic"
    url_patterns: Tuple[str, ...] = ()
    default_selectors = IdpSelectors(
        username=", ".join(_GENERIC_USERNAME),
        password=", ".join(_GENERIC_PASSWORD),
        submit=", ".join(_GENERIC_SUBMIT),
        totp_input=", ".join(_GENERIC_TOTP_INPUT),
        totp_submit=", ".join(_GENERIC_TOTP_SUBMIT),
    )
    error_selectors: List[str] = ERROR_SELECTORS
    two_step: Optional[bool] = None

    def __init__(self, overrides: Optional[IdpSelectors] = None):
        base = self.default_selectors
        self.selectors = overrides.merged_over(base) if overrides else base

    def __repr__(self) -> str:
        return f"{type(self).__name__}(idp_type={self.idp_type!r})"

    def matches_url(self, url: str) -> bool:
        url = url.lower()
        return any(p in url for p in self.url_patterns)

    # ── Credentials ───────────────────────────────────────────────

    async def fill_credentials(self, page: Page, credentials: Credentials, timeout_ms: float) -> None:
        """Fill username and password and submit, single-page or two-step."""
        await self.fill_username(page, credentials.username, timeout_ms)

        single_page = (
            False if self.two_step
            else await is_element_visible(page, self.selectors.password)
        )
        if single_page:
            await self.fill_password(page, credentials.password, timeout_ms)
            logger.debug(f"[IDP:{self.idp_type}] Filled username and password (single page)")
            await self.submit(page, timeout_ms)
        else:
            logger.debug(f"[IDP:{self.idp_type}] Username step submitted (two-step flow)")
            await self.submit(page, timeout_ms)
            await self.fill_password(page, credentials.password, timeout_ms)
            await self.submit(page, timeout_ms)

        await self.after_submit(page)

    async def fill_username(self, page: Page, username: str, timeout_ms: float) -> None:
        await fill_field(page, self.selectors.username, username, timeout_ms)

    async def fill_password(self, page: Page, password: str, timeout_ms: float) -> None:
        await fill_field(page, self.selectors.password, password, timeout_ms)

    async def submit(self, page: Page, timeout_ms: float) -> None:
        await click_element(page, self.selectors.submit, timeout_ms)
        try:
            await page.wait_for_load_state("domcontentloaded", timeout=_STEP_SETTLE_MS)
        except PlaywrightTimeout:
            logger.debug(f"[IDP:{self.idp_type}] Page still loading after submit")

    async def after_submit(self, page: Page) -> None:
        """Hook: inspect the page right after the final credential submit."""

    # ── MFA ───────────────────────────────────────────────────────

    def totp_selectors(
        self,
        input_selector: Optional[str] = None,
        submit_selector: Optional[str] = None,
    ) -> Tuple[str, str]:
        """(input, submit) selectors for the TOTP prompt; MFA config wins."""
        input_sel = input_selector or self.selectors.totp_input or ", ".join(_GENERIC_TOTP_INPUT)
        submit_sel = (
            submit_selector or self.selectors.totp_submit
            or ", ".join(_GENERIC_TOTP_SUBMIT)
        )
        return input_sel, submit_sel

    async def submit_totp(
        self,
        page: Page,
        code: str,
        timeout_ms: float,
        input_selector: Optional[str] = None,
        submit_selector: Optional[str] = None,
    ) -> None:
        """Enter *code* into the one-time-code prompt and submit."""
        input_sel, submit_sel = self.totp_selectors(input_selector, submit_selector)
        await fill_field(page, input_sel, code, timeout_ms)
        await click_element(page, submit_sel, timeout_ms)
        logger.debug(f"[IDP:{self.idp_type}] TOTP code submitted")

    # ── Post-login ────────────────────────────────────────────────

    async def dismiss_post_login_prompts(self, page: Page) -> None:
        """Answer "No" to "Stay signed in?"-style interstitials if one shows up."""
        selector = self.selectors.stay_signed_in_no
        if not selector:
            return
        if await is_element_visible(page, selector, timeout_ms=_PROMPT_WAIT_MS):
            await page.click(selector, timeout=_PROMPT_WAIT_MS)
            logger.info(f"[IDP:{self.idp_type}] Dismissed 'stay signed in' prompt")

    async def detect_error(self, page: Page) -> Optional[str]:
        return await detect_error_text(page, self.error_selectors)


class GenericAdapter(IdpAdapter):
    """Config-driven adapter; falls back to accessible labels when selectors miss."""

    idp_type = "generic"

    async def fill_username(self, page: Page, username: str, timeout_ms: float) -> None:
        await self._fill_or_label(page, self.selectors.username, _USERNAME_LABEL_RE, username, timeout_ms)

    async def fill_password(self, page: Page, password: str, timeout_ms: float) -> None:
        await self._fill_or_label(page, self.selectors.password, _PASSWORD_LABEL_RE, password, timeout_ms)

    async def _fill_or_label(
        self,
        page: Page,
        selector: str,
        label: "re.Pattern[str]",
        value: str,
        timeout_ms: float,
    ) -> None:
        try:
            await fill_field(page, selector, value, timeout_ms)
        except PlaywrightTimeout:
            field = page.get_by_label(label).first
            if not await field.is_visible():
                raise
            logger.debug(f"[IDP:generic] Field found by label /{label.pattern}/")
            await field.fill(value, timeout=timeout_ms)


# ---------------------------------------------------------------------------
# Built-in IdPs
# ---------------------------------------------------------------------------

_KEYCLOAK_REQUIRED_ACTIONS: List[str] = [
    "#kc-update-password",
    "#kc-update-profile",
    "#kc-verify-email",
    ".required-action",
]


class KeycloakAdapter(IdpAdapter):
    idp_type = "keycloak"
    url_patterns = ("keycloak", "/auth/realms/", "/realms/")
    default_selectors = IdpSelectors(
        username='#username, input[name="username"], #kc-login input[name="username"]',
        password='#password, input[name="password"], #kc-login input[name="password"]',
        submit='#kc-login, button[type="submit"], input[type="submit"]',
        totp_input='#otp, input[name="otp"], input[name="totp"]',
        totp_submit='#kc-login, button[type="submit"], input[type="submit"]',
    )
    error_selectors = [
        "#input-error",
        ".kc-feedback-text",
        ".alert-error",
        "#kc-error-message",
    ] + ERROR_SELECTORS
    two_step = False

    async def after_submit(self, page: Page) -> None:
        for sel in _KEYCLOAK_REQUIRED_ACTIONS:
            if await is_element_visible(page, sel):
                text = await detect_error_text(page, [sel])
                raise IdpPageError(
                    f"Keycloak requires a manual action ({sel}) before this account can log in",
                    idp_response=text,
                )


class AzureADAdapter(IdpAdapter):
    idp_type = "azure-ad"
    url_patterns = ("login.microsoftonline.com", "login.live.com", "login.microsoft.com")
    default_selectors = IdpSelectors(
        username='input[type="email"], input[name="loginfmt"], #i0116',
        password='input[type="password"], input[name="passwd"], #i0118, #passwordInput',
        submit='input[type="submit"], #idSIButton9',
        stay_signed_in_no='#idBtn_Back, input[value="No"]',
        totp_input='input[name="otc"], #idTxtBx_SAOTCC_OTC',
        totp_submit='input[type="submit"], #idSubmit_SAOTCC_Continue',
    )
    error_selectors = [
        "#usernameError",
        "#passwordError",
        "#service_exception_message",
    ] + ERROR_SELECTORS
    two_step = True


class OktaAdapter(IdpAdapter):
    idp_type = "okta"
    url_patterns = (".okta.com", ".oktapreview.com", ".okta-emea.com")
    default_selectors = IdpSelectors(
        username='#okta-signin-username, input[name="identifier"], input[name="username"]',
        password='#okta-signin-password, input[name="credentials.passcode"], input[name="password"]',
        submit='#okta-signin-submit, input[type="submit"], button[type="submit"]',
        totp_input='input[name="credentials.passcode"], input[name="answer"], #input-container input',
        totp_submit='input[type="submit"], button[type="submit"]',
    )
    error_selectors = [
        ".o-form-error-container",
        ".okta-form-infobox-error",
    ] + ERROR_SELECTORS


# ---------------------------------------------------------------------------
# Adapter Registry
# ---------------------------------------------------------------------------

# Global registry: maps idp_type → adapter class
_ADAPTER_REGISTRY: Dict[str, Type[IdpAdapter]] = {}


def register_adapter(adapter_class: Type[IdpAdapter], *aliases: str) -> None:
    """Register *adapter_class* under its ``idp_type`` (and any *aliases*)."""
    for name in (adapter_class.idp_type, *aliases):
        _ADAPTER_REGISTRY[name.lower()] = adapter_class
        logger.debug(f"[IDP] Registered adapter: {name}")


def get_adapter(idp_type: str, overrides: Optional[IdpSelectors] = None) -> IdpAdapter:
    """Instantiate the adapter for *idp_type*; unknown types get ``generic``."""
    adapter_class = _ADAPTER_REGISTRY.get((idp_type or "generic").lower())
    if adapter_class is None:
        logger.warning(f"[IDP] No adapter for idpType '{idp_type}' — using generic")
        adapter_class = GenericAdapter
    return adapter_class(overrides)


def list_adapters() -> List[str]:
    """Return names of all registered adapters."""
    return list(_ADAPTER_REGISTRY.keys())


def detect_idp_type(url: str) -> str:
    """Guess the IdP flavour from a login-page URL (pattern matching only)."""
    url_lower = url.lower()
    if "keycloak" in url_lower or "/auth/realms/" in url_lower:
        return "keycloak"
    if "login.microsoftonline.com" in url_lower or "login.live.com" in url_lower:
        return "azure-ad"
    if ".okta.com" in url_lower or ".oktapreview.com" in url_lower:
        return "okta"
    if "auth0.com" in url_lower:
        return "auth0"
    return "generic"


def _auto_register() -> None:
    """Register the built-in adapters.  Called once at module load time."""
    register_adapter(GenericAdapter, "auth0")
    register_adapter(KeycloakAdapter)
    register_adapter(AzureADAdapter)
    register_adapter(OktaAdapter)


_auto_register()
