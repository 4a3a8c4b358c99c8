"""
Session Bootstrap Utility
=========================
Launches a headed (visible) browser for a human to log a role in by hand.

Use cases:
    - Push or SMS MFA that automation cannot answer
    - CAPTCHA or device-trust pages
    - First-time consent screens before headless setup can take over

Workflow:
    1. Launch headed Chromium
    2. Navigate to the role's login URL
    3. User logs in manually (MFA, CAPTCHA, ...)
    4. Script waits for ENTER in the terminal (bounded)
    5. Saves the session through ``StorageStateStore`` → ``{storageDir}/{role}.json``

The record is then reused by ``AuthSetup`` like any other until it expires.

Usage::

    python -m webtestkit bootstrap admin --config auth.json
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout
from playwright.async_api import async_playwright

from ..errors import ConfigurationError
from ..run_config import AuthConfig
from .session_store import StorageStateStore

logger = logging.getLogger(__name__)


def login_url_for(auth_config: AuthConfig) -> str:
    """Where a human should start logging in for the configured provider."""
    if auth_config.oidc is not None:
        return auth_config.oidc.login_url
    if auth_config.form is not None:
        return auth_config.form.login_url
    if auth_config.token is not None and auth_config.token.app_url:
        return auth_config.token.app_url
    raise ConfigurationError(
        "No login URL configured for manual bootstrap",
        field=f"auth.{auth_config.provider}",
        remediation="Pass --url explicitly",
    )


async def bootstrap_session(
    role: str,
    login_url: str,
    store: StorageStateStore,
    timeout_minutes: int = 10,
    viewport_width: int = 1920,
    viewport_height: int = 1080,
) -> Optional[Path]:
    """Launch a headed browser for manual login and save the session for *role*.

    Args:
        role:            Role the saved session belongs to.
        login_url:       Page to open.
        store:           Store that writes ``{storageDir}/{role}.json``.
        timeout_minutes: Maximum wait for the user (minutes).
        viewport_width:  Browser window width.
        viewport_height: Browser window height.

    Returns:
        Path of the saved record, or None if no cookies were captured.
    """
    print("\n" + "=" * 60)
    print("  SESSION BOOTSTRAP MODE")
    print("=" * 60)
    print(f"  Role:         {role}")
    print(f"  Login URL:    {login_url}")
    print(f"  Output file:  {store.path_for(role)}")
    print(f"  Timeout:      {timeout_minutes} minutes")
    print("=" * 60)
    print()
    print("  A browser window will open.")
    print("  Please log in manually (including MFA if required).")
    print("  Once you are fully logged in, press ENTER in this")
    print("  terminal to save the session.")
    print()
    print("=" * 60)

    async with async_playwright() as pw:
        browser = await pw.chromium.launch(
            headless=False,
            args=["--no-sandbox", "--disable-dev-shm-usage", "--start-maximized"],
        )
        try:
            context = await browser.new_context(
                viewport={"width": viewport_width, "height": viewport_height},
            )
            page = await context.new_page()

            try:
                await page.goto(login_url, wait_until="load", timeout=60_000)
            except PlaywrightError as e:
                logger.warning(f"[BOOTSTRAP] Initial navigation issue: {e}")

            print(f"\n  Browser opened. Current URL: {page.url[:100]}")
            print()
            print("  ➡  Log in manually now.")
            print("  ➡  When fully logged in, come back here and press ENTER.")
            print()

            loop = asyncio.get_running_loop()
            try:
                await asyncio.wait_for(
                    loop.run_in_executor(None, _wait_for_enter),
                    timeout=timeout_minutes * 60,
                )
            except asyncio.TimeoutError:
                print(f"\n  ⏰ Timeout ({timeout_minutes} min) — saving current state anyway.")

            try:
                await page.wait_for_load_state("networkidle", timeout=5_000)
            except PlaywrightTimeout:
                logger.debug("[BOOTSTRAP] Page still busy — saving anyway")

            state = await context.storage_state()
            cookies = state.get("cookies", [])
            if not cookies:
                print("\n  ⚠  No cookies captured — login may not have completed.")
                print("  Nothing was saved. Try again with a longer timeout.\n")
                return None

            path = store.write_state(state, role)
        finally:
            await browser.close()

    # Show cookie domains (not values)
    domains = sorted({c.get("domain", "") for c in cookies})
    print(f"\n  Session saved: {path}")
    print(f"  Cookies:       {len(cookies)}")
    print(f"  Origins:       {len(state.get('origins', []))}")
    print(f"  Domains:       {', '.join(domains[:10])}")
    print(f"\n  ✅ Session bootstrap complete for '{role}'!\n")
    return path


def _wait_for_enter() -> str:
    """Block until the user presses Enter (runs in executor)."""
    try:
        return input("  Press ENTER when login is complete → ")
    except EOFError:
        return ""
