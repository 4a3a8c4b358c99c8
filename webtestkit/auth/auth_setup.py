"""
Auth Setup Orchestrator
=======================
Entry point of the setup phase: runs once per role, before parallel test
workers start, and leaves ``{storageDir}/{role}.json`` behind for them.

Per role::

    resolve credentials ──► build provider ──► fresh state on disk? ──► reuse
         (fails fast)         (by config)            │ no
                                                     ▼
                          new context ──► login via LoginRetrier ──► save

Guarantees:
    - The 24h cleanup sweep runs once, to completion, before any login.
    - Credentials and config problems raise before a browser is touched.
    - Same role, same process: serialised by an ``asyncio.Lock``.
    - Same role, other process: advisory lock file; whoever waited re-checks
      the store afterwards and reuses the record the winner just wrote.
    - Different roles run concurrently (``run_all``).

Usage::

    setup = AuthSetup(auth_config, browser, env=os.environ)
    results = await setup.run_all()          # every configured role
    path = setup.get_storage_state_path("admin")
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Mapping, Optional, Tuple

from playwright.async_api import Browser

from ..errors import ConfigurationError, SetupError, WebTestKitError
from ..run_config import AuthConfig
from .auth_factory import create_provider
from .base_auth import AuthProvider
from .credentials import Credentials, get_credentials
from .retry import LoginRetrier
from .session_store import StorageStateStore

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[AuthConfig, str, Optional[Mapping[str, str]]], AuthProvider]


@dataclass
class AuthSetupResult:
    role: str
    success: bool
    storage_state_path: Optional[Path] = None
    reused: bool = False
    attempts: int = 0
    duration_ms: float = 0.0
    error: Optional[WebTestKitError] = None

    @property
    def status(self) -> str:
        if not self.success:
            return "failed"
        return "reused" if self.reused else "created"


class AuthSetup:
    """Composes credentials, provider, retry and store for every role.

    Args:
        auth_config:      Resolved auth configuration.
        browser:          Playwright browser used for logins (only touched when
                          a role actually needs to log in).
        env:              Mapping for credential / TOTP lookups (default: ``os.environ``).
        store:            Storage-state store (default: from ``auth_config``).
        retrier:          Login retrier (default: from ``auth_config.retry``).
        provider_factory: ``(auth_config, role, env) -> AuthProvider``.
        context_options:  Extra kwargs for ``browser.new_context``.
    """

    def __init__(
        self,
        auth_config: AuthConfig,
        browser: Optional[Browser] = None,
        *,
        env: Optional[Mapping[str, str]] = None,
        store: Optional[StorageStateStore] = None,
        retrier: Optional[LoginRetrier] = None,
        provider_factory: ProviderFactory = create_provider,
        context_options: Optional[Dict[str, Any]] = None,
    ):
        self.config = auth_config
        self.browser = browser
        self.env = os.environ if env is None else env
        self.store = store or StorageStateStore(auth_config.storage_state)
        self.retrier = retrier or LoginRetrier(auth_config.retry)
        self._provider_factory = provider_factory
        self._context_options = dict(context_options or {})
        self._role_locks: Dict[str, asyncio.Lock] = {}
        self._swept = False

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def cleanup(self) -> int:
        """Run the 24h sweep (once per instance).  Returns records deleted."""
        if self._swept:
            return 0
        self._swept = True
        return self.store.cleanup_expired(orphan_after_ms=self.config.lock.stale_after_ms)

    async def run_auth_setup(self, role: str, *, force: bool = False) -> AuthSetupResult:
        """Make sure *role* has a fresh storage-state file.

        Raises:
            ConfigurationError: credentials / config problems (before any browser work).
            AuthError:          login failed after retries.
            StorageStateError:  the cross-process setup lock could not be acquired,
                                or the session could not be saved.
        """
        start = time.monotonic()
        self.cleanup()

        credentials = get_credentials(role, self.config, self.env)
        provider = self._provider_factory(self.config, role, self.env)
        provider.validate()

        lock = self._role_locks.setdefault(role, asyncio.Lock())
        async with lock:
            if not force and self.store.is_valid(role):
                return self._reused(role, start)

            async with self._setup_lock(role):
                if not force and self.store.is_valid(role):
                    logger.info(f"[AUTH-SETUP] '{role}' was set up by another process")
                    return self._reused(role, start)

                path, attempts = await self._login_and_save(role, provider, credentials)

        duration = (time.monotonic() - start) * 1000
        logger.info(
            f"[AUTH-SETUP] '{role}' authenticated in {duration / 1000:.1f}s "
            f"({attempts} attempt(s)) → {path}"
        )
        return AuthSetupResult(
            role=role, success=True, storage_state_path=path,
            attempts=attempts, duration_ms=duration,
        )

    async def run_all(
        self,
        roles: Optional[Iterable[str]] = None,
        *,
        force: bool = False,
    ) -> Dict[str, AuthSetupResult]:
        """Set up *roles* (default: all configured) concurrently.

        The sweep completes first.  A failing role does not stop the others;
        its error is recorded in its result.
        """
        roles = list(roles) if roles is not None else self.config.role_names
        deleted = self.cleanup()
        logger.info(
            f"[AUTH-SETUP] Setting up {len(roles)} role(s): {', '.join(roles)} "
            f"(swept {deleted} expired)"
        )

        results = await asyncio.gather(*(self._run_recorded(r, force) for r in roles))
        by_role = {r.role: r for r in results}

        failed = [r.role for r in results if not r.success]
        if failed:
            logger.error(
                f"[AUTH-SETUP] {len(failed)} role(s) failed: {', '.join(failed)} — "
                f"tests using them will be skipped"
            )
        return by_role

    def get_storage_state_path(self, role: str) -> Optional[str]:
        """Path to hand to ``browser.new_context(storage_state=...)``, or None."""
        path = self.store.load(role)
        return str(path) if path else None

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _reused(self, role: str, start: float) -> AuthSetupResult:
        logger.info(f"[AUTH-SETUP] Reusing fresh session for '{role}'")
        return AuthSetupResult(
            role=role, success=True, storage_state_path=self.store.path_for(role),
            reused=True, duration_ms=(time.monotonic() - start) * 1000,
        )

    async def _run_recorded(self, role: str, force: bool) -> AuthSetupResult:
        start = time.monotonic()
        try:
            return await self.run_auth_setup(role, force=force)
        except WebTestKitError as exc:
            logger.error(f"[AUTH-SETUP] Setup failed for '{role}':\n{exc}")
            error = exc
        except Exception as exc:
            logger.exception(f"[AUTH-SETUP] Unexpected error setting up '{role}': {exc}")
            error = SetupError(f'Setup for role "{role}" failed unexpectedly: {exc}', role)
            error.__cause__ = exc
        return AuthSetupResult(
            role=role, success=False, error=error,
            duration_ms=(time.monotonic() - start) * 1000,
        )

    @asynccontextmanager
    async def _setup_lock(self, role: str) -> AsyncIterator[Optional[Path]]:
        lock_cfg = self.config.lock
        if not lock_cfg.enabled:
            yield None
            return
        async with self.store.setup_lock(
            role, timeout_ms=lock_cfg.timeout_ms, stale_after_ms=lock_cfg.stale_after_ms,
        ) as lock_path:
            yield lock_path

    async def _login_and_save(
        self,
        role: str,
        provider: AuthProvider,
        credentials: Credentials,
    ) -> Tuple[Path, int]:
        if self.browser is None:
            raise ConfigurationError(
                f'Role "{role}" needs a login but no browser was supplied',
                field="browser", role=role,
            )

        logger.info(f"[AUTH-SETUP] Logging in '{role}' via {provider.provider_type or 'custom'}")
        context = await self.browser.new_context(**self._context_options)
        try:
            page = await context.new_page()
            state = await self.retrier.run(provider, page, credentials, role)
            path = await self.store.save(context, role)
        finally:
            await context.close()
        return path, state.attempt


# ---------------------------------------------------------------------------
# Module-level conveniences
# ---------------------------------------------------------------------------

async def run_auth_setup(
    role: str,
    auth_config: AuthConfig,
    browser: Browser,
    *,
    env: Optional[Mapping[str, str]] = None,
    force: bool = False,
) -> AuthSetupResult:
    """One-shot setup for a single role."""
    return await AuthSetup(auth_config, browser, env=env).run_auth_setup(role, force=force)


def get_storage_state_path(role: str, auth_config: AuthConfig) -> Optional[str]:
    """Valid storage-state path for *role*, or None (read-only, lock-free)."""
    path = StorageStateStore(auth_config.storage_state).load(role)
    return str(path) if path else None
