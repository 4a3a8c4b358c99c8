"""
Retry & Failure Classifier
==========================
Wraps one ``provider.login()`` per role per setup run:

    attempt 1 ── fail ──► warn (attempt, phase) ── sleep(delay) ──► attempt 2
                                                                      │
                                        fail ◄─────────────────────────┘
                                          │
                                          ▼
                      AuthError(last phase, last IdP response, remediation)

Classification:
    - ``AuthError``           → retried (unless its phase is listed in
                                ``RetryPolicy.non_retryable_phases``)
    - ``ConfigurationError``  → re-raised at once; a retry cannot fix it
    - anything else           → wrapped as an ``AuthError`` (phase
                                ``credentials``) and retried
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from playwright.async_api import Page

from ..errors import AuthError, ConfigurationError
from ..run_config import RetryPolicy
from .base_auth import AuthProvider
from .credentials import Credentials

logger = logging.getLogger(__name__)


REMEDIATION_BY_PHASE: Dict[str, str] = {
    "navigation": (
        "Check that the login URL is reachable from this machine and that the "
        "application redirects to the identity provider"
    ),
    "credentials": (
        "Check the role's credential environment variables and the IdP "
        "username/password/submit selectors"
    ),
    "mfa": (
        "Check the TOTP secret variable and MFA selectors, or approve the push "
        "prompt within the configured timeout"
    ),
    "callback": (
        "Check the success condition (url / selector) and that the account "
        "can reach the application after login"
    ),
}


@dataclass
class RetryState:
    """Transient bookkeeping for one ``LoginRetrier.run`` call."""
    attempt: int = 0
    max_attempts: int = 2
    last_error: Optional[AuthError] = None


class LoginRetrier:
    """Bounded fixed-delay retry around ``AuthProvider.login``.

    Args:
        policy: Attempts, delay, and phases that are not worth retrying.
        sleep:  Awaitable sleep (injectable for tests).
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def run(
        self,
        provider: AuthProvider,
        page: Page,
        credentials: Credentials,
        role: str,
    ) -> RetryState:
        """Log in with retry.  Returns the final state on success.

        Raises:
            ConfigurationError: immediately, without retrying.
            AuthError:          after the last attempt fails.
        """
        state = RetryState(max_attempts=self.policy.max_attempts)

        while state.attempt < state.max_attempts:
            state.attempt += 1
            try:
                await provider.login(page, credentials)
            except ConfigurationError:
                raise
            except AuthError as exc:
                state.last_error = exc
            except Exception as exc:
                state.last_error = AuthError(
                    f"{type(exc).__name__}: {exc}", role, "credentials",
                )
            else:
                if state.attempt > 1:
                    logger.info(f"[RETRY] '{role}' logged in on attempt {state.attempt}")
                return state

            err = state.last_error
            logger.warning(
                f"[RETRY] Login attempt {state.attempt}/{state.max_attempts} for "
                f"'{role}' failed in phase {err.phase}: {err.message}"
            )
            if err.phase in self.policy.non_retryable_phases:
                logger.warning(f"[RETRY] Phase {err.phase} is not retried")
                break
            if state.attempt < state.max_attempts and self.policy.delay_ms:
                await self._sleep(self.policy.delay_ms / 1000)

        raise self._exhausted(role, state)

    @staticmethod
    def _exhausted(role: str, state: RetryState) -> AuthError:
        last = state.last_error
        logger.error(
            f"[RETRY] Giving up on '{role}' after {state.attempt} attempt(s); "
            f"last phase: {last.phase}"
        )
        return AuthError(
            f"Login failed for role \"{role}\" after {state.attempt} attempt(s): {last.message}",
            role,
            last.phase,
            last.idp_response,
            last.remediation or REMEDIATION_BY_PHASE[last.phase],
        )
