"""
TOTP Generator
==============
RFC 6238 one-time codes (6 digits, 30s step, HMAC-SHA1) for MFA prompts.

The secret is read from the env var named in config (``mfa.totpSecretEnv``
or the role's ``totpSecretEnv``).  A missing or non-base32 secret is a
``ConfigurationError`` — retrying cannot fix it.
"""

from __future__ import annotations

import asyncio
import binascii
import logging
import os
import time
from typing import Callable, Optional, Mapping

import pyotp

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6


def _clean_secret(secret: str) -> str:
    return "".join(secret.split()).upper()


def totp_code_for_secret(secret: str, for_time: Optional[float] = None) -> str:
    """Compute the code for a raw base32 *secret* at *for_time* (default: now).

    Raises:
        ConfigurationError: *secret* is not valid base32.
    """
    cleaned = _clean_secret(secret)
    if not cleaned:
        raise ConfigurationError("TOTP secret is empty", field="totpSecretEnv")
    totp = pyotp.TOTP(cleaned, digits=TOTP_DIGITS, interval=TOTP_STEP_SECONDS)
    try:
        return totp.at(int(time.time() if for_time is None else for_time))
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError(
            f"TOTP secret is not valid base32: {exc}",
            field="totpSecretEnv",
            remediation="Use the base32 secret shown when enrolling the authenticator",
        ) from None


def generate_totp_code(
    secret_env: str,
    env: Optional[Mapping[str, str]] = None,
    for_time: Optional[float] = None,
) -> str:
    """Generate the current code from the secret stored in ``env[secret_env]``.

    Args:
        secret_env: Name of the env var holding the base32 secret.
        env:        Mapping to read from (defaults to ``os.environ``).
        for_time:   Unix timestamp to generate for (defaults to now).

    Raises:
        ConfigurationError: the variable is unset or the secret is invalid.
    """
    env = os.environ if env is None else env
    secret = env.get(secret_env, "")
    if not secret:
        logger.error(f"[TOTP] Secret variable {secret_env} is not set")
        raise ConfigurationError(
            f'TOTP secret environment variable "{secret_env}" is not set',
            field=secret_env,
            remediation=f"Set the {secret_env} environment variable with your TOTP secret",
        )

    try:
        code = totp_code_for_secret(secret, for_time)
    except ConfigurationError as exc:
        raise ConfigurationError(
            f'{exc.args[0]} (from "{secret_env}")',
            field=secret_env,
            remediation=(
                f"Verify that {secret_env} contains a valid base32-encoded TOTP secret"
            ),
        ) from None

    logger.debug(f"[TOTP] Generated {len(code)}-digit code from {secret_env}")
    return code


def verify_totp_code(
    code: str,
    secret_env: str,
    env: Optional[Mapping[str, str]] = None,
    for_time: Optional[float] = None,
) -> bool:
    """True if *code* matches the current (or *for_time*) window.  Never raises."""
    env = os.environ if env is None else env
    secret = env.get(secret_env, "")
    if not secret:
        return False
    try:
        return totp_code_for_secret(secret, for_time) == code
    except ConfigurationError:
        return False


def seconds_until_next_window(now: Optional[float] = None) -> int:
    """Seconds left in the current 30s window (1..30)."""
    now = int(time.time() if now is None else now)
    return TOTP_STEP_SECONDS - (now % TOTP_STEP_SECONDS)


async def wait_for_fresh_window(
    threshold_seconds: int = 5,
    *,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
) -> bool:
    """Sleep into the next window if the current code is about to expire.

    Returns:
        True if we waited.
    """
    remaining = seconds_until_next_window(clock())
    if remaining >= threshold_seconds:
        return False
    logger.debug(f"[TOTP] {remaining}s left in window — waiting for a fresh code")
    await sleep(remaining + 1)
    return True
