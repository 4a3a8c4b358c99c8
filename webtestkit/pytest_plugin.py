"""
pytest integration
==================
Hands stored sessions to tests and skips the ones whose role never got a
valid session, so a failed setup shows up as skips instead of a cascade
of login failures.

Registered through the ``pytest11`` entry point.  The config file is taken
from ``--webtestkit-config``, the ``webtestkit_config`` ini option, or
``$WEBTESTKIT_CONFIG`` (first one set wins).

Usage::

    async def test_admin_dashboard(browser, storage_state_for):
        context = await browser.new_context(storage_state=storage_state_for("admin"))
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Optional

import pytest

from .auth.session_store import StorageStateStore
from .errors import ConfigurationError
from .run_config import AuthConfig, load_auth_config

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "WEBTESTKIT_CONFIG"


def pytest_addoption(parser):
    group = parser.getgroup("webtestkit", "auth session storage")
    group.addoption(
        "--webtestkit-config",
        action="store",
        default=None,
        help=f"Resolved auth config (JSON). Default: ini webtestkit_config or ${CONFIG_ENV_VAR}",
    )
    parser.addini("webtestkit_config", "Resolved auth config (JSON) for webtestkit")


def _config_path(config) -> Optional[str]:
    return (
        config.getoption("webtestkit_config")
        or config.getini("webtestkit_config")
        or os.environ.get(CONFIG_ENV_VAR)
    )


@pytest.fixture(scope="session")
def webtestkit_auth_config(pytestconfig) -> AuthConfig:
    """The resolved auth config; skips the test when none is configured."""
    path = _config_path(pytestconfig)
    if not path:
        pytest.skip(f"No webtestkit auth config (set --webtestkit-config or ${CONFIG_ENV_VAR})")
    try:
        return load_auth_config(path)
    except ConfigurationError as exc:
        pytest.skip(f"webtestkit auth config unusable: {exc}")


@pytest.fixture(scope="session")
def storage_state_store(webtestkit_auth_config) -> StorageStateStore:
    return StorageStateStore(webtestkit_auth_config.storage_state)


@pytest.fixture
def storage_state_for(storage_state_store) -> Callable[[str], str]:
    """``storage_state_for(role)`` → path of a valid session, or skip the test."""

    def _lookup(role: str) -> str:
        path = storage_state_store.load(role)
        if path is None:
            logger.info(f"[PYTEST] No valid session for '{role}' — skipping")
            pytest.skip(f'No valid storage state for role "{role}" (auth setup failed or not run)')
        return str(path)

    return _lookup
