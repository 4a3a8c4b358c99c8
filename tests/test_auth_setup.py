"""
Tests for the auth setup orchestrator.

Scenarios:
  1. First run logs in and saves; a second run reuses the file with no login
  2. Missing credentials fail before any browser work
  3. Stale / forced / failing logins
  4. run_all: sweep first, failures recorded per role, roles independent
"""

import asyncio
import os
import time

import pytest

from webtestkit.auth.auth_setup import AuthSetup, get_storage_state_path, run_auth_setup
from webtestkit.auth.base_auth import AuthProvider
from webtestkit.auth.session_store import StorageStateStore
from webtestkit.errors import AuthError, ConfigurationError, SetupError

from conftest import FakeBrowser, make_storage_state


class RecordingProvider(AuthProvider):
    provider_type = "recording"

    def __init__(self, fail_with=None):
        super().__init__()
        self.logins = []
        self.fail_with = fail_with

    async def login(self, page, credentials):
        await asyncio.sleep(0)
        self.logins.append(credentials.username)
        if self.fail_with is not None:
            raise self.fail_with

    async def is_session_valid(self, page):
        return True

    async def logout(self, page):
        pass


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def built_for():
    return []


@pytest.fixture
def make_setup(auth_config, env, provider, built_for):
    def factory(cfg, role, env_):
        built_for.append(role)
        provider.set_role(role)
        return provider

    def _make(browser=None, config=None, **kwargs):
        return AuthSetup(
            config or auth_config, browser, env=kwargs.pop("env", env),
            provider_factory=factory, **kwargs,
        )

    return _make


def _age(path, seconds):
    then = time.time() - seconds
    os.utime(path, (then, then))


# ====================================================================
# 1. Create, then reuse
# ====================================================================

class TestReuse:

    async def test_first_run_logs_in_and_saves(self, make_setup, provider, storage_dir):
        browser = FakeBrowser()
        result = await make_setup(browser).run_auth_setup("admin")

        assert result.success
        assert result.status == "created"
        assert result.attempts == 1
        assert result.storage_state_path == storage_dir / "admin.json"
        assert result.storage_state_path.exists()
        assert provider.logins == ["admin@example.com"]
        assert len(browser.contexts) == 1
        assert browser.contexts[0].closed

    async def test_second_run_reuses_without_login(self, make_setup, provider):
        await make_setup(FakeBrowser()).run_auth_setup("admin")

        browser = FakeBrowser()
        result = await make_setup(browser).run_auth_setup("admin")

        assert result.success
        assert result.reused
        assert result.status == "reused"
        assert provider.logins == ["admin@example.com"]
        assert browser.contexts == []

    async def test_reuse_needs_no_browser(self, make_setup):
        await make_setup(FakeBrowser()).run_auth_setup("admin")
        result = await make_setup(browser=None).run_auth_setup("admin")
        assert result.reused

    async def test_storage_state_path_lookup(self, make_setup, auth_config, storage_dir):
        setup = make_setup(FakeBrowser())
        assert setup.get_storage_state_path("admin") is None
        assert get_storage_state_path("admin", auth_config) is None

        await setup.run_auth_setup("admin")
        expected = str(storage_dir / "admin.json")
        assert setup.get_storage_state_path("admin") == expected
        assert get_storage_state_path("admin", auth_config) == expected

    async def test_concurrent_same_role_logs_in_once(self, make_setup, provider):
        setup = make_setup(FakeBrowser())
        first, second = await asyncio.gather(
            setup.run_auth_setup("admin"), setup.run_auth_setup("admin"),
        )
        assert provider.logins == ["admin@example.com"]
        assert {first.status, second.status} == {"created", "reused"}


# ====================================================================
# 2. Fail fast on configuration
# ====================================================================

class TestFailFast:

    async def test_missing_credentials_before_browser(self, make_setup, built_for):
        browser = FakeBrowser()
        with pytest.raises(ConfigurationError) as exc_info:
            await make_setup(browser).run_auth_setup("hr")
        assert exc_info.value.field == "HR_USER"
        assert browser.contexts == []
        assert built_for == []

    async def test_unknown_role(self, make_setup):
        with pytest.raises(ConfigurationError):
            await make_setup(FakeBrowser()).run_auth_setup("finance")

    async def test_login_needed_without_browser(self, make_setup):
        with pytest.raises(ConfigurationError) as exc_info:
            await make_setup(browser=None).run_auth_setup("admin")
        assert exc_info.value.field == "browser"


# ====================================================================
# 3. Stale, forced, failing
# ====================================================================

class TestRelogin:

    async def test_stale_state_triggers_login(self, make_setup, provider, auth_config):
        store = StorageStateStore(auth_config.storage_state)
        path = store.write_state(make_storage_state(), "admin")
        _age(path, 2 * 3600)

        result = await make_setup(FakeBrowser()).run_auth_setup("admin")
        assert result.status == "created"
        assert provider.logins == ["admin@example.com"]

    async def test_force(self, make_setup, provider):
        await make_setup(FakeBrowser()).run_auth_setup("admin")
        result = await make_setup(FakeBrowser()).run_auth_setup("admin", force=True)
        assert result.status == "created"
        assert len(provider.logins) == 2

    async def test_failed_login_saves_nothing(self, make_setup, provider, storage_dir):
        provider.fail_with = AuthError("Authentication callback failed", "admin", "callback")
        browser = FakeBrowser()

        with pytest.raises(AuthError) as exc_info:
            await make_setup(browser).run_auth_setup("admin")

        assert exc_info.value.phase == "callback"
        assert len(provider.logins) == 2
        assert not (storage_dir / "admin.json").exists()
        assert browser.contexts[0].closed

    async def test_lock_disabled(self, make_auth_config, env, provider):
        cfg = make_auth_config(lock={"enabled": False})
        setup = AuthSetup(cfg, FakeBrowser(), env=env, provider_factory=lambda c, r, e: provider)
        result = await setup.run_auth_setup("admin")
        assert result.success
        assert not list(setup.store.directory.glob(".*.lock"))

    async def test_context_options_forwarded(self, make_setup):
        browser = FakeBrowser()
        await make_setup(browser, context_options={"ignore_https_errors": True}).run_auth_setup("admin")
        assert browser.context_options == [{"ignore_https_errors": True}]


# ====================================================================
# 4. run_all
# ====================================================================

class TestRunAll:

    async def test_records_failures_per_role(self, make_setup, provider):
        results = await make_setup(FakeBrowser()).run_all()

        assert set(results) == {"admin", "hr"}
        assert results["admin"].status == "created"
        assert not results["hr"].success
        assert results["hr"].status == "failed"
        assert isinstance(results["hr"].error, ConfigurationError)
        assert provider.logins == ["admin@example.com"]

    async def test_sweep_runs_before_logins(self, make_setup, auth_config, storage_dir):
        store = StorageStateStore(auth_config.storage_state)
        ancient = store.write_state(make_storage_state(), "legacy")
        _age(ancient, 25 * 3600)

        setup = make_setup(FakeBrowser())
        await setup.run_all(["admin"])

        assert not ancient.exists()
        assert (storage_dir / "admin.json").exists()
        assert setup.cleanup() == 0

    async def test_all_roles_with_credentials(self, make_setup, env, provider):
        env = dict(env, HR_USER="hr@example.com", HR_PASS="pw")
        results = await make_setup(FakeBrowser(), env=env).run_all()
        assert all(r.success for r in results.values())
        assert sorted(provider.logins) == ["admin@example.com", "hr@example.com"]

    async def test_browser_failure_recorded_per_role(self, make_setup, env, auth_config):
        class BrokenBrowser(FakeBrowser):
            async def new_context(self, **options):
                raise RuntimeError("Target page, context or browser has been closed")

        StorageStateStore(auth_config.storage_state).write_state(make_storage_state(), "hr")
        env = dict(env, HR_USER="hr@example.com", HR_PASS="pw")

        results = await make_setup(BrokenBrowser(), env=env).run_all()

        assert results["hr"].status == "reused"
        assert results["admin"].status == "failed"
        error = results["admin"].error
        assert isinstance(error, SetupError)
        assert error.role == "admin"
        assert isinstance(error.__cause__, RuntimeError)

    async def test_module_level_run_auth_setup(self, auth_config, env):
        # FakeBrowser pages have no login form
        with pytest.raises(AuthError) as exc_info:
            await run_auth_setup("admin", auth_config, FakeBrowser(), env=env)
        assert exc_info.value.phase == "credentials"
