"""
Tests for the OIDC flow engine and the OIDC provider.

The fake page plays a Keycloak-style login: ``loginUrl`` redirects to the
IdP, submitting credentials lands on the dashboard (or on a TOTP prompt).
Each failure is checked for the phase it is tagged with.
"""

import pytest
from playwright.async_api import Error as PlaywrightError

from webtestkit.auth.auth_setup import AuthSetup
from webtestkit.auth.credentials import Credentials
from webtestkit.auth.oidc_auth import OIDCAuthProvider
from webtestkit.auth.oidc_flow import OIDCFlow
from webtestkit.errors import AuthError, ConfigurationError

from conftest import (
    APP_URL,
    DASHBOARD_URL,
    IDP_URL,
    LOGIN_URL,
    FakeBrowser,
    FakePage,
    base_auth_dict,
    go_to,
)

CREDS = Credentials("admin@example.com", "s3cret-admin")
MFA_URL = "https://sso.example.com/realms/test/login-actions/authenticate"


def _idp_page() -> FakePage:
    page = FakePage()
    page.redirects[LOGIN_URL] = IDP_URL
    page.visible.update({"#username", "#password", "#kc-login"})
    page.on_click["#kc-login"] = go_to(DASHBOARD_URL)
    return page


@pytest.fixture
def oidc_config(make_auth_config, storage_dir):
    def _make(**oidc_overrides):
        oidc = base_auth_dict(storage_dir)["oidc"]
        oidc.update(oidc_overrides)
        return make_auth_config(provider="oidc", oidc=oidc).oidc_for_role("admin")

    return _make


@pytest.fixture
def recorded_sleeps():
    return []


@pytest.fixture
def make_flow(oidc_config, env, recorded_sleeps):
    async def fake_sleep(seconds):
        recorded_sleeps.append(seconds)

    def _make(clock=lambda: 1111111111, **oidc_overrides):
        return OIDCFlow(
            oidc_config(**oidc_overrides), role="admin", env=env,
            clock=clock, sleep=fake_sleep,
        )

    return _make


# ====================================================================
# 1. Happy paths
# ====================================================================

class TestHappyPath:

    async def test_keycloak_login(self, make_flow):
        page = _idp_page()
        result = await make_flow().run(page, CREDS)

        assert result.success
        assert result.phase == "callback"
        assert result.final_url == DASHBOARD_URL
        assert result.error is None
        assert page.gotos == [LOGIN_URL]
        assert page.filled == {"#username": "admin@example.com", "#password": "s3cret-admin"}

    async def test_totp_mfa(self, make_flow, recorded_sleeps):
        page = _idp_page()
        page.on_click["#kc-login"] = go_to(MFA_URL, show={"#otp", "#otp-go"})
        page.on_click["#otp-go"] = go_to(DASHBOARD_URL)
        flow = make_flow(
            clock=lambda: 1111111109,
            mfa={
                "enabled": True, "type": "totp", "totpSecretEnv": "ADMIN_TOTP",
                "totpInputSelector": "#otp", "totpSubmitSelector": "#otp-go",
            },
        )

        await flow.execute(page, CREDS)

        assert recorded_sleeps == [2]
        assert page.filled["#otp"] == "081804"
        assert page.url == DASHBOARD_URL

    async def test_push_mfa_already_approved(self, make_flow):
        page = _idp_page()
        flow = make_flow(mfa={"enabled": True, "type": "push"})
        await flow.execute(page, CREDS)
        assert page.url == DASHBOARD_URL

    async def test_spa_without_redirect(self, make_flow):
        page = _idp_page()
        page.redirects.clear()
        page.on_click["#kc-login"] = go_to(DASHBOARD_URL)
        flow = make_flow(idpLoginUrl=None)
        await flow.execute(page, CREDS)
        assert page.url == DASHBOARD_URL

    async def test_selector_success_condition(self, make_flow):
        page = _idp_page()
        page.on_click["#kc-login"] = go_to(f"{APP_URL}/home", show={"#user-menu"})
        flow = make_flow(success={"url": "/dashboard", "selector": "#user-menu"})
        result = await flow.run(page, CREDS)
        assert result.success


# ====================================================================
# 2. Phase-tagged failures
# ====================================================================

class TestFailures:

    async def test_navigation_error(self, make_flow):
        page = _idp_page()
        page.goto_errors[LOGIN_URL] = PlaywrightError("net::ERR_NAME_NOT_RESOLVED")
        result = await make_flow().run(page, CREDS)
        assert not result.success
        assert result.phase == "navigation"
        assert LOGIN_URL in result.error.remediation

    async def test_no_redirect_to_idp(self, make_flow):
        page = _idp_page()
        page.redirects.clear()
        with pytest.raises(AuthError) as exc_info:
            await make_flow().execute(page, CREDS)
        assert exc_info.value.phase == "navigation"
        assert "sso.example.com" in exc_info.value.message

    async def test_missing_username_field(self, make_flow):
        page = _idp_page()
        page.visible.discard("#username")
        with pytest.raises(AuthError) as exc_info:
            await make_flow().execute(page, CREDS)
        assert exc_info.value.phase == "credentials"
        assert "selectors" in exc_info.value.remediation

    async def test_required_action_page(self, make_flow):
        page = _idp_page()
        page.on_click["#kc-login"] = go_to(MFA_URL, show={".required-action"})
        page.texts[".required-action"] = "Update your password"
        with pytest.raises(AuthError) as exc_info:
            await make_flow().execute(page, CREDS)
        assert exc_info.value.phase == "credentials"
        assert exc_info.value.idp_response == "Update your password"

    async def test_wrong_password_reports_idp_message(self, make_flow):
        page = _idp_page()
        page.on_click["#kc-login"] = go_to(IDP_URL, show={"#input-error"})
        page.texts["#input-error"] = "Invalid username or password."
        with pytest.raises(AuthError) as exc_info:
            await make_flow().execute(page, CREDS)
        err = exc_info.value
        assert err.phase == "callback"
        assert err.message == "Authentication callback failed"
        assert err.idp_response == "Invalid username or password."
        assert err.role == "admin"

    async def test_totp_prompt_missing(self, make_flow):
        page = _idp_page()
        flow = make_flow(mfa={"enabled": True, "type": "totp", "totpSecretEnv": "ADMIN_TOTP"})
        with pytest.raises(AuthError) as exc_info:
            await flow.execute(page, CREDS)
        assert exc_info.value.phase == "mfa"

    async def test_totp_secret_not_configured_fails_before_browser(self, make_auth_config, storage_dir, env):
        oidc = base_auth_dict(storage_dir)["oidc"]
        oidc["mfa"] = {"enabled": True, "type": "totp", "totpInputSelector": "#otp"}
        browser = FakeBrowser()
        setup = AuthSetup(make_auth_config(provider="oidc", oidc=oidc), browser, env=env)

        with pytest.raises(ConfigurationError) as exc_info:
            await setup.run_auth_setup("admin")

        assert exc_info.value.field == "auth.oidc.mfa.totpSecretEnv"
        assert browser.contexts == []

    async def test_push_not_approved(self, make_flow):
        page = _idp_page()
        page.on_click["#kc-login"] = go_to("https://sso.example.com/mfa/push")
        flow = make_flow(mfa={"enabled": True, "type": "push", "pushTimeoutMs": 500})
        with pytest.raises(AuthError) as exc_info:
            await flow.execute(page, CREDS)
        assert exc_info.value.phase == "mfa"
        assert "push" in exc_info.value.remediation.lower()

    async def test_sms_unsupported(self, make_flow):
        page = _idp_page()
        flow = make_flow(mfa={"enabled": True, "type": "sms"})
        with pytest.raises(AuthError, match="not supported for automated testing") as exc_info:
            await flow.execute(page, CREDS)
        assert exc_info.value.phase == "mfa"


# ====================================================================
# 3. OIDCAuthProvider
# ====================================================================

class TestOIDCProvider:

    def _provider(self, oidc_config, env, **overrides):
        provider = OIDCAuthProvider(oidc_config(**overrides), env=env)
        provider.set_role("admin")
        return provider

    async def test_login(self, oidc_config, env):
        provider = self._provider(oidc_config, env)
        page = _idp_page()
        await provider.login(page, CREDS)
        assert await provider.is_session_valid(page)

    def test_validate_needs_totp_secret_value(self, oidc_config):
        provider = self._provider(
            oidc_config, {}, mfa={"enabled": True, "type": "totp", "totpSecretEnv": "ADMIN_TOTP"},
        )
        with pytest.raises(ConfigurationError) as exc_info:
            provider.validate()
        assert exc_info.value.field == "ADMIN_TOTP"

    def test_validate_passes_without_mfa(self, oidc_config):
        self._provider(oidc_config, {}).validate()

    async def test_session_invalid_on_login_page(self, oidc_config, env):
        provider = self._provider(oidc_config, env)
        assert not await provider.is_session_valid(FakePage(LOGIN_URL))

    async def test_refresh_reloads(self, oidc_config, env):
        provider = self._provider(oidc_config, env)
        page = FakePage(DASHBOARD_URL)
        assert await provider.refresh_session(page)
        assert page.reloads == 1

    async def test_logout_falls_back_to_clearing_cookies(self, oidc_config, env):
        provider = self._provider(oidc_config, env)
        page = FakePage(DASHBOARD_URL)
        for path in ("/logout", "/api/logout", "/auth/logout"):
            page.goto_status[f"{APP_URL}{path}"] = 404
        await provider.logout(page)
        assert page.gotos == [f"{APP_URL}/logout", f"{APP_URL}/api/logout", f"{APP_URL}/auth/logout"]
        assert page.context.cookies_cleared

    async def test_logout_configured_url(self, oidc_config, env):
        provider = self._provider(oidc_config, env, logout={"url": f"{APP_URL}/bye"})
        page = FakePage(DASHBOARD_URL)
        await provider.logout(page)
        assert page.gotos == [f"{APP_URL}/bye"]
        assert not page.context.cookies_cleared
