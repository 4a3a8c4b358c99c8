"""
Tests for identity-provider adapters and their registry.
"""

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeout

from webtestkit.auth import idp_adapters
from webtestkit.auth.credentials import Credentials
from webtestkit.auth.idp_adapters import (
    AzureADAdapter,
    GenericAdapter,
    IdpAdapter,
    IdpPageError,
    KeycloakAdapter,
    OktaAdapter,
    detect_idp_type,
    get_adapter,
    list_adapters,
    register_adapter,
)
from webtestkit.run_config import IdpSelectors

from conftest import DASHBOARD_URL, FakePage, go_to

CREDS = Credentials("alice@example.com", "pw-alice")


# ====================================================================
# 1. Registry
# ====================================================================

class TestRegistry:

    def test_builtins_registered(self):
        names = list_adapters()
        for name in ("generic", "auth0", "keycloak", "azure-ad", "okta"):
            assert name in names

    @pytest.mark.parametrize("idp_type, cls", [
        ("keycloak", KeycloakAdapter),
        ("azure-ad", AzureADAdapter),
        ("okta", OktaAdapter),
        ("auth0", GenericAdapter),
        ("generic", GenericAdapter),
        ("something-else", GenericAdapter),
    ])
    def test_lookup(self, idp_type, cls):
        assert type(get_adapter(idp_type)) is cls

    def test_register_new_adapter(self, monkeypatch):
        monkeypatch.setattr(idp_adapters, "_ADAPTER_REGISTRY", dict(idp_adapters._ADAPTER_REGISTRY))

        class PingAdapter(IdpAdapter):
            idp_type = "ping"
            default_selectors = IdpSelectors(username="#pf-user", password="#pf-pass", submit="#pf-go")

        register_adapter(PingAdapter, "pingfederate")
        assert isinstance(get_adapter("ping"), PingAdapter)
        assert isinstance(get_adapter("PingFederate"), PingAdapter)

    def test_config_selectors_merge_over_defaults(self):
        adapter = get_adapter("keycloak", IdpSelectors(username="#custom-user"))
        assert adapter.selectors.username == "#custom-user"
        assert adapter.selectors.password == KeycloakAdapter.default_selectors.password

    @pytest.mark.parametrize("url, expected", [
        ("https://sso.example.com/auth/realms/test/protocol/openid-connect/auth", "keycloak"),
        ("https://login.microsoftonline.com/tenant/oauth2/v2.0/authorize", "azure-ad"),
        ("https://acme.okta.com/oauth2/default/v1/authorize", "okta"),
        ("https://acme.auth0.com/authorize", "auth0"),
        ("https://login.example.com/", "generic"),
    ])
    def test_detect_idp_type(self, url, expected):
        assert detect_idp_type(url) == expected

    def test_matches_url(self):
        assert AzureADAdapter().matches_url("https://LOGIN.microsoftonline.com/x")
        assert not OktaAdapter().matches_url("https://sso.example.com/realms/x")


# ====================================================================
# 2. Credential entry
# ====================================================================

SIMPLE = IdpSelectors(username="#u", password="#p", submit="#s", stay_signed_in_no="#no")


class TestLogin:

    async def test_single_page(self):
        page = FakePage("https://sso.example.com/realms/test")
        page.visible.update({"#u", "#p", "#s"})
        page.on_click["#s"] = go_to(DASHBOARD_URL)

        await KeycloakAdapter(SIMPLE).fill_credentials(page, CREDS, 5000)

        assert page.filled == {"#u": "alice@example.com", "#p": "pw-alice"}
        assert page.clicks == ["#s"]
        assert page.url == DASHBOARD_URL

    async def test_two_step_when_password_hidden(self):
        page = FakePage("https://acme.okta.com/signin")
        page.visible.update({"#u", "#s"})
        clicks = iter([go_to("https://acme.okta.com/signin/password", show={"#p"}), go_to(DASHBOARD_URL)])
        page.on_click["#s"] = lambda p: next(clicks)(p)

        await OktaAdapter(SIMPLE).fill_credentials(page, CREDS, 5000)

        assert page.clicks == ["#s", "#s"]
        assert page.filled["#p"] == "pw-alice"
        assert page.url == DASHBOARD_URL

    async def test_azure_always_two_step(self):
        page = FakePage("https://login.microsoftonline.com/tenant")
        page.visible.update({"#u", "#p", "#s"})
        await AzureADAdapter(SIMPLE).fill_credentials(page, CREDS, 5000)
        assert page.clicks == ["#s", "#s"]

    async def test_missing_username_field_times_out(self):
        page = FakePage("https://sso.example.com/realms/test")
        with pytest.raises(PlaywrightTimeout):
            await KeycloakAdapter(SIMPLE).fill_credentials(page, CREDS, 5000)

    async def test_generic_label_fallback(self):
        page = FakePage("https://login.example.com")
        page.label_visible = True
        page.visible.update({"#p", "#s"})
        await GenericAdapter(SIMPLE).fill_credentials(page, CREDS, 5000)
        assert page.filled["<label>"] == "alice@example.com"
        assert page.filled["#p"] == "pw-alice"

    async def test_keycloak_required_action(self):
        page = FakePage("https://sso.example.com/realms/test")
        page.visible.update({"#u", "#p", "#s"})
        page.on_click["#s"] = go_to(
            "https://sso.example.com/realms/test/login-actions/required-action",
            show={"#kc-update-password"},
        )
        page.texts["#kc-update-password"] = "You need to change your password"

        with pytest.raises(IdpPageError) as exc_info:
            await KeycloakAdapter(SIMPLE).fill_credentials(page, CREDS, 5000)
        assert exc_info.value.idp_response == "You need to change your password"


# ====================================================================
# 3. MFA + post-login
# ====================================================================

class TestPostLogin:

    async def test_submit_totp(self):
        page = FakePage()
        page.visible.update({"#otp", "#verify"})
        adapter = KeycloakAdapter(IdpSelectors(totp_input="#otp", totp_submit="#verify"))
        await adapter.submit_totp(page, "123456", 5000)
        assert page.filled == {"#otp": "123456"}
        assert page.clicks == ["#verify"]

    def test_totp_selectors_prefer_mfa_config(self):
        adapter = KeycloakAdapter()
        assert adapter.totp_selectors("#mfa-in", "#mfa-go") == ("#mfa-in", "#mfa-go")
        assert adapter.totp_selectors()[0] == KeycloakAdapter.default_selectors.totp_input

    async def test_dismiss_stay_signed_in(self):
        page = FakePage()
        page.visible.add("#no")
        page.on_click["#no"] = go_to(DASHBOARD_URL)
        await AzureADAdapter(SIMPLE).dismiss_post_login_prompts(page)
        assert page.clicks == ["#no"]
        assert page.url == DASHBOARD_URL

    async def test_no_prompt_no_click(self):
        page = FakePage()
        await AzureADAdapter(SIMPLE).dismiss_post_login_prompts(page)
        assert page.clicks == []

    async def test_detect_error_prefers_idp_selectors(self):
        page = FakePage()
        page.visible.update({"#input-error", ".error"})
        page.texts["#input-error"] = "  Invalid username or password.  "
        page.texts[".error"] = "generic"
        assert await KeycloakAdapter().detect_error(page) == "Invalid username or password."
