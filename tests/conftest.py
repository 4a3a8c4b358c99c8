"""
Shared fixtures: a scriptable stand-in for the Playwright page / context /
browser trio, and auth-config builders.

The fake page resolves every wait immediately: a selector in ``visible``
is found, anything else times out; ``wait_for_url`` checks the current
URL once.  ``on_click`` callbacks model what a click does to the page.
"""

import json
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeout

from webtestkit.run_config import AuthConfig

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"   # base32("12345678901234567890")

APP_URL = "https://app.example.com"
LOGIN_URL = f"{APP_URL}/login"
DASHBOARD_URL = f"{APP_URL}/dashboard"
IDP_URL = "https://sso.example.com/realms/test/protocol/openid-connect/auth"


# ====================================================================
# Fake Playwright objects
# ====================================================================

class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status


class FakeElement:
    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    async def is_visible(self) -> bool:
        return self.selector in self.page.visible

    async def text_content(self) -> str:
        return self.page.texts.get(self.selector, "")


class FakeLocator:
    """What ``page.get_by_label(...)`` returns."""

    def __init__(self, page: "FakePage"):
        self.page = page

    @property
    def first(self) -> "FakeLocator":
        return self

    async def is_visible(self) -> bool:
        return self.page.label_visible

    async def fill(self, value: str, timeout=None) -> None:
        self.page.filled["<label>"] = value


class FakeContext:
    def __init__(self, state: Optional[dict] = None, export_error: Exception = None):
        self.state = state if state is not None else make_storage_state()
        self.export_error = export_error
        self.pages: List["FakePage"] = []
        self.closed = False
        self.cookies_cleared = False

    async def new_page(self) -> "FakePage":
        page = FakePage(context=self)
        self.pages.append(page)
        return page

    async def storage_state(self, path=None) -> dict:
        if self.export_error is not None:
            raise self.export_error
        return self.state

    async def clear_cookies(self) -> None:
        self.cookies_cleared = True

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, state: Optional[dict] = None):
        self.state = state
        self.contexts: List[FakeContext] = []
        self.context_options: List[dict] = []

    async def new_context(self, **options) -> FakeContext:
        self.context_options.append(options)
        context = FakeContext(self.state)
        self.contexts.append(context)
        return context


class FakePage:
    def __init__(self, url: str = "about:blank", context: Optional[FakeContext] = None):
        self.url = url
        self.context = context or FakeContext()
        self.visible = set()
        self.texts: Dict[str, str] = {}
        self.filled: Dict[str, str] = {}
        self.clicks: List[str] = []
        self.gotos: List[str] = []
        self.redirects: Dict[str, str] = {}
        self.goto_status: Dict[str, int] = {}
        self.goto_errors: Dict[str, Exception] = {}
        self.on_click: Dict[str, Callable[["FakePage"], None]] = {}
        self.local_storage: Dict[str, str] = {}
        self.label_visible = False
        self.reloads = 0

    async def goto(self, url, wait_until=None, timeout=None):
        self.gotos.append(url)
        if url in self.goto_errors:
            raise self.goto_errors[url]
        self.url = self.redirects.get(url, url)
        return FakeResponse(self.goto_status.get(url, 200))

    async def reload(self, wait_until=None, timeout=None):
        self.reloads += 1
        return FakeResponse()

    async def wait_for_url(self, url, timeout=None) -> None:
        matched = url(self.url) if callable(url) else url in self.url
        if not matched:
            raise PlaywrightTimeout(f"Timeout {timeout}ms exceeded waiting for URL")

    async def wait_for_selector(self, selector, state="visible", timeout=None):
        if selector in self.visible:
            return FakeElement(self, selector)
        raise PlaywrightTimeout(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def wait_for_load_state(self, state="load", timeout=None) -> None:
        return None

    async def query_selector(self, selector):
        if selector in self.visible or selector in self.texts:
            return FakeElement(self, selector)
        return None

    async def fill(self, selector, value, timeout=None) -> None:
        if selector not in self.visible:
            raise PlaywrightTimeout(f"Timeout {timeout}ms exceeded filling {selector}")
        self.filled[selector] = value

    async def click(self, selector, timeout=None) -> None:
        if selector not in self.visible:
            raise PlaywrightTimeout(f"Timeout {timeout}ms exceeded clicking {selector}")
        self.clicks.append(selector)
        action = self.on_click.get(selector)
        if action is not None:
            action(self)

    async def evaluate(self, script, arg=None):
        if "setItem" in script:
            key, value = arg
            self.local_storage[key] = value
            return None
        if "getItem" in script:
            return self.local_storage.get(arg)
        if "removeItem" in script:
            self.local_storage.pop(arg, None)
            return None
        raise NotImplementedError(script)

    def get_by_label(self, text) -> FakeLocator:
        return FakeLocator(self)


def go_to(url: str, show=(), hide=()) -> Callable[[FakePage], None]:
    """``on_click`` action: navigate and change what is visible."""

    def _action(page: FakePage) -> None:
        page.url = url
        page.visible.difference_update(hide)
        page.visible.update(show)

    return _action


def make_storage_state(domain: str = "app.example.com") -> dict:
    return {
        "cookies": [{
            "name": "session",
            "value": "abc123",
            "domain": domain,
            "path": "/",
            "expires": -1,
            "httpOnly": True,
            "secure": True,
            "sameSite": "Lax",
        }],
        "origins": [{
            "origin": f"https://{domain}",
            "localStorage": [{"name": "theme", "value": "dark"}],
        }],
    }


# ====================================================================
# Config builders
# ====================================================================

def base_auth_dict(storage_dir: Path) -> dict:
    return {
        "provider": "form",
        "roles": {
            "admin": {
                "credentialsEnv": {"username": "ADMIN_USER", "password": "ADMIN_PASS"},
                "description": "Full access",
            },
            "hr": {
                "credentialsEnv": {"username": "HR_USER", "password": "HR_PASS"},
            },
        },
        "storageState": {"directory": str(storage_dir), "maxAgeMinutes": 60},
        "retry": {"maxAttempts": 2, "delayMs": 0},
        "lock": {"timeoutMs": 2000},
        "form": {
            "loginUrl": LOGIN_URL,
            "selectors": {"username": "#user", "password": "#pass", "submit": "#submit"},
            "success": {"url": "/dashboard"},
        },
        "oidc": {
            "loginUrl": LOGIN_URL,
            "idpType": "keycloak",
            "idpLoginUrl": IDP_URL,
            "success": {"url": "/dashboard"},
            "idpSelectors": {
                "username": "#username",
                "password": "#password",
                "submit": "#kc-login",
            },
        },
    }


@pytest.fixture
def storage_dir(tmp_path) -> Path:
    return tmp_path / "auth-states"


@pytest.fixture
def make_auth_config(storage_dir) -> Callable[..., AuthConfig]:
    """``make_auth_config(provider="oidc", oidc={...})`` → AuthConfig."""

    def _make(**sections) -> AuthConfig:
        data = base_auth_dict(storage_dir)
        data.update(sections)
        return AuthConfig.from_dict(data)

    return _make


@pytest.fixture
def auth_config(make_auth_config) -> AuthConfig:
    return make_auth_config()


@pytest.fixture
def env() -> Dict[str, str]:
    return {
        "ADMIN_USER": "admin@example.com",
        "ADMIN_PASS": "s3cret-admin",
        "ADMIN_TOTP": RFC_SECRET,
    }


@pytest.fixture
def config_file(tmp_path, storage_dir) -> Path:
    path = tmp_path / "webtestkit.auth.json"
    path.write_text(json.dumps({"auth": base_auth_dict(storage_dir)}), encoding="utf-8")
    return path
