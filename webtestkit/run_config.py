"""
Auth Run Configuration
======================
Single source of truth for ALL auth defaults and the typed configuration
tree consumed by every auth component.

The external config loader hands us a fully resolved mapping (YAML already
parsed, env templates already expanded).  ``AuthConfig.from_dict`` turns it
into dataclasses and rejects bad shapes with a ``ConfigurationError`` that
names the offending field.  Keys may be camelCase (as written in YAML) or
snake_case.

Nothing here reads environment variables: env var *names* live in the
config, their *values* are looked up later by the component that needs
them, from an explicitly passed mapping.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import AUTH_PHASES, ConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults: the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "storage_directory": ".auth-states",
    "max_age_minutes": 60,
    "file_pattern": "{role}.json",
    "login_flow_ms": 30_000,        # navigation + credential entry
    "idp_redirect_ms": 10_000,      # app → IdP redirect
    "callback_ms": 10_000,          # IdP → app callback + success condition
    "push_timeout_ms": 30_000,      # waiting for a human to approve push MFA
    "form_navigation_ms": 30_000,
    "form_success_ms": 5_000,
    "token_timeout_ms": 10_000,
    "retry_max_attempts": 2,        # one attempt + one retry
    "retry_delay_ms": 1_000,
    "lock_timeout_ms": 120_000,
    "lock_stale_after_ms": 300_000,
}

PROVIDER_TYPES = ("oidc", "form", "token", "custom")
IDP_TYPES = ("keycloak", "azure-ad", "okta", "auth0", "generic")
MFA_TYPES = ("totp", "push", "sms", "none")


# ---------------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------------

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _pick(data: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Read *key* in snake_case or camelCase form."""
    if key in data:
        return data[key]
    camel = _camel(key)
    if camel in data:
        return data[camel]
    return default


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"{where} must be a mapping, got {type(value).__name__}",
            field=where,
        )
    return value


def _str(value: Any, where: str, *, required: bool = False) -> Optional[str]:
    if value is None or value == "":
        if required:
            raise ConfigurationError(f"{where} is required", field=where)
        return None
    if not isinstance(value, str):
        raise ConfigurationError(
            f"{where} must be a string, got {type(value).__name__}",
            field=where,
        )
    return value


def _int(value: Any, where: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(
            f"{where} must be a number, got {type(value).__name__}",
            field=where,
        )
    if value < 0:
        raise ConfigurationError(f"{where} must not be negative", field=where)
    return int(value)


def _choice(value: Any, where: str, choices: Tuple[str, ...], default: str) -> str:
    if value is None:
        return default
    if value not in choices:
        raise ConfigurationError(
            f"{where} must be one of {', '.join(choices)}; got {value!r}",
            field=where,
        )
    return value


# ---------------------------------------------------------------------------
# Shared building blocks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SuccessCondition:
    """How to recognise a logged-in page: URL match and/or visible selector."""
    url: Optional[str] = None
    selector: Optional[str] = None
    timeout_ms: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "SuccessCondition":
        data = _mapping(data, where)
        timeout = _pick(data, "timeout_ms", _pick(data, "timeout"))
        return cls(
            url=_str(_pick(data, "url"), f"{where}.url"),
            selector=_str(_pick(data, "selector"), f"{where}.selector"),
            timeout_ms=None if timeout is None else _int(timeout, f"{where}.timeout", 0),
        )

    @property
    def is_empty(self) -> bool:
        return not (self.url or self.selector)


@dataclass(frozen=True)
class IdpSelectors:
    """CSS selectors for an IdP login page.  ``None`` = use adapter default."""
    username: Optional[str] = None
    password: Optional[str] = None
    submit: Optional[str] = None
    stay_signed_in_no: Optional[str] = None
    totp_input: Optional[str] = None
    totp_submit: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "IdpSelectors":
        data = _mapping(data, where)
        return cls(**{
            f.name: _str(_pick(data, f.name), f"{where}.{_camel(f.name)}")
            for f in fields(cls)
        })

    def merged_over(self, base: "IdpSelectors") -> "IdpSelectors":
        """Return *base* with every non-empty field of ``self`` applied on top."""
        overrides = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name)
        }
        return replace(base, **overrides)


@dataclass(frozen=True)
class MfaConfig:
    enabled: bool = False
    type: str = "none"
    totp_secret_env: Optional[str] = None
    push_timeout_ms: int = _DEFAULTS["push_timeout_ms"]
    totp_input_selector: Optional[str] = None
    totp_submit_selector: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "MfaConfig":
        data = _mapping(data, where)
        cfg = cls(
            enabled=bool(_pick(data, "enabled", False)),
            type=_choice(_pick(data, "type"), f"{where}.type", MFA_TYPES, "none"),
            totp_secret_env=_str(_pick(data, "totp_secret_env"), f"{where}.totpSecretEnv"),
            push_timeout_ms=_int(
                _pick(data, "push_timeout_ms"), f"{where}.pushTimeoutMs",
                _DEFAULTS["push_timeout_ms"],
            ),
            totp_input_selector=_str(
                _pick(data, "totp_input_selector"), f"{where}.totpInputSelector"
            ),
            totp_submit_selector=_str(
                _pick(data, "totp_submit_selector"), f"{where}.totpSubmitSelector"
            ),
        )
        return cfg


@dataclass(frozen=True)
class OIDCTimeouts:
    login_flow_ms: int = _DEFAULTS["login_flow_ms"]
    idp_redirect_ms: int = _DEFAULTS["idp_redirect_ms"]
    callback_ms: int = _DEFAULTS["callback_ms"]

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "OIDCTimeouts":
        data = _mapping(data, where)
        return cls(**{
            f.name: _int(_pick(data, f.name), f"{where}.{_camel(f.name)}", f.default)
            for f in fields(cls)
        })


@dataclass(frozen=True)
class LogoutConfig:
    url: Optional[str] = None
    idp_logout: bool = False


# ---------------------------------------------------------------------------
# Provider sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OIDCConfig:
    login_url: str
    idp_type: str = "generic"
    success: SuccessCondition = field(default_factory=SuccessCondition)
    idp_login_url: Optional[str] = None
    idp_selectors: Optional[IdpSelectors] = None
    mfa: Optional[MfaConfig] = None
    timeouts: OIDCTimeouts = field(default_factory=OIDCTimeouts)
    logout: Optional[LogoutConfig] = None

    @classmethod
    def from_dict(cls, data: Any, where: str = "auth.oidc") -> "OIDCConfig":
        data = _mapping(data, where)
        logout = _pick(data, "logout")
        if logout is not None:
            logout_map = _mapping(logout, f"{where}.logout")
            logout = LogoutConfig(
                url=_str(_pick(logout_map, "url"), f"{where}.logout.url"),
                idp_logout=bool(_pick(logout_map, "idp_logout", False)),
            )
        selectors = _pick(data, "idp_selectors")
        mfa = _pick(data, "mfa")
        return cls(
            login_url=_str(_pick(data, "login_url"), f"{where}.loginUrl", required=True),
            idp_type=_choice(
                _pick(data, "idp_type"), f"{where}.idpType", IDP_TYPES, "generic"
            ),
            success=SuccessCondition.from_dict(_pick(data, "success"), f"{where}.success"),
            idp_login_url=_str(_pick(data, "idp_login_url"), f"{where}.idpLoginUrl"),
            idp_selectors=(
                None if selectors is None
                else IdpSelectors.from_dict(selectors, f"{where}.idpSelectors")
            ),
            mfa=None if mfa is None else MfaConfig.from_dict(mfa, f"{where}.mfa"),
            timeouts=OIDCTimeouts.from_dict(_pick(data, "timeouts"), f"{where}.timeouts"),
            logout=logout,
        )


@dataclass(frozen=True)
class FormSelectors:
    username: str
    password: str
    submit: str


@dataclass(frozen=True)
class FormConfig:
    login_url: str
    selectors: FormSelectors
    success: SuccessCondition = field(default_factory=SuccessCondition)
    navigation_timeout_ms: int = _DEFAULTS["form_navigation_ms"]
    success_timeout_ms: int = _DEFAULTS["form_success_ms"]

    @classmethod
    def from_dict(cls, data: Any, where: str = "auth.form") -> "FormConfig":
        data = _mapping(data, where)
        sel = _mapping(_pick(data, "selectors"), f"{where}.selectors")
        timeouts = _mapping(_pick(data, "timeouts"), f"{where}.timeouts")
        return cls(
            login_url=_str(_pick(data, "login_url"), f"{where}.loginUrl", required=True),
            selectors=FormSelectors(
                username=_str(_pick(sel, "username"), f"{where}.selectors.username", required=True),
                password=_str(_pick(sel, "password"), f"{where}.selectors.password", required=True),
                submit=_str(_pick(sel, "submit"), f"{where}.selectors.submit", required=True),
            ),
            success=SuccessCondition.from_dict(_pick(data, "success"), f"{where}.success"),
            navigation_timeout_ms=_int(
                _pick(timeouts, "navigation_ms"), f"{where}.timeouts.navigationMs",
                _DEFAULTS["form_navigation_ms"],
            ),
            success_timeout_ms=_int(
                _pick(timeouts, "success_ms"), f"{where}.timeouts.successMs",
                _DEFAULTS["form_success_ms"],
            ),
        )


@dataclass(frozen=True)
class TokenConfig:
    token_endpoint: str
    app_url: Optional[str] = None
    header_name: str = "Authorization"
    header_prefix: str = "Bearer "
    token_field: str = "access_token"
    timeout_ms: int = _DEFAULTS["token_timeout_ms"]
    username_field: str = "username"
    password_field: str = "password"
    additional_fields: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any, where: str = "auth.token") -> "TokenConfig":
        data = _mapping(data, where)
        body = _mapping(_pick(data, "request_body"), f"{where}.requestBody")
        extra = _mapping(_pick(body, "additional_fields"), f"{where}.requestBody.additionalFields")
        return cls(
            token_endpoint=_str(
                _pick(data, "token_endpoint"), f"{where}.tokenEndpoint", required=True
            ),
            app_url=_str(_pick(data, "app_url"), f"{where}.appUrl"),
            header_name=_str(_pick(data, "header_name"), f"{where}.headerName") or "Authorization",
            header_prefix=_pick(data, "header_prefix", "Bearer "),
            token_field=_str(_pick(data, "token_field"), f"{where}.tokenField") or "access_token",
            timeout_ms=_int(
                _pick(data, "timeout_ms"), f"{where}.timeoutMs", _DEFAULTS["token_timeout_ms"]
            ),
            username_field=_str(
                _pick(body, "username_field"), f"{where}.requestBody.usernameField"
            ) or "username",
            password_field=_str(
                _pick(body, "password_field"), f"{where}.requestBody.passwordField"
            ) or "password",
            additional_fields=dict(extra),
        )


@dataclass(frozen=True)
class CustomConfig:
    factory: str = ""
    """Dotted path ``package.module:ClassName`` of a ``CustomAuthProvider``."""
    options: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Roles, storage, retry, locking
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CredentialsEnv:
    username: str
    password: str


@dataclass(frozen=True)
class OIDCRoleOverrides:
    idp_selectors: Optional[IdpSelectors] = None
    success: Optional[SuccessCondition] = None


@dataclass(frozen=True)
class RoleConfig:
    credentials_env: CredentialsEnv
    totp_secret_env: Optional[str] = None
    oidc_overrides: Optional[OIDCRoleOverrides] = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "RoleConfig":
        data = _mapping(data, where)
        env = _mapping(_pick(data, "credentials_env"), f"{where}.credentialsEnv")
        overrides = _pick(data, "oidc_overrides")
        if overrides is not None:
            ov = _mapping(overrides, f"{where}.oidcOverrides")
            sel = _pick(ov, "idp_selectors")
            succ = _pick(ov, "success")
            overrides = OIDCRoleOverrides(
                idp_selectors=(
                    None if sel is None
                    else IdpSelectors.from_dict(sel, f"{where}.oidcOverrides.idpSelectors")
                ),
                success=(
                    None if succ is None
                    else SuccessCondition.from_dict(succ, f"{where}.oidcOverrides.success")
                ),
            )
        return cls(
            credentials_env=CredentialsEnv(
                username=_str(
                    _pick(env, "username"), f"{where}.credentialsEnv.username", required=True
                ),
                password=_str(
                    _pick(env, "password"), f"{where}.credentialsEnv.password", required=True
                ),
            ),
            totp_secret_env=_str(_pick(data, "totp_secret_env"), f"{where}.totpSecretEnv"),
            oidc_overrides=overrides,
            description=_str(_pick(data, "description"), f"{where}.description") or "",
        )


@dataclass(frozen=True)
class StorageStateConfig:
    directory: str = _DEFAULTS["storage_directory"]
    max_age_minutes: int = _DEFAULTS["max_age_minutes"]
    file_pattern: str = _DEFAULTS["file_pattern"]

    @classmethod
    def from_dict(cls, data: Any, where: str = "auth.storageState") -> "StorageStateConfig":
        data = _mapping(data, where)
        pattern = _str(_pick(data, "file_pattern"), f"{where}.filePattern") or _DEFAULTS["file_pattern"]
        if "{role}" not in pattern:
            raise ConfigurationError(
                f"{where}.filePattern must contain '{{role}}'; got {pattern!r}",
                field=f"{where}.filePattern",
            )
        return cls(
            directory=_str(_pick(data, "directory"), f"{where}.directory")
            or _DEFAULTS["storage_directory"],
            max_age_minutes=_int(
                _pick(data, "max_age_minutes"), f"{where}.maxAgeMinutes",
                _DEFAULTS["max_age_minutes"],
            ),
            file_pattern=pattern,
        )

    @property
    def max_age_ms(self) -> int:
        return self.max_age_minutes * 60 * 1000


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = _DEFAULTS["retry_max_attempts"]
    delay_ms: int = _DEFAULTS["retry_delay_ms"]
    non_retryable_phases: Tuple[str, ...] = ()
    """Phases whose failure is definitive (empty = retry every phase)."""

    @classmethod
    def from_dict(cls, data: Any, where: str = "auth.retry") -> "RetryPolicy":
        data = _mapping(data, where)
        attempts = _int(
            _pick(data, "max_attempts"), f"{where}.maxAttempts", _DEFAULTS["retry_max_attempts"]
        )
        if attempts < 1:
            raise ConfigurationError(f"{where}.maxAttempts must be >= 1", field=f"{where}.maxAttempts")
        raw_phases = _pick(data, "non_retryable_phases", ()) or ()
        if not isinstance(raw_phases, (list, tuple)):
            raise ConfigurationError(
                f"{where}.nonRetryablePhases must be a list of phase names, "
                f"got {type(raw_phases).__name__}",
                field=f"{where}.nonRetryablePhases",
            )
        phases = tuple(raw_phases)
        for phase in phases:
            if phase not in AUTH_PHASES:
                raise ConfigurationError(
                    f"{where}.nonRetryablePhases contains unknown phase {phase!r}",
                    field=f"{where}.nonRetryablePhases",
                )
        return cls(
            max_attempts=attempts,
            delay_ms=_int(_pick(data, "delay_ms"), f"{where}.delayMs", _DEFAULTS["retry_delay_ms"]),
            non_retryable_phases=phases,
        )


@dataclass(frozen=True)
class LockConfig:
    enabled: bool = True
    timeout_ms: int = _DEFAULTS["lock_timeout_ms"]
    stale_after_ms: int = _DEFAULTS["lock_stale_after_ms"]

    @classmethod
    def from_dict(cls, data: Any, where: str = "auth.lock") -> "LockConfig":
        data = _mapping(data, where)
        return cls(
            enabled=bool(_pick(data, "enabled", True)),
            timeout_ms=_int(
                _pick(data, "timeout_ms"), f"{where}.timeoutMs", _DEFAULTS["lock_timeout_ms"]
            ),
            stale_after_ms=_int(
                _pick(data, "stale_after_ms"), f"{where}.staleAfterMs",
                _DEFAULTS["lock_stale_after_ms"],
            ),
        )


# ---------------------------------------------------------------------------
# Top-level auth configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthConfig:
    """
    Configuration consumed by every auth component.

    Populate via:
      - ``AuthConfig(provider="form", roles={...}, form=FormConfig(...))``
      - ``AuthConfig.from_dict(resolved_mapping)``
      - ``load_auth_config(path)`` → from a resolved JSON dump
    """

    provider: str
    roles: Dict[str, RoleConfig]
    storage_state: StorageStateConfig = field(default_factory=StorageStateConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    lock: LockConfig = field(default_factory=LockConfig)
    oidc: Optional[OIDCConfig] = None
    form: Optional[FormConfig] = None
    token: Optional[TokenConfig] = None
    custom: Optional[CustomConfig] = None

    def __post_init__(self):
        if self.provider not in PROVIDER_TYPES:
            raise ConfigurationError(
                f"auth.provider must be one of {', '.join(PROVIDER_TYPES)}; "
                f"got {self.provider!r}",
                field="auth.provider",
            )
        section = getattr(self, self.provider)
        if section is None and self.provider != "custom":
            raise ConfigurationError(
                f"auth.provider is {self.provider!r} but auth.{self.provider} is missing",
                field=f"auth.{self.provider}",
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthConfig":
        """Build from the resolved ``auth`` section of the project config."""
        data = _mapping(data, "auth")
        roles_raw = _mapping(_pick(data, "roles"), "auth.roles")
        if not roles_raw:
            raise ConfigurationError("auth.roles must define at least one role", field="auth.roles")
        roles = {
            name: RoleConfig.from_dict(role, f"auth.roles.{name}")
            for name, role in roles_raw.items()
        }

        provider = _choice(_pick(data, "provider"), "auth.provider", PROVIDER_TYPES, "oidc")
        oidc = _pick(data, "oidc")
        form = _pick(data, "form")
        token = _pick(data, "token")
        custom = _pick(data, "custom")
        if custom is not None:
            custom_map = _mapping(custom, "auth.custom")
            custom = CustomConfig(
                factory=_str(_pick(custom_map, "factory"), "auth.custom.factory") or "",
                options=dict(_mapping(_pick(custom_map, "options"), "auth.custom.options")),
            )

        cfg = cls(
            provider=provider,
            roles=roles,
            storage_state=StorageStateConfig.from_dict(_pick(data, "storage_state")),
            retry=RetryPolicy.from_dict(_pick(data, "retry")),
            lock=LockConfig.from_dict(_pick(data, "lock")),
            oidc=None if oidc is None else OIDCConfig.from_dict(oidc),
            form=None if form is None else FormConfig.from_dict(form),
            token=None if token is None else TokenConfig.from_dict(token),
            custom=custom,
        )
        logger.debug(
            f"[CONFIG] Loaded auth config: provider={cfg.provider}, "
            f"roles={', '.join(cfg.role_names)}"
        )
        return cfg

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------
    @property
    def role_names(self) -> List[str]:
        return list(self.roles.keys())

    def role(self, name: str) -> RoleConfig:
        """Return the role config or raise ``ConfigurationError``."""
        try:
            return self.roles[name]
        except KeyError:
            available = ", ".join(self.roles) or "<none>"
            raise ConfigurationError(
                f'Role "{name}" not found in auth configuration. '
                f"Available roles: {available}",
                field=f"auth.roles.{name}",
                role=name,
                remediation=f'Define the "{name}" role under auth.roles',
            ) from None

    def oidc_for_role(self, name: str) -> OIDCConfig:
        """OIDC config with the role's selector / success / TOTP overrides applied."""
        if self.oidc is None:
            raise ConfigurationError("auth.oidc is missing", field="auth.oidc")
        role = self.role(name)
        cfg = self.oidc
        overrides = role.oidc_overrides
        if overrides is not None:
            if overrides.idp_selectors is not None:
                base = cfg.idp_selectors or IdpSelectors()
                cfg = replace(cfg, idp_selectors=overrides.idp_selectors.merged_over(base))
            if overrides.success is not None and not overrides.success.is_empty:
                cfg = replace(cfg, success=overrides.success)
        if role.totp_secret_env and cfg.mfa is not None:
            cfg = replace(cfg, mfa=replace(cfg.mfa, totp_secret_env=role.totp_secret_env))
        return cfg


def load_auth_config(path: str) -> AuthConfig:
    """Load a resolved config dump (JSON).  Accepts ``{"auth": {...}}`` or the bare section."""
    config_path = Path(path)
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(
            f"Config file not found: {config_path}", field="config",
        ) from None
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            f"Config file {config_path} is not valid JSON: {exc}", field="config",
        ) from None
    if isinstance(data, Mapping) and "auth" in data:
        data = data["auth"]
    return AuthConfig.from_dict(data)
