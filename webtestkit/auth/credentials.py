"""
Credential Resolver
===================
Turns a role name into a ``Credentials`` pair by reading the env vars the
role's config points at.

    auth.roles.admin.credentialsEnv = {username: ADMIN_USER, password: ADMIN_PASS}
    get_credentials("admin", auth_config, env=os.environ)
    → Credentials(username=<$ADMIN_USER>, password=<$ADMIN_PASS>)

Missing or empty variables raise ``ConfigurationError`` before any browser
work starts.  Credentials are resolved fresh for every setup run and are
never written anywhere; the password never reaches a log line.
"""

from __future__ import annotations

import logging
import os
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional

from ..errors import ConfigurationError
from ..run_config import AuthConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """Immutable username / password pair."""
    username: str
    password: str = field(repr=False)

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class MissingCredential:
    role: str
    type: str
    """One of ``role``, ``username``, ``password``."""
    message: str
    env_var: Optional[str] = None


def get_credentials(
    role: str,
    auth_config: AuthConfig,
    env: Optional[Mapping[str, str]] = None,
) -> Credentials:
    """Resolve credentials for *role*.

    Args:
        role:        Role name defined under ``auth.roles``.
        auth_config: Resolved auth configuration.
        env:         Mapping to read from (defaults to ``os.environ``).

    Raises:
        ConfigurationError: unknown role, or an env var is unset / empty.
    """
    env = os.environ if env is None else env
    role_cfg = auth_config.role(role)
    names = role_cfg.credentials_env

    username = env.get(names.username, "")
    if not username:
        logger.error(f"[CREDENTIALS] {names.username} is not set (role={role})")
        raise ConfigurationError(
            f'Environment variable "{names.username}" for role "{role}" '
            f"username is not set",
            field=names.username,
            role=role,
            remediation=(
                f"Set the {names.username} environment variable with the "
                f'username for the "{role}" role'
            ),
        )

    password = env.get(names.password, "")
    if not password:
        logger.error(f"[CREDENTIALS] {names.password} is not set (role={role})")
        raise ConfigurationError(
            f'Environment variable "{names.password}" for role "{role}" '
            f"password is not set",
            field=names.password,
            role=role,
            remediation=(
                f"Set the {names.password} environment variable with the "
                f'password for the "{role}" role'
            ),
        )

    logger.info(f"[CREDENTIALS] Resolved credentials for role '{role}' from environment")
    return Credentials(username=username, password=password)


def validate_credentials(
    roles: Iterable[str],
    auth_config: AuthConfig,
    env: Optional[Mapping[str, str]] = None,
) -> List[MissingCredential]:
    """Check every role without raising; return what is missing."""
    env = os.environ if env is None else env
    missing: List[MissingCredential] = []

    for role in roles:
        role_cfg = auth_config.roles.get(role)
        if role_cfg is None:
            missing.append(MissingCredential(
                role=role, type="role",
                message=f'Role "{role}" not found in configuration',
            ))
            continue

        for kind in ("username", "password"):
            var = getattr(role_cfg.credentials_env, kind)
            if not env.get(var):
                missing.append(MissingCredential(
                    role=role, type=kind, env_var=var,
                    message=f'Environment variable "{var}" not set',
                ))

    return missing


def format_missing_credentials(missing: Iterable[MissingCredential]) -> str:
    """Render ``validate_credentials`` output as an actionable message."""
    missing = list(missing)
    if not missing:
        return ""

    by_role: "OrderedDict[str, List[MissingCredential]]" = OrderedDict()
    for item in missing:
        by_role.setdefault(item.role, []).append(item)

    lines = ["Missing credentials:"]
    for role, items in by_role.items():
        lines.append(f'  Role "{role}":')
        for item in items:
            if item.type == "role":
                lines.append(f"    - {item.message}")
            else:
                lines.append(f"    - {item.type}: {item.env_var} ({item.message})")

    lines.append("")
    lines.append("To fix, set the required environment variables:")
    seen = set()
    for item in missing:
        if item.env_var and item.env_var not in seen:
            seen.add(item.env_var)
            lines.append(f'  export {item.env_var}="<value>"')

    return "\n".join(lines)


def has_credentials(
    role: str,
    auth_config: AuthConfig,
    env: Optional[Mapping[str, str]] = None,
) -> bool:
    return not validate_credentials([role], auth_config, env)
