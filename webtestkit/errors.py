"""
Auth Error Taxonomy
===================
Three failure families, each handled differently by the setup phase:

    - ``ConfigurationError`` — missing env vars, bad TOTP secret, invalid
      config shape.  Fatal, never retried, raised before any browser work.
    - ``AuthError``          — a login attempt failed in a specific phase
      (navigation / credentials / mfa / callback).  Retried once, then fatal.
    - ``StorageStateError``  — a stored session is missing, expired, corrupt
      or locked.  Never fatal for setup: the session is treated as absent.

``SetupError`` wraps anything else that breaks one role's setup (a
browser that died, a full disk) so ``run_all`` can record it per role.
"""

from __future__ import annotations

from typing import Optional

AUTH_PHASES = ("navigation", "credentials", "mfa", "callback")

STORAGE_STATE_CAUSES = ("missing", "expired", "corrupted", "invalid", "locked")


class WebTestKitError(Exception):
    """Base class for every error raised by webtestkit."""


class ConfigurationError(WebTestKitError):
    """Fatal misconfiguration.  ``field`` names the offending setting."""

    def __init__(
        self,
        message: str,
        *,
        field: str = "",
        role: str = "",
        remediation: str = "",
    ):
        super().__init__(message)
        self.field = field
        self.role = role
        self.remediation = remediation

    def __str__(self) -> str:
        text = super().__str__()
        if self.remediation:
            text += f"\n  Remediation: {self.remediation}"
        return text


class AuthError(WebTestKitError):
    """A login attempt failed during one of the auth phases."""

    def __init__(
        self,
        message: str,
        role: str,
        phase: str,
        idp_response: Optional[str] = None,
        remediation: Optional[str] = None,
    ):
        if phase not in AUTH_PHASES:
            raise ValueError(f"Unknown auth phase: {phase!r}")
        super().__init__(message)
        self.message = message
        self.role = role
        self.phase = phase
        self.idp_response = idp_response
        self.remediation = remediation

    def __str__(self) -> str:
        lines = [
            self.message,
            f"  Role: {self.role}",
            f"  Phase: {self.phase}",
        ]
        if self.idp_response:
            lines.append(f"  IdP Response: {self.idp_response}")
        if self.remediation:
            lines.append(f"  Remediation: {self.remediation}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"AuthError(message={self.message!r}, role={self.role!r}, "
            f"phase={self.phase!r})"
        )


class StorageStateError(WebTestKitError):
    """A stored session could not be used."""

    def __init__(self, message: str, role: str, path: str, cause: str):
        if cause not in STORAGE_STATE_CAUSES:
            raise ValueError(f"Unknown storage state cause: {cause!r}")
        super().__init__(message)
        self.role = role
        self.path = path
        self.cause = cause


class SetupError(WebTestKitError):
    """A role's setup broke outside the auth phases (browser or filesystem)."""

    def __init__(self, message: str, role: str):
        super().__init__(message)
        self.role = role
