"""
Storage-State Store
===================
File-backed persistence for authenticated browser sessions, one file per
role: ``{directory}/{file_pattern}`` (default ``.auth-states/{role}.json``).

Responsibilities:
    1. Save ``storage_state`` (cookies + localStorage) after login —
       temp file + fsync + ``os.replace``, so a reader sees the old file,
       the new file, or no file.  Never a partial one.
    2. Validate freshness (file age vs ``max_age_minutes``) and shape.
    3. Hand valid paths to the automation driver (``load``).
    4. Clear records, and sweep anything older than the 24h hard ceiling.
    5. Advisory per-role lock file so two processes don't log the same
       role in at once.

Writers are the setup phase only; test workers only read, lock-free.

Usage::

    from webtestkit.auth.session_store import StorageStateStore

    store = StorageStateStore(auth_config.storage_state)
    store.cleanup_expired()                 # once, before any login
    if not store.is_valid("admin"):
        ...login...
        await store.save(context, "admin")
    path = store.load("admin")              # → Path or None
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import socket
import tempfile
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, List, Optional, Tuple

from playwright.async_api import BrowserContext

from ..errors import StorageStateError
from ..run_config import StorageStateConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings
# ---------------------------------------------------------------------------

CLEANUP_MAX_AGE_MS = 24 * 60 * 60 * 1000
"""Hard ceiling: records older than this are deleted regardless of config."""

ORPHAN_TMP_MAX_AGE_MS = 5 * 60 * 1000
"""Temp files younger than this may still be written by another process."""

_TMP_SUFFIX = ".tmp"
_LOCK_SUFFIX = ".lock"
_LOCK_POLL_SECONDS = 0.25
_ROLE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]*$")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StorageStateMetadata:
    """Derived from the file's mtime — nothing extra is stored on disk."""
    role: str
    path: Path
    created_at: datetime
    age_seconds: float
    is_valid: bool


@dataclass
class CleanupResult:
    deleted_files: List[Path] = field(default_factory=list)
    errors: List[Tuple[Path, str]] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_files)


def is_storage_state_shape(state: Any) -> bool:
    """Structural check of a Playwright ``storage_state`` document.

    Expected::

        {"cookies": [{"name", "value", "domain", ...}],
         "origins": [{"origin": str, "localStorage": [{"name", "value"}]}]}
    """
    if not isinstance(state, dict):
        return False
    cookies = state.get("cookies")
    origins = state.get("origins")
    if not isinstance(cookies, list) or not isinstance(origins, list):
        return False

    for cookie in cookies:
        if not isinstance(cookie, dict):
            return False
        if not all(isinstance(cookie.get(k), str) for k in ("name", "value", "domain")):
            return False

    for origin in origins:
        if not isinstance(origin, dict) or not isinstance(origin.get("origin"), str):
            return False
        entries = origin.get("localStorage", [])
        if not isinstance(entries, list):
            return False
        for entry in entries:
            if not isinstance(entry, dict):
                return False
            if not isinstance(entry.get("name"), str) or not isinstance(entry.get("value"), str):
                return False

    return True


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class StorageStateStore:
    """Persists and validates per-role storage-state files.

    Args:
        config:      ``storage_state`` section (directory, max age, pattern).
        root:        Base for a relative ``config.directory`` (default: CWD).
        environment: Value substituted for ``{env}`` in the file pattern.
        clock:       Wall-clock source in seconds (injectable for tests).
    """

    def __init__(
        self,
        config: Optional[StorageStateConfig] = None,
        *,
        root: Optional[os.PathLike] = None,
        environment: str = "default",
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or StorageStateConfig()
        directory = Path(self.config.directory)
        if not directory.is_absolute():
            directory = Path(root or Path.cwd()) / directory
        self.directory = directory
        self.environment = environment
        self._clock = clock
        self._name_re = self._compile_pattern()

    # ── Paths ─────────────────────────────────────────────────────

    def path_for(self, role: str) -> Path:
        """Target file for *role* (whether or not it exists)."""
        if not _ROLE_RE.match(role or ""):
            raise ValueError(f"Invalid role name for a storage-state file: {role!r}")
        name = (
            self.config.file_pattern
            .replace("{role}", role)
            .replace("{env}", self.environment)
        )
        if not name.endswith(".json"):
            name += ".json"
        return self.directory / name

    def lock_path_for(self, role: str) -> Path:
        return self.directory / f".{self.path_for(role).stem}{_LOCK_SUFFIX}"

    def role_from_path(self, path: os.PathLike) -> Optional[str]:
        """Inverse of ``path_for`` — None if the name doesn't fit the pattern."""
        match = self._name_re.match(Path(path).name)
        return match.group("role") if match else None

    def _compile_pattern(self) -> "re.Pattern[str]":
        pattern = self.config.file_pattern
        if not pattern.endswith(".json"):
            pattern += ".json"
        regex = re.escape(pattern)
        regex = regex.replace(re.escape("{role}"), r"(?P<role>[A-Za-z0-9][A-Za-z0-9_.@-]*?)")
        regex = regex.replace(re.escape("{env}"), re.escape(self.environment))
        return re.compile(f"^{regex}$")

    def _age_ms(self, path: Path) -> float:
        return (self._clock() - path.stat().st_mtime) * 1000

    # ── Write ─────────────────────────────────────────────────────

    async def save(self, context: BrowserContext, role: str) -> Path:
        """Export *context*'s session and atomically write it for *role*."""
        try:
            state = await context.storage_state()
        except Exception as exc:
            raise StorageStateError(
                f'Failed to export storage state for role "{role}": {exc}',
                role, str(self.path_for(role)), "invalid",
            ) from exc
        return self.write_state(state, role)

    def write_state(self, state: dict, role: str) -> Path:
        """Atomically replace *role*'s file with *state*.

        The document is written to a hidden temp file in the same directory,
        flushed to disk, then renamed over the target.
        """
        target = self.path_for(role)
        if not is_storage_state_shape(state):
            raise StorageStateError(
                f'Refusing to save malformed storage state for role "{role}"',
                role, str(target), "invalid",
            )

        tmp_name = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{target.name}.", suffix=_TMP_SUFFIX, dir=str(self.directory)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
        except OSError as exc:
            logger.error(f"[SESSION] Failed to save storage state for '{role}': {exc}")
            raise StorageStateError(
                f'Failed to save storage state for role "{role}": {exc}',
                role, str(target), "invalid",
            ) from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

        logger.info(
            f"[SESSION] Session saved for '{role}': {len(state['cookies'])} cookies, "
            f"{len(state['origins'])} origins → {target}"
        )
        return target

    # ── Read ──────────────────────────────────────────────────────

    def is_valid(self, role: str, max_age_ms: Optional[float] = None) -> bool:
        """True iff the file exists, is well-formed, and is younger than the limit.

        An age exactly equal to the limit counts as expired.
        """
        path = self.path_for(role)
        limit = self.config.max_age_ms if max_age_ms is None else max_age_ms

        try:
            age = self._age_ms(path)
        except FileNotFoundError:
            logger.debug(f"[SESSION] No saved session for '{role}'")
            return False
        except OSError as exc:
            logger.warning(f"[SESSION] Cannot stat session file for '{role}': {exc}")
            return False

        if age >= limit:
            logger.info(
                f"[SESSION] Session for '{role}' is {age / 60000:.1f}min old — "
                f"expired (max {limit / 60000:.1f}min)"
            )
            return False

        try:
            self._read_document(role, path)
        except StorageStateError as exc:
            logger.warning(f"[SESSION] {exc}")
            return False

        logger.debug(f"[SESSION] Valid session for '{role}', age {age / 60000:.1f}min")
        return True

    def load(self, role: str) -> Optional[Path]:
        """Path of *role*'s session if valid, else None."""
        if not self.is_valid(role):
            return None
        path = self.path_for(role)
        logger.info(f"[SESSION] Reusing saved session for '{role}': {path}")
        return path

    def read(self, role: str) -> dict:
        """Parse and return *role*'s storage state.

        Raises:
            StorageStateError: missing, corrupted (bad JSON) or invalid shape.
        """
        return self._read_document(role, self.path_for(role))

    def _read_document(self, role: str, path: Path) -> dict:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StorageStateError(
                f'Storage state file not found for role "{role}"',
                role, str(path), "missing",
            ) from None
        except OSError as exc:
            raise StorageStateError(
                f'Failed to read storage state for role "{role}": {exc}',
                role, str(path), "invalid",
            ) from exc

        try:
            state = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StorageStateError(
                f'Storage state file corrupted for role "{role}": {exc}',
                role, str(path), "corrupted",
            ) from None

        if not is_storage_state_shape(state):
            raise StorageStateError(
                f'Storage state for role "{role}" has an invalid structure',
                role, str(path), "invalid",
            )
        return state

    def metadata(self, role: str) -> Optional[StorageStateMetadata]:
        path = self.path_for(role)
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        age_seconds = self._clock() - mtime
        return StorageStateMetadata(
            role=role,
            path=path,
            created_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
            age_seconds=age_seconds,
            is_valid=self.is_valid(role),
        )

    def list_states(self) -> List[StorageStateMetadata]:
        """Metadata for every record in the directory, sorted by role."""
        if not self.directory.is_dir():
            return []
        result = []
        for path in sorted(self.directory.iterdir()):
            if path.name.startswith("."):
                continue
            role = self.role_from_path(path)
            if role is None:
                continue
            meta = self.metadata(role)
            if meta is not None:
                result.append(meta)
        return result

    # ── Delete ────────────────────────────────────────────────────

    def clear(self, role: Optional[str] = None) -> int:
        """Delete one role's record, or every record.  Returns how many."""
        if role is not None:
            path = self.path_for(role)
            try:
                path.unlink()
            except FileNotFoundError:
                return 0
            logger.info(f"[SESSION] Cleared session for '{role}'")
            return 1

        deleted = 0
        for meta in self.list_states():
            try:
                meta.path.unlink()
                deleted += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning(f"[SESSION] Failed to clear {meta.path}: {exc}")
        logger.info(f"[SESSION] Cleared {deleted} saved session(s)")
        return deleted

    def cleanup_older_than(self, max_age_ms: float) -> CleanupResult:
        """Delete every record strictly older than *max_age_ms*."""
        result = CleanupResult()
        if not self.directory.is_dir():
            logger.debug("[SESSION] Storage directory does not exist — nothing to clean")
            return result

        for path in sorted(self.directory.iterdir()):
            if path.name.startswith(".") or self.role_from_path(path) is None:
                continue
            try:
                age = self._age_ms(path)
                if age > max_age_ms:
                    path.unlink()
                    result.deleted_files.append(path)
                    logger.debug(
                        f"[SESSION] Deleted expired session {path.name} "
                        f"({age / 3_600_000:.1f}h old)"
                    )
            except FileNotFoundError:
                continue
            except OSError as exc:
                result.errors.append((path, str(exc)))
                logger.warning(f"[SESSION] Cleanup failed for {path}: {exc}")
        return result

    def cleanup_expired(self, orphan_after_ms: float = ORPHAN_TMP_MAX_AGE_MS) -> int:
        """Startup sweep: drop records past the 24h ceiling and orphaned temp files.

        A temp file counts as orphaned only once it is older than
        *orphan_after_ms*; younger ones may belong to a save in progress
        in another process.

        Returns:
            Number of records deleted.
        """
        logger.info(f"[SESSION] Sweeping sessions older than 24h in {self.directory}")
        result = self.cleanup_older_than(CLEANUP_MAX_AGE_MS)

        if self.directory.is_dir():
            for tmp in self.directory.glob(f".*{_TMP_SUFFIX}"):
                try:
                    if self._age_ms(tmp) <= orphan_after_ms:
                        continue
                    tmp.unlink()
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning(f"[SESSION] Could not remove temp file {tmp.name}: {exc}")
                    continue
                logger.debug(f"[SESSION] Removed orphaned temp file {tmp.name}")

        logger.info(
            f"[SESSION] Sweep complete: {result.deleted_count} deleted, "
            f"{len(result.errors)} error(s)"
        )
        return result.deleted_count

    # ── Cross-process setup lock ──────────────────────────────────

    @asynccontextmanager
    async def setup_lock(
        self,
        role: str,
        *,
        timeout_ms: float = 120_000,
        stale_after_ms: float = 300_000,
    ) -> AsyncIterator[Path]:
        """Advisory lock held while *role* is being set up.

        Created with ``O_CREAT | O_EXCL``; a lock older than *stale_after_ms*
        is treated as abandoned and broken.  Waiting is bounded by
        *timeout_ms* and raises ``StorageStateError(cause="locked")``.
        Readers never take this lock.
        """
        lock_path = self.lock_path_for(role)
        self.directory.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + timeout_ms / 1000
        announced = False

        while True:
            try:
                fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._break_stale_lock(lock_path, stale_after_ms):
                    continue
                if time.monotonic() >= deadline:
                    raise StorageStateError(
                        f'Timed out after {timeout_ms / 1000:.0f}s waiting for the '
                        f'setup lock of role "{role}"',
                        role, str(lock_path), "locked",
                    ) from None
                if not announced:
                    logger.info(f"[SESSION] '{role}' is being set up elsewhere — waiting")
                    announced = True
                await asyncio.sleep(_LOCK_POLL_SECONDS)
                continue

            token = uuid.uuid4().hex
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(
                    {
                        "pid": os.getpid(),
                        "host": socket.gethostname(),
                        "token": token,
                        "acquired_at": self._clock(),
                    },
                    fh,
                )
            break

        logger.debug(f"[SESSION] Acquired setup lock for '{role}'")
        try:
            yield lock_path
        finally:
            self._release_lock(lock_path, token, role)

    def _release_lock(self, lock_path: Path, token: str, role: str) -> None:
        """Remove the lock only if it still carries *token*."""
        try:
            held = json.loads(lock_path.read_text(encoding="utf-8")).get("token")
        except FileNotFoundError:
            logger.warning(f"[SESSION] Setup lock for '{role}' vanished before release")
            return
        except (OSError, ValueError, AttributeError):
            held = None
        if held != token:
            logger.warning(
                f"[SESSION] Setup lock for '{role}' was taken over as stale; leaving it in place"
            )
            return
        lock_path.unlink(missing_ok=True)
        logger.debug(f"[SESSION] Released setup lock for '{role}'")

    def _break_stale_lock(self, lock_path: Path, stale_after_ms: float) -> bool:
        """Remove *lock_path* if it is older than *stale_after_ms*.

        The lock is moved aside first and its contents compared with what
        was judged stale.  If another waiter replaced it in between, the
        fresh lock is linked back and nothing is broken.

        Returns:
            True when the caller should retry acquiring right away.
        """
        try:
            observed = lock_path.read_text(encoding="utf-8")
            age = self._age_ms(lock_path)
        except FileNotFoundError:
            return True
        if age <= stale_after_ms:
            return False

        aside = lock_path.with_name(f"{lock_path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(lock_path, aside)
        except FileNotFoundError:
            return True
        try:
            if aside.read_text(encoding="utf-8") != observed:
                try:
                    os.link(aside, lock_path)
                except FileExistsError:
                    logger.warning(
                        f"[SESSION] Could not restore setup lock {lock_path.name} "
                        f"replaced during stale check"
                    )
                return False
        finally:
            aside.unlink(missing_ok=True)

        logger.warning(
            f"[SESSION] Breaking stale setup lock {lock_path.name} ({age / 1000:.0f}s old)"
        )
        return True
