from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from autopilot.errors import (
    AlreadyActive,
    AutopilotStateError,
    FatalStateCorruption,
    RunNotFound,
    StateLockTimeout,
)
from autopilot.models import RunStatus, WorkflowRun

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
PERSISTABLE_STATUSES = {RunStatus.ACTIVE, RunStatus.ESCALATED}
DELETABLE_STATUSES = {RunStatus.APPROVED, RunStatus.ABORTED}
UNREADABLE_LOCK_GRACE_SECONDS = 30.0
_REQUIRED_KEYS = {
    "active": bool,
    "started_at": str,
    "target": str,
    "reinforcement_count": int,
    "last_checked_at": str,
}


def _isoformat(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat()


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _lock_is_orphaned(lock_path: Path) -> bool:
    """True when the process that wrote the lock file no longer exists.

    A lock without a readable pid is only considered orphaned once it is older
    than ``UNREADABLE_LOCK_GRACE_SECONDS``, since the holder writes its pid right
    after creating the file.
    """
    try:
        content = lock_path.read_text(encoding="utf-8").strip()
        modified = lock_path.stat().st_mtime
    except (OSError, UnicodeDecodeError):
        return False
    pid = int(content) if content.isdigit() else 0
    if pid <= 0:
        return time.time() - modified > UNREADABLE_LOCK_GRACE_SECONDS
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    except PermissionError:
        return False
    return False


@dataclass(slots=True)
class PersistedState:
    target: str
    run: WorkflowRun
    active: bool = True
    started_at: str = ""
    reinforcement_count: int = 0
    last_checked_at: str = ""
    owner: str | None = None
    abort_requested: bool = False
    guard_blocks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "active": self.active,
            "started_at": self.started_at,
            "target": self.target,
            "reinforcement_count": self.reinforcement_count,
            "last_checked_at": self.last_checked_at,
            "owner": self.owner,
            "abort_requested": self.abort_requested,
            "guard_blocks": self.guard_blocks,
            "run": self.run.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Any, *, target: str | None = None) -> PersistedState:
        if not isinstance(payload, dict):
            raise FatalStateCorruption("Persisted record is not a JSON object")
        schema_version = payload.get("schema_version", SCHEMA_VERSION)
        if schema_version != SCHEMA_VERSION:
            raise FatalStateCorruption(f"Unsupported schema_version: {schema_version!r}")
        for key, expected_type in _REQUIRED_KEYS.items():
            if not isinstance(payload.get(key), expected_type):
                raise FatalStateCorruption(f"Persisted record has invalid '{key}'")
        if target is not None and payload["target"] != target:
            raise FatalStateCorruption(
                f"Persisted record belongs to '{payload['target']}', not '{target}'"
            )
        run = WorkflowRun.from_dict(payload.get("run"))
        if run.target != payload["target"]:
            raise FatalStateCorruption("Run target does not match the persisted record")
        if run.status not in PERSISTABLE_STATUSES:
            raise FatalStateCorruption(
                f"Persisted record carries terminal status '{run.status.value}'"
            )
        if payload["active"] != (run.status is RunStatus.ACTIVE):
            raise FatalStateCorruption("'active' flag disagrees with run status")
        owner = payload.get("owner")
        if owner is not None and not isinstance(owner, str):
            raise FatalStateCorruption("Persisted record has invalid 'owner'")
        guard_blocks = payload.get("guard_blocks", 0)
        if not isinstance(guard_blocks, int):
            raise FatalStateCorruption("Persisted record has invalid 'guard_blocks'")
        return cls(
            target=payload["target"],
            run=run,
            active=payload["active"],
            started_at=payload["started_at"],
            reinforcement_count=payload["reinforcement_count"],
            last_checked_at=payload["last_checked_at"],
            owner=owner,
            abort_requested=bool(payload.get("abort_requested", False)),
            guard_blocks=guard_blocks,
        )


class RunStore:
    """One atomically written JSON record per target.

    The record exists while a run is Active or Escalated and is removed when the
    run is Approved or Aborted. ``owner`` is a lease token: it is set while an
    invocation drives the run and cleared on release, so a crashed owner is
    detected through a stale ``last_checked_at``.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        stale_after_seconds: float = 7200.0,
        lock_timeout_seconds: float = 3.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.state_dir = state_dir.resolve()
        self.stale_after_seconds = stale_after_seconds
        self.lock_timeout_seconds = lock_timeout_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

    def _now_iso(self) -> str:
        return _isoformat(self._clock())

    @staticmethod
    def _record_name(target: str) -> str:
        slug = re.sub(r"[^a-zA-Z0-9._-]+", "-", target.strip()).strip("-.").lower()[:48]
        digest = hashlib.sha1(target.encode("utf-8")).hexdigest()[:10]
        return f"{slug or 'run'}-{digest}"

    def record_path(self, target: str) -> Path:
        return self.state_dir / f"{self._record_name(target)}.json"

    def _lock_path(self, target: str) -> Path:
        return self.state_dir / f"{self._record_name(target)}.lock"

    @contextmanager
    def _locked(self, target: str) -> Iterator[None]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self._lock_path(target)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if _lock_is_orphaned(lock_path):
                    logger.warning("Breaking orphaned state lock %s", lock_path)
                    try:
                        lock_path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateLockTimeout(
                        f"Timed out waiting for state lock: {lock_path}"
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass

    def _read(self, target: str) -> PersistedState | None:
        path = self.record_path(target)
        if not path.exists():
            return None
        return self._read_path(path, target=target)

    @staticmethod
    def _read_path(path: Path, *, target: str | None = None) -> PersistedState:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise FatalStateCorruption(f"Unreadable run record: {exc}", path=str(path)) from exc
        try:
            return PersistedState.from_dict(payload, target=target)
        except FatalStateCorruption as exc:
            raise FatalStateCorruption(str(exc), path=str(path)) from exc

    def _write(self, state: PersistedState) -> None:
        path = self.record_path(state.target)
        path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(state.to_dict(), ensure_ascii=False, indent=2)
        fd, temp_name = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    def is_stale(self, state: PersistedState, now: datetime | None = None) -> bool:
        moments = [
            parsed
            for parsed in (_parse_iso(state.last_checked_at), _parse_iso(state.started_at))
            if parsed is not None
        ]
        if not moments:
            return True
        current = now or self._clock()
        return (current - max(moments)).total_seconds() > self.stale_after_seconds

    def open(self, target: str) -> PersistedState | None:
        return self._read(target)

    def create(
        self,
        target: str,
        *,
        owner: str,
        external_ticket_ref: str | None = None,
    ) -> PersistedState:
        with self._locked(target):
            existing = self._read(target)
            if existing is not None:
                if existing.run.status is RunStatus.ESCALATED:
                    raise AlreadyActive(
                        target,
                        reason=(
                            f"Run for '{target}' is escalated; "
                            "resume it instead of starting a new one."
                        ),
                    )
                if not self.is_stale(existing):
                    raise AlreadyActive(target)
                logger.warning(
                    "Reaping stale run %s for %s (last checked %s)",
                    existing.run.id,
                    target,
                    existing.last_checked_at,
                )
            now = self._now_iso()
            state = PersistedState(
                target=target,
                run=WorkflowRun(target=target, external_ticket_ref=external_ticket_ref),
                active=True,
                started_at=now,
                reinforcement_count=0,
                last_checked_at=now,
                owner=owner,
            )
            self._write(state)
        logger.info("Created run %s for %s", state.run.id, target)
        return state

    def acquire(self, target: str, *, owner: str) -> PersistedState:
        with self._locked(target):
            state = self._read(target)
            if state is None:
                raise RunNotFound(target)
            if state.owner not in (None, owner) and not self.is_stale(state):
                raise AlreadyActive(target)
            if state.owner not in (None, owner):
                logger.warning("Taking over stale lease on %s from %s", target, state.owner)
            state.owner = owner
            state.last_checked_at = self._now_iso()
            self._write(state)
        return state

    def touch(self, state: PersistedState) -> PersistedState:
        with self._locked(state.target):
            on_disk = self._read(state.target)
            if on_disk is None:
                raise FatalStateCorruption(
                    f"Run record for '{state.target}' disappeared while the run was in flight",
                    path=str(self.record_path(state.target)),
                )
            if on_disk.owner is not None and on_disk.owner != state.owner:
                raise AlreadyActive(
                    state.target,
                    reason=f"Lease on '{state.target}' was taken over by another invocation.",
                )
            state.abort_requested = state.abort_requested or on_disk.abort_requested
            state.guard_blocks = max(state.guard_blocks, on_disk.guard_blocks)
            state.active = state.run.status is RunStatus.ACTIVE
            state.reinforcement_count += 1
            state.last_checked_at = self._now_iso()
            self._write(state)
        return state

    def release(self, state: PersistedState) -> None:
        with self._locked(state.target):
            on_disk = self._read(state.target)
            if on_disk is None or on_disk.owner != state.owner:
                return
            on_disk.owner = None
            self._write(on_disk)
        state.owner = None

    def delete(self, state: PersistedState) -> None:
        if state.run.status not in DELETABLE_STATUSES:
            raise AutopilotStateError(
                f"Refusing to delete run for '{state.target}' with status "
                f"'{state.run.status.value}'."
            )
        with self._locked(state.target):
            try:
                self.record_path(state.target).unlink()
            except FileNotFoundError:
                pass
        logger.info("Deleted run record %s (%s)", state.run.id, state.run.status.value)

    def request_abort(self, target: str) -> PersistedState:
        with self._locked(target):
            state = self._read(target)
            if state is None:
                raise RunNotFound(target)
            state.abort_requested = True
            self._write(state)
        return state

    def reinforce(self, target: str) -> PersistedState:
        """Refresh liveness on behalf of an outside observer (the stop guard)."""
        with self._locked(target):
            state = self._read(target)
            if state is None:
                raise RunNotFound(target)
            state.guard_blocks += 1
            state.reinforcement_count += 1
            state.last_checked_at = self._now_iso()
            self._write(state)
        return state

    def list_states(self, *, skip_corrupt: bool = False) -> list[PersistedState]:
        if not self.state_dir.exists():
            return []
        states: list[PersistedState] = []
        for path in sorted(self.state_dir.glob("*.json")):
            if path.name.startswith(".tmp-"):
                continue
            try:
                states.append(self._read_path(path))
            except FatalStateCorruption:
                if not skip_corrupt:
                    raise
                logger.warning("Skipping corrupt run record %s", path)
        return states

    def reap_stale(self) -> list[str]:
        reaped: list[str] = []
        for candidate in self.list_states(skip_corrupt=True):
            if candidate.run.status is not RunStatus.ACTIVE or not self.is_stale(candidate):
                continue
            with self._locked(candidate.target):
                # A live owner may have touched the record since it was listed.
                try:
                    state = self._read(candidate.target)
                except FatalStateCorruption:
                    logger.warning("Skipping corrupt run record for %s", candidate.target)
                    continue
                if (
                    state is None
                    or state.run.status is not RunStatus.ACTIVE
                    or not self.is_stale(state)
                ):
                    continue
                state.run.status = RunStatus.ABORTED
                state.run.add_caveat("reaped: no liveness signal within the staleness window")
                try:
                    self.record_path(state.target).unlink()
                except FileNotFoundError:
                    pass
            logger.info("Reaped stale run %s for %s", state.run.id, state.target)
            reaped.append(state.target)
        return reaped
