import json
import os
import subprocess
import sys
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from autopilot.errors import (
    AlreadyActive,
    AutopilotStateError,
    FatalStateCorruption,
    RunNotFound,
    StateLockTimeout,
)
from autopilot.models import Phase, RunStatus
from autopilot.state import RunStore


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _store(tmp_path: Path, clock: FakeClock | None = None) -> RunStore:
    return RunStore(tmp_path / "state", lock_timeout_seconds=0.2, clock=clock)


def test_create_writes_the_documented_record(tmp_path: Path) -> None:
    store = _store(tmp_path)

    state = store.create("X-01", owner="me", external_ticket_ref="X-01")

    payload = json.loads(store.record_path("X-01").read_text(encoding="utf-8"))
    assert payload["active"] is True
    assert payload["target"] == "X-01"
    assert payload["reinforcement_count"] == 0
    assert payload["started_at"] == payload["last_checked_at"]
    assert payload["owner"] == "me"
    assert payload["run"]["current_phase"] == "setup"
    assert payload["run"]["external_ticket_ref"] == "X-01"

    loaded = store.open("X-01")
    assert loaded is not None
    assert loaded.run.id == state.run.id


def test_open_missing_target_returns_none(tmp_path: Path) -> None:
    assert _store(tmp_path).open("X-404") is None


def test_record_names_do_not_collide_for_similar_targets(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.record_path("specs/a b.md") != store.record_path("specs/a-b.md")


def test_second_create_while_live_is_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="first")

    with pytest.raises(AlreadyActive):
        store.create("X-01", owner="second")


def test_stale_record_is_reaped_on_create(tmp_path: Path) -> None:
    clock = FakeClock()
    store = _store(tmp_path, clock)
    old = store.create("X-01", owner="crashed")

    clock.advance(hours=2, seconds=1)
    fresh = store.create("X-01", owner="new")

    assert fresh.run.id != old.run.id
    assert fresh.owner == "new"


def test_staleness_uses_the_latest_liveness_signal(tmp_path: Path) -> None:
    clock = FakeClock()
    store = _store(tmp_path, clock)
    state = store.create("X-01", owner="me")

    clock.advance(hours=1, minutes=30)
    store.touch(state)
    clock.advance(hours=1)

    assert store.is_stale(state) is False
    clock.advance(hours=1, seconds=1)
    assert store.is_stale(state) is True


def test_escalated_record_is_never_overwritten(tmp_path: Path) -> None:
    clock = FakeClock()
    store = _store(tmp_path, clock)
    state = store.create("X-01", owner="me")
    state.run.status = RunStatus.ESCALATED
    store.touch(state)
    store.release(state)

    clock.advance(days=3)
    with pytest.raises(AlreadyActive, match="escalated"):
        store.create("X-01", owner="other")


def test_acquire_respects_a_live_lease(tmp_path: Path) -> None:
    store = _store(tmp_path)
    state = store.create("X-01", owner="first")

    with pytest.raises(AlreadyActive):
        store.acquire("X-01", owner="second")

    store.release(state)
    acquired = store.acquire("X-01", owner="second")
    assert acquired.owner == "second"


def test_acquire_takes_over_a_stale_lease(tmp_path: Path) -> None:
    clock = FakeClock()
    store = _store(tmp_path, clock)
    store.create("X-01", owner="crashed")

    clock.advance(hours=3)
    acquired = store.acquire("X-01", owner="rescuer")

    assert acquired.owner == "rescuer"
    assert store.is_stale(acquired) is False


def test_acquire_missing_target_raises(tmp_path: Path) -> None:
    with pytest.raises(RunNotFound):
        _store(tmp_path).acquire("X-404", owner="me")


def test_touch_bumps_liveness_and_merges_abort_flag(tmp_path: Path) -> None:
    clock = FakeClock()
    store = _store(tmp_path, clock)
    state = store.create("X-01", owner="me")
    store.request_abort("X-01")

    clock.advance(minutes=5)
    store.touch(state)

    assert state.reinforcement_count == 1
    assert state.abort_requested is True
    assert state.last_checked_at == "2026-03-01T09:05:00+00:00"
    reloaded = store.open("X-01")
    assert reloaded is not None
    assert reloaded.reinforcement_count == 1


def test_touch_after_losing_the_lease_raises(tmp_path: Path) -> None:
    clock = FakeClock()
    store = _store(tmp_path, clock)
    state = store.create("X-01", owner="slow")
    clock.advance(hours=3)
    store.acquire("X-01", owner="rescuer")

    with pytest.raises(AlreadyActive, match="taken over"):
        store.touch(state)


def test_touch_after_record_vanished_is_corruption(tmp_path: Path) -> None:
    store = _store(tmp_path)
    state = store.create("X-01", owner="me")
    store.record_path("X-01").unlink()

    with pytest.raises(FatalStateCorruption):
        store.touch(state)


def test_delete_requires_terminal_status(tmp_path: Path) -> None:
    store = _store(tmp_path)
    state = store.create("X-01", owner="me")

    with pytest.raises(AutopilotStateError):
        store.delete(state)
    state.run.status = RunStatus.ESCALATED
    with pytest.raises(AutopilotStateError):
        store.delete(state)

    state.run.status = RunStatus.APPROVED
    store.delete(state)
    assert store.open("X-01") is None


def test_unreadable_record_is_fatal(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    store.record_path("X-01").write_text("{not json", encoding="utf-8")

    with pytest.raises(FatalStateCorruption):
        store.open("X-01")


def test_record_missing_a_required_key_is_fatal(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    path = store.record_path("X-01")
    payload = json.loads(path.read_text(encoding="utf-8"))
    del payload["last_checked_at"]
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(FatalStateCorruption, match="last_checked_at"):
        store.open("X-01")


def test_record_for_another_target_is_fatal(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    store.record_path("X-01").replace(store.record_path("X-02"))

    with pytest.raises(FatalStateCorruption, match="belongs to"):
        store.open("X-02")


def test_active_flag_disagreeing_with_status_is_fatal(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    path = store.record_path("X-01")
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["active"] = False
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(FatalStateCorruption):
        store.open("X-01")


def test_persisted_terminal_status_is_fatal(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    path = store.record_path("X-01")
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["run"]["status"] = "approved"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(FatalStateCorruption, match="terminal status"):
        store.open("X-01")


def test_inconsistent_phase_history_is_fatal(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    path = store.record_path("X-01")
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["run"]["current_phase"] = Phase.REVIEW.value
    payload["run"]["completed_phases"] = ["setup"]
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(FatalStateCorruption):
        store.open("X-01")


def test_failed_write_leaves_previous_record_intact(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = _store(tmp_path)
    state = store.create("X-01", owner="me")
    before = store.record_path("X-01").read_text(encoding="utf-8")

    def broken_replace(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(OSError):
        store.touch(state)
    monkeypatch.undo()

    assert store.record_path("X-01").read_text(encoding="utf-8") == before
    assert list(store.state_dir.glob(".tmp-*")) == []


def test_held_lock_times_out(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    lock_path = store.record_path("X-01").with_suffix(".lock")
    lock_path.write_text(str(os.getpid()), encoding="utf-8")

    with pytest.raises(StateLockTimeout):
        store.request_abort("X-01")


def test_reinforce_counts_guard_blocks(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")

    store.reinforce("X-01")
    state = store.reinforce("X-01")

    assert state.guard_blocks == 2
    assert state.reinforcement_count == 2


def test_reap_stale_removes_abandoned_active_runs(tmp_path: Path) -> None:
    clock = FakeClock()
    store = _store(tmp_path, clock)
    store.create("X-01", owner="crashed")
    escalated = store.create("X-02", owner="me")
    escalated.run.status = RunStatus.ESCALATED
    store.touch(escalated)

    clock.advance(hours=3)
    store.create("X-03", owner="live")

    assert store.reap_stale() == ["X-01"]
    assert store.open("X-01") is None
    assert store.open("X-02") is not None
    assert store.open("X-03") is not None


def test_list_states_can_skip_corrupt_records(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    store.create("X-02", owner="me")
    store.record_path("X-02").write_text("[]", encoding="utf-8")

    with pytest.raises(FatalStateCorruption):
        store.list_states()
    assert [state.target for state in store.list_states(skip_corrupt=True)] == ["X-01"]


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


def test_lock_left_by_a_dead_process_is_broken(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    lock_path = store.record_path("X-01").with_suffix(".lock")
    lock_path.write_text(str(_dead_pid()), encoding="utf-8")

    state = store.request_abort("X-01")

    assert state.abort_requested is True
    assert not lock_path.exists()


def test_lock_without_a_pid_is_broken_only_once_old(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("X-01", owner="me")
    lock_path = store.record_path("X-01").with_suffix(".lock")
    lock_path.write_text("", encoding="utf-8")

    with pytest.raises(StateLockTimeout):
        store.request_abort("X-01")

    old = time.time() - 120
    os.utime(lock_path, (old, old))

    assert store.request_abort("X-01").abort_requested is True
    assert not lock_path.exists()


def test_reap_stale_rechecks_the_record_under_the_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    clock = FakeClock()
    store = _store(tmp_path, clock)
    state = store.create("X-01", owner="live")
    listed = store.list_states()

    clock.advance(hours=3)
    store.touch(state)
    monkeypatch.setattr(store, "list_states", lambda **kwargs: listed)

    assert store.reap_stale() == []
    reloaded = store.open("X-01")
    assert reloaded is not None
    assert reloaded.run.status is RunStatus.ACTIVE
