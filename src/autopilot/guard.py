"""Stop guard: keeps an assistant session working while a run is in flight."""

from __future__ import annotations

import logging
from typing import Any

from autopilot.errors import RunNotFound
from autopilot.models import Phase, RunStatus
from autopilot.state.run_store import PersistedState, RunStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_BLOCKS = 10
CONTEXT_LIMIT_MARKERS = (
    "context_limit",
    "context_window",
    "token_limit",
    "max_tokens",
    "conversation_too_long",
    "input_too_long",
)
USER_ABORT_REASONS = {"aborted", "abort", "cancel", "interrupt"}
USER_ABORT_MARKERS = ("user_cancel", "user_interrupt", "ctrl_c", "manual_stop")


def _stop_reason(event: dict[str, Any]) -> str:
    return str(event.get("stop_reason") or event.get("stopReason") or "").lower()


def is_context_limit(event: dict[str, Any]) -> bool:
    reason = _stop_reason(event)
    return any(marker in reason for marker in CONTEXT_LIMIT_MARKERS)


def is_user_abort(event: dict[str, Any]) -> bool:
    if event.get("user_requested") or event.get("userRequested"):
        return True
    reason = _stop_reason(event)
    return reason in USER_ABORT_REASONS or any(marker in reason for marker in USER_ABORT_MARKERS)


def _block_reason(state: PersistedState) -> str:
    run = state.run
    remaining = [phase.value for phase in run.current_phase.remaining() if phase is not Phase.DONE]
    lines = [
        f"[AUTOPILOT] Run {run.id} for {run.target} is not complete. "
        f"Continue at phase {run.current_phase.value}.",
    ]
    if run.blocking:
        lines.append(f"Blocked: {run.blocking[-1].message}")
    lines.append("")
    lines.append("Remaining phases:")
    lines.extend(f"  - {phase}" for phase in remaining)
    lines.append("")
    lines.append(
        f"Resume with `autopilot run {run.target}`; "
        f"stop with `autopilot abort {run.target}`."
    )
    return "\n".join(lines)


def evaluate_stop(
    event: dict[str, Any],
    store: RunStore,
    *,
    max_blocks: int = DEFAULT_MAX_BLOCKS,
) -> dict[str, str] | None:
    """Return a ``block`` decision, or ``None`` to let the session stop."""
    if is_context_limit(event) or is_user_abort(event):
        return None

    candidates = [
        state
        for state in store.list_states(skip_corrupt=True)
        if state.run.status is RunStatus.ACTIVE
        and not state.abort_requested
        and not store.is_stale(state)
        and state.guard_blocks < max_blocks
    ]
    if not candidates:
        return None
    state = max(candidates, key=lambda item: item.last_checked_at)
    try:
        state = store.reinforce(state.target)
    except RunNotFound:
        return None
    logger.info("Blocked stop for %s (%s/%s)", state.target, state.guard_blocks, max_blocks)
    return {"decision": "block", "reason": _block_reason(state)}
