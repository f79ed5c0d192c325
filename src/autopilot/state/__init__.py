from autopilot.state.run_store import PersistedState, RunStore

__all__ = ["PersistedState", "RunStore"]
