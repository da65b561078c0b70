from phasegate.state.store import MemoryTaskStateStore, TaskStateStore

__all__ = ["MemoryTaskStateStore", "TaskStateStore"]
