from conductor.state.records import PhaseExecutionState, RetryState, TaskExecutionState
from conductor.state.store import ExecutionStateStore

__all__ = ["ExecutionStateStore", "PhaseExecutionState", "RetryState", "TaskExecutionState"]
