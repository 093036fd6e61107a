"""Flow instance data structures: per-node execution state and outcomes."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ExecutionState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES = frozenset({
    ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.SKIPPED,
})
ACTIVE_STATES = frozenset({ExecutionState.READY, ExecutionState.RUNNING})


class InstanceStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIP = "skip"


@dataclass(frozen=True)
class Outcome:
    """Result of a node action.

    ``branches`` names the out-ports to follow on success; ``None`` follows
    every out-port.  Gateway shapes use it to route.
    """
    status: OutcomeStatus
    branches: frozenset[str] | None = None
    error: str | None = None
    output: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, branches=None, output: dict[str, Any] | None = None) -> "Outcome":
        if branches is not None:
            branches = frozenset(branches)
        return cls(OutcomeStatus.SUCCESS, branches=branches, output=output or {})

    @classmethod
    def failure(cls, error: str = "") -> "Outcome":
        return cls(OutcomeStatus.FAILURE, error=error or "action failed")

    @classmethod
    def skip(cls) -> "Outcome":
        return cls(OutcomeStatus.SKIP)


@dataclass
class ActionContext:
    """What a node action gets to see about the instance running it."""
    instance_id: str
    graph_id: str
    parameters: dict[str, Any]
    inputs: dict[str, dict[str, Any]]  # predecessor id -> its output
    iteration: int = 0
    user: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Instance:
    id: str
    graph_id: str
    node_states: dict[str, ExecutionState] = field(default_factory=dict)
    status: InstanceStatus = InstanceStatus.RUNNING
    sealed: bool = False
    parameters: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    iterations: dict[str, int] = field(default_factory=dict)
    edge_signals: dict[str, bool] = field(default_factory=dict)  # edge id -> fired
    created_by: str | None = None
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def active_set(self) -> set[str]:
        return {
            nid for nid, state in self.node_states.items()
            if state in ACTIVE_STATES
        }

    @property
    def is_quiescent(self) -> bool:
        """True when no node is pending, ready or running."""
        return all(s in TERMINAL_STATES for s in self.node_states.values())
