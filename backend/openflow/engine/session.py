"""Editor session manager: one graph, one mode, and the change log of edits."""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging import getLogger
from typing import Any

from .errors import NotFound
from .executor import ActionRuntime, InstanceRunner, ProgressCallback
from .graph import Graph
from .instance import Instance
from .mode import Mode, ModePolicy, Operation
from .operations import EditOperation
from .persistence import PersistenceAdapter
from .validator import Violation

logger = getLogger(__name__)


@dataclass
class ChangeRecord:
    revision: int
    operation: str
    payload: dict[str, Any]
    user: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EditorSession:
    """A graph opened in a given mode.

    Every edit is checked against the mode before it touches the graph, and
    each successful edit bumps ``revision`` and lands in the change log.
    """

    def __init__(
        self,
        graph: Graph,
        mode: Any,
        user: str | None = None,
        session_id: str | None = None,
        runtime: ActionRuntime | None = None,
        progress_callback: ProgressCallback | None = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.policy = ModePolicy(mode)
        self.graph = graph
        self.user = user
        self.revision = 0
        self.changes: list[ChangeRecord] = []
        self._undo_stack: list[EditOperation] = []
        self.runner = InstanceRunner(self.policy, runtime, progress_callback)

    @property
    def mode(self) -> Mode:
        return self.policy.mode

    def apply(self, operation: EditOperation) -> int:
        """Apply one edit and return the new revision."""
        self.policy.require(operation.kind, self.graph)
        inverse = operation.apply(self.graph)
        self._undo_stack.append(inverse)
        return self._record(operation.kind.value, operation.to_dict())

    def undo(self) -> int:
        """Revert the latest edit; the revert itself is a new revision."""
        if not self._undo_stack:
            raise NotFound("change", str(self.revision))
        inverse = self._undo_stack[-1]
        self.policy.require(inverse.kind, self.graph)
        inverse.apply(self.graph)
        self._undo_stack.pop()
        return self._record("undo", inverse.to_dict())

    def _record(self, operation: str, payload: dict[str, Any]) -> int:
        self.revision += 1
        self.changes.append(ChangeRecord(self.revision, operation, payload, self.user))
        logger.debug("session %s: revision %d (%s)", self.session_id, self.revision, operation)
        return self.revision

    def changes_since(self, revision: int) -> list[ChangeRecord]:
        return [c for c in self.changes if c.revision > revision]

    def snapshot(self) -> Graph:
        self.policy.require(Operation.VIEW)
        return self.graph.copy()

    def validate(self) -> list[Violation]:
        self.policy.require(Operation.VIEW)
        return self.graph.validate()

    def save(self, adapter: PersistenceAdapter) -> int:
        """Persist the definition; returns the stored revision."""
        self.policy.require(Operation.SAVE_DEFINITION)
        stored = adapter.save_definition(self.graph)
        logger.info("session %s: saved flow %s at stored revision %d",
                    self.session_id, self.graph.id, stored)
        return stored

    def instantiate(self, parameters: dict[str, Any] | None = None) -> Instance:
        return self.runner.instantiate(self.graph, parameters, user=self.user)


_sessions: dict[str, EditorSession] = {}


def create_session(graph: Graph, mode: Any, user: str | None = None, **kwargs) -> EditorSession:
    session = EditorSession(graph, mode, user, **kwargs)
    _sessions[session.session_id] = session
    return session


def get_session(session_id: str) -> EditorSession | None:
    return _sessions.get(session_id)


def remove_session(session_id: str) -> None:
    _sessions.pop(session_id, None)
