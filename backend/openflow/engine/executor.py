"""Execution engine: drives flow instances through their graph.

Each instance keeps one state per node.  ``advance`` starts every node that
is ready; outcomes come back either straight from the action or later via
``report_outcome``.  An outcome resolves the node's outgoing edges as fired
or not fired, and a node re-evaluates once all of its forward inputs are
resolved.  Edges into a loop shape's loopback port are back edges: they do
not gate readiness, and firing one re-enters the loop.
"""
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Callable

from ..shapes.registry import ShapeRegistry
from .errors import (
    GraphInvalid, InstanceSealed, NodeActionFailed, NodeNotRunning, NotFound,
)
from .graph import Graph, NodeInstance
from .instance import (
    ActionContext, ExecutionState, Instance, InstanceStatus, Outcome,
    OutcomeStatus, ACTIVE_STATES, TERMINAL_STATES,
)
from .mode import ModePolicy, Operation
from .validator import validate_graph

logger = getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], None]
ActionHandler = Callable[[NodeInstance, ActionContext], Outcome | None]


def topological_sort(graph: Graph) -> list[str]:
    """Kahn's algorithm over forward edges, returning node IDs in execution order."""
    owners = graph.port_owners()
    in_degree: dict[str, int] = {nid: 0 for nid in graph.nodes}
    # One adjacency entry per edge, not per unique successor
    adj: dict[str, list[str]] = {nid: [] for nid in graph.nodes}
    for edge in graph.edges.values():
        src, tgt = owners.get(edge.source_port), owners.get(edge.target_port)
        if src is None or tgt is None or graph.is_loopback_edge(edge):
            continue
        in_degree[tgt] += 1
        adj[src].append(tgt)

    queue = deque(nid for nid, deg in in_degree.items() if deg == 0)
    order: list[str] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for succ in adj[node_id]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                queue.append(succ)

    if len(order) != len(graph.nodes):
        raise GraphInvalid(["Graph contains a cycle"])
    return order


class ActionRuntime:
    """Runs node actions: a per-type handler if one is registered, else the shape's own."""

    def __init__(self, handlers: dict[str, ActionHandler] | None = None):
        self._handlers: dict[str, ActionHandler] = dict(handlers or {})

    def register(self, node_type: str, handler: ActionHandler) -> None:
        self._handlers[node_type] = handler

    def run(self, node: NodeInstance, context: ActionContext) -> Outcome | None:
        handler = self._handlers.get(node.node_type)
        if handler is not None:
            return handler(node, context)
        return ShapeRegistry.create(node.node_type).run(node, context)


@dataclass
class _Plan:
    """Routing tables derived once from a frozen graph."""
    order: list[str]
    forward_in: dict[str, list[str]]
    forward_preds: dict[str, list[str]]
    outgoing: dict[str, list[tuple[str, str, str]]]  # node -> (edge, port name, target)
    edge_target: dict[str, str]
    back_edges: dict[str, str]  # edge -> loop node it re-enters
    loop_bodies: dict[str, set[str]]
    sinks: set[str]


def _build_plan(graph: Graph) -> _Plan:
    owners = graph.port_owners()
    ports = graph.ports
    forward_in: dict[str, list[str]] = {nid: [] for nid in graph.nodes}
    forward_preds: dict[str, list[str]] = {nid: [] for nid in graph.nodes}
    outgoing: dict[str, list[tuple[str, str, str]]] = {nid: [] for nid in graph.nodes}
    edge_target: dict[str, str] = {}
    back_edges: dict[str, str] = {}
    arcs: list[tuple[str, str, str]] = []

    for edge in graph.edges.values():
        src, tgt = owners[edge.source_port], owners[edge.target_port]
        edge_target[edge.id] = tgt
        outgoing[src].append((edge.id, ports[edge.source_port].name, tgt))
        arcs.append((edge.id, src, tgt))
        if graph.is_loopback_edge(edge):
            back_edges[edge.id] = tgt
        else:
            forward_in[tgt].append(edge.id)
            forward_preds[tgt].append(src)

    loop_bodies: dict[str, set[str]] = {}
    for loop_id in sorted(set(back_edges.values())):
        own = {eid for eid, tgt in back_edges.items() if tgt == loop_id}
        succ: dict[str, list[str]] = {nid: [] for nid in graph.nodes}
        pred: dict[str, list[str]] = {nid: [] for nid in graph.nodes}
        for eid, src, tgt in arcs:
            if eid in own:
                continue
            succ[src].append(tgt)
            pred[tgt].append(src)
        ahead = _walk(succ, [loop_id], stop=loop_id)
        behind = _walk(pred, [owners[graph.edges[eid].source_port] for eid in own], stop=loop_id)
        loop_bodies[loop_id] = (ahead & behind) - {loop_id}

    return _Plan(
        order=topological_sort(graph),
        forward_in=forward_in,
        forward_preds=forward_preds,
        outgoing=outgoing,
        edge_target=edge_target,
        back_edges=back_edges,
        loop_bodies=loop_bodies,
        sinks=set(graph.sinks()),
    )


def _walk(adj: dict[str, list[str]], starts: list[str], stop: str) -> set[str]:
    seen = set(starts)
    queue = deque(starts)
    while queue:
        node_id = queue.popleft()
        for nxt in adj[node_id]:
            if nxt not in seen and nxt != stop:
                seen.add(nxt)
                queue.append(nxt)
    return seen


@dataclass
class _Entry:
    instance: Instance
    graph: Graph
    plan: _Plan
    lock: threading.RLock = field(default_factory=threading.RLock)


class InstanceRunner:
    """Creates and advances flow instances for one session.

    Every mutating call is checked against the session's mode policy.
    Calls touching the same instance are serialized by a per-instance lock.
    """

    def __init__(
        self,
        policy: ModePolicy,
        runtime: ActionRuntime | None = None,
        progress_callback: ProgressCallback | None = None,
    ):
        self.policy = policy
        self.runtime = runtime or ActionRuntime()
        self._listeners: list[ProgressCallback] = []
        if progress_callback:
            self._listeners.append(progress_callback)
        self._entries: dict[str, _Entry] = {}

    # -- bookkeeping --------------------------------------------------------

    def add_listener(self, callback: ProgressCallback) -> None:
        self._listeners.append(callback)

    def _emit(self, message: dict[str, Any]) -> None:
        for callback in self._listeners:
            callback(message)

    def _entry(self, instance_id: str) -> _Entry:
        entry = self._entries.get(instance_id)
        if entry is None:
            raise NotFound("instance", instance_id)
        return entry

    def get(self, instance_id: str) -> Instance:
        return self._entry(instance_id).instance

    @property
    def instances(self) -> list[Instance]:
        return [e.instance for e in self._entries.values()]

    # -- lifecycle ----------------------------------------------------------

    def instantiate(
        self,
        graph: Graph,
        parameters: dict[str, Any] | None = None,
        user: str | None = None,
        instance_id: str | None = None,
    ) -> Instance:
        self.policy.require(Operation.INSTANTIATE)
        violations = validate_graph(graph)
        if violations:
            raise GraphInvalid(violations)

        graph.freeze()
        plan = _build_plan(graph)
        instance = Instance(
            id=instance_id or uuid.uuid4().hex,
            graph_id=graph.id,
            parameters=dict(parameters or {}),
            created_by=user,
        )
        for node_id in plan.order:
            ready = not plan.forward_in[node_id]
            instance.node_states[node_id] = (
                ExecutionState.READY if ready else ExecutionState.PENDING
            )
        entry = _Entry(instance=instance, graph=graph, plan=plan)
        self._entries[instance.id] = entry
        logger.info(
            "instance %s created from graph %s by %s", instance.id, graph.id, user,
        )
        self._emit({
            "type": "instance_created",
            "instance_id": instance.id,
            "graph_id": graph.id,
        })
        self._settle(entry)
        return instance

    def attach(self, instance: Instance, graph: Graph) -> Instance:
        """Resume a stored instance snapshot against its graph definition."""
        self.policy.require(Operation.VIEW)
        graph.freeze()
        self._entries[instance.id] = _Entry(
            instance=instance, graph=graph, plan=_build_plan(graph),
        )
        return instance

    def set_parameter(self, instance_id: str, name: str, value: Any) -> None:
        self.policy.require(Operation.SET_INSTANCE_PARAMETER)
        entry = self._entry(instance_id)
        with entry.lock:
            if entry.instance.sealed:
                raise InstanceSealed(instance_id)
            entry.instance.parameters[name] = value

    def start_ready(self, instance_id: str) -> list[tuple[NodeInstance, ActionContext]]:
        """Move every ready node to running; return what their actions need."""
        self.policy.require(Operation.ADVANCE)
        entry = self._entry(instance_id)
        with entry.lock:
            instance = entry.instance
            if instance.sealed:
                raise InstanceSealed(instance_id)
            ready = [
                nid for nid in entry.plan.order
                if instance.node_states[nid] == ExecutionState.READY
            ]
            started = []
            for node_id in ready:
                self._set_state(entry, node_id, ExecutionState.RUNNING)
                started.append((entry.graph.nodes[node_id], self._context(entry, node_id)))
            return started

    def advance(self, instance_id: str) -> list[str]:
        """Start every node that is ready now and run its action; return their ids.

        Nodes whose action returns no outcome stay running until
        ``report_outcome``.  Nodes made ready here wait for the next call.
        Actions run outside the instance lock, so outcomes can be reported
        while a slow action is in progress.
        """
        started = self.start_ready(instance_id)
        entry = self._entry(instance_id)
        for node, context in started:
            # An outcome may have been reported since the node was started.
            if not self._still_running(entry, node.id):
                continue
            outcome = self.run_action(node, context)
            if outcome is None:
                continue
            with entry.lock:
                if self._still_running(entry, node.id):
                    self._apply(entry, node.id, outcome)
        return [node.id for node, _ in started]

    def _still_running(self, entry: _Entry, node_id: str) -> bool:
        with entry.lock:
            return (
                not entry.instance.sealed
                and entry.instance.node_states[node_id] == ExecutionState.RUNNING
            )

    def run_action(self, node: NodeInstance, context: ActionContext) -> Outcome | None:
        """Invoke the node's action; an exception becomes a failure outcome."""
        try:
            return self.runtime.run(node, context)
        except Exception as exc:
            logger.exception("action for node %s raised", node.id)
            return Outcome.failure(str(NodeActionFailed(node.id, str(exc))))

    def report_outcome(self, instance_id: str, node_id: str, outcome: Outcome) -> Instance:
        """Deliver the outcome of a node left running by ``advance``.

        A ready node may also be reported directly when an external runtime
        picked it up without going through ``advance``.
        """
        self.policy.require(Operation.REPORT_OUTCOME)
        entry = self._entry(instance_id)
        with entry.lock:
            instance = entry.instance
            if instance.sealed:
                raise InstanceSealed(instance_id)
            if node_id not in instance.node_states:
                raise NotFound("node", node_id)
            state = instance.node_states[node_id]
            if state not in ACTIVE_STATES:
                raise NodeNotRunning(node_id, state.value)
            self._apply(entry, node_id, outcome)
            return instance

    def terminate(self, instance_id: str) -> Instance:
        self.policy.require(Operation.TERMINATE)
        entry = self._entry(instance_id)
        with entry.lock:
            instance = entry.instance
            if instance.sealed:
                raise InstanceSealed(instance_id)
            self._skip_remaining(entry)
            self._seal(entry, InstanceStatus.TERMINATED)
            return instance

    def save_snapshot(self, instance_id: str, adapter) -> None:
        self.policy.require(Operation.SAVE_INSTANCE)
        entry = self._entry(instance_id)
        with entry.lock:
            adapter.save_instance_snapshot(entry.instance)

    # -- state machine ------------------------------------------------------

    def _set_state(self, entry: _Entry, node_id: str, state: ExecutionState) -> None:
        entry.instance.node_states[node_id] = state
        logger.debug("instance %s: %s -> %s", entry.instance.id, node_id, state.value)
        self._emit({
            "type": "node_state",
            "instance_id": entry.instance.id,
            "node_id": node_id,
            "state": state.value,
        })

    def _context(self, entry: _Entry, node_id: str) -> ActionContext:
        instance = entry.instance
        inputs = {}
        for pred in entry.plan.forward_preds[node_id]:
            if instance.node_states.get(pred) == ExecutionState.COMPLETED:
                inputs[pred] = instance.outputs.get(pred, {})
        return ActionContext(
            instance_id=instance.id,
            graph_id=instance.graph_id,
            parameters=dict(instance.parameters),
            inputs=inputs,
            iteration=instance.iterations.get(node_id, 0),
            user=instance.created_by,
        )

    def _recoverable(self, entry: _Entry, node_id: str) -> bool:
        node = entry.graph.nodes[node_id]
        default = False
        if ShapeRegistry.has(node.node_type):
            default = ShapeRegistry.get(node.node_type).RECOVERABLE
        return bool(node.properties.get("recoverable", default))

    def _apply(self, entry: _Entry, node_id: str, outcome: Outcome) -> None:
        instance = entry.instance
        signals: deque[tuple[str, bool]] = deque()
        body = entry.plan.loop_bodies.get(node_id, set())

        if outcome.status == OutcomeStatus.SUCCESS:
            instance.outputs[node_id] = dict(outcome.output)
            self._set_state(entry, node_id, ExecutionState.COMPLETED)
            for edge_id, port, target in entry.plan.outgoing[node_id]:
                selected = outcome.branches is None or port in outcome.branches
                # While a loop iterates, its exit branches stay open.
                if not selected and body and target not in body:
                    continue
                signals.append((edge_id, selected))
        else:
            if outcome.status == OutcomeStatus.FAILURE:
                instance.errors[node_id] = outcome.error or "action failed"
                logger.warning(
                    "instance %s: node %s failed: %s",
                    instance.id, node_id, instance.errors[node_id],
                )
                self._set_state(entry, node_id, ExecutionState.FAILED)
            else:
                self._set_state(entry, node_id, ExecutionState.SKIPPED)
            for edge_id, _, _ in entry.plan.outgoing[node_id]:
                signals.append((edge_id, False))

        self._propagate(entry, signals)
        self._settle(entry)

    def _propagate(self, entry: _Entry, signals: deque) -> None:
        instance = entry.instance
        plan = entry.plan
        while signals:
            edge_id, fired = signals.popleft()
            instance.edge_signals[edge_id] = fired

            loop_id = plan.back_edges.get(edge_id)
            if loop_id is not None:
                if fired:
                    self._reenter(entry, loop_id)
                else:
                    signals.extend(self._abandon_loop(entry, loop_id))
                continue

            target = plan.edge_target[edge_id]
            if instance.node_states[target] != ExecutionState.PENDING:
                continue
            incoming = plan.forward_in[target]
            if any(e not in instance.edge_signals for e in incoming):
                continue
            if entry.graph.is_join(target) or any(instance.edge_signals[e] for e in incoming):
                self._set_state(entry, target, ExecutionState.READY)
            else:
                self._set_state(entry, target, ExecutionState.SKIPPED)
                for out_edge, _, _ in plan.outgoing[target]:
                    signals.append((out_edge, False))

    def _reenter(self, entry: _Entry, loop_id: str) -> None:
        instance = entry.instance
        plan = entry.plan
        body = plan.loop_bodies.get(loop_id, set())
        for node_id in sorted(body, key=plan.order.index):
            self._set_state(entry, node_id, ExecutionState.PENDING)
            instance.errors.pop(node_id, None)
            instance.iterations.pop(node_id, None)
        for edge_id, target in plan.edge_target.items():
            if target in body or plan.back_edges.get(edge_id) == loop_id:
                instance.edge_signals.pop(edge_id, None)
        instance.iterations[loop_id] = instance.iterations.get(loop_id, 0) + 1
        logger.debug(
            "instance %s: loop %s iteration %d",
            instance.id, loop_id, instance.iterations[loop_id],
        )
        self._set_state(entry, loop_id, ExecutionState.READY)

    def _abandon_loop(self, entry: _Entry, loop_id: str) -> list[tuple[str, bool]]:
        """A loop whose body never returned closes its still-open branches."""
        instance = entry.instance
        own = [e for e, loop in entry.plan.back_edges.items() if loop == loop_id]
        if any(instance.edge_signals.get(e) is not False for e in own):
            return []
        return [
            (edge_id, False)
            for edge_id, _, _ in entry.plan.outgoing[loop_id]
            if edge_id not in instance.edge_signals
        ]

    def _skip_remaining(self, entry: _Entry) -> None:
        for node_id, state in entry.instance.node_states.items():
            if state not in TERMINAL_STATES:
                self._set_state(entry, node_id, ExecutionState.SKIPPED)

    def _tainted(self, entry: _Entry) -> set[str]:
        """Nodes that cannot complete because of a non-recoverable failure.

        A join stays clean while any of its branches is clean, since it runs
        once every branch has finished, however they finished.
        """
        states = entry.instance.node_states
        tainted: set[str] = set()
        for node_id in entry.plan.order:
            preds = entry.plan.forward_preds[node_id]
            bad = [
                pred for pred in preds
                if pred in tainted
                or (states[pred] == ExecutionState.FAILED and not self._recoverable(entry, pred))
            ]
            if not bad:
                continue
            if not entry.graph.is_join(node_id) or len(bad) == len(preds):
                tainted.add(node_id)
        return tainted

    def _settle(self, entry: _Entry) -> None:
        """Seal the instance once it can make no further progress."""
        instance = entry.instance
        if instance.sealed:
            return
        states = instance.node_states
        hard_failure = any(
            state == ExecutionState.FAILED and not self._recoverable(entry, nid)
            for nid, state in states.items()
        )
        if hard_failure:
            # The flow can still complete only through a sink no failure feeds into.
            tainted = self._tainted(entry)
            alive = any(
                sink not in tainted
                and states[sink] not in (ExecutionState.FAILED, ExecutionState.SKIPPED)
                for sink in entry.plan.sinks
            )
            if not alive:
                self._skip_remaining(entry)
                self._seal(entry, InstanceStatus.FAILED)
                return
        if instance.is_quiescent:
            self._seal(entry, InstanceStatus.COMPLETED)

    def _seal(self, entry: _Entry, status: InstanceStatus) -> None:
        instance = entry.instance
        instance.status = status
        instance.sealed = True
        logger.info("instance %s sealed as %s", instance.id, status.value)
        self._emit({
            "type": "instance_state",
            "instance_id": instance.id,
            "status": status.value,
            "sealed": True,
        })
