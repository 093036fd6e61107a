"""Graph validation: unknown shapes, port wiring, required inputs, cycles.

Validation never stops at the first problem; it returns every violation so
the caller decides whether a partial graph may be saved.
"""
from collections import deque
from dataclasses import dataclass

from ..shapes.base import PortDirection
from ..shapes.registry import ShapeRegistry
from .graph import Graph


@dataclass(frozen=True)
class Violation:
    code: str
    message: str
    node_id: str | None = None
    edge_id: str | None = None
    port_id: str | None = None

    def __str__(self) -> str:
        return self.message


def validate_graph(graph: Graph) -> list[Violation]:
    """Validate a graph, returning a list of violations (empty = valid)."""
    violations: list[Violation] = []
    violations.extend(_check_shapes(graph))
    violations.extend(_check_ports(graph))
    violations.extend(_check_edges(graph))
    violations.extend(_check_required_inputs(graph))
    violations.extend(_check_cycles(graph))
    violations.extend(_check_entry(graph))
    return violations


def _check_shapes(graph: Graph) -> list[Violation]:
    return [
        Violation(
            "unknown_type",
            f"Node '{node_id}': unknown shape type '{node.node_type}'",
            node_id=node_id,
        )
        for node_id, node in graph.nodes.items()
        if not ShapeRegistry.has(node.node_type)
    ]


def _check_ports(graph: Graph) -> list[Violation]:
    """Orphan ports: ports whose back-reference or declaration does not fit their node."""
    violations: list[Violation] = []
    seen: set[str] = set()
    for node_id, node in graph.nodes.items():
        declared = {}
        if ShapeRegistry.has(node.node_type):
            declared = {s.name: s.direction for s in ShapeRegistry.get(node.node_type).PORTS()}
        for port in node.ports:
            if port.id in seen:
                violations.append(Violation(
                    "duplicate_port", f"Port id '{port.id}' is used more than once",
                    node_id=node_id, port_id=port.id,
                ))
            seen.add(port.id)
            if port.node_id != node_id:
                violations.append(Violation(
                    "orphan_port",
                    f"Port '{port.id}' on node '{node_id}' refers to node '{port.node_id}'",
                    node_id=node_id, port_id=port.id,
                ))
            elif declared and declared.get(port.name) != port.direction:
                violations.append(Violation(
                    "orphan_port",
                    f"Port '{port.id}' is not declared by shape '{node.node_type}'",
                    node_id=node_id, port_id=port.id,
                ))
    return violations


def _check_edges(graph: Graph) -> list[Violation]:
    violations: list[Violation] = []
    ports = graph.ports
    owners = graph.port_owners()
    bound: dict[str, int] = {}
    for edge in graph.edges.values():
        src = ports.get(edge.source_port)
        tgt = ports.get(edge.target_port)
        if src is None or tgt is None:
            violations.append(Violation(
                "dangling_edge", f"Edge {edge.id} references a missing port",
                edge_id=edge.id,
            ))
            continue
        if src.direction != PortDirection.OUT or tgt.direction != PortDirection.IN:
            violations.append(Violation(
                "direction_mismatch",
                f"Edge {edge.id}: {src.direction.value} -> {tgt.direction.value} "
                "(expected out -> in)",
                edge_id=edge.id,
            ))
            continue
        bound[tgt.id] = bound.get(tgt.id, 0) + 1

    for port_id, count in bound.items():
        node_id = owners[port_id]
        if count > 1 and not graph.is_join(node_id):
            violations.append(Violation(
                "port_overbound",
                f"Input port '{port_id}' has {count} incoming connections "
                f"but node '{node_id}' cannot join",
                node_id=node_id, port_id=port_id,
            ))
    return violations


def _check_required_inputs(graph: Graph) -> list[Violation]:
    """Required in-ports of every non-start node must be connected."""
    violations: list[Violation] = []
    connected = {e.target_port for e in graph.edges.values()}
    starts = set(graph.sources())
    for node_id, node in graph.nodes.items():
        if node_id in starts or not ShapeRegistry.has(node.node_type):
            continue
        for spec in ShapeRegistry.get(node.node_type).in_ports():
            if not spec.required:
                continue
            port = node.port(spec.name)
            if port is None or port.id not in connected:
                violations.append(Violation(
                    "required_input",
                    f"Node '{node_id}' ({node.node_type}): "
                    f"required input '{spec.name}' not connected",
                    node_id=node_id,
                    port_id=port.id if port else None,
                ))
    return violations


def _kahn_leftover(nodes: list[str], arcs: list[tuple[str, str]]) -> list[str]:
    """Run Kahn's algorithm; return the nodes left on a cycle."""
    in_degree: dict[str, int] = {nid: 0 for nid in nodes}
    adj: dict[str, list[str]] = {nid: [] for nid in nodes}
    for src, tgt in arcs:
        in_degree[tgt] += 1
        adj[src].append(tgt)

    queue = deque(nid for nid, deg in in_degree.items() if deg == 0)
    while queue:
        node_id = queue.popleft()
        del in_degree[node_id]
        for succ in adj[node_id]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                queue.append(succ)
    return list(in_degree)


def _check_cycles(graph: Graph) -> list[Violation]:
    """Cycles must pass through a loop shape and close on its loopback port."""
    owners = graph.port_owners()
    arcs = []
    for edge in graph.edges.values():
        src, tgt = owners.get(edge.source_port), owners.get(edge.target_port)
        if src is not None and tgt is not None:
            arcs.append((edge, src, tgt))

    plain = [nid for nid in graph.nodes if not graph.is_loop(nid)]
    plain_set = set(plain)
    stuck = _kahn_leftover(
        plain, [(s, t) for _, s, t in arcs if s in plain_set and t in plain_set],
    )
    if stuck:
        return [Violation(
            "illegal_cycle",
            f"Graph contains a cycle through non-loop nodes: {sorted(stuck)}",
        )]

    forward = [(s, t) for e, s, t in arcs if not graph.is_loopback_edge(e)]
    stuck = _kahn_leftover(list(graph.nodes), forward)
    if stuck:
        return [Violation(
            "unclosed_loop",
            f"Cycle does not return through a loopback port: {sorted(stuck)}",
        )]
    return []


def _check_entry(graph: Graph) -> list[Violation]:
    if graph.sources():
        return []
    return [Violation("no_entry", "Graph has no start node")]
