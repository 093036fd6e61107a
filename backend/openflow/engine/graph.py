"""Graph data structures for the flow engine."""
import copy
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from logging import getLogger
from typing import Any

from ..shapes.base import PortDirection
from ..shapes.registry import ShapeRegistry
from .errors import (
    DuplicateId, GraphReadOnly, NotFound, PortAlreadyBound,
    PortDirectionMismatch, PortNotDeclared, WouldCreateCycle,
)

logger = getLogger(__name__)


@dataclass
class Port:
    id: str
    name: str
    direction: PortDirection
    node_id: str  # back-reference to the owning node


@dataclass
class NodeInstance:
    id: str
    node_type: str
    ports: list[Port] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)
    position: dict[str, float] = field(default_factory=dict)

    def port(self, name: str) -> Port | None:
        for p in self.ports:
            if p.name == name:
                return p
        return None


@dataclass
class Edge:
    id: str
    source_port: str
    target_port: str


class GraphKind(str, Enum):
    FLOW = "flow"
    COMPONENT = "component"


def default_port_id(node_id: str, port_name: str) -> str:
    return f"{node_id}.{port_name}"


def make_ports(node_id: str, node_type: str) -> list[Port]:
    """Build a node's ports from its shape's descriptor."""
    shape_cls = ShapeRegistry.get(node_type)
    return [
        Port(
            id=default_port_id(node_id, spec.name),
            name=spec.name,
            direction=spec.direction,
            node_id=node_id,
        )
        for spec in shape_cls.PORTS()
    ]


@dataclass
class Graph:
    id: str = ""
    name: str = ""
    kind: GraphKind = GraphKind.FLOW
    nodes: dict[str, NodeInstance] = field(default_factory=dict)
    edges: dict[str, Edge] = field(default_factory=dict)
    frozen: bool = field(default=False, compare=False)

    # -- lookups ------------------------------------------------------------

    @property
    def ports(self) -> dict[str, Port]:
        return {p.id: p for node in self.nodes.values() for p in node.ports}

    def port_owners(self) -> dict[str, str]:
        """Port id -> id of the node that holds the port."""
        return {p.id: nid for nid, node in self.nodes.items() for p in node.ports}

    def get_node(self, node_id: str) -> NodeInstance:
        node = self.nodes.get(node_id)
        if node is None:
            raise NotFound("node", node_id)
        return node

    def get_port(self, port_id: str) -> Port:
        port = self.ports.get(port_id)
        if port is None:
            raise NotFound("port", port_id)
        return port

    def get_edge(self, edge_id: str) -> Edge:
        edge = self.edges.get(edge_id)
        if edge is None:
            raise NotFound("edge", edge_id)
        return edge

    def source_node(self, edge: Edge) -> str:
        owner = self.port_owners().get(edge.source_port)
        if owner is None:
            raise NotFound("port", edge.source_port)
        return owner

    def target_node(self, edge: Edge) -> str:
        owner = self.port_owners().get(edge.target_port)
        if owner is None:
            raise NotFound("port", edge.target_port)
        return owner

    def get_incoming_edges(self, node_id: str) -> list[Edge]:
        port_ids = {p.id for p in self.get_node(node_id).ports}
        return [e for e in self.edges.values() if e.target_port in port_ids]

    def get_outgoing_edges(self, node_id: str) -> list[Edge]:
        port_ids = {p.id for p in self.get_node(node_id).ports}
        return [e for e in self.edges.values() if e.source_port in port_ids]

    def get_predecessors(self, node_id: str) -> set[str]:
        return {self.source_node(e) for e in self.get_incoming_edges(node_id)}

    def get_successors(self, node_id: str) -> set[str]:
        return {self.target_node(e) for e in self.get_outgoing_edges(node_id)}

    def adjacency(self) -> dict[str, list[str]]:
        """Successor lists over well-formed edges, one entry per edge."""
        owners = self.port_owners()
        adj: dict[str, list[str]] = {nid: [] for nid in self.nodes}
        for e in self.edges.values():
            src, tgt = owners.get(e.source_port), owners.get(e.target_port)
            if src is not None and tgt is not None:
                adj[src].append(tgt)
        return adj

    def sinks(self) -> list[str]:
        """Nodes without outgoing connections."""
        return [nid for nid, succs in self.adjacency().items() if not succs]

    def sources(self) -> list[str]:
        """Start nodes: nodes no forward (non-loopback) edge points into."""
        owners = self.port_owners()
        entered = {
            owners.get(e.target_port) for e in self.edges.values()
            if not self.is_loopback_edge(e)
        }
        return [nid for nid in self.nodes if nid not in entered]

    def _shape(self, node_id: str):
        node_type = self.get_node(node_id).node_type
        return ShapeRegistry.get(node_type) if ShapeRegistry.has(node_type) else None

    def is_join(self, node_id: str) -> bool:
        shape = self._shape(node_id)
        return bool(shape and shape.JOIN)

    def is_loop(self, node_id: str) -> bool:
        shape = self._shape(node_id)
        return bool(shape and shape.LOOP)

    def is_loopback_edge(self, edge: Edge) -> bool:
        """True when the edge enters a loop shape through its loopback port."""
        port = self.ports.get(edge.target_port)
        owner = self.port_owners().get(edge.target_port)
        if port is None or owner is None:
            return False
        shape = self._shape(owner)
        if shape is None:
            return False
        for spec in shape.PORTS():
            if spec.name == port.name:
                return spec.loopback
        return False

    def reaches(self, start: str, goal: str, skip_loops: bool = False) -> bool:
        """Whether ``goal`` is reachable from ``start`` along edges.

        With ``skip_loops`` the search never enters a loop-tagged node.
        """
        if skip_loops and (self.is_loop(start) or self.is_loop(goal)):
            return False
        adj = self.adjacency()

        seen = {start}
        queue = deque([start])
        while queue:
            node_id = queue.popleft()
            if node_id == goal:
                return True
            for succ in adj[node_id]:
                if succ in seen:
                    continue
                if skip_loops and self.is_loop(succ):
                    continue
                seen.add(succ)
                queue.append(succ)
        return False

    # -- mutations ----------------------------------------------------------

    def _check_writable(self) -> None:
        if self.frozen:
            raise GraphReadOnly(self.id)

    def freeze(self) -> None:
        self.frozen = True

    def add_node(self, node: NodeInstance) -> NodeInstance:
        self._check_writable()
        if node.id in self.nodes:
            raise DuplicateId("node", node.id)
        explicit = bool(node.ports)
        ports = node.ports if explicit else make_ports(node.id, node.node_type)
        self._check_ports(node.node_type, ports, explicit)
        node.ports = ports
        for port in ports:
            port.node_id = node.id
        self.nodes[node.id] = node
        logger.debug("graph %s: added node %s (%s)", self.id, node.id, node.node_type)
        return node

    def _check_ports(self, node_type: str, ports: list[Port], explicit: bool) -> None:
        """Port ids must be unique; explicit ports must match the shape's declaration."""
        declared = {
            spec.name: spec.direction
            for spec in ShapeRegistry.get(node_type).PORTS()
        }
        existing = self.ports
        seen: set[str] = set()
        for port in ports:
            if port.id in existing or port.id in seen:
                raise DuplicateId("port", port.id)
            seen.add(port.id)
            if explicit and declared.get(port.name) != port.direction:
                raise PortNotDeclared(node_type, port.name, port.direction.value)

    def remove_node(self, node_id: str) -> tuple[NodeInstance, list[Edge]]:
        """Remove a node and every edge attached to its ports."""
        self._check_writable()
        node = self.get_node(node_id)
        port_ids = {p.id for p in node.ports}
        removed = [
            e for e in self.edges.values()
            if e.source_port in port_ids or e.target_port in port_ids
        ]
        for edge in removed:
            del self.edges[edge.id]
        del self.nodes[node_id]
        logger.debug("graph %s: removed node %s and %d edge(s)", self.id, node_id, len(removed))
        return node, removed

    def restore_node(self, node: NodeInstance, edges: list[Edge]) -> None:
        """Put back a node removed by ``remove_node`` together with its edges."""
        self._check_writable()
        if node.id in self.nodes:
            raise DuplicateId("node", node.id)
        self.nodes[node.id] = node
        for edge in edges:
            self.edges[edge.id] = edge

    def connect(
        self,
        source_port_id: str,
        target_port_id: str,
        edge_id: str | None = None,
    ) -> Edge:
        self._check_writable()
        source = self.get_port(source_port_id)
        target = self.get_port(target_port_id)
        if source.direction != PortDirection.OUT or target.direction != PortDirection.IN:
            raise PortDirectionMismatch(source_port_id, target_port_id)

        edge_id = edge_id or f"{source_port_id}->{target_port_id}"
        if edge_id in self.edges:
            raise DuplicateId("edge", edge_id)

        owners = self.port_owners()
        source_node, target_node = owners[source_port_id], owners[target_port_id]

        bound = any(e.target_port == target_port_id for e in self.edges.values())
        if bound and not self.is_join(target_node):
            raise PortAlreadyBound(target_port_id)

        # The new edge closes a cycle iff the target already reaches the source.
        if self.reaches(target_node, source_node, skip_loops=True):
            raise WouldCreateCycle(source_port_id, target_port_id)

        edge = Edge(id=edge_id, source_port=source_port_id, target_port=target_port_id)
        self.edges[edge_id] = edge
        logger.debug("graph %s: connected %s", self.id, edge_id)
        return edge

    def disconnect(self, edge_id: str) -> Edge:
        self._check_writable()
        edge = self.get_edge(edge_id)
        del self.edges[edge_id]
        return edge

    def move_node(self, node_id: str, x: float, y: float) -> dict[str, float]:
        """Set a node's position, returning the previous one."""
        self._check_writable()
        node = self.get_node(node_id)
        previous = dict(node.position)
        node.position = {"x": x, "y": y}
        return previous

    def set_property(self, node_id: str, name: str, value: Any) -> None:
        self._check_writable()
        self.get_node(node_id).properties[name] = value

    def remove_property(self, node_id: str, name: str) -> None:
        self._check_writable()
        self.get_node(node_id).properties.pop(name, None)

    # -- whole-graph --------------------------------------------------------

    def copy(self) -> "Graph":
        """Deep, writable copy."""
        clone = copy.deepcopy(self)
        clone.frozen = False
        return clone

    def validate(self) -> list:
        from .validator import validate_graph
        return validate_graph(self)
