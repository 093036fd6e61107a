"""Editor operations.

Every operation knows which mode-gated ``Operation`` it is and, when applied,
returns the operation that undoes it.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Protocol

from .graph import Edge, Graph, NodeInstance
from .mode import Operation


class EditOperation(Protocol):
    kind: ClassVar[Operation]

    def apply(self, graph: Graph) -> "EditOperation": ...

    def to_dict(self) -> dict[str, Any]: ...


class _Base:
    kind: ClassVar[Operation]

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.kind.value, **asdict(self)}


@dataclass
class AddNode(_Base):
    kind: ClassVar[Operation] = Operation.ADD_NODE
    node_id: str
    node_type: str
    properties: dict[str, Any] = field(default_factory=dict)
    position: dict[str, float] = field(default_factory=dict)

    def apply(self, graph: Graph) -> "RemoveNode":
        graph.add_node(NodeInstance(
            id=self.node_id,
            node_type=self.node_type,
            properties=dict(self.properties),
            position=dict(self.position),
        ))
        return RemoveNode(self.node_id)


@dataclass
class RemoveNode(_Base):
    kind: ClassVar[Operation] = Operation.REMOVE_NODE
    node_id: str

    def apply(self, graph: Graph) -> "RestoreNode":
        node, edges = graph.remove_node(self.node_id)
        return RestoreNode(node, edges)


@dataclass
class RestoreNode(_Base):
    """Undo of ``RemoveNode``: puts the node back with the edges it lost."""
    kind: ClassVar[Operation] = Operation.ADD_NODE
    node: NodeInstance
    edges: list[Edge]

    def apply(self, graph: Graph) -> RemoveNode:
        graph.restore_node(self.node, self.edges)
        return RemoveNode(self.node.id)


@dataclass
class Connect(_Base):
    kind: ClassVar[Operation] = Operation.CONNECT
    source_port: str
    target_port: str
    edge_id: str | None = None

    def apply(self, graph: Graph) -> "Disconnect":
        edge = graph.connect(self.source_port, self.target_port, self.edge_id)
        return Disconnect(edge.id)


@dataclass
class Disconnect(_Base):
    kind: ClassVar[Operation] = Operation.DISCONNECT
    edge_id: str

    def apply(self, graph: Graph) -> Connect:
        edge = graph.disconnect(self.edge_id)
        return Connect(edge.source_port, edge.target_port, edge.id)


@dataclass
class MoveNode(_Base):
    kind: ClassVar[Operation] = Operation.MOVE_NODE
    node_id: str
    x: float
    y: float

    def apply(self, graph: Graph) -> "MoveNode":
        previous = graph.move_node(self.node_id, self.x, self.y)
        return MoveNode(self.node_id, previous.get("x", 0.0), previous.get("y", 0.0))


_MISSING = object()


@dataclass
class SetProperty(_Base):
    """Set a node property, or drop it when ``delete`` is true."""
    kind: ClassVar[Operation] = Operation.SET_PROPERTY
    node_id: str
    name: str
    value: Any = None
    delete: bool = False

    def apply(self, graph: Graph) -> "SetProperty":
        previous = graph.get_node(self.node_id).properties.get(self.name, _MISSING)
        if self.delete:
            graph.remove_property(self.node_id, self.name)
        else:
            graph.set_property(self.node_id, self.name, self.value)
        if previous is _MISSING:
            return SetProperty(self.node_id, self.name, delete=True)
        return SetProperty(self.node_id, self.name, previous)
