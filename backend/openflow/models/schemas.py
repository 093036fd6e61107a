"""Pydantic schemas for API request/response models and stored records."""
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from ..engine.graph import Edge, Graph, GraphKind, NodeInstance, Port, make_ports
from ..engine.instance import (
    ExecutionState, Instance, InstanceStatus, Outcome, OutcomeStatus,
)
from ..engine.operations import (
    AddNode, Connect, Disconnect, EditOperation, MoveNode, RemoveNode, SetProperty,
)
from ..shapes.base import PortDirection
from ..shapes.registry import ShapeRegistry


class PortSchema(BaseModel):
    id: str
    name: str
    direction: PortDirection
    node_id: str


class NodeSchema(BaseModel):
    id: str
    node_type: str
    ports: list[PortSchema] = []
    properties: dict[str, Any] = {}
    position: dict[str, float] = {}


class EdgeSchema(BaseModel):
    id: str
    source_port: str
    target_port: str


class GraphSchema(BaseModel):
    id: str = Field("", pattern=r"^[\w.-]*$")
    name: str = ""
    kind: GraphKind = GraphKind.FLOW
    nodes: list[NodeSchema] = []
    edges: list[EdgeSchema] = []


class FlowDefinition(BaseModel):
    """A stored flow definition."""
    graph: GraphSchema
    revision: int = 0
    saved_at: datetime | None = None


class InstanceSchema(BaseModel):
    id: str
    graph_id: str
    status: InstanceStatus
    sealed: bool = False
    node_states: dict[str, ExecutionState] = {}
    active_set: list[str] = []
    parameters: dict[str, Any] = {}
    outputs: dict[str, dict[str, Any]] = {}
    errors: dict[str, str] = {}
    iterations: dict[str, int] = {}
    edge_signals: dict[str, bool] = {}
    created_by: str | None = None
    created_at: datetime | None = None


def graph_to_schema(graph: Graph) -> GraphSchema:
    return GraphSchema(
        id=graph.id,
        name=graph.name,
        kind=graph.kind,
        nodes=[
            NodeSchema(
                id=n.id, node_type=n.node_type,
                ports=[
                    PortSchema(id=p.id, name=p.name, direction=p.direction, node_id=p.node_id)
                    for p in n.ports
                ],
                properties=n.properties, position=n.position,
            )
            for n in graph.nodes.values()
        ],
        edges=[
            EdgeSchema(id=e.id, source_port=e.source_port, target_port=e.target_port)
            for e in graph.edges.values()
        ],
    )


def _ports(node: NodeSchema) -> list[Port]:
    if not node.ports and ShapeRegistry.has(node.node_type):
        return make_ports(node.id, node.node_type)
    return [
        Port(id=p.id, name=p.name, direction=p.direction, node_id=p.node_id)
        for p in node.ports
    ]


def schema_to_graph(schema: GraphSchema) -> Graph:
    """Rebuild a graph as stored; structural checks are left to validation.

    Nodes sent without ports get the default ports of their shape.
    """
    nodes = {
        n.id: NodeInstance(
            id=n.id, node_type=n.node_type, ports=_ports(n),
            properties=dict(n.properties), position=dict(n.position),
        )
        for n in schema.nodes
    }
    edges = {
        e.id: Edge(id=e.id, source_port=e.source_port, target_port=e.target_port)
        for e in schema.edges
    }
    return Graph(id=schema.id, name=schema.name, kind=schema.kind, nodes=nodes, edges=edges)


def instance_to_schema(instance: Instance) -> InstanceSchema:
    return InstanceSchema(
        id=instance.id,
        graph_id=instance.graph_id,
        status=instance.status,
        sealed=instance.sealed,
        node_states=instance.node_states,
        active_set=sorted(instance.active_set),
        parameters=instance.parameters,
        outputs=instance.outputs,
        errors=instance.errors,
        iterations=instance.iterations,
        edge_signals=instance.edge_signals,
        created_by=instance.created_by,
        created_at=instance.created_at,
    )


def schema_to_instance(schema: InstanceSchema) -> Instance:
    instance = Instance(
        id=schema.id,
        graph_id=schema.graph_id,
        node_states=dict(schema.node_states),
        status=schema.status,
        sealed=schema.sealed,
        parameters=dict(schema.parameters),
        outputs=dict(schema.outputs),
        errors=dict(schema.errors),
        iterations=dict(schema.iterations),
        edge_signals=dict(schema.edge_signals),
        created_by=schema.created_by,
    )
    if schema.created_at is not None:
        instance.created_at = schema.created_at
    return instance


# -- editor operations --------------------------------------------------------

class AddNodeOp(BaseModel):
    op: Literal["add_node"]
    node_id: str
    node_type: str
    properties: dict[str, Any] = {}
    position: dict[str, float] = {}

    def to_operation(self) -> EditOperation:
        return AddNode(self.node_id, self.node_type, dict(self.properties), dict(self.position))


class RemoveNodeOp(BaseModel):
    op: Literal["remove_node"]
    node_id: str

    def to_operation(self) -> EditOperation:
        return RemoveNode(self.node_id)


class ConnectOp(BaseModel):
    op: Literal["connect"]
    source_port: str
    target_port: str
    edge_id: str | None = None

    def to_operation(self) -> EditOperation:
        return Connect(self.source_port, self.target_port, self.edge_id)


class DisconnectOp(BaseModel):
    op: Literal["disconnect"]
    edge_id: str

    def to_operation(self) -> EditOperation:
        return Disconnect(self.edge_id)


class MoveNodeOp(BaseModel):
    op: Literal["move_node"]
    node_id: str
    x: float
    y: float

    def to_operation(self) -> EditOperation:
        return MoveNode(self.node_id, self.x, self.y)


class SetPropertyOp(BaseModel):
    op: Literal["set_property"]
    node_id: str
    name: str
    value: Any = None
    delete: bool = False

    def to_operation(self) -> EditOperation:
        return SetProperty(self.node_id, self.name, self.value, self.delete)


OperationSchema = Annotated[
    Union[AddNodeOp, RemoveNodeOp, ConnectOp, DisconnectOp, MoveNodeOp, SetPropertyOp],
    Field(discriminator="op"),
]


# -- requests / responses ----------------------------------------------------

class SessionRequest(BaseModel):
    mode: int | str
    flow_id: str | None = None
    graph: GraphSchema | None = None
    user: str | None = None


class SessionResponse(BaseModel):
    session_id: str
    mode: str
    editable: bool
    capabilities: list[str]
    revision: int
    graph: GraphSchema


class RevisionResponse(BaseModel):
    revision: int


class ChangeSchema(BaseModel):
    revision: int
    operation: str
    payload: dict[str, Any]
    user: str | None = None
    timestamp: datetime


class ViolationSchema(BaseModel):
    code: str
    message: str
    node_id: str | None = None
    edge_id: str | None = None
    port_id: str | None = None


class InstantiateRequest(BaseModel):
    parameters: dict[str, Any] = {}


class ParameterRequest(BaseModel):
    name: str
    value: Any = None


class OutcomeRequest(BaseModel):
    status: OutcomeStatus
    branches: list[str] | None = None
    error: str | None = None
    output: dict[str, Any] = {}

    def to_outcome(self) -> Outcome:
        branches = frozenset(self.branches) if self.branches is not None else None
        return Outcome(self.status, branches=branches, error=self.error, output=dict(self.output))


class AdvanceResponse(BaseModel):
    started: list[str]
    instance: InstanceSchema
