"""Error taxonomy for the flow engine.

Structural and policy errors reject an operation and leave the graph or
instance untouched.  Execution errors describe instance-level conflicts;
a failing node action is recorded on the node, not raised.  Integration
errors come from the persistence adapter and are left to the caller to retry.
"""
from typing import Any


class OpenFlowError(Exception):
    """Base class for every error raised by the engine."""


# -- Structural ---------------------------------------------------------------

class StructuralError(OpenFlowError):
    pass


class DuplicateId(StructuralError):
    def __init__(self, kind: str, item_id: str):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"Duplicate {kind} id: {item_id}")


class InvalidType(StructuralError):
    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown shape type: {node_type}")


class NotFound(StructuralError):
    def __init__(self, kind: str, item_id: str):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind.capitalize()} not found: {item_id}")


class PortDirectionMismatch(StructuralError):
    def __init__(self, source_port: str, target_port: str):
        self.source_port = source_port
        self.target_port = target_port
        super().__init__(
            f"Cannot connect {source_port} -> {target_port}: "
            "source must be an 'out' port and target an 'in' port"
        )


class PortNotDeclared(StructuralError):
    def __init__(self, node_type: str, port_name: str, direction: str):
        self.node_type = node_type
        self.port_name = port_name
        self.direction = direction
        super().__init__(f"Shape {node_type} declares no '{direction}' port named '{port_name}'")


class PortAlreadyBound(StructuralError):
    def __init__(self, port_id: str):
        self.port_id = port_id
        super().__init__(f"Input port {port_id} already has an incoming connection")


class WouldCreateCycle(StructuralError):
    def __init__(self, source_port: str, target_port: str):
        self.source_port = source_port
        self.target_port = target_port
        super().__init__(
            f"Connecting {source_port} -> {target_port} would create a cycle "
            "through non-loop nodes"
        )


class GraphReadOnly(StructuralError):
    def __init__(self, graph_id: str):
        self.graph_id = graph_id
        super().__init__(f"Graph {graph_id} is frozen by a running instance")


class GraphInvalid(StructuralError):
    def __init__(self, violations: list[Any]):
        self.violations = violations
        super().__init__(f"Graph validation failed: {[str(v) for v in violations]}")


# -- Policy -------------------------------------------------------------------

class PolicyError(OpenFlowError):
    pass


class NotPermittedInMode(PolicyError):
    def __init__(self, operation: str, mode: Any, reason: str = ""):
        self.operation = operation
        self.mode = mode
        self.reason = reason
        msg = f"Operation '{operation}' is not permitted in {getattr(mode, 'label', mode)} mode"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class UnknownMode(PolicyError):
    def __init__(self, value: Any):
        self.value = value
        super().__init__(f"Unknown mode flag: {value!r}")


# -- Execution ----------------------------------------------------------------

class ExecutionError(OpenFlowError):
    pass


class InstanceSealed(ExecutionError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id} is sealed")


class NodeActionFailed(ExecutionError):
    def __init__(self, node_id: str, cause: str):
        self.node_id = node_id
        self.cause = cause
        super().__init__(f"Action for node {node_id} failed: {cause}")


class NodeNotRunning(ExecutionError):
    def __init__(self, node_id: str, state: Any):
        self.node_id = node_id
        self.state = state
        super().__init__(f"Node {node_id} is not running (state: {state})")


# -- Integration --------------------------------------------------------------

class IntegrationError(OpenFlowError):
    pass


class PersistenceUnavailable(IntegrationError):
    pass


class RecordNotFound(PersistenceUnavailable):
    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} not found in store: {record_id}")
