"""Session modes and the capability table that gates every operation."""
from enum import Enum, IntEnum
from typing import Any

from .errors import NotPermittedInMode, UnknownMode
from .graph import Graph, GraphKind


class Mode(IntEnum):
    DESIGN = 0
    INSTANTIATE = 1
    VIEW = 2
    COMPONENT_DEV = 4

    @classmethod
    def parse(cls, value: Any) -> "Mode":
        """Accept the page's mode flag as an int or a numeric string."""
        if isinstance(value, Mode):
            return value
        if isinstance(value, bool):
            raise UnknownMode(value)
        if isinstance(value, str):
            try:
                value = int(value.strip())
            except ValueError:
                raise UnknownMode(value) from None
        if not isinstance(value, int):
            raise UnknownMode(value)
        try:
            return cls(value)
        except ValueError:
            raise UnknownMode(value) from None

    @property
    def label(self) -> str:
        return self.name.lower()


class Capability(str, Enum):
    EDIT_STRUCTURE = "edit_structure"
    EDIT_PROPERTIES = "edit_properties"
    EDIT_INSTANCE_PARAMETERS = "edit_instance_parameters"
    INSTANTIATE = "instantiate"
    RUN_INSTANCE = "run_instance"
    SAVE_DEFINITION = "save_definition"
    VIEW = "view"


class Operation(str, Enum):
    ADD_NODE = "add_node"
    REMOVE_NODE = "remove_node"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    MOVE_NODE = "move_node"
    SET_PROPERTY = "set_property"
    SET_INSTANCE_PARAMETER = "set_instance_parameter"
    INSTANTIATE = "instantiate"
    ADVANCE = "advance"
    REPORT_OUTCOME = "report_outcome"
    TERMINATE = "terminate"
    SAVE_INSTANCE = "save_instance"
    SAVE_DEFINITION = "save_definition"
    VIEW = "view"


REQUIRED_CAPABILITY: dict[Operation, Capability] = {
    Operation.ADD_NODE: Capability.EDIT_STRUCTURE,
    Operation.REMOVE_NODE: Capability.EDIT_STRUCTURE,
    Operation.CONNECT: Capability.EDIT_STRUCTURE,
    Operation.DISCONNECT: Capability.EDIT_STRUCTURE,
    Operation.MOVE_NODE: Capability.EDIT_STRUCTURE,
    Operation.SET_PROPERTY: Capability.EDIT_PROPERTIES,
    Operation.SET_INSTANCE_PARAMETER: Capability.EDIT_INSTANCE_PARAMETERS,
    Operation.INSTANTIATE: Capability.INSTANTIATE,
    Operation.ADVANCE: Capability.RUN_INSTANCE,
    Operation.REPORT_OUTCOME: Capability.RUN_INSTANCE,
    Operation.TERMINATE: Capability.RUN_INSTANCE,
    Operation.SAVE_INSTANCE: Capability.RUN_INSTANCE,
    Operation.SAVE_DEFINITION: Capability.SAVE_DEFINITION,
    Operation.VIEW: Capability.VIEW,
}

MODE_CAPABILITIES: dict[Mode, frozenset[Capability]] = {
    Mode.DESIGN: frozenset({
        Capability.EDIT_STRUCTURE,
        Capability.EDIT_PROPERTIES,
        Capability.SAVE_DEFINITION,
        Capability.VIEW,
    }),
    Mode.INSTANTIATE: frozenset({
        Capability.EDIT_INSTANCE_PARAMETERS,
        Capability.INSTANTIATE,
        Capability.RUN_INSTANCE,
        Capability.VIEW,
    }),
    Mode.VIEW: frozenset({Capability.VIEW}),
    Mode.COMPONENT_DEV: frozenset({
        Capability.EDIT_STRUCTURE,
        Capability.EDIT_PROPERTIES,
        Capability.SAVE_DEFINITION,
        Capability.VIEW,
    }),
}

# Structural edits in these modes are confined to graphs of the given kind.
STRUCTURE_SCOPE: dict[Mode, GraphKind] = {
    Mode.COMPONENT_DEV: GraphKind.COMPONENT,
}


class ModePolicy:
    """Capability gate for one session's mode."""

    def __init__(self, mode: Any):
        self.mode = Mode.parse(mode)

    @property
    def capabilities(self) -> frozenset[Capability]:
        return MODE_CAPABILITIES[self.mode]

    @property
    def editable(self) -> bool:
        """Whether the editor canvas accepts structural edits at all."""
        return Capability.EDIT_STRUCTURE in self.capabilities

    def allows(self, operation: Operation, graph: Graph | None = None) -> bool:
        capability = REQUIRED_CAPABILITY[Operation(operation)]
        if capability not in self.capabilities:
            return False
        if capability == Capability.EDIT_STRUCTURE and graph is not None:
            scope = STRUCTURE_SCOPE.get(self.mode)
            if scope is not None and graph.kind != scope:
                return False
        return True

    def require(self, operation: Operation, graph: Graph | None = None) -> None:
        operation = Operation(operation)
        if self.allows(operation, graph):
            return
        reason = ""
        scope = STRUCTURE_SCOPE.get(self.mode)
        if scope is not None and REQUIRED_CAPABILITY[operation] in self.capabilities:
            reason = f"only {scope.value} graphs can be edited"
        raise NotPermittedInMode(operation.value, self.mode, reason)
