"""Base shape abstraction and port definitions."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..engine.instance import ActionContext, Outcome


class PortDirection(str, Enum):
    IN = "in"
    OUT = "out"


@dataclass
class PortSpec:
    name: str
    direction: PortDirection
    required: bool = True   # in-ports only: must be connected for a valid graph
    loopback: bool = False  # in-ports only: edges into it close a loop


@dataclass
class ShapeDefinition:
    """Serializable shape definition sent to the editor palette."""
    node_type: str
    display_name: str
    category: str
    description: str
    ports: list[PortSpec]
    join: bool
    loop: bool
    gateway: bool
    recoverable: bool


class BaseShape(ABC):
    """Abstract base class for every shape a flow can contain.

    The class attributes are the capability descriptor the graph model and
    the execution engine consult; ``run`` is the default action.
    """

    CATEGORY: str = "Uncategorized"
    DISPLAY_NAME: str = ""
    DESCRIPTION: str = ""
    JOIN: bool = False         # in-ports accept more than one connection
    LOOP: bool = False         # cycles may pass through this shape
    GATEWAY: bool = False      # outcome selects which out-ports fire
    RECOVERABLE: bool = False  # a failure does not fail the instance

    @classmethod
    @abstractmethod
    def PORTS(cls) -> list[PortSpec]:
        ...

    def run(self, node: Any, context: ActionContext) -> Outcome | None:
        """Run the node's action.

        Returning ``None`` leaves the node running until the outcome is
        reported back to the engine.
        """
        return Outcome.success()

    @classmethod
    def in_ports(cls) -> list[PortSpec]:
        return [p for p in cls.PORTS() if p.direction == PortDirection.IN]

    @classmethod
    def out_ports(cls) -> list[PortSpec]:
        return [p for p in cls.PORTS() if p.direction == PortDirection.OUT]

    @classmethod
    def get_definition(cls, node_type: str) -> ShapeDefinition:
        return ShapeDefinition(
            node_type=node_type,
            display_name=cls.DISPLAY_NAME or cls.__name__,
            category=cls.CATEGORY,
            description=cls.DESCRIPTION or cls.__doc__ or "",
            ports=cls.PORTS(),
            join=cls.JOIN,
            loop=cls.LOOP,
            gateway=cls.GATEWAY,
            recoverable=cls.RECOVERABLE,
        )
