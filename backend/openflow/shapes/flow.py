"""Built-in flow shapes: events, actions, gateways and loops.

Control shapes (Start, End, Fork, Join) complete immediately.  Action
shapes (Task, Component) hand their work to an external runtime and stay
running until the outcome is reported back.
"""
from typing import Any

from ..engine.instance import ActionContext, Outcome
from .base import BaseShape, PortDirection, PortSpec
from .registry import ShapeRegistry

IN = PortDirection.IN
OUT = PortDirection.OUT


@ShapeRegistry.register("Start")
class StartShape(BaseShape):
    CATEGORY = "Events"
    DISPLAY_NAME = "Start"
    DESCRIPTION = "Entry point of a flow"

    @classmethod
    def PORTS(cls):
        return [PortSpec("out", OUT)]


@ShapeRegistry.register("End")
class EndShape(BaseShape):
    CATEGORY = "Events"
    DISPLAY_NAME = "End"
    DESCRIPTION = "Terminates a path; accepts any number of incoming paths"
    JOIN = True

    @classmethod
    def PORTS(cls):
        return [PortSpec("in", IN)]


@ShapeRegistry.register("Task")
class TaskShape(BaseShape):
    CATEGORY = "Actions"
    DISPLAY_NAME = "Task"
    DESCRIPTION = "Unit of work carried out by an external action runtime"

    @classmethod
    def PORTS(cls):
        return [PortSpec("in", IN), PortSpec("out", OUT)]

    def run(self, node: Any, context: ActionContext) -> Outcome | None:
        return None


@ShapeRegistry.register("Component")
class ComponentShape(BaseShape):
    CATEGORY = "Actions"
    DISPLAY_NAME = "Component"
    DESCRIPTION = "Invokes a reusable component flow (property: component_id)"

    @classmethod
    def PORTS(cls):
        return [PortSpec("in", IN), PortSpec("out", OUT)]

    def run(self, node: Any, context: ActionContext) -> Outcome | None:
        return None


@ShapeRegistry.register("Decision")
class DecisionShape(BaseShape):
    """Routes to 'yes' or 'no' based on an instance parameter.

    Properties:
        parameter: name of the instance parameter to test.
        expected: value the parameter must equal for 'yes'; when absent
            the parameter's truthiness decides.
    """
    CATEGORY = "Gateways"
    DISPLAY_NAME = "Decision"
    GATEWAY = True

    @classmethod
    def PORTS(cls):
        return [PortSpec("in", IN), PortSpec("yes", OUT), PortSpec("no", OUT)]

    def run(self, node: Any, context: ActionContext) -> Outcome | None:
        name = node.properties.get("parameter")
        value = context.parameters.get(name) if name else None
        if "expected" in node.properties:
            taken = value == node.properties["expected"]
        else:
            taken = bool(value)
        return Outcome.success(branches={"yes" if taken else "no"})


@ShapeRegistry.register("Fork")
class ForkShape(BaseShape):
    CATEGORY = "Gateways"
    DISPLAY_NAME = "Fork"
    DESCRIPTION = "Starts parallel branches"

    @classmethod
    def PORTS(cls):
        return [PortSpec("in", IN), PortSpec("out", OUT)]


@ShapeRegistry.register("Join")
class JoinShape(BaseShape):
    CATEGORY = "Gateways"
    DISPLAY_NAME = "Join"
    DESCRIPTION = "Waits for every incoming branch to finish"
    JOIN = True

    @classmethod
    def PORTS(cls):
        return [PortSpec("in", IN), PortSpec("out", OUT)]


@ShapeRegistry.register("Loop")
class LoopShape(BaseShape):
    """Repeats its body a fixed number of times.

    The body hangs off 'body' and returns into 'loopback'; 'exit' fires once
    the iteration count reaches the 'times' property (default 1).
    """
    CATEGORY = "Gateways"
    DISPLAY_NAME = "Loop"
    LOOP = True
    GATEWAY = True

    @classmethod
    def PORTS(cls):
        return [
            PortSpec("in", IN),
            PortSpec("loopback", IN, required=False, loopback=True),
            PortSpec("body", OUT),
            PortSpec("exit", OUT),
        ]

    def run(self, node: Any, context: ActionContext) -> Outcome | None:
        times = int(node.properties.get("times", 1))
        if context.iteration < times:
            return Outcome.success(branches={"body"})
        return Outcome.success(branches={"exit"})
