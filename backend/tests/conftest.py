"""Shared test fixtures for OpenFlow backend tests."""
import sys
from pathlib import Path

import pytest

# Ensure openflow package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from openflow.engine.executor import ActionRuntime, InstanceRunner
from openflow.engine.graph import Graph, GraphKind, NodeInstance
from openflow.engine.instance import Outcome
from openflow.engine.mode import Mode, ModePolicy
from openflow.engine.persistence import JsonFilePersistence


@pytest.fixture(scope="session", autouse=True)
def register_shapes():
    """Discover and register all shape types once per test session."""
    from openflow.shapes.registry import ShapeRegistry
    ShapeRegistry.discover("openflow.shapes")


@pytest.fixture
def make_graph():
    """Build a graph from ``{node_id: type}`` (or ``(type, properties)``) and
    a list of ``(source_port_id, target_port_id)`` connections."""
    def _make(nodes, edges=(), kind=GraphKind.FLOW, graph_id="flow-1"):
        graph = Graph(id=graph_id, name=graph_id, kind=kind)
        for node_id, spec in nodes.items():
            node_type, properties = spec if isinstance(spec, tuple) else (spec, {})
            graph.add_node(NodeInstance(id=node_id, node_type=node_type, properties=dict(properties)))
        for source, target in edges:
            graph.connect(source, target)
        return graph
    return _make


@pytest.fixture
def linear_graph(make_graph):
    """A -> B -> C, all external tasks."""
    return make_graph(
        {"A": "Task", "B": "Task", "C": "Task"},
        [("A.out", "B.in"), ("B.out", "C.in")],
    )


@pytest.fixture
def runner():
    return InstanceRunner(ModePolicy(Mode.INSTANTIATE))


@pytest.fixture
def auto_runner():
    """Runner whose Task actions complete at once."""
    runtime = ActionRuntime({"Task": lambda node, ctx: Outcome.success(output={"by": node.id})})
    return InstanceRunner(ModePolicy(Mode.INSTANTIATE), runtime)


@pytest.fixture
def persistence(tmp_path):
    return JsonFilePersistence(tmp_path / "flows", tmp_path / "instances")
