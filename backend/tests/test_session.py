"""Tests for editor sessions: mode gating, revisions, change log and undo."""
import pytest

from openflow.engine.errors import (
    GraphReadOnly, NotFound, NotPermittedInMode, PortDirectionMismatch, UnknownMode,
)
from openflow.engine.graph import Graph, GraphKind, NodeInstance
from openflow.engine.instance import ExecutionState
from openflow.engine.mode import Mode
from openflow.engine.operations import (
    AddNode, Connect, Disconnect, MoveNode, RemoveNode, SetProperty,
)
from openflow.engine.session import (
    EditorSession, create_session, get_session, remove_session,
)


@pytest.fixture
def design(make_graph):
    return EditorSession(make_graph({"s": "Start", "t": "Task"}), Mode.DESIGN, user="ana")


class TestModeGating:
    def test_view_rejects_add_node(self, make_graph):
        graph = make_graph({"s": "Start"})
        session = EditorSession(graph, Mode.VIEW)
        with pytest.raises(NotPermittedInMode):
            session.apply(AddNode("t", "Task"))
        assert set(graph.nodes) == {"s"}
        assert session.revision == 0
        assert session.changes == []

    def test_instantiate_mode_cannot_edit_properties(self, design):
        session = EditorSession(design.graph, Mode.INSTANTIATE)
        with pytest.raises(NotPermittedInMode):
            session.apply(SetProperty("t", "owner", "ops"))

    def test_component_dev_scope(self, make_graph):
        flow = EditorSession(make_graph({"s": "Start"}), Mode.COMPONENT_DEV)
        with pytest.raises(NotPermittedInMode):
            flow.apply(AddNode("t", "Task"))

        component = EditorSession(
            make_graph({"s": "Start"}, kind=GraphKind.COMPONENT), Mode.COMPONENT_DEV,
        )
        assert component.apply(AddNode("t", "Task")) == 1

    def test_unknown_mode(self):
        with pytest.raises(UnknownMode):
            EditorSession(Graph(id="g"), 3)

    def test_mode_accepts_string_flag(self):
        assert EditorSession(Graph(id="g"), "2").mode is Mode.VIEW


class TestRevisions:
    def test_each_edit_bumps_revision(self, design):
        assert design.apply(Connect("s.out", "t.in")) == 1
        assert design.apply(MoveNode("t", 120, 40)) == 2
        assert design.apply(SetProperty("t", "owner", "ops")) == 3
        assert [c.operation for c in design.changes] == ["connect", "move_node", "set_property"]
        assert all(c.user == "ana" for c in design.changes)

    def test_changes_since(self, design):
        design.apply(AddNode("e", "End"))
        design.apply(Connect("t.out", "e.in"))
        later = design.changes_since(1)
        assert [c.revision for c in later] == [2]
        assert later[0].payload == {"op": "connect", "source_port": "t.out", "target_port": "e.in", "edge_id": None}

    def test_failed_edit_changes_nothing(self, design):
        with pytest.raises(PortDirectionMismatch):
            design.apply(Connect("t.in", "s.out"))
        with pytest.raises(NotFound):
            design.apply(RemoveNode("ghost"))
        assert design.revision == 0
        assert design.graph.edges == {}


class TestUndo:
    def test_undo_add(self, design):
        design.apply(AddNode("e", "End"))
        assert design.undo() == 2
        assert "e" not in design.graph.nodes
        assert design.changes[-1].operation == "undo"

    def test_undo_remove_restores_edges(self, design):
        design.apply(Connect("s.out", "t.in"))
        design.apply(RemoveNode("t"))
        assert design.graph.edges == {}
        design.undo()
        assert "t" in design.graph.nodes
        assert list(design.graph.edges) == ["s.out->t.in"]

    def test_undo_disconnect_and_property(self, design):
        design.apply(Connect("s.out", "t.in"))
        design.apply(SetProperty("t", "owner", "ops"))
        design.apply(SetProperty("t", "owner", "qa"))
        design.apply(Disconnect("s.out->t.in"))
        design.undo()
        assert "s.out->t.in" in design.graph.edges
        design.undo()
        assert design.graph.nodes["t"].properties == {"owner": "ops"}
        design.undo()
        assert design.graph.nodes["t"].properties == {}

    def test_nothing_to_undo(self, design):
        with pytest.raises(NotFound):
            design.undo()


class TestInstancesAndSaving:
    def test_instantiate_freezes_graph(self, linear_graph):
        session = EditorSession(linear_graph, Mode.INSTANTIATE, user="ops")
        instance = session.instantiate({"ticket": 1})
        assert instance.created_by == "ops"
        assert instance.node_states["A"] == ExecutionState.READY
        with pytest.raises(GraphReadOnly):
            linear_graph.add_node(NodeInstance(id="x", node_type="Task"))

    def test_design_cannot_instantiate(self, design):
        with pytest.raises(NotPermittedInMode):
            design.instantiate()

    def test_save(self, design, persistence):
        design.graph.id = "approval"
        assert design.save(persistence) == 1
        design.apply(AddNode("e", "End"))
        assert design.save(persistence) == 2
        assert set(persistence.load_definition("approval").nodes) == {"s", "t", "e"}

    def test_view_cannot_save(self, linear_graph, persistence):
        with pytest.raises(NotPermittedInMode):
            EditorSession(linear_graph, Mode.VIEW).save(persistence)

    def test_snapshot_is_a_copy(self, design):
        snap = design.snapshot()
        snap.remove_node("t")
        assert "t" in design.graph.nodes

    def test_validate(self, design):
        assert design.validate() == []
        design.apply(AddNode("p", "Decision"))
        design.apply(Connect("p.yes", "t.in"))
        assert design.validate() == []


class TestRegistry:
    def test_create_get_remove(self, linear_graph):
        session = create_session(linear_graph, Mode.VIEW, "ana")
        assert get_session(session.session_id) is session
        remove_session(session.session_id)
        assert get_session(session.session_id) is None
