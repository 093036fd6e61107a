"""Tests for the JSON file persistence adapter."""
import json

import pytest

from openflow.engine.errors import PersistenceUnavailable, RecordNotFound
from openflow.engine.executor import InstanceRunner
from openflow.engine.instance import ExecutionState, InstanceStatus, Outcome
from openflow.engine.mode import Mode, ModePolicy
from openflow.engine.persistence import JsonFilePersistence


class TestDefinitions:
    def test_save_and_load(self, persistence, make_graph):
        graph = make_graph(
            {"s": "Start", "loop": ("Loop", {"times": 2}), "t": "Task"},
            [("s.out", "loop.in"), ("loop.body", "t.in"), ("t.out", "loop.loopback")],
            graph_id="nightly",
        )
        graph.move_node("t", 40, 80)
        assert persistence.save_definition(graph) == 1

        loaded = persistence.load_definition("nightly")
        assert loaded == graph
        assert loaded.nodes["loop"].properties == {"times": 2}
        assert loaded.validate() == []

    def test_revision_increments(self, persistence, linear_graph):
        assert [persistence.save_definition(linear_graph) for _ in range(3)] == [1, 2, 3]
        listed = persistence.list_definitions()
        assert [(f["id"], f["revision"]) for f in listed] == [("flow-1", 3)]

    def test_graph_without_id_gets_one(self, persistence, linear_graph):
        linear_graph.id = ""
        persistence.save_definition(linear_graph)
        assert linear_graph.id
        assert persistence.load_definition(linear_graph.id).nodes.keys() == {"A", "B", "C"}

    def test_missing(self, persistence):
        with pytest.raises(RecordNotFound) as info:
            persistence.load_definition("nope")
        assert isinstance(info.value, PersistenceUnavailable)

    def test_corrupt_file(self, persistence, tmp_path):
        (tmp_path / "flows").mkdir()
        (tmp_path / "flows" / "bad.json").write_text("{not json")
        with pytest.raises(PersistenceUnavailable):
            persistence.load_definition("bad")
        (tmp_path / "flows" / "wrong.json").write_text(json.dumps({"graph": {"nodes": 3}}))
        with pytest.raises(PersistenceUnavailable):
            persistence.load_definition("wrong")
        assert persistence.list_definitions() == [
            {"id": "wrong", "name": "", "kind": "flow", "revision": 0, "saved_at": None},
        ]

    @pytest.mark.parametrize("record_id", ["../../escaped", "../flows-sibling", "nested/inner"])
    def test_ids_cannot_leave_directory(self, persistence, tmp_path, make_graph, record_id):
        graph = make_graph({"s": "Start"}, graph_id=record_id)
        with pytest.raises(PersistenceUnavailable):
            persistence.save_definition(graph)
        for load in (persistence.load_definition, persistence.load_instance):
            with pytest.raises(PersistenceUnavailable, match="Invalid record id") as info:
                load(record_id)
            assert not isinstance(info.value, RecordNotFound)
        assert list(tmp_path.rglob("*.json")) == []

    def test_unwritable_directory(self, tmp_path, linear_graph):
        blocked = tmp_path / "blocked"
        blocked.write_text("a file, not a directory")
        adapter = JsonFilePersistence(blocked, tmp_path / "instances")
        with pytest.raises(PersistenceUnavailable):
            adapter.save_definition(linear_graph)


class TestInstances:
    def test_snapshot_round_trip(self, persistence, linear_graph):
        runner = InstanceRunner(ModePolicy(Mode.INSTANTIATE))
        instance = runner.instantiate(linear_graph, {"ticket": 9}, user="ana")
        runner.advance(instance.id)
        runner.report_outcome(instance.id, "A", Outcome.success(output={"ok": True}))
        runner.save_snapshot(instance.id, persistence)

        loaded = persistence.load_instance(instance.id)
        assert loaded == instance
        assert loaded.node_states["B"] == ExecutionState.READY
        assert loaded.outputs == {"A": {"ok": True}}

    def test_attach_for_viewing(self, persistence, linear_graph):
        runner = InstanceRunner(ModePolicy(Mode.INSTANTIATE))
        instance = runner.instantiate(linear_graph)
        runner.terminate(instance.id)
        runner.save_snapshot(instance.id, persistence)

        viewer = InstanceRunner(ModePolicy(Mode.VIEW))
        attached = viewer.attach(persistence.load_instance(instance.id), linear_graph.copy())
        assert viewer.get(instance.id) is attached
        assert attached.status == InstanceStatus.TERMINATED
        assert attached.sealed

    def test_missing_instance(self, persistence):
        with pytest.raises(RecordNotFound):
            persistence.load_instance("nope")
