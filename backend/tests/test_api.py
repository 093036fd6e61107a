"""Tests for the HTTP API and the instance WebSocket."""
import pytest
from fastapi.testclient import TestClient

from openflow.api.routes import get_persistence
from openflow.engine.persistence import JsonFilePersistence
from openflow.main import app


@pytest.fixture
def client(tmp_path):
    store = JsonFilePersistence(tmp_path / "flows", tmp_path / "instances")
    app.dependency_overrides[get_persistence] = lambda: store
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def open_session(client, mode, **body):
    response = client.post("/api/sessions", json={"mode": mode, **body})
    assert response.status_code == 200, response.text
    return response.json()["session_id"]


def design_flow(client):
    """Build Start -> Task in a design session, save it and return the flow id."""
    sid = open_session(client, 0, user="ana")
    ops = [
        {"op": "add_node", "node_id": "s", "node_type": "Start"},
        {"op": "add_node", "node_id": "a", "node_type": "Task", "position": {"x": 10, "y": 0}},
        {"op": "connect", "source_port": "s.out", "target_port": "a.in"},
    ]
    for revision, op in enumerate(ops, start=1):
        response = client.post(f"/api/sessions/{sid}/operations", json=op)
        assert response.json() == {"revision": revision}
    saved = client.post(f"/api/sessions/{sid}/save").json()
    assert saved["revision"] == 1
    return saved["id"]


class TestCatalog:
    def test_shapes(self, client):
        shapes = client.get("/api/shapes").json()
        assert {"Start", "End", "Task", "Decision", "Fork", "Join", "Loop", "Component"} <= set(shapes)
        assert shapes["Loop"]["loop"] is True
        assert [p["name"] for p in shapes["Decision"]["ports"]] == ["in", "yes", "no"]

    def test_shape_categories(self, client):
        categories = client.get("/api/shapes/categories").json()
        assert categories["Events"] == ["Start", "End"]
        assert {"Decision", "Fork", "Join", "Loop"} <= set(categories["Gateways"])

    def test_modes(self, client):
        modes = client.get("/api/modes").json()
        assert [(m["value"], m["label"]) for m in modes] == [
            (0, "design"), (1, "instantiate"), (2, "view"), (4, "component_dev"),
        ]


class TestSessions:
    @pytest.mark.parametrize("mode", [3, 5, "x"])
    def test_unknown_mode(self, client, mode):
        response = client.post("/api/sessions", json={"mode": mode})
        assert response.status_code == 422

    def test_design_round_trip(self, client):
        flow_id = design_flow(client)
        assert [f["id"] for f in client.get("/api/flows").json()] == [flow_id]
        graph = client.get(f"/api/flows/{flow_id}").json()
        assert sorted(n["id"] for n in graph["nodes"]) == ["a", "s"]
        assert graph["edges"][0]["id"] == "s.out->a.in"

    def test_change_log_and_undo(self, client):
        sid = open_session(client, "0")
        client.post(f"/api/sessions/{sid}/operations", json={"op": "add_node", "node_id": "t", "node_type": "Task"})
        client.post(f"/api/sessions/{sid}/operations", json={"op": "move_node", "node_id": "t", "x": 1, "y": 2})
        assert client.post(f"/api/sessions/{sid}/undo").json() == {"revision": 3}

        changes = client.get(f"/api/sessions/{sid}/changes", params={"since": 1}).json()
        assert [c["operation"] for c in changes] == ["move_node", "undo"]
        state = client.get(f"/api/sessions/{sid}").json()
        assert state["graph"]["nodes"][0]["position"] == {"x": 0.0, "y": 0.0}

    def test_edit_errors(self, client):
        sid = open_session(client, 0)
        url = f"/api/sessions/{sid}/operations"
        client.post(url, json={"op": "add_node", "node_id": "t", "node_type": "Task"})
        assert client.post(url, json={"op": "add_node", "node_id": "x", "node_type": "Nope"}).status_code == 422
        assert client.post(url, json={"op": "explode"}).status_code == 422
        assert client.post(url, json={"op": "connect", "source_port": "t.in", "target_port": "t.out"}).status_code == 409
        assert client.post(url, json={"op": "remove_node", "node_id": "ghost"}).status_code == 404
        assert client.get(f"/api/sessions/{sid}").json()["revision"] == 1

    def test_view_mode_is_read_only(self, client):
        flow_id = design_flow(client)
        sid = open_session(client, 2, flow_id=flow_id)
        state = client.get(f"/api/sessions/{sid}").json()
        assert state["editable"] is False
        assert state["capabilities"] == ["view"]
        response = client.post(
            f"/api/sessions/{sid}/operations",
            json={"op": "add_node", "node_id": "t", "node_type": "Task"},
        )
        assert response.status_code == 403
        assert client.post(f"/api/sessions/{sid}/save").status_code == 403

    def test_flow_id_must_be_a_plain_name(self, client):
        response = client.post("/api/flows", json={"id": "../../escaped", "nodes": []})
        assert response.status_code == 422
        assert client.post("/api/flows", json={"id": "nightly-2"}).json() == {"id": "nightly-2", "revision": 1}

    def test_unknown_ids(self, client):
        assert client.get("/api/sessions/nope").status_code == 404
        assert client.get("/api/instances/nope").status_code == 404
        assert client.get("/api/flows/nope").status_code == 404
        assert client.post("/api/sessions", json={"mode": 2, "flow_id": "nope"}).status_code == 404


class TestInstances:
    def test_run_to_completion(self, client):
        flow_id = design_flow(client)
        sid = open_session(client, 1, flow_id=flow_id, user="ops")

        instance = client.post(f"/api/sessions/{sid}/instances", json={"parameters": {"ticket": 3}}).json()
        iid = instance["id"]
        assert instance["node_states"] == {"s": "ready", "a": "pending"}
        assert instance["created_by"] == "ops"

        advanced = client.post(f"/api/instances/{iid}/advance").json()
        assert advanced["started"] == ["s"]
        assert advanced["instance"]["node_states"]["a"] == "ready"

        done = client.post(f"/api/instances/{iid}/outcomes/a", json={"status": "success", "output": {"n": 1}}).json()
        assert done["status"] == "completed"
        assert done["sealed"] is True
        assert done["outputs"]["a"] == {"n": 1}

        assert client.post(f"/api/instances/{iid}/save").json() == {"id": iid, "status": "saved"}

    def test_terminate_then_outcome_conflicts(self, client):
        sid = open_session(client, 1, flow_id=design_flow(client))
        iid = client.post(f"/api/sessions/{sid}/instances", json={}).json()["id"]
        client.post(f"/api/instances/{iid}/parameters", json={"name": "priority", "value": "high"})

        terminated = client.post(f"/api/instances/{iid}/terminate").json()
        assert terminated["status"] == "terminated"
        assert terminated["parameters"] == {"priority": "high"}
        response = client.post(f"/api/instances/{iid}/outcomes/s", json={"status": "success"})
        assert response.status_code == 409

    def test_invalid_graph_not_instantiated(self, client):
        sid = open_session(client, 1, graph={"id": "bad", "nodes": [{"id": "x", "node_type": "Nope"}]})
        response = client.post(f"/api/sessions/{sid}/instances", json={})
        assert response.status_code == 409
        assert [v["code"] for v in response.json()["detail"]["violations"]] == ["unknown_type"]

    def test_design_session_cannot_instantiate(self, client):
        sid = open_session(client, 0)
        assert client.post(f"/api/sessions/{sid}/instances", json={}).status_code == 403

    def test_progress_over_websocket(self, client):
        sid = open_session(client, 1, flow_id=design_flow(client))
        with client.websocket_connect(f"/ws/instances/{sid}") as ws:
            instance = client.post(f"/api/sessions/{sid}/instances", json={}).json()
            message = ws.receive_json()
        assert message == {"type": "instance_created", "instance_id": instance["id"], "graph_id": instance["graph_id"]}
