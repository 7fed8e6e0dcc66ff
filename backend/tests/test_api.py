import httpx
import pytest
from fastapi.testclient import TestClient
from shared_stubs import StubNarrator, build_context, build_node

from worldline.constants import SAVES_KEY
from worldline.main import app, get_game_session, get_layout_engine, get_node_store
from worldline.services.game_session import GameSession
from worldline.storage.kv import MemoryKeyValueStore
from worldline.storage.node_store import NodeStore
from worldline.utils.graph_layout import GraphLayoutEngine


class TimeoutNarrator(StubNarrator):
    async def generate_opening(self, context):
        raise httpx.ReadTimeout("slow")


@pytest.fixture
def api():
    backend = MemoryKeyValueStore()
    store = NodeStore(backend)
    session = GameSession(store, StubNarrator())
    engine = GraphLayoutEngine()
    app.dependency_overrides[get_node_store] = lambda: store
    app.dependency_overrides[get_game_session] = lambda: session
    app.dependency_overrides[get_layout_engine] = lambda: engine
    yield TestClient(app), store, backend
    app.dependency_overrides.clear()


def test_save_endpoint_persists_after_response(api):
    client, store, backend = api
    payload = {"context": build_context("s1", ["b1"]).to_record(), "type": "MANUAL"}

    response = client.post("/api/v1/nodes/save", json=payload)
    assert response.status_code == 200
    data = response.json()
    assert data["saved"] is True
    assert data["node"]["storyId"] == "b1"
    assert backend.get(SAVES_KEY) is not None

    payload["type"] = "AUTO"
    skipped = client.post("/api/v1/nodes/save", json=payload)
    assert skipped.json() == {"saved": False, "node": None}

    listed = client.get("/api/v1/sessions/s1/nodes").json()
    assert [n["type"] for n in listed] == ["MANUAL"]


def test_delete_endpoints(api):
    client, store, _ = api
    store.insert_many([build_node("a", "s1", "b1"), build_node("b", "s2", "c1")])
    client.put("/api/v1/layout/positions/a", json={"x": 1})
    client.put("/api/v1/layout/positions/b", json={"y": 2})

    assert client.delete("/api/v1/nodes/missing").status_code == 404
    assert client.delete("/api/v1/nodes/a").json() == {"deleted": "a"}
    assert client.delete("/api/v1/sessions/s2").json() == {"sessionId": "s2", "removed": 1}
    assert client.get("/api/v1/nodes").json() == []
    assert app.dependency_overrides[get_layout_engine]().overrides == {}


def test_import_reports_format_errors_and_duplicates(api):
    client, store, _ = api
    assert client.post("/api/v1/import", json={"foo": "bar"}).status_code == 422

    backup = [build_node("a", "s1", "b1").to_record()]
    first = client.post("/api/v1/import", json=backup).json()
    second = client.post("/api/v1/import", json=backup).json()
    assert first["inserted"] == 1
    assert second == {"kind": "bulk", "inserted": 0, "total": 1}
    assert len(store.list()) == 1


def test_layout_and_position_overrides(api):
    client, store, _ = api
    store.insert_many(
        [
            build_node("a", "s1", "b1", timestamp=1),
            build_node("b", "s1", "b2", "b1", timestamp=2, depth=2),
            build_node("z", "s2", "c1", timestamp=3),
        ]
    )

    focused = client.get("/api/v1/layout", params={"session_id": "s1"}).json()
    assert {n["id"] for n in focused["nodes"]} == {"a", "b"}
    assert focused["edges"] == [{"from": "a", "to": "b", "isFreeform": False}]

    assert client.put("/api/v1/layout/positions/nope", json={"x": 1}).status_code == 404
    assert client.put("/api/v1/layout/positions/b", json={"x": 5, "y": 7}).status_code == 200
    moved = {n["id"]: n for n in client.get("/api/v1/layout").json()["nodes"]}
    assert (moved["b"]["x"], moved["b"]["y"]) == (5, 7)

    cleared = client.delete("/api/v1/layout/positions/b").json()
    assert cleared == {"nodeId": "b", "cleared": True}


def test_background_and_export_endpoints(api):
    client, store, _ = api
    store.insert_many(
        [
            build_node("p", "s1", "b1", timestamp=1, background="bg"),
            build_node("c", "s1", "b2", "b1", timestamp=2, depth=2),
        ]
    )

    background = client.get("/api/v1/nodes/c/background").json()
    assert background == {"nodeId": "c", "backgroundImage": "bg"}
    assert client.get("/api/v1/nodes/x/background").status_code == 404

    exported = client.get("/api/v1/nodes/c/export").json()
    assert exported["version"] == "2.5"
    assert exported["context"]["currentSegment"]["backgroundImage"] == "bg"

    config = client.get("/api/v1/nodes/c/export/config").json()
    assert "context" not in config

    backup = client.get("/api/v1/sessions/s1/backup", params={"include_images": False}).json()
    assert len(backup) == 2
    assert "backgroundImage" not in backup[0]["context"]["currentSegment"]
    assert client.get("/api/v1/sessions/none/backup").status_code == 404


def test_play_flow(api):
    client, store, _ = api
    assert client.post("/api/v1/play/regenerate").status_code == 409

    client.put("/api/v1/play", json=build_context("s1").to_record())
    started = client.post("/api/v1/play/start").json()
    assert started["mode"] == "playing"
    opening_id = started["context"]["currentSegment"]["id"]

    chosen = client.post("/api/v1/play/choose", json={"action": "Enter the city"}).json()
    assert len(chosen["context"]["history"]) == 2
    assert chosen["context"]["lastChoiceIdx"] == 0

    saved = client.post("/api/v1/play/save").json()
    assert saved["saved"] is True
    assert client.get("/api/v1/play").json()["loadedNodeId"] == saved["node"]["id"]

    regenerated = client.post("/api/v1/play/regenerate").json()
    current = regenerated["context"]["currentSegment"]
    assert len(current["versions"]) == 2

    switched = client.post(
        f"/api/v1/play/segments/{current['id']}/switch", json={"direction": "prev"}
    ).json()
    assert switched["context"]["currentSegment"]["currentVersionIndex"] == 0

    branched = client.post("/api/v1/play/choose", json={"action": "Wait", "fromIndex": 0}).json()
    assert branched["context"]["history"][0]["id"] == opening_id
    assert client.post("/api/v1/play/autosave").json()["saved"] is True
    assert client.post("/api/v1/play/autosave").json()["saved"] is False

    loaded = client.post(f"/api/v1/play/load/{saved['node']['id']}", json={"forceSetup": True})
    assert loaded.json()["mode"] == "setup"
    assert client.post("/api/v1/play/load/missing").status_code == 404
    assert client.post("/api/v1/play/choose", json={"action": ""}).status_code == 422


def test_setup_save_requires_protagonist(api):
    client, _, _ = api
    client.put("/api/v1/play", json={"character": {"name": "", "trait": ""}})
    assert client.post("/api/v1/play/setup").status_code == 422


def test_scheduled_event_endpoints(api):
    client, _, _ = api
    client.put("/api/v1/play", json=build_context("s1", ["b1"]).to_record())

    created = client.post(
        "/api/v1/play/events", json={"type": "duel", "description": "at noon"}
    ).json()
    assert created["status"] == "pending"
    assert created["createdTurn"] == 1

    created["description"] = "at dusk"
    updated = client.put(f"/api/v1/play/events/{created['id']}", json=created)
    assert updated.json()["description"] == "at dusk"
    assert client.put("/api/v1/play/events/other", json=created).status_code == 422

    assert client.delete(f"/api/v1/play/events/{created['id']}").status_code == 200
    assert client.delete(f"/api/v1/play/events/{created['id']}").status_code == 404


def test_narrator_timeout_maps_to_504():
    store = NodeStore(MemoryKeyValueStore())
    session = GameSession(store, TimeoutNarrator(), context=build_context("s1"))
    app.dependency_overrides[get_game_session] = lambda: session
    client = TestClient(app)

    response = client.post("/api/v1/play/start")
    assert response.status_code == 504

    app.dependency_overrides.clear()
