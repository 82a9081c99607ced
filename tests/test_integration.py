import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from src.cellmatch.config import Settings
from src.cellmatch.main import create_app
from src.cellmatch.services import geocell
from src.cellmatch.services.container import build_container

ZOCALO = (19.4326, -99.1332)
NEAR_ZOCALO = (19.4330, -99.1330)
SUBA = (4.7410, -74.0721)
SUBA_NORTH = (4.7420, -74.0721)


def _heartbeat(client: TestClient, driver_id: str, point, **extra):
    return client.post(
        "/api/presence/heartbeat",
        json={"driver_id": driver_id, "lat": point[0], "lng": point[1], **extra},
    )


def test_root_and_health(api_client: TestClient):
    root = api_client.get("/")
    assert root.status_code == 200
    assert root.json()["cell_step_seconds"] == 30

    health = api_client.get("/api/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["storage_backend"] == "InMemoryRequestStore"


def test_database_health_without_supabase(api_client: TestClient, monkeypatch: pytest.MonkeyPatch):
    from src.cellmatch.db import supabase as supabase_module

    monkeypatch.setattr(supabase_module, "get_supabase_client", lambda url=None, key=None: None)

    response = api_client.get("/api/health/database")

    assert response.status_code == 200
    assert response.json()["configured"] is False


def test_cell_lookup_endpoint(api_client: TestClient):
    response = api_client.get("/api/cells", params={"lat": SUBA[0], "lng": SUBA[1]})

    assert response.status_code == 200
    payload = response.json()
    assert payload["canonical"] == "N04_44_00_W074_04_00_s30"
    assert payload["cell_id"] == "TjA0XzQ0XzAwX1cwNzRfMDRfMDBfczMw"
    assert [n["direction"] for n in payload["neighbors"]] == ["N", "NE", "E", "SE", "S", "SW", "W", "NW"]
    assert payload["neighbors"][0]["canonical"] == "N04_44_30_W074_04_00_s30"
    assert len(payload["geojson"]["features"]) == 9


def test_invalid_coordinates_are_rejected(api_client: TestClient):
    assert api_client.get("/api/cells", params={"lat": 91, "lng": 0}).status_code == 422
    assert api_client.get("/api/presence/count", params={"lat": 0, "lng": 200}).status_code == 422
    assert _heartbeat(api_client, "d1", (95.0, 0.0)).status_code == 422


def test_ride_lifecycle_end_to_end(api_client: TestClient):
    heartbeat = _heartbeat(api_client, "driver-1", NEAR_ZOCALO)
    assert heartbeat.status_code == 200
    assert heartbeat.json()["cell_id"] == geocell.cell_id(*ZOCALO, step_seconds=30)

    count = api_client.get("/api/presence/count", params={"lat": ZOCALO[0], "lng": ZOCALO[1]})
    assert count.json()["count"] == 1
    assert len(count.json()["cell_ids"]) == 9

    created = api_client.post(
        "/api/requests",
        json={"client_id": "client-1", "client_name": "Laura", "pickup": {"lat": ZOCALO[0], "lng": ZOCALO[1]}},
    )
    assert created.status_code == 201
    request_id = created.json()["request_id"]
    assert created.json()["status"] == "open"
    assert created.json()["age"] == "now"

    visible = api_client.get("/api/requests/open", params={"lat": NEAR_ZOCALO[0], "lng": NEAR_ZOCALO[1]})
    assert visible.status_code == 200
    assert [item["request_id"] for item in visible.json()["requests"]] == [request_id]
    assert visible.json()["requests"][0]["distance_km"] < 0.1

    accepted = api_client.post(f"/api/requests/{request_id}/accept", json={"driver_id": "driver-1", "driver_name": "Ana"})
    assert accepted.status_code == 200
    assert accepted.json()["claimed_by"] == "driver-1"

    lost = api_client.post(f"/api/requests/{request_id}/accept", json={"driver_id": "driver-2"})
    assert lost.status_code == 409
    assert lost.json()["detail"]["error"] == "RequestAlreadyTaken"

    moved = api_client.post(
        f"/api/requests/{request_id}/driver-location",
        json={"driver_id": "driver-1", "lat": 19.4328, "lng": -99.1331},
    )
    assert moved.status_code == 200
    assert moved.json()["driver_lat"] == 19.4328

    assert api_client.get("/api/requests/open", params={"lat": ZOCALO[0], "lng": ZOCALO[1]}).json()["requests"] == []

    completed = api_client.post(f"/api/requests/{request_id}/complete")
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    assert api_client.post(f"/api/requests/{request_id}/cancel", json={"reason": "client"}).status_code == 409

    active = api_client.get("/api/requests", params={"client_id": "client-1"})
    assert active.json() == []
    history = api_client.get("/api/requests", params={"client_id": "client-1", "active_only": False})
    assert [item["status"] for item in history.json()] == ["completed"]

    offline = api_client.post("/api/presence/offline", json={"driver_id": "driver-1"})
    assert offline.status_code == 200
    assert api_client.get("/api/presence/count", params={"lat": ZOCALO[0], "lng": ZOCALO[1]}).json()["count"] == 0


def test_unknown_request_is_404(api_client: TestClient):
    response = api_client.get("/api/requests/does-not-exist")

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "RequestNotFound"


def test_out_of_order_heartbeat_is_409(api_client: TestClient):
    assert _heartbeat(api_client, "d1", SUBA, sequence=10).status_code == 200

    stale = _heartbeat(api_client, "d1", SUBA_NORTH, sequence=3)

    assert stale.status_code == 409
    assert stale.json()["detail"]["error"] == "StaleHeartbeat"


def test_cancel_and_rider_heartbeat(api_client: TestClient):
    created = api_client.post("/api/requests", json={"client_id": "c1", "pickup": {"lat": SUBA[0], "lng": SUBA[1]}})
    request_id = created.json()["request_id"]

    assert api_client.post(f"/api/requests/{request_id}/heartbeat").status_code == 200

    cancelled = api_client.post(f"/api/requests/{request_id}/cancel", json={"reason": "client"})
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["cancel_reason"] == "client"

    assert api_client.post(f"/api/requests/{request_id}/heartbeat").status_code == 409


def test_nearby_drivers_endpoint(api_client: TestClient):
    _heartbeat(api_client, "free", SUBA)
    _heartbeat(api_client, "busy", SUBA_NORTH, active_ride_id="ride-1")

    everyone = api_client.get("/api/presence/nearby", params={"lat": SUBA[0], "lng": SUBA[1]})
    free = api_client.get("/api/presence/nearby", params={"lat": SUBA[0], "lng": SUBA[1], "include_busy": False})

    assert [d["driver_id"] for d in everyone.json()["drivers"]] == ["busy", "free"]
    assert [d["driver_id"] for d in free.json()["drivers"]] == ["free"]


def test_driver_count_websocket_pushes_changes(api_client: TestClient):
    with api_client.websocket_connect(f"/api/presence/count/ws?lat={SUBA[0]}&lng={SUBA[1]}") as websocket:
        first = websocket.receive_json()
        assert first["count"] == 0
        assert len(first["cell_ids"]) == 9

        _heartbeat(api_client, "d1", SUBA_NORTH)
        assert websocket.receive_json()["count"] == 1

        api_client.post("/api/presence/offline", json={"driver_id": "d1"})
        assert websocket.receive_json()["count"] == 0


def test_driver_count_websocket_rejects_bad_coordinates(api_client: TestClient):
    with pytest.raises(WebSocketDisconnect):
        with api_client.websocket_connect("/api/presence/count/ws?lat=100&lng=0") as websocket:
            websocket.receive_json()


def test_open_requests_websocket_expands_to_neighbors(api_client: TestClient):
    created = api_client.post(
        "/api/requests", json={"client_id": "c1", "pickup": {"lat": SUBA_NORTH[0], "lng": SUBA_NORTH[1]}}
    )
    request_id = created.json()["request_id"]

    with api_client.websocket_connect(f"/api/requests/open/ws?lat={SUBA[0]}&lng={SUBA[1]}") as websocket:
        first = websocket.receive_json()
        assert first["expanded"] is False
        assert first["requests"] == []

        second = websocket.receive_json()
        assert second["expanded"] is True
        assert len(second["cell_ids"]) == 9
        assert [item["request_id"] for item in second["requests"]] == [request_id]

        websocket.send_json({"lat": "not a number"})
        assert "error" in websocket.receive_json()


def test_request_websocket_follows_until_completion(api_client: TestClient):
    created = api_client.post("/api/requests", json={"client_id": "c1", "pickup": {"lat": SUBA[0], "lng": SUBA[1]}})
    request_id = created.json()["request_id"]

    with api_client.websocket_connect(f"/api/requests/{request_id}/ws") as websocket:
        assert websocket.receive_json()["status"] == "open"
        api_client.post(f"/api/requests/{request_id}/accept", json={"driver_id": "driver-1"})
        assert websocket.receive_json()["status"] == "claimed"
        api_client.post(f"/api/requests/{request_id}/complete")
        assert websocket.receive_json()["status"] == "completed"
        with pytest.raises(WebSocketDisconnect):
            websocket.receive_json()


def test_lifespan_starts_and_stops_sweeper():
    settings = Settings(sweeper_enabled=True, sweep_interval_seconds=30)
    container = build_container(settings)

    with TestClient(create_app(settings, container)) as client:
        assert client.get("/api/health").status_code == 200
        assert container.sweeper._task is not None

    assert container.sweeper._task is None


def test_heartbeat_sequence_modes_are_documented(api_client: TestClient):
    schema = api_client.get("/openapi.json").json()["components"]["schemas"]["HeartbeatRequest"]
    assert "always send it or never send it" in schema["properties"]["sequence"]["description"]

    assert _heartbeat(api_client, "d1", SUBA).status_code == 200
    mixed = _heartbeat(api_client, "d1", SUBA_NORTH, sequence=3)

    assert mixed.status_code == 409
    assert mixed.json()["detail"]["error"] == "StaleHeartbeat"
