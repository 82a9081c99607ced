from collections import defaultdict
from datetime import timedelta
from types import SimpleNamespace

import httpx
import pytest

from src.cellmatch.errors import InvalidTransition, RequestAlreadyTaken, RequestNotFound, StorageUnavailable
from src.cellmatch.models.domain import DriverPresence, LocationPoint, RequestStatus, RideRequest
from src.cellmatch.persistence.supabase_store import (
    SupabasePresenceStore,
    SupabaseRequestStore,
    request_from_row,
    request_to_row,
)
from src.cellmatch.services import geocell

SUBA = (4.7410, -74.0721)
SUBA_NORTH = (4.7420, -74.0721)


class FakeQuery:
    """Just enough of the PostgREST builder to run the stores against a list of dicts."""

    def __init__(self, rows: list[dict], key: str) -> None:
        self._rows = rows
        self._key = key
        self._action = "select"
        self._payload: dict | None = None
        self._filters = []
        self._order: str | None = None
        self._limit: int | None = None

    def select(self, *columns, **kwargs):
        self._action = "select"
        return self

    def insert(self, row: dict):
        self._action, self._payload = "insert", row
        return self

    def upsert(self, row: dict, on_conflict: str | None = None):
        self._action, self._payload = "upsert", row
        return self

    def update(self, payload: dict):
        self._action, self._payload = "update", payload
        return self

    def delete(self):
        self._action = "delete"
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        self._filters.append(lambda row: row.get(column) in values)
        return self

    def is_(self, column, value):
        assert value == "null"
        self._filters.append(lambda row: row.get(column) is None)
        return self

    def lt(self, column, value):
        self._filters.append(lambda row: row.get(column) is not None and row[column] < value)
        return self

    def lte(self, column, value):
        self._filters.append(lambda row: row.get(column) is not None and row[column] <= value)
        return self

    def gte(self, column, value):
        self._filters.append(lambda row: row.get(column) is not None and row[column] >= value)
        return self

    def order(self, column, desc: bool = False):
        self._order = column
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def execute(self):
        matched = [row for row in self._rows if all(check(row) for check in self._filters)]
        if self._action == "insert":
            self._rows.append(dict(self._payload))
            data = [dict(self._payload)]
        elif self._action == "upsert":
            existing = [row for row in self._rows if row[self._key] == self._payload[self._key]]
            if existing:
                existing[0].update(self._payload)
            else:
                self._rows.append(dict(self._payload))
            data = [dict(self._payload)]
        elif self._action == "update":
            for row in matched:
                row.update(self._payload)
            data = [dict(row) for row in matched]
        elif self._action == "delete":
            for row in matched:
                self._rows.remove(row)
            data = [dict(row) for row in matched]
        else:
            if self._order:
                matched.sort(key=lambda row: row[self._order])
            data = [dict(row) for row in matched[: self._limit]]
        return SimpleNamespace(data=data)


class FakeSupabase:
    KEYS = {"driver_presence": "driver_id", "ride_requests": "request_id"}

    def __init__(self) -> None:
        self.tables: dict[str, list[dict]] = defaultdict(list)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self.tables[name], self.KEYS[name])


class BrokenQuery:
    def __getattr__(self, name):
        if name == "execute":
            def fail():
                raise httpx.ConnectError("connection refused")
            return fail
        return lambda *args, **kwargs: self


class BrokenSupabase:
    def table(self, name: str) -> BrokenQuery:
        return BrokenQuery()


def _presence_store(client, clock) -> SupabasePresenceStore:
    return SupabasePresenceStore(client, stale_after=timedelta(seconds=60), clock=clock, step_seconds=30)


def _request_store(client, clock) -> SupabaseRequestStore:
    return SupabaseRequestStore(client, clock=clock, step_seconds=30)


def _presence(driver_id: str, point, clock, sequence: int, **kwargs) -> DriverPresence:
    return DriverPresence(
        driver_id=driver_id,
        lat=point[0],
        lng=point[1],
        cell_id="",
        last_heartbeat_at=clock(),
        sequence=sequence,
        **kwargs,
    )


def test_presence_upsert_and_cell_query(clock):
    store = _presence_store(FakeSupabase(), clock)
    cells = geocell.search_cells(*SUBA, step_seconds=30)

    assert store.upsert(_presence("d1", SUBA, clock, 1))
    assert store.upsert(_presence("d2", SUBA_NORTH, clock, 1, active_ride_id="ride-1"))

    assert [p.driver_id for p in store.list_in_cells(cells)] == ["d1", "d2"]
    assert [p.driver_id for p in store.list_in_cells(cells, include_busy=False)] == ["d1"]
    assert store.get("d1").cell_id == geocell.cell_id(*SUBA, step_seconds=30)


def test_presence_rejects_out_of_order_and_moves_cells(clock):
    store = _presence_store(FakeSupabase(), clock)
    store.upsert(_presence("d1", SUBA, clock, 5))

    assert store.upsert(_presence("d1", SUBA_NORTH, clock, 4)) is False
    assert store.get("d1").lat == SUBA[0]

    assert store.upsert(_presence("d1", SUBA_NORTH, clock, 6)) is True
    assert store.count_in_cells([geocell.cell_id(*SUBA, step_seconds=30)]) == 0
    assert store.count_in_cells([geocell.cell_id(*SUBA_NORTH, step_seconds=30)]) == 1


def test_presence_staleness_remove_and_purge(clock):
    store = _presence_store(FakeSupabase(), clock)
    cells = geocell.search_cells(*SUBA, step_seconds=30)
    store.upsert(_presence("d1", SUBA, clock, 1))
    clock.advance(61)
    store.upsert(_presence("d2", SUBA, clock, 1))

    assert [p.driver_id for p in store.list_in_cells(cells)] == ["d2"]
    assert store.purge_older_than(clock() - timedelta(seconds=30)) == 1
    store.remove("d2")
    store.remove("d2")
    assert store.get("d2") is None


def test_request_claim_is_conditional(clock):
    store = _request_store(FakeSupabase(), clock)
    created = store.create(RideRequest(client_id="c1", pickup=LocationPoint(*SUBA)))

    claimed = store.claim(created.request_id, "driver-1", "Ana")
    assert claimed.status is RequestStatus.CLAIMED
    assert claimed.driver_name == "Ana"

    with pytest.raises(RequestAlreadyTaken):
        store.claim(created.request_id, "driver-2")
    with pytest.raises(RequestNotFound):
        store.claim("missing", "driver-2")


def test_request_transitions_and_touch(clock):
    store = _request_store(FakeSupabase(), clock)
    created = store.create(RideRequest(client_id="c1", pickup=LocationPoint(*SUBA)))

    with pytest.raises(InvalidTransition):
        store.complete(created.request_id)

    clock.advance(10)
    assert store.touch(created.request_id).last_heartbeat_at == clock()

    cancelled = store.cancel(created.request_id, "client")
    assert cancelled.cancel_reason == "client"
    with pytest.raises(InvalidTransition):
        store.touch(created.request_id)


def test_driver_location_requires_claiming_driver(clock):
    store = _request_store(FakeSupabase(), clock)
    created = store.create(RideRequest(client_id="c1", pickup=LocationPoint(*SUBA)))
    store.claim(created.request_id, "driver-1")

    updated = store.update_driver_location(created.request_id, "driver-1", 4.7411, -74.0722)
    assert updated.driver_lat == 4.7411

    with pytest.raises(RequestAlreadyTaken):
        store.update_driver_location(created.request_id, "driver-2", 4.7411, -74.0722)


def test_request_listings(clock):
    store = _request_store(FakeSupabase(), clock)
    first = store.create(RideRequest(client_id="c1", pickup=LocationPoint(*SUBA)))
    clock.advance(1)
    second = store.create(RideRequest(client_id="c1", pickup=LocationPoint(*SUBA)))
    store.claim(second.request_id, "driver-1")
    clock.advance(1000)

    assert [r.request_id for r in store.list_open_in_cells([first.cell_id])] == [first.request_id]
    assert [r.request_id for r in store.list_for_client("c1")] == [first.request_id, second.request_id]
    assert [r.request_id for r in store.list_for_client("c1", [RequestStatus.CLAIMED])] == [second.request_id]
    assert [r.request_id for r in store.list_open_stale(clock() - timedelta(seconds=900))] == [first.request_id]


def test_request_row_round_trip(clock):
    store = _request_store(FakeSupabase(), clock)
    created = store.create(
        RideRequest(
            client_id="c1",
            pickup=LocationPoint(*SUBA, address="Suba"),
            dropoff=LocationPoint(*SUBA_NORTH),
            client_name="Laura",
        )
    )

    assert request_from_row(request_to_row(created)) == created
    assert store.get(created.request_id) == created


def test_network_failures_become_storage_unavailable(clock):
    store = _request_store(BrokenSupabase(), clock)

    with pytest.raises(StorageUnavailable):
        store.get("any")


def test_container_connects_with_injected_credentials(monkeypatch: pytest.MonkeyPatch):
    from src.cellmatch.config import Settings
    from src.cellmatch.db import supabase as supabase_module
    from src.cellmatch.services.container import build_container

    created = []

    def fake_create_client(url, key):
        created.append((url, key))
        return FakeSupabase()

    monkeypatch.setattr(supabase_module, "create_client", fake_create_client)
    supabase_module.get_supabase_client.cache_clear()
    try:
        container = build_container(
            Settings(
                storage_backend="supabase",
                supabase_url="https://injected.supabase.co",
                supabase_key="injected-key",
                sweeper_enabled=False,
            )
        )
    finally:
        supabase_module.get_supabase_client.cache_clear()

    assert created == [("https://injected.supabase.co", "injected-key")]
    assert isinstance(container.presence_store, SupabasePresenceStore)
    assert isinstance(container.request_store, SupabaseRequestStore)
