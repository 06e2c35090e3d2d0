from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Dict, Iterator

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from datastore.day_cache import DayCacheTable, build_default_day_cache
from services.last_value import LastValueCache
from services.query import QueryService, build_default_query_service
from settings import get_settings
from storage.factory import build_default_history_source
from storage.memory_history import MemoryHistorySource, build_default_memory_source

NOW = datetime(2024, 1, 5, 12, tzinfo=timezone.utc)
BASE_MS = 1704067200000  # 2024-01-01T00:00:00Z


@pytest.fixture
def api_client(tmp_path, monkeypatch) -> Iterator[TestClient]:
    services: Dict[int, QueryService] = {}

    def build_test_service(workers: int | None = None) -> QueryService:
        worker_count = workers or 2
        service = services.get(worker_count)
        if service is None:
            service = QueryService(
                source=MemoryHistorySource(name="test", root_path=tmp_path / "history"),
                table=DayCacheTable(name="test", persistence_path=tmp_path / "days.json"),
                last_values=LastValueCache(),
                tz=timezone.utc,
                clock=lambda: NOW,
                workers=worker_count,
            )
            services[worker_count] = service
        return service

    def cache_clear() -> None:
        while services:
            _, service = services.popitem()
            service.shutdown()

    build_test_service.cache_clear = cache_clear  # type: ignore[attr-defined]

    monkeypatch.setattr("app.main.build_default_query_service", build_test_service)
    monkeypatch.setattr("app.api.build_default_query_service", build_test_service)
    monkeypatch.setattr("services.query.build_default_query_service", build_test_service)

    app = create_app()
    with TestClient(app) as client:
        yield client

    cache_clear()


def _clear_default_caches() -> None:
    for cache in (
        get_settings,
        build_default_memory_source,
        build_default_history_source,
        build_default_day_cache,
        build_default_query_service,
    ):
        cache.cache_clear()


def _record(client: TestClient, device: str, sensor_type: str, current, offset_ms: int, units: str | None = "C") -> None:
    payload = {"device": device, "type": sensor_type, "current": current, "date": BASE_MS + offset_ms}
    if units:
        payload["units"] = units
    response = client.post("/samples", json=payload)
    assert response.status_code == 201


def _seed_worked_example(client: TestClient) -> None:
    for offset, value in ((0, 10), (1000, 20), (2000, 15)):
        _record(client, "boiler", "temp", value, offset)


def test_lifespan_shuts_down_service_and_clears_cache(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("HISTORY_ROOT_PATH", str(tmp_path / "history"))
    monkeypatch.setenv("DAY_CACHE_PERSISTENCE_PATH", str(tmp_path / "days.json"))
    _clear_default_caches()
    app = create_app()

    with TestClient(app):
        service_during = build_default_query_service()
        assert service_during.backfill.executor._shutdown is False

    assert service_during.backfill.executor._shutdown is True
    service_after = build_default_query_service()
    try:
        assert service_after is not service_during
    finally:
        service_after.shutdown()
        _clear_default_caches()


def test_record_and_read_last_value(api_client: TestClient) -> None:
    response = api_client.post(
        "/samples",
        json={"device": "porch", "type": "light", "current": "on", "date": "2024-01-05T11:00:00Z"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["device_key"] == "porch@light"
    assert body["value"] is True

    last = api_client.get("/last/porch/light")
    assert last.status_code == 200
    assert last.json()["value"] is True
    assert api_client.get("/last/porch@light").json() == last.json()


def test_record_rejects_message_without_value(api_client: TestClient) -> None:
    response = api_client.post("/samples", json={"device": "porch", "current": "  "})

    assert response.status_code == 400


def test_unknown_device_returns_not_found(api_client: TestClient) -> None:
    response = api_client.get("/last/ghost/temp")

    assert response.status_code == 404
    assert "ghost@temp" in response.json()["detail"]


def test_history_window_and_order(api_client: TestClient) -> None:
    _seed_worked_example(api_client)

    response = api_client.get(
        "/history/boiler/temp",
        params={"date_min": BASE_MS, "date_max": BASE_MS + 3000, "order": "descending", "limit": 2},
    )

    assert response.status_code == 200
    assert [sample["value"] for sample in response.json()] == [15.0, 20.0]


def test_full_range_aggregate(api_client: TestClient) -> None:
    _seed_worked_example(api_client)

    response = api_client.get(
        "/aggregate/boiler/temp",
        params={"date_min": BASE_MS, "date_max": BASE_MS + 3000},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["average"] == pytest.approx(15.0)
    assert body["sum"] == pytest.approx(45.0)
    assert body["min"]["value"] == 10.0
    assert body["max"]["timestamp"].startswith("2024-01-01T00:00:01")


def test_stepped_aggregate_with_projection(api_client: TestClient) -> None:
    _seed_worked_example(api_client)

    response = api_client.get(
        "/aggregate/boiler/temp",
        params={
            "date_min": "2024-01-01T00:00:00Z",
            "date_max": BASE_MS + 3000,
            "step": 1500,
            "fields": "average,total_ms",
        },
    )

    assert response.status_code == 200
    assert response.json() == [
        {"average": pytest.approx(13.3333, rel=1e-4), "total_ms": 1500},
        {"average": pytest.approx(16.6667, rel=1e-4), "total_ms": 1500},
    ]


def test_daily_aggregate_uses_day_cache(api_client: TestClient) -> None:
    _seed_worked_example(api_client)

    response = api_client.get(
        "/aggregate/boiler/temp",
        params={"date_min": "2024-01-01", "date_max": "2024-01-03", "step": "day", "fields": "start_date,count"},
    )

    assert response.status_code == 200
    body = response.json()
    assert [day["count"] for day in body] == [3, 0]
    assert body[0]["start_date"].startswith("2024-01-01T00:00:00")


def test_aggregate_without_data_returns_null(api_client: TestClient) -> None:
    _seed_worked_example(api_client)

    response = api_client.get("/aggregate/boiler/temp", params={"date_min": BASE_MS + 10_000, "date_max": BASE_MS + 20_000})

    assert response.status_code == 200
    assert response.json() is None


@pytest.mark.parametrize(
    "params",
    [
        {"fields": "average,median"},
        {"date_min": BASE_MS + 5000, "date_max": BASE_MS},
        {"date_min": "last tuesday"},
        {"step": "0"},
        {"step": "fortnight"},
    ],
)
def test_invalid_query_parameters_return_bad_request(api_client: TestClient, params) -> None:
    _seed_worked_example(api_client)

    response = api_client.get("/aggregate/boiler/temp", params=params)

    assert response.status_code == 400


def test_cumulative_counter(api_client: TestClient) -> None:
    for offset, value in enumerate((5, 8, 6, 9)):
        _record(api_client, "meter", "energy", value, offset * 1000, units="kWh")

    response = api_client.get(
        "/cumulative/meter/energy",
        params={"date_min": BASE_MS, "date_max": BASE_MS + 60_000},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["current"] == pytest.approx(6.0)
    assert (body["count"], body["count_changes"]) == (4, 2)


def test_batch_last_sets_last_modified_and_honours_if_modified_since(api_client: TestClient) -> None:
    _record(api_client, "boiler", "temp", 20, 0)
    _record(api_client, "attic", "temp", 12, 5000)

    response = api_client.post("/last", json={"keys": ["boiler/temp", "attic@temp"]})

    assert response.status_code == 200
    assert set(response.json()) == {"boiler/temp", "attic@temp"}
    expected = format_datetime(datetime(2024, 1, 1, 0, 0, 5, tzinfo=timezone.utc), usegmt=True)
    assert response.headers["last-modified"] == expected

    cached = api_client.post(
        "/last",
        json={"keys": ["boiler/temp", "attic@temp"]},
        headers={"If-Modified-Since": expected},
    )
    assert cached.status_code == 304


def test_batch_fails_when_any_key_is_unknown(api_client: TestClient) -> None:
    _record(api_client, "boiler", "temp", 20, 0)

    response = api_client.post("/last", json={"keys": ["boiler/temp", "ghost/temp"]})

    assert response.status_code == 404


def test_batch_aggregate(api_client: TestClient) -> None:
    _seed_worked_example(api_client)
    _record(api_client, "attic", "temp", 12, 500)

    response = api_client.post(
        "/aggregate",
        params={"date_min": BASE_MS, "date_max": BASE_MS + 3000, "fields": "count"},
        json={"keys": ["boiler/temp", "attic/temp"]},
    )

    assert response.status_code == 200
    assert response.json() == {"boiler/temp": {"count": 3}, "attic/temp": {"count": 1}}


def test_batch_history(api_client: TestClient) -> None:
    _seed_worked_example(api_client)

    response = api_client.post(
        "/history",
        params={"date_min": BASE_MS, "date_max": BASE_MS + 1500},
        json={"keys": ["boiler/temp"]},
    )

    assert response.status_code == 200
    assert [sample["value"] for sample in response.json()["boiler/temp"]] == [10.0, 20.0]


def test_health(api_client: TestClient) -> None:
    response = api_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
