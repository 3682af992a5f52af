from __future__ import annotations

import httpx
import pytest

from mealroute.providers.planner import PlannerError, RoutePlannerClient, TailStop, haversine_m
from mealroute.utils.settings import get_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _remote_client(monkeypatch, responses) -> tuple[RoutePlannerClient, list[dict]]:
    monkeypatch.setenv("PLANNER_BASE_URL", "http://planner.internal/")
    monkeypatch.setenv("PLANNER_API_KEY", "planner-secret")
    monkeypatch.setenv("PLANNER_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()
    client = RoutePlannerClient()
    sent: list[dict] = []
    queue = list(responses)

    def _request(method, url, json=None, headers=None):  # noqa: ANN001
        sent.append({"method": method, "url": url, "json": json, "headers": headers})
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body, request=httpx.Request(method, url))

    monkeypatch.setattr(client.http, "request", _request)
    monkeypatch.setattr(client, "_sleep_backoff", lambda attempt: None)
    return client, sent


def test_haversine_is_roughly_one_km_per_hundredth_degree():
    assert 1000 < haversine_m(1.28, 103.85, 1.29, 103.85) < 1200


def test_mock_mode_without_base_url(monkeypatch):
    monkeypatch.setenv("PLANNER_BASE_URL", "   ")
    get_settings.cache_clear()
    client = RoutePlannerClient()
    assert client.mock_mode is True
    assert client.health() == {"status": "mock"}


def test_mock_tail_reoptimization_visits_nearest_first(monkeypatch):
    monkeypatch.setenv("PLANNER_BASE_URL", "")
    get_settings.cache_clear()
    client = RoutePlannerClient()
    stops = [
        TailStop(planned_stop_id="far", delivery_id="d1", lat=1.35, lng=103.85),
        TailStop(planned_stop_id="near", delivery_id="d2", lat=1.281, lng=103.85),
        TailStop(planned_stop_id="nowhere", delivery_id="d3", lat=None, lng=None),
        TailStop(planned_stop_id="mid", delivery_id="d4", lat=1.30, lng=103.85),
    ]

    ordered = client.reoptimize_tail(route_id=1, driver_id=1, start=(1.28, 103.85), stops=stops)
    assert ordered == ["near", "mid", "far", "nowhere"]


def test_remote_plan_parses_routes(monkeypatch):
    body = {
        "success": True,
        "routes": [{"driver_id": 3, "stops": [{"delivery_id": 11, "latitude": 1.3, "longitude": 103.8}]}],
        "warnings": ["d9 has no address"],
    }
    client, sent = _remote_client(monkeypatch, [(200, body)])

    result = client.plan_routes(
        delivery_date="2026-03-02",
        session="LUNCH",
        drivers=[{"driver_id": 3, "name": "Alice"}],
        deliveries=None,
        constraints={},
    )
    assert sent[0]["url"] == "http://planner.internal/api/route/plan"
    assert sent[0]["headers"]["Authorization"] == "Bearer planner-secret"
    assert "deliveries" not in sent[0]["json"]
    assert result.routes[0].driver_id == 3
    assert result.routes[0].stops[0].delivery_id == "11"
    assert result.routes[0].stops[0].lat == 1.3
    assert result.warnings == ["d9 has no address"]


def test_remote_retries_on_unavailable_then_succeeds(monkeypatch):
    client, sent = _remote_client(monkeypatch, [(503, {"error": "busy"}), (200, {"ordered_stop_ids": ["b", "a"]})])

    ordered = client.reoptimize_tail(
        route_id=1,
        driver_id=2,
        start=None,
        stops=[TailStop("a", "d1", 1.3, 103.8), TailStop("b", "d2", 1.31, 103.81)],
    )
    assert ordered == ["b", "a"]
    assert len(sent) == 2
    assert sent[1]["json"]["start_location"] is None


def test_remote_timeout_after_retries(monkeypatch):
    timeout = httpx.ReadTimeout("slow", request=httpx.Request("POST", "http://planner.internal/api/route/plan"))
    client, sent = _remote_client(monkeypatch, [timeout, timeout])

    with pytest.raises(PlannerError) as err:
        client.plan_routes(delivery_date="2026-03-02", session="LUNCH", drivers=[], deliveries=None, constraints={})
    assert err.value.timed_out is True
    assert err.value.code == "PLANNER_TIMEOUT"
    assert len(sent) == 2


def test_remote_rejection_is_not_retried(monkeypatch):
    client, sent = _remote_client(monkeypatch, [(200, {"success": False, "error": "No orders"})])

    with pytest.raises(PlannerError) as err:
        client.plan_routes(delivery_date="2026-03-02", session="LUNCH", drivers=[], deliveries=None, constraints={})
    assert err.value.code == "PLANNER_REJECTED"
    assert str(err.value) == "No orders"
    assert len(sent) == 1
