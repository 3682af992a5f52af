from __future__ import annotations

from mealroute.providers.planner import PlannedRoute, PlannedStop, PlannerError, PlanResult
from mealroute.services import planning


DELIVERIES = [
    {"delivery_id": "d1", "address": "1 Raffles Place", "lat": 1.2840, "lng": 103.8515},
    {"delivery_id": "d2", "address": "10 Bayfront Ave", "latitude": 1.2830, "longitude": 103.8600},
    {"delivery_id": "d3", "address": "8 Marina View", "location": {"lat": 1.2800, "lon": 103.8540}},
    {"delivery_id": 4, "address": "1 Fullerton Rd", "lat": 1.2860, "lng": 103.8530},
]


class StubPlanner:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def plan_routes(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result


def _plan(client, drivers, **extra):
    body = {"date": "2026-03-02", "session": "lunch", "drivers": drivers, "deliveries": DELIVERIES, **extra}
    return client.post("/api/v1/routes/plan", json=body)


def test_plan_routes_with_mock_planner(client, seed):
    alice = seed.driver("Alice")
    bob = seed.driver("Bob")

    response = _plan(client, [alice.id, {"driver_id": bob.id}])
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["session"] == "LUNCH"
    assert body["plan_id"]
    assert len(body["routes"]) == 2

    delivered = sorted(stop["delivery_id"] for route in body["routes"] for stop in route["stops"])
    assert delivered == ["4", "d1", "d2", "d3"]
    for route in body["routes"]:
        assert route["status"] == "PLANNED"
        assert [stop["stop_order"] for stop in route["stops"]] == list(range(1, len(route["stops"]) + 1))
        assert all(stop["planned_stop_id"].startswith("ps_") for stop in route["stops"])


def test_plan_rejects_unknown_and_busy_drivers(client, seed):
    alice = seed.driver("Alice")
    seed.route(alice)

    response = _plan(client, [alice.id, 999])
    assert response.status_code == 400
    warnings = response.json()["details"]["warnings"]
    assert any("999" in item for item in warnings)
    assert any("already has route" in item for item in warnings)


def test_plan_allows_driver_whose_session_route_is_completed(client, seed):
    alice = seed.driver("Alice")
    seed.route(alice, status="COMPLETED")

    response = _plan(client, [alice.id])
    assert response.status_code == 200


def test_plan_with_no_routes_keeps_planner_warnings(client, seed, monkeypatch):
    alice = seed.driver("Alice")
    stub = StubPlanner(result=PlanResult(routes=[], warnings=["No orders for LUNCH"]))
    monkeypatch.setattr(planning, "get_planner_client", lambda: stub)

    response = _plan(client, [alice.id])
    assert response.status_code == 400
    assert response.json()["error_code"] == "NO_ROUTES"
    assert response.json()["details"]["warnings"] == ["No orders for LUNCH"]


def test_plan_marks_idle_drivers_as_partial(client, seed, monkeypatch):
    alice = seed.driver("Alice")
    bob = seed.driver("Bob")
    stub = StubPlanner(
        result=PlanResult(
            routes=[PlannedRoute(driver_id=alice.id, stops=[PlannedStop(delivery_id="d1"), PlannedStop(delivery_id="d2")])],
        )
    )
    monkeypatch.setattr(planning, "get_planner_client", lambda: stub)

    response = client.post(
        "/api/v1/routes/plan",
        json={"date": "2026-03-02", "session": "DINNER", "drivers": [alice.id, bob.id], "constraints": {"max_stops": 10}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "PARTIAL"
    assert body["warnings"] == ["Driver Bob received no stops"]
    assert stub.calls[0]["deliveries"] is None
    assert stub.calls[0]["constraints"] == {"max_stops": 10}


def test_plan_rejects_planner_routes_for_unrequested_driver(client, seed, monkeypatch):
    alice = seed.driver("Alice")
    stub = StubPlanner(result=PlanResult(routes=[PlannedRoute(driver_id=77, stops=[PlannedStop(delivery_id="d1")])]))
    monkeypatch.setattr(planning, "get_planner_client", lambda: stub)

    response = _plan(client, [alice.id])
    assert response.status_code == 502
    assert response.json()["details"]["unexpected_driver_ids"] == [77]


def test_plan_maps_planner_outage(client, seed, monkeypatch):
    alice = seed.driver("Alice")
    stub = StubPlanner(error=PlannerError("unavailable", code="PLANNER_UNAVAILABLE", status_code=503, retryable=True))
    monkeypatch.setattr(planning, "get_planner_client", lambda: stub)

    response = _plan(client, [alice.id])
    assert response.status_code == 502
    assert response.json()["details"]["upstream_code"] == "PLANNER_UNAVAILABLE"


def test_plan_rejects_unknown_session(client, seed):
    alice = seed.driver("Alice")
    response = _plan(client, [alice.id], session="brunch")
    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"
