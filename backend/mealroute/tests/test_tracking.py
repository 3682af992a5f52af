from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

from mealroute.models.states import ROUTE_COMPLETED, ROUTE_IN_PROGRESS, SESSION_DINNER


def _points(client, driver_id, points, **extra):
    return client.post("/api/v1/tracking/points", json={"driver_id": driver_id, "points": points, **extra})


def test_points_update_last_location_in_time_order(client, seed):
    route = seed.route(seed.driver("Alice"), status=ROUTE_IN_PROGRESS)

    response = _points(
        client,
        route.driver_id,
        [
            {"lat": 1.2930, "lng": 103.8520, "recorded_at": "2026-03-02T04:10:00Z"},
            {"latitude": 1.2840, "longitude": 103.8515, "timestamp": "2026-03-02T04:05:00Z"},
        ],
    )
    assert response.status_code == 200
    body = response.json()
    assert body["route_id"] == route.id
    assert body["accepted"] == 2
    assert body["last_location"] == {"lat": 1.2930, "lng": 103.8520, "recorded_at": "2026-03-02T04:10:00"}


def test_late_point_does_not_overwrite_newer_position(client, seed):
    route = seed.route(seed.driver("Alice"), status=ROUTE_IN_PROGRESS)
    _points(client, route.driver_id, [{"lat": 1.30, "lng": 103.84, "recorded_at": "2026-03-02T04:30:00"}])

    late = _points(client, route.driver_id, [{"lat": 1.28, "lng": 103.85, "recorded_at": "2026-03-02T04:00:00"}])
    assert late.status_code == 200
    assert late.json()["last_location"]["lat"] == 1.30

    latest = client.get("/api/v1/tracking/latest").json()
    assert latest["count"] == 1
    assert latest["locations"][0]["route_id"] == route.id
    assert latest["locations"][0]["driver_name"] == "Alice"
    assert (latest["locations"][0]["lat"], latest["locations"][0]["lng"]) == (1.30, 103.84)


def test_points_require_journey_in_progress(client, seed):
    alice = seed.driver("Alice")
    planned = seed.route(alice)

    response = _points(client, alice.id, [{"lat": 1.3, "lng": 103.8}], route_id=planned.id)
    assert response.status_code == 409
    assert response.json()["details"]["current_status"] == "PLANNED"

    missing = _points(client, alice.id, [{"lat": 1.3, "lng": 103.8}])
    assert missing.status_code == 404


def test_points_for_another_drivers_route_are_rejected(client, seed):
    route = seed.route(seed.driver("Alice"), status=ROUTE_IN_PROGRESS)
    bob = seed.driver("Bob")

    response = _points(client, bob.id, [{"lat": 1.3, "lng": 103.8}], route_id=route.id)
    assert response.status_code == 400
    assert response.json()["error_code"] == "DRIVER_MISMATCH"


def test_delivery_comment_update_and_clear(client, seed):
    route = seed.route(seed.driver("Alice"))
    delivery_id = route.stops[1].delivery_id

    updated = client.put(f"/api/v1/deliveries/{delivery_id}/comments", json={"comment": "  ring twice "})
    assert updated.status_code == 200
    assert updated.json()["route_id"] == route.id
    assert updated.json()["stop"]["comments"] == "ring twice"

    cleared = client.put(f"/api/v1/deliveries/{delivery_id}/comments", json={"comments": "   "})
    assert cleared.json()["stop"]["comments"] is None

    too_long = client.put(f"/api/v1/deliveries/{delivery_id}/comments", json={"comments": "x" * 501})
    assert too_long.status_code == 400
    assert too_long.json()["error_code"] == "COMMENT_TOO_LONG"


def test_delivery_comment_on_completed_route_is_not_found(client, seed):
    route = seed.route(seed.driver("Alice"), status=ROUTE_COMPLETED)

    response = client.put(f"/api/v1/deliveries/{route.stops[0].delivery_id}/comments", json={"comments": "late"})
    assert response.status_code == 404


def _query(url):
    parts = urlsplit(url)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://www.google.com/maps/dir/"
    return {key: values[0] for key, values in parse_qs(parts.query).items()}


def test_next_stop_maps_point_at_each_drivers_current_stop(client, seed, db):
    alice_route = seed.route(seed.driver("Alice"))
    bob_route = seed.route(seed.driver("Bob"), stops=2)
    seed.route(seed.driver("Carol"), status=ROUTE_COMPLETED)
    seed.route(seed.driver("Dave"), session=SESSION_DINNER)
    bob_route.stops[0].lat = None
    db.commit()
    client.post(
        "/api/v1/journey/start",
        json={"driver_id": alice_route.driver_id, "route_id": alice_route.id, "lat": 1.28, "lng": 103.85},
    )
    client.post("/api/v1/journey/mark-stop", json={"route_id": alice_route.id, "stop_order": 1})

    response = client.get("/api/v1/drivers/next-stop-maps", params={"date": "2026-03-02", "session": "lunch"})
    assert response.status_code == 200
    body = response.json()
    assert body["session"] == "LUNCH"
    drivers = {item["driver_name"]: item for item in body["drivers"]}
    assert set(drivers) == {"Alice", "Bob"}

    alice = drivers["Alice"]
    assert alice["next_stop"]["stop_order"] == 2
    assert alice["missing_geolocation"] is False
    params = _query(alice["map_url"])
    assert params["destination"] == "1.293,103.852"
    assert params["origin"] == "1.28,103.85"
    assert params["travelmode"] == "driving"

    bob = drivers["Bob"]
    assert bob["next_stop"]["stop_order"] == 1
    assert bob["map_url"] is None
    assert bob["missing_geolocation"] is True


def test_route_overview_maps_split_long_routes(client, seed, db):
    route = seed.route(seed.driver("Alice"), stops=12)
    route.stops[11].lng = None
    db.commit()

    response = client.get("/api/v1/drivers/route-overview-maps", params={"date": "2026-03-02", "session": "LUNCH"})
    assert response.status_code == 200
    (overview,) = response.json()["drivers"]
    assert overview["remaining_stops"] == 12
    assert overview["missing_geolocation"] == [route.stops[11].delivery_id]

    first, second = (_query(url) for url in overview["map_urls"])
    assert "origin" not in first
    assert len(first["waypoints"].split("|")) == 9
    assert first["destination"] == f"{route.stops[9].lat},{route.stops[9].lng}"
    assert second["origin"] == first["destination"]
    assert second["destination"] == f"{route.stops[10].lat},{route.stops[10].lng}"
    assert "waypoints" not in second


def test_driver_maps_reject_unknown_session(client):
    response = client.get("/api/v1/drivers/next-stop-maps", params={"date": "2026-03-02", "session": "brunch"})
    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"
