from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from mealroute.providers.google_routes import (
    GOOGLE_COMPUTE_ROUTES_URL,
    GoogleRoutesError,
    GoogleRoutesProvider,
    parse_compute_routes_legs,
    parse_google_duration_seconds,
)
from mealroute.services.cache import InMemoryCache
from mealroute.utils.settings import get_settings


POINTS = [(1.2840, 103.8515), (1.2930, 103.8520), (1.3010, 103.8400)]

ROUTES_PAYLOAD = {
    "routes": [
        {
            "legs": [
                {"duration": "180s", "staticDuration": "100s", "distanceMeters": 1100},
                {"duration": "240s", "staticDuration": "200s", "distanceMeters": 2200},
            ]
        }
    ]
}


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _live_provider(monkeypatch) -> GoogleRoutesProvider:
    monkeypatch.setenv("FEATURE_GOOGLE_TRAFFIC", "true")
    monkeypatch.setenv("GOOGLE_ROUTES_API_KEY", "unit-test-key")
    get_settings.cache_clear()
    provider = GoogleRoutesProvider()
    provider.cache = InMemoryCache()
    monkeypatch.setattr(provider._limiter, "acquire", lambda: None)
    monkeypatch.setattr(provider, "_sleep_backoff", lambda attempt: None)
    return provider


def test_parse_duration_values():
    assert parse_google_duration_seconds("120s") == 120
    assert parse_google_duration_seconds(59.6) == 60
    with pytest.raises(ValueError):
        parse_google_duration_seconds(None)


def test_parse_compute_routes_legs_multiplier():
    legs = parse_compute_routes_legs(ROUTES_PAYLOAD, expected_legs=2)
    assert [leg.duration_s for leg in legs] == [180, 240]
    assert [leg.static_duration_s for leg in legs] == [100, 200]
    assert [leg.multiplier for leg in legs] == [1.8, 1.2]


def test_parse_compute_routes_leg_count_mismatch():
    with pytest.raises(GoogleRoutesError) as err:
        parse_compute_routes_legs(ROUTES_PAYLOAD, expected_legs=3)
    assert err.value.code == "GOOGLE_LEG_COUNT_MISMATCH"


def test_google_key_resolution_strips_whitespace(monkeypatch):
    monkeypatch.setenv("GOOGLE_ROUTES_API_KEY", "  unit-test-key\n")
    get_settings.cache_clear()
    assert get_settings().resolved_google_routes_api_key == "unit-test-key"


def test_leg_traffic_calls_google_once_then_uses_cache(monkeypatch):
    provider = _live_provider(monkeypatch)
    calls = []

    def _post(url, json=None, headers=None):  # noqa: ANN001
        calls.append({"url": url, "json": json, "headers": headers})
        return httpx.Response(200, json=ROUTES_PAYLOAD, request=httpx.Request("POST", url))

    monkeypatch.setattr(provider.http, "post", _post)

    departure = datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc)
    first = provider.leg_traffic(POINTS, departure)
    second = provider.leg_traffic(POINTS, departure)

    assert len(calls) == 1
    assert calls[0]["url"] == GOOGLE_COMPUTE_ROUTES_URL
    assert calls[0]["headers"]["X-Goog-Api-Key"] == "unit-test-key"
    assert len(calls[0]["json"]["intermediates"]) == 1
    assert [leg.multiplier for leg in first] == [1.8, 1.2]
    assert [leg.multiplier for leg in second] == [1.8, 1.2]
    assert {leg.source for leg in second} == {"cache"}


def test_request_errors_retry_then_raise(monkeypatch):
    provider = _live_provider(monkeypatch)
    attempts = []

    def _fail(url, json=None, headers=None):  # noqa: ANN001, ARG001
        attempts.append(url)
        raise httpx.ConnectError("connect failed", request=httpx.Request("POST", url))

    monkeypatch.setattr(provider.http, "post", _fail)

    with pytest.raises(GoogleRoutesError) as err:
        provider.leg_traffic(POINTS)
    assert len(attempts) == 3
    assert err.value.code == "GOOGLE_ROUTES_REQUEST_ERROR"
    assert err.value.details["error_type"] == "ConnectError"
    assert err.value.timed_out is False


def test_timeouts_are_flagged(monkeypatch):
    provider = _live_provider(monkeypatch)

    def _timeout(url, json=None, headers=None):  # noqa: ANN001, ARG001
        raise httpx.ReadTimeout("slow", request=httpx.Request("POST", url))

    monkeypatch.setattr(provider.http, "post", _timeout)

    with pytest.raises(GoogleRoutesError) as err:
        provider.leg_traffic(POINTS)
    assert err.value.timed_out is True


def test_rejected_request_is_not_retried(monkeypatch):
    provider = _live_provider(monkeypatch)
    attempts = []

    def _reject(url, json=None, headers=None):  # noqa: ANN001, ARG001
        attempts.append(url)
        return httpx.Response(403, text="denied", request=httpx.Request("POST", url))

    monkeypatch.setattr(provider.http, "post", _reject)

    with pytest.raises(GoogleRoutesError) as err:
        provider.leg_traffic(POINTS)
    assert len(attempts) == 1
    assert err.value.code == "GOOGLE_ROUTES_REJECTED"


def test_disabled_provider_returns_free_flow_estimates(monkeypatch):
    monkeypatch.setenv("FEATURE_GOOGLE_TRAFFIC", "false")
    get_settings.cache_clear()
    provider = GoogleRoutesProvider()

    legs = provider.leg_traffic(POINTS)
    assert len(legs) == 2
    assert all(leg.source == "estimate" for leg in legs)
    assert all(leg.multiplier == 1.0 for leg in legs)
    assert legs[0].distance_m > 900
