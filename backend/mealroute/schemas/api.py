from __future__ import annotations

import re
import datetime as dt
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from mealroute.services.route_store import GeoPoint, StopRef

StopTarget = Literal["REACHED", "DELIVERED", "CUSTOMER_UNAVAILABLE", "SKIPPED"]
SessionName = Literal["BREAKFAST", "LUNCH", "DINNER"]

_LAT_KEYS = ("lat", "latitude")
_LNG_KEYS = ("lng", "lon", "longitude")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_enum_token(value: Any) -> Any:
    """'Delivered' -> 'DELIVERED', 'CustomerUnavailable' / 'customer-unavailable' -> 'CUSTOMER_UNAVAILABLE'."""
    if not isinstance(value, str):
        return value
    text = _CAMEL_BOUNDARY.sub("_", value.strip())
    return re.sub(r"[\s\-]+", "_", text).upper()


def _pick(data: dict[str, Any], keys: tuple[str, ...], label: str, cast: Callable[[Any], Any] | None = None) -> Any:
    """Pop every alias in `keys`; the ones that are set must agree."""
    found: list[Any] = []
    for key in keys:
        if key not in data:
            continue
        value = data.pop(key)
        if value is None:
            continue
        if cast is not None:
            try:
                value = cast(value)
            except (TypeError, ValueError):
                raise ValueError(f"{label} is not valid: {value!r}") from None
        if value not in found:
            found.append(value)
    if len(found) > 1:
        raise ValueError(f"Conflicting values for {label}: {found}")
    return found[0] if found else None


def _coords(raw: dict[str, Any]) -> dict[str, float] | None:
    lat = _pick(raw, _LAT_KEYS, "latitude", float)
    lng = _pick(raw, _LNG_KEYS, "longitude", float)
    if lat is None and lng is None:
        return None
    if lat is None or lng is None:
        raise ValueError("A location needs both latitude and longitude")
    return {"lat": lat, "lng": lng}


def _fold_location(data: dict[str, Any], nested_keys: tuple[str, ...]) -> None:
    nested = _pick(data, nested_keys, "location")
    flat_raw = {key: data.pop(key) for key in (*_LAT_KEYS, *_LNG_KEYS) if key in data}
    if nested is not None and not isinstance(nested, dict):
        raise ValueError("location must be an object with latitude and longitude")

    nested_point = _coords(dict(nested)) if nested else None
    flat_point = _coords(flat_raw) if flat_raw else None
    if nested_point and flat_point and nested_point != flat_point:
        raise ValueError("Conflicting location: nested and flat coordinates differ")
    data["location"] = nested_point or flat_point


def _fold_driver(data: dict[str, Any]) -> None:
    data["driver_id"] = _pick(data, ("driver_id", "user_id"), "driver_id", int)


def _fold_stop_identifier(data: dict[str, Any]) -> None:
    nested = data.pop("stop_identifier", None) or data.pop("stop", None)
    if nested is not None:
        if not isinstance(nested, dict):
            raise ValueError("stop_identifier must be an object")
        for key, value in nested.items():
            if key in data and data[key] is not None and data[key] != value:
                raise ValueError(f"Conflicting values for {key}")
            data[key] = value
    data["planned_stop_id"] = _pick(data, ("planned_stop_id", "stop_id"), "planned_stop_id", str)
    data["delivery_id"] = _pick(data, ("delivery_id",), "delivery_id", str)


def _as_dict(data: Any) -> Any:
    return dict(data) if isinstance(data, dict) else data


class GeoPointIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    def to_point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)


class LocatedRequest(BaseModel):
    location: GeoPointIn | None = None

    def geo_point(self) -> GeoPoint | None:
        return self.location.to_point() if self.location is not None else None


class StopIdentified(BaseModel):
    planned_stop_id: str | None = None
    stop_order: int | None = Field(default=None, ge=1)
    delivery_id: str | None = None

    @model_validator(mode="after")
    def ensure_identifier(self) -> "StopIdentified":
        if not (self.planned_stop_id or self.stop_order is not None or self.delivery_id):
            raise ValueError("Provide planned_stop_id, stop_order or delivery_id")
        return self

    def stop_ref(self) -> StopRef:
        return StopRef(planned_stop_id=self.planned_stop_id, stop_order=self.stop_order, delivery_id=self.delivery_id)


class StartJourneyRequest(LocatedRequest):
    driver_id: int
    route_id: int | None = None
    date: dt.date | None = None
    session: SessionName | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            _fold_driver(data)
            _fold_location(data, ("location", "current_location", "start_location"))
            data["session"] = normalize_enum_token(data.get("session"))
        return data


class MarkStopRequest(LocatedRequest, StopIdentified):
    route_id: int
    driver_id: int | None = None
    status: StopTarget = "DELIVERED"
    completed_at: dt.datetime | None = None
    comments: str | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            _fold_driver(data)
            _fold_stop_identifier(data)
            _fold_location(data, ("location", "current_location"))
            data["comments"] = _pick(data, ("comments", "comment"), "comments")
            if data.get("status") is None:
                data.pop("status", None)
            else:
                data["status"] = normalize_enum_token(data["status"])
        return data


class EndJourneyRequest(LocatedRequest):
    route_id: int
    driver_id: int | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            _fold_driver(data)
            _fold_location(data, ("location", "current_location", "end_location"))
        return data


class TrafficCheckRequest(LocatedRequest):
    route_id: int
    check_all_segments: bool = True

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            _fold_location(data, ("current_location", "location"))
        return data


class ReoptimizeRequest(LocatedRequest):
    route_id: int

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            _fold_location(data, ("current_location", "location"))
        return data


class ReassignDriverRequest(BaseModel):
    """Either a single reassignment or, with `exchange: true`, a driver swap between two routes."""

    exchange: bool = False
    route_id: int | None = None
    new_driver_id: int | None = None
    new_driver_name: str | None = None
    route_id_1: int | None = None
    route_id_2: int | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            route_ids = data.pop("route_ids", None)
            if route_ids is not None:
                if not isinstance(route_ids, list) or len(route_ids) != 2:
                    raise ValueError("route_ids must list exactly two routes")
                data["exchange"] = True
                for key, value in zip(("route_id_1", "route_id_2"), route_ids):
                    if data.get(key) is not None and int(data[key]) != int(value):
                        raise ValueError(f"Conflicting values for {key}")
                    data[key] = value
            data["new_driver_id"] = _pick(data, ("new_driver_id", "driver_id"), "new_driver_id", int)
            data["new_driver_name"] = _pick(data, ("new_driver_name", "driver_name"), "new_driver_name", str.strip)
        return data

    @model_validator(mode="after")
    def ensure_shape(self) -> "ReassignDriverRequest":
        if self.exchange:
            if self.route_id_1 is None or self.route_id_2 is None:
                raise ValueError("Driver exchange needs route_id_1 and route_id_2")
            if self.new_driver_id is not None or self.new_driver_name:
                raise ValueError("Driver exchange does not take a new driver")
        else:
            if self.route_id is None:
                raise ValueError("route_id is required")
            if self.new_driver_id is None and not self.new_driver_name:
                raise ValueError("Provide new_driver_id or new_driver_name")
        return self


class MoveStopRequest(StopIdentified):
    from_route_id: int
    to_route_id: int
    insert_at_order: int | None = Field(default=None, ge=1)

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            _fold_stop_identifier(data)
        return data


class DeliveryIn(LocatedRequest):
    delivery_id: str
    address: str | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            data["delivery_id"] = _pick(data, ("delivery_id", "id"), "delivery_id", str)
            _fold_location(data, ("location",))
        return data

    def to_planner(self) -> dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "address": self.address,
            "lat": self.location.lat if self.location else None,
            "lng": self.location.lng if self.location else None,
        }


class PlanRoutesRequest(BaseModel):
    date: dt.date
    session: SessionName
    drivers: list[int] = Field(min_length=1)
    deliveries: list[DeliveryIn] | None = None
    constraints: dict[str, Any] = Field(default_factory=dict)

    @field_validator("session", mode="before")
    @classmethod
    def normalize_session(cls, value: Any) -> Any:
        return normalize_enum_token(value)

    @field_validator("drivers", mode="before")
    @classmethod
    def normalize_drivers(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        ids: list[Any] = []
        for item in value:
            if isinstance(item, dict):
                item = _pick(dict(item), ("driver_id", "id", "user_id"), "driver_id", int)
                if item is None:
                    raise ValueError("Each driver needs a driver_id")
            ids.append(item)
        return ids


class TrackingPointIn(LocatedRequest):
    recorded_at: dt.datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            data["recorded_at"] = _pick(data, ("recorded_at", "timestamp"), "recorded_at")
            _fold_location(data, ("location",))
            if data["location"] is None:
                raise ValueError("Each tracking point needs latitude and longitude")
        return data


class TrackingPointsRequest(BaseModel):
    driver_id: int
    route_id: int | None = None
    points: list[TrackingPointIn] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            _fold_driver(data)
            if "points" not in data:
                # Single-point form: the coordinates sit on the body itself.
                single = {
                    key: data.pop(key)
                    for key in (*_LAT_KEYS, *_LNG_KEYS, "location", "recorded_at", "timestamp")
                    if key in data
                }
                data["points"] = [single] if single else []
        return data

    def samples(self) -> list[tuple[GeoPoint, dt.datetime | None]]:
        return [(point.location.to_point(), point.recorded_at) for point in self.points]


class DeliveryCommentRequest(BaseModel):
    comments: str | None = None
    route_id: int | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        data = _as_dict(data)
        if isinstance(data, dict):
            data["comments"] = _pick(data, ("comments", "comment"), "comments")
        return data


class DriverMapsQuery(BaseModel):
    date: dt.date
    session: SessionName

    @field_validator("session", mode="before")
    @classmethod
    def normalize_session(cls, value: Any) -> Any:
        return normalize_enum_token(value)
