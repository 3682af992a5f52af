from mealroute.models.base import Base
from mealroute.models.entities import Driver, ErrorLog, Plan, Route, RouteEvent, Stop

__all__ = [
    "Base",
    "Driver",
    "Plan",
    "Route",
    "Stop",
    "RouteEvent",
    "ErrorLog",
]
