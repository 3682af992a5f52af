from mealroute.providers.google_routes import (
    GoogleRoutesError,
    GoogleRoutesProvider,
    TrafficLeg,
    get_google_routes_provider,
    parse_google_duration_seconds,
)
from mealroute.providers.planner import (
    PlannedRoute,
    PlannedStop,
    PlannerError,
    PlanResult,
    RoutePlannerClient,
    TailStop,
    get_planner_client,
)

__all__ = [
    "GoogleRoutesError",
    "GoogleRoutesProvider",
    "PlanResult",
    "PlannedRoute",
    "PlannedStop",
    "PlannerError",
    "RoutePlannerClient",
    "TailStop",
    "TrafficLeg",
    "get_google_routes_provider",
    "get_planner_client",
    "parse_google_duration_seconds",
]
