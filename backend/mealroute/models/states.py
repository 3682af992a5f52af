SESSION_BREAKFAST = "BREAKFAST"
SESSION_LUNCH = "LUNCH"
SESSION_DINNER = "DINNER"

ROUTE_PLANNED = "PLANNED"
ROUTE_IN_PROGRESS = "IN_PROGRESS"
ROUTE_COMPLETED = "COMPLETED"

STOP_PENDING = "PENDING"
STOP_REACHED = "REACHED"
STOP_DELIVERED = "DELIVERED"
STOP_CUSTOMER_UNAVAILABLE = "CUSTOMER_UNAVAILABLE"
STOP_SKIPPED = "SKIPPED"

TERMINAL_STOP_STATUSES = frozenset({STOP_DELIVERED, STOP_CUSTOMER_UNAVAILABLE, STOP_SKIPPED})

# target statuses reachable from each non-terminal stop status
STOP_TRANSITIONS: dict[str, frozenset[str]] = {
    STOP_PENDING: frozenset({STOP_REACHED, STOP_DELIVERED, STOP_CUSTOMER_UNAVAILABLE, STOP_SKIPPED}),
    STOP_REACHED: frozenset({STOP_DELIVERED, STOP_CUSTOMER_UNAVAILABLE}),
}

PLAN_PLANNED = "PLANNED"
PLAN_PARTIAL = "PARTIAL"

EVENT_JOURNEY_STARTED = "JOURNEY_STARTED"
EVENT_STOP_MARKED = "STOP_MARKED"
EVENT_JOURNEY_ENDED = "JOURNEY_ENDED"
EVENT_DRIVER_REASSIGNED = "DRIVER_REASSIGNED"
EVENT_DRIVERS_EXCHANGED = "DRIVERS_EXCHANGED"
EVENT_STOP_MOVED = "STOP_MOVED"
EVENT_TRAFFIC_CHECKED = "TRAFFIC_CHECKED"
EVENT_ROUTE_REOPTIMIZED = "ROUTE_REOPTIMIZED"
EVENT_LOCATION = "LOCATION"
