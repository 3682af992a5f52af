from __future__ import annotations

import threading
import time

from sqlalchemy import select

from mealroute.models import RouteEvent, Stop
from mealroute.models.states import ROUTE_IN_PROGRESS
from mealroute.services import journey, reassignment
from mealroute.services.locks import RouteLockRegistry, get_route_locks
from mealroute.services.route_store import StopRef
from mealroute.utils.db import SessionLocal


def _run_together(jobs, timeout=30.0):
    """Start every job at the same moment; return the exceptions they raised."""
    barrier = threading.Barrier(len(jobs))
    errors: list[BaseException] = []
    errors_guard = threading.Lock()

    def _worker(job):
        barrier.wait()
        try:
            job()
        except BaseException as exc:  # noqa: BLE001
            with errors_guard:
                errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(job,), daemon=True) for job in jobs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout)
    assert not any(thread.is_alive() for thread in threads), "workers did not finish"
    return errors


def _in_session(fn):
    def _job():
        session = SessionLocal()
        try:
            fn(session)
        finally:
            session.close()

    return _job


def _orders(db, route_id):
    db.expire_all()
    return list(db.execute(select(Stop).where(Stop.route_id == route_id).order_by(Stop.planned_order)).scalars())


def test_registry_is_shared_and_built_once():
    assert get_route_locks() is get_route_locks()


def test_hold_excludes_other_holders_of_the_same_route():
    registry = RouteLockRegistry()
    inside = []
    overlaps = []

    def _job():
        with registry.hold(7):
            inside.append(1)
            if len(inside) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            inside.pop()

    assert _run_together([_job for _ in range(8)]) == []
    assert overlaps == []


def test_crossing_holds_do_not_deadlock():
    registry = RouteLockRegistry()
    seen = []

    def _forward():
        with registry.hold(1, 2) as ordered:
            seen.append(ordered)

    def _backward():
        with registry.hold(2, 1) as ordered:
            seen.append(ordered)

    assert _run_together([_forward, _backward] * 5) == []
    assert seen == [[1, 2]] * 10


def test_released_route_locks_are_dropped():
    registry = RouteLockRegistry()
    with registry.hold(3, 4):
        assert registry.tracked() == [3, 4]
    assert registry.tracked() == []


def test_concurrent_marks_on_one_route_stay_consistent(seed, db):
    route = seed.route(seed.driver("Alice"), stops=6, status=ROUTE_IN_PROGRESS)

    def _mark(order):
        return _in_session(lambda session: journey.mark_stop(session, route_id=route.id, stop_ref=StopRef(stop_order=order)))

    # Every one of stops 1-4 is marked twice; replays must succeed too.
    errors = _run_together([_mark(order) for order in (1, 2, 3, 4) * 2])
    assert errors == []

    stops = _orders(db, route.id)
    assert [stop.planned_order for stop in stops] == [1, 2, 3, 4, 5, 6]
    assert [stop.status for stop in stops] == ["DELIVERED"] * 4 + ["PENDING"] * 2

    marks = db.execute(
        select(RouteEvent.stop_id).where(RouteEvent.route_id == route.id, RouteEvent.event_type == "STOP_MARKED")
    ).scalars()
    assert sorted(marks) == sorted(stop.id for stop in stops[:4])

    status = journey.get_route_status(db, route.id)
    assert status["current_stop_order"] == 5


def test_crossing_moves_finish_and_keep_orders_contiguous(seed, db):
    first = seed.route(seed.driver("Alice"), stops=6)
    second = seed.route(seed.driver("Bob"), stops=6)
    delivery_ids = {stop.delivery_id for stop in first.stops + second.stops}

    def _move(source, target):
        return _in_session(
            lambda session: reassignment.move_stop(
                session, from_route_id=source.id, to_route_id=target.id, stop_ref=StopRef(stop_order=1)
            )
        )

    jobs = [_move(first, second), _move(second, first)] * 4
    assert _run_together(jobs) == []

    first_stops = _orders(db, first.id)
    second_stops = _orders(db, second.id)
    assert len(first_stops) == len(second_stops) == 6
    assert [stop.planned_order for stop in first_stops] == list(range(1, 7))
    assert [stop.planned_order for stop in second_stops] == list(range(1, 7))
    assert {stop.delivery_id for stop in first_stops + second_stops} == delivery_ids
