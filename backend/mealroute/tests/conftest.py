import os
from datetime import date

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_mealroute.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")
os.environ.setdefault("PLANNER_BASE_URL", "")
os.environ.setdefault("FEATURE_GOOGLE_TRAFFIC", "false")

from mealroute.main import app
from mealroute.models import Base, Driver, Route, Stop
from mealroute.models.states import ROUTE_PLANNED, SESSION_LUNCH
from mealroute.utils.db import SessionLocal, engine


DELIVERY_DATE = date(2026, 3, 2)

# Stops around Raffles Place, roughly 1 km apart.
COORDS = [
    (1.2840, 103.8515),
    (1.2930, 103.8520),
    (1.3010, 103.8400),
    (1.3100, 103.8600),
    (1.2790, 103.8450),
    (1.3050, 103.8700),
]


@pytest.fixture(autouse=True)
def reset_db():
    engine.dispose()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class Seeder:
    def __init__(self, db):
        self.db = db

    def driver(self, name: str, *, active: bool = True) -> Driver:
        driver = Driver(name=name, active=active)
        self.db.add(driver)
        self.db.commit()
        return driver

    def route(
        self,
        driver: Driver,
        *,
        stops: int = 3,
        delivery_date: date = DELIVERY_DATE,
        session: str = SESSION_LUNCH,
        status: str = ROUTE_PLANNED,
        prefix: str | None = None,
    ) -> Route:
        route = Route(driver=driver, delivery_date=delivery_date, session=session, status=status)
        tag = prefix or f"{driver.name.lower()}-{session.lower()}"
        route.stops = [
            Stop(
                delivery_id=f"{tag}-d{idx}",
                planned_order=idx,
                address=f"{idx} Demo Street",
                lat=COORDS[(idx - 1) % len(COORDS)][0],
                lng=COORDS[(idx - 1) % len(COORDS)][1],
            )
            for idx in range(1, stops + 1)
        ]
        self.db.add(route)
        self.db.commit()
        return route


@pytest.fixture()
def seed(db):
    return Seeder(db)
