from datetime import datetime, timedelta
import itertools

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mtbrace import models  # noqa: F401  (registers tables)
from mtbrace import services
from mtbrace.db import Base
from mtbrace.schemas import RaceCreate, RiderCreate

# scheduled start of every test race (naive UTC)
T0 = datetime(2025, 6, 1, 9, 0, 0)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture()
def make_race(session):
    def _make(**overrides):
        data = {
            "name": "Alpine Enduro",
            "location_name": "Val di Sole",
            "latitude": 46.3,
            "longitude": 10.8,
            "start_time": T0,
            "distance": 42.0,
            "terrain": "Singletrack",
        }
        data.update(overrides)
        return services.create_race(session, RaceCreate(**data))

    return _make


@pytest.fixture()
def make_rider(session):
    counter = itertools.count(1)

    def _make(first_name="Rider", category="Amateur", **overrides):
        n = next(counter)
        data = {
            "first_name": first_name,
            "last_name": f"No{n}",
            "email": f"rider{n}@example.com",
            "category": category,
        }
        data.update(overrides)
        return services.create_rider(session, RiderCreate(**data))

    return _make


@pytest.fixture()
def started_race(session, make_race, make_rider):
    """A race mass-started at T0 with three registered riders."""
    race = make_race()
    riders = [make_rider(first_name=name) for name in ("Ada", "Ben", "Cleo")]
    for rider in riders:
        services.register_rider(session, race.id, rider.id)
    services.start_race(session, race.id, now=T0)
    return race, riders
