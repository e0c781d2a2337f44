from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, standings
from .errors import ConflictError, InvalidTransitionError, NotFoundError
from .models import RaceStatus, ResultStatus
from .schemas import RaceCreate, RaceUpdate, RiderCreate
from .stores import RaceStore, ResultStore, RiderDirectory
from .utils import elapsed_seconds, format_time, minutes_until, to_naive_utc, utcnow
from .weather import WeatherProvider

logger = logging.getLogger(__name__)

NOT_STARTED = "Rider not found or not started yet"

# forward-only moves allowed through a plain race update
_UPDATE_TRANSITIONS = {
    RaceStatus.DRAFT: {RaceStatus.DRAFT, RaceStatus.OPEN, RaceStatus.CLOSED},
    RaceStatus.OPEN: {RaceStatus.OPEN, RaceStatus.CLOSED},
    RaceStatus.CLOSED: {RaceStatus.CLOSED},
}
_CANCELLABLE = (RaceStatus.DRAFT, RaceStatus.OPEN, RaceStatus.CLOSED, RaceStatus.IN_PROGRESS)


@contextmanager
def _transaction(session: Session):
    """Commit once at the end; roll back everything on any error."""
    try:
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


def require_race(session: Session, race_id: int) -> models.Race:
    race = RaceStore(session).get(race_id)
    if race is None:
        raise NotFoundError("Race not found")
    return race


# ---------------------------
# Races (admin)
# ---------------------------

def create_race(session: Session, payload: RaceCreate) -> models.Race:
    data = payload.model_dump()
    data["start_time"] = to_naive_utc(data["start_time"])
    if data["end_time"] is not None:
        data["end_time"] = to_naive_utc(data["end_time"])
    with _transaction(session):
        race = RaceStore(session).create({**data, "status": RaceStatus.DRAFT})
    logger.info("Race %s created (%s)", race.id, race.name)
    return race

def get_race(session: Session, race_id: int) -> Optional[models.Race]:
    return RaceStore(session).get(race_id)

def update_race(session: Session, race_id: int, payload: RaceUpdate) -> models.Race:
    race = require_race(session, race_id)
    patch = payload.model_dump(exclude_unset=True)
    if patch.get("start_time") is not None:
        patch["start_time"] = to_naive_utc(patch["start_time"])
    if not patch:
        return race
    new_status = patch.get("status")
    previous = race.status
    if new_status is not None and new_status not in _UPDATE_TRANSITIONS.get(previous, set()):
        raise InvalidTransitionError(f"Cannot change race status from {previous} to {new_status}")
    with _transaction(session):
        updated = RaceStore(session).update(race_id, patch, only_if_status=previous)
        if updated is None:
            raise ConflictError("Race was changed by another update, reload and retry")
    if new_status and new_status != previous:
        logger.info("Race %s: %s -> %s", race_id, previous, new_status)
    return updated

def delete_race(session: Session, race_id: int) -> models.Race:
    with _transaction(session):
        race = RaceStore(session).delete(race_id)
        if race is None:
            raise NotFoundError("Race not found")
    logger.info("Race %s deleted", race_id)
    return race

def list_races(
    session: Session,
    *,
    status: str | None = None,
    difficulty: str | None = None,
    category: str | None = None,
    terrain: str | None = None,
    page: int = 1,
    limit: int = 10,
    sort: str = "-created_at",
) -> tuple[list[models.Race], int]:
    filters = {}
    if status:
        filters["status"] = status
    if difficulty:
        filters["difficulty"] = difficulty
    if terrain:
        filters["terrain"] = terrain
    return RaceStore(session).find(filters, page=page, limit=limit, sort=sort, category=category)

def upcoming_races(session: Session, page: int = 1, limit: int = 10, now: datetime | None = None) -> tuple[list[models.Race], int]:
    now = now or utcnow()
    return RaceStore(session).find(
        {"status": (RaceStatus.DRAFT, RaceStatus.OPEN)}, page=page, limit=limit, sort="start_time", starts_after=now
    )

def race_results(session: Session, race_id: int) -> list[models.RaceResult]:
    """All results of a race: finishers by time, then everyone else in registration order."""
    require_race(session, race_id)
    rows = ResultStore(session).find(race_id=race_id)
    finished = sorted((r for r in rows if r.status == ResultStatus.FINISHED), key=standings.finish_order_key)
    return finished + [r for r in rows if r.status != ResultStatus.FINISHED]

def cancel_race(session: Session, race_id: int) -> models.Race:
    race = require_race(session, race_id)
    previous = race.status
    if previous not in _CANCELLABLE:
        raise InvalidTransitionError("Only races that have not completed can be cancelled")
    with _transaction(session):
        updated = RaceStore(session).update(race_id, {"status": RaceStatus.CANCELLED}, only_if_status=_CANCELLABLE)
        if updated is None:
            raise InvalidTransitionError("Only races that have not completed can be cancelled")
    logger.info("Race %s: %s -> Cancelled", race_id, previous)
    return updated


# ---------------------------
# Riders
# ---------------------------

def create_rider(session: Session, payload: RiderCreate) -> models.Rider:
    data = payload.model_dump()
    data["email"] = data["email"].strip().lower()
    try:
        with _transaction(session):
            rider = RiderDirectory(session).create(data)
    except IntegrityError as exc:
        raise ConflictError("Email already registered") from exc
    return rider

def get_rider(session: Session, rider_id: int) -> Optional[models.Rider]:
    return RiderDirectory(session).get(rider_id)

def list_riders(session: Session, category: str | None = None) -> list[models.Rider]:
    if category:
        return RiderDirectory(session).find(category=category)
    return RiderDirectory(session).find()


# ---------------------------
# Race lifecycle
# ---------------------------

@dataclass
class StartEligibility:
    can_start: bool
    reason: Optional[str] = None


@dataclass
class StartOutcome:
    race: models.Race
    riders_started: int
    mass_start_time: datetime


def can_start(session: Session, race_id: int, manual_override: bool = False, now: datetime | None = None) -> StartEligibility:
    """Whether the race may start now. Fails closed.

    A manual override skips the scheduled-time check only; the race must
    still be Open.
    """
    now = now or utcnow()
    try:
        race = RaceStore(session).get(race_id)
    except SQLAlchemyError:
        logger.exception("Race %s: eligibility check failed", race_id)
        return StartEligibility(False, "Error checking race eligibility")
    if race is None:
        return StartEligibility(False, "Race not found")
    if race.status != RaceStatus.OPEN:
        return StartEligibility(False, "Race status must be Open to start")
    if manual_override:
        return StartEligibility(True)
    if race.start_time and race.start_time > now:
        return StartEligibility(False, f"Race starts in {minutes_until(race.start_time, now)} minutes")
    return StartEligibility(True)

def start_race(session: Session, race_id: int, now: datetime | None = None) -> StartOutcome:
    """Mass start: the race and every registered rider share one start instant."""
    now = now or utcnow()
    races = RaceStore(session)
    results = ResultStore(session)
    race = require_race(session, race_id)

    with _transaction(session):
        if race.status == RaceStatus.DRAFT:
            races.update(race_id, {"status": RaceStatus.OPEN}, only_if_status=RaceStatus.DRAFT)
            logger.info("Race %s: Draft -> Open (auto, on start)", race_id)

        eligibility = can_start(session, race_id, manual_override=True, now=now)
        if not eligibility.can_start:
            logger.warning("Race %s cannot start: %s", race_id, eligibility.reason)
            raise InvalidTransitionError(eligibility.reason)

        race = races.update(
            race_id,
            {"status": RaceStatus.IN_PROGRESS, "start_time": now},
            only_if_status=RaceStatus.OPEN,
        )
        if race is None:
            raise InvalidTransitionError("Race status must be Open to start")

        results.update_many(
            {"race_id": race_id, "status": ResultStatus.REGISTERED},
            {"status": ResultStatus.STARTED, "start_time": now},
        )
        riders_started = results.count(race_id=race_id, status=ResultStatus.STARTED)

    logger.info("Race %s: Open -> InProgress, %d riders started at %s", race_id, riders_started, now.isoformat())
    return StartOutcome(race=race, riders_started=riders_started, mass_start_time=now)

def finish_race(session: Session, race_id: int, now: datetime | None = None) -> models.Race:
    now = now or utcnow()
    race = require_race(session, race_id)
    if race.status != RaceStatus.IN_PROGRESS:
        logger.warning("Race %s: finish rejected in status %s", race_id, race.status)
        raise InvalidTransitionError("Only races in progress can be finished")
    with _transaction(session):
        updated = RaceStore(session).update(
            race_id,
            {"status": RaceStatus.COMPLETED, "end_time": now},
            only_if_status=RaceStatus.IN_PROGRESS,
        )
        if updated is None:
            raise InvalidTransitionError("Only races in progress can be finished")
    logger.info("Race %s: InProgress -> Completed", race_id)
    return updated


# ---------------------------
# Rider results
# ---------------------------

@dataclass
class FinishedRider:
    result: models.RaceResult
    formatted_time: Optional[str]
    position: Optional[int]


def register_rider(session: Session, race_id: int, rider_id: int) -> models.RaceResult:
    require_race(session, race_id)
    if RiderDirectory(session).get(rider_id) is None:
        raise NotFoundError("Rider not found")
    results = ResultStore(session)
    if results.find_one(race_id=race_id, rider_id=rider_id):
        raise ConflictError("Rider already registered for this race")
    try:
        with _transaction(session):
            result = results.create(
                {"race_id": race_id, "rider_id": rider_id, "status": ResultStatus.REGISTERED}
            )
    except IntegrityError as exc:
        # lost a race against a concurrent registration
        raise ConflictError("Rider already registered for this race") from exc
    logger.info("Race %s: rider %s registered", race_id, rider_id)
    return result

def finish_rider(session: Session, race_id: int, rider_id: int, now: datetime | None = None) -> FinishedRider:
    """Record a rider crossing the line and re-rank the race.

    The Started -> Finished move is a compare-and-swap, so of two concurrent
    calls for the same rider exactly one succeeds.
    """
    now = now or utcnow()
    results = ResultStore(session)
    current = results.find_one(race_id=race_id, rider_id=rider_id, status=ResultStatus.STARTED)
    if current is None or current.start_time is None:
        raise InvalidTransitionError(NOT_STARTED)

    total_time = elapsed_seconds(current.start_time, now)
    with _transaction(session):
        updated = results.update_one(
            {"id": current.id},
            {"status": ResultStatus.FINISHED, "finish_time": now, "total_time": total_time},
            only_if_match={"status": ResultStatus.STARTED},
        )
        if updated is None:
            raise InvalidTransitionError(NOT_STARTED)
        standings.recompute_positions(session, race_id)

    result = results.find_one(id=current.id)
    logger.info(
        "Race %s: rider %s finished in %s (position %s)", race_id, rider_id, format_time(total_time), result.position
    )
    return FinishedRider(result=result, formatted_time=format_time(total_time), position=result.position)

def set_rider_status(
    session: Session,
    race_id: int,
    rider_id: int,
    status: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> models.RaceResult:
    """Administrative override, mostly for DNF/DSQ.

    DNF/DSQ stamp the withdrawal time but never a total time. Corrections
    back to Registered/Started clear the timing fields; a correction to
    Finished derives the time from the start like a normal finish.
    """
    if status not in ResultStatus.ALL:
        raise InvalidTransitionError("Invalid status")
    now = now or utcnow()
    results = ResultStore(session)
    current = results.find_one(race_id=race_id, rider_id=rider_id)
    if current is None:
        raise NotFoundError("Rider not found in this race")
    previous = current.status

    patch: dict = {"status": status}
    if notes:
        patch["notes"] = notes
    if status in ResultStatus.WITHDRAWN:
        patch.update(finish_time=now, total_time=None, position=None)
    elif status == ResultStatus.FINISHED:
        if previous != ResultStatus.FINISHED:
            if current.start_time is None:
                raise InvalidTransitionError("Rider has not started yet")
            patch.update(finish_time=now, total_time=elapsed_seconds(current.start_time, now))
    elif status == ResultStatus.STARTED:
        if current.start_time is None:
            raise InvalidTransitionError("Rider has not started yet")
        patch.update(finish_time=None, total_time=None, position=None)
    else:
        patch.update(start_time=None, finish_time=None, total_time=None, position=None)

    with _transaction(session):
        updated = results.update_one({"id": current.id}, patch, only_if_match={"status": previous})
        if updated is None:
            raise ConflictError("Result was changed by another update, reload and retry")
        if ResultStatus.FINISHED in (previous, status):
            standings.recompute_positions(session, race_id)

    logger.info("Race %s: rider %s %s -> %s%s", race_id, rider_id, previous, status, f" ({notes})" if notes else "")
    return results.find_one(id=current.id)

def update_positions(session: Session, race_id: int) -> list[standings.ResultView]:
    require_race(session, race_id)
    with _transaction(session):
        standings.recompute_positions(session, race_id)
    return standings.top3(session, race_id)


# ---------------------------
# Weather
# ---------------------------

def refresh_weather(session: Session, race_id: int, provider: WeatherProvider, now: datetime | None = None) -> models.Race:
    """Store current weather, or the forecast nearest the start for a future race."""
    now = now or utcnow()
    race = RaceStore(session).get(race_id)
    if race is None or not race.has_coordinates:
        raise NotFoundError("Race or coordinates not found")

    if race.start_time > now:
        snapshot = provider.get_forecast(race.latitude, race.longitude, race.start_time)
    else:
        snapshot = provider.get_current(race.latitude, race.longitude)

    with _transaction(session):
        updated = RaceStore(session).update(race_id, {"weather_conditions": snapshot.to_dict()})
    logger.info("Race %s: weather refreshed (%s)", race_id, snapshot.condition)
    return updated
