"""Standings and reporting.

Everything here derives views from the current set of results for a race.
Only ``recompute_positions`` writes, and it leaves committing to the caller
so the ranking lands in the same transaction as the finish that caused it.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from . import models
from .errors import NotFoundError
from .models import RaceStatus, ResultStatus
from .schemas import RaceOut
from .stores import RaceStore, ResultStore, RiderDirectory
from .utils import format_gap, format_time, round_half_up

logger = logging.getLogger(__name__)


@dataclass
class ResultView:
    id: int
    race_id: int
    rider_id: int
    rider_name: str
    category: str
    status: str
    start_time: Optional[datetime]
    finish_time: Optional[datetime]
    total_time: Optional[int]
    position: Optional[int]
    notes: Optional[str]
    formatted_time: Optional[str]
    rank: Optional[int] = None
    gap: Optional[str] = None

    @classmethod
    def from_model(cls, result: models.RaceResult, position: Optional[int] = None) -> "ResultView":
        rider = result.rider
        return cls(
            id=result.id,
            race_id=result.race_id,
            rider_id=result.rider_id,
            rider_name=rider.full_name if rider else "",
            category=rider.category if rider else "",
            status=result.status,
            start_time=result.start_time,
            finish_time=result.finish_time,
            total_time=result.total_time,
            position=result.position if position is None else position,
            notes=result.notes,
            formatted_time=format_time(result.total_time),
        )


@dataclass
class LiveStandings:
    finished: list[ResultView]
    still_racing: int
    dnf: int
    dsq: int
    total_started: int


@dataclass
class DidNotFinish:
    dnf: list[ResultView]
    dsq: list[ResultView]
    total: int
    reasons: dict[str, int]


@dataclass
class RiderEligibility:
    rider_id: int
    first_name: str
    last_name: str
    category: str
    eligible: bool
    can_register: bool


@dataclass
class RaceStatistics:
    total_participants: int
    finished_count: int
    dnf_count: int
    dsq_count: int
    average_time: Optional[int]


@dataclass
class RaceReport:
    race: dict
    statistics: RaceStatistics
    top3_fastest: list[ResultView]
    did_not_finish: DidNotFinish
    weather_conditions: Optional[dict]


@dataclass(frozen=True)
class MissingRace:
    """Report for an unknown race id; distinct from a store failure."""

    race_id: int
    race: None = None


@dataclass
class RaceStats:
    total: int
    registered: int
    started: int
    finished: int
    dnf: int
    dsq: int


@dataclass
class CompletionAnalysis:
    total_registered: int
    started: int
    currently_started: int
    finished: int
    dnf: int
    dsq: int
    completion_rate: int
    average_time: Optional[int] = None
    fastest_time: Optional[int] = None
    slowest_time: Optional[int] = None


def finish_order_key(result: models.RaceResult) -> tuple:
    # total time, then who crossed the line first, then registration order
    return (
        result.total_time if result.total_time is not None else float("inf"),
        result.finish_time or datetime.max,
        result.id,
    )


def _finishers(session: Session, race_id: int) -> list[models.RaceResult]:
    rows = ResultStore(session).find(race_id=race_id, status=ResultStatus.FINISHED)
    return sorted(rows, key=finish_order_key)


def _average(times: list[int]) -> Optional[int]:
    if not times:
        return None
    return round_half_up(sum(times) / len(times))


def recompute_positions(session: Session, race_id: int) -> list[tuple[int, int]]:
    """Rank every finisher of the race and write all positions in one batch.

    Returns the (result id, position) pairs written. Re-running on an
    unchanged set of finishers writes the same pairs. Does not commit.
    """
    ranking = [(result.id, index + 1) for index, result in enumerate(_finishers(session, race_id))]
    ResultStore(session).set_positions(race_id, ranking)
    logger.info("Race %s: positions recomputed for %d finishers", race_id, len(ranking))
    return ranking


def top3(session: Session, race_id: int) -> list[ResultView]:
    podium = _finishers(session, race_id)[:3]
    if not podium:
        return []
    fastest = podium[0].total_time
    out = []
    for index, result in enumerate(podium):
        view = ResultView.from_model(result)
        view.rank = index + 1
        view.gap = None if index == 0 else format_gap(result.total_time - fastest)
        out.append(view)
    return out


def live_standings(session: Session, race_id: int) -> LiveStandings:
    results = ResultStore(session).find(race_id=race_id)
    by_status = Counter(r.status for r in results)
    finished = sorted((r for r in results if r.status == ResultStatus.FINISHED), key=finish_order_key)
    # derived from the sort, not the stored position
    rows = [ResultView.from_model(r, position=index + 1) for index, r in enumerate(finished)]
    still_racing = by_status[ResultStatus.STARTED]
    dnf = by_status[ResultStatus.DNF]
    dsq = by_status[ResultStatus.DSQ]
    return LiveStandings(
        finished=rows,
        still_racing=still_racing,
        dnf=dnf,
        dsq=dsq,
        total_started=len(rows) + still_racing + dnf + dsq,
    )


def did_not_finish(session: Session, race_id: int) -> DidNotFinish:
    withdrawn = ResultStore(session).find(race_id=race_id, status=ResultStatus.WITHDRAWN)
    reasons = Counter(r.notes for r in withdrawn if r.notes)
    return DidNotFinish(
        dnf=[ResultView.from_model(r) for r in withdrawn if r.status == ResultStatus.DNF],
        dsq=[ResultView.from_model(r) for r in withdrawn if r.status == ResultStatus.DSQ],
        total=len(withdrawn),
        reasons=dict(reasons),
    )


def is_eligible(rider: models.Rider, race: models.Race) -> bool:
    if race.categories:
        return rider.category in race.categories
    return True


def not_in_race(session: Session, race_id: int) -> list[RiderEligibility]:
    race = RaceStore(session).get(race_id)
    if race is None:
        raise NotFoundError("Race not found")
    registered = {r.rider_id for r in ResultStore(session).find(race_id=race_id)}
    out = []
    for rider in RiderDirectory(session).find():
        if rider.id in registered:
            continue
        eligible = is_eligible(rider, race)
        out.append(
            RiderEligibility(
                rider_id=rider.id,
                first_name=rider.first_name,
                last_name=rider.last_name,
                category=rider.category,
                eligible=eligible,
                can_register=eligible and race.status == RaceStatus.OPEN,
            )
        )
    return out


def race_report(session: Session, race_id: int) -> RaceReport | MissingRace:
    race = RaceStore(session).get(race_id)
    if race is None:
        return MissingRace(race_id=race_id)

    results = ResultStore(session).find(race_id=race_id)
    finished = [r for r in results if r.status == ResultStatus.FINISHED]
    dnf = did_not_finish(session, race_id)

    return RaceReport(
        race=RaceOut.model_validate(race).model_dump(),
        statistics=RaceStatistics(
            total_participants=len(results),
            finished_count=len(finished),
            # every non-finisher, DSQ included
            dnf_count=dnf.total,
            dsq_count=len(dnf.dsq),
            average_time=_average([r.total_time for r in finished]),
        ),
        top3_fastest=top3(session, race_id),
        did_not_finish=dnf,
        weather_conditions=race.weather_conditions,
    )


def race_stats(session: Session, race_id: int) -> RaceStats:
    results = ResultStore(session).find(race_id=race_id)
    counts = Counter(r.status for r in results)
    return RaceStats(
        total=len(results),
        registered=counts[ResultStatus.REGISTERED],
        started=counts[ResultStatus.STARTED],
        finished=counts[ResultStatus.FINISHED],
        dnf=counts[ResultStatus.DNF],
        dsq=counts[ResultStatus.DSQ],
    )


def completion_analysis(session: Session, race_id: int) -> CompletionAnalysis:
    stats = race_stats(session, race_id)
    started = stats.finished + stats.dnf + stats.dsq + stats.started
    analysis = CompletionAnalysis(
        total_registered=stats.total,
        started=started,
        currently_started=stats.started,
        finished=stats.finished,
        dnf=stats.dnf,
        dsq=stats.dsq,
        completion_rate=round_half_up(100 * stats.finished / started) if started else 0,
    )
    times = [r.total_time for r in _finishers(session, race_id) if r.total_time]
    if times:
        analysis.average_time = _average(times)
        analysis.fastest_time = min(times)
        analysis.slowest_time = max(times)
    return analysis
