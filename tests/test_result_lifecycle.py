"""
Tests for registration, rider finishes and status overrides.
"""

import logging

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import T0, at
from mtbrace import services
from mtbrace.db import Base
from mtbrace.errors import ConflictError, InvalidTransitionError, NotFoundError
from mtbrace.models import ResultStatus
from mtbrace.schemas import RaceCreate, RiderCreate
from mtbrace.stores import ResultStore


class TestRegister:
    """Tests for register_rider."""

    def test_creates_registered_result_without_start_time(self, session, make_race, make_rider):
        race, rider = make_race(), make_rider()
        result = services.register_rider(session, race.id, rider.id)
        assert result.status == ResultStatus.REGISTERED
        assert result.start_time is None
        assert result.total_time is None

    def test_duplicate_registration_rejected(self, session, make_race, make_rider):
        race, rider = make_race(), make_rider()
        services.register_rider(session, race.id, rider.id)
        with pytest.raises(ConflictError, match="Rider already registered for this race"):
            services.register_rider(session, race.id, rider.id)
        assert len(ResultStore(session).find(race_id=race.id, rider_id=rider.id)) == 1

    def test_unknown_race(self, session, make_rider):
        rider = make_rider()
        with pytest.raises(NotFoundError, match="Race not found"):
            services.register_rider(session, 999, rider.id)

    def test_unknown_rider(self, session, make_race):
        race = make_race()
        with pytest.raises(NotFoundError, match="Rider not found"):
            services.register_rider(session, race.id, 999)


class TestFinishRider:
    """Tests for finish_rider."""

    def test_total_time_is_derived_from_mass_start(self, session, started_race):
        race, riders = started_race
        finished = services.finish_rider(session, race.id, riders[0].id, now=at(8000.7))

        result = finished.result
        assert result.status == ResultStatus.FINISHED
        assert result.finish_time == at(8000.7)
        assert result.total_time == 8000
        assert finished.formatted_time == "2:13:20"
        assert finished.position == 1

    def test_second_finish_fails(self, session, started_race):
        race, riders = started_race
        services.finish_rider(session, race.id, riders[0].id, now=at(5000))
        with pytest.raises(InvalidTransitionError, match="Rider not found or not started yet"):
            services.finish_rider(session, race.id, riders[0].id, now=at(5100))
        result = ResultStore(session).find_one(race_id=race.id, rider_id=riders[0].id)
        assert result.total_time == 5000

    def test_registered_rider_cannot_finish(self, session, make_race, make_rider):
        race, rider = make_race(), make_rider()
        services.register_rider(session, race.id, rider.id)
        with pytest.raises(InvalidTransitionError, match="not started yet"):
            services.finish_rider(session, race.id, rider.id, now=T0)

    def test_unregistered_rider_cannot_finish(self, session, started_race, make_rider):
        race, _ = started_race
        stranger = make_rider()
        with pytest.raises(InvalidTransitionError, match="not started yet"):
            services.finish_rider(session, race.id, stranger.id, now=at(100))

    def test_positions_follow_total_time(self, session, started_race):
        race, (ada, ben, cleo) = started_race
        services.finish_rider(session, race.id, ada.id, now=at(9000))
        services.finish_rider(session, race.id, ben.id, now=at(8000))
        last = services.finish_rider(session, race.id, cleo.id, now=at(8500))

        assert last.position == 2
        by_rider = {r.rider_id: r.position for r in ResultStore(session).find(race_id=race.id)}
        assert by_rider == {ben.id: 1, cleo.id: 2, ada.id: 3}


class TestConcurrentFinish:
    """Two callers finishing the same rider: exactly one wins."""

    @pytest.fixture()
    def two_sessions(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=engine)
        factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
        first, second = factory(), factory()
        yield first, second
        first.close()
        second.close()
        engine.dispose()

    def test_loser_sees_not_started(self, two_sessions, monkeypatch):
        first, second = two_sessions
        race = services.create_race(
            first, RaceCreate(name="Night Race", location_name="Forest", start_time=T0, distance=30)
        )
        rider = services.create_rider(first, RiderCreate(first_name="Ada", last_name="L", email="ada@example.com"))
        services.register_rider(first, race.id, rider.id)
        services.start_race(first, race.id, now=T0)

        real_elapsed = services.elapsed_seconds
        interleaved = []

        def finish_elsewhere_first(start, end):
            # the other caller completes between our lookup and our update
            if not interleaved:
                interleaved.append(True)
                services.finish_rider(first, race.id, rider.id, now=at(4000))
            return real_elapsed(start, end)

        monkeypatch.setattr(services, "elapsed_seconds", finish_elsewhere_first)

        with pytest.raises(InvalidTransitionError, match="Rider not found or not started yet"):
            services.finish_rider(second, race.id, rider.id, now=at(4001))

        result = ResultStore(second).find_one(race_id=race.id, rider_id=rider.id)
        assert result.status == ResultStatus.FINISHED
        assert result.total_time == 4000
        assert result.position == 1

    def test_guarded_update_applies_once(self, two_sessions):
        first, second = two_sessions
        race = services.create_race(
            first, RaceCreate(name="Night Race", location_name="Forest", start_time=T0, distance=30)
        )
        rider = services.create_rider(first, RiderCreate(first_name="Ben", last_name="B", email="ben@example.com"))
        services.register_rider(first, race.id, rider.id)
        services.start_race(first, race.id, now=T0)

        seen = [ResultStore(s).find_one(race_id=race.id, status=ResultStatus.STARTED) for s in (first, second)]
        patch = {"status": ResultStatus.FINISHED, "finish_time": at(60), "total_time": 60}
        outcomes = []
        for s, row in zip((first, second), seen):
            outcomes.append(ResultStore(s).update_one({"id": row.id}, patch, only_if_match={"status": ResultStatus.STARTED}))
            s.commit()

        assert outcomes[0] is not None
        assert outcomes[1] is None


class TestSetStatus:
    """Tests for set_rider_status."""

    def test_dnf_records_withdrawal_time_only(self, session, started_race):
        race, riders = started_race
        result = services.set_rider_status(
            session, race.id, riders[1].id, ResultStatus.DNF, "Mechanical failure", now=at(3600)
        )
        assert result.status == ResultStatus.DNF
        assert result.finish_time == at(3600)
        assert result.total_time is None
        assert result.notes == "Mechanical failure"

    def test_invalid_status(self, session, started_race):
        race, riders = started_race
        with pytest.raises(InvalidTransitionError, match="Invalid status"):
            services.set_rider_status(session, race.id, riders[0].id, "Crashed")

    def test_unknown_result(self, session, started_race, make_rider):
        race, _ = started_race
        with pytest.raises(NotFoundError):
            services.set_rider_status(session, race.id, make_rider().id, ResultStatus.DNF)

    def test_disqualifying_a_finisher_reranks(self, session, started_race):
        race, (ada, ben, cleo) = started_race
        services.finish_rider(session, race.id, ada.id, now=at(7000))
        services.finish_rider(session, race.id, ben.id, now=at(7500))

        dsq = services.set_rider_status(session, race.id, ada.id, ResultStatus.DSQ, "Course cutting", now=at(8000))

        assert dsq.total_time is None
        assert dsq.position is None
        assert ResultStore(session).find_one(race_id=race.id, rider_id=ben.id).position == 1

    def test_reopening_a_finisher_reranks_the_rest(self, session, started_race, caplog):
        race, (ada, ben, cleo) = started_race
        for rider, seconds in ((ada, 7000), (ben, 7500), (cleo, 8000)):
            services.finish_rider(session, race.id, rider.id, now=at(seconds))

        caplog.set_level(logging.INFO, logger="mtbrace.services")
        services.set_rider_status(session, race.id, ada.id, ResultStatus.STARTED)

        positions = {r.rider_id: r.position for r in ResultStore(session).find(race_id=race.id)}
        assert positions == {ada.id: None, ben.id: 1, cleo.id: 2}
        assert "Finished -> Started" in caplog.text

    def test_correction_to_finished_derives_time(self, session, started_race):
        race, riders = started_race
        services.set_rider_status(session, race.id, riders[0].id, ResultStatus.DNF, now=at(100))
        services.set_rider_status(session, race.id, riders[0].id, ResultStatus.STARTED)
        fixed = services.set_rider_status(session, race.id, riders[0].id, ResultStatus.FINISHED, now=at(6000))

        assert fixed.total_time == 6000
        assert fixed.position == 1

    def test_started_requires_start_time(self, session, make_race, make_rider):
        race, rider = make_race(), make_rider()
        services.register_rider(session, race.id, rider.id)
        with pytest.raises(InvalidTransitionError, match="has not started"):
            services.set_rider_status(session, race.id, rider.id, ResultStatus.STARTED)

    def test_back_to_registered_clears_timing(self, session, started_race):
        race, riders = started_race
        services.finish_rider(session, race.id, riders[0].id, now=at(100))
        reset = services.set_rider_status(session, race.id, riders[0].id, ResultStatus.REGISTERED)
        assert reset.start_time is None
        assert reset.finish_time is None
        assert reset.total_time is None
        assert reset.position is None
