import logging
import sys

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .settings import settings
from .db import init_db, get_session
from . import services, standings
from .errors import ConflictError, InvalidTransitionError, NotFoundError, RaceTimerError, WeatherUnavailableError
from .schemas import (
    RaceCreate,
    RaceUpdate,
    RaceOut,
    RiderCreate,
    RiderOut,
    RegistrationCreate,
    ResultOut,
    RiderStatusUpdate,
)
from .weather import OpenWeatherMapProvider, WeatherProvider

logging.basicConfig(
    level=getattr(logging, settings.MTB_LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(title="MTB Race Timer")

_ERROR_STATUS = {
    NotFoundError: 404,
    InvalidTransitionError: 400,
    ConflictError: 409,
    WeatherUnavailableError: 502,
}

@app.exception_handler(RaceTimerError)
async def _domain_error(request: Request, exc: RaceTimerError):
    status_code = next((code for kind, code in _ERROR_STATUS.items() if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})

@app.on_event("startup")
def _startup() -> None:
    init_db()
    logger.info("MTB Race Timer ready")

def get_weather_provider() -> WeatherProvider:
    return OpenWeatherMapProvider()

def _page_limit(limit: int) -> int:
    return min(limit, settings.MTB_PAGE_LIMIT_MAX)

def _page(items, total: int, page: int, limit: int) -> dict:
    return {
        "items": [RaceOut.model_validate(r) for r in items],
        "total": total,
        "page": page,
        "limit": limit,
    }

def _found_race(session, race_id: int):
    race = services.get_race(session, race_id)
    if not race:
        raise HTTPException(status_code=404, detail="Race not found")
    return race

# ---------------------------
# Races
# ---------------------------

@app.post("/api/races", status_code=201, response_model=RaceOut)
def create_race(payload: RaceCreate, session=Depends(get_session)):
    return services.create_race(session, payload)

@app.get("/api/races")
def list_races(
    status: str | None = None,
    difficulty: str | None = None,
    category: str | None = None,
    terrain: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    sort: str = "-created_at",
    session=Depends(get_session),
):
    limit = _page_limit(limit)
    items, total = services.list_races(
        session, status=status, difficulty=difficulty, category=category, terrain=terrain,
        page=page, limit=limit, sort=sort,
    )
    return _page(items, total, page, limit)

@app.get("/api/races/upcoming")
def upcoming_races(page: int = Query(1, ge=1), limit: int = Query(10, ge=1), session=Depends(get_session)):
    limit = _page_limit(limit)
    items, total = services.upcoming_races(session, page=page, limit=limit)
    return _page(items, total, page, limit)

@app.get("/api/races/{race_id}", response_model=RaceOut)
def get_race(race_id: int, session=Depends(get_session)):
    return _found_race(session, race_id)

@app.put("/api/races/{race_id}", response_model=RaceOut)
def update_race(race_id: int, payload: RaceUpdate, session=Depends(get_session)):
    return services.update_race(session, race_id, payload)

@app.delete("/api/races/{race_id}", response_model=RaceOut)
def delete_race(race_id: int, session=Depends(get_session)):
    return services.delete_race(session, race_id)

# ---------------------------
# Race lifecycle
# ---------------------------

@app.get("/api/races/{race_id}/eligibility")
def check_eligibility(race_id: int, manual: bool = False, session=Depends(get_session)):
    return services.can_start(session, race_id, manual_override=manual)

@app.patch("/api/races/{race_id}/start")
def start_race(race_id: int, session=Depends(get_session)):
    outcome = services.start_race(session, race_id)
    return {
        "race": RaceOut.model_validate(outcome.race),
        "riders_started": outcome.riders_started,
        "mass_start_time": outcome.mass_start_time,
    }

@app.patch("/api/races/{race_id}/finish", response_model=RaceOut)
def finish_race(race_id: int, session=Depends(get_session)):
    return services.finish_race(session, race_id)

@app.patch("/api/races/{race_id}/cancel", response_model=RaceOut)
def cancel_race(race_id: int, session=Depends(get_session)):
    return services.cancel_race(session, race_id)

@app.put("/api/races/{race_id}/weather", response_model=RaceOut)
def update_weather(
    race_id: int,
    session=Depends(get_session),
    provider: WeatherProvider = Depends(get_weather_provider),
):
    return services.refresh_weather(session, race_id, provider)

# ---------------------------
# Registration and rider results
# ---------------------------

@app.post("/api/races/{race_id}/registrations", status_code=201, response_model=ResultOut)
def register_rider(race_id: int, payload: RegistrationCreate, session=Depends(get_session)):
    return services.register_rider(session, race_id, payload.rider_id)

@app.post("/api/races/{race_id}/riders/{rider_id}/finish")
def finish_rider(race_id: int, rider_id: int, session=Depends(get_session)):
    finished = services.finish_rider(session, race_id, rider_id)
    return {
        **ResultOut.model_validate(finished.result).model_dump(),
        "formatted_time": finished.formatted_time,
        "position": finished.position,
    }

@app.patch("/api/races/{race_id}/riders/{rider_id}/status", response_model=ResultOut)
def update_rider_status(race_id: int, rider_id: int, payload: RiderStatusUpdate, session=Depends(get_session)):
    return services.set_rider_status(session, race_id, rider_id, payload.status, payload.notes)

@app.post("/api/races/{race_id}/positions")
def update_positions(race_id: int, session=Depends(get_session)):
    return services.update_positions(session, race_id)

# ---------------------------
# Standings and reports
# ---------------------------

@app.get("/api/races/{race_id}/participants", response_model=list[ResultOut])
def race_participants(race_id: int, session=Depends(get_session)):
    return services.race_results(session, race_id)

@app.get("/api/races/{race_id}/results")
def race_results(race_id: int, session=Depends(get_session)):
    return [standings.ResultView.from_model(r) for r in services.race_results(session, race_id)]

@app.get("/api/races/{race_id}/standings")
def live_standings(race_id: int, session=Depends(get_session)):
    _found_race(session, race_id)
    return standings.live_standings(session, race_id)

@app.get("/api/races/{race_id}/top3-fastest")
def top3_fastest(race_id: int, session=Depends(get_session)):
    _found_race(session, race_id)
    return standings.top3(session, race_id)

@app.get("/api/races/{race_id}/did-not-finish")
def did_not_finish(race_id: int, session=Depends(get_session)):
    _found_race(session, race_id)
    return standings.did_not_finish(session, race_id)

@app.get("/api/races/{race_id}/non-participants")
def non_participants(race_id: int, session=Depends(get_session)):
    return standings.not_in_race(session, race_id)

@app.get("/api/races/{race_id}/stats")
def race_stats(race_id: int, session=Depends(get_session)):
    _found_race(session, race_id)
    return standings.race_stats(session, race_id)

@app.get("/api/races/{race_id}/completion")
def completion(race_id: int, session=Depends(get_session)):
    _found_race(session, race_id)
    return standings.completion_analysis(session, race_id)

@app.get("/api/races/{race_id}/report")
def race_report(race_id: int, session=Depends(get_session)):
    report = standings.race_report(session, race_id)
    if isinstance(report, standings.MissingRace):
        return {"race": None}
    return report

# ---------------------------
# Riders
# ---------------------------

@app.post("/api/riders", status_code=201, response_model=RiderOut)
def create_rider(payload: RiderCreate, session=Depends(get_session)):
    return services.create_rider(session, payload)

@app.get("/api/riders", response_model=list[RiderOut])
def list_riders(category: str | None = None, session=Depends(get_session)):
    return services.list_riders(session, category=category)

@app.get("/api/riders/{rider_id}", response_model=RiderOut)
def get_rider(rider_id: int, session=Depends(get_session)):
    rider = services.get_rider(session, rider_id)
    if not rider:
        raise HTTPException(status_code=404, detail="Rider not found")
    return rider

from .csv_export import router as csv_router
app.include_router(csv_router, prefix="/api", tags=["csv"])
