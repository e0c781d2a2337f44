from __future__ import annotations

import csv
from io import StringIO

from fastapi import APIRouter, Depends
from starlette.responses import Response
from sqlalchemy.orm import Session

from .db import get_session
from . import services, standings
from .utils import format_gap, format_time

router = APIRouter()

def _csv_response(filename: str, text: str) -> Response:
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

def results_csv_text(session: Session, race_id: int) -> str:
    rows = services.race_results(session, race_id)
    fastest = next((r.total_time for r in rows if r.total_time), None)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["position", "rider", "category", "status", "time", "gap", "notes"])
    for r in rows:
        gap = ""
        if r.total_time and fastest is not None and r.position and r.position > 1:
            gap = format_gap(r.total_time - fastest)
        w.writerow([
            r.position or "",
            r.rider.full_name if r.rider else "",
            r.rider.category if r.rider else "",
            r.status,
            format_time(r.total_time) or "",
            gap,
            r.notes or "",
        ])
    return buf.getvalue()

def standings_csv_text(session: Session, race_id: int) -> str:
    services.require_race(session, race_id)
    live = standings.live_standings(session, race_id)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["position", "rider", "category", "time"])
    for row in live.finished:
        w.writerow([row.position, row.rider_name, row.category, row.formatted_time or ""])
    w.writerow([])
    w.writerow(["still_racing", live.still_racing])
    w.writerow(["dnf", live.dnf])
    w.writerow(["dsq", live.dsq])
    w.writerow(["total_started", live.total_started])
    return buf.getvalue()

@router.get("/races/{race_id}/results.csv")
def results_csv(race_id: int, session: Session = Depends(get_session)):
    return _csv_response(f"results_race_{race_id}.csv", results_csv_text(session, race_id))

@router.get("/races/{race_id}/standings.csv")
def standings_csv(race_id: int, session: Session = Depends(get_session)):
    return _csv_response(f"standings_race_{race_id}.csv", standings_csv_text(session, race_id))
