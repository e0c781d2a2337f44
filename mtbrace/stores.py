"""Store classes over a SQLAlchemy session.

All mutations here are single statements guarded in their WHERE clause, so a
concurrent writer either sees the row before or after the change, never in
between. Reads refresh identity-mapped rows because bulk statements bypass
the session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from . import models

_RACE_SORT_COLUMNS = {
    "name": models.Race.name,
    "start_time": models.Race.start_time,
    "created_at": models.Race.created_at_utc,
    "distance": models.Race.distance,
}


def _match(column, value):
    if isinstance(value, (tuple, list, set, frozenset)):
        return column.in_(list(value))
    if value is None:
        return column.is_(None)
    return column == value


def _conditions(model, filters: dict[str, Any]) -> list:
    return [_match(getattr(model, key), value) for key, value in filters.items()]


class RaceStore:
    def __init__(self, session: Session):
        self.session = session

    def get(self, race_id: int) -> Optional[models.Race]:
        return self.session.get(models.Race, race_id, populate_existing=True)

    def create(self, data: dict[str, Any]) -> models.Race:
        race = models.Race(**data)
        self.session.add(race)
        self.session.flush()
        return race

    def update(self, race_id: int, patch: dict[str, Any], only_if_status: Iterable[str] | str | None = None) -> Optional[models.Race]:
        """Apply ``patch``; with ``only_if_status`` the row must currently hold one of those statuses."""
        self.session.flush()
        conds = [models.Race.id == race_id]
        if only_if_status is not None:
            conds.append(_match(models.Race.status, only_if_status))
        res = self.session.execute(
            update(models.Race).where(and_(*conds)).values(**patch).execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            return None
        return self.get(race_id)

    def delete(self, race_id: int) -> Optional[models.Race]:
        race = self.get(race_id)
        if race is None:
            return None
        self.session.delete(race)
        self.session.flush()
        return race

    def find(
        self,
        filters: dict[str, Any] | None = None,
        page: int = 1,
        limit: int = 10,
        sort: str = "-created_at",
        category: str | None = None,
        starts_after: datetime | None = None,
    ) -> tuple[list[models.Race], int]:
        q = select(models.Race).where(*_conditions(models.Race, filters or {}))
        if starts_after is not None:
            q = q.where(models.Race.start_time > starts_after)
        column = _RACE_SORT_COLUMNS.get(sort.lstrip("-"), models.Race.created_at_utc)
        q = q.order_by(column.desc() if sort.startswith("-") else column.asc(), models.Race.id.asc())
        rows = self.session.execute(q.execution_options(populate_existing=True)).scalars().all()
        # JSON list membership is not portable SQL; filter after load
        if category:
            rows = [r for r in rows if category in (r.categories or [])]
        start = (page - 1) * limit
        return list(rows[start:start + limit]), len(rows)


class ResultStore:
    def __init__(self, session: Session):
        self.session = session

    def _select(self, filters: dict[str, Any]):
        return (
            select(models.RaceResult)
            .where(*_conditions(models.RaceResult, filters))
            .execution_options(populate_existing=True)
        )

    def find_one(self, **filters) -> Optional[models.RaceResult]:
        return self.session.execute(
            self._select(filters).order_by(models.RaceResult.id.asc()).limit(1)
        ).scalar_one_or_none()

    def find(self, **filters) -> list[models.RaceResult]:
        return list(self.session.execute(self._select(filters).order_by(models.RaceResult.id.asc())).scalars().all())

    def count(self, **filters) -> int:
        return self.session.execute(
            select(func.count()).select_from(models.RaceResult).where(*_conditions(models.RaceResult, filters))
        ).scalar_one()

    def create(self, data: dict[str, Any]) -> models.RaceResult:
        result = models.RaceResult(**data)
        self.session.add(result)
        self.session.flush()
        return result

    def update_one(
        self,
        filters: dict[str, Any],
        patch: dict[str, Any],
        only_if_match: dict[str, Any] | None = None,
    ) -> Optional[models.RaceResult]:
        """Update the first row matching ``filters``.

        ``only_if_match`` is re-checked inside the UPDATE itself, making this a
        compare-and-swap: if another writer changed those columns first, no
        row is touched and None is returned.
        """
        self.session.flush()
        target = self.find_one(**filters)
        if target is None:
            return None
        guard = dict(filters)
        guard.update(only_if_match or {})
        res = self.session.execute(
            update(models.RaceResult)
            .where(models.RaceResult.id == target.id, *_conditions(models.RaceResult, guard))
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            return None
        return self.session.get(models.RaceResult, target.id, populate_existing=True)

    def update_many(self, filters: dict[str, Any], patch: dict[str, Any]) -> int:
        self.session.flush()
        res = self.session.execute(
            update(models.RaceResult)
            .where(*_conditions(models.RaceResult, filters))
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount

    def set_positions(self, race_id: int, ranking: list[tuple[int, int]]) -> None:
        """Write a whole race's (result id, position) pairs in one statement batch."""
        self.session.flush()
        ranked_ids = [result_id for result_id, _ in ranking]
        # positions only live on finishers
        self.session.execute(
            update(models.RaceResult)
            .where(
                models.RaceResult.race_id == race_id,
                models.RaceResult.position.is_not(None),
                models.RaceResult.id.not_in(ranked_ids),
            )
            .values(position=None)
            .execution_options(synchronize_session=False)
        )
        if ranking:
            self.session.execute(
                update(models.RaceResult),
                [{"id": result_id, "position": position} for result_id, position in ranking],
            )


class RiderDirectory:
    def __init__(self, session: Session):
        self.session = session

    def get(self, rider_id: int) -> Optional[models.Rider]:
        return self.session.get(models.Rider, rider_id)

    def find(self, **filters) -> list[models.Rider]:
        return list(
            self.session.execute(
                select(models.Rider)
                .where(*_conditions(models.Rider, filters))
                .order_by(models.Rider.last_name.asc(), models.Rider.first_name.asc(), models.Rider.id.asc())
            ).scalars().all()
        )

    def create(self, data: dict[str, Any]) -> models.Rider:
        rider = models.Rider(**data)
        self.session.add(rider)
        self.session.flush()
        return rider
