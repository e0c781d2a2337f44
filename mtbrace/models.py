from __future__ import annotations

from datetime import date, datetime
from sqlalchemy import JSON, String, Integer, Float, Date, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .utils import utcnow


class RaceStatus:
    DRAFT = "Draft"
    OPEN = "Open"
    CLOSED = "Closed"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    ALL = (DRAFT, OPEN, CLOSED, IN_PROGRESS, COMPLETED, CANCELLED)


class ResultStatus:
    REGISTERED = "Registered"
    STARTED = "Started"
    FINISHED = "Finished"
    DNF = "DNF"
    DSQ = "DSQ"

    ALL = (REGISTERED, STARTED, FINISHED, DNF, DSQ)
    WITHDRAWN = (DNF, DSQ)


CATEGORIES = ("Professional", "Amateur", "Youth")
DIFFICULTIES = ("Easy", "Medium", "Hard", "Expert")


class Race(Base):
    __tablename__ = "races"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    location_name: Mapped[str] = mapped_column(String(200), nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    # naive UTC; overwritten with the mass start instant when the race starts
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    distance: Mapped[float] = mapped_column(Float, nullable=False)
    terrain: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    difficulty: Mapped[str] = mapped_column(String(20), nullable=False, default="Medium")
    max_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entry_fee: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RaceStatus.DRAFT)
    weather_conditions: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    results: Mapped[list["RaceResult"]] = relationship(back_populates="race", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_races_status", "status"),
        Index("ix_races_start_status", "start_time", "status"),
    )

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Rider(Base):
    __tablename__ = "riders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    nationality: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    category: Mapped[str] = mapped_column(String(20), nullable=False, default="Amateur")
    bike_type: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    created_at_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class RaceResult(Base):
    __tablename__ = "race_results"
    # autoincrement id doubles as registration order
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    race_id: Mapped[int] = mapped_column(ForeignKey("races.id", ondelete="CASCADE"), nullable=False)
    rider_id: Mapped[int] = mapped_column(ForeignKey("riders.id", ondelete="CASCADE"), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ResultStatus.REGISTERED)
    start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finish_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # whole seconds; only set while status is Finished
    total_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(200), nullable=True)

    created_at_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    race: Mapped["Race"] = relationship(back_populates="results")
    rider: Mapped["Rider"] = relationship()

    __table_args__ = (
        UniqueConstraint("race_id", "rider_id", name="uq_result_per_rider"),
        Index("ix_results_race_status", "race_id", "status"),
        Index("ix_results_race_total", "race_id", "total_time"),
    )
