from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Category = Literal["Professional", "Amateur", "Youth"]
Difficulty = Literal["Easy", "Medium", "Hard", "Expert"]


class RaceCreate(BaseModel):
    name: str = Field(min_length=3, max_length=100)
    description: str = Field(default="", max_length=500)
    location_name: str = Field(min_length=1)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    start_time: datetime
    end_time: Optional[datetime] = None
    distance: float = Field(ge=0, le=1000)  # km
    terrain: str = ""
    difficulty: Difficulty = "Medium"
    max_participants: Optional[int] = Field(default=None, ge=1, le=10000)
    entry_fee: float = Field(default=0, ge=0, le=10000)
    categories: list[Category] = Field(default_factory=list)


class RaceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    location_name: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    start_time: Optional[datetime] = None
    distance: Optional[float] = Field(default=None, ge=0, le=1000)
    terrain: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    max_participants: Optional[int] = Field(default=None, ge=1, le=10000)
    entry_fee: Optional[float] = Field(default=None, ge=0, le=10000)
    categories: Optional[list[Category]] = None
    # InProgress / Completed / Cancelled only via start, finish, cancel
    status: Optional[Literal["Draft", "Open", "Closed"]] = None


class RiderCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    date_of_birth: Optional[date] = None
    nationality: str = ""
    category: Category = "Amateur"
    bike_type: str = ""


class RegistrationCreate(BaseModel):
    rider_id: int


class RiderStatusUpdate(BaseModel):
    status: str  # Registered | Started | Finished | DNF | DSQ
    notes: Optional[str] = Field(default=None, max_length=200)


class RaceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    location_name: str
    latitude: Optional[float]
    longitude: Optional[float]
    start_time: datetime
    end_time: Optional[datetime]
    distance: float
    terrain: str
    difficulty: str
    max_participants: Optional[int]
    entry_fee: float
    categories: list[str]
    status: str
    weather_conditions: Optional[dict]


class RiderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    email: str
    date_of_birth: Optional[date]
    nationality: str
    category: str
    bike_type: str


class ResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    race_id: int
    rider_id: int
    status: str
    start_time: Optional[datetime]
    finish_time: Optional[datetime]
    total_time: Optional[int]
    position: Optional[int]
    notes: Optional[str]
