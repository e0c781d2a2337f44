"""
Weather Provider

Current conditions and forecasts from the OpenWeatherMap 2.5 API.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx

from .errors import WeatherUnavailableError
from .settings import settings
from .utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class WeatherSnapshot:
    temperature: float
    humidity: float
    wind_speed: float
    condition: str
    last_updated: Optional[datetime] = None
    forecast_date: Optional[datetime] = None

    def to_dict(self) -> dict:
        """JSON-safe form stored on the race."""
        data = asdict(self)
        for key in ("last_updated", "forecast_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class WeatherProvider(Protocol):
    def get_current(self, lat: float, lon: float) -> WeatherSnapshot: ...

    def get_forecast(self, lat: float, lon: float, target: datetime) -> WeatherSnapshot: ...


def _snapshot(entry: dict, **extra) -> WeatherSnapshot:
    return WeatherSnapshot(
        temperature=entry["main"]["temp"],
        humidity=entry["main"]["humidity"],
        wind_speed=entry["wind"]["speed"],
        condition=entry["weather"][0]["description"],
        **extra,
    )


class OpenWeatherMapProvider:
    """Metric-unit client; one short-lived HTTP client per call."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.MTB_WEATHER_API_KEY
        self.base_url = (base_url or settings.MTB_WEATHER_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.MTB_WEATHER_TIMEOUT_S
        self._transport = transport

    def _get(self, path: str, lat: float, lon: float, failure: str) -> dict:
        params = {"lat": lat, "lon": lon, "appid": self.api_key, "units": "metric"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(f"{self.base_url}/{path}", params=params)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as exc:
            logger.error("Weather %s request timed out (lat=%s, lon=%s)", path, lat, lon)
            raise WeatherUnavailableError(failure) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Weather %s request failed: %s", path, exc)
            raise WeatherUnavailableError(failure) from exc

    def get_current(self, lat: float, lon: float) -> WeatherSnapshot:
        failure = "Failed to fetch weather data"
        data = self._get("weather", lat, lon, failure)
        try:
            return _snapshot(data, last_updated=utcnow())
        except (KeyError, IndexError, TypeError) as exc:
            logger.error("Unexpected weather payload: %s", data)
            raise WeatherUnavailableError(failure) from exc

    def get_forecast(self, lat: float, lon: float, target: datetime) -> WeatherSnapshot:
        """Forecast entry whose timestamp lies closest to ``target``."""
        failure = "Failed to fetch weather forecast"
        data = self._get("forecast", lat, lon, failure)
        target = to_naive_utc(target)
        try:
            entries = data["list"]
            closest = min(entries, key=lambda e: abs(_entry_time(e) - target))
            return _snapshot(closest, forecast_date=_entry_time(closest))
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            logger.error("Unexpected forecast payload: %s", data)
            raise WeatherUnavailableError(failure) from exc


def _entry_time(entry: dict) -> datetime:
    return datetime.fromtimestamp(entry["dt"], tz=timezone.utc).replace(tzinfo=None)
