from __future__ import annotations


class RaceTimerError(ValueError):
    """Base class for domain errors; ``str(err)`` is safe to show to users."""


class NotFoundError(RaceTimerError):
    pass


class InvalidTransitionError(RaceTimerError):
    pass


class ConflictError(RaceTimerError):
    pass


class WeatherUnavailableError(RaceTimerError):
    pass
