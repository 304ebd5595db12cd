from __future__ import annotations

from datetime import datetime


class ForecastError(Exception):
    """Base class for conditions that abort a forecast call."""


class MissingGlucoseHistoryError(ForecastError):
    def __init__(self, message: str = "no glucose sample available to anchor the forecast") -> None:
        super().__init__(message)


class IncompleteScheduleCoverageError(ForecastError):
    def __init__(self, schedule_name: str, at: datetime) -> None:
        self.schedule_name = schedule_name
        self.at = at
        super().__init__(f"{schedule_name} schedule has no entry covering {at.isoformat()}")
