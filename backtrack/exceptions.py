"""Error taxonomy for order backtracking."""

from __future__ import annotations


class BacktrackError(Exception):
    """Base class for all backtracking errors."""


class ConfigurationError(BacktrackError, ValueError):
    """Invalid Cornix configuration, e.g. price-target percentages that do not add up."""


class InvalidOrderError(BacktrackError, ValueError):
    """Order prices are inconsistent with its direction or required fields are missing."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])


class ApiError(BacktrackError):
    """Market-data source failure carrying the upstream status code."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_invalid_symbol(self) -> bool:
        return self.status_code in (400, 404)


class MissingTradeDataError(BacktrackError):
    """No candle is available for a coin at the requested time."""

    def __init__(self, coin: str, timestamp: int):
        super().__init__(f"Missing trade data for {coin} at {timestamp}")
        self.coin = coin
        self.timestamp = timestamp
