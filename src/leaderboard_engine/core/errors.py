"""Domain exceptions raised by the leaderboard services."""

from __future__ import annotations


class LeaderboardError(Exception):
    """Raised when a request cannot be served; carries an HTTP status."""

    def __init__(self, detail: str, status_code: int = 400) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class NotFoundError(LeaderboardError):
    """Unknown student, context, transaction or snapshot."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=404)


class ValidationError(LeaderboardError):
    """Malformed ledger input or query parameters."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=422)


class ConfigValidationError(LeaderboardError):
    """Rejected leaderboard configuration; never applied."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=422)


class ConcurrencyConflictError(LeaderboardError):
    """Optimistic aggregate update kept losing the race."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=503)


class CalendarUnavailableError(Exception):
    """The academic calendar could not supply term boundaries."""


class ComputationBudgetExceeded(Exception):
    """Ranking population or elapsed time went over the configured budget."""
