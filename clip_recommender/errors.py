from __future__ import annotations


class RecommendationError(Exception):
    """Base class for every error surfaced by the recommendation engine."""

    client_error = False


class NotFound(RecommendationError, LookupError):
    """Target or recommendation is missing, or belongs to another workspace."""

    client_error = True


class InvalidState(RecommendationError):
    """Lifecycle transition attempted on a terminal recommendation."""

    client_error = True


class ValidationError(RecommendationError, ValueError):
    """Malformed filter, search or paging parameters."""

    client_error = True


class StrategyExecutionError(RecommendationError):
    """A strategy failed; generation was aborted without partial results."""

    def __init__(self, strategy: str, message: str) -> None:
        super().__init__(f"Strategy '{strategy}' failed: {message}")
        self.strategy = strategy


class PersistenceError(RecommendationError):
    """Record-store read or write failed."""
