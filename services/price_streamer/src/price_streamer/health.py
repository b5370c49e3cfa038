"""Health tracking for the publish pipeline."""

import logging
from time import time
from typing import Optional

from .types import PipelineHealth

logger = logging.getLogger(__name__)


class HealthTracker:
    """
    Tracks liveness/staleness of the publish pipeline.

    The pipeline is stale when no publish has succeeded within the
    threshold (normally a few fetch intervals).
    """

    def __init__(self, stale_threshold_seconds: float = 180.0):
        """
        Initialize the health tracker.

        Args:
            stale_threshold_seconds: Age after which the last publish is considered stale
        """
        self.stale_threshold_seconds = stale_threshold_seconds
        self._state = PipelineHealth()

    @property
    def state(self) -> PipelineHealth:
        return self._state

    def record_success(self, tx_id: Optional[str] = None, now: Optional[float] = None) -> None:
        """Record a successful publish."""
        self._state.last_success_ts = time() if now is None else now
        self._state.consecutive_failures = 0
        self._state.last_tx_id = tx_id
        self._state.last_error = None

    def record_failure(self, error: str, now: Optional[float] = None) -> None:
        """Record a failed pipeline run."""
        self._state.last_failure_ts = time() if now is None else now
        self._state.consecutive_failures += 1
        self._state.last_error = error
        if self._state.consecutive_failures in (5, 20, 100):
            logger.warning(f"Pipeline has failed {self._state.consecutive_failures} times in a row")

    def age_seconds(self, now: Optional[float] = None) -> Optional[float]:
        """
        Seconds since the last successful publish.

        Returns:
            Age in seconds, or None if nothing has been published
        """
        if self._state.last_success_ts is None:
            return None
        if now is None:
            now = time()
        return now - self._state.last_success_ts

    def is_stale(self, now: Optional[float] = None) -> bool:
        """True if no publish has succeeded within the threshold."""
        age = self.age_seconds(now)
        return age is None or age > self.stale_threshold_seconds

    def to_dict(self, now: Optional[float] = None) -> dict:
        """Serialize for the health endpoint."""
        age = self.age_seconds(now)
        return {
            "healthy": not self.is_stale(now),
            "stale": self.is_stale(now),
            "age_seconds": round(age, 3) if age is not None else None,
            "consecutive_failures": self._state.consecutive_failures,
            "last_tx_id": self._state.last_tx_id,
            "last_error": self._state.last_error,
        }
