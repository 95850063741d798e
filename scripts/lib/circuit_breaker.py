"""
Circuit breaker for integration calls.
Stops hammering a vendor API (Monday.com, Microsoft Graph, Slack) once it
keeps failing, then lets a single trial call through after a cool-down.

One breaker exists per vendor and is shared by every client instance, so
an organization's Monday.com client sees the failures another one hit.

Usage:
    from scripts.lib.circuit_breaker import CircuitBreaker

    breaker = CircuitBreaker.get("monday", failure_threshold=5, reset_timeout=60)
    breaker.guard()            # raises CircuitOpenError while open
    try:
        result = call_vendor()
        breaker.record_success()
    except requests.RequestException:
        breaker.record_failure()
        raise
"""
import time
from typing import Dict, List

from scripts.lib.errors import CircuitOpenError
from scripts.lib.logger import setup_logger

logger = setup_logger("circuit_breaker")


class CircuitBreaker:
    """
    Per-vendor failure counter with three states.

    CLOSED     vendor healthy; consecutive failures are counted
    OPEN       vendor refused until `reset_timeout` seconds pass
    HALF_OPEN  next call is a trial; its outcome closes or re-opens
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    _registry: Dict[str, "CircuitBreaker"] = {}

    def __init__(self, service: str, failure_threshold: int = 5, reset_timeout: int = 60):
        self.service = service
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.state = self.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0

    # ─── Registry ───────────────────────────────────────────

    @classmethod
    def get(cls, service: str, **kwargs) -> "CircuitBreaker":
        """Shared breaker for a vendor; kwargs only apply on first use."""
        breaker = cls._registry.get(service)
        if breaker is None:
            breaker = cls._registry[service] = cls(service, **kwargs)
        return breaker

    @classmethod
    def reset_all(cls):
        cls._registry.clear()

    @classmethod
    def all_status(cls) -> List[dict]:
        return [breaker.status() for breaker in cls._registry.values()]

    # ─── State machine ──────────────────────────────────────

    def _move_to(self, state: str):
        if state != self.state:
            logger.info("Circuit for '%s': %s -> %s", self.service, self.state, state)
            self.state = state

    def _cooled_down(self) -> bool:
        return time.time() - self.last_failure_time >= self.reset_timeout

    def can_execute(self) -> bool:
        """True when a call may go out; an open breaker past its cool-down turns half-open."""
        if self.state == self.OPEN:
            if not self._cooled_down():
                return False
            self._move_to(self.HALF_OPEN)
        return True

    def guard(self):
        """Raise CircuitOpenError if the breaker refuses the call."""
        if not self.can_execute():
            raise CircuitOpenError(self.service, self.failure_count, self.time_until_reset)

    def record_success(self):
        self._move_to(self.CLOSED)
        self.failure_count = 0
        self.success_count += 1

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()
        trial_failed = self.state == self.HALF_OPEN
        if trial_failed or self.failure_count >= self.failure_threshold:
            if self.state != self.OPEN:
                logger.warning(
                    "Vendor '%s' failing (%d in a row), pausing calls for %ds",
                    self.service, self.failure_count, self.reset_timeout,
                )
            self._move_to(self.OPEN)

    @property
    def time_until_reset(self) -> float:
        """Seconds until an open breaker allows a trial call (0 if not open)."""
        if self.state != self.OPEN:
            return 0.0
        return max(0.0, self.reset_timeout - (time.time() - self.last_failure_time))

    def status(self) -> dict:
        return {
            "service": self.service,
            "state": self.state,
            "failures": self.failure_count,
            "threshold": self.failure_threshold,
            "time_until_reset": round(self.time_until_reset, 1),
        }
