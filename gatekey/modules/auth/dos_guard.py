"""
Denial-of-service guard for the full-scan fallback.

Two cooperating mechanisms:
- Circuit breaker: opens once the aggregate failure count reaches the
  threshold; closes lazily on the first check made after the cooldown has
  elapsed since the last recorded failure. There is no background timer.
- Per-source limiter: sliding window of failure timestamps per source;
  a source is denied once the window holds max_full_scan_attempts entries.

All state sits behind one lock so concurrent callers never lose a count.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("gatekey.security")

DEFAULT_SOURCE = "global"


class GuardDecision(str, Enum):
    ALLOWED = "allowed"
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"


@dataclass
class CircuitState:
    failure_count: int = 0
    last_failure_time: float = 0.0
    is_open: bool = False


class DoSGuard:
    """Circuit breaker plus per-source rate limiter."""

    def __init__(
        self,
        threshold: int = 10,
        cooldown_seconds: float = 60.0,
        max_full_scan_attempts: int = 5,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize DoS guard.

        Args:
            threshold: Failures that open the circuit
            cooldown_seconds: Quiet period after the last failure before the circuit closes
            max_full_scan_attempts: Failures per source tolerated inside the window
            window_seconds: Sliding window length
            clock: Wall-clock source, injectable for tests
        """
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self.max_full_scan_attempts = max_full_scan_attempts
        self.window_seconds = window_seconds
        self._clock = clock

        self._lock = threading.Lock()
        self._circuit = CircuitState()
        self._failures: Dict[str, List[float]] = {}

    def _refresh_circuit(self, now: float) -> bool:
        """Lazily close the circuit once the cooldown has passed. Caller holds the lock."""
        circuit = self._circuit
        if circuit.is_open and now - circuit.last_failure_time > self.cooldown_seconds:
            circuit.is_open = False
            circuit.failure_count = 0
            logger.info("Circuit breaker reset - allowing hash verification attempts")
        return circuit.is_open

    def _prune(self, now: float) -> None:
        """Drop timestamps outside the window for every source. Caller holds the lock."""
        window_start = now - self.window_seconds
        for source in list(self._failures):
            recent = [ts for ts in self._failures[source] if ts > window_start]
            if recent:
                self._failures[source] = recent
            else:
                del self._failures[source]

    def check(self, source: str = DEFAULT_SOURCE) -> GuardDecision:
        """
        Decide whether a full scan may run for this source.

        The limiter denies at the limit, not past it: once the window holds
        max_full_scan_attempts failures the source is refused, so with the
        default of 5 the sixth attempt inside the window never scans.
        """
        with self._lock:
            now = self._clock()
            if self._refresh_circuit(now):
                return GuardDecision.CIRCUIT_OPEN

            self._prune(now)
            if len(self._failures.get(source, [])) >= self.max_full_scan_attempts:
                security_logger.warning(
                    f"Rate limit exceeded for full API key scan from source: {source}"
                )
                return GuardDecision.RATE_LIMITED

            return GuardDecision.ALLOWED

    def allow(self, source: str = DEFAULT_SOURCE) -> bool:
        return self.check(source) is GuardDecision.ALLOWED

    def is_circuit_open(self) -> bool:
        with self._lock:
            return self._refresh_circuit(self._clock())

    def record_failure(self, source: str = DEFAULT_SOURCE) -> None:
        """Record a failed lookup for the source and the circuit."""
        with self._lock:
            now = self._clock()
            self._failures.setdefault(source, []).append(now)

            circuit = self._circuit
            circuit.failure_count += 1
            circuit.last_failure_time = now

            if not circuit.is_open and circuit.failure_count >= self.threshold:
                circuit.is_open = True
                security_logger.warning(
                    f"Circuit breaker opened - too many failed API key lookups "
                    f"({circuit.failure_count})"
                )

    def snapshot(self) -> dict:
        """Current state for diagnostics."""
        with self._lock:
            return {
                "circuit_open": self._circuit.is_open,
                "failure_count": self._circuit.failure_count,
                "last_failure_time": self._circuit.last_failure_time,
                "sources": {source: len(ts) for source, ts in self._failures.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._circuit = CircuitState()
            self._failures.clear()
