"""
Reconnect Policy

Per-number retry bookkeeping for automatic reconnects:
1. Exponential backoff (base * factor^(n-1)), capped at max_delay
2. Circuit breaker: after max_failures within window_seconds the
   number is left alone until reset (restart request or successful login)

factor=1.0 gives a fixed delay.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional


@dataclass
class BreakerState:
    failures: Deque[float] = field(default_factory=deque)
    consecutive: int = 0


class ReconnectPolicy:

    def __init__(
        self,
        base_delay: float = 5.0,
        factor: float = 2.0,
        max_delay: float = 300.0,
        max_failures: int = 10,
        window_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self.clock = clock
        self._states: Dict[str, BreakerState] = {}

    def record_failure(self, number_id: str):
        state = self._states.setdefault(number_id, BreakerState())
        state.failures.append(self.clock())
        state.consecutive += 1

    def record_success(self, number_id: str):
        self._states.pop(number_id, None)

    reset = record_success

    def is_open(self, number_id: str) -> bool:
        state = self._states.get(number_id)
        if state is None:
            return False
        self._prune(state)
        return len(state.failures) >= self.max_failures

    def next_delay(self, number_id: str) -> Optional[float]:
        """Seconds to wait before the next attempt, or None if the breaker is open."""
        if self.is_open(number_id):
            return None

        state = self._states.get(number_id)
        attempt = state.consecutive if state else 1
        delay = self.base_delay * (self.factor ** max(attempt - 1, 0))
        return min(delay, self.max_delay)

    def _prune(self, state: BreakerState):
        cutoff = self.clock() - self.window_seconds
        while state.failures and state.failures[0] < cutoff:
            state.failures.popleft()
