"""Adaptive inter-batch delay for submissions to Graphiti.

Isolated in its own module so it can be unit-tested without the HTTP client or
the pipeline.
"""

from __future__ import annotations

import logging
import threading
import time

logger = logging.getLogger(__name__)


class RateGovernor:
    """Run-global pacing shared by every batch of every file.

    The delay models one shared downstream budget (the embedding quota behind
    Graphiti), so it is kept per run, not per file. It only ever grows: each
    observed rate limit multiplies it by ``backoff_factor`` up to
    ``max_delay_ms``, and nothing lowers it again before the run ends.

    Not thread-safe; the pipeline is strictly sequential.

    Args:
        initial_delay_ms: Delay before the first attempt.
        max_delay_ms: Hard ceiling for escalation.
        backoff_factor: Multiplier applied on each rate-limit hit (> 1).

    Raises:
        ValueError: If the arguments are out of range.
    """

    def __init__(
        self,
        initial_delay_ms: int = 1500,
        max_delay_ms: int = 30000,
        backoff_factor: float = 1.5,
    ) -> None:
        if initial_delay_ms < 0:
            raise ValueError(f'initial_delay_ms must be >= 0, got {initial_delay_ms}')
        if max_delay_ms < initial_delay_ms:
            raise ValueError(
                f'max_delay_ms ({max_delay_ms}) must be >= initial_delay_ms ({initial_delay_ms})'
            )
        if backoff_factor <= 1.0:
            raise ValueError(f'backoff_factor must be > 1, got {backoff_factor}')
        self.initial_delay_ms = int(initial_delay_ms)
        self.max_delay_ms = int(max_delay_ms)
        self.backoff_factor = float(backoff_factor)
        self._delay_ms = self.initial_delay_ms
        self.escalations = 0

    @property
    def delay_ms(self) -> int:
        return self._delay_ms

    def escalate(self) -> bool:
        """Grow the delay after a rate-limit signal; True if it changed."""
        # A zero initial delay still has to back off from something.
        base = self._delay_ms or 1
        nxt = min(int(round(base * self.backoff_factor)), self.max_delay_ms)
        if nxt <= self._delay_ms:
            return False
        self._delay_ms = nxt
        self.escalations += 1
        logger.info('Rate limit detected. Increasing delay to %dms', self._delay_ms)
        return True

    def wait(self, cancel_event: threading.Event | None = None) -> bool:
        """Suspend for the current delay.

        Returns False if *cancel_event* was set before or during the wait.
        """
        seconds = self._delay_ms / 1000.0
        if cancel_event is None:
            if seconds > 0:
                time.sleep(seconds)
            return True
        if seconds <= 0:
            return not cancel_event.is_set()
        return not cancel_event.wait(seconds)
