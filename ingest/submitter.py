"""Batched, rate-governed submission of extracted messages to Graphiti.

Per batch, each attempt walks::

    PENDING -> SENDING -> {SUCCESS | RATE_LIMITED | SERVER_ERROR | CLIENT_ERROR
                           | NETWORK_ERROR | TIMEOUT} -> {RETRY | GIVE_UP}

Rate limits escalate the run-global delay (sticky) and retry; 5xx, network
errors and timeouts retry at the current delay; any other 4xx gives up at once.
Every failure class shares the same ``max_attempts`` budget.

A file's batches go out in order and the first batch that gives up halts the
file; the caller decides what that means for the checkpoint.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, Sequence

from ingest.errors import RateLimitError, SinkError
from ingest.parse_sessions import ExtractedMessage
from ingest.rate_governor import RateGovernor
from ingest.stats import RunStats

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_MAX_ATTEMPTS = 5


class AttemptState(str, Enum):
    PENDING = 'PENDING'
    SENDING = 'SENDING'
    SUCCESS = 'SUCCESS'
    RATE_LIMITED = 'RATE_LIMITED'
    SERVER_ERROR = 'SERVER_ERROR'
    CLIENT_ERROR = 'CLIENT_ERROR'
    NETWORK_ERROR = 'NETWORK_ERROR'
    TIMEOUT = 'TIMEOUT'
    RETRY = 'RETRY'
    GIVE_UP = 'GIVE_UP'


class MessageSink(Protocol):
    def add_messages(
        self, group_id: str, messages: Sequence[dict], *, timeout: float | None = None
    ) -> object: ...


@dataclass
class BatchOutcome:
    ok: bool
    attempts: int
    transitions: list[AttemptState] = field(default_factory=list)
    error: str | None = None
    cancelled: bool = False

    @property
    def last_failure(self) -> AttemptState | None:
        failures = [
            s
            for s in self.transitions
            if s not in (AttemptState.PENDING, AttemptState.SENDING, AttemptState.RETRY,
                         AttemptState.GIVE_UP, AttemptState.SUCCESS)
        ]
        return failures[-1] if failures else None


@dataclass
class FileSubmission:
    ok: bool
    batches_total: int
    batches_sent: int = 0
    messages_submitted: int = 0
    error: str | None = None
    failure_state: AttemptState | None = None
    cancelled: bool = False


def split_batches(
    messages: Sequence[ExtractedMessage], size: int
) -> list[list[ExtractedMessage]]:
    if size <= 0:
        raise ValueError(f'batch size must be positive, got {size}')
    return [list(messages[i : i + size]) for i in range(0, len(messages), size)]


class BatchSubmitter:
    """Drives batch attempts through the rate governor and records counters.

    Args:
        client: anything with ``add_messages(group_id, messages, timeout=...)``
            that raises :class:`ingest.errors.SinkError` subclasses on failure.
        governor: the run's shared :class:`RateGovernor`.
        stats: the run's counters.
        dry_run: never call *client* and never sleep; every batch succeeds.
        cancel_event: once set, no new attempt or batch is started.
    """

    def __init__(
        self,
        client: MessageSink | None,
        governor: RateGovernor,
        stats: RunStats,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        request_timeout_s: float = 30.0,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError(f'max_attempts must be positive, got {max_attempts}')
        if client is None and not dry_run:
            raise ValueError('a sink client is required unless dry_run is set')
        self.client = client
        self.governor = governor
        self.stats = stats
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.request_timeout_s = request_timeout_s
        self.dry_run = dry_run
        self.cancel_event = cancel_event

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def send_batch(self, group_id: str, batch: Sequence[ExtractedMessage]) -> BatchOutcome:
        """Submit one batch, retrying transient failures within the attempt budget."""
        outcome = BatchOutcome(ok=False, attempts=0, transitions=[AttemptState.PENDING])

        if self.dry_run:
            logger.info('  [DRY RUN] Would submit %d messages to group %s', len(batch), group_id)
            outcome.ok = True
            outcome.transitions.append(AttemptState.SUCCESS)
            self.stats.batches_sent += 1
            return outcome

        payload = [m.to_payload() for m in batch]
        for attempt in range(1, self.max_attempts + 1):
            if not self.governor.wait(self.cancel_event):
                outcome.cancelled = True
                outcome.error = outcome.error or 'cancelled before attempt'
                outcome.transitions.append(AttemptState.GIVE_UP)
                break

            outcome.attempts = attempt
            outcome.transitions.append(AttemptState.SENDING)
            try:
                self.client.add_messages(group_id, payload, timeout=self.request_timeout_s)
            except SinkError as exc:
                outcome.transitions.append(AttemptState(exc.state))
                outcome.error = str(exc)
                if isinstance(exc, RateLimitError):
                    self.stats.rate_limit_hits += 1
                    self.governor.escalate()

                if exc.retryable and attempt < self.max_attempts:
                    self.stats.retries += 1
                    outcome.transitions.append(AttemptState.RETRY)
                    logger.debug(
                        'Batch for %s attempt %d/%d failed (%s), retrying in %dms',
                        group_id,
                        attempt,
                        self.max_attempts,
                        exc.state,
                        self.governor.delay_ms,
                    )
                    continue

                outcome.transitions.append(AttemptState.GIVE_UP)
                break
            else:
                outcome.ok = True
                outcome.transitions.append(AttemptState.SUCCESS)
                self.stats.batches_sent += 1
                return outcome

        self.stats.batches_failed += 1
        if outcome.cancelled:
            logger.warning('  Batch abandoned for %s: run cancelled', group_id)
        else:
            logger.error('  Batch failed for %s: %s', group_id, outcome.error)
        return outcome

    def submit_file(self, group_id: str, messages: Sequence[ExtractedMessage]) -> FileSubmission:
        """Send a file's messages batch by batch, halting at the first failure."""
        batches = split_batches(messages, self.batch_size)
        result = FileSubmission(ok=True, batches_total=len(batches))

        for batch in batches:
            if self._cancelled():
                result.ok = False
                result.cancelled = True
                result.error = 'cancelled between batches'
                return result

            outcome = self.send_batch(group_id, batch)
            if not outcome.ok:
                result.ok = False
                result.cancelled = outcome.cancelled
                result.error = outcome.error
                result.failure_state = outcome.last_failure
                return result

            result.batches_sent += 1
            result.messages_submitted += len(batch)
            self.stats.messages_submitted += len(batch)

        return result
