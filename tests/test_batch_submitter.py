"""Tests for the rate governor and the batch submitter state machine."""

from __future__ import annotations

import http.client
import threading
from unittest.mock import MagicMock, patch

import pytest

from ingest.errors import (
    ClientError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    TransientNetworkError,
)
from ingest.graphiti_client import GraphitiClient
from ingest.parse_sessions import ExtractedMessage
from ingest.rate_governor import RateGovernor
from ingest.stats import RunStats
from ingest.submitter import AttemptState, BatchSubmitter, split_batches


class FakeSink:
    """Records every call; pops one scripted outcome per call (None = success)."""

    def __init__(self, script=None):
        self.calls: list[tuple[str, list[dict]]] = []
        self.script = list(script or [])

    def add_messages(self, group_id, messages, *, timeout=None):
        self.calls.append((group_id, list(messages)))
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        return None


def _messages(count: int) -> list[ExtractedMessage]:
    return [
        ExtractedMessage(
            role_type='user' if i % 2 == 0 else 'assistant',
            display_name='User' if i % 2 == 0 else 'Assistant',
            content=f'message number {i} with enough text to count',
            timestamp=f'2026-01-15T10:00:{i:02d}Z',
            group_id='sessions-dm-2026-01-15',
            source_description='a.jsonl',
        )
        for i in range(count)
    ]


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr('ingest.rate_governor.time.sleep', recorded.append)
    return recorded


def _submitter(sink, governor=None, stats=None, **kwargs) -> BatchSubmitter:
    return BatchSubmitter(
        sink,
        governor or RateGovernor(),
        stats or RunStats(),
        **kwargs,
    )


# ── Rate governor ───────────────────────────────────────────────


def test_governor_escalates_rounded_and_capped() -> None:
    governor = RateGovernor(initial_delay_ms=1500, max_delay_ms=4000, backoff_factor=1.5)
    assert governor.escalate() is True
    assert governor.delay_ms == 2250
    assert governor.escalate() is True
    assert governor.delay_ms == 3375
    assert governor.escalate() is True
    assert governor.delay_ms == 4000
    assert governor.escalate() is False
    assert governor.delay_ms == 4000
    assert governor.escalations == 3


def test_governor_zero_delay_still_backs_off() -> None:
    governor = RateGovernor(initial_delay_ms=0, max_delay_ms=100, backoff_factor=1.5)
    governor.escalate()
    assert governor.delay_ms == 2


@pytest.mark.parametrize(
    'kwargs',
    [
        {'initial_delay_ms': -1},
        {'initial_delay_ms': 500, 'max_delay_ms': 100},
        {'backoff_factor': 1.0},
    ],
)
def test_governor_rejects_bad_arguments(kwargs) -> None:
    with pytest.raises(ValueError):
        RateGovernor(**kwargs)


def test_governor_wait_sleeps_current_delay(sleeps: list[float]) -> None:
    governor = RateGovernor(initial_delay_ms=1500)
    assert governor.wait() is True
    assert sleeps == [1.5]


def test_governor_wait_returns_false_when_cancelled() -> None:
    event = threading.Event()
    event.set()
    governor = RateGovernor(initial_delay_ms=10_000)
    assert governor.wait(event) is False


# ── Batch submitter ─────────────────────────────────────────────


def test_split_batches() -> None:
    assert [len(b) for b in split_batches(_messages(12), 5)] == [5, 5, 2]
    assert split_batches([], 5) == []
    with pytest.raises(ValueError):
        split_batches(_messages(1), 0)


def test_rate_limited_batch_is_retried_and_delay_escalates(sleeps: list[float]) -> None:
    sink = FakeSink([None, RateLimitError('rate limited (429)', status=429), None, None])
    governor = RateGovernor(initial_delay_ms=1500)
    stats = RunStats()

    result = _submitter(sink, governor, stats, batch_size=5).submit_file(
        'sessions-dm-2026-01-15', _messages(12)
    )

    assert result.ok
    assert result.messages_submitted == 12
    assert result.batches_sent == 3
    assert [len(msgs) for _, msgs in sink.calls] == [5, 5, 5, 2]
    assert stats.messages_submitted == 12
    assert stats.retries >= 1
    assert stats.rate_limit_hits >= 1
    assert governor.delay_ms > 1500
    # The escalated delay is sticky for every later attempt.
    assert sleeps == [1.5, 1.5, 2.25, 2.25]


def test_payload_shape(sleeps: list[float]) -> None:
    sink = FakeSink()
    _submitter(sink).submit_file('sessions-dm-2026-01-15', _messages(1))

    group_id, payload = sink.calls[0]
    assert group_id == 'sessions-dm-2026-01-15'
    assert payload == [
        {
            'role_type': 'user',
            'role': 'User',
            'content': 'message number 0 with enough text to count',
            'timestamp': '2026-01-15T10:00:00Z',
            'source_description': 'a.jsonl',
        }
    ]


@pytest.mark.parametrize(
    'error, state',
    [
        (ServerError('server error (503)', status=503), AttemptState.SERVER_ERROR),
        (TransientNetworkError('network error: refused'), AttemptState.NETWORK_ERROR),
        (RequestTimeoutError('request timed out after 30.0s'), AttemptState.TIMEOUT),
    ],
)
def test_transient_failures_retry_without_escalation(sleeps, error, state) -> None:
    sink = FakeSink([error, None])
    governor = RateGovernor(initial_delay_ms=1500)
    stats = RunStats()

    outcome = _submitter(sink, governor, stats).send_batch('g', _messages(2))

    assert outcome.ok
    assert outcome.attempts == 2
    assert outcome.transitions == [
        AttemptState.PENDING,
        AttemptState.SENDING,
        state,
        AttemptState.RETRY,
        AttemptState.SENDING,
        AttemptState.SUCCESS,
    ]
    assert governor.delay_ms == 1500
    assert stats.retries == 1
    assert stats.rate_limit_hits == 0


def test_dropped_connection_is_retried_through_http_client(sleeps: list[float]) -> None:
    resp = MagicMock()
    resp.status = 200
    resp.read.side_effect = [http.client.IncompleteRead(b'partial', 10), b'{}']
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    stats = RunStats()

    with patch('ingest.graphiti_client.urllib.request.urlopen', return_value=resp) as urlopen:
        outcome = _submitter(GraphitiClient('http://localhost:18000'), stats=stats).send_batch(
            'g', _messages(2)
        )

    assert outcome.ok
    assert urlopen.call_count == 2
    assert AttemptState.NETWORK_ERROR in outcome.transitions
    assert stats.retries == 1


def test_client_error_gives_up_immediately(sleeps: list[float]) -> None:
    sink = FakeSink([ClientError('request rejected (400)', status=400)])
    stats = RunStats()

    outcome = _submitter(sink, stats=stats).send_batch('g', _messages(2))

    assert not outcome.ok
    assert outcome.attempts == 1
    assert outcome.transitions[-2:] == [AttemptState.CLIENT_ERROR, AttemptState.GIVE_UP]
    assert outcome.last_failure == AttemptState.CLIENT_ERROR
    assert stats.batches_failed == 1
    assert stats.retries == 0


def test_attempts_are_bounded(sleeps: list[float]) -> None:
    sink = FakeSink([ServerError('server error (500)', status=500)] * 10)
    stats = RunStats()

    outcome = _submitter(sink, stats=stats, max_attempts=5).send_batch('g', _messages(1))

    assert not outcome.ok
    assert len(sink.calls) == 5
    assert stats.retries == 4
    assert outcome.transitions[-1] == AttemptState.GIVE_UP


def test_file_halts_at_first_failed_batch(sleeps: list[float]) -> None:
    sink = FakeSink([None, ClientError('request rejected (422)', status=422)])
    stats = RunStats()

    result = _submitter(sink, stats=stats, batch_size=5).submit_file('g', _messages(12))

    assert not result.ok
    assert result.batches_total == 3
    assert result.batches_sent == 1
    assert result.messages_submitted == 5
    assert result.failure_state == AttemptState.CLIENT_ERROR
    assert len(sink.calls) == 2


def test_dry_run_never_calls_sink_or_sleeps(sleeps: list[float]) -> None:
    stats = RunStats()
    submitter = _submitter(None, stats=stats, dry_run=True)

    result = submitter.submit_file('g', _messages(7))

    assert result.ok
    assert result.messages_submitted == 7
    assert stats.batches_sent == 2
    assert sleeps == []


def test_cancellation_stops_between_batches(sleeps: list[float]) -> None:
    event = threading.Event()

    class CancellingSink(FakeSink):
        def add_messages(self, group_id, messages, *, timeout=None):
            super().add_messages(group_id, messages, timeout=timeout)
            event.set()

    sink = CancellingSink()
    governor = RateGovernor(initial_delay_ms=0, max_delay_ms=10)
    result = _submitter(sink, governor, cancel_event=event, batch_size=5).submit_file(
        'g', _messages(12)
    )

    assert not result.ok
    assert result.cancelled
    assert result.messages_submitted == 5
    assert len(sink.calls) == 1


def test_sink_required_unless_dry_run() -> None:
    with pytest.raises(ValueError):
        BatchSubmitter(None, RateGovernor(), RunStats())
