"""Error taxonomy for session ingestion.

Only ``FatalStartupError`` (and its subclasses) aborts a run. Everything else is
recovered locally (``ParseError``, ``StateCorruptionError``) or recorded against
the owning file in the checkpoint store while the run continues.
"""

from __future__ import annotations


class SessionIngestError(RuntimeError):
    pass


class ParseError(SessionIngestError):
    """A single JSONL line could not be decoded or validated."""

    def __init__(self, line_number: int, reason: str) -> None:
        self.line_number = line_number
        self.reason = reason
        super().__init__(f'line {line_number}: {reason}')


class FileReadError(SessionIngestError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f'cannot read {path}: {reason}')


class StateCorruptionError(SessionIngestError):
    pass


class FatalStartupError(SessionIngestError):
    pass


class CheckpointLockedError(FatalStartupError):
    pass


class ConfigError(FatalStartupError):
    pass


# ---------------------------------------------------------------------------
# Sink failures
# ---------------------------------------------------------------------------


class SinkError(SessionIngestError):
    """Base class for a failed submission attempt.

    ``retryable`` tells the batch submitter whether another attempt may be made
    within the retry budget.
    """

    retryable = False
    state = 'CLIENT_ERROR'

    def __init__(self, message: str, *, status: int | None = None, body: str = '') -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class TransientNetworkError(SinkError):
    retryable = True
    state = 'NETWORK_ERROR'


class RequestTimeoutError(TransientNetworkError):
    state = 'TIMEOUT'


class RateLimitError(SinkError):
    retryable = True
    state = 'RATE_LIMITED'


class ServerError(SinkError):
    retryable = True
    state = 'SERVER_ERROR'


class ClientError(SinkError):
    retryable = False
    state = 'CLIENT_ERROR'
