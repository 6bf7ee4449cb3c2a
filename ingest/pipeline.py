"""Session ingestion engine shared by backfill and capture runs.

Backfill walks the whole archive once: a file ends up ``processed``,
``skipped`` or ``failed``, and only ``failed`` files are looked at again by a
later run (resubmitting the whole file).

Capture is the recurring variant: it resumes every known file from its cursor
timestamp and submits only what was appended since. The minimum-message rule is
applied to a file's first ingestion only; after that any increment is sent.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Sequence

from ingest.checkpoint import (
    STATUS_FAILED,
    STATUS_PROCESSED,
    STATUS_SKIPPED,
    CheckpointEntry,
    CheckpointStore,
)
from ingest.common import now_iso, parse_iso
from ingest.config import IngestConfig
from ingest.errors import FileReadError
from ingest.parse_sessions import (
    SKIP_BEFORE_SINCE,
    ExtractedMessage,
    ParseOptions,
    max_timestamp,
    parse_session_file,
)
from ingest.rate_governor import RateGovernor
from ingest.sources import SourceFile
from ingest.stats import RunStats, StatsReporter
from ingest.submitter import BatchSubmitter, MessageSink

logger = logging.getLogger(__name__)

MODE_BACKFILL = 'backfill'
MODE_CAPTURE = 'capture'
MODES = (MODE_BACKFILL, MODE_CAPTURE)

REASON_MIN_MESSAGES = 'min_messages'
REASON_PARSE_ERROR = 'parse_error'
REASON_BATCH_FAILED = 'batch_failed'
REASON_INTERRUPTED = 'interrupted'


def safe_resume_cursor(
    messages: Sequence[ExtractedMessage], submitted: int, previous: str | None
) -> str | None:
    """Cursor to store after the first *submitted* messages were confirmed.

    Only timestamps strictly below the first unsent message qualify, so that
    message (and anything sharing its timestamp) is extracted again next run.
    """
    if submitted <= 0:
        return previous
    sent = messages[:submitted]
    if submitted >= len(messages):
        return max_timestamp([previous, *(m.timestamp for m in sent)])

    first_unsent = parse_iso(messages[submitted].timestamp)
    if first_unsent is None:
        candidates = [m.timestamp for m in sent]
    else:
        candidates = []
        for m in sent:
            dt = parse_iso(m.timestamp)
            if dt is not None and dt < first_unsent:
                candidates.append(m.timestamp)
    return max_timestamp([previous, *candidates])


class IngestPipeline:
    """Runs one ingestion pass over a list of source files.

    Args:
        config: effective configuration.
        store: loaded checkpoint store (read-only for dry runs).
        client: sink client; may be None for dry runs.
        governor: run-global rate governor.
        reporter: progress/summary reporter wrapping the run's ``RunStats``.
        mode: ``backfill`` or ``capture``.
        since: skip sessions that started before this instant (this run only).
        limit: stop after this many files were processed successfully.
        dry_run: parse and count, never submit or persist.
        cancel_event: set by signal handlers to stop between files/batches.
    """

    def __init__(
        self,
        config: IngestConfig,
        store: CheckpointStore,
        client: MessageSink | None,
        governor: RateGovernor,
        reporter: StatsReporter,
        *,
        mode: str = MODE_BACKFILL,
        since: datetime | None = None,
        limit: int | None = None,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if mode not in MODES:
            raise ValueError(f'unknown mode {mode!r}, expected one of {MODES}')
        if limit is not None and limit < 0:
            raise ValueError(f'limit must be >= 0, got {limit}')
        self.config = config
        self.store = store
        self.governor = governor
        self.reporter = reporter
        self.stats = reporter.stats
        self.mode = mode
        self.since = since
        self.limit = limit
        self.dry_run = dry_run
        self.cancel_event = cancel_event or threading.Event()
        self.options = ParseOptions.from_config(config)
        self.submitter = BatchSubmitter(
            client,
            governor,
            self.stats,
            batch_size=config.batch_size,
            max_attempts=config.max_attempts,
            request_timeout_s=config.request_timeout_s,
            dry_run=dry_run,
            cancel_event=self.cancel_event,
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, files: Sequence[SourceFile]) -> RunStats:
        """Process *files* in order and return the run counters."""
        self.stats.files_total = len(files)
        logger.info(
            'Starting %s run over %d files%s',
            self.mode,
            len(files),
            ' (DRY RUN)' if self.dry_run else '',
        )

        for source in files:
            if self.cancelled:
                logger.warning('Cancellation requested, stopping before %s', source.name)
                break
            if self.limit is not None and self.stats.files_processed >= self.limit:
                logger.info('Reached --limit %d, stopping', self.limit)
                break
            self.reporter.file_seen(self.governor.delay_ms)
            self.process_file(source)

        self.stats.finished_at = now_iso()
        return self.stats

    # ── Per file ───────────────────────────────────────────────

    def process_file(self, source: SourceFile) -> str | None:
        """Ingest one file; returns the checkpoint status it ended in (None if untouched)."""
        entry = self.store.lookup(source.name)

        if self.mode == MODE_BACKFILL:
            if entry is not None and entry.status == STATUS_PROCESSED:
                self.stats.files_already_processed += 1
                return None
            if entry is not None and entry.status == STATUS_SKIPPED:
                self.stats.files_already_skipped += 1
                return None
            cursor = None
            first_ingestion = True
        else:
            if (
                entry is not None
                and entry.status == STATUS_SKIPPED
                and entry.reason != REASON_MIN_MESSAGES
            ):
                self.stats.files_already_skipped += 1
                return None
            cursor = entry.resume_cursor if entry is not None else None
            first_ingestion = entry is None or (
                entry.status != STATUS_PROCESSED and entry.ingested_count == 0
            )

        prior_count = self._prior_count(entry)

        try:
            parsed = parse_session_file(
                source.path, cursor=cursor, since=self.since, options=self.options
            )
        except FileReadError as exc:
            logger.error('  Parse error for %s: %s', source.name, exc)
            self.store.mark_failed(
                source.name,
                REASON_PARSE_ERROR,
                error=str(exc),
                group_id=entry.group_id if entry is not None else None,
                ingested_count=prior_count if self.mode == MODE_CAPTURE else None,
            )
            self.stats.files_failed += 1
            return STATUS_FAILED

        self.stats.unrecognized_lines += parsed.unrecognized_lines
        if parsed.skipped_reason == SKIP_BEFORE_SINCE:
            self.stats.files_skipped_since += 1
            return None

        messages = parsed.messages
        self.stats.messages_extracted += len(messages)

        if not messages and entry is not None and entry.status == STATUS_PROCESSED:
            self.stats.files_unchanged += 1
            return None

        if first_ingestion and len(messages) < self.config.min_messages:
            logger.debug(
                '  Skipping %s: %d messages (< %d)',
                source.name,
                len(messages),
                self.config.min_messages,
            )
            self.store.mark_skipped(
                source.name,
                REASON_MIN_MESSAGES,
                message_count=len(messages),
                session_timestamp=parsed.session_timestamp,
            )
            self.stats.files_skipped += 1
            return STATUS_SKIPPED

        logger.info('  %s: %d messages -> %s', source.name, len(messages), parsed.group_id)
        result = self.submitter.submit_file(parsed.group_id, messages)

        if result.ok:
            self.store.mark_processed(
                source.name,
                group_id=parsed.group_id,
                message_count=prior_count + len(messages),
                cursor=max_timestamp([cursor, parsed.last_timestamp]),
            )
            self.stats.files_processed += 1
            return STATUS_PROCESSED

        reason = REASON_INTERRUPTED if result.cancelled else REASON_BATCH_FAILED
        if self.mode == MODE_CAPTURE:
            failed_cursor = safe_resume_cursor(messages, result.messages_submitted, cursor)
            ingested = prior_count + result.messages_submitted
        else:
            failed_cursor = None
            ingested = None
        self.store.mark_failed(
            source.name,
            reason,
            error=result.error,
            group_id=parsed.group_id,
            message_count=len(messages),
            ingested_count=ingested,
            cursor=failed_cursor,
        )
        self.stats.files_failed += 1
        logger.warning(
            '  %s failed (%s) after %d/%d batches',
            source.name,
            reason,
            result.batches_sent,
            result.batches_total,
        )
        return STATUS_FAILED

    def _prior_count(self, entry: CheckpointEntry | None) -> int:
        if self.mode != MODE_CAPTURE or entry is None:
            return 0
        return entry.ingested_count
