"""Run counters and the final ingest summary."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from ingest.common import now_iso, write_json_atomic

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    files_total: int = 0
    files_seen: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    files_skipped_since: int = 0
    files_already_processed: int = 0
    files_already_skipped: int = 0
    files_unchanged: int = 0
    files_failed: int = 0
    messages_extracted: int = 0
    messages_submitted: int = 0
    batches_sent: int = 0
    batches_failed: int = 0
    retries: int = 0
    rate_limit_hits: int = 0
    unrecognized_lines: int = 0
    started_at: str = field(default_factory=now_iso)
    finished_at: str | None = None
    started_monotonic: float = field(default_factory=time.monotonic, repr=False)

    @property
    def elapsed_s(self) -> float:
        return round(time.monotonic() - self.started_monotonic, 1)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop('started_monotonic', None)
        return data


class StatsReporter:
    """Progress lines during the run and the persisted JSON summary after it.

    Observational only: nothing here feeds back into pipeline decisions.
    """

    def __init__(self, stats: RunStats, *, progress_every: int = 100) -> None:
        self.stats = stats
        self.progress_every = max(1, progress_every)

    def file_seen(self, delay_ms: int) -> None:
        self.stats.files_seen += 1
        if self.stats.files_seen % self.progress_every == 0:
            self.report_progress(delay_ms)

    def report_progress(self, delay_ms: int) -> None:
        s = self.stats
        pct = (s.files_seen / s.files_total * 100.0) if s.files_total else 100.0
        logger.info(
            '--- Progress: %d/%d files seen (%.1f%%), processed %d, skipped %d, already %d, '
            'failed %d, %d submitted, delay %dms, %.0fs ---',
            s.files_seen,
            s.files_total,
            pct,
            s.files_processed,
            s.files_skipped + s.files_skipped_since,
            s.files_already_processed + s.files_already_skipped,
            s.files_failed,
            s.messages_submitted,
            delay_ms,
            s.elapsed_s,
        )

    def build_summary(
        self,
        *,
        mode: str,
        dry_run: bool,
        final_delay_ms: int,
        state_path: Path,
        state_counts: dict[str, int],
        cancelled: bool = False,
        fatal_error: str | None = None,
    ) -> dict[str, Any]:
        if self.stats.finished_at is None:
            self.stats.finished_at = now_iso()
        return {
            **self.stats.to_dict(),
            'mode': mode,
            'dry_run': dry_run,
            'cancelled': cancelled,
            'elapsed_s': self.stats.elapsed_s,
            'state_path': str(state_path),
            'final_delay_ms': final_delay_ms,
            'state_counts': dict(state_counts),
            'fatal_error': fatal_error,
        }

    @staticmethod
    def write_summary(summary: dict[str, Any], path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_json_atomic(path, summary)
        return path

    @staticmethod
    def render(summary: dict[str, Any]) -> str:
        return json.dumps(summary, indent=2, ensure_ascii=True)
