#!/usr/bin/env python3
"""Ingest JSONL session archives into Graphiti.

Two modes share one engine:

- ``backfill`` (default): one pass over the whole archive. Files already
  processed or skipped are left alone; failed files are resubmitted.
- ``capture``: recurring incremental pass (cron). Resumes every known file from
  its cursor and sends only the messages appended since. By default only files
  modified in the last ``--recent-minutes`` are looked at (failed files are
  always retried).

Usage:
    python3 scripts/ingest_sessions.py --dry-run
    python3 scripts/ingest_sessions.py --since 2026-01-01 --limit 50
    python3 scripts/ingest_sessions.py --mode capture \\
        --import-legacy ~/.openclaw/memory/graphiti-capture-state.json

Exit codes: 0 run completed (per-file failures are recorded, not fatal),
1 fatal startup error or checkpoint write failure, 2 usage error, 130 cancelled by signal.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from ingest.checkpoint import (  # noqa: E402
    STATUS_FAILED,
    CheckpointStore,
    checkpoint_lock,
    ensure_writable,
)
from ingest.common import parse_since  # noqa: E402
from ingest.config import IngestConfig, load_config  # noqa: E402
from ingest.errors import FatalStartupError  # noqa: E402
from ingest.graphiti_client import GraphitiClient  # noqa: E402
from ingest.pipeline import MODE_BACKFILL, MODE_CAPTURE, MODES, IngestPipeline  # noqa: E402
from ingest.rate_governor import RateGovernor  # noqa: E402
from ingest.sources import discover_source_files, filter_recent  # noqa: E402
from ingest.stats import RunStats, StatsReporter  # noqa: E402

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CANCELLED = 130


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f'expected an integer, got {value!r}') from exc
    if number < 0:
        raise argparse.ArgumentTypeError(f'expected a non-negative integer, got {number}')
    return number


def _since_date(value: str):
    try:
        return parse_since(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Ingest JSONL session transcripts into Graphiti with durable checkpoints.',
    )
    parser.add_argument(
        '--mode',
        choices=MODES,
        default=MODE_BACKFILL,
        help='backfill: one pass over the archive; capture: only newly appended messages.',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=False,
        help='Parse and count without calling Graphiti or touching the checkpoint.',
    )
    parser.add_argument(
        '--limit',
        type=_non_negative_int,
        default=None,
        help='Stop after N files were processed successfully.',
    )
    parser.add_argument(
        '--since',
        type=_since_date,
        default=None,
        help='Skip sessions that started before this date (YYYY-MM-DD or ISO-8601).',
    )
    parser.add_argument(
        '--rate-limit-ms',
        type=_non_negative_int,
        default=None,
        help='Initial delay between batches in milliseconds (default: 1500); raises the backoff ceiling if above it.',
    )
    parser.add_argument('--config', default=None, help='YAML config file.')
    parser.add_argument(
        '--source-dir',
        action='append',
        default=None,
        help='Session archive directory (repeatable, first wins on duplicate names).',
    )
    parser.add_argument('--state-path', default=None, help='Checkpoint JSON file.')
    parser.add_argument('--stats-out', default=None, help='Write the run summary JSON here.')
    parser.add_argument('--sink-url', default=None, help='Graphiti base URL.')
    parser.add_argument(
        '--import-legacy',
        action='append',
        default=None,
        help='Merge an older state file into the checkpoint once (repeatable).',
    )
    parser.add_argument(
        '--recent-minutes',
        type=_non_negative_int,
        default=None,
        help='Capture mode: only files modified in the last N minutes (0 = all).',
    )
    parser.add_argument('--verbose', '-v', action='store_true', default=False)
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments. Convenience wrapper for build_parser()."""
    return build_parser().parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )


def resolve_config(args: argparse.Namespace) -> IngestConfig:
    """Config file + environment, then CLI flags on top."""
    config = load_config(args.config)
    legacy = None
    if args.import_legacy:
        legacy = tuple(config.legacy_state_paths) + tuple(Path(p) for p in args.import_legacy)
    return config.with_overrides(
        sink_url=args.sink_url,
        source_dirs=tuple(Path(d) for d in args.source_dir) if args.source_dir else None,
        state_path=Path(args.state_path) if args.state_path else None,
        stats_path=Path(args.stats_out) if args.stats_out else None,
        legacy_state_paths=legacy,
        initial_delay_ms=args.rate_limit_ms,
        capture_recent_minutes=args.recent_minutes,
    )


def _install_signal_handlers(cancel_event: threading.Event) -> dict:
    def _handler(signum, _frame):
        if cancel_event.is_set():
            return
        logger.warning(
            'Received %s, finishing the current batch and stopping',
            signal.Signals(signum).name,
        )
        cancel_event.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handler)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def run_ingest(
    args: argparse.Namespace,
    config: IngestConfig,
    cancel_event: threading.Event,
) -> dict:
    """Execute one run and return its summary. Raises FatalStartupError.

    A checkpoint write failure mid-run stops the pass; the summary still comes
    back, carrying the error in ``fatal_error``.
    """
    files = discover_source_files(config.source_dirs, config.file_pattern)

    store = CheckpointStore(config.state_path, read_only=args.dry_run).load()
    for legacy_path in config.legacy_state_paths:
        store.import_legacy(legacy_path)

    if args.mode == MODE_CAPTURE:

        def _failed(source) -> bool:
            entry = store.lookup(source.name)
            return entry is not None and entry.status == STATUS_FAILED

        files = filter_recent(files, config.capture_recent_minutes, keep=_failed)

    client = None
    if not args.dry_run:
        client = GraphitiClient(config.sink_url, timeout=config.request_timeout_s)
        health = client.healthcheck()
        if health.get('status') != 'healthy':
            logger.warning('Graphiti healthcheck failed at %s: %s', config.sink_url, health)

    governor = RateGovernor(
        initial_delay_ms=config.initial_delay_ms,
        max_delay_ms=config.max_delay_ms,
        backoff_factor=config.backoff_factor,
    )
    reporter = StatsReporter(RunStats(), progress_every=config.progress_every)
    pipeline = IngestPipeline(
        config,
        store,
        client,
        governor,
        reporter,
        mode=args.mode,
        since=args.since,
        limit=args.limit,
        dry_run=args.dry_run,
        cancel_event=cancel_event,
    )
    fatal_error = None
    try:
        pipeline.run(files)
    except OSError as exc:
        fatal_error = f'checkpoint write failed: {exc}'
        logger.error('Aborting run, %s', fatal_error)

    return reporter.build_summary(
        mode=args.mode,
        dry_run=args.dry_run,
        final_delay_ms=governor.delay_ms,
        state_path=config.state_path,
        state_counts=store.counts(),
        cancelled=cancel_event.is_set(),
        fatal_error=fatal_error,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    cancel_event = threading.Event()
    try:
        config = resolve_config(args)
    except FatalStartupError as exc:
        print(f'ERROR: {exc}', file=sys.stderr)
        return EXIT_FATAL

    previous_handlers = _install_signal_handlers(cancel_event)
    try:
        if args.dry_run:
            summary = run_ingest(args, config, cancel_event)
        else:
            ensure_writable(config.state_path)
            with checkpoint_lock(config.state_path):
                summary = run_ingest(args, config, cancel_event)
    except FatalStartupError as exc:
        print(f'ERROR: {exc}', file=sys.stderr)
        return EXIT_FATAL
    finally:
        _restore_signal_handlers(previous_handlers)

    print(StatsReporter.render(summary))
    try:
        out_path = StatsReporter.write_summary(summary, config.stats_path)
        logger.info('Stats written to: %s', out_path)
    except OSError as exc:
        logger.error('Could not write stats to %s: %s', config.stats_path, exc)

    if summary.get('fatal_error'):
        return EXIT_FATAL
    if summary.get('cancelled'):
        return EXIT_CANCELLED
    return EXIT_OK


if __name__ == '__main__':
    raise SystemExit(main())
