#!/usr/bin/env python3
"""
ClipScribe — command-line entry point.

    main.py subtitles FILE [FILE ...] [--provider KIND] [--clip NAME START END]
    main.py batch JOBS.json
    main.py cache-sweep
    main.py diagnostics
"""

import sys
import os
import json
import signal
import logging
import argparse
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from clipscribe.core.constants import (
    APP_NAME, APP_VERSION, LOG_DIR, WORK_CACHE_DIR, ALL_PROVIDER_KINDS, TaskStatus,
)
from clipscribe.core.cancellation import CancellationToken

LOG_FILE = LOG_DIR / "clipscribe.log"

logger = logging.getLogger("clipscribe")


def setup_logging(verbose: bool = False):
    """Log file under ~/.clipscribe/logs plus stderr for the CLI."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )


def install_interrupt_handler(token: CancellationToken):
    """First Ctrl+C cancels the token; a second one exits immediately."""

    def _handler(signum, frame):
        if token.cancelled:
            logger.warning("Second interrupt — exiting")
            os._exit(130)
        logger.warning("Interrupt received — cancelling (press Ctrl+C again to force quit)")
        token.cancel()

    signal.signal(signal.SIGINT, _handler)


def _parse_time(value: str) -> int:
    """'90', '90.5', '01:30' or '00:01:30.250' -> milliseconds."""
    parts = value.split(':')
    if len(parts) > 3:
        raise argparse.ArgumentTypeError(f"Invalid time: {value}")
    try:
        seconds = 0.0
        for part in parts:
            seconds = seconds * 60 + float(part)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid time: {value}")
    if seconds < 0:
        raise argparse.ArgumentTypeError(f"Negative time: {value}")
    return int(round(seconds * 1000))


# ── Commands ──────────────────────────────────────────────────────────

def cmd_subtitles(args, config, token: CancellationToken) -> int:
    from clipscribe.core.cache_manager import CacheManager
    from clipscribe.core.db_sqlite import Database
    from clipscribe.core.models import ClipSelection
    from clipscribe.core.retry_policy import RetryPolicy
    from clipscribe.core.subtitle_optimizer import SubtitleOptimizer
    from clipscribe.core.subtitle_queue import BatchSubtitleCoordinator
    from clipscribe.core.transcription_pipeline import TranscriptionPipeline

    options = config.transcription_options()
    retry_policy = RetryPolicy(max_attempts=options.max_attempts)
    optimizer = SubtitleOptimizer(config.optimizer_settings(), retry_policy) if options.enable_optimization else None
    pipeline = TranscriptionPipeline(
        cache_manager=CacheManager(config.cache_dir, options.cache_ttl),
        retry_policy=retry_policy,
        optimizer=optimizer,
        work_root=WORK_CACHE_DIR,
        ffprobe_path=config.ffprobe_path,
        keep_debug=config.keep_debug_artifacts,
    )

    db = Database(Path(args.db) if args.db else None)
    coordinator = BatchSubtitleCoordinator(
        db, pipeline, config.ffmpeg_path,
        provider_settings=config.provider_settings,
        options=options,
    )

    def on_progress(task, completed, total):
        print(f"  [{completed}/{total}] {task.display_name}: {task.status} {task.progress:.0f}%",
              file=sys.stderr)

    coordinator.on_progress_updated = on_progress

    provider = args.provider or config.default_provider
    if args.clip:
        clips = []
        for name, start, end in args.clip:
            for path in args.files:
                clips.append(ClipSelection(path, name, _parse_time(start), _parse_time(end)))
        coordinator.add_clips(clips, provider)
    else:
        coordinator.add_files(args.files, provider)

    if not coordinator.start(token):
        print("Nothing to do: no pending subtitle tasks.")
        return 0

    # Poll so the main thread keeps receiving SIGINT
    while not coordinator.wait(0.5):
        pass

    failed = 0
    for task in coordinator.tasks():
        if task.status == TaskStatus.COMPLETED:
            print(f"OK      {task.display_name} -> {task.output_path}")
        elif task.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            failed += 1
            print(f"{task.status:<7} {task.display_name}: {task.error_message or ''}")
    if args.clear_finished:
        coordinator.clear_completed()
    return 1 if failed else 0


def cmd_batch(args, config, token: CancellationToken) -> int:
    """
    JOBS.json is a list of objects:
        {"id": "...", "exe": "ffmpeg", "args": [...], "input": "...", "output": "...",
         "description": "...", "estimated_duration": 120.0}
    """
    from clipscribe.core.batch_runner import BatchJobRunner, process_job
    from clipscribe.core.models import BatchConfig

    with open(args.jobs_file, 'r', encoding='utf-8') as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        print("Jobs file must contain a JSON list", file=sys.stderr)
        return 2

    jobs = []
    for i, item in enumerate(entries):
        jobs.append(process_job(
            job_id=str(item.get('id') or f"job-{i + 1}"),
            exe=item.get('exe') or config.ffmpeg_path,
            args=list(item.get('args') or []),
            input_path=item.get('input', ""),
            output_path=item.get('output', ""),
            description=item.get('description', ""),
            cwd=item.get('cwd'),
            estimated_duration=item.get('estimated_duration'),
        ))

    batch_config = BatchConfig(
        operation_name=args.name,
        max_concurrency=args.concurrency or config.get('max_parallel_jobs'),
        count_cancelled_as_failed=not args.separate_cancelled,
        on_log=print,
        on_status=lambda text: print(f"  {text}", file=sys.stderr),
    )
    summary = BatchJobRunner().run_batch(jobs, batch_config, token)
    return 0 if summary.fail_count == 0 and not summary.was_cancelled else 1


def cmd_cache_sweep(args, config, token: CancellationToken) -> int:
    from clipscribe.core.cache_manager import CacheManager
    from clipscribe.core.cleanup import purge_stale_workspaces

    cache = CacheManager(config.cache_dir, config.transcription_options().cache_ttl)
    removed = cache.sweep()
    print(f"Removed {removed} expired cache entries from {config.cache_dir}")
    if args.workspaces:
        purged = purge_stale_workspaces(WORK_CACHE_DIR)
        print(f"Removed {purged} stale work folders from {WORK_CACHE_DIR}")
    return 0


def cmd_diagnostics(args, config, token: CancellationToken) -> int:
    from clipscribe.core.constants import AsrProviderKind
    from clipscribe.core.diagnostics import get_diagnostics

    whisper = (config.provider_settings(AsrProviderKind.LOCAL_WHISPER_CPU).get('program_path')
               or config.provider_settings(AsrProviderKind.LOCAL_WHISPER_GPU).get('program_path'))
    info = get_diagnostics(config.ffmpeg_path, config.ffprobe_path, whisper, config.cache_dir)
    print(json.dumps(info, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clipscribe", description=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--config", help="Path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("subtitles", help="Generate subtitles for media files or clips")
    p.add_argument("files", nargs="+", help="Media files")
    p.add_argument("--provider", choices=ALL_PROVIDER_KINDS, help="ASR provider")
    p.add_argument("--clip", nargs=3, action="append", metavar=("NAME", "START", "END"),
                   help="Clip range (seconds or HH:MM:SS); repeatable")
    p.add_argument("--db", help="Task database path")
    p.add_argument("--clear-finished", action="store_true", help="Drop completed tasks afterwards")
    p.set_defaults(func=cmd_subtitles)

    p = sub.add_parser("batch", help="Run a JSON list of transcoder jobs")
    p.add_argument("jobs_file")
    p.add_argument("--name", default="Batch", help="Operation name for the log header")
    p.add_argument("--concurrency", type=int, help="Jobs to run in parallel")
    p.add_argument("--separate-cancelled", action="store_true",
                   help="Do not count cancelled jobs as failures")
    p.set_defaults(func=cmd_batch)

    p = sub.add_parser("cache-sweep", help="Delete expired transcript cache entries")
    p.add_argument("--workspaces", action="store_true", help="Also purge leftover work folders")
    p.set_defaults(func=cmd_cache_sweep)

    p = sub.add_parser("diagnostics", help="Show tool versions and cache size")
    p.set_defaults(func=cmd_diagnostics)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Command: %s", args.command)
    logger.info("=" * 60)

    from clipscribe.core.config import AppConfig
    from clipscribe.core.error_codes import JobError

    config = AppConfig(Path(args.config) if args.config else None)
    token = CancellationToken()
    install_interrupt_handler(token)

    try:
        return args.func(args, config, token)
    except JobError as e:
        logger.error("[%s] %s", e.code, e.message)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        print(f"Fatal error: {error_msg}\nCheck logs at: {LOG_FILE}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
