"""
Batch job runner.

Runs independent file-level jobs (transcode, crop, watermark, audio
extraction...) with bounded concurrency, aggregated progress, streamed log
lines and a success/fail summary.  A job's failure never affects its
siblings; nothing raised by a job escapes run_batch().
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from clipscribe.core.cancellation import CancellationToken, ensure_token
from clipscribe.core.constants import ErrorCode
from clipscribe.core.error_codes import JobError, OperationCancelled, describe_error
from clipscribe.core.models import BatchConfig, BatchSummary, Job, JobResult
from clipscribe.core.process_job import ExternalProcessJob

logger = logging.getLogger(__name__)

_RULE = "-" * 48


@dataclass
class JobContext:
    """What a running job gets: its token and the two display channels."""
    job: Job
    cancel_token: CancellationToken
    report_progress: Callable[[int, str], None]
    log: Callable[[str], None]


def format_file_size(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    order = 0
    while value >= 1024 and order < len(units) - 1:
        value /= 1024
        order += 1
    return f"{value:.2f}".rstrip('0').rstrip('.') + f" {units[order]}"


def process_job(job_id: str, exe: str, args: list[str], input_path: str = "",
                output_path: str = "", description: str = "",
                cwd: str | None = None, estimated_duration: float | None = None,
                estimated_weight: float | None = None) -> Job:
    """A Job that runs one external transcoder invocation."""

    def execute(ctx: JobContext) -> JobResult:
        proc = ExternalProcessJob(exe, args, cwd=cwd, estimated_duration=estimated_duration,
                                  output_path=output_path or None, name=os.path.basename(str(exe)))
        return proc.run(ctx.cancel_token, on_line=ctx.log, on_progress=ctx.report_progress)

    return Job(
        id=job_id,
        input_path=input_path,
        output_path=output_path,
        description=description or job_id,
        execute=execute,
        estimated_weight=estimated_weight if estimated_weight is not None else estimated_duration,
    )


class BatchJobRunner:

    def run_batch(self, jobs: list[Job], config: BatchConfig | None = None,
                  cancel_token: CancellationToken | None = None) -> BatchSummary:
        """
        Run every job; returns once each one has resolved to success,
        failure or cancellation.
        """
        config = config or BatchConfig()
        token = ensure_token(cancel_token)
        run = _BatchRun(jobs, config, token)
        return run.execute()


class _BatchRun:
    """State of one run_batch() call."""

    def __init__(self, jobs: list[Job], config: BatchConfig, token: CancellationToken):
        self.jobs = list(jobs)
        self.config = config
        self.token = token
        self.total = len(self.jobs)
        self._lock = threading.Lock()
        self._started = 0
        self._percents = [0] * self.total
        self._weights = [
            j.estimated_weight if j.estimated_weight and j.estimated_weight > 0 else 1.0
            for j in self.jobs
        ]
        self._t0 = time.monotonic()

    # ── Display hooks (never allowed to break the batch) ──

    def _call(self, hook, *args):
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as e:
            logger.warning("Batch display callback failed: %s", e)

    def _log(self, line: str):
        self._call(self.config.on_log, line)

    def _status(self, text: str):
        self._call(self.config.on_status, text)

    def _aggregate(self) -> float:
        total_weight = sum(self._weights)
        return sum(w * p for w, p in zip(self._weights, self._percents)) / total_weight

    def _report(self, pos: int, percent: int, message: str = ""):
        with self._lock:
            # Per-job progress never goes backwards
            self._percents[pos] = max(self._percents[pos], max(0, min(100, int(percent))))
            overall = self._aggregate()
            elapsed = time.monotonic() - self._t0
            # Emitted under the lock so listeners see aggregate values in order
            self._call(self.config.on_progress, overall,
                       f"{overall:.1f}% | {elapsed:.1f}s | {self.jobs[pos].id}")

    # ── Run ──

    def execute(self) -> BatchSummary:
        summary = BatchSummary(total_tasks=self.total)
        if not self.jobs:
            return summary

        name = self.config.operation_name
        self._call(self.config.on_switch_to_log)
        self._call(self.config.on_progress, 0.0, "Preparing...")
        header = [f"Starting {name}", f"Tasks: {self.total}"]
        header += list(self.config.log_header_lines)
        header += [f"Started: {datetime.now():%Y-%m-%d %H:%M:%S}", _RULE]
        for line in header:
            self._log(line)
        self._status(f"{name}: 0/{self.total}")
        logger.info("%s: %d jobs, concurrency %d", name, self.total, self.config.max_concurrency)

        outcomes: list[JobResult | None] = [None] * self.total
        workers = max(1, int(self.config.max_concurrency or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch") as pool:
            futures = {pool.submit(self._run_one, pos, job): pos for pos, job in enumerate(self.jobs)}
            for future in as_completed(futures):
                outcomes[futures[future]] = future.result()

        for job, result in zip(self.jobs, outcomes):
            if result.success:
                summary.success_count += 1
            elif result.cancelled:
                summary.cancelled_count += 1
                if self.config.count_cancelled_as_failed:
                    summary.fail_count += 1
                    summary.failures.append((job.id, result.error_message))
            else:
                summary.fail_count += 1
                summary.failures.append((job.id, result.error_message))

        if not self.config.count_cancelled_as_failed:
            # Cancelled jobs are reported apart from the success/fail totals
            summary.total_tasks = summary.success_count + summary.fail_count

        summary.was_cancelled = self.token.cancelled
        summary.total_time_sec = time.monotonic() - self._t0
        self._footer(summary)
        return summary

    def _run_one(self, pos: int, job: Job) -> JobResult:
        if self.token.cancelled:
            return JobResult.was_cancelled("Not started: batch cancelled")

        with self._lock:
            self._started += 1
            n = self._started

        self._status(f"{self.config.operation_name}: {n}/{self.total} - {job.id}")
        self._log("")
        self._log(f"[{n}/{self.total}] {job.description}")
        if job.output_path:
            self._log(f"Output: {os.path.basename(job.output_path)}")

        ctx = JobContext(
            job=job,
            cancel_token=self.token,
            report_progress=lambda pct, msg="": self._report(pos, pct, msg),
            log=self._log,
        )

        started = time.monotonic()
        try:
            result = job.execute(ctx)
            if result is None:
                result = JobResult.failed("Job returned no result", ErrorCode.UNEXPECTED)
        except OperationCancelled as e:
            result = JobResult.was_cancelled(e.message)
        except JobError as e:
            result = JobResult.failed(e.message, e.code)
        except Exception as e:
            logger.error("Job %s raised unexpectedly", job.id, exc_info=True)
            result = JobResult.failed(describe_error(e), ErrorCode.UNEXPECTED)
        elapsed = time.monotonic() - started

        if result.success:
            line = f"OK | time: {elapsed:.1f}s"
            output = result.output_path or job.output_path
            if output and os.path.isfile(output):
                try:
                    line += f" | size: {format_file_size(os.path.getsize(output))}"
                except OSError:
                    pass
            self._log(line)
            logger.info("Job %s succeeded in %.1fs", job.id, elapsed)
        elif result.cancelled:
            self._log(f"CANCELLED | {result.error_message}")
            logger.info("Job %s cancelled", job.id)
        else:
            self._log(f"FAILED | error: {result.error_message}")
            logger.warning("Job %s failed: %s", job.id, result.error_message)

        self._report(pos, 100)
        return result

    def _footer(self, summary: BatchSummary):
        name = self.config.operation_name
        lines = [
            "",
            f"{name} finished",
            f"Total tasks: {self.total}",
            f"Succeeded: {summary.success_count}",
            f"Failed: {summary.fail_count}",
        ]
        if summary.cancelled_count:
            lines.append(f"Cancelled: {summary.cancelled_count}")
        lines.append(f"Total time: {summary.total_time_sec:.1f}s")
        lines.append(f"Average: {summary.total_time_sec / self.total:.1f}s per task")
        for job_id, message in summary.failures:
            lines.append(f"  x {job_id}: {message}")
        lines += [f"Finished: {datetime.now():%Y-%m-%d %H:%M:%S}", _RULE]
        for line in lines:
            self._log(line)

        if summary.was_cancelled:
            self._status(f"{name} cancelled")
        else:
            self._status(f"Done: {summary.success_count} succeeded / {summary.fail_count} failed")
        self._call(self.config.on_progress, 100.0, "Done")
        logger.info("%s finished: %d ok, %d failed, %d cancelled in %.1fs", name,
                    summary.success_count, summary.fail_count, summary.cancelled_count,
                    summary.total_time_sec)
