"""
Batch subtitle coordinator.
Persistent queue of subtitle tasks (whole files or clip ranges), processed
one at a time through the transcription pipeline on a worker thread.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from clipscribe.core.asr_provider import AsrProvider, create_provider
from clipscribe.core.cancellation import CancellationToken
from clipscribe.core.constants import (
    ErrorCode, TaskStatus, TERMINAL_STATUSES, ALL_PROVIDER_KINDS, TASK_PROGRESS_PIPELINE_END,
)
from clipscribe.core.db_sqlite import Database
from clipscribe.core.error_codes import JobError, OperationCancelled, describe_error
from clipscribe.core.models import BatchCompletion, ClipSelection, TranscriptionOptions
from clipscribe.core.models_sqlite import BatchSubtitleTask
from clipscribe.core.output_writer import write_subtitles
from clipscribe.core.transcription_pipeline import TranscriptionPipeline

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted: the application stopped while this task was processing"


@dataclass
class ActiveRun:
    """The single in-flight batch: its own token and worker thread."""
    token: CancellationToken
    thread: threading.Thread
    task_ids: list[str]


class BatchSubtitleCoordinator:
    """
    Manages the subtitle task queue and processes tasks one at a time.
    Emits progress callbacks for UI updates.
    """

    def __init__(self, db: Database, pipeline: TranscriptionPipeline, ffmpeg_path: str,
                 provider_settings: Callable[[str], dict] | None = None,
                 options: TranscriptionOptions | None = None,
                 provider_factory: Callable[[str, dict], AsrProvider] = create_provider):
        self.db = db
        self.pipeline = pipeline
        self.ffmpeg_path = ffmpeg_path
        self.provider_settings = provider_settings or (lambda kind: {})
        self.options = options or TranscriptionOptions()
        self.provider_factory = provider_factory

        self._run: Optional[ActiveRun] = None
        self._run_lock = threading.Lock()

        # Callbacks
        self.on_progress_updated: Optional[Callable[[BatchSubtitleTask, int, int], None]] = None
        self.on_batch_completed: Optional[Callable[[BatchCompletion], None]] = None

        interrupted = self.db.mark_interrupted(INTERRUPTED_MESSAGE)
        if interrupted:
            logger.warning("Marked %d interrupted task(s) as cancelled", interrupted)

    # ── Queue management ──────────────────────────────────────────────

    def _check_provider(self, provider: str):
        if provider not in ALL_PROVIDER_KINDS:
            raise JobError(ErrorCode.INVALID_CONFIGURATION, f"Unknown ASR provider: {provider!r}")

    def _active_keys(self) -> set:
        return {t.dedup_key() for t in self.db.get_all_tasks() if t.status not in TERMINAL_STATUSES}

    def add_tasks(self, items: list, provider: str) -> list[BatchSubtitleTask]:
        """
        Queue whole files (path strings) and clips (ClipSelection).
        Missing files, empty clip ranges and duplicates of a queued or
        running task are skipped.  Returns the created tasks.
        """
        self._check_provider(provider)
        active = self._active_keys()
        created = []

        for item in items:
            if isinstance(item, ClipSelection):
                path, clip = item.source_path, item
            else:
                path, clip = str(item), None

            if not path or not Path(path).is_file():
                logger.warning("Skipping missing file: %s", path)
                continue
            if clip is not None and clip.end_ms <= clip.start_ms:
                logger.warning("Skipping empty clip %r of %s", clip.name, path)
                continue

            path = str(Path(path).resolve())
            if clip is None:
                key = (path, provider)
            else:
                key = (path, provider, clip.start_ms, clip.end_ms)
            if key in active:
                logger.info("Skipping duplicate task: %s", path)
                continue

            if clip is None:
                task = self.db.create_task(path, provider)
            else:
                task = self.db.create_task(path, provider, clip_name=clip.name,
                                           clip_start_ms=clip.start_ms, clip_end_ms=clip.end_ms)
            active.add(key)
            created.append(task)

        logger.info("Queued %d subtitle task(s) for %s", len(created), provider)
        return created

    def add_files(self, paths: list[str], provider: str) -> list[BatchSubtitleTask]:
        return self.add_tasks(list(paths), provider)

    def add_clips(self, clips: list[ClipSelection], provider: str) -> list[BatchSubtitleTask]:
        return self.add_tasks(list(clips), provider)

    def tasks(self) -> list[BatchSubtitleTask]:
        return self.db.get_all_tasks()

    def remove(self, task_id: str) -> bool:
        """Remove one task.  A task that is processing cannot be removed."""
        task = self.db.get_task(task_id)
        if task is None:
            return False
        if task.status == TaskStatus.PROCESSING:
            raise JobError(ErrorCode.INVALID_STATE, "Cannot remove a task that is processing")
        self.db.delete_task(task_id)
        return True

    def clear_all(self) -> int:
        if self.is_running:
            raise JobError(ErrorCode.INVALID_STATE, "Cannot clear tasks while a batch is running")
        return self.db.delete_all_tasks()

    def clear_completed(self) -> int:
        return self.db.delete_tasks_by_status(TaskStatus.COMPLETED)

    def clear_failed(self) -> int:
        return self.db.delete_tasks_by_status(TaskStatus.FAILED)

    # ── Queries ───────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        run = self._run
        return run is not None and run.thread.is_alive()

    @property
    def total_count(self) -> int:
        return len(self.db.get_all_tasks())

    @property
    def completed_count(self) -> int:
        return len(self.db.get_tasks_by_status(TaskStatus.COMPLETED))

    @property
    def failed_count(self) -> int:
        return len(self.db.get_tasks_by_status(TaskStatus.FAILED))

    @property
    def overall_progress(self) -> float:
        tasks = self.db.get_all_tasks()
        if not tasks:
            return 0.0
        completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
        return completed * 100.0 / len(tasks)

    # ── Processing ────────────────────────────────────────────────────

    def start(self, cancel_token: CancellationToken | None = None) -> bool:
        """
        Start processing pending tasks on a worker thread.
        Returns False (and does nothing) if a batch is already running or
        nothing is pending.
        """
        with self._run_lock:
            if self.is_running:
                logger.warning("Batch already running; start() ignored")
                return False

            pending = self.db.get_pending_tasks()
            if not pending:
                logger.info("No pending subtitle tasks")
                return False

            token = cancel_token.child() if cancel_token is not None else CancellationToken()
            thread = threading.Thread(target=self._worker_loop, name="subtitle-batch", daemon=True)
            self._run = ActiveRun(token=token, thread=thread, task_ids=[t.id for t in pending])
            thread.start()
            return True

    def cancel(self):
        """Cancel the running batch; the processing task ends as CANCELLED."""
        run = self._run
        if run is not None:
            logger.info("Cancelling subtitle batch")
            run.token.cancel()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the running batch finishes.  True if none is running."""
        run = self._run
        if run is None:
            return True
        run.thread.join(timeout)
        return not run.thread.is_alive()

    def _worker_loop(self):
        run = self._run
        total = len(run.task_ids)
        completed = failed = cancelled = 0

        try:
            for task_id in run.task_ids:
                if run.token.cancelled:
                    break

                task = self.db.get_task(task_id)
                if task is None or task.status != TaskStatus.PENDING:
                    # Removed or changed since the batch was started
                    continue

                status = self._process_task(task, run.token, completed, total)
                if status == TaskStatus.COMPLETED:
                    completed += 1
                elif status == TaskStatus.FAILED:
                    failed += 1
                else:
                    cancelled += 1
                    break
        finally:
            run.token.detach()
            logger.info("Subtitle batch finished: %d completed, %d failed, %d cancelled of %d",
                        completed, failed, cancelled, total)
            self._emit_completed(BatchCompletion(completed, failed, total, cancelled))

    def _process_task(self, task: BatchSubtitleTask, token: CancellationToken,
                      completed: int, total: int) -> str:
        self.db.update_task_status(task.id, TaskStatus.PROCESSING, progress=0.0,
                                   error_code=None, error_message=None)
        self._emit_progress(task.id, completed, total)
        logger.info("Processing subtitle task: %s", task.display_name)

        def on_progress(pct, message):
            mapped = pct * TASK_PROGRESS_PIPELINE_END / 100.0
            if self.db.update_progress(task.id, mapped):
                self._emit_progress(task.id, completed, total)

        try:
            provider = self.provider_factory(task.provider, self.provider_settings(task.provider))
            clip_start = task.clip_start_ms / 1000.0 if task.is_clip else None
            clip_end = task.clip_end_ms / 1000.0 if task.is_clip else None

            srt_text = self.pipeline.generate(
                Path(task.source_file_path), self.ffmpeg_path, provider, self.options,
                progress=on_progress, cancel_token=token,
                clip_start=clip_start, clip_end=clip_end,
            )
            token.raise_if_cancelled()

            output = write_subtitles(srt_text, Path(task.source_file_path),
                                     task.clip_name if task.is_clip else None)
            self.db.update_task_status(task.id, TaskStatus.COMPLETED, progress=100.0,
                                       output_path=str(output))
            status = TaskStatus.COMPLETED
        except OperationCancelled as e:
            self.db.update_task_status(task.id, TaskStatus.CANCELLED,
                                       error_code=e.code, error_message=e.message)
            logger.info("Subtitle task cancelled: %s", task.display_name)
            status = TaskStatus.CANCELLED
        except JobError as e:
            self.db.update_task_status(task.id, TaskStatus.FAILED,
                                       error_code=e.code, error_message=e.message)
            logger.warning("Subtitle task failed: %s - %s", task.display_name, e.message)
            status = TaskStatus.FAILED
        except Exception as e:
            logger.error("Subtitle task crashed: %s", task.display_name, exc_info=True)
            self.db.update_task_status(task.id, TaskStatus.FAILED,
                                       error_code=ErrorCode.UNEXPECTED, error_message=describe_error(e))
            status = TaskStatus.FAILED

        self._emit_progress(task.id, completed + (1 if status == TaskStatus.COMPLETED else 0), total)
        return status

    # ── Events ────────────────────────────────────────────────────────

    def _emit_progress(self, task_id: str, completed: int, total: int):
        if self.on_progress_updated is None:
            return
        task = self.db.get_task(task_id)
        if task is None:
            return
        try:
            self.on_progress_updated(task, completed, total)
        except Exception as e:
            logger.warning("Progress callback failed: %s", e)

    def _emit_completed(self, completion: BatchCompletion):
        if self.on_batch_completed is None:
            return
        try:
            self.on_batch_completed(completion)
        except Exception as e:
            logger.warning("Batch completed callback failed: %s", e)
