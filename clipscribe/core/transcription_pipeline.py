"""
Subtitle generation for one media file (or one clip of it).

ExtractAudio -> cache lookup -> (Chunk) -> transcribe chunks in parallel
through the retry policy -> merge -> (optimize) -> render SRT.

Any failure before the merge is fatal for the whole call: either every
chunk is transcribed or no subtitles are produced.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from clipscribe.core import audio_extract
from clipscribe.core import chunking_timebased
from clipscribe.core.asr_provider import AsrProvider
from clipscribe.core.cache_manager import CacheManager, make_fingerprint
from clipscribe.core.cancellation import CancellationToken, ensure_token
from clipscribe.core.cleanup import cleanup_workspace
from clipscribe.core.constants import (
    ErrorCode, PipelineStage, WORK_CACHE_DIR,
    PROGRESS_EXTRACT, PROGRESS_CACHE, PROGRESS_CHUNK, PROGRESS_TRANSCRIBE_START,
    PROGRESS_TRANSCRIBE_END, PROGRESS_MERGE, PROGRESS_OPTIMIZE_START, PROGRESS_OPTIMIZE_END,
    PROGRESS_RENDER, PROGRESS_DONE,
)
from clipscribe.core.error_codes import JobError, OperationCancelled
from clipscribe.core.merge import merge_transcripts
from clipscribe.core.models import (
    AudioChunk, ChunkTranscript, ProgressCallback, Segment, TranscriptionOptions,
)
from clipscribe.core.retry_policy import RetryPolicy
from clipscribe.core.srt_format import render_srt
from clipscribe.core.subtitle_optimizer import SubtitleOptimizer

logger = logging.getLogger(__name__)


class _Progress:
    """Monotonic progress reporter shared by concurrent chunk workers."""

    def __init__(self, callback: ProgressCallback | None):
        self._callback = callback
        self._lock = threading.Lock()
        self.percent = 0

    def __call__(self, percent: float, message: str):
        # Callback runs under the lock so listeners see values in order
        with self._lock:
            self.percent = max(self.percent, min(100, int(percent)))
            if self._callback:
                self._callback(self.percent, message)


def segments_to_payload(segments: list[Segment]) -> dict:
    return {'segments': [[s.start_time, s.end_time, s.text] for s in segments]}


def payload_to_segments(payload) -> list[Segment] | None:
    """None if the cached payload does not have the expected shape."""
    try:
        return [Segment(float(a), float(b), str(t)) for a, b, t in payload['segments']]
    except (KeyError, TypeError, ValueError):
        return None


class TranscriptionPipeline:

    def __init__(self, cache_manager: CacheManager | None = None,
                 retry_policy: RetryPolicy | None = None,
                 optimizer: SubtitleOptimizer | None = None,
                 work_root: Path = WORK_CACHE_DIR,
                 ffprobe_path: str | None = "ffprobe",
                 keep_debug: bool = False):
        self.cache_manager = cache_manager
        self.retry_policy = retry_policy or RetryPolicy()
        self.optimizer = optimizer
        self.work_root = Path(work_root)
        self.ffprobe_path = ffprobe_path
        self.keep_debug = keep_debug

    def generate(self, media_path: Path, ffmpeg_path: str, provider: AsrProvider,
                 options: TranscriptionOptions | None = None,
                 progress: ProgressCallback | None = None,
                 cancel_token: CancellationToken | None = None,
                 clip_start: float | None = None,
                 clip_end: float | None = None) -> str:
        """
        Produce SRT text for `media_path` (or its [clip_start, clip_end) range).
        Raises JobError on failure, OperationCancelled if cancelled.
        """
        options = options or TranscriptionOptions()
        token = ensure_token(cancel_token)
        report = _Progress(progress)
        media_path = Path(media_path)

        workspace = self.work_root / uuid.uuid4().hex
        try:
            # 1. Extract audio
            report(PROGRESS_EXTRACT, "Extracting audio track")
            logger.info("[%s] %s", PipelineStage.EXTRACTING_AUDIO, media_path.name)
            audio_path = audio_extract.extract_audio(
                ffmpeg_path, media_path, workspace / "audio" / "audio.wav",
                start_sec=clip_start, end_sec=clip_end, cancel_token=token,
                on_progress=lambda pct, msg: report(PROGRESS_EXTRACT * pct / 100.0, "Extracting audio track"),
            )

            def compute():
                segments = self._transcribe(audio_path, ffmpeg_path, provider, options,
                                            report, token, workspace)
                return segments_to_payload(segments)

            # 2. Cache
            if options.enable_cache and self.cache_manager is not None:
                report(PROGRESS_CACHE, "Checking cache")
                key = make_fingerprint(audio_path, provider.cache_identity(), options.fingerprint_fields())
                payload = self.cache_manager.get_or_compute(key, options.cache_ttl, compute)
                segments = payload_to_segments(payload)
                if segments is None:
                    logger.warning("[%s] Cached payload for %s has an unexpected shape; recomputing",
                                   ErrorCode.CACHE_CORRUPTION, key[:12])
                    self.cache_manager.invalidate(key)
                    payload = self.cache_manager.get_or_compute(key, options.cache_ttl, compute)
                    segments = payload_to_segments(payload)
            else:
                segments = payload_to_segments(compute())

            token.raise_if_cancelled()

            # 3. Render
            report(PROGRESS_RENDER, "Rendering subtitles")
            srt_text = render_srt(segments)
            report(PROGRESS_DONE, "Subtitles generated")
            logger.info("Generated %d subtitle cues for %s", len(segments), media_path.name)
            return srt_text
        finally:
            cleanup_workspace(workspace, self.keep_debug)

    # ── Stages ──

    def _transcribe(self, audio_path: Path, ffmpeg_path: str, provider: AsrProvider,
                    options: TranscriptionOptions, report: _Progress,
                    token: CancellationToken, workspace: Path) -> list[Segment]:
        chunks = self._plan(audio_path, ffmpeg_path, options, report, token, workspace)

        transcripts = self._transcribe_chunks(chunks, provider, options, report, token)

        report(PROGRESS_MERGE, "Merging transcripts")
        segments = merge_transcripts(transcripts)
        if not segments:
            raise JobError(ErrorCode.EMPTY_TRANSCRIPT, "Provider returned no speech")

        if options.enable_optimization:
            segments = self._optimize(segments, options, report, token)
        return segments

    def _plan(self, audio_path, ffmpeg_path, options, report, token, workspace) -> list[AudioChunk]:
        if not options.enable_chunking:
            return [AudioChunk(index=0, start_offset=0.0, end_offset=0.0, file_path=str(audio_path))]

        report(PROGRESS_CHUNK, "Analysing audio")
        duration = audio_extract.probe_duration(audio_path, self.ffprobe_path, ffmpeg_path, token)
        token.raise_if_cancelled()
        if duration <= 0:
            logger.warning("Unknown duration for %s; transcribing without chunking", audio_path.name)
            return [AudioChunk(index=0, start_offset=0.0, end_offset=0.0, file_path=str(audio_path))]

        chunks = chunking_timebased.plan_chunks(
            duration, options.chunk_length_seconds, options.chunk_overlap_seconds, str(audio_path),
        )
        if len(chunks) > 1:
            logger.info("[%s] %d windows of %ss (overlap %ss)", PipelineStage.CHUNKING_AUDIO,
                        len(chunks), options.chunk_length_seconds, options.chunk_overlap_seconds)
            chunks = chunking_timebased.split_audio_into_chunks(
                ffmpeg_path, audio_path, workspace / "chunks", chunks, token,
            )
        return chunks

    def _transcribe_chunks(self, chunks: list[AudioChunk], provider: AsrProvider,
                           options: TranscriptionOptions, report: _Progress,
                           token: CancellationToken) -> list[ChunkTranscript]:
        total = len(chunks)
        span = PROGRESS_TRANSCRIBE_END - PROGRESS_TRANSCRIBE_START
        per_chunk = [0] * total
        lock = threading.Lock()
        report(PROGRESS_TRANSCRIBE_START, f"Transcribing {total} audio chunk(s)")
        logger.info("[%s] %d chunk(s) with %s", PipelineStage.TRANSCRIBING, total, provider.provider_id)

        def chunk_progress(index):
            def _report(pct, msg):
                with lock:
                    per_chunk[index] = max(per_chunk[index], pct)
                    avg = sum(per_chunk) / total
                report(PROGRESS_TRANSCRIBE_START + span * avg / 100.0,
                       f"Chunk {index + 1}/{total}: {msg}")
            return _report

        # Child token: the first failing chunk cancels its siblings only
        child = token.child()

        def run_one(pos, chunk):
            return self.retry_policy.execute(
                lambda: provider.transcribe(chunk, chunk_progress(pos), child),
                child,
                max_attempts=options.max_attempts,
                description=f"Chunk {chunk.index + 1}/{total}",
            )

        results: list[ChunkTranscript] = []
        try:
            workers = max(1, min(options.max_parallel_chunks, total))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chunk") as pool:
                futures = [pool.submit(run_one, pos, chunk) for pos, chunk in enumerate(chunks)]
                try:
                    for future in as_completed(futures):
                        results.append(future.result())
                        logger.debug("Chunk transcripts done: %d/%d", len(results), total)
                except BaseException:
                    child.cancel()
                    for f in futures:
                        f.cancel()
                    raise
        finally:
            child.detach()

        if token.cancelled:
            raise OperationCancelled("Transcription cancelled")
        report(PROGRESS_TRANSCRIBE_END, "All chunks transcribed")
        return sorted(results, key=lambda t: t.chunk_index)

    def _optimize(self, segments, options, report, token) -> list[Segment]:
        if self.optimizer is None:
            logger.warning("Optimization requested but no optimizer is configured; skipping")
            return segments

        report(PROGRESS_OPTIMIZE_START, "Optimizing subtitle text")
        span = PROGRESS_OPTIMIZE_END - PROGRESS_OPTIMIZE_START
        try:
            optimized = self.optimizer.optimize(
                segments, options.optimization_prompt, token,
                progress=lambda pct, msg: report(PROGRESS_OPTIMIZE_START + span * pct / 100.0, msg),
            )
        except OperationCancelled:
            raise
        except Exception as e:
            # Fall back to the unoptimized transcript
            logger.warning("Subtitle optimization skipped: %s", e)
            report(PROGRESS_OPTIMIZE_END, "Optimization skipped (using original text)")
            return segments

        report(PROGRESS_OPTIMIZE_END, "Optimization complete")
        return optimized
