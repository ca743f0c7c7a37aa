"""
Engine data model (plain dataclasses) for ClipScribe.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from clipscribe.core.constants import (
    DEFAULT_CHUNK_LENGTH_SEC, DEFAULT_CHUNK_OVERLAP_SEC,
    DEFAULT_MAX_PARALLEL_CHUNKS, DEFAULT_MAX_PARALLEL_JOBS,
    DEFAULT_MAX_ATTEMPTS, DEFAULT_CACHE_TTL_DAYS,
)

# (percent, message) -> None
ProgressCallback = Callable[[int, str], None]


# ── Batch jobs ────────────────────────────────────────────────────────

@dataclass
class JobResult:
    success: bool
    error_message: str = ""
    output_path: Optional[str] = None
    cancelled: bool = False
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, output_path: str | None = None) -> "JobResult":
        return cls(success=True, output_path=output_path)

    @classmethod
    def failed(cls, message: str, code: str | None = None) -> "JobResult":
        return cls(success=False, error_message=message, error_code=code)

    @classmethod
    def was_cancelled(cls, message: str = "Cancelled") -> "JobResult":
        return cls(success=False, error_message=message, cancelled=True)


@dataclass
class Job:
    id: str
    input_path: str
    output_path: str
    description: str
    execute: Callable[["JobContext"], JobResult]
    estimated_weight: Optional[float] = None  # None -> equal weight


@dataclass
class BatchConfig:
    """Display hooks only.  Callbacks run on worker threads."""
    operation_name: str = "Batch"
    log_header_lines: list[str] = field(default_factory=list)
    max_concurrency: int = DEFAULT_MAX_PARALLEL_JOBS
    count_cancelled_as_failed: bool = True
    on_status: Optional[Callable[[str], None]] = None
    on_progress: Optional[Callable[[float, str], None]] = None
    on_log: Optional[Callable[[str], None]] = None
    on_switch_to_log: Optional[Callable[[], None]] = None


@dataclass
class BatchSummary:
    total_tasks: int = 0
    success_count: int = 0
    fail_count: int = 0
    cancelled_count: int = 0
    was_cancelled: bool = False
    total_time_sec: float = 0.0
    failures: list[tuple[str, str]] = field(default_factory=list)  # (job id, message)


# ── Transcription ─────────────────────────────────────────────────────

@dataclass
class AudioChunk:
    index: int
    start_offset: float
    end_offset: float
    file_path: str = ""

    @property
    def duration(self) -> float:
        return self.end_offset - self.start_offset


@dataclass
class Segment:
    start_time: float
    end_time: float
    text: str

    @property
    def center(self) -> float:
        return (self.start_time + self.end_time) / 2.0


@dataclass
class ChunkTranscript:
    """Segments with times absolute to the source file."""
    chunk_index: int
    segments: list[Segment]
    window_start: float = 0.0
    window_end: Optional[float] = None


@dataclass
class CacheEntry:
    fingerprint_key: str
    created_at: datetime
    expires_at: datetime
    payload: Any

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class TranscriptionOptions:
    enable_chunking: bool = True
    enable_cache: bool = True
    enable_optimization: bool = False
    optimization_prompt: Optional[str] = None
    chunk_length_seconds: int = DEFAULT_CHUNK_LENGTH_SEC
    chunk_overlap_seconds: int = DEFAULT_CHUNK_OVERLAP_SEC
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    max_parallel_chunks: int = DEFAULT_MAX_PARALLEL_CHUNKS
    cache_ttl: timedelta = timedelta(days=DEFAULT_CACHE_TTL_DAYS)

    def fingerprint_fields(self) -> dict:
        """Options that change the transcript and therefore the cache key."""
        return {
            'enable_chunking': self.enable_chunking,
            'chunk_length_seconds': self.chunk_length_seconds,
            'chunk_overlap_seconds': self.chunk_overlap_seconds,
            'enable_optimization': self.enable_optimization,
            'optimization_prompt': self.optimization_prompt or "",
        }


@dataclass
class ClipSelection:
    """A clip sub-range handed over by the timeline layer."""
    source_path: str
    name: str
    start_ms: int
    end_ms: int


@dataclass
class BatchCompletion:
    completed_count: int
    failed_count: int
    total_count: int
    cancelled_count: int = 0
