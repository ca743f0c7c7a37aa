"""
Shared constants for ClipScribe.
Single source of truth — imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "ClipScribe"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = HOME / ".clipscribe"
APP_CACHE_DIR = APP_SUPPORT_DIR / "cache"
TRANSCRIPT_CACHE_DIR = APP_CACHE_DIR / "transcripts"
WORK_CACHE_DIR = APP_CACHE_DIR / "work"
LOG_DIR = APP_SUPPORT_DIR / "logs"
DB_PATH = APP_SUPPORT_DIR / "tasks.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"

# ── Subtitle task status values ───────────────────────────────────────
class TaskStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

TERMINAL_STATUSES = {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}

class TaskType:
    WHOLE_FILE = "WHOLE_FILE"
    CLIP_RANGE = "CLIP_RANGE"

# ── Pipeline stage values (ordered) ───────────────────────────────────
class PipelineStage:
    EXTRACTING_AUDIO = "EXTRACTING_AUDIO"
    CHECKING_CACHE = "CHECKING_CACHE"
    CHUNKING_AUDIO = "CHUNKING_AUDIO"
    TRANSCRIBING = "TRANSCRIBING"
    MERGING_TRANSCRIPT = "MERGING_TRANSCRIPT"
    OPTIMIZING_TEXT = "OPTIMIZING_TEXT"
    RENDERING_SRT = "RENDERING_SRT"
    WRITING_SRT = "WRITING_SRT"

# ── ASR provider identifiers (closed set) ─────────────────────────────
class AsrProviderKind:
    REMOTE_OPENAI = "remote_openai"
    REMOTE_BCUT = "remote_bcut"
    LOCAL_WHISPER_CPU = "local_whisper_cpu"
    LOCAL_WHISPER_GPU = "local_whisper_gpu"

ALL_PROVIDER_KINDS = (
    AsrProviderKind.REMOTE_OPENAI,
    AsrProviderKind.REMOTE_BCUT,
    AsrProviderKind.LOCAL_WHISPER_CPU,
    AsrProviderKind.LOCAL_WHISPER_GPU,
)

PROVIDER_DISPLAY_NAMES = {
    AsrProviderKind.REMOTE_OPENAI: "OpenAI-compatible API",
    AsrProviderKind.REMOTE_BCUT: "Bcut API",
    AsrProviderKind.LOCAL_WHISPER_CPU: "Faster Whisper (CPU)",
    AsrProviderKind.LOCAL_WHISPER_GPU: "Faster Whisper (GPU)",
}

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    INVALID_CONFIGURATION = "ERR_INVALID_CONFIGURATION"
    PROCESS_LAUNCH = "ERR_PROCESS_LAUNCH"
    PROCESS_EXECUTION = "ERR_PROCESS_EXECUTION"
    PROVIDER_AUTH_QUOTA = "ERR_PROVIDER_AUTH_QUOTA"
    PROVIDER_REJECTED = "ERR_PROVIDER_REJECTED"
    TRANSCRIPT_PARSE = "ERR_TRANSCRIPT_PARSE"
    EMPTY_TRANSCRIPT = "ERR_EMPTY_TRANSCRIPT"
    AUDIO_EXTRACT = "ERR_AUDIO_EXTRACT"
    CHUNKING = "ERR_CHUNKING"
    INVALID_STATE = "ERR_INVALID_STATE"
    UNEXPECTED = "ERR_UNEXPECTED"

    # Retryable
    TIMEOUT = "ERR_TIMEOUT"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Special (logged, never surfaced as a failure)
    CACHE_CORRUPTION = "ERR_CACHE_CORRUPTION"
    CANCELLED = "ERR_CANCELLED"

RETRYABLE_ERRORS = {
    ErrorCode.TIMEOUT,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.RATE_LIMITED,
}

# ── Audio pipeline defaults ───────────────────────────────────────────
DEFAULT_CHUNK_LENGTH_SEC = 600     # 10 minutes
DEFAULT_CHUNK_OVERLAP_SEC = 10
DEFAULT_MAX_PARALLEL_CHUNKS = 3
DEFAULT_MAX_PARALLEL_JOBS = 1      # transcoder is CPU/GPU bound
DEFAULT_CACHE_TTL_DAYS = 7

# Extraction target
EXTRACT_CHANNELS = 1
EXTRACT_SAMPLE_RATE = 16000
EXTRACT_CODEC = "pcm_s16le"

# ── Retry defaults ────────────────────────────────────────────────────
DEFAULT_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_SEC = 0.5
RETRY_BACKOFF_FACTOR = 2.0
RETRY_MAX_DELAY_SEC = 30.0
RETRY_JITTER = 0.1                 # +/- 10%

# ── Merge tuning ──────────────────────────────────────────────────────
MERGE_TEXT_SIMILARITY = 0.85
MERGE_TIME_TOLERANCE_SEC = 2.0

# ── Progress mapping (per subtitle generation) ────────────────────────
PROGRESS_EXTRACT = 5
PROGRESS_CACHE = 12
PROGRESS_CHUNK = 15
PROGRESS_TRANSCRIBE_START = 25
PROGRESS_TRANSCRIBE_END = 80
PROGRESS_MERGE = 82
PROGRESS_OPTIMIZE_START = 85
PROGRESS_OPTIMIZE_END = 95
PROGRESS_RENDER = 98
PROGRESS_DONE = 100

# Coordinator maps pipeline progress into this window, leaving room to write.
TASK_PROGRESS_PIPELINE_END = 90

# ── Remote providers ──────────────────────────────────────────────────
OPENAI_DEFAULT_BASE_URL = "https://api.openai.com"
OPENAI_DEFAULT_ENDPOINT = "/v1/audio/transcriptions"
OPENAI_DEFAULT_MODEL = "whisper-1"

BCUT_API_BASE = "https://member.bilibili.com/x/bcut/rubick-interface"
BCUT_MODEL_ID = "8"
BCUT_POLL_INTERVAL_SEC = 1.0
BCUT_MAX_POLLS = 500

HTTP_TIMEOUT_SEC = 300
ERROR_BODY_MAX_CHARS = 300

# ── Local faster-whisper program ──────────────────────────────────────
WHISPER_REQUIRED_MODEL_FILES = ("model.bin", "tokenizer.json", "vocabulary.json", "config.json")
WHISPER_DEFAULT_LANGUAGE = "zh"
WHISPER_VAD_THRESHOLD = 0.4

# ── Optimizer ─────────────────────────────────────────────────────────
OPTIMIZER_BATCH_SIZE = 50
OPTIMIZER_TEMPERATURE = 0.3

# ── Misc ──────────────────────────────────────────────────────────────
PROCESS_TAIL_LINES = 20

# Characters forbidden in file names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FILENAME_LEN = 150
