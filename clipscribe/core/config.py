"""
Application configuration manager.
Stores settings in a JSON file under ~/.clipscribe.
"""

import json
import logging
from datetime import timedelta
from pathlib import Path

from clipscribe.core.constants import (
    CONFIG_PATH, TRANSCRIPT_CACHE_DIR, AsrProviderKind, ALL_PROVIDER_KINDS,
    DEFAULT_CHUNK_LENGTH_SEC, DEFAULT_CHUNK_OVERLAP_SEC, DEFAULT_MAX_PARALLEL_CHUNKS,
    DEFAULT_MAX_PARALLEL_JOBS, DEFAULT_MAX_ATTEMPTS, DEFAULT_CACHE_TTL_DAYS,
)
from clipscribe.core.models import TranscriptionOptions

# Validation bounds
_CHUNK_LENGTH_MIN = 60        # 1 minute
_CHUNK_LENGTH_MAX = 3600      # 1 hour
_OVERLAP_MIN = 0
_OVERLAP_MAX = 120
_PARALLEL_MIN = 1
_PARALLEL_MAX = 8
_ATTEMPTS_MIN = 1
_ATTEMPTS_MAX = 10
_TTL_MIN_DAYS = 0.01
_TTL_MAX_DAYS = 365

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'ffmpeg_path': "ffmpeg",
    'ffprobe_path': "ffprobe",
    'cache_dir': str(TRANSCRIPT_CACHE_DIR),
    'cache_ttl_days': DEFAULT_CACHE_TTL_DAYS,
    'default_provider': AsrProviderKind.REMOTE_BCUT,
    'enable_chunking': True,
    'enable_cache': True,
    'enable_optimization': False,
    'optimization_prompt': "",
    'chunk_length_sec': DEFAULT_CHUNK_LENGTH_SEC,
    'chunk_overlap_sec': DEFAULT_CHUNK_OVERLAP_SEC,
    'max_parallel_chunks': DEFAULT_MAX_PARALLEL_CHUNKS,
    'max_parallel_jobs': DEFAULT_MAX_PARALLEL_JOBS,
    'retry_max_attempts': DEFAULT_MAX_ATTEMPTS,
    'keep_debug_artifacts': False,
    'providers': {},
    'optimizer': {},
}

_BOOL_KEYS = ('enable_chunking', 'enable_cache', 'enable_optimization', 'keep_debug_artifacts')

_INT_RANGES = {
    'chunk_length_sec': (_CHUNK_LENGTH_MIN, _CHUNK_LENGTH_MAX),
    'chunk_overlap_sec': (_OVERLAP_MIN, _OVERLAP_MAX),
    'max_parallel_chunks': (_PARALLEL_MIN, _PARALLEL_MAX),
    'max_parallel_jobs': (_PARALLEL_MIN, _PARALLEL_MAX),
    'retry_max_attempts': (_ATTEMPTS_MIN, _ATTEMPTS_MAX),
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = Path(config_path or CONFIG_PATH)
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    saved = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)
                return
            if not isinstance(saved, dict):
                logger.warning("Ignoring config file %s: not a JSON object", self.path)
                return
            for key, value in saved.items():
                self._data[key] = self._validate(key, value)
        self._data['chunk_overlap_sec'] = self._validate('chunk_overlap_sec', self._data['chunk_overlap_sec'])

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _INT_RANGES:
            low, high = _INT_RANGES[key]
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return _DEFAULTS[key]
            value = max(low, min(high, value))
            if key == 'chunk_overlap_sec':
                length = self._data.get('chunk_length_sec', DEFAULT_CHUNK_LENGTH_SEC)
                if value >= length:
                    logger.warning("chunk_overlap_sec %d must be shorter than chunk_length_sec %d — using default",
                                   value, length)
                    return min(DEFAULT_CHUNK_OVERLAP_SEC, length - 1)
            return value

        if key == 'cache_ttl_days':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid cache_ttl_days %r — using default", value)
                return DEFAULT_CACHE_TTL_DAYS
            return max(_TTL_MIN_DAYS, min(_TTL_MAX_DAYS, value))

        if key == 'default_provider':
            if value not in ALL_PROVIDER_KINDS:
                logger.warning("Invalid default_provider %r — using %s", value, _DEFAULTS[key])
                return _DEFAULTS[key]

        if key in ('providers', 'optimizer'):
            if not isinstance(value, dict):
                logger.warning("Invalid %s section %r — using empty settings", key, value)
                return {}

        if key in _BOOL_KEYS:
            return bool(value)

        return value

    # ── Derived settings ──────────────────────────────────────────────

    def transcription_options(self) -> TranscriptionOptions:
        return TranscriptionOptions(
            enable_chunking=self._data['enable_chunking'],
            enable_cache=self._data['enable_cache'],
            enable_optimization=self._data['enable_optimization'],
            optimization_prompt=self._data.get('optimization_prompt') or None,
            chunk_length_seconds=self._data['chunk_length_sec'],
            chunk_overlap_seconds=self._data['chunk_overlap_sec'],
            max_attempts=self._data['retry_max_attempts'],
            max_parallel_chunks=self._data['max_parallel_chunks'],
            cache_ttl=timedelta(days=self._data['cache_ttl_days']),
        )

    def provider_settings(self, kind: str) -> dict:
        """Opaque settings dict for one ASR provider (empty if none saved)."""
        section = self._data.get('providers') or {}
        return dict(section.get(kind) or {})

    def optimizer_settings(self) -> dict:
        return dict(self._data.get('optimizer') or {})

    @property
    def ffmpeg_path(self) -> str:
        return self._data.get('ffmpeg_path') or "ffmpeg"

    @property
    def ffprobe_path(self) -> str:
        return self._data.get('ffprobe_path') or "ffprobe"

    @property
    def cache_dir(self) -> Path:
        return Path(self._data.get('cache_dir') or TRANSCRIPT_CACHE_DIR).expanduser()

    @property
    def default_provider(self) -> str:
        return self._data.get('default_provider', _DEFAULTS['default_provider'])

    @property
    def keep_debug_artifacts(self) -> bool:
        return self._data.get('keep_debug_artifacts', False)

    @keep_debug_artifacts.setter
    def keep_debug_artifacts(self, value: bool):
        self._data['keep_debug_artifacts'] = bool(value)
        self.save()
