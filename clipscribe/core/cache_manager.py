"""
Content-addressed transcript cache.

One JSON file per fingerprint key under the cache root:
    {"key": ..., "created_at": ISO-8601 UTC, "expires_at": ISO-8601 UTC, "payload": ...}

Writes go to a temp file in the same directory and are renamed into place,
so readers see either the old entry, the new entry, or no entry.  There is
no global lock; sweep() coordinates with writers through renames only.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from clipscribe.core.constants import ErrorCode, DEFAULT_CACHE_TTL_DAYS
from clipscribe.core.models import CacheEntry

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r'^[A-Za-z0-9_-]{1,128}$')
_TOMB_SUFFIX = ".sweep"
_READ_BLOCK = 1024 * 1024


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_fingerprint(audio_path: Path, provider_id: str, options_fields: dict) -> str:
    """sha256 over the audio bytes, the provider identity and the chunking options."""
    digest = hashlib.sha256()
    with open(audio_path, 'rb') as f:
        for block in iter(lambda: f.read(_READ_BLOCK), b''):
            digest.update(block)
    digest.update(b'\x00provider:')
    digest.update(provider_id.encode('utf-8'))
    digest.update(b'\x00options:')
    digest.update(json.dumps(options_fields, sort_keys=True, ensure_ascii=False).encode('utf-8'))
    return digest.hexdigest()


class CacheManager:
    """TTL cache of JSON-serialisable payloads; safe for concurrent workers."""

    def __init__(self, cache_dir: Path,
                 default_ttl: timedelta = timedelta(days=DEFAULT_CACHE_TTL_DAYS),
                 clock: Optional[Callable[[], datetime]] = None):
        self.cache_dir = Path(cache_dir)
        self.default_ttl = default_ttl
        self._clock = clock or _utcnow
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    # ── Paths ──

    def _path_for(self, key: str) -> Path:
        if not _KEY_RE.match(key or ""):
            raise ValueError(f"Invalid cache key: {key!r}")
        return self.cache_dir / f"{key}.json"

    # ── Read ──

    def _read_entry(self, path: Path) -> CacheEntry | None:
        """Load one entry; None if missing or corrupt (corruption is logged)."""
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return CacheEntry(
                fingerprint_key=data['key'],
                created_at=datetime.fromisoformat(data['created_at']),
                expires_at=datetime.fromisoformat(data['expires_at']),
                payload=data['payload'],
            )
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("[%s] Ignoring unreadable cache entry %s: %s",
                           ErrorCode.CACHE_CORRUPTION, path.name, e)
            return None

    def get(self, key: str) -> Any | None:
        """Payload for `key`, or None on miss, expiry or corruption."""
        entry = self._read_entry(self._path_for(key))
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            logger.debug("Cache entry expired: %s", key)
            return None
        return entry.payload

    # ── Write ──

    def put(self, key: str, payload: Any, ttl: timedelta | None = None) -> CacheEntry:
        """Persist atomically (temp file + fsync + os.replace)."""
        path = self._path_for(key)
        now = self._clock()
        entry = CacheEntry(
            fingerprint_key=key,
            created_at=now,
            expires_at=now + (ttl if ttl is not None else self.default_ttl),
            payload=payload,
        )
        data = {
            'key': key,
            'created_at': entry.created_at.isoformat(),
            'expires_at': entry.expires_at.isoformat(),
            'payload': payload,
        }

        fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self.cache_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

        logger.debug("Cached %s (expires %s)", key, entry.expires_at.isoformat())
        return entry

    def get_or_compute(self, key: str, ttl: timedelta | None, compute: Callable[[], Any]) -> Any:
        """
        Cached payload if present and fresh, else compute(), persist, return.
        Concurrent misses on one key may both compute; the last write wins.
        """
        cached = self.get(key)
        if cached is not None:
            logger.info("Cache hit: %s", key[:12])
            return cached

        payload = compute()
        try:
            self.put(key, payload, ttl)
        except OSError as e:
            # Result is still valid; only persistence failed
            logger.warning("Failed to write cache entry %s: %s", key[:12], e)
        return payload

    def invalidate(self, key: str):
        try:
            self._path_for(key).unlink()
        except FileNotFoundError:
            pass

    # ── Sweep ──

    def sweep(self) -> int:
        """
        Delete expired entries.  Returns the number removed.

        Each expired file is first renamed to a private tomb name, then
        re-read: if a writer replaced it with a fresh entry in between, the
        fresh entry is linked back (unless yet another write already landed).
        """
        now = self._clock()
        removed = 0

        for path in sorted(self.cache_dir.glob("*.json")):
            entry = self._read_entry(path)
            if entry is None or not entry.is_expired(now):
                continue

            tomb = path.with_name(f"{path.stem}.{uuid.uuid4().hex}{_TOMB_SUFFIX}")
            try:
                os.rename(path, tomb)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Could not sweep %s: %s", path.name, e)
                continue

            moved = self._read_entry(tomb)
            if moved is not None and not moved.is_expired(now):
                try:
                    os.link(tomb, path)
                except FileExistsError:
                    pass
                except OSError as e:
                    logger.warning("Could not restore fresh entry %s: %s", path.name, e)
            else:
                removed += 1

            try:
                os.unlink(tomb)
            except OSError:
                pass

        # Temp files left by crashed writers
        for stale in self.cache_dir.glob("*.tmp"):
            try:
                if stale.stat().st_mtime < (now - self.default_ttl).timestamp():
                    stale.unlink()
            except OSError:
                pass

        if removed:
            logger.info("Cache sweep removed %d expired entries", removed)
        return removed

    def size_bytes(self) -> int:
        total = 0
        for p in self.cache_dir.glob("*.json"):
            try:
                total += p.stat().st_size
            except OSError:
                pass
        return total
