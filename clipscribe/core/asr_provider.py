"""
Speech-recognition provider interface.

Every provider transcribes one audio chunk and returns segments with
timestamps absolute to the source file.  Failures are raised as JobError
with a code from RETRYABLE_ERRORS (retry) or any other code (fatal).
"""

import logging
from typing import Callable

import requests

from clipscribe.core.cancellation import CancellationToken, ensure_token
from clipscribe.core.constants import ErrorCode, ERROR_BODY_MAX_CHARS, HTTP_TIMEOUT_SEC
from clipscribe.core.error_codes import JobError, OperationCancelled
from clipscribe.core.models import AudioChunk, ChunkTranscript, ProgressCallback, Segment

logger = logging.getLogger(__name__)


class AsrProvider:
    """Base class; subclasses implement _transcribe_file()."""

    provider_id = "base"
    display_name = "ASR provider"

    def __init__(self, settings: dict | None = None):
        self.settings = dict(settings or {})

    def cache_identity(self) -> str:
        """Part of the cache fingerprint: anything that changes the transcript."""
        return self.provider_id

    def validate(self):
        """Raise JobError(ERR_INVALID_CONFIGURATION) if settings are unusable."""

    def transcribe(self, chunk: AudioChunk,
                   progress: ProgressCallback | None = None,
                   cancel_token: CancellationToken | None = None) -> ChunkTranscript:
        token = ensure_token(cancel_token)
        token.raise_if_cancelled()

        relative = self._transcribe_file(chunk.file_path, progress, token)

        segments = []
        for seg in relative:
            start = max(0.0, seg.start_time) + chunk.start_offset
            end = max(seg.start_time, seg.end_time) + chunk.start_offset
            # Providers occasionally run past the end of the audio
            if chunk.end_offset > chunk.start_offset:
                end = min(end, chunk.end_offset)
                start = min(start, end)
            segments.append(Segment(start, end, seg.text.strip()))

        return ChunkTranscript(
            chunk_index=chunk.index,
            segments=[s for s in segments if s.text],
            window_start=chunk.start_offset,
            window_end=chunk.end_offset,
        )

    def _transcribe_file(self, audio_path: str, progress: ProgressCallback | None,
                         cancel_token: CancellationToken) -> list[Segment]:
        """Segments relative to the start of `audio_path`."""
        raise NotImplementedError


# ── HTTP helpers shared by remote providers ──────────────────────────

def truncate_body(text: str | None) -> str:
    if not text:
        return "No response body"
    return text[:ERROR_BODY_MAX_CHARS]


def raise_for_http_status(resp: requests.Response, vendor: str):
    """Classify a non-2xx response into a retryable or fatal JobError."""
    status = resp.status_code
    if 200 <= status < 300:
        return

    body = truncate_body(resp.text)
    if status in (401, 402, 403):
        raise JobError(ErrorCode.PROVIDER_AUTH_QUOTA,
                       f"{vendor} rejected credentials or quota exceeded ({status}): {body}")
    if status == 429:
        raise JobError(ErrorCode.RATE_LIMITED, f"{vendor} rate limited (429)")
    if status in (408, 504):
        raise JobError(ErrorCode.TIMEOUT, f"{vendor} returned {status}")
    if status >= 500:
        raise JobError(ErrorCode.NETWORK_TRANSIENT, f"{vendor} server error {status}: {body}")
    raise JobError(ErrorCode.PROVIDER_REJECTED, f"{vendor} returned {status}: {body}")


def http_request(session: requests.Session, method: str, url: str,
                 cancel_token: CancellationToken, vendor: str,
                 timeout: float = HTTP_TIMEOUT_SEC, **kwargs) -> requests.Response:
    """
    One HTTP call that a cancellation can interrupt: closing the session
    tears down its pooled sockets, so a blocked read fails promptly.
    """
    cancel_token.raise_if_cancelled()
    try:
        with cancel_token.on_cancel(session.close):
            resp = session.request(method, url, timeout=timeout, **kwargs)
    except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema) as e:
        raise JobError(ErrorCode.INVALID_CONFIGURATION, f"{vendor} endpoint is invalid: {e}")
    except requests.exceptions.Timeout:
        if cancel_token.cancelled:
            raise OperationCancelled(f"{vendor} request cancelled")
        raise JobError(ErrorCode.TIMEOUT, f"{vendor} request timed out")
    except requests.exceptions.ConnectionError:
        if cancel_token.cancelled:
            raise OperationCancelled(f"{vendor} request cancelled")
        raise JobError(ErrorCode.NETWORK_TRANSIENT, f"Network error connecting to {vendor}")
    except requests.exceptions.RequestException as e:
        if cancel_token.cancelled:
            raise OperationCancelled(f"{vendor} request cancelled")
        raise JobError(ErrorCode.NETWORK_TRANSIENT, f"{vendor} request failed: {e}")

    if cancel_token.cancelled:
        raise OperationCancelled(f"{vendor} request cancelled")
    raise_for_http_status(resp, vendor)
    return resp


def parse_json(resp: requests.Response, vendor: str):
    try:
        return resp.json()
    except ValueError:
        raise JobError(ErrorCode.TRANSCRIPT_PARSE, f"Failed to parse {vendor} response JSON")


# ── Registry ─────────────────────────────────────────────────────────

_REGISTRY: dict[str, Callable[[dict], AsrProvider]] = {}


def register_provider(kind: str, factory: Callable[[dict], AsrProvider]):
    _REGISTRY[kind] = factory


def create_provider(kind: str, settings: dict | None = None) -> AsrProvider:
    """Instantiate the provider registered for `kind` (see AsrProviderKind)."""
    # Provider modules register themselves on import
    import clipscribe.core.transcribe_openai  # noqa: F401
    import clipscribe.core.transcribe_bcut  # noqa: F401
    import clipscribe.core.transcribe_whisper_local  # noqa: F401

    factory = _REGISTRY.get(kind)
    if factory is None:
        raise JobError(ErrorCode.INVALID_CONFIGURATION, f"Unknown ASR provider: {kind!r}")
    provider = factory(settings or {})
    provider.validate()
    return provider
