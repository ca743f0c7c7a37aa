"""
OpenAI-compatible speech-to-text (`/v1/audio/transcriptions`).
Works with any vendor exposing the same multipart endpoint.
"""

import logging
from pathlib import Path

import requests

from clipscribe.core.asr_provider import AsrProvider, http_request, parse_json, register_provider
from clipscribe.core.cancellation import CancellationToken
from clipscribe.core.constants import (
    AsrProviderKind, ErrorCode, OPENAI_DEFAULT_BASE_URL, OPENAI_DEFAULT_ENDPOINT,
    OPENAI_DEFAULT_MODEL, HTTP_TIMEOUT_SEC,
)
from clipscribe.core.error_codes import JobError
from clipscribe.core.models import ProgressCallback, Segment
from clipscribe.core.srt_format import parse_srt

logger = logging.getLogger(__name__)

# Formats that carry timings
_SUPPORTED_FORMATS = ("srt", "verbose_json")


def verify_api_key(base_url: str, api_key: str) -> tuple[bool, str]:
    """
    Verify a key with a lightweight `GET /v1/models`.
    Returns (success: bool, message: str).
    """
    try:
        resp = requests.get(
            f"{base_url.rstrip('/')}/v1/models",
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=10,
        )
        if resp.status_code == 200:
            return True, "Key verified"
        elif resp.status_code in (401, 403):
            return False, "Key invalid or rejected"
        else:
            return False, f"Unexpected response: {resp.status_code}"
    except requests.exceptions.ConnectionError:
        return False, "Network error — could not reach the API"
    except requests.exceptions.Timeout:
        return False, "Network error — request timed out"


def segments_from_verbose_json(data: dict) -> list[Segment]:
    try:
        segments = [
            Segment(float(s['start']), float(s['end']), str(s.get('text', '')).strip())
            for s in data.get('segments') or []
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise JobError(ErrorCode.TRANSCRIPT_PARSE, f"Malformed verbose_json segments: {e}")
    return [s for s in segments if s.text]


class OpenAiTranscriber(AsrProvider):
    """
    Settings:
        base_url, endpoint_path, api_key, model, response_format ("srt" or
        "verbose_json"), language (optional), prompt (optional), display_name
    """

    provider_id = AsrProviderKind.REMOTE_OPENAI

    @property
    def display_name(self) -> str:
        return self.settings.get('display_name') or "OpenAI-compatible API"

    @property
    def response_format(self) -> str:
        return (self.settings.get('response_format') or "srt").strip()

    @property
    def request_url(self) -> str:
        base_url = (self.settings.get('base_url') or OPENAI_DEFAULT_BASE_URL).rstrip('/')
        endpoint = self.settings.get('endpoint_path') or OPENAI_DEFAULT_ENDPOINT
        if not endpoint.startswith('/'):
            endpoint = '/' + endpoint
        return f"{base_url}{endpoint}"

    def cache_identity(self) -> str:
        return '|'.join([
            self.provider_id,
            self.request_url,
            self.settings.get('model') or OPENAI_DEFAULT_MODEL,
            self.settings.get('language') or '',
        ])

    def validate(self):
        if not self.settings.get('api_key'):
            raise JobError(ErrorCode.INVALID_CONFIGURATION, f"{self.display_name}: API key not configured")
        if not (self.settings.get('base_url') or OPENAI_DEFAULT_BASE_URL).strip():
            raise JobError(ErrorCode.INVALID_CONFIGURATION, f"{self.display_name}: base URL is empty")
        if self.response_format not in _SUPPORTED_FORMATS:
            raise JobError(ErrorCode.INVALID_CONFIGURATION,
                           f"{self.display_name}: response_format must be one of {', '.join(_SUPPORTED_FORMATS)}")

    def _transcribe_file(self, audio_path: str, progress: ProgressCallback | None,
                         cancel_token: CancellationToken) -> list[Segment]:
        self.validate()
        path = Path(audio_path)

        data = {
            'model': self.settings.get('model') or OPENAI_DEFAULT_MODEL,
            'response_format': self.response_format,
        }
        if self.settings.get('language'):
            data['language'] = self.settings['language']
        if self.settings.get('prompt'):
            data['prompt'] = self.settings['prompt']

        headers = {"Authorization": f"Bearer {self.settings['api_key']}"}
        timeout = float(self.settings.get('timeout_sec') or HTTP_TIMEOUT_SEC)

        if progress:
            progress(10, f"Uploading {path.name}")

        with requests.Session() as session:
            with open(path, 'rb') as f:
                resp = http_request(
                    session, "POST", self.request_url, cancel_token, self.display_name,
                    timeout=timeout,
                    headers=headers,
                    data=data,
                    files={'file': (path.name, f, 'audio/wav')},
                )

            if self.response_format == "verbose_json":
                segments = segments_from_verbose_json(parse_json(resp, self.display_name))
            else:
                segments = parse_srt(resp.text)

        if progress:
            progress(100, f"Transcribed {path.name}")
        logger.info("%s returned %d segments for %s", self.display_name, len(segments), path.name)
        return segments


register_provider(AsrProviderKind.REMOTE_OPENAI, OpenAiTranscriber)
