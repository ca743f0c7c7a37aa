"""
Optional LLM text correction of a merged transcript.
Uses an OpenAI-compatible `/v1/chat/completions` endpoint; timings are never
touched, only the text of each segment.
"""

import json
import logging
import re
from typing import Callable, Optional

import requests

from clipscribe.core.asr_provider import http_request, parse_json
from clipscribe.core.cancellation import CancellationToken, ensure_token
from clipscribe.core.constants import (
    ErrorCode, OPTIMIZER_BATCH_SIZE, OPTIMIZER_TEMPERATURE, HTTP_TIMEOUT_SEC,
)
from clipscribe.core.error_codes import JobError
from clipscribe.core.models import Segment
from clipscribe.core.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

VENDOR = "Subtitle optimizer"

SYSTEM_PROMPT = "You are a professional subtitle proofreader."

_INSTRUCTIONS = """Correct the subtitle lines below without changing their meaning or structure.

Rules:
1. Fix typos and punctuation
2. Remove filler words (um, uh, er and similar)
3. Normalise formatting (capitalisation, formulas, code)
4. Keep every line number; never merge or split lines
"""

_FENCED_RE = re.compile(r'```(?:json)?\s*(\{.*?\})\s*```', re.DOTALL)
_OBJECT_RE = re.compile(r'\{.*\}', re.DOTALL)


def build_prompt(lines: dict[str, str], custom_prompt: str | None = None) -> str:
    parts = [_INSTRUCTIONS]
    if custom_prompt and custom_prompt.strip():
        parts.append(f"Terminology or extra requirements: {custom_prompt.strip()}\n")
    parts.append("Subtitles:")
    parts.append(json.dumps(lines, ensure_ascii=False, indent=2))
    parts.append('\nReturn the corrected JSON object only, formatted as {"0": "corrected line", "1": "..."}')
    return '\n'.join(parts)


def extract_json_object(reply: str) -> dict:
    """The JSON object in an LLM reply, optionally wrapped in a ``` fence."""
    if not reply or not reply.strip():
        raise JobError(ErrorCode.TRANSCRIPT_PARSE, "Optimizer returned empty content")
    match = _FENCED_RE.search(reply)
    text = match.group(1) if match else reply
    if not match:
        obj = _OBJECT_RE.search(reply)
        if obj:
            text = obj.group(0)
    try:
        data = json.loads(text)
    except ValueError as e:
        raise JobError(ErrorCode.TRANSCRIPT_PARSE, f"Optimizer reply is not JSON: {e}")
    if not isinstance(data, dict):
        raise JobError(ErrorCode.TRANSCRIPT_PARSE, "Optimizer reply is not a JSON object")
    return data


class SubtitleOptimizer:
    """
    Settings: base_url, api_key, model, temperature, batch_size, timeout_sec.
    """

    def __init__(self, settings: dict, retry_policy: RetryPolicy | None = None):
        self.settings = dict(settings or {})
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def completions_url(self) -> str:
        base_url = (self.settings.get('base_url') or "").rstrip('/')
        if not base_url.endswith("/v1"):
            base_url += "/v1"
        return f"{base_url}/chat/completions"

    def validate(self):
        if not self.settings.get('base_url'):
            raise JobError(ErrorCode.INVALID_CONFIGURATION, "Optimizer base URL not configured")
        if not self.settings.get('api_key'):
            raise JobError(ErrorCode.INVALID_CONFIGURATION, "Optimizer API key not configured")
        if not self.settings.get('model'):
            raise JobError(ErrorCode.INVALID_CONFIGURATION, "Optimizer model not configured")

    def optimize(self, segments: list[Segment], custom_prompt: str | None = None,
                 cancel_token: CancellationToken | None = None,
                 progress: Optional[Callable[[int, str], None]] = None) -> list[Segment]:
        """Corrected copies of `segments`; lines the model omits keep their text."""
        self.validate()
        token = ensure_token(cancel_token)
        batch_size = max(1, int(self.settings.get('batch_size') or OPTIMIZER_BATCH_SIZE))

        result: list[Segment] = []
        batches = [segments[i:i + batch_size] for i in range(0, len(segments), batch_size)]
        for n, batch in enumerate(batches):
            lines = {str(i): seg.text for i, seg in enumerate(batch)}
            prompt = build_prompt(lines, custom_prompt)
            corrected = self.retry_policy.execute(
                lambda: self._complete(prompt, token), token,
                description=f"Optimizer batch {n + 1}/{len(batches)}",
            )
            for i, seg in enumerate(batch):
                text = corrected.get(str(i))
                if not isinstance(text, str) or not text.strip():
                    text = seg.text
                result.append(Segment(seg.start_time, seg.end_time, text.strip()))
            if progress:
                progress(int((n + 1) / len(batches) * 100), f"Optimized {len(result)}/{len(segments)} lines")

        logger.info("Optimized %d subtitle lines in %d batches", len(result), len(batches))
        return result

    def _complete(self, prompt: str, token: CancellationToken) -> dict:
        body = {
            'model': self.settings['model'],
            'messages': [
                {'role': 'system', 'content': SYSTEM_PROMPT},
                {'role': 'user', 'content': prompt},
            ],
            'temperature': float(self.settings.get('temperature', OPTIMIZER_TEMPERATURE)),
        }
        with requests.Session() as session:
            resp = http_request(
                session, "POST", self.completions_url, token, VENDOR,
                timeout=float(self.settings.get('timeout_sec') or HTTP_TIMEOUT_SEC),
                headers={"Authorization": f"Bearer {self.settings['api_key']}"},
                json=body,
            )
            data = parse_json(resp, VENDOR)
        try:
            content = data['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            raise JobError(ErrorCode.TRANSCRIPT_PARSE, "Optimizer response has no message content")
        return extract_json_object(content)
