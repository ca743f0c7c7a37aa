"""
Bcut (Bilibili) speech-to-text.
Flow: request upload -> PUT parts -> commit -> create task -> poll result.
Utterance timings come back in milliseconds.
"""

import json
import logging
from pathlib import Path

import requests

from clipscribe.core.asr_provider import AsrProvider, http_request, parse_json, register_provider
from clipscribe.core.cancellation import CancellationToken
from clipscribe.core.constants import (
    AsrProviderKind, ErrorCode, BCUT_API_BASE, BCUT_MODEL_ID, BCUT_POLL_INTERVAL_SEC,
    BCUT_MAX_POLLS,
)
from clipscribe.core.error_codes import JobError, OperationCancelled
from clipscribe.core.models import ProgressCallback, Segment

logger = logging.getLogger(__name__)

VENDOR = "Bcut"

# Task states reported by task/result
_STATE_DONE = 4
_STATE_FAILED = 5


def _data(payload: dict, step: str) -> dict:
    data = payload.get('data') if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        code = payload.get('code') if isinstance(payload, dict) else None
        message = payload.get('message') if isinstance(payload, dict) else None
        raise JobError(ErrorCode.PROVIDER_REJECTED, f"{VENDOR} {step} failed (code={code}): {message}")
    return data


def segments_from_result(result_json: str, word_timestamps: bool = False) -> list[Segment]:
    """Parse the `result` string of a finished task into segments (seconds)."""
    try:
        result = json.loads(result_json or "{}")
        segments = []
        for utterance in result.get('utterances') or []:
            if word_timestamps:
                for word in utterance.get('words') or []:
                    segments.append(Segment(word['start_time'] / 1000.0, word['end_time'] / 1000.0,
                                            (word.get('label') or '').strip()))
            else:
                segments.append(Segment(utterance['start_time'] / 1000.0, utterance['end_time'] / 1000.0,
                                        (utterance.get('transcript') or '').strip()))
    except (ValueError, KeyError, TypeError) as e:
        raise JobError(ErrorCode.TRANSCRIPT_PARSE, f"Malformed {VENDOR} result: {e}")
    return [s for s in segments if s.text]


class BcutTranscriber(AsrProvider):
    """
    Settings (all optional):
        api_base, word_timestamps, poll_interval_sec, max_polls
    """

    provider_id = AsrProviderKind.REMOTE_BCUT
    display_name = "Bcut API"

    @property
    def api_base(self) -> str:
        return (self.settings.get('api_base') or BCUT_API_BASE).rstrip('/')

    def cache_identity(self) -> str:
        return f"{self.provider_id}|words={bool(self.settings.get('word_timestamps'))}"

    def _transcribe_file(self, audio_path: str, progress: ProgressCallback | None,
                         cancel_token: CancellationToken) -> list[Segment]:
        path = Path(audio_path)
        audio_bytes = path.read_bytes()

        def report(pct, msg):
            if progress:
                progress(pct, msg)

        with requests.Session() as session:
            report(10, "Uploading audio")
            download_url = self._upload(session, path, audio_bytes, cancel_token)

            report(30, "Creating transcription task")
            resp = http_request(session, "POST", f"{self.api_base}/task", cancel_token, VENDOR,
                                json={'resource': download_url, 'model_id': BCUT_MODEL_ID})
            task_id = _data(parse_json(resp, VENDOR), "create task").get('task_id')
            if not task_id:
                raise JobError(ErrorCode.PROVIDER_REJECTED, f"{VENDOR} did not return a task id")

            report(50, "Waiting for transcription")
            result = self._poll(session, task_id, report, cancel_token)

        segments = segments_from_result(result.get('result'), bool(self.settings.get('word_timestamps')))
        report(100, "Transcription complete")
        logger.info("%s returned %d segments for %s", VENDOR, len(segments), path.name)
        return segments

    def _upload(self, session: requests.Session, path: Path, audio_bytes: bytes,
                cancel_token: CancellationToken) -> str:
        resp = http_request(session, "POST", f"{self.api_base}/resource/create", cancel_token, VENDOR,
                            json={
                                'type': 2,
                                'name': path.name,
                                'size': len(audio_bytes),
                                'ResourceFileType': path.suffix.lstrip('.') or 'wav',
                                'model_id': BCUT_MODEL_ID,
                            })
        data = _data(parse_json(resp, VENDOR), "upload request")
        try:
            upload_urls = list(data['upload_urls'])
            per_size = int(data['per_size'])
            in_boss_key = data['in_boss_key']
            resource_id = data['resource_id']
            upload_id = data['upload_id']
        except (KeyError, TypeError, ValueError) as e:
            raise JobError(ErrorCode.PROVIDER_REJECTED, f"{VENDOR} upload request incomplete: {e}")

        etags = []
        for i, url in enumerate(upload_urls):
            part = audio_bytes[i * per_size:(i + 1) * per_size]
            put = http_request(session, "PUT", url, cancel_token, VENDOR, data=part)
            etag = put.headers.get('Etag')
            if etag:
                etags.append(etag)

        resp = http_request(session, "POST", f"{self.api_base}/resource/create/complete", cancel_token, VENDOR,
                            json={
                                'InBossKey': in_boss_key,
                                'ResourceId': resource_id,
                                'Etags': ','.join(etags),
                                'UploadId': upload_id,
                                'model_id': BCUT_MODEL_ID,
                            })
        download_url = _data(parse_json(resp, VENDOR), "upload commit").get('download_url')
        if not download_url:
            raise JobError(ErrorCode.PROVIDER_REJECTED, f"{VENDOR} did not return a download URL")
        return download_url

    def _poll(self, session: requests.Session, task_id: str, report,
              cancel_token: CancellationToken) -> dict:
        interval = float(self.settings.get('poll_interval_sec', BCUT_POLL_INTERVAL_SEC))
        max_polls = int(self.settings.get('max_polls', BCUT_MAX_POLLS))

        for attempt in range(max_polls):
            resp = http_request(session, "GET", f"{self.api_base}/task/result", cancel_token, VENDOR,
                                params={'model_id': 7, 'task_id': task_id})
            data = _data(parse_json(resp, VENDOR), "result query")
            state = data.get('state')

            if state == _STATE_DONE:
                return data
            if state == _STATE_FAILED:
                raise JobError(ErrorCode.PROVIDER_REJECTED, f"{VENDOR} task {task_id} failed")

            report(50 + int(attempt / max_polls * 40), f"Waiting for transcription ({attempt + 1}/{max_polls})")
            if cancel_token.wait(interval):
                raise OperationCancelled(f"{VENDOR} polling cancelled")

        raise JobError(ErrorCode.TIMEOUT, f"{VENDOR} task {task_id} did not finish after {max_polls} polls")


register_provider(AsrProviderKind.REMOTE_BCUT, BcutTranscriber)
