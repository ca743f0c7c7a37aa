#!/usr/bin/env python3
"""
Tests for the subtitle generation pipeline.
Transcoder stages are patched out; a scripted provider returns segments
for whatever window it is asked about.
"""

import sys
import tempfile
import threading
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from clipscribe.core.constants import ErrorCode
from clipscribe.core.asr_provider import AsrProvider
from clipscribe.core.cache_manager import CacheManager
from clipscribe.core.cancellation import CancellationToken
from clipscribe.core.error_codes import JobError, OperationCancelled
from clipscribe.core.models import Segment, TranscriptionOptions
from clipscribe.core.retry_policy import RetryPolicy
from clipscribe.core.srt_format import parse_srt
from clipscribe.core.subtitle_optimizer import SubtitleOptimizer
from clipscribe.core.transcription_pipeline import TranscriptionPipeline

DURATION = 1200.0
LINES = [(float(s), float(s + 5), f"sentence number {s // 5}") for s in range(0, 1200, 5)]


def fake_extract(ffmpeg_path, input_path, output_path, **kwargs):
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(b"RIFF-fake-audio")
    return output_path


def fake_split(ffmpeg_path, audio_path, chunks_dir, chunks, cancel_token=None):
    for c in chunks:
        c.file_path = f"window:{c.start_offset}:{c.end_offset}"
    return chunks


class ScriptedProvider(AsrProvider):
    """Returns the LINES inside the requested window, relative to its start."""

    provider_id = "scripted"

    def __init__(self, lines=LINES, failures=None):
        super().__init__({})
        self.lines = lines
        self.failures = dict(failures or {})
        self.calls = []
        self._lock = threading.Lock()

    def _transcribe_file(self, audio_path, progress, cancel_token):
        with self._lock:
            self.calls.append(audio_path)
            queued = self.failures.get(audio_path)
            if queued:
                error = queued.pop(0)
                raise error
        if not audio_path.startswith("window:"):
            return [Segment(s, e, t) for s, e, t in self.lines]
        _, start, end = audio_path.split(":")
        start, end = float(start), float(end)
        if progress:
            progress(100, "done")
        return [Segment(s - start, e - start, t) for s, e, t in self.lines if s >= start and e <= end]


class TestTranscriptionPipeline(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.media = self.root / "talk.mp4"
        self.media.write_bytes(b"media")
        self.work_root = self.root / "work"
        self.pipeline = TranscriptionPipeline(
            cache_manager=CacheManager(self.root / "cache"),
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0),
            work_root=self.work_root,
        )
        self.options = TranscriptionOptions(chunk_length_seconds=600, chunk_overlap_seconds=10)

        patchers = [
            mock.patch("clipscribe.core.audio_extract.extract_audio", side_effect=fake_extract),
            mock.patch("clipscribe.core.audio_extract.probe_duration", return_value=DURATION),
            mock.patch("clipscribe.core.chunking_timebased.split_audio_into_chunks", side_effect=fake_split),
        ]
        self.extract, self.probe, self.split = [p.start() for p in patchers]
        for p in patchers:
            self.addCleanup(p.stop)

    def tearDown(self):
        self.tmp.cleanup()

    def _generate(self, provider, options=None, **kwargs):
        return self.pipeline.generate(self.media, "ffmpeg", provider, options or self.options, **kwargs)

    def test_chunked_transcript_has_each_line_once(self):
        provider = ScriptedProvider()
        progress = []
        srt = self._generate(provider, progress=lambda pct, msg: progress.append(pct))

        segments = parse_srt(srt)
        self.assertEqual([s.text for s in segments], [t for _, _, t in LINES])
        for prev, cur in zip(segments, segments[1:]):
            self.assertLessEqual(prev.end_time, cur.start_time)
        self.assertEqual(len(provider.calls), 3)
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[-1], 100)

    def test_workspace_removed(self):
        self._generate(ScriptedProvider())
        self.assertEqual(list(self.work_root.iterdir()), [])

    def test_cache_hit_skips_provider(self):
        provider = ScriptedProvider()
        first = self._generate(provider)
        calls = len(provider.calls)
        second = self._generate(provider)
        self.assertEqual(first, second)
        self.assertEqual(len(provider.calls), calls)

    def test_options_change_cache_key(self):
        provider = ScriptedProvider()
        self._generate(provider)
        calls = len(provider.calls)
        self._generate(provider, TranscriptionOptions(chunk_length_seconds=300, chunk_overlap_seconds=10))
        self.assertGreater(len(provider.calls), calls)

    def test_cache_disabled(self):
        provider = ScriptedProvider()
        options = TranscriptionOptions(enable_cache=False)
        self._generate(provider, options)
        self._generate(provider, options)
        self.assertEqual(len(provider.calls), 6)
        self.assertEqual(list((self.root / "cache").iterdir()), [])

    def test_transient_chunk_failure_is_retried(self):
        provider = ScriptedProvider(failures={
            "window:590.0:1190.0": [JobError(ErrorCode.NETWORK_TRANSIENT, "connection reset")],
        })
        segments = parse_srt(self._generate(provider))
        self.assertEqual(len(segments), len(LINES))
        self.assertEqual(provider.calls.count("window:590.0:1190.0"), 2)

    def test_fatal_chunk_failure_fails_whole_file(self):
        provider = ScriptedProvider(failures={
            "window:1180.0:1200.0": [JobError(ErrorCode.PROVIDER_AUTH_QUOTA, "quota exceeded")],
        })
        with self.assertRaises(JobError) as ctx:
            self._generate(provider)
        self.assertEqual(ctx.exception.code, ErrorCode.PROVIDER_AUTH_QUOTA)
        self.assertEqual(provider.calls.count("window:1180.0:1200.0"), 1)
        self.assertEqual(list(self.work_root.iterdir()), [])
        self.assertEqual(list((self.root / "cache").glob("*.json")), [])

    def test_empty_transcript(self):
        with self.assertRaises(JobError) as ctx:
            self._generate(ScriptedProvider(lines=[]))
        self.assertEqual(ctx.exception.code, ErrorCode.EMPTY_TRANSCRIPT)

    def test_without_chunking(self):
        provider = ScriptedProvider(lines=LINES[:3])
        srt = self._generate(provider, TranscriptionOptions(enable_chunking=False))
        self.assertEqual(len(parse_srt(srt)), 3)
        self.assertEqual(len(provider.calls), 1)
        self.probe.assert_not_called()
        self.split.assert_not_called()

    def test_short_audio_is_not_split(self):
        self.probe.return_value = 30.0
        provider = ScriptedProvider(lines=LINES[:3])
        self._generate(provider)
        self.split.assert_not_called()
        self.assertEqual(len(provider.calls), 1)

    def test_clip_range_passed_to_extraction(self):
        self.probe.return_value = 10.0
        self._generate(ScriptedProvider(lines=LINES[:2]), clip_start=10.0, clip_end=20.0)
        kwargs = self.extract.call_args.kwargs
        self.assertEqual((kwargs["start_sec"], kwargs["end_sec"]), (10.0, 20.0))

    def test_cancelled_token(self):
        token = CancellationToken()
        token.cancel()
        provider = ScriptedProvider()
        with self.assertRaises(OperationCancelled):
            self._generate(provider, cancel_token=token)
        self.assertEqual(provider.calls, [])

    def test_optimizer_failure_keeps_transcript(self):
        optimizer = mock.Mock(spec=SubtitleOptimizer)
        optimizer.optimize.side_effect = JobError(ErrorCode.PROVIDER_AUTH_QUOTA, "no credit")
        self.pipeline.optimizer = optimizer
        options = TranscriptionOptions(enable_optimization=True, enable_chunking=False)
        srt = self._generate(ScriptedProvider(lines=LINES[:2]), options)
        self.assertEqual([s.text for s in parse_srt(srt)], [LINES[0][2], LINES[1][2]])
        optimizer.optimize.assert_called_once()

    def test_optimizer_rewrites_text(self):
        optimizer = mock.Mock(spec=SubtitleOptimizer)
        optimizer.optimize.side_effect = lambda segments, prompt, token, progress=None: [
            Segment(s.start_time, s.end_time, s.text.upper()) for s in segments
        ]
        self.pipeline.optimizer = optimizer
        options = TranscriptionOptions(enable_optimization=True, enable_chunking=False)
        srt = self._generate(ScriptedProvider(lines=LINES[:1]), options)
        self.assertEqual(parse_srt(srt)[0].text, LINES[0][2].upper())


if __name__ == "__main__":
    unittest.main()
