#!/usr/bin/env python3
"""
Unit tests for ClipScribe core modules.
Tests cover: error codes, security utils, chunking, merge, SRT, retry policy,
cache, config, database, output writer, providers, optimizer.
"""

import sys
import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from clipscribe.core.constants import (
    TaskStatus, TaskType, ErrorCode, RETRYABLE_ERRORS, AsrProviderKind,
)
from clipscribe.core.error_codes import JobError, OperationCancelled, is_retryable
from clipscribe.core.cancellation import CancellationToken
from clipscribe.core.security_utils import sanitize_filename, subtitle_output_path, check_args
from clipscribe.core.chunking_timebased import plan_chunks
from clipscribe.core.merge import merge_transcripts, text_similarity
from clipscribe.core.models import AudioChunk, ChunkTranscript, Segment
from clipscribe.core.srt_format import format_timestamp, parse_timestamp, render_srt, parse_srt
from clipscribe.core.retry_policy import RetryPolicy
from clipscribe.core.cache_manager import CacheManager, make_fingerprint
from clipscribe.core.config import AppConfig
from clipscribe.core.output_writer import write_subtitles
from clipscribe.core.asr_provider import raise_for_http_status, http_request, create_provider
from clipscribe.core.transcribe_whisper_local import (
    normalize_model_name, WhisperProgressParser, LocalWhisperCpu,
)
from clipscribe.core.transcribe_bcut import segments_from_result
from clipscribe.core.transcribe_openai import verify_api_key
from clipscribe.core.subtitle_optimizer import extract_json_object, SubtitleOptimizer


class TestErrorCodes(unittest.TestCase):
    """Test error classification."""

    def test_retryable_errors(self):
        self.assertTrue(is_retryable(ErrorCode.TIMEOUT))
        self.assertTrue(is_retryable(ErrorCode.NETWORK_TRANSIENT))
        self.assertTrue(is_retryable(ErrorCode.RATE_LIMITED))

    def test_non_retryable_errors(self):
        self.assertFalse(is_retryable(ErrorCode.PROVIDER_AUTH_QUOTA))
        self.assertFalse(is_retryable(ErrorCode.TRANSCRIPT_PARSE))
        self.assertFalse(is_retryable(ErrorCode.INVALID_CONFIGURATION))

    def test_job_error_auto_retryable(self):
        err = JobError(ErrorCode.RATE_LIMITED, "slow down")
        self.assertTrue(err.retryable)
        err = JobError(ErrorCode.PROVIDER_REJECTED, "bad request")
        self.assertFalse(err.retryable)
        err = JobError(ErrorCode.TIMEOUT, "local model", retryable=False)
        self.assertFalse(err.retryable)

    def test_cancelled_is_job_error(self):
        err = OperationCancelled()
        self.assertIsInstance(err, JobError)
        self.assertEqual(err.code, ErrorCode.CANCELLED)
        self.assertNotIn(ErrorCode.CANCELLED, RETRYABLE_ERRORS)


class TestCancellationToken(unittest.TestCase):

    def test_callbacks_run_once(self):
        token = CancellationToken()
        calls = []
        token.register(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        self.assertEqual(calls, [1])
        self.assertTrue(token.cancelled)

    def test_register_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.register(lambda: calls.append(1))
        self.assertEqual(calls, [1])

    def test_child_follows_parent_only(self):
        parent = CancellationToken()
        child = parent.child()
        child.cancel()
        self.assertFalse(parent.cancelled)

        child2 = parent.child()
        parent.cancel()
        self.assertTrue(child2.cancelled)

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with self.assertRaises(OperationCancelled):
            token.raise_if_cancelled()


class TestSecurityUtils(unittest.TestCase):
    """Test filename sanitization and output paths."""

    def test_sanitize_filename_basic(self):
        self.assertEqual(sanitize_filename("Intro"), "Intro")

    def test_sanitize_filename_special_chars(self):
        result = sanitize_filename('a<b>c:d"e/f\\g|h?i*j')
        for ch in '<>:"/\\|?*':
            self.assertNotIn(ch, result)

    def test_sanitize_filename_path_traversal(self):
        result = sanitize_filename("../../etc/passwd")
        self.assertNotIn("..", result)
        self.assertNotIn("/", result)

    def test_sanitize_filename_empty(self):
        self.assertEqual(sanitize_filename(""), "")

    def test_whole_file_output_path(self):
        path = subtitle_output_path(Path("/videos/talk.mp4"))
        self.assertEqual(path, Path("/videos/talk.srt"))

    def test_clip_output_path(self):
        path = subtitle_output_path(Path("/videos/talk.mp4"), "Part 1")
        self.assertEqual(path, Path("/videos/talk_Part_1.srt"))

    def test_clip_output_path_stays_in_folder(self):
        path = subtitle_output_path(Path("/videos/talk.mp4"), "../../evil")
        self.assertEqual(path.parent, Path("/videos"))

    def test_check_args_refuses_strings(self):
        with self.assertRaises(TypeError):
            check_args("ffmpeg -i in.mp4 out.wav")
        self.assertEqual(check_args(["ffmpeg", 1]), ["ffmpeg", "1"])


class TestChunking(unittest.TestCase):
    """Test time-based chunk planning."""

    def test_three_windows(self):
        chunks = plan_chunks(1200, 600, 10)
        self.assertEqual(len(chunks), 3)
        self.assertEqual([(c.start_offset, c.end_offset) for c in chunks],
                         [(0.0, 600.0), (590.0, 1190.0), (1180.0, 1200.0)])
        self.assertEqual([c.index for c in chunks], [0, 1, 2])

    def test_short_audio_single_chunk(self):
        chunks = plan_chunks(300, 600, 10, "/tmp/audio.wav")
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].end_offset, 300)
        self.assertEqual(chunks[0].file_path, "/tmp/audio.wav")

    def test_windows_cover_audio(self):
        chunks = plan_chunks(3601.5, 600, 30)
        self.assertEqual(chunks[0].start_offset, 0)
        self.assertAlmostEqual(chunks[-1].end_offset, 3601.5)
        for prev, cur in zip(chunks, chunks[1:]):
            self.assertLess(cur.start_offset, prev.end_offset)

    def test_invalid_overlap(self):
        with self.assertRaises(JobError) as ctx:
            plan_chunks(1200, 600, 600)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_CONFIGURATION)
        with self.assertRaises(JobError):
            plan_chunks(1200, 600, -1)

    def test_unknown_duration(self):
        with self.assertRaises(JobError) as ctx:
            plan_chunks(0, 600, 10)
        self.assertEqual(ctx.exception.code, ErrorCode.CHUNKING)


def _windowed(chunks, lines):
    """Segments fully inside each chunk window, as a provider would return them."""
    transcripts = []
    for c in chunks:
        segs = [Segment(s, e, t) for s, e, t in lines if s >= c.start_offset and e <= c.end_offset]
        transcripts.append(ChunkTranscript(c.index, segs, c.start_offset, c.end_offset))
    return transcripts


def _clipped(chunks, lines):
    """Segments touching each window, cut at its edges like a provider hearing part of a line."""
    transcripts = []
    for c in chunks:
        segs = [Segment(max(s, c.start_offset), min(e, c.end_offset), t)
                for s, e, t in lines if e > c.start_offset and s < c.end_offset]
        transcripts.append(ChunkTranscript(c.index, segs, c.start_offset, c.end_offset))
    return transcripts


class TestMerge(unittest.TestCase):
    """Test overlap-aware transcript merging."""

    def setUp(self):
        self.lines = [(float(s), float(s + 5), f"line {s // 5}") for s in range(0, 1200, 5)]

    def test_overlap_yields_each_line_once(self):
        chunks = plan_chunks(1200, 600, 10)
        merged = merge_transcripts(_windowed(chunks, self.lines))
        self.assertEqual([s.text for s in merged], [t for _, _, t in self.lines])

    def test_no_overlapping_ranges(self):
        chunks = plan_chunks(1200, 600, 10)
        merged = merge_transcripts(_windowed(chunks, self.lines))
        for prev, cur in zip(merged, merged[1:]):
            self.assertLessEqual(prev.end_time, cur.start_time)
            self.assertLessEqual(prev.start_time, cur.start_time)

    def test_shifted_duplicate_collapses(self):
        # Both providers heard the same sentence, with slightly different timings
        a = ChunkTranscript(0, [Segment(590.5, 597.5, "Hello world, again!")], 0.0, 600.0)
        b = ChunkTranscript(1, [Segment(592.5, 599.5, "hello world again")], 590.0, 1190.0)
        merged = merge_transcripts([a, b])
        self.assertEqual(len(merged), 1)

    def test_single_chunk_untouched(self):
        t = ChunkTranscript(0, [Segment(0, 2, "a"), Segment(2, 4, "b")], 0.0, None)
        merged = merge_transcripts([t])
        self.assertEqual([(s.start_time, s.end_time, s.text) for s in merged],
                         [(0, 2, "a"), (2, 4, "b")])

    def test_repeated_line_in_one_chunk_kept(self):
        t = ChunkTranscript(0, [Segment(10, 11, "OK"), Segment(300, 301, "OK")], 0.0, None)
        merged = merge_transcripts([t])
        self.assertEqual([(s.start_time, s.end_time, s.text) for s in merged],
                         [(10, 11, "OK"), (300, 301, "OK")])

    def test_back_to_back_repeats_kept(self):
        t = ChunkTranscript(0, [Segment(10, 11, "no"), Segment(11, 12, "no")], 0.0, None)
        self.assertEqual(len(merge_transcripts([t])), 2)

    def test_repeats_across_chunks_kept(self):
        lines = [(0.0, 5.0, "Go"), (100.0, 105.0, "Go"), (700.0, 705.0, "Go"), (800.0, 805.0, "end")]
        merged = merge_transcripts(_windowed(plan_chunks(1200, 600, 10), lines))
        self.assertEqual([(s.start_time, s.end_time, s.text) for s in merged], lines)

    def test_line_crossing_window_end(self):
        # Cut at 600 by the first chunk, heard whole by the second
        lines = [(580.0, 585.0, "before"), (597.0, 603.0, "across the boundary"), (610.0, 615.0, "after")]
        merged = merge_transcripts(_clipped(plan_chunks(1200, 600, 10), lines))
        self.assertEqual([(s.start_time, s.end_time, s.text) for s in merged], lines)

    def test_line_crossing_overlap_midpoint(self):
        lines = [(593.0, 598.0, "over the midpoint"), (620.0, 625.0, "later")]
        merged = merge_transcripts(_clipped(plan_chunks(1200, 600, 10), lines))
        self.assertEqual([(s.start_time, s.end_time, s.text) for s in merged], lines)

    def test_long_line_covering_overlap(self):
        lines = [(100.0, 105.0, "start"), (580.0, 615.0, "one very long sentence"), (700.0, 705.0, "end")]
        merged = merge_transcripts(_clipped(plan_chunks(1200, 600, 10), lines))
        self.assertEqual([(s.start_time, s.end_time, s.text) for s in merged], lines)

    def test_merge_empty(self):
        self.assertEqual(merge_transcripts([]), [])

    def test_text_similarity(self):
        self.assertEqual(text_similarity("Hello, World", "hello world"), 1.0)
        self.assertLess(text_similarity("completely", "different"), 0.5)
        self.assertEqual(text_similarity("", "x"), 0.0)


class TestSrtFormat(unittest.TestCase):
    """Test SRT rendering and parsing."""

    def test_format_timestamp(self):
        self.assertEqual(format_timestamp(0), "00:00:00,000")
        self.assertEqual(format_timestamp(3661.5), "01:01:01,500")
        self.assertEqual(format_timestamp(1.0005), "00:00:01,000")

    def test_parse_timestamp(self):
        self.assertAlmostEqual(parse_timestamp("01:01:01,500"), 3661.5)
        self.assertAlmostEqual(parse_timestamp("00:00:02.5"), 2.5)

    def test_render(self):
        srt = render_srt([Segment(0, 1.5, "Hello"), Segment(2, 3, "World")])
        self.assertEqual(
            srt,
            "1\n00:00:00,000 --> 00:00:01,500\nHello\n\n"
            "2\n00:00:02,000 --> 00:00:03,000\nWorld\n",
        )

    def test_parse_tolerant(self):
        content = "\ufeff1\r\n00:00:01.000 --> 00:00:02,500\r\nHi there\r\n\r\n00:00:03,000 --> 00:00:04,000\r\nNo number\r\n"
        segs = parse_srt(content)
        self.assertEqual(len(segs), 2)
        self.assertEqual(segs[0].text, "Hi there")
        self.assertAlmostEqual(segs[0].end_time, 2.5)
        self.assertEqual(segs[1].text, "No number")

    def test_parse_empty(self):
        self.assertEqual(parse_srt(""), [])

    def test_parse_garbage(self):
        with self.assertRaises(JobError) as ctx:
            parse_srt("this is not a subtitle file")
        self.assertEqual(ctx.exception.code, ErrorCode.TRANSCRIPT_PARSE)

    def test_render_parse(self):
        segments = [Segment(0.25, 1.75, "one"), Segment(2.0, 4.125, "two\nlines")]
        parsed = parse_srt(render_srt(segments))
        self.assertEqual([(s.start_time, s.end_time, s.text) for s in parsed],
                         [(0.25, 1.75, "one"), (2.0, 4.125, "two\nlines")])


class TestRetryPolicy(unittest.TestCase):
    """Test bounded retries."""

    def setUp(self):
        self.policy = RetryPolicy(max_attempts=3, base_delay=0)

    def test_retries_transient_then_succeeds(self):
        calls = []

        def op():
            calls.append(1)
            if len(calls) < 3:
                raise JobError(ErrorCode.NETWORK_TRANSIENT, "reset")
            return "ok"

        self.assertEqual(self.policy.execute(op), "ok")
        self.assertEqual(len(calls), 3)

    def test_fatal_error_not_retried(self):
        calls = []

        def op():
            calls.append(1)
            raise JobError(ErrorCode.PROVIDER_AUTH_QUOTA, "bad key")

        with self.assertRaises(JobError) as ctx:
            self.policy.execute(op)
        self.assertEqual(ctx.exception.code, ErrorCode.PROVIDER_AUTH_QUOTA)
        self.assertEqual(len(calls), 1)

    def test_gives_up_after_max_attempts(self):
        calls = []

        def op():
            calls.append(1)
            raise requests.exceptions.Timeout("slow")

        with self.assertRaises(JobError) as ctx:
            self.policy.execute(op, max_attempts=2)
        self.assertEqual(ctx.exception.code, ErrorCode.TIMEOUT)
        self.assertEqual(len(calls), 2)

    def test_unexpected_error_is_fatal(self):
        with self.assertRaises(JobError) as ctx:
            self.policy.execute(lambda: 1 / 0)
        self.assertEqual(ctx.exception.code, ErrorCode.UNEXPECTED)

    def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()
        with self.assertRaises(OperationCancelled):
            self.policy.execute(lambda: "never", token)

    def test_delay_grows(self):
        policy = RetryPolicy(base_delay=1.0, factor=2.0, max_delay=30, jitter=0)
        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3)], [1.0, 2.0, 4.0])
        self.assertEqual(policy.delay_for(10), 30)


class TestCacheManager(unittest.TestCase):
    """Test the fingerprint cache."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.cache = CacheManager(self.root / "cache", clock=lambda: self.now)

    def tearDown(self):
        self.tmp.cleanup()

    def test_hit_skips_compute(self):
        calls = []

        def compute():
            calls.append(1)
            return {"segments": [[0, 1, "x"]]}

        first = self.cache.get_or_compute("abc", timedelta(hours=1), compute)
        second = self.cache.get_or_compute("abc", timedelta(hours=1), compute)
        self.assertEqual(first, second)
        self.assertEqual(len(calls), 1)

    def test_expired_entry_recomputes(self):
        calls = []
        self.cache.get_or_compute("abc", timedelta(hours=1), lambda: calls.append(1) or "v1")
        self.now += timedelta(hours=2)
        value = self.cache.get_or_compute("abc", timedelta(hours=1), lambda: calls.append(1) or "v2")
        self.assertEqual(value, "v2")
        self.assertEqual(len(calls), 2)

    def test_corrupt_entry_is_miss(self):
        (self.root / "cache" / "bad.json").write_text("{not json", encoding="utf-8")
        self.assertIsNone(self.cache.get("bad"))
        self.assertEqual(self.cache.get_or_compute("bad", None, lambda: "fresh"), "fresh")
        self.assertEqual(self.cache.get("bad"), "fresh")

    def test_invalid_key(self):
        with self.assertRaises(ValueError):
            self.cache.get("../escape")

    def test_sweep_removes_only_expired(self):
        self.cache.put("old", "x", timedelta(minutes=1))
        self.cache.put("new", "y", timedelta(days=1))
        self.now += timedelta(hours=1)
        self.assertEqual(self.cache.sweep(), 1)
        self.assertIsNone(self.cache.get("old"))
        self.assertEqual(self.cache.get("new"), "y")
        self.assertFalse(list((self.root / "cache").glob("*.sweep")))

    def test_fingerprint_depends_on_inputs(self):
        audio = self.root / "a.wav"
        audio.write_bytes(b"RIFF0000")
        base = make_fingerprint(audio, "remote_bcut", {"chunk": 600})
        self.assertEqual(base, make_fingerprint(audio, "remote_bcut", {"chunk": 600}))
        self.assertNotEqual(base, make_fingerprint(audio, "remote_openai", {"chunk": 600}))
        self.assertNotEqual(base, make_fingerprint(audio, "remote_bcut", {"chunk": 300}))
        audio.write_bytes(b"RIFF0001")
        self.assertNotEqual(base, make_fingerprint(audio, "remote_bcut", {"chunk": 600}))


class TestConfig(unittest.TestCase):
    """Test config loading and validation."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "config.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_defaults(self):
        config = AppConfig(self.path)
        options = config.transcription_options()
        self.assertTrue(options.enable_chunking)
        self.assertEqual(options.chunk_length_seconds, 600)
        self.assertEqual(options.chunk_overlap_seconds, 10)
        self.assertEqual(options.cache_ttl, timedelta(days=7))
        self.assertEqual(config.provider_settings(AsrProviderKind.REMOTE_OPENAI), {})

    def test_values_are_clamped(self):
        self.path.write_text(json.dumps({
            "chunk_overlap_sec": 100,
            "chunk_length_sec": 5,
            "max_parallel_chunks": "lots",
            "retry_max_attempts": 99,
        }), encoding="utf-8")
        config = AppConfig(self.path)
        self.assertEqual(config.get("chunk_length_sec"), 60)
        self.assertLess(config.get("chunk_overlap_sec"), 60)
        self.assertEqual(config.get("max_parallel_chunks"), 3)
        self.assertEqual(config.get("retry_max_attempts"), 10)

    def test_broken_file_uses_defaults(self):
        self.path.write_text("{oops", encoding="utf-8")
        config = AppConfig(self.path)
        self.assertEqual(config.get("max_parallel_jobs"), 1)

    def test_set_persists(self):
        config = AppConfig(self.path)
        config.set("providers", {AsrProviderKind.REMOTE_OPENAI: {"api_key": "sk-test"}})
        reloaded = AppConfig(self.path)
        self.assertEqual(reloaded.provider_settings(AsrProviderKind.REMOTE_OPENAI)["api_key"], "sk-test")


class TestDatabase(unittest.TestCase):
    """Test SQLite task persistence."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        from clipscribe.core.db_sqlite import Database
        self.db = Database(Path(self.tmp.name) / "tasks.db")

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_create_task(self):
        task = self.db.create_task("/videos/a.mp4", AsrProviderKind.REMOTE_BCUT)
        self.assertEqual(task.status, TaskStatus.PENDING)
        self.assertEqual(task.task_type, TaskType.WHOLE_FILE)
        self.assertEqual(task.source_file_name, "a.mp4")

    def test_create_clip_task(self):
        task = self.db.create_task("/videos/a.mp4", AsrProviderKind.REMOTE_BCUT,
                                   clip_name="Intro", clip_start_ms=0, clip_end_ms=5000)
        fetched = self.db.get_task(task.id)
        self.assertTrue(fetched.is_clip)
        self.assertEqual(fetched.clip_end_ms, 5000)
        self.assertEqual(fetched.display_name, "a.mp4 [Intro]")

    def test_order_is_insertion_order(self):
        ids = [self.db.create_task(f"/v/{n}.mp4", AsrProviderKind.REMOTE_BCUT).id for n in range(5)]
        self.assertEqual([t.id for t in self.db.get_all_tasks()], ids)

    def test_progress_only_rises_while_processing(self):
        task = self.db.create_task("/videos/a.mp4", AsrProviderKind.REMOTE_BCUT)
        self.assertFalse(self.db.update_progress(task.id, 10))
        self.db.update_task_status(task.id, TaskStatus.PROCESSING, progress=0.0)
        self.assertTrue(self.db.update_progress(task.id, 40))
        self.assertFalse(self.db.update_progress(task.id, 20))
        self.assertEqual(self.db.get_task(task.id).progress, 40)

    def test_terminal_status_sets_completed_at(self):
        task = self.db.create_task("/videos/a.mp4", AsrProviderKind.REMOTE_BCUT)
        self.db.update_task_status(task.id, TaskStatus.FAILED,
                                   error_code=ErrorCode.TIMEOUT, error_message="slow")
        fetched = self.db.get_task(task.id)
        self.assertIsNotNone(fetched.completed_at)
        self.assertEqual(fetched.error_code, ErrorCode.TIMEOUT)

    def test_mark_interrupted(self):
        task = self.db.create_task("/videos/a.mp4", AsrProviderKind.REMOTE_BCUT)
        self.db.update_task_status(task.id, TaskStatus.PROCESSING)
        self.assertEqual(self.db.mark_interrupted("Interrupted"), 1)
        self.assertEqual(self.db.get_task(task.id).status, TaskStatus.CANCELLED)

    def test_delete_by_status(self):
        a = self.db.create_task("/videos/a.mp4", AsrProviderKind.REMOTE_BCUT)
        self.db.create_task("/videos/b.mp4", AsrProviderKind.REMOTE_BCUT)
        self.db.update_task_status(a.id, TaskStatus.COMPLETED)
        self.assertEqual(self.db.delete_tasks_by_status(TaskStatus.COMPLETED), 1)
        self.assertEqual(len(self.db.get_all_tasks()), 1)


class TestOutputWriter(unittest.TestCase):
    """Test output file operations."""

    def test_write_next_to_source(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "movie.mp4"
            source.write_bytes(b"")
            srt = "1\n00:00:00,000 --> 00:00:01,000\nHi\n"

            out = write_subtitles(srt, source)
            self.assertEqual(out, Path(tmpdir) / "movie.srt")
            self.assertEqual(out.read_bytes(), srt.encode("utf-8"))

            clip = write_subtitles(srt, source, "Scene 2")
            self.assertEqual(clip.name, "movie_Scene_2.srt")
            self.assertEqual(sorted(p.name for p in Path(tmpdir).iterdir()),
                             ["movie.mp4", "movie.srt", "movie_Scene_2.srt"])


class TestHttpMapping(unittest.TestCase):
    """Test HTTP status and exception classification."""

    def _resp(self, status, text="body"):
        return mock.Mock(status_code=status, text=text)

    def test_status_codes(self):
        cases = {
            401: ErrorCode.PROVIDER_AUTH_QUOTA,
            402: ErrorCode.PROVIDER_AUTH_QUOTA,
            403: ErrorCode.PROVIDER_AUTH_QUOTA,
            429: ErrorCode.RATE_LIMITED,
            504: ErrorCode.TIMEOUT,
            503: ErrorCode.NETWORK_TRANSIENT,
            400: ErrorCode.PROVIDER_REJECTED,
        }
        for status, code in cases.items():
            with self.assertRaises(JobError) as ctx:
                raise_for_http_status(self._resp(status), "Vendor")
            self.assertEqual(ctx.exception.code, code, status)

    def test_success_passes(self):
        raise_for_http_status(self._resp(200), "Vendor")

    def test_error_body_truncated(self):
        with self.assertRaises(JobError) as ctx:
            raise_for_http_status(self._resp(400, "x" * 5000), "Vendor")
        self.assertLess(len(ctx.exception.message), 400)

    def test_request_exceptions(self):
        session = mock.Mock()
        session.request.side_effect = requests.exceptions.Timeout()
        with self.assertRaises(JobError) as ctx:
            http_request(session, "GET", "http://example.invalid", CancellationToken(), "Vendor")
        self.assertEqual(ctx.exception.code, ErrorCode.TIMEOUT)

        session.request.side_effect = requests.exceptions.ConnectionError()
        with self.assertRaises(JobError) as ctx:
            http_request(session, "GET", "http://example.invalid", CancellationToken(), "Vendor")
        self.assertEqual(ctx.exception.code, ErrorCode.NETWORK_TRANSIENT)

    def test_bad_endpoint_is_configuration_error(self):
        session = mock.Mock()
        for exc in (requests.exceptions.MissingSchema("no scheme"),
                    requests.exceptions.InvalidURL("bad host"),
                    requests.exceptions.InvalidSchema("ftp")):
            session.request.side_effect = exc
            with self.assertRaises(JobError) as ctx:
                http_request(session, "POST", "api.example.com/v1", CancellationToken(), "Vendor")
            self.assertEqual(ctx.exception.code, ErrorCode.INVALID_CONFIGURATION)
            self.assertFalse(ctx.exception.retryable)

    def test_bad_endpoint_not_retried(self):
        session = mock.Mock()
        session.request.side_effect = requests.exceptions.MissingSchema("no scheme")
        policy = RetryPolicy(max_attempts=3, base_delay=0)
        with self.assertRaises(JobError):
            policy.execute(lambda: http_request(session, "GET", "example", CancellationToken(), "Vendor"))
        self.assertEqual(session.request.call_count, 1)


class TestProviders(unittest.TestCase):
    """Test provider factories and response parsing."""

    def test_unknown_provider(self):
        with self.assertRaises(JobError) as ctx:
            create_provider("nope", {})
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_CONFIGURATION)

    def test_openai_requires_key(self):
        with self.assertRaises(JobError) as ctx:
            create_provider(AsrProviderKind.REMOTE_OPENAI, {})
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_CONFIGURATION)

    def test_verify_api_key(self):
        with mock.patch("clipscribe.core.transcribe_openai.requests.get") as get:
            get.return_value = mock.Mock(status_code=200)
            self.assertEqual(verify_api_key("https://api.example.com/", "sk"), (True, "Key verified"))
            self.assertEqual(get.call_args.args[0], "https://api.example.com/v1/models")

            get.return_value = mock.Mock(status_code=401)
            ok, _ = verify_api_key("https://api.example.com", "bad")
            self.assertFalse(ok)

            get.side_effect = requests.exceptions.ConnectionError()
            ok, message = verify_api_key("https://api.example.com", "sk")
            self.assertFalse(ok)
            self.assertIn("Network error", message)

    def test_openai_transcribe_shifts_to_chunk(self):
        provider = create_provider(AsrProviderKind.REMOTE_OPENAI, {"api_key": "sk-test"})
        srt = "1\n00:00:01,000 --> 00:00:03,500\nhello\n\n2\n00:00:04,000 --> 00:11:00,000\nrunaway\n"
        session = mock.MagicMock()
        session.request.return_value = mock.Mock(status_code=200, text=srt)

        with tempfile.TemporaryDirectory() as tmpdir:
            audio = Path(tmpdir) / "chunk_0001.wav"
            audio.write_bytes(b"RIFF")
            with mock.patch("clipscribe.core.transcribe_openai.requests.Session") as session_cls:
                session_cls.return_value.__enter__.return_value = session
                transcript = provider.transcribe(AudioChunk(1, 590.0, 1190.0, str(audio)))

        self.assertEqual(transcript.chunk_index, 1)
        self.assertEqual(transcript.window_start, 590.0)
        self.assertAlmostEqual(transcript.segments[0].start_time, 591.0)
        self.assertAlmostEqual(transcript.segments[0].end_time, 593.5)
        # Clamped to the window end
        self.assertAlmostEqual(transcript.segments[1].end_time, 1190.0)
        headers = session.request.call_args.kwargs["headers"]
        self.assertEqual(headers["Authorization"], "Bearer sk-test")

    def test_bcut_result_parsing(self):
        result = json.dumps({"utterances": [
            {"start_time": 1500, "end_time": 3000, "transcript": " hi ",
             "words": [{"start_time": 1500, "end_time": 2000, "label": "hi"}]},
            {"start_time": 3000, "end_time": 3500, "transcript": ""},
        ]})
        segs = segments_from_result(result)
        self.assertEqual(len(segs), 1)
        self.assertEqual((segs[0].start_time, segs[0].end_time, segs[0].text), (1.5, 3.0, "hi"))
        words = segments_from_result(result, word_timestamps=True)
        self.assertEqual(words[0].end_time, 2.0)

    def test_bcut_malformed_result(self):
        with self.assertRaises(JobError) as ctx:
            segments_from_result('{"utterances": [{"transcript": "no times"}]}')
        self.assertEqual(ctx.exception.code, ErrorCode.TRANSCRIPT_PARSE)


class TestLocalWhisper(unittest.TestCase):
    """Test faster-whisper helpers."""

    def test_normalize_model_name(self):
        self.assertEqual(normalize_model_name("faster-whisper-large-v3"), "large-v3")
        self.assertEqual(normalize_model_name("Faster-Whisper-medium"), "medium")
        self.assertEqual(normalize_model_name("small"), "small")
        self.assertEqual(normalize_model_name(""), "")

    def test_progress_parser(self):
        parser = WhisperProgressParser()
        self.assertEqual(parser.parse("  42% |####      |")[0], 42)
        self.assertEqual(parser.parse("  12% |#         |")[0], 42)
        self.assertIsNone(parser.parse("Loading model"))
        self.assertEqual(parser.parse("Subtitles are written to 'out' directory.")[0], 100)

    def test_build_args(self):
        provider = LocalWhisperCpu({
            "program_path": "faster-whisper-xxl",
            "models_dir": "/models",
            "model": "faster-whisper-large-v3",
            "language": "en",
            "vad_filter": True,
            "vad_threshold": 0.5,
        })
        args = provider.build_args("/tmp/a.wav", "/tmp/out")
        self.assertEqual(args[args.index("--model") + 1], "large-v3")
        self.assertEqual(args[args.index("--device") + 1], "cpu")
        self.assertEqual(args[args.index("--vad_threshold") + 1], "0.50")
        self.assertEqual(args[-1], "/tmp/a.wav")
        self.assertNotIn("--sentence", args)

    def test_missing_model_folder(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            model_dir = Path(tmpdir) / "faster-whisper-small"
            model_dir.mkdir()
            (model_dir / "model.bin").write_bytes(b"")
            provider = LocalWhisperCpu({
                "program_path": sys.executable,
                "models_dir": tmpdir,
                "model": "faster-whisper-small",
            })
            with self.assertRaises(JobError) as ctx:
                provider.validate()
            self.assertIn("tokenizer.json", ctx.exception.message)


class TestSubtitleOptimizer(unittest.TestCase):
    """Test LLM reply handling."""

    def test_extract_fenced(self):
        reply = 'Sure!\n```json\n{"0": "Hello.", "1": "World."}\n```'
        self.assertEqual(extract_json_object(reply), {"0": "Hello.", "1": "World."})

    def test_extract_bare(self):
        self.assertEqual(extract_json_object('here: {"0": "x"} done'), {"0": "x"})

    def test_extract_garbage(self):
        with self.assertRaises(JobError) as ctx:
            extract_json_object("no json here")
        self.assertEqual(ctx.exception.code, ErrorCode.TRANSCRIPT_PARSE)

    def test_optimize_keeps_timings_and_missing_lines(self):
        optimizer = SubtitleOptimizer({"base_url": "http://llm.local", "api_key": "k", "model": "m"},
                                      RetryPolicy(base_delay=0))
        segments = [Segment(0, 1, "um hello"), Segment(1, 2, "world")]
        with mock.patch.object(SubtitleOptimizer, "_complete", return_value={"0": "Hello."}):
            result = optimizer.optimize(segments)
        self.assertEqual([(s.start_time, s.end_time, s.text) for s in result],
                         [(0, 1, "Hello."), (1, 2, "world")])

    def test_completions_url(self):
        optimizer = SubtitleOptimizer({"base_url": "http://llm.local/"})
        self.assertEqual(optimizer.completions_url, "http://llm.local/v1/chat/completions")


if __name__ == "__main__":
    unittest.main()
