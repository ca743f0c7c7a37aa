"""
External transcoder invocation.

Runs one subprocess, streams its merged stdout/stderr line by line, turns
known progress markers into (percent, message) events through a per-tool
line parser, and kills the process when the cancellation token fires.
"""

import logging
import re
import subprocess
import threading
from collections import deque
from typing import Callable, Optional

from clipscribe.core.cancellation import CancellationToken, ensure_token
from clipscribe.core.constants import ErrorCode, PROCESS_TAIL_LINES
from clipscribe.core.error_codes import JobError, OperationCancelled
from clipscribe.core.models import JobResult
from clipscribe.core.security_utils import popen_merged

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r'Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)', re.IGNORECASE)
_TIME_RE = re.compile(r'time=\s*(-?\d+):(\d{2}):(\d{2}(?:\.\d+)?)')
_FRAME_RE = re.compile(r'frame=\s*(\d+)')
_BITRATE_RE = re.compile(r'bitrate=\s*(\S+)')
_SPEED_RE = re.compile(r'speed=\s*(\S+)')
_OUT_TIME_US_RE = re.compile(r'^out_time_(?:us|ms)=(\d+)')
_PROGRESS_END_RE = re.compile(r'^progress=end')

# Lines after which a non-zero exit is explained by the line itself
_FATAL_MARKERS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'No such file or directory',
        r'Invalid data found when processing input',
        r'Unknown encoder',
        r'Unrecognized option',
        r'Error opening (?:input|output)',
        r'Permission denied',
        r'Conversion failed!',
    )
]


def parse_hms(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_ffmpeg_duration(text: str) -> float | None:
    """Extract the first `Duration: HH:MM:SS.xx` value from ffmpeg output."""
    match = _DURATION_RE.search(text or "")
    if not match:
        return None
    seconds = parse_hms(*match.groups())
    return seconds if seconds > 0 else None


class LineParser:
    """Turns one line of tool output into a (percent, message) event or None."""

    def parse(self, line: str) -> tuple[int, str] | None:
        raise NotImplementedError


class FfmpegProgressParser(LineParser):
    """
    Progress from ffmpeg's status line (frame=/time=/bitrate=/speed=) or
    from `-progress pipe:1` key=value output.  The percent is relative to
    `estimated_duration`; when none was given, the first `Duration:` banner
    line is used instead.
    """

    def __init__(self, estimated_duration: float | None = None):
        self.estimated_duration = estimated_duration if estimated_duration and estimated_duration > 0 else None
        self.percent = 0

    def _to_percent(self, position_sec: float) -> int:
        if not self.estimated_duration:
            return self.percent
        pct = int(position_sec / self.estimated_duration * 100)
        # 100 is reserved for a clean exit
        pct = max(0, min(99, pct))
        self.percent = max(self.percent, pct)
        return self.percent

    def parse(self, line: str) -> tuple[int, str] | None:
        if self.estimated_duration is None:
            duration = parse_ffmpeg_duration(line)
            if duration:
                self.estimated_duration = duration
                return None

        if _PROGRESS_END_RE.match(line):
            self.percent = 100
            return 100, "done"

        match = _OUT_TIME_US_RE.match(line)
        if match:
            position = int(match.group(1)) / 1_000_000
            return self._to_percent(position), f"time={position:.1f}s"

        match = _TIME_RE.search(line)
        if not match:
            return None

        position = parse_hms(*match.groups())
        parts = []
        frame = _FRAME_RE.search(line)
        if frame:
            parts.append(f"frame={frame.group(1)}")
        parts.append(f"time={match.group(1)}:{match.group(2)}:{match.group(3)}")
        bitrate = _BITRATE_RE.search(line)
        if bitrate:
            parts.append(f"bitrate={bitrate.group(1)}")
        speed = _SPEED_RE.search(line)
        if speed:
            parts.append(f"speed={speed.group(1)}")
        return self._to_percent(max(0.0, position)), ' '.join(parts)


def _kill(proc: subprocess.Popen):
    if proc.poll() is not None:
        return
    try:
        proc.kill()
    except OSError:
        pass


class ExternalProcessJob:
    """One invocation of an external tool (ffmpeg, a local ASR program...)."""

    def __init__(self, exe: str, args: list[str], cwd: str | None = None,
                 estimated_duration: float | None = None,
                 line_parser: LineParser | None = None,
                 timeout: float | None = None,
                 output_path: str | None = None,
                 name: str = ""):
        self.exe = str(exe)
        self.args = [str(a) for a in args]
        self.cwd = cwd
        self.line_parser = line_parser if line_parser is not None else FfmpegProgressParser(estimated_duration)
        self.timeout = timeout
        self.output_path = output_path
        self.name = name or self.exe
        self.return_code: Optional[int] = None
        self.tail: deque[str] = deque(maxlen=PROCESS_TAIL_LINES)
        self.fatal_line: Optional[str] = None

    def run(self, cancel_token: CancellationToken | None = None,
            on_line: Callable[[str], None] | None = None,
            on_progress: Callable[[int, str], None] | None = None) -> JobResult:
        """
        Run to completion, cancellation or timeout.
        Never raises for process failures; see run_checked() for that.
        """
        token = ensure_token(cancel_token)
        if token.cancelled:
            return JobResult.was_cancelled()

        try:
            proc = popen_merged([self.exe] + self.args, cwd=self.cwd)
        except OSError as e:
            logger.error("Could not launch %s: %s", self.name, e)
            return JobResult.failed(f"Could not launch {self.name}: {e}", ErrorCode.PROCESS_LAUNCH)

        timed_out = threading.Event()
        timer = None
        if self.timeout:
            def _on_timeout():
                timed_out.set()
                _kill(proc)
            timer = threading.Timer(self.timeout, _on_timeout)
            timer.daemon = True
            timer.start()

        try:
            with token.on_cancel(lambda: _kill(proc)):
                for raw in proc.stdout:
                    line = raw.rstrip('\r\n')
                    if not line.strip():
                        continue
                    self._consume(line, on_line, on_progress)
                proc.wait()
        finally:
            if timer is not None:
                timer.cancel()
            # A callback raising must not leave the process behind
            _kill(proc)
            proc.wait()
            if proc.stdout:
                proc.stdout.close()

        self.return_code = proc.returncode

        if token.cancelled:
            logger.info("%s cancelled", self.name)
            return JobResult.was_cancelled()

        if timed_out.is_set():
            return JobResult.failed(f"{self.name} timed out after {self.timeout:.0f}s", ErrorCode.TIMEOUT)

        if self.return_code == 0:
            if on_progress:
                on_progress(100, "done")
            return JobResult.ok(self.output_path)

        if self.fatal_line:
            message = f"{self.name} failed (rc={self.return_code}): {self.fatal_line}"
        else:
            message = f"{self.name} failed (rc={self.return_code}): {self.stderr_tail() or 'no output'}"
        logger.warning("%s", message)
        return JobResult.failed(message, ErrorCode.PROCESS_EXECUTION)

    def _consume(self, line, on_line, on_progress):
        self.tail.append(line)
        if self.fatal_line is None and any(m.search(line) for m in _FATAL_MARKERS):
            self.fatal_line = line.strip()
        if on_line:
            on_line(line)
        event = self.line_parser.parse(line) if self.line_parser else None
        if event and on_progress:
            on_progress(*event)

    def stderr_tail(self, lines: int = 5) -> str:
        return ' | '.join(list(self.tail)[-lines:])

    def run_checked(self, cancel_token: CancellationToken | None = None,
                    on_line: Callable[[str], None] | None = None,
                    on_progress: Callable[[int, str], None] | None = None,
                    error_code: str = ErrorCode.PROCESS_EXECUTION) -> JobResult:
        """Like run(), but raises JobError / OperationCancelled on failure."""
        result = self.run(cancel_token, on_line, on_progress)
        if result.cancelled:
            raise OperationCancelled(f"{self.name} cancelled")
        if not result.success:
            code = result.error_code or error_code
            if code == ErrorCode.PROCESS_EXECUTION:
                code = error_code
            raise JobError(code, result.error_message)
        return result
