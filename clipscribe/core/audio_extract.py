"""
Audio extraction using ffmpeg.
Target: mono, 16kHz, 16-bit PCM WAV (what every ASR provider accepts).
"""

import logging
import subprocess
from pathlib import Path

from clipscribe.core.cancellation import CancellationToken
from clipscribe.core.constants import (
    ErrorCode, EXTRACT_CHANNELS, EXTRACT_SAMPLE_RATE, EXTRACT_CODEC,
)
from clipscribe.core.error_codes import JobError, OperationCancelled
from clipscribe.core.process_job import ExternalProcessJob, LineParser, parse_ffmpeg_duration
from clipscribe.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)


def build_extract_args(input_path: Path, output_path: Path,
                       start_sec: float | None = None,
                       end_sec: float | None = None) -> list[str]:
    args = ["-y"]
    if start_sec is not None and start_sec > 0:
        # Input seeking is fast and frame-accurate for audio
        args += ["-ss", f"{start_sec:.3f}"]
    args += ["-i", str(input_path)]
    if end_sec is not None:
        length = end_sec - (start_sec or 0.0)
        if length <= 0:
            raise JobError(ErrorCode.INVALID_CONFIGURATION,
                           f"Clip end ({end_sec:.3f}s) must be after start ({start_sec or 0:.3f}s)")
        args += ["-t", f"{length:.3f}"]
    args += [
        "-vn",
        "-ac", str(EXTRACT_CHANNELS),       # mono
        "-ar", str(EXTRACT_SAMPLE_RATE),    # 16kHz
        "-acodec", EXTRACT_CODEC,           # 16-bit PCM
        str(output_path),
    ]
    return args


def extract_audio(ffmpeg_path: str, input_path: Path, output_path: Path,
                  start_sec: float | None = None, end_sec: float | None = None,
                  cancel_token: CancellationToken | None = None,
                  on_progress=None, on_line=None,
                  estimated_duration: float | None = None) -> Path:
    """
    Extract the audio track (or the [start_sec, end_sec) range of it) to WAV.
    Raises JobError(ERR_AUDIO_EXTRACT) on failure, OperationCancelled if cancelled.
    """
    if not input_path.exists():
        raise JobError(ErrorCode.AUDIO_EXTRACT, f"Source file not found: {input_path}")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    if estimated_duration is None and end_sec is not None:
        estimated_duration = end_sec - (start_sec or 0.0)

    job = ExternalProcessJob(
        ffmpeg_path,
        build_extract_args(input_path, output_path, start_sec, end_sec),
        estimated_duration=estimated_duration,
        output_path=str(output_path),
        name="ffmpeg",
    )
    result = job.run(cancel_token, on_line=on_line, on_progress=on_progress)
    if result.cancelled:
        raise OperationCancelled("Audio extraction cancelled")
    if not result.success:
        raise JobError(ErrorCode.AUDIO_EXTRACT, f"Audio extraction failed: {result.error_message}")

    if not output_path.exists() or output_path.stat().st_size == 0:
        raise JobError(ErrorCode.AUDIO_EXTRACT, "Extracted audio file not created")

    logger.info("Extracted audio: %s", output_path)
    return output_path


class _BannerCollector(LineParser):
    """Collects ffmpeg's banner so the Duration line can be read afterwards."""

    def __init__(self):
        self.duration: float | None = None

    def parse(self, line):
        if self.duration is None:
            self.duration = parse_ffmpeg_duration(line)
        return None


def probe_duration(audio_path: Path, ffprobe_path: str | None = "ffprobe",
                   ffmpeg_path: str | None = "ffmpeg",
                   cancel_token: CancellationToken | None = None) -> float:
    """
    Get media duration in seconds.
    Tries ffprobe first, then parses `Duration:` from `ffmpeg -i` output.
    Returns 0.0 when the duration cannot be determined.
    """
    if ffprobe_path:
        args = [
            ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(audio_path),
        ]
        try:
            result = run_subprocess_capture(args, timeout=30)
            if result.returncode == 0:
                return float(result.stdout.strip())
        except (OSError, ValueError, subprocess.TimeoutExpired) as e:
            logger.debug("ffprobe failed for %s: %s", audio_path, e)

    if ffmpeg_path:
        collector = _BannerCollector()
        # `ffmpeg -i` without an output exits non-zero; only the Duration line matters
        job = ExternalProcessJob(ffmpeg_path, ["-hide_banner", "-i", str(audio_path)],
                                 line_parser=collector, timeout=30, name="ffmpeg")
        job.run(cancel_token)
        if collector.duration:
            return collector.duration

    logger.warning("Could not determine duration of %s", audio_path)
    return 0.0
