"""
SubRip (SRT) rendering and parsing.
"""

import logging
import re

from clipscribe.core.constants import ErrorCode
from clipscribe.core.error_codes import JobError
from clipscribe.core.models import Segment

logger = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(r'(\d{1,2}):(\d{2}):(\d{2})[,.](\d{1,3})')
_TIMING_LINE_RE = re.compile(
    r'^\s*(\d{1,2}:\d{2}:\d{2}[,.]\d{1,3})\s*-->\s*(\d{1,2}:\d{2}:\d{2}[,.]\d{1,3})'
)


def format_timestamp(seconds: float) -> str:
    """Seconds -> HH:MM:SS,mmm"""
    total_ms = max(0, int(round(seconds * 1000)))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{ms:03d}"


def parse_timestamp(text: str) -> float:
    """HH:MM:SS,mmm (or HH:MM:SS.mmm) -> seconds"""
    match = _TIMESTAMP_RE.search(text or "")
    if not match:
        raise ValueError(f"Invalid SRT timestamp: {text!r}")
    h, m, s, ms = match.groups()
    # "5" after the separator means 500 ms
    ms = ms.ljust(3, '0')
    return int(h) * 3600 + int(m) * 60 + int(s) + int(ms) / 1000.0


def render_srt(segments: list[Segment]) -> str:
    """
    Standard SubRip layout: cue number, timing line, text, blank line.
    Line endings are LF; the caller writes the text byte-exact.
    """
    blocks = []
    for number, seg in enumerate(segments, start=1):
        text = '\n'.join(line.strip() for line in seg.text.strip().splitlines() if line.strip())
        blocks.append(
            f"{number}\n"
            f"{format_timestamp(seg.start_time)} --> {format_timestamp(seg.end_time)}\n"
            f"{text}\n"
        )
    return '\n'.join(blocks)


def parse_srt(content: str) -> list[Segment]:
    """
    Parse SRT text into segments.
    Tolerates CRLF, a missing cue number, and `.` as the millisecond separator.
    Raises JobError(ERR_TRANSCRIPT_PARSE) if the text has content but no cues.
    """
    if not content or not content.strip():
        return []

    text = content.replace('\r\n', '\n').replace('\r', '\n').lstrip('\ufeff')
    segments = []

    for block in re.split(r'\n\s*\n', text.strip()):
        lines = [l for l in block.split('\n') if l.strip()]
        timing_idx = None
        for i, line in enumerate(lines[:2]):
            if _TIMING_LINE_RE.match(line):
                timing_idx = i
                break
        if timing_idx is None:
            logger.debug("Skipping malformed SRT block: %r", block[:80])
            continue

        start_str, end_str = _TIMING_LINE_RE.match(lines[timing_idx]).groups()
        body = '\n'.join(l.strip() for l in lines[timing_idx + 1:])
        if not body:
            continue
        segments.append(Segment(
            start_time=parse_timestamp(start_str),
            end_time=parse_timestamp(end_str),
            text=body,
        ))

    if not segments:
        raise JobError(ErrorCode.TRANSCRIPT_PARSE, "No subtitle cues found in SRT text")
    return segments
