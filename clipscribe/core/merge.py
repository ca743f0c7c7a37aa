"""
Merge per-chunk transcripts into a single timeline.
Handles overlap deduplication at chunk boundaries.

Three passes:
  1. midpoint split: inside the overlap of chunks i and i+1, chunk i owns
     segments centred before the overlap midpoint, chunk i+1 the rest
  2. near-duplicate collapse: segments from neighbouring chunks that say the
     same thing at about the same time are reduced to one copy
  3. clamping: the result is sorted and no two ranges overlap; a line cut
     at a chunk boundary and heard again by the next chunk becomes one cue
"""

import logging
import re
from difflib import SequenceMatcher

from clipscribe.core.constants import MERGE_TEXT_SIMILARITY, MERGE_TIME_TOLERANCE_SEC
from clipscribe.core.models import ChunkTranscript, Segment

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r'[\W_]+', re.UNICODE)


def _normalize_text(text: str) -> str:
    return _NON_WORD.sub('', (text or '').lower())


def text_similarity(a: str, b: str) -> float:
    na, nb = _normalize_text(a), _normalize_text(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    return SequenceMatcher(None, na, nb).ratio()


def _boundaries(transcripts: list[ChunkTranscript]) -> list[tuple[float, float]]:
    """[lower, upper) ownership range per chunk, split at overlap midpoints."""
    ranges = []
    for i, t in enumerate(transcripts):
        lower = float('-inf')
        upper = float('inf')
        if i > 0:
            prev = transcripts[i - 1]
            if prev.window_end is not None:
                lower = (t.window_start + prev.window_end) / 2.0
        if i + 1 < len(transcripts):
            nxt = transcripts[i + 1]
            if t.window_end is not None:
                upper = (nxt.window_start + t.window_end) / 2.0
        ranges.append((lower, upper))
    return ranges


def _split_at_midpoints(transcripts: list[ChunkTranscript]) -> list[tuple[Segment, int]]:
    kept = []
    dropped = 0
    for t, (lower, upper) in zip(transcripts, _boundaries(transcripts)):
        for seg in t.segments:
            if lower <= seg.center < upper:
                kept.append((Segment(seg.start_time, max(seg.end_time, seg.start_time), seg.text),
                             t.chunk_index))
            else:
                dropped += 1
    if dropped:
        logger.debug("Midpoint split dropped %d overlapped segments", dropped)
    return kept


def _collapse_near_duplicates(items: list[tuple[Segment, int]],
                              transcripts: list[ChunkTranscript],
                              similarity: float,
                              tolerance: float) -> list[tuple[Segment, int]]:
    """
    Remove cross-chunk duplicates the midpoint split missed because the two
    providers' timings disagreed.  The earlier chunk wins before the overlap
    midpoint, the later chunk after it.
    """
    midpoints = {}
    for i in range(1, len(transcripts)):
        prev, cur = transcripts[i - 1], transcripts[i]
        if prev.window_end is not None:
            midpoints[(prev.chunk_index, cur.chunk_index)] = (cur.window_start + prev.window_end) / 2.0

    items = sorted(items, key=lambda x: (x[0].start_time, x[1]))
    result: list[tuple[Segment, int]] = []
    collapsed = 0

    for seg, chunk_idx in items:
        duplicate_at = None
        j = len(result) - 1
        while j >= 0 and result[j][0].end_time >= seg.start_time - tolerance:
            other, other_idx = result[j]
            if (other_idx != chunk_idx
                    and abs(other.center - seg.center) <= tolerance
                    and text_similarity(other.text, seg.text) >= similarity):
                duplicate_at = j
                break
            j -= 1

        if duplicate_at is None:
            result.append((seg, chunk_idx))
            continue

        collapsed += 1
        other, other_idx = result[duplicate_at]
        earlier, later = sorted([(other, other_idx), (seg, chunk_idx)], key=lambda x: x[1])
        midpoint = midpoints.get((earlier[1], later[1]))
        avg_center = (other.center + seg.center) / 2.0
        if midpoint is None or avg_center < midpoint:
            result[duplicate_at] = earlier
        else:
            result[duplicate_at] = later

    if collapsed:
        logger.debug("Collapsed %d near-duplicate segments across chunk boundaries", collapsed)
    return result


def _clamp(items: list[tuple[Segment, int]], tolerance: float) -> list[Segment]:
    items = sorted(items, key=lambda x: (x[0].start_time, x[0].end_time))
    merged: list[Segment] = []
    last_chunk = None

    for seg, chunk_idx in items:
        if not seg.text.strip():
            continue
        if not merged:
            merged.append(seg)
            last_chunk = chunk_idx
            continue

        prev = merged[-1]
        if (chunk_idx != last_chunk
                and seg.start_time <= prev.end_time + tolerance
                and _normalize_text(prev.text) == _normalize_text(seg.text)):
            # One line split across a chunk boundary: extend the first copy
            prev.end_time = max(prev.end_time, seg.end_time)
            continue

        if seg.start_time <= prev.start_time:
            # Identical start: one cue carrying both lines
            prev.text = f"{prev.text.rstrip()} {seg.text.lstrip()}"
            prev.end_time = max(prev.end_time, seg.end_time)
            continue

        if seg.start_time < prev.end_time:
            prev.end_time = seg.start_time

        merged.append(seg)
        last_chunk = chunk_idx

    return merged


def merge_transcripts(transcripts: list[ChunkTranscript],
                      similarity: float = MERGE_TEXT_SIMILARITY,
                      tolerance: float = MERGE_TIME_TOLERANCE_SEC) -> list[Segment]:
    """
    Merge chunk transcripts (absolute timestamps) into one ordered,
    non-overlapping, duplicate-free list of segments.
    """
    if not transcripts:
        return []

    ordered = sorted(transcripts, key=lambda t: t.chunk_index)
    if len(ordered) == 1:
        items = [(Segment(s.start_time, max(s.end_time, s.start_time), s.text), ordered[0].chunk_index)
                 for s in ordered[0].segments]
    else:
        items = _split_at_midpoints(ordered)
        items = _collapse_near_duplicates(items, ordered, similarity, tolerance)

    merged = _clamp(items, tolerance)
    logger.info("Merged %d chunk transcripts into %d segments", len(ordered), len(merged))
    return merged
