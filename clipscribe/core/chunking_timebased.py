"""
Time-based audio chunking using ffmpeg.
Windows overlap by a fixed number of seconds; the last one may be shorter.
"""

import json
import logging
from pathlib import Path

from clipscribe.core.cancellation import CancellationToken, ensure_token
from clipscribe.core.constants import (
    ErrorCode, DEFAULT_CHUNK_LENGTH_SEC, DEFAULT_CHUNK_OVERLAP_SEC,
)
from clipscribe.core.error_codes import JobError, OperationCancelled
from clipscribe.core.models import AudioChunk
from clipscribe.core.process_job import ExternalProcessJob

logger = logging.getLogger(__name__)

# Float noise from probed durations must not create a sliver window
_EPSILON = 1e-6


def plan_chunks(total_duration: float,
                chunk_length_sec: float = DEFAULT_CHUNK_LENGTH_SEC,
                overlap_sec: float = DEFAULT_CHUNK_OVERLAP_SEC,
                audio_path: str = "") -> list[AudioChunk]:
    """
    Window i spans [i*step, min(i*step + chunk_length, total)), step = length - overlap.
    Stops at the first window reaching the end of the audio.
    """
    if chunk_length_sec <= 0:
        raise JobError(ErrorCode.INVALID_CONFIGURATION,
                       f"Chunk length must be positive, got {chunk_length_sec}")
    if overlap_sec < 0 or overlap_sec >= chunk_length_sec:
        raise JobError(ErrorCode.INVALID_CONFIGURATION,
                       f"Overlap ({overlap_sec}s) must be >= 0 and < chunk length ({chunk_length_sec}s)")
    if total_duration <= 0:
        raise JobError(ErrorCode.CHUNKING, "Cannot chunk audio of unknown duration")

    if total_duration <= chunk_length_sec + _EPSILON:
        # Whole file, no splitting needed
        return [AudioChunk(index=0, start_offset=0.0, end_offset=float(total_duration),
                           file_path=audio_path)]

    step = chunk_length_sec - overlap_sec
    chunks = []
    idx = 0
    while True:
        start = idx * step
        end = min(start + chunk_length_sec, total_duration)
        chunks.append(AudioChunk(index=idx, start_offset=float(start), end_offset=float(end)))
        if end >= total_duration - _EPSILON:
            break
        idx += 1

    return chunks


def split_audio_into_chunks(ffmpeg_path: str, audio_path: Path, chunks_dir: Path,
                            chunks: list[AudioChunk],
                            cancel_token: CancellationToken | None = None) -> list[AudioChunk]:
    """
    Cut each planned window out of the extracted WAV.
    Fills in AudioChunk.file_path and writes manifest.json alongside.
    """
    token = ensure_token(cancel_token)
    chunks_dir.mkdir(parents=True, exist_ok=True)

    if len(chunks) == 1 and chunks[0].start_offset == 0 and not chunks[0].file_path:
        chunks[0].file_path = str(audio_path)

    for chunk in chunks:
        if chunk.file_path:
            continue
        token.raise_if_cancelled("Chunking cancelled")

        chunk_file = chunks_dir / f"chunk_{chunk.index:04d}.wav"
        args = [
            "-y",
            "-ss", f"{chunk.start_offset:.3f}",
            "-t", f"{chunk.duration:.3f}",
            "-i", str(audio_path),
            "-acodec", "copy",  # already PCM, no re-encoding
            str(chunk_file),
        ]
        job = ExternalProcessJob(ffmpeg_path, args, estimated_duration=chunk.duration,
                                 name=f"ffmpeg chunk {chunk.index}")
        result = job.run(token)
        if result.cancelled:
            raise OperationCancelled("Chunking cancelled")
        if not result.success:
            raise JobError(ErrorCode.CHUNKING, f"Chunk {chunk.index} creation failed: {result.error_message}")
        if not chunk_file.exists():
            raise JobError(ErrorCode.CHUNKING, f"Chunk file {chunk.index} not created")

        chunk.file_path = str(chunk_file)

    write_manifest(chunks_dir, chunks)
    logger.info("Created %d chunks in %s", len(chunks), chunks_dir)
    return chunks


def write_manifest(chunks_dir: Path, chunks: list[AudioChunk]):
    overlap = chunks[0].end_offset - chunks[1].start_offset if len(chunks) > 1 else 0.0
    manifest = {
        'chunking_mode': 'time_based',
        'chunk_sec': chunks[0].duration if chunks else 0.0,
        'overlap_sec': overlap,
        'chunks': [
            {
                'idx': c.index,
                'file': Path(c.file_path).name if c.file_path else None,
                'start_sec': c.start_offset,
                'end_sec': c.end_offset,
            }
            for c in chunks
        ],
    }
    with open(chunks_dir / "manifest.json", 'w', encoding='utf-8') as f:
        json.dump(manifest, f, indent=2)
