"""
Output writer: writes final subtitle SRT files.
"""

import logging
import os
import tempfile
from pathlib import Path

from clipscribe.core.security_utils import subtitle_output_path

logger = logging.getLogger(__name__)


def write_text_atomic(path: Path, text: str) -> Path:
    """
    UTF-8, byte-exact (no newline translation), temp file + rename so a
    half-written subtitle file never appears under the final name.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    return path


def write_subtitles(srt_text: str, source_path: Path, clip_name: str | None = None) -> Path:
    """
    Write subtitles next to the source: <stem>.srt or <stem>_<clip>.srt.
    Returns the path to the written file.
    """
    output_file = subtitle_output_path(Path(source_path), clip_name)
    write_text_atomic(output_file, srt_text)
    logger.info("Wrote subtitles: %s", output_file)
    return output_file
