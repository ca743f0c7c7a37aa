"""
Security utilities for ClipScribe.
- Filename sanitization (clip names end up in output file names)
- Path traversal protection for generated output paths
- Safe subprocess execution (argument arrays only)
"""

import re
import subprocess
import pathlib
import logging

from clipscribe.core.constants import UNSAFE_FILENAME_CHARS, MAX_FILENAME_LEN

logger = logging.getLogger(__name__)


# ── Filename / path safety ────────────────────────────────────────────

def sanitize_filename(name: str) -> str:
    """Sanitize a user-supplied label (clip name) for use in a file name."""
    if not name:
        return ""
    # Replace unsafe characters with underscore
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', name)
    # Remove path traversal sequences
    safe = safe.replace('..', '')
    # Collapse runs of whitespace into single underscores
    safe = re.sub(r'\s+', '_', safe.strip())
    safe = re.sub(r'_+', '_', safe)
    # Truncate
    if len(safe) > MAX_FILENAME_LEN:
        safe = safe[:MAX_FILENAME_LEN]
    # Leading dots would make hidden files
    safe = safe.strip('._')
    return safe


def subtitle_output_path(source_path: pathlib.Path, clip_name: str | None = None) -> pathlib.Path:
    """
    <dir>/<stem>.srt for whole files, <dir>/<stem>_<clip>.srt for clips.
    The result always stays inside the source file's directory.
    """
    folder = source_path.parent
    stem = source_path.stem
    safe_clip = sanitize_filename(clip_name or "")
    if safe_clip:
        stem = f"{stem}_{safe_clip}"

    candidate = folder / f"{stem}.srt"
    try:
        real_root = folder.resolve(strict=False)
        real_candidate = candidate.resolve(strict=False)
        if real_candidate.parent != real_root:
            raise ValueError("Path traversal detected")
    except Exception:
        candidate = folder / f"{source_path.stem}.srt"

    return candidate


# ── Subprocess safety ─────────────────────────────────────────────────

def check_args(args) -> list[str]:
    """Validate an argument array; shell strings are refused."""
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")
    return [str(a) for a in args]


def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    args = check_args(args)

    # Force shell=False, dropping any caller-supplied value
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        encoding='utf-8',
        errors='replace',
        timeout=timeout,
        **kwargs,
    )


def popen_merged(args: list[str], cwd: str | None = None) -> subprocess.Popen:
    """
    Start a subprocess with stderr folded into stdout, read line by line.
    Universal newlines split ffmpeg's carriage-return progress updates too.
    """
    args = check_args(args)
    logger.debug("Starting subprocess: %s", ' '.join(args))
    return subprocess.Popen(
        args,
        shell=False,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        encoding='utf-8',
        errors='replace',
        bufsize=1,
    )
