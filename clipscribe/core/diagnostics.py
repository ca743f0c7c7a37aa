"""
Diagnostics: tool version detection and system checks.
"""

import shutil
import logging
import subprocess
from pathlib import Path

from clipscribe.core.security_utils import run_subprocess_capture
from clipscribe.core.cache_manager import CacheManager
from clipscribe.core.batch_runner import format_file_size

logger = logging.getLogger(__name__)


def _first_line_version(args: list[str]) -> str:
    try:
        result = run_subprocess_capture(args, timeout=10)
        if result.returncode == 0:
            lines = result.stdout.strip().splitlines()
            return lines[0] if lines else "Unknown version"
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except (OSError, subprocess.TimeoutExpired) as e:
        return f"Error: {e}"


def get_ffmpeg_version(ffmpeg_path: str = "ffmpeg") -> str:
    """Return ffmpeg version string, or error message."""
    return _first_line_version([ffmpeg_path, "-version"])


def get_ffprobe_version(ffprobe_path: str = "ffprobe") -> str:
    return _first_line_version([ffprobe_path, "-version"])


def check_whisper_program(program_path: str | None) -> dict:
    """Check that the faster-whisper program exists."""
    info = {"configured": bool(program_path), "path": program_path or "", "found": False}
    if program_path:
        resolved = program_path if Path(program_path).is_file() else shutil.which(program_path)
        if resolved:
            info["found"] = True
            info["path"] = str(resolved)
    return info


def check_cache(cache_dir: Path) -> dict:
    """Cache directory location and size."""
    cache = CacheManager(cache_dir)
    size = cache.size_bytes()
    return {"path": str(cache_dir), "size_bytes": size, "size": format_file_size(size)}


def get_diagnostics(ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe",
                    whisper_program: str | None = None,
                    cache_dir: Path | None = None) -> dict:
    """Gather all diagnostic information."""
    info = {
        "ffmpeg_version": get_ffmpeg_version(ffmpeg_path),
        "ffprobe_version": get_ffprobe_version(ffprobe_path),
        "whisper_program": check_whisper_program(whisper_program),
    }
    if cache_dir is not None:
        info["cache"] = check_cache(cache_dir)
    logger.debug("Diagnostics: %s", info)
    return info
