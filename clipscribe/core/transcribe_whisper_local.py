"""
Local faster-whisper command-line program, run as a subprocess.
Two variants share this code: CPU (`--device cpu`) and GPU (`--device cuda`).
"""

import logging
import re
import shutil
import tempfile
from pathlib import Path

from clipscribe.core.asr_provider import AsrProvider, register_provider
from clipscribe.core.cancellation import CancellationToken
from clipscribe.core.constants import (
    AsrProviderKind, ErrorCode, WHISPER_REQUIRED_MODEL_FILES, WHISPER_DEFAULT_LANGUAGE,
    WHISPER_VAD_THRESHOLD,
)
from clipscribe.core.error_codes import JobError, OperationCancelled
from clipscribe.core.models import ProgressCallback, Segment
from clipscribe.core.process_job import ExternalProcessJob, LineParser
from clipscribe.core.srt_format import parse_srt

logger = logging.getLogger(__name__)

_PERCENT_RE = re.compile(r'(\d{1,3})%')
_DONE_MARKER = "subtitles are written to"
_MODEL_PREFIXES = ("faster-whisper-", "faster_whisper_", "fw-")


def normalize_model_name(name: str) -> str:
    """`faster-whisper-large-v3` -> `large-v3` (the name the program expects)."""
    name = (name or "").strip()
    lowered = name.lower()
    for prefix in _MODEL_PREFIXES:
        if lowered.startswith(prefix):
            name = name[len(prefix):]
            break
    return name.strip("-").strip()


def validate_model_dir(model_dir: Path) -> list[str]:
    """Names of required model files missing from `model_dir`."""
    return [f for f in WHISPER_REQUIRED_MODEL_FILES if not (model_dir / f).is_file()]


class WhisperProgressParser(LineParser):
    """`NN%` lines during decoding; "Subtitles are written to" when finished."""

    def __init__(self):
        self.percent = 0

    def parse(self, line: str) -> tuple[int, str] | None:
        if _DONE_MARKER in line.lower():
            self.percent = 100
            return 100, "Subtitles written"
        match = _PERCENT_RE.search(line)
        if not match:
            return None
        pct = min(99, int(match.group(1)))
        self.percent = max(self.percent, pct)
        return self.percent, f"Transcribing: {pct}%"


class LocalWhisperTranscriber(AsrProvider):
    """
    Settings:
        program_path  faster-whisper executable
        models_dir    folder holding one sub-folder per model
        model         model name or folder name (e.g. faster-whisper-large-v3)
        language, vad_filter, vad_threshold, vad_method, word_timestamps,
        prompt, timeout_sec
    """

    device = "cpu"

    def __init__(self, settings: dict | None = None):
        super().__init__(settings)
        raw_model = self.settings.get('model') or ""
        self.model_folder = Path(raw_model).name
        self.model_name = normalize_model_name(self.model_folder)

    @property
    def models_dir(self) -> Path:
        return Path(self.settings.get('models_dir') or "")

    @property
    def model_dir(self) -> Path:
        return self.models_dir / self.model_folder

    def cache_identity(self) -> str:
        return '|'.join([
            self.provider_id,
            self.model_name,
            self.settings.get('language') or WHISPER_DEFAULT_LANGUAGE,
            str(bool(self.settings.get('word_timestamps'))),
        ])

    def validate(self):
        program = self.settings.get('program_path')
        if not program or not (Path(program).is_file() or shutil.which(program)):
            raise JobError(ErrorCode.INVALID_CONFIGURATION, f"faster-whisper program not found: {program}")
        if not self.model_name:
            raise JobError(ErrorCode.INVALID_CONFIGURATION, "No faster-whisper model selected")
        if not self.models_dir.is_dir():
            raise JobError(ErrorCode.INVALID_CONFIGURATION, f"Models folder not found: {self.models_dir}")
        if not self.model_dir.is_dir():
            raise JobError(ErrorCode.INVALID_CONFIGURATION, f"Model folder not found: {self.model_dir}")
        missing = validate_model_dir(self.model_dir)
        if missing:
            raise JobError(ErrorCode.INVALID_CONFIGURATION,
                           f"Model folder {self.model_dir} is missing: {', '.join(missing)}")

    def build_args(self, audio_path: str, output_dir: str) -> list[str]:
        s = self.settings
        args = [
            "--model", self.model_name,
            "--model_dir", str(self.models_dir),
            "--device", self.device,
            "--language", s.get('language') or WHISPER_DEFAULT_LANGUAGE,
            "--output_format", "srt",
            "--output_dir", output_dir,
        ]
        if s.get('vad_filter', True):
            args += ["--vad_filter", "true",
                     "--vad_threshold", f"{float(s.get('vad_threshold', WHISPER_VAD_THRESHOLD)):.2f}"]
            if s.get('vad_method'):
                args += ["--vad_method", s['vad_method']]
        else:
            args += ["--vad_filter", "false"]

        # --sentence would require word timestamps, so it is never passed
        if s.get('word_timestamps'):
            args += ["--word_timestamps", "true", "--one_word", "1"]
        else:
            args += ["--word_timestamps", "false", "--one_word", "0"]

        if s.get('prompt'):
            args += ["--initial_prompt", s['prompt']]

        args += ["--print_progress", "--beep_off", audio_path]
        return args

    def _transcribe_file(self, audio_path: str, progress: ProgressCallback | None,
                         cancel_token: CancellationToken) -> list[Segment]:
        self.validate()
        tmp_dir = Path(tempfile.mkdtemp(prefix="clipscribe_fw_"))
        try:
            if progress:
                progress(5, "Starting faster-whisper")
            job = ExternalProcessJob(
                self.settings['program_path'],
                self.build_args(audio_path, str(tmp_dir)),
                line_parser=WhisperProgressParser(),
                timeout=self.settings.get('timeout_sec'),
                name=f"faster-whisper ({self.device})",
            )
            result = job.run(
                cancel_token,
                on_line=lambda line: logger.debug("faster-whisper: %s", line),
                on_progress=(lambda pct, msg: progress(5 + int(pct * 0.9), msg)) if progress else None,
            )
            if result.cancelled:
                raise OperationCancelled("faster-whisper cancelled")
            if not result.success:
                # Local model failures are not retried
                raise JobError(result.error_code or ErrorCode.PROCESS_EXECUTION,
                               result.error_message, retryable=False)

            srt_file = self._resolve_output(tmp_dir)
            segments = parse_srt(srt_file.read_text(encoding='utf-8', errors='replace'))
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

        if progress:
            progress(100, "Transcription complete")
        return segments

    def _resolve_output(self, output_dir: Path) -> Path:
        candidates = list(output_dir.glob("*.srt"))
        if not candidates:
            found = ', '.join(p.name for p in output_dir.iterdir()) or "nothing"
            raise JobError(ErrorCode.TRANSCRIPT_PARSE,
                           f"faster-whisper wrote no .srt file to {output_dir} (found: {found})")
        # Several files: newest wins
        return max(candidates, key=lambda p: p.stat().st_mtime)


class LocalWhisperCpu(LocalWhisperTranscriber):
    provider_id = AsrProviderKind.LOCAL_WHISPER_CPU
    display_name = "Faster Whisper (CPU)"
    device = "cpu"


class LocalWhisperGpu(LocalWhisperTranscriber):
    provider_id = AsrProviderKind.LOCAL_WHISPER_GPU
    display_name = "Faster Whisper (GPU)"
    device = "cuda"


register_provider(AsrProviderKind.LOCAL_WHISPER_CPU, LocalWhisperCpu)
register_provider(AsrProviderKind.LOCAL_WHISPER_GPU, LocalWhisperGpu)
