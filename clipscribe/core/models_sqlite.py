"""
SQLite data models (plain dataclasses) for ClipScribe.
"""

from dataclasses import dataclass
from typing import Optional

from clipscribe.core.constants import TaskStatus, TaskType, TERMINAL_STATUSES


@dataclass
class BatchSubtitleTask:
    id: str                          # UUID
    source_file_path: str
    source_file_name: str
    provider: str                    # AsrProviderKind value
    task_type: str = TaskType.WHOLE_FILE
    clip_name: Optional[str] = None
    clip_start_ms: Optional[int] = None
    clip_end_ms: Optional[int] = None
    status: str = TaskStatus.PENDING
    progress: float = 0.0            # 0..100
    output_path: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_clip(self) -> bool:
        return self.task_type == TaskType.CLIP_RANGE

    @property
    def display_name(self) -> str:
        if self.is_clip and self.clip_name:
            return f"{self.source_file_name} [{self.clip_name}]"
        return self.source_file_name

    def dedup_key(self) -> tuple:
        """Two tasks with the same key would produce the same subtitles."""
        if self.is_clip:
            return (self.source_file_path, self.provider, self.clip_start_ms, self.clip_end_ms)
        return (self.source_file_path, self.provider)
