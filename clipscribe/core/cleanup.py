"""
Cleanup: delete audio artifacts after a subtitle generation.
"""

import shutil
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def cleanup_workspace(workspace: Path, keep_debug: bool = False):
    """
    Delete a generation workspace (success or failure).

    Deletes: audio/, chunks/
    If keep_debug is True: preserves the chunk manifest.
    """
    if not workspace.exists():
        return

    for dirname in ('audio', 'chunks'):
        dir_path = workspace / dirname
        if not dir_path.exists():
            continue
        if keep_debug and dirname == 'chunks':
            for item in dir_path.iterdir():
                if item.name == 'manifest.json':
                    continue
                try:
                    item.unlink()
                except OSError as e:
                    logger.warning("Failed to delete %s: %s", item, e)
            continue
        try:
            shutil.rmtree(dir_path)
            logger.debug("Deleted: %s", dir_path)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", dir_path, e)

    # If not keeping debug, remove the entire workspace if empty
    if not keep_debug:
        try:
            if workspace.exists() and not any(workspace.iterdir()):
                workspace.rmdir()
                logger.debug("Removed empty workspace: %s", workspace)
        except OSError as e:
            logger.debug("Could not remove workspace %s: %s", workspace, e)


def purge_stale_workspaces(work_root: Path) -> int:
    """Remove workspaces left behind by a crashed run. Returns the number removed."""
    if not work_root.exists():
        return 0
    removed = 0
    for child in work_root.iterdir():
        if child.is_dir():
            shutil.rmtree(child, ignore_errors=True)
            removed += 1
    if removed:
        logger.info("Removed %d stale workspaces from %s", removed, work_root)
    return removed
