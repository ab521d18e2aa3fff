"""
Retention policy enforcement for backups.

Removes dated backup directories ({base}/{YYYY-MM-DD}) older than the
configured number of days. Runs once at the end of every backup run.
"""

import shutil
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Any, Iterable, Optional, Union


logger = logging.getLogger(__name__)


class RetentionError(Exception):
    """Raised when a backup directory cannot be inspected or removed."""
    pass


class RetentionSweeper:
    """
    Deletes immediate subdirectories of the backup base directory whose
    modification time is strictly older than the threshold.

    Files in the base directory and symlinks are never touched.
    """

    def sweep(
        self,
        base_dir: Union[str, Path],
        threshold_days: int,
        keep: Optional[Iterable[Union[str, Path]]] = None
    ) -> Dict[str, Any]:
        """
        Enforce the retention threshold.

        Args:
            base_dir: Base backup directory
            threshold_days: Age threshold in days (>= 0)
            keep: Directories that are never deleted regardless of age

        Returns:
            Dict with summary of cleanup operations:
            {
                'deleted': List[str],
                'errors': List[str]
            }
        """
        summary = {
            'deleted': [],
            'errors': []
        }

        base = Path(base_dir)
        cutoff = datetime.now() - timedelta(days=threshold_days)
        logger.info(f"Retention: removing backups in {base} older than {threshold_days} days")

        try:
            entries = sorted(base.iterdir())
        except OSError as e:
            error = RetentionError(f"Failed to list backup directory {base}: {e}")
            logger.error(str(error))
            summary['errors'].append(str(error))
            return summary

        kept = {Path(path) for path in (keep or [])}

        for entry in entries:
            if entry in kept:
                continue
            try:
                self._sweep_entry(entry, cutoff, summary)
            except RetentionError as e:
                logger.error(str(e))
                summary['errors'].append(str(e))

        logger.info(
            f"Retention complete. "
            f"Deleted: {len(summary['deleted'])}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

    def _sweep_entry(self, entry: Path, cutoff: datetime, summary: Dict[str, Any]):
        if entry.is_symlink() or not entry.is_dir():
            return

        try:
            modified = datetime.fromtimestamp(entry.stat().st_mtime)
        except OSError as e:
            raise RetentionError(f"Failed to stat {entry}: {e}")

        if modified >= cutoff:
            return

        try:
            shutil.rmtree(entry)
        except OSError as e:
            raise RetentionError(f"Failed to delete old backup {entry}: {e}")

        summary['deleted'].append(str(entry))
        logger.info(f"Deleted old backup directory: {entry}")
