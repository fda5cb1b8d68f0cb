"""
Retention policy enforcement for local backup volumes.

Volumes live in {backup_dir}/{source_type}/ and carry their creation date in
the filename (backup_{type}_{YYYYMMDD}...). Anything dated before
`now - retention_days` is deleted; files whose date token cannot be parsed
are left alone.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

from sealback.models import DEFAULT_RETENTION_DAYS, Source
from sealback.utils.formatting import format_size, with_fields

DATE_FORMAT = '%Y%m%d'


def parse_backup_date(filename: str, source_type: str) -> Optional[datetime]:
    """
    Extract the date stamp from a backup filename.

    Args:
        filename: e.g. 'backup_mp_20240115.enc' or 'backup_mp_20240115.z03'
        source_type: Source type the file should belong to

    Returns:
        Midnight of the stamped day, or None if the name has no valid stamp
    """
    prefix = f"backup_{source_type}_"
    if not filename.startswith(prefix):
        return None

    token = filename[len(prefix):].split('.', 1)[0]
    if len(token) != 8 or not token.isdigit():
        return None

    try:
        return datetime.strptime(token, DATE_FORMAT)
    except ValueError:
        return None


class RetentionCleaner:
    """
    Deletes expired volumes of a source type.

    A failure to delete one file is logged and the scan continues with the
    remaining files.
    """

    def __init__(self, backup_dir, logger: Optional[logging.Logger] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            backup_dir: Root backup directory holding one folder per source type
            logger: Logger to report to
            clock: Returns the current local time
        """
        self.backup_dir = Path(backup_dir)
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock or datetime.now

    def clean(self, source_type: str, retention_days: int = DEFAULT_RETENTION_DAYS) -> Dict[str, Any]:
        """
        Enforce the retention window for one source type.

        Args:
            source_type: Source type whose directory is scanned
            retention_days: Days to keep volumes

        Returns:
            Dict with summary of the scan:
            {
                'deleted': List[str],
                'skipped': List[str],
                'errors': List[str]
            }

        Raises:
            OSError: If the directory exists but cannot be listed
        """
        type_dir = self.backup_dir / source_type
        now = self.clock()
        cutoff = now - timedelta(days=retention_days)
        summary = {'deleted': [], 'skipped': [], 'errors': []}

        self.logger.info(with_fields(
            f"Enforcing retention for {source_type}",
            directory=type_dir, retention=f"{retention_days}d", cutoff=cutoff.strftime('%Y-%m-%d %H:%M'),
        ))

        if not type_dir.exists():
            self.logger.info(f"No backup directory for {source_type}, nothing to clean")
            return summary

        try:
            entries = sorted(type_dir.iterdir())
        except OSError as e:
            self.logger.error(f"Failed to list {type_dir}: {e}")
            raise

        for path in entries:
            if not path.is_file() or not path.name.startswith(f"backup_{source_type}_"):
                continue

            file_date = parse_backup_date(path.name, source_type)
            if file_date is None:
                self.logger.warning(f"Skipping file without a valid date stamp: {path.name}")
                summary['skipped'].append(str(path))
                continue

            if file_date >= cutoff:
                continue

            try:
                size = path.stat().st_size
                path.unlink()
            except OSError as e:
                error_msg = f"Failed to delete {path}: {e}"
                self.logger.error(error_msg)
                summary['errors'].append(error_msg)
                continue

            summary['deleted'].append(str(path))
            self.logger.info(with_fields(
                "Deleted expired backup",
                file=path, size=format_size(size), age=f"{(now - file_date).days}d",
            ))

        self.logger.info(
            f"Retention for {source_type} complete. "
            f"Deleted: {len(summary['deleted'])}, "
            f"Skipped: {len(summary['skipped'])}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

    def clean_all(self, sources: Iterable[Source]) -> Dict[str, Dict[str, Any]]:
        """Enforce retention for every source; one failing type does not stop the others."""
        results = {}
        for source in sources:
            try:
                results[source.type] = self.clean(source.type, source.retention)
            except OSError as e:
                self.logger.error(f"Retention for {source.type} failed: {e}")
                results[source.type] = {'deleted': [], 'skipped': [], 'errors': [str(e)]}
        return results
