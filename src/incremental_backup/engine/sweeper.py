import time
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from loguru import logger

from incremental_backup.utils.converters import parse_artifact_name

ARTIFACT_PATTERNS = ('*.gz', '*.sha256')


def sweep(directory: Path, max_age: timedelta, now: Optional[float] = None) -> List[Path]:
    """
    Delete artifacts and checksum files older than max_age from one backup class directory.
    Age is the only criterion. Files not named like artifacts are left alone.
    :param directory: directory of the backup class
    :param max_age: retention window
    :param now: current time as epoch seconds
    :return: deleted files
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []
    cutoff = (time.time() if now is None else now) - max_age.total_seconds()
    logger.info(f'Cleaning up backups in {directory} older than {max_age}')
    removed = []
    for pattern in ARTIFACT_PATTERNS:
        for path in sorted(directory.glob(pattern)):
            if not path.is_file() or path.stat().st_mtime >= cutoff:
                continue
            try:
                parse_artifact_name(path)
            except ValueError:
                logger.debug(f'Skipping {path.name}, not a backup file')
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except PermissionError:
                logger.error(f'Could not delete {path}! Permission denied!')
                continue
            logger.info(f'Deleted old backup file: {path.name}')
            removed.append(path)
    logger.success(f'Cleanup completed, {len(removed)} file(s) removed')
    return removed
