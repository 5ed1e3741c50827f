"""
Creates compressed and checksummed artifacts from the data selected by a change.
"""
import gzip
import hashlib
import shutil
import zlib
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from loguru import logger

from incremental_backup.mysql.connector import Connector
from incremental_backup.utils.converters import artifact_stem, parse_artifact_name
from incremental_backup.utils.datatypes import (Artifact, Changed, EntityKey, Segment,
                                                Strategy)
from incremental_backup.utils.errors import BuildError, ConnectorError

CHUNK_SIZE = 1024 * 1024


def sha256sum(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(path: Path) -> Path:
    """
    x.sql.gz -> x.sql.sha256
    """
    return path.with_suffix('.sha256')


def _remove(*paths: Path):
    for path in paths:
        path.unlink(missing_ok=True)


class ArtifactBuilder:
    """
    Materializes changes of one backup class into artifact files.
    """

    def __init__(self, connector: Connector, directory: Path, strategy: Strategy,
                 compression_level: int = 9, min_size: int = 50):
        """
        :param connector: data source
        :param directory: directory of the backup class
        :param strategy: strategy of the backup class
        :param compression_level: gzip level
        :param min_size: smaller payloads are treated as no changes
        """
        self.connector = connector
        self.directory = Path(directory)
        self.strategy = strategy
        self.compression_level = compression_level
        self.min_size = min_size

    def build(self, key: EntityKey, delta: Changed,
              timestamp: Optional[datetime] = None) -> Optional[Artifact]:
        """
        Extract, validate, compress and checksum the change.
        :param key: entity
        :param delta: change to capture
        :param timestamp: run timestamp for the file name
        :return: artifact or None if the payload was too small to matter
        :raises BuildError: if any step failed. No files are left behind.
        """
        timestamp = timestamp or datetime.now()
        segment = delta.predicate.name if isinstance(delta.predicate, Segment) else None
        stem = artifact_stem(key.slug, timestamp, segment)
        raw = self.directory / f'{stem}.{self.strategy.artifact_kind}'
        compressed = raw.with_name(f'{raw.name}.gz')
        checksum = checksum_path_for(compressed)

        logger.info(f'Backing up {segment or key}')
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(raw, 'wb') as f:
                self.connector.extract(key, delta.predicate, f)
        except (ConnectorError, OSError) as e:
            _remove(raw)
            raise BuildError(f'Failed to back up {key}: {e}') from e

        size = raw.stat().st_size
        if size < self.min_size:
            logger.info(f'{key} has no changes ({size} bytes), skipping')
            _remove(raw)
            return None

        try:
            with open(raw, 'rb') as src, gzip.open(
                    compressed, 'wb', compresslevel=self.compression_level) as dst:
                shutil.copyfileobj(src, dst, CHUNK_SIZE)
            _remove(raw)
            with open(checksum, 'w', encoding='utf-8') as f:
                f.write(f'{sha256sum(compressed)}  {compressed.name}\n')
        except OSError as e:
            _remove(raw, compressed, checksum)
            raise BuildError(f'Failed to compress or checksum {key}: {e}') from e

        artifact = Artifact(key=key, strategy=self.strategy, path=compressed,
                            checksum_path=checksum, size=compressed.stat().st_size,
                            created=timestamp)
        logger.success(f'Backed up {segment or key}: {compressed.name} ({artifact.size} bytes)')
        return artifact


def verify_artifact(path: Path, min_size: int = 50) -> Optional[str]:
    """
    Check an artifact: checksum file present and matching, gzip stream intact and not empty.
    :param path: compressed artifact
    :param min_size: min size of the decompressed payload
    :return: None if valid, the problem otherwise
    """
    checksum = checksum_path_for(path)
    if not checksum.is_file():
        return f'Checksum file {checksum.name} not found'
    try:
        expected = checksum.read_text(encoding='utf-8').split()[0]
    except (OSError, IndexError):
        return f'Checksum file {checksum.name} is unreadable'
    if sha256sum(path) != expected:
        return 'Checksum mismatch'
    size = 0
    try:
        with gzip.open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
                size += len(chunk)
    except (OSError, EOFError, zlib.error) as e:
        return f'Failed to decompress: {e}'
    if size < min_size:
        return f'Payload is empty or too small ({size} bytes)'
    return None


def list_artifacts(directory: Path) -> List[Path]:
    """
    Compressed artifacts of a backup class directory, oldest first.
    Other files in the directory are ignored.
    :param directory: directory of the backup class
    :return: artifact paths
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []
    artifacts = []
    for path in directory.glob('*.gz'):
        try:
            artifacts.append((parse_artifact_name(path)['timestamp'], path.name, path))
        except ValueError:
            logger.debug(f'Ignoring {path.name}, not a backup file')
    return [x[2] for x in sorted(artifacts)]
