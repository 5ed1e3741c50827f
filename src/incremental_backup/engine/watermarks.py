"""
Durable watermark store. One store (one JSON file) per strategy.
"""
import json
import os
import tempfile
import threading
from collections import defaultdict
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple

from loguru import logger

from incremental_backup.utils.datatypes import EntityKey, Strategy
from incremental_backup.utils.errors import StateError

FORMAT_VERSION = 1


class WatermarkStore:
    """
    Maps entity keys to the last captured progress marker.
    Values are kept in memory and every set() rewrites the file atomically.
    """

    def __init__(self, path: Path, compare: Callable[[str, str], int]):
        """
        :param path: JSON file
        :param compare: cmp-like function for two markers
        """
        self.path = Path(path)
        self._compare = compare
        self._values: Optional[Dict[str, str]] = None
        self._write_lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._key_locks_guard = threading.Lock()

    @classmethod
    def for_strategy(cls, state_dir: Path, strategy: Strategy) -> 'WatermarkStore':
        return cls(Path(state_dir) / f'{strategy.value}_watermarks.json', strategy.compare)

    def load(self) -> Dict[str, str]:
        """
        Read the file. A missing file is an empty store.
        :raises StateError: if the file exists but cannot be read or parsed
        """
        if self._values is not None:
            return self._values
        if not self.path.exists():
            self._values = {}
            return self._values
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StateError(f'Watermark store {self.path} is unreadable: {e}') from e
        if not isinstance(data, dict) or not isinstance(data.get('watermarks'), dict):
            raise StateError(f'Watermark store {self.path} has an invalid format')
        self._values = {str(k): str(v) for k, v in data['watermarks'].items()}
        return self._values

    def get(self, key: EntityKey) -> Optional[str]:
        return self.load().get(str(key))

    def set(self, key: EntityKey, marker: str) -> bool:
        """
        Store a new marker. Older markers than the stored one are ignored.
        :param key: entity
        :param marker: new watermark
        :return: True if the stored value changed
        """
        marker = str(marker)
        with self._write_lock:
            values = self.load()
            current = values.get(str(key))
            if current is not None:
                try:
                    order = self._compare(current, marker)
                except (TypeError, ValueError) as e:
                    raise StateError(
                        f'Cannot compare watermarks {current!r} and {marker!r} of {key}: {e}'
                    ) from e
                if order > 0:
                    logger.warning(f'Refusing to move watermark of {key} back from '
                                   f'{current} to {marker}')
                    return False
                if order == 0:
                    return False
            updated = dict(values)
            updated[str(key)] = marker
            self._write(updated)
            self._values = updated
            logger.debug(f'Watermark of {key}: {current} -> {marker}')
            return True

    def items(self) -> Iterator[Tuple[EntityKey, str]]:
        for key, value in sorted(self.load().items()):
            yield EntityKey.parse(key), value

    def lock(self, key: EntityKey) -> threading.Lock:
        """
        Lock to linearize detect, build and commit for one key.
        """
        with self._key_locks_guard:
            return self._key_locks[str(key)]

    def _write(self, values: Dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f'.{self.path.name}.', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump({'version': FORMAT_VERSION, 'watermarks': values}, f,
                          indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise StateError(f'Failed to write watermark store {self.path}: {e}') from e
