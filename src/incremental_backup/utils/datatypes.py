"""
Contains classes representing entities, change descriptors and backup artifacts.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from .converters import (compare_epochs, compare_segments, compare_values, entity_slug,
                         quote_identifier, quote_literal)


class Strategy(Enum):
    """
    Supported change detection strategies.
    """
    TABLE = 'table'
    ROWS = 'rows'
    BINLOG = 'binlog'

    @property
    def compare(self) -> Callable[[str, str], int]:
        """
        Comparison function for watermarks of this strategy.
        """
        match self:
            case Strategy.TABLE:
                return compare_epochs
            case Strategy.ROWS:
                return compare_values
            case Strategy.BINLOG:
                return compare_segments

    @property
    def artifact_kind(self) -> str:
        return 'binlog' if self is Strategy.BINLOG else 'sql'


@dataclass(frozen=True, order=True)
class EntityKey:
    """
    Identifies a unit of incremental capture.
    A table for the table and row strategies or the whole server (global) for binary logs.
    """
    database: Optional[str] = None
    table: Optional[str] = None

    @classmethod
    def global_key(cls) -> 'EntityKey':
        return cls()

    @classmethod
    def parse(cls, value: str) -> 'EntityKey':
        """
        Inverse of str(key).
        :param value: db.table or global
        :return: key
        """
        if value == GLOBAL:
            return cls.global_key()
        database, sep, table = value.partition('.')
        if not sep or not database or not table:
            raise ValueError(f'Invalid entity key: {value}')
        return cls(database, table)

    @property
    def is_global(self) -> bool:
        return self.database is None

    @property
    def slug(self) -> str:
        """
        Key usable in file names, reversible with parse_entity_slug.
        """
        if self.is_global:
            return GLOBAL
        return entity_slug(self.database, self.table)

    def __str__(self):
        if self.is_global:
            return GLOBAL
        return f'{self.database}.{self.table}'


GLOBAL = 'global'


@dataclass(frozen=True)
class ColumnInfo:
    """
    Column metadata as reported by information_schema.COLUMNS.
    """
    name: str
    data_type: str = ''
    key: str = ''
    extra: str = ''

    @property
    def is_auto_increment(self) -> bool:
        return 'auto_increment' in self.extra.lower()

    @property
    def is_primary_key(self) -> bool:
        return self.key.upper() == 'PRI'

    @property
    def is_temporal(self) -> bool:
        return self.data_type.lower() in ('timestamp', 'datetime', 'date')


@dataclass(frozen=True)
class TableMetadata:
    mod_time: Optional[int] = None
    columns: Tuple[ColumnInfo, ...] = ()


@dataclass(frozen=True)
class ModifiedAfter:
    """
    Whole table, selected because it was modified after the timestamp.
    """
    timestamp: int

    def where_clause(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class ColumnAbove:
    """
    Rows whose incremental column is greater than the value.
    No value means all rows.
    """
    column: str
    value: Optional[str] = None

    def where_clause(self) -> Optional[str]:
        if self.value is None:
            return None
        # digits only are compared as numbers, anything else as a quoted literal
        literal = self.value if self.value.isdigit() else quote_literal(self.value)
        return f'{quote_identifier(self.column)} > {literal}'


@dataclass(frozen=True)
class SegmentRange:
    """
    Binary log segments not captured yet, in order.
    active is the segment the server was writing to during detection (flushed since).
    """
    segments: Tuple[str, ...]
    active: Optional[str] = None

    def where_clause(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Segment:
    """
    A single, complete binary log segment.
    """
    name: str

    def where_clause(self) -> Optional[str]:
        return None


Predicate = Union[ModifiedAfter, ColumnAbove, SegmentRange, Segment]


@dataclass(frozen=True)
class NoChange:
    reason: str = ''


@dataclass(frozen=True)
class Changed:
    """
    predicate selects the new data, observed_max becomes the watermark after a successful build.
    """
    predicate: Predicate
    observed_max: str


DeltaDescriptor = Union[NoChange, Changed]


@dataclass(frozen=True)
class Artifact:
    """
    Compressed payload + checksum file of one entity in one run.
    """
    key: EntityKey
    strategy: Strategy
    path: Path
    checksum_path: Path
    size: int
    created: datetime

    @property
    def files(self) -> List[Path]:
        return [self.path, self.checksum_path]

    def __str__(self):
        return f'Artifact {self.path.name}'


@dataclass(frozen=True)
class UploadResult:
    artifact: Artifact
    ok: bool
    attempts: int
    error: Optional[str] = None


@dataclass
class RunSummary:
    """
    Counters of one coordinator run.
    """
    strategy: Strategy
    started: datetime = field(default_factory=datetime.now)
    entities: int = 0
    changed: int = 0
    unchanged: int = 0
    skipped: int = 0
    artifacts: List[Artifact] = field(default_factory=list)
    uploads_succeeded: int = 0
    uploads_failed: int = 0
    detection_errors: int = 0
    build_errors: int = 0
    swept: int = 0

    @property
    def artifacts_built(self) -> int:
        return len(self.artifacts)

    def __str__(self):
        return (f'{self.strategy.value} backup: {self.entities} entities checked, '
                f'{self.changed} changed, {self.skipped} skipped on shutdown, '
                f'{self.artifacts_built} artifacts built, '
                f'uploads {self.uploads_succeeded} ok / {self.uploads_failed} failed, '
                f'{self.detection_errors} detection errors, {self.build_errors} build errors, '
                f'{self.swept} old files removed')
