"""
Change detection. Decides what changed since the last captured watermark.

Three strategies of increasing fidelity:
table  - table modification time from information_schema, whole table is dumped
rows   - rows above the last seen value of an incremental column
binlog - binary log segments not captured yet
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger

from incremental_backup.mysql.connector import Connector
from incremental_backup.utils.converters import (compare_segments, compare_values,
                                                 segment_sort_key)
from incremental_backup.utils.datatypes import (Changed, ColumnAbove, ColumnInfo,
                                                DeltaDescriptor, EntityKey,
                                                ModifiedAfter, NoChange, Segment,
                                                SegmentRange, Strategy)
from incremental_backup.utils.errors import ConnectorError, DetectionError

SKEW_BUFFER = 60

# name hints for temporal columns, most preferred first
TEMPORAL_HINTS = ('created', 'updated', 'date')


class DetectionStrategy(ABC):
    """
    ABC for change detection strategies.
    """
    kind: Strategy

    def __init__(self, connector: Connector):
        self.connector = connector

    def entities(self, entity_filter: Callable[[EntityKey], bool]) -> List[EntityKey]:
        """
        All entities this strategy tracks.
        :param entity_filter: database filter from the config
        """
        return [x for x in self.connector.list_entities() if entity_filter(x)]

    @abstractmethod
    def detect(self, key: EntityKey, watermark: Optional[str]) -> DeltaDescriptor:
        """
        :param key: entity
        :param watermark: stored marker, None if never captured
        :return: NoChange or Changed
        """

    def plan(self, delta: Changed) -> List[Changed]:
        """
        Split a change into steps that are built and committed one after another.
        """
        return [delta]


class TableTimestampStrategy(DetectionStrategy):
    """
    Compares the modification time of tables with the watermark + a buffer for clock skew.
    """
    kind = Strategy.TABLE

    def __init__(self, connector: Connector, skew_buffer: int = SKEW_BUFFER):
        super().__init__(connector)
        self.skew_buffer = skew_buffer

    def detect(self, key: EntityKey, watermark: Optional[str]) -> DeltaDescriptor:
        mod_time = self.connector.metadata_for(key).mod_time
        if mod_time is None:
            logger.warning(f'Modification time of {key} is unknown, skipping')
            return NoChange('modification time unknown')
        last = int(watermark) if watermark else 0
        if mod_time <= last + self.skew_buffer:
            return NoChange('not modified')
        return Changed(ModifiedAfter(last), str(mod_time))


def select_incremental_column(columns: Sequence[ColumnInfo]) -> Optional[ColumnInfo]:
    """
    Pick the column for row based backups.
    1. auto increment column
    2. date/time column named created*, updated* or *date* (in this order)
    3. primary key column with id in its name
    :param columns: columns of the table
    :return: column or None if the table has no usable column
    """
    for column in columns:
        if column.is_auto_increment:
            return column
    temporal = [x for x in columns if x.is_temporal]
    for hint in TEMPORAL_HINTS:
        for column in temporal:
            if hint in column.name.lower():
                return column
    for column in columns:
        if column.is_primary_key and 'id' in column.name.lower():
            return column
    return None


class RowWatermarkStrategy(DetectionStrategy):
    """
    Tracks the maximum of an incremental column per table.
    """
    kind = Strategy.ROWS

    def detect(self, key: EntityKey, watermark: Optional[str]) -> DeltaDescriptor:
        column = select_incremental_column(self.connector.metadata_for(key).columns)
        if column is None:
            logger.warning(f'No suitable incremental column found for {key}, skipping')
            return NoChange('no incremental column')
        # max over the whole table, rows written during the dump are caught next time
        current = self.connector.max_value(key, column.name)
        if current is None:
            return NoChange('table is empty')
        if watermark is not None and compare_values(current, watermark) <= 0:
            return NoChange('no new rows')
        return Changed(ColumnAbove(column.name, watermark), current)


class LogSequenceStrategy(DetectionStrategy):
    """
    Captures binary log segments in order. Uses a single global watermark.
    """
    kind = Strategy.BINLOG

    def entities(self, entity_filter: Callable[[EntityKey], bool]) -> List[EntityKey]:
        if not self.connector.binary_logging_enabled():
            logger.error('Binary logging is not enabled on the server. '
                         'Set log_bin in the server config first.')
            return []
        return [EntityKey.global_key()]

    def detect(self, key: EntityKey, watermark: Optional[str]) -> DeltaDescriptor:
        segments = self.connector.list_log_segments()
        if not segments:
            logger.warning('No binary logs found')
            return NoChange('no binary logs')
        active = self.connector.active_log_segment() or segments[-1]
        rotated = [x for x in segments if x != active]
        if watermark is not None and rotated and rotated[-1] == watermark:
            return NoChange('no new binary logs')
        if watermark is None:
            candidates = list(segments)
        elif watermark in segments:
            # the server lists the logs in the order they were written
            candidates = segments[segments.index(watermark) + 1:]
        else:
            base = segment_sort_key(watermark)[0]
            if any(segment_sort_key(x)[0] == base for x in segments):
                logger.warning(f'Last captured binary log {watermark} is not on the server '
                               'anymore. Logs purged before capture are lost.')
            else:
                logger.error(f'No binary log of the series of {watermark} is on the server. '
                             'The log base name changed or all logs were purged, '
                             f'capturing all {len(segments)} binary logs.')
            candidates = [x for x in segments if compare_segments(watermark, x) < 0]
        if not candidates:
            return NoChange('no new binary logs')
        if active in candidates:
            # rotate first, the copy of the old active log must not grow anymore
            self.connector.flush_active_segment()
        return Changed(SegmentRange(tuple(candidates), active), candidates[-1])

    def plan(self, delta: Changed) -> List[Changed]:
        segments: SegmentRange = delta.predicate
        return [Changed(Segment(name), name) for name in segments.segments]


def create_strategy(kind: Strategy, connector: Connector,
                    skew_buffer: int = SKEW_BUFFER) -> DetectionStrategy:
    match kind:
        case Strategy.TABLE:
            return TableTimestampStrategy(connector, skew_buffer)
        case Strategy.ROWS:
            return RowWatermarkStrategy(connector)
        case Strategy.BINLOG:
            return LogSequenceStrategy(connector)
        case _:
            raise ValueError(f'Invalid strategy: {kind}')


class ChangeDetector:
    """
    Runs the detection strategies. Connector failures become DetectionErrors.
    """

    def __init__(self, connector: Connector, skew_buffer: int = SKEW_BUFFER):
        self._strategies: Dict[Strategy, DetectionStrategy] = {
            x: create_strategy(x, connector, skew_buffer) for x in Strategy
        }

    def strategy(self, kind: Strategy) -> DetectionStrategy:
        return self._strategies[kind]

    def detect(self, kind: Strategy, key: EntityKey,
               watermark: Optional[str]) -> DeltaDescriptor:
        try:
            return self._strategies[kind].detect(key, watermark)
        except (ConnectorError, ValueError, OSError) as e:
            raise DetectionError(f'Change detection for {key} failed: {e}') from e
