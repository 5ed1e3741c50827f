"""Pytest configuration and fixtures."""

import threading
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

import pytest

from incremental_backup.engine.gate import ResourceGate
from incremental_backup.engine.uploader import Uploader
from incremental_backup.mysql.connector import Connector
from incremental_backup.remote.base import Transport
from incremental_backup.system.metrics import MetricsProvider
from incremental_backup.utils.config import (BackupConfig, MySQLConfig,
                                             ResourceThresholds, StrategyConfig)
from incremental_backup.utils.converters import compare_values
from incremental_backup.utils.datatypes import (ColumnAbove, ColumnInfo, EntityKey,
                                                ModifiedAfter, Predicate, Segment,
                                                Strategy, TableMetadata)
from incremental_backup.utils.errors import ConnectorError, TransportError

ID_COLUMN = ColumnInfo('id', 'int', 'PRI', 'auto_increment')


@dataclass
class FakeTable:
    """Table of the fake server. rows holds the values of the incremental column."""

    mod_time: Optional[int] = None
    columns: tuple = (ID_COLUMN,)
    rows: List[str] = field(default_factory=list)


class FakeConnector(Connector):
    """In-memory MySQL server."""

    def __init__(self):
        self.tables: Dict[EntityKey, FakeTable] = {}
        self.segments: List[str] = []
        self.segment_data: Dict[str, bytes] = {}
        self.binlog_enabled = True
        self.healthy = True
        self.utilization = 10.0
        self.failing: set = set()
        self.broken: set = set()
        self.extracted: List[tuple] = []
        self.flushes = 0

    def add_table(self, name: str, **kwargs) -> EntityKey:
        database, table = name.split('.')
        key = EntityKey(database, table)
        self.tables[key] = FakeTable(**kwargs)
        return key

    def add_segment(self, name: str, data: bytes = None):
        self.segments.append(name)
        self.segment_data[name] = data if data is not None else f'binlog {name}\n'.encode() * 10

    def list_entities(self) -> List[EntityKey]:
        return sorted(self.tables)

    def metadata_for(self, key: EntityKey) -> TableMetadata:
        if key in self.broken:
            raise ConnectorError(f'metadata of {key} unavailable')
        table = self.tables[key]
        return TableMetadata(table.mod_time, tuple(table.columns))

    def max_value(self, key: EntityKey, column: str) -> Optional[str]:
        rows = self.tables[key].rows
        if not rows:
            return None
        result = rows[0]
        for row in rows[1:]:
            if compare_values(result, row) < 0:
                result = row
        return result

    def extract(self, key: EntityKey, predicate: Predicate, out: BinaryIO) -> None:
        self.extracted.append((key, predicate))
        if isinstance(predicate, Segment):
            if predicate.name in self.failing:
                out.write(b'partial')
                raise ConnectorError(f'copy of {predicate.name} failed')
            out.write(self.segment_data[predicate.name])
            return
        if key in self.failing:
            out.write(b'-- partial dump')
            raise ConnectorError(f'mysqldump of {key} failed')
        rows = self.tables[key].rows
        if isinstance(predicate, ColumnAbove) and predicate.value is not None:
            rows = [x for x in rows if compare_values(x, predicate.value) > 0]
        elif not isinstance(predicate, (ColumnAbove, ModifiedAfter)):
            raise AssertionError(f'unexpected predicate {predicate}')
        for row in rows:
            out.write(f'INSERT INTO `{key.table}` VALUES ({row});\n'.encode())

    def list_log_segments(self) -> List[str]:
        return list(self.segments)

    def active_log_segment(self) -> Optional[str]:
        return self.segments[-1] if self.segments else None

    def flush_active_segment(self) -> None:
        self.flushes += 1
        base, _, number = self.segments[-1].rpartition('.')
        self.add_segment(f'{base}.{int(number) + 1:06d}', data=b'fresh binlog header' * 5)

    def binary_logging_enabled(self) -> bool:
        return self.binlog_enabled

    def health(self) -> bool:
        return self.healthy

    def connection_utilization(self) -> float:
        return self.utilization


class FakeTransport(Transport):
    """Records uploads. Fails the first `failures` puts."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.stored: Dict[str, bytes] = {}

    def put(self, local_path: Path, remote_path: str) -> None:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransportError('connection refused')
        self.stored[remote_path] = Path(local_path).read_bytes()


class FakeMetrics(MetricsProvider):
    """Fixed metrics, overridable per test."""

    def __init__(self, cpu=0.5, memory=40.0, io_wait=1.0, disk_free=60.0):
        self.cpu = cpu
        self.memory = memory
        self.io = io_wait
        self.free = disk_free

    def cpu_load_per_core(self) -> float:
        return self.cpu

    def memory_usage(self) -> float:
        return self.memory

    def io_wait(self) -> float:
        return self.io

    def disk_free(self, path: Path) -> float:
        return self.free


class FakeSleep:
    """Records sleeps instead of waiting."""

    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def config(tmp_path) -> BackupConfig:
    strategies = {
        Strategy.TABLE: StrategyConfig(True, 'incremental', 'incremental', timedelta(hours=168)),
        Strategy.ROWS: StrategyConfig(True, 'incremental_rows', 'incremental_rows',
                                      timedelta(hours=168)),
        Strategy.BINLOG: StrategyConfig(True, 'binlogs', 'binlogs', timedelta(days=7)),
    }
    return BackupConfig(
        backup_dir=tmp_path / 'backups',
        state_dir=tmp_path / 'state',
        mysql=MySQLConfig(user='backup'),
        strategies=strategies,
        resources=ResourceThresholds(max_wait=180, check_interval=60),
    )


@pytest.fixture
def make_gate(connector, fake_sleep):
    def factory(metrics: MetricsProvider = None, thresholds: ResourceThresholds = None,
                stop_event: threading.Event = None) -> ResourceGate:
        return ResourceGate(metrics or FakeMetrics(), connector,
                            thresholds or ResourceThresholds(max_wait=180, check_interval=60),
                            stop_event=stop_event, sleep=fake_sleep)
    return factory


@pytest.fixture
def make_uploader(transport, fake_sleep):
    def factory(attempts: int = 3, delay: float = 10.0) -> Uploader:
        return Uploader(transport, remote_dir='incremental', attempts=attempts, delay=delay,
                        sleep=fake_sleep)
    return factory


def with_changes(config: BackupConfig, **kwargs) -> BackupConfig:
    return replace(config, **kwargs)
