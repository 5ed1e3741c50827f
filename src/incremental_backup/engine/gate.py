"""
Admission control. Waits until the server has enough headroom for a backup.
"""
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import tenacity
from loguru import logger

from incremental_backup.mysql.connector import Connector
from incremental_backup.system.metrics import MetricsProvider
from incremental_backup.utils.config import ResourceThresholds
from incremental_backup.utils.errors import ConnectorError
from incremental_backup.utils.retry import bounded_retry


class Admission(Enum):
    ADMITTED = 'admitted'
    TIMED_OUT = 'timed out'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class ResourceSnapshot:
    cpu_load_per_core: float
    memory_usage: float
    io_wait: float
    disk_free: float
    connection_usage: float
    healthy: bool


@dataclass
class Assessment:
    """
    Result of checking a snapshot against the thresholds.
    blocking issues delay the backup, advisory ones are only logged.
    """
    snapshot: ResourceSnapshot
    blocking: List[str] = field(default_factory=list)
    advisory: List[str] = field(default_factory=list)
    passed: List[str] = field(default_factory=list)

    @property
    def admitted(self) -> bool:
        return not self.blocking

    @property
    def exit_code(self) -> int:
        if self.blocking:
            return 1
        return 2 if self.advisory else 0


def assess(snapshot: ResourceSnapshot, thresholds: ResourceThresholds) -> Assessment:
    """
    Classify each signal of the snapshot.
    """
    result = Assessment(snapshot)

    def check(over: bool, target: List[str], message: str):
        (target if over else result.passed).append(message)

    check(snapshot.cpu_load_per_core > thresholds.cpu_load, result.blocking,
          f'CPU load per core: {snapshot.cpu_load_per_core:.2f} '
          f'(threshold: {thresholds.cpu_load:g})')
    check(snapshot.memory_usage > thresholds.memory_usage, result.blocking,
          f'Memory usage: {snapshot.memory_usage:.1f}% '
          f'(threshold: {thresholds.memory_usage:g}%)')
    check(snapshot.disk_free < thresholds.disk_space_free, result.blocking,
          f'Free disk space: {snapshot.disk_free:.1f}% '
          f'(threshold: {thresholds.disk_space_free:g}%)')
    check(not snapshot.healthy, result.blocking,
          f'MySQL health: {"OK" if snapshot.healthy else "not responding"}')
    check(snapshot.io_wait > thresholds.disk_io_wait, result.advisory,
          f'Disk I/O wait: {snapshot.io_wait:.1f}% (threshold: {thresholds.disk_io_wait:g}%)')
    check(snapshot.connection_usage > thresholds.connections, result.advisory,
          f'MySQL connections: {snapshot.connection_usage:.1f}% '
          f'(threshold: {thresholds.connections:g}%)')
    return result


class ResourceGate:
    """
    Polls the resources until no blocking signal is over its threshold.
    """

    def __init__(self, metrics: MetricsProvider, connector: Connector,
                 thresholds: ResourceThresholds,
                 stop_event: Optional[threading.Event] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        :param metrics: system metrics
        :param connector: for the health probe and connection usage
        :param thresholds: limits
        :param stop_event: set on shutdown, cancels waiting
        :param sleep: sleep function, waits on stop_event by default
        """
        self.metrics = metrics
        self.connector = connector
        self.thresholds = thresholds
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep
        self.polls = 0

    def snapshot(self, target_path: Path) -> ResourceSnapshot:
        try:
            connection_usage = self.connector.connection_utilization()
        except ConnectorError as e:
            logger.debug(f'Could not read connection usage: {e}')
            connection_usage = 0.0
        return ResourceSnapshot(
            cpu_load_per_core=self.metrics.cpu_load_per_core(),
            memory_usage=self.metrics.memory_usage(),
            io_wait=self.metrics.io_wait(),
            disk_free=self.metrics.disk_free(target_path),
            connection_usage=connection_usage,
            healthy=self.connector.health(),
        )

    def check(self, target_path: Path) -> Assessment:
        self.polls += 1
        result = assess(self.snapshot(target_path), self.thresholds)
        for issue in result.blocking:
            logger.warning(f'Resource limit exceeded: {issue}')
        return result

    def admit(self, target_path: Path, timeout: Optional[float] = None) -> Admission:
        """
        Wait until the backup may run.
        :param target_path: backup directory, for the free disk space
        :param timeout: max seconds to wait, from the thresholds by default
        :return: Admission
        """
        if not self.thresholds.enabled:
            logger.info('Resource checks disabled in configuration')
            return Admission.ADMITTED
        timeout = self.thresholds.max_wait if timeout is None else timeout
        interval = self.thresholds.check_interval
        logger.info('Checking server resources before backup...')

        def before_sleep(retry_state: tenacity.RetryCallState):
            logger.warning(f'Server under high load, waiting {interval:g}s before retry... '
                           f'(waited: {retry_state.idle_for:g}s / {timeout:g}s)')

        retrying = bounded_retry(
            delay=interval,
            max_wait=timeout,
            retry=tenacity.retry_if_result(lambda x: not x.admitted),
            stop_event=self.stop_event,
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=False,
        )
        try:
            result = retrying(self.check, target_path)
        except tenacity.RetryError:
            if self.stop_event.is_set():
                logger.warning('Shutdown requested while waiting for resources')
                return Admission.CANCELLED
            logger.error(f'Timeout waiting for resources to become available '
                         f'(waited {timeout / 60:g} minutes)')
            return Admission.TIMED_OUT

        if result.advisory:
            for issue in result.advisory:
                logger.warning(f'Resource warning: {issue}')
            logger.warning('Resources have warnings but proceeding...')
        else:
            logger.success('Resources available, proceeding with backup')
        return Admission.ADMITTED
