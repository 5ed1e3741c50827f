"""
Runs one backup cycle of a strategy:
lease -> gate -> enumerate -> detect/build/commit per entity -> upload -> sweep -> summary
"""
import fcntl
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from loguru import logger

from incremental_backup.engine.artifacts import ArtifactBuilder
from incremental_backup.engine.detection import ChangeDetector
from incremental_backup.engine.gate import Admission, ResourceGate
from incremental_backup.engine.sweeper import sweep
from incremental_backup.engine.uploader import Uploader
from incremental_backup.engine.watermarks import WatermarkStore
from incremental_backup.mysql.connector import Connector
from incremental_backup.utils.config import BackupConfig
from incremental_backup.utils.datatypes import (Artifact, EntityKey, NoChange,
                                                RunSummary, Strategy)
from incremental_backup.utils.errors import (BuildError, ConnectorError,
                                             DetectionError, EnumerationEmpty,
                                             GateTimeout, RunAbort, RunCancelled,
                                             RunLocked)


class RunState(Enum):
    IDLE = 'idle'
    GATING = 'gating'
    ENUMERATING = 'enumerating'
    DETECTING = 'detecting'
    SKIPPING = 'skipping'
    BUILDING = 'building'
    COMMITTING = 'committing watermark'
    UPLOADING = 'uploading'
    SWEEPING = 'sweeping'
    DONE = 'done'
    FAILED = 'failed'


class RunLease:
    """
    Exclusive lock file. Prevents overlapping runs of the same strategy.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file = None

    def __enter__(self) -> 'RunLease':
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, 'a+', encoding='utf-8')
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            self._file.close()
            self._file = None
            raise RunLocked(f'Another backup run holds {self.path}') from None
        self._file.seek(0)
        self._file.truncate()
        self._file.write(f'{os.getpid()}\n')
        self._file.flush()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._file is not None:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
            self._file.close()
            self._file = None


@dataclass
class EntityOutcome:
    key: EntityKey
    changed: bool = False
    artifacts: List[Artifact] = field(default_factory=list)
    detection_error: bool = False
    build_error: bool = False
    skipped: bool = False


class Coordinator:
    """
    Orchestrates one end-to-end run of a single strategy.
    Only RunAbort errors fail the run, entity and upload errors end up in the summary.
    """

    def __init__(self, config: BackupConfig, strategy: Strategy, connector: Connector,
                 gate: ResourceGate, uploader: Optional[Uploader] = None,
                 store: Optional[WatermarkStore] = None,
                 stop_event: Optional[threading.Event] = None):
        """
        :param config: immutable config
        :param strategy: strategy of this run
        :param connector: data source
        :param gate: resource gate
        :param uploader: None disables uploads
        :param store: watermark store of the strategy, created from the config by default
        :param stop_event: set on shutdown
        """
        self.config = config
        self.strategy = strategy
        self.connector = connector
        self.gate = gate
        self.uploader = uploader
        self.store = store or WatermarkStore.for_strategy(config.state_dir, strategy)
        self.stop_event = stop_event or gate.stop_event
        self.detector = ChangeDetector(connector, config.skew_buffer)
        self.directory = config.class_dir(strategy)
        self.builder = ArtifactBuilder(connector, self.directory, strategy,
                                       compression_level=config.compression_level,
                                       min_size=config.min_artifact_size)
        self.state = RunState.IDLE
        self.timestamp: Optional[datetime] = None
        self.summary: Optional[RunSummary] = None

    def _transition(self, state: RunState, key: Optional[EntityKey] = None):
        self.state = state
        logger.debug(f'[{self.strategy.value}] {state.value}{f" {key}" if key else ""}')

    def run(self) -> RunSummary:
        """
        Execute one run.
        :return: summary
        :raises RunAbort: if the run could not be performed at all
        """
        self.timestamp = datetime.now()
        summary = self.summary = RunSummary(self.strategy, started=self.timestamp)
        logger.info(f'Incremental backup ({self.strategy.value}) started')
        try:
            with RunLease(self.config.state_dir / f'{self.strategy.value}.lock'):
                self._run(summary)
        except RunAbort as e:
            self._transition(RunState.FAILED)
            logger.error(f'Backup run failed: {e}')
            raise
        return summary

    def _run(self, summary: RunSummary):
        self._transition(RunState.GATING)
        match self.gate.admit(self.config.backup_dir):
            case Admission.TIMED_OUT:
                raise GateTimeout('Backup cancelled due to high server load')
            case Admission.CANCELLED:
                raise RunCancelled('Backup cancelled while waiting for resources')
        if self.stop_event.is_set():
            raise RunCancelled('Backup cancelled before it started')

        self._transition(RunState.ENUMERATING)
        try:
            keys = self.detector.strategy(self.strategy).entities(self.config.entity_filter)
        except ConnectorError as e:
            raise EnumerationEmpty(f'Failed to list entities: {e}') from e
        if not keys:
            raise EnumerationEmpty('No databases found to backup')
        # fail before touching any entity if the store is unreadable
        self.store.load()
        summary.entities = len(keys)
        logger.info(f'Found {len(keys)} entities to check')

        for outcome in self._process_all(keys):
            summary.changed += outcome.changed
            summary.unchanged += not (outcome.changed or outcome.detection_error
                                      or outcome.skipped)
            summary.skipped += outcome.skipped
            summary.detection_errors += outcome.detection_error
            summary.build_errors += outcome.build_error
            summary.artifacts += outcome.artifacts
        if self.stop_event.is_set():
            raise RunCancelled(f'Shutdown requested, {summary.skipped} entities skipped, '
                               f'{summary.artifacts_built} artifacts '
                               f'were not uploaded and stay in {self.directory}')

        self._upload(summary)

        self._transition(RunState.SWEEPING)
        summary.swept = len(sweep(self.directory,
                                  self.config.strategies[self.strategy].retention))

        self._transition(RunState.DONE)
        logger.info(str(summary))
        if summary.artifacts_built == 0:
            logger.info('No changes detected since last backup')

    def _process_all(self, keys: List[EntityKey]) -> List[EntityOutcome]:
        if self.config.workers <= 1 or len(keys) <= 1:
            return [self._process(x) for x in keys]
        with ThreadPoolExecutor(max_workers=self.config.workers,
                                thread_name_prefix='entity') as pool:
            return list(pool.map(self._process, keys))

    def _process(self, key: EntityKey) -> EntityOutcome:
        """
        Detect, build and commit for one entity.
        The watermark only advances after a successful build.
        """
        outcome = EntityOutcome(key)
        if self.stop_event.is_set():
            outcome.skipped = True
            return outcome
        with self.store.lock(key):
            watermark = self.store.get(key)
            self._transition(RunState.DETECTING, key)
            try:
                delta = self.detector.detect(self.strategy, key, watermark)
            except DetectionError as e:
                logger.error(str(e))
                outcome.detection_error = True
                return outcome
            if isinstance(delta, NoChange):
                self._transition(RunState.SKIPPING, key)
                logger.debug(f'{key}: {delta.reason or "no changes"}')
                return outcome

            outcome.changed = True
            # steps are captured in order, a failed step ends the entity
            for step in self.detector.strategy(self.strategy).plan(delta):
                if self.stop_event.is_set():
                    break
                self._transition(RunState.BUILDING, key)
                try:
                    artifact = self.builder.build(key, step, self.timestamp)
                except BuildError as e:
                    logger.error(str(e))
                    outcome.build_error = True
                    break
                self._transition(RunState.COMMITTING, key)
                self.store.set(key, step.observed_max)
                if artifact:
                    outcome.artifacts.append(artifact)
        return outcome

    def _upload(self, summary: RunSummary):
        if not summary.artifacts:
            logger.info('No changes detected, skipping upload')
            return
        if self.uploader is None:
            logger.info('Upload disabled in configuration, skipping upload')
            return
        self._transition(RunState.UPLOADING)
        logger.info(f'Uploading {summary.artifacts_built} artifact(s)')
        for result in self.uploader.upload_all(summary.artifacts, self.config.workers):
            if result.ok:
                summary.uploads_succeeded += 1
            else:
                summary.uploads_failed += 1
        logger.info(f'Files uploaded successfully: {summary.uploads_succeeded}')
        logger.info(f'Files upload failed: {summary.uploads_failed}')
