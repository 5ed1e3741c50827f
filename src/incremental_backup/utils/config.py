"""
config handling for dynaconf
"""
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from importlib.resources import files
from pathlib import Path
from typing import Dict, Optional

from dynaconf import Dynaconf, Validator

from incremental_backup.utils.converters import parse_entity_filter
from incremental_backup.utils.datatypes import EntityKey, Strategy
from incremental_backup.utils.errors import ConfigError


class UploadTarget(Enum):
    """
    Represents supported remote storage targets.
    """
    FTP = 'FTP'
    S3 = 'S3'


@dataclass(frozen=True)
class MySQLConfig:
    host: str = 'localhost'
    port: int = 3306
    user: str = ''
    password: str = ''
    socket: Optional[str] = None
    mysqldump: str = 'mysqldump'
    mysqlbinlog: str = 'mysqlbinlog'


@dataclass(frozen=True)
class StrategyConfig:
    """
    Settings of one backup class.
    """
    enabled: bool
    directory: str
    remote_dir: str
    retention: timedelta
    upload: bool = True


@dataclass(frozen=True)
class ResourceThresholds:
    enabled: bool = True
    cpu_load: float = 2.0
    memory_usage: float = 85.0
    disk_io_wait: float = 50.0
    disk_space_free: float = 10.0
    connections: float = 80.0
    max_wait: float = 30 * 60
    check_interval: float = 60.0


@dataclass(frozen=True)
class FTPConfig:
    host: str = ''
    port: int = 21
    user: str = ''
    password: str = ''
    directory: str = '/'
    tls: bool = False
    timeout: float = 30.0


@dataclass(frozen=True)
class S3Config:
    endpoint: str = ''
    bucket: str = ''
    access_key_id: str = ''
    secret_access_key: str = ''
    prefix: str = ''


@dataclass(frozen=True)
class UploadConfig:
    target: UploadTarget = UploadTarget.FTP
    attempts: int = 3
    delay: float = 10.0
    ftp: FTPConfig = field(default_factory=FTPConfig)
    s3: S3Config = field(default_factory=S3Config)


@dataclass(frozen=True)
class EntityFilter:
    """
    Database filter. +a,b includes only a and b, -a,b excludes them.
    """
    mode: str = 'all'
    names: frozenset = frozenset()

    @classmethod
    def parse(cls, value: Optional[str]) -> 'EntityFilter':
        mode, names = parse_entity_filter(value)
        return cls(mode, names)

    def __call__(self, key: EntityKey) -> bool:
        if key.is_global or self.mode == 'all':
            return True
        if self.mode == 'include':
            return key.database in self.names
        return key.database not in self.names


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable configuration. Built once at startup and passed to all components.
    """
    backup_dir: Path
    state_dir: Path
    mysql: MySQLConfig
    strategies: Dict[Strategy, StrategyConfig]
    resources: ResourceThresholds = field(default_factory=ResourceThresholds)
    upload: UploadConfig = field(default_factory=UploadConfig)
    entity_filter: EntityFilter = field(default_factory=EntityFilter)
    default_strategy: Strategy = Strategy.TABLE
    compression_level: int = 9
    min_artifact_size: int = 50
    workers: int = 1
    skew_buffer: int = 60

    def class_dir(self, strategy: Strategy) -> Path:
        """
        Local directory of a backup class.
        """
        return self.backup_dir / self.strategies[strategy].directory

    @property
    def uploads_needed(self) -> bool:
        return any(x.enabled and x.upload for x in self.strategies.values())


_STRATEGY_DEFAULTS = {
    Strategy.TABLE: ('incremental', 168),
    Strategy.ROWS: ('incremental_rows', 168),
    Strategy.BINLOG: ('binlogs', 7 * 24),
}


def parse_config(config_folder: Path) -> Dynaconf:
    """
    Parse config with dynaconf
    :return: Dynaconf
    """
    default_config = config_folder / 'default.toml'
    if not os.path.isfile(default_config):
        try:
            config_folder.mkdir(parents=True, exist_ok=True)
            with open(default_config, 'w', encoding='utf-8') as f:
                f.write(files('incremental_backup.data').joinpath('default.toml').read_text())
        except Exception as e:
            logging.critical(f'Failed to create default config {default_config}. '
                             'Consider creating the folder writeable for this user '
                             f'or choose a different path. Error: {e}')
            sys.exit(1)

    settings = Dynaconf(
        envvar_prefix='INC_BACKUP',
        settings_files=['default.toml', 'config.toml'],
        root_path=str(config_folder),
        merge_enabled=True,
        validators=[
            Validator('mysql.port', cast=int, default=3306),
            Validator('backup.strategy', cast=str, default='table'),
            Validator('backup.compression_level', cast=int, default=9),
            Validator('backup.min_artifact_size', cast=int, default=50),
            Validator('backup.workers', cast=int, default=1),
            Validator('upload.target', cast=str, default='FTP'),
            Validator('upload.attempts', cast=int, default=3),
        ]
    )
    return settings


def _get(settings: Dynaconf, key: str, cast=None, default=None):
    value = settings.get(key, default)
    if value is None or cast is None:
        return value
    if cast is bool and isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return cast(value)


def _strategy_config(settings: Dynaconf, strategy: Strategy) -> StrategyConfig:
    directory, retention_hours = _STRATEGY_DEFAULTS[strategy]
    prefix = f'strategies.{strategy.value}'
    hours = _get(settings, f'{prefix}.retention_hours', cast=float, default=None)
    days = _get(settings, f'{prefix}.retention_days', cast=float, default=None)
    if days is not None:
        hours = days * 24
    return StrategyConfig(
        enabled=_get(settings, f'{prefix}.enabled', cast=bool, default=True),
        directory=_get(settings, f'{prefix}.directory', default=directory),
        remote_dir=_get(settings, f'{prefix}.remote_dir', default=directory),
        retention=timedelta(hours=hours if hours is not None else retention_hours),
        upload=_get(settings, f'{prefix}.upload', cast=bool, default=True),
    )


def load_config(settings: Dynaconf) -> BackupConfig:
    """
    Validate the settings and freeze them into a BackupConfig.
    :param settings: parsed settings
    :return: config
    :raises ConfigError: if required settings are missing or invalid
    """
    try:
        return _load_config(settings)
    except ConfigError:
        raise
    except (ValueError, TypeError) as e:
        raise ConfigError(f'Invalid configuration: {e}') from e


def _load_config(settings: Dynaconf) -> BackupConfig:
    backup_dir = _get(settings, 'backup.dir', default=None)
    if not backup_dir:
        raise ConfigError('backup.dir must be set')
    user = _get(settings, 'mysql.user', default=None)
    if not user:
        raise ConfigError('mysql.user must be set')

    mysql = MySQLConfig(
        host=_get(settings, 'mysql.host', default='localhost'),
        port=_get(settings, 'mysql.port', cast=int, default=3306),
        user=user,
        password=_get(settings, 'mysql.password', default=''),
        socket=_get(settings, 'mysql.socket', default=None) or None,
        mysqldump=_get(settings, 'mysql.mysqldump', default='mysqldump'),
        mysqlbinlog=_get(settings, 'mysql.mysqlbinlog', default='mysqlbinlog'),
    )
    strategies = {x: _strategy_config(settings, x) for x in Strategy}

    try:
        target = UploadTarget(str(_get(settings, 'upload.target', default='FTP')).upper())
    except ValueError:
        raise ConfigError(f'Invalid upload target: {_get(settings, "upload.target")}') from None
    upload = UploadConfig(
        target=target,
        attempts=_get(settings, 'upload.attempts', cast=int, default=3),
        delay=_get(settings, 'upload.delay', cast=float, default=10.0),
        ftp=FTPConfig(
            host=_get(settings, 'upload.ftp.host', default=''),
            port=_get(settings, 'upload.ftp.port', cast=int, default=21),
            user=_get(settings, 'upload.ftp.user', default=''),
            password=_get(settings, 'upload.ftp.password', default=''),
            directory=_get(settings, 'upload.ftp.dir', default='/'),
            tls=_get(settings, 'upload.ftp.tls', cast=bool, default=False),
            timeout=_get(settings, 'upload.ftp.timeout', cast=float, default=30.0),
        ),
        s3=S3Config(
            endpoint=_get(settings, 'upload.s3.endpoint', default=''),
            bucket=_get(settings, 'upload.s3.bucket', default=''),
            access_key_id=_get(settings, 'upload.s3.access_key_id', default=''),
            secret_access_key=_get(settings, 'upload.s3.secret_access_key', default=''),
            prefix=_get(settings, 'upload.s3.prefix', default=''),
        ),
    )
    if upload.attempts < 1:
        raise ConfigError('upload.attempts must be at least 1')

    resources = ResourceThresholds(
        enabled=_get(settings, 'resources.enabled', cast=bool, default=True),
        cpu_load=_get(settings, 'resources.cpu_load_threshold', cast=float, default=2.0),
        memory_usage=_get(settings, 'resources.memory_usage_threshold', cast=float, default=85.0),
        disk_io_wait=_get(settings, 'resources.disk_io_wait_threshold', cast=float, default=50.0),
        disk_space_free=_get(settings, 'resources.disk_space_threshold', cast=float, default=10.0),
        connections=_get(settings, 'resources.connections_threshold', cast=float, default=80.0),
        max_wait=_get(settings, 'resources.max_wait_minutes', cast=float, default=30.0) * 60,
        check_interval=_get(settings, 'resources.check_interval', cast=float, default=60.0),
    )

    try:
        default_strategy = Strategy(_get(settings, 'backup.strategy', default='table'))
    except ValueError:
        raise ConfigError(f'Invalid strategy: {_get(settings, "backup.strategy")}') from None

    config = BackupConfig(
        backup_dir=Path(backup_dir),
        state_dir=Path(_get(settings, 'backup.state_dir', default=None) or Path(backup_dir) / 'state'),
        mysql=mysql,
        strategies=strategies,
        resources=resources,
        upload=upload,
        entity_filter=EntityFilter.parse(_get(settings, 'backup.databases', default='')),
        default_strategy=default_strategy,
        compression_level=_get(settings, 'backup.compression_level', cast=int, default=9),
        min_artifact_size=_get(settings, 'backup.min_artifact_size', cast=int, default=50),
        workers=max(1, _get(settings, 'backup.workers', cast=int, default=1)),
    )
    if config.uploads_needed:
        _check_upload_target(config.upload)
    return config


def _check_upload_target(upload: UploadConfig):
    match upload.target:
        case UploadTarget.FTP:
            required = {'upload.ftp.host': upload.ftp.host,
                        'upload.ftp.user': upload.ftp.user,
                        'upload.ftp.password': upload.ftp.password,
                        'upload.ftp.dir': upload.ftp.directory}
        case UploadTarget.S3:
            required = {'upload.s3.endpoint': upload.s3.endpoint,
                        'upload.s3.bucket': upload.s3.bucket,
                        'upload.s3.access_key_id': upload.s3.access_key_id,
                        'upload.s3.secret_access_key': upload.s3.secret_access_key}
        case _:
            required = {}
    for name, value in required.items():
        if not value:
            raise ConfigError(
                f'{name} must be provided when uploading to {upload.target.value}')
