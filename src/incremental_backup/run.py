"""
Creates incremental MySQL backups and ships them to remote storage.
"""
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from loguru import logger

from incremental_backup.engine.artifacts import list_artifacts, verify_artifact
from incremental_backup.engine.coordinator import Coordinator
from incremental_backup.engine.gate import ResourceGate
from incremental_backup.engine.uploader import Uploader
from incremental_backup.engine.watermarks import WatermarkStore
from incremental_backup.mysql.connector import Connector, MySQLConnector
from incremental_backup.remote.base import Transport
from incremental_backup.remote.ftp import FTPTransport
from incremental_backup.remote.s3 import S3Transport
from incremental_backup.system.metrics import SystemMetrics
from incremental_backup.utils.config import (BackupConfig, UploadConfig, UploadTarget,
                                             load_config, parse_config)
from incremental_backup.utils.datatypes import Strategy
from incremental_backup.utils.errors import ConfigError, RunAbort
from incremental_backup.utils.logging import setup_logging

STRATEGY_CHOICE = click.Choice([x.value for x in Strategy])


class CtxArgs:
    """
    Cache object for arguments between click group and commands.
    """

    def __init__(self, config_folder: Path, config: BackupConfig, connector: Connector,
                 stop_event: threading.Event):
        self.config_folder = Path(config_folder)
        self.config = config
        self.connector = connector
        self.stop_event = stop_event

    def strategy(self, value: Optional[str]) -> Strategy:
        return Strategy(value) if value else self.config.default_strategy


def create_transport(upload: UploadConfig) -> Transport:
    """
    Transport for the configured upload target.
    """
    match upload.target:
        case UploadTarget.S3:
            return S3Transport(upload.s3.endpoint, upload.s3.bucket, upload.s3.access_key_id,
                               upload.s3.secret_access_key, upload.s3.prefix)
        case UploadTarget.FTP:
            return FTPTransport(upload.ftp.host, upload.ftp.user, upload.ftp.password,
                                base_dir=upload.ftp.directory, port=upload.ftp.port,
                                tls=upload.ftp.tls, timeout=upload.ftp.timeout)
        case _:
            raise ConfigError(f'Invalid upload target: {upload.target}')


def install_signal_handlers(stop_event: threading.Event):
    """
    SIGINT/SIGTERM stop the run gracefully.
    """
    def handler(signum, frame):
        logger.warning(f'Received signal {signum}, stopping after the current step...')
        stop_event.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


@click.group()
@click.option(
    '-c',
    '--config-folder',
    help='Folder where the config files are stored. /etc/incremental-backup by default.'
         ' Make sure that the user has read and write access to the folder.',
    default='/etc/incremental-backup',
)
@click.pass_context
@click.version_option(package_name='incremental_backup')
def main(ctx, config_folder):
    """
    Create incremental MySQL backups and upload them to FTP or S3.
    """
    try:
        settings = parse_config(Path(config_folder))
        log_dir = settings.get('logging.dir', None)
        if log_dir:
            setup_logging(Path(log_dir), settings.get('logging.level', 'INFO'))
        config = load_config(settings)
    except ConfigError as e:
        logger.critical(f'Invalid configuration: {e}')
        sys.exit(1)
    except Exception as e:
        logger.exception(f'Error during config parsing! {e}')
        sys.exit(1)

    stop_event = threading.Event()
    ctx.obj = CtxArgs(config_folder, config, MySQLConnector(config.mysql), stop_event)
    ctx.call_on_close(ctx.obj.connector.close)


@main.command('backup')
@click.option(
    '-s', '--strategy',
    type=STRATEGY_CHOICE, default=None,
    help='Change detection strategy. backup.strategy from the config by default.'
)
@click.pass_context
def backup_command(ctx, strategy):
    """
    Perform an incremental backup.
    Only data changed since the last run is captured.
    """
    args: CtxArgs = ctx.obj
    strategy = args.strategy(strategy)
    strategy_config = args.config.strategies[strategy]
    if not strategy_config.enabled:
        logger.info(f'{strategy.value} backups are disabled in configuration')
        return

    install_signal_handlers(args.stop_event)
    uploader = None
    if strategy_config.upload:
        uploader = Uploader(create_transport(args.config.upload),
                            remote_dir=strategy_config.remote_dir,
                            attempts=args.config.upload.attempts,
                            delay=args.config.upload.delay,
                            sleep=args.stop_event.wait)
    gate = ResourceGate(SystemMetrics(), args.connector, args.config.resources,
                        stop_event=args.stop_event)
    coordinator = Coordinator(args.config, strategy, args.connector, gate, uploader,
                              stop_event=args.stop_event)
    try:
        summary = coordinator.run()
    except RunAbort as e:
        logger.critical(f'Backup failed! {e}')
        sys.exit(1)
    finally:
        if uploader:
            uploader.transport.close()
    click.secho(str(summary), fg='green' if summary.uploads_failed == 0 else 'yellow')


@main.command('check-resources')
@click.pass_context
def check_resources_command(ctx):
    """
    Check the server resources once.
    Exit code 0: ok, 2: warnings only, 1: the backup would wait.
    """
    args: CtxArgs = ctx.obj
    gate = ResourceGate(SystemMetrics(), args.connector, args.config.resources)
    result = gate.check(args.config.backup_dir)
    for message in result.passed:
        click.secho(f'{message} ✓', fg='green')
    for message in result.advisory:
        click.secho(f'[WARNING] {message}', fg='yellow')
    for message in result.blocking:
        click.secho(f'[ERROR] {message}', fg='red')
    sys.exit(result.exit_code)


@main.command('verify')
@click.option(
    '-s', '--strategy',
    type=STRATEGY_CHOICE, default=None,
    help='Backup class to verify. backup.strategy from the config by default.'
)
@click.pass_context
def verify_command(ctx, strategy):
    """
    Verify the checksums and the integrity of all local artifacts.
    """
    args: CtxArgs = ctx.obj
    directory = args.config.class_dir(args.strategy(strategy))
    verified = failed = 0
    for path in list_artifacts(directory):
        problem = verify_artifact(path, args.config.min_artifact_size)
        if problem:
            failed += 1
            click.secho(f'{path.name}: {problem}', fg='red')
        else:
            verified += 1
            click.secho(f'{path.name}: OK', fg='green')
    click.echo(f'Verified: {verified}, Failed: {failed}')
    sys.exit(1 if failed else 0)


@main.command('watermarks')
@click.option(
    '-s', '--strategy',
    type=STRATEGY_CHOICE, default=None,
    help='Strategy to list. backup.strategy from the config by default.'
)
@click.pass_context
def watermarks_command(ctx, strategy):
    """
    List the stored progress of each entity.
    """
    args: CtxArgs = ctx.obj
    store = WatermarkStore.for_strategy(args.config.state_dir, args.strategy(strategy))
    try:
        entries = list(store.items())
    except RunAbort as e:
        click.secho(str(e), fg='red', file=sys.stderr)
        sys.exit(1)
    if not entries:
        click.secho('None! No backup has been created yet...', fg='red', file=sys.stderr)
        sys.exit(1)
    output = click.style(f'Watermarks ({store.path}):\n', fg='green', bold=True)
    for key, value in entries:
        output += click.style(f'{key}', fg='cyan') + f'\t{value}\n'
    click.echo(output, nl=False)


if __name__ == '__main__':
    main()
