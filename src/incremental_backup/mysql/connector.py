"""
MySQL client / db actions / interactions
"""
import os
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from typing import BinaryIO, List, Optional

import mysql.connector
from loguru import logger

from incremental_backup.utils.config import MySQLConfig
from incremental_backup.utils.converters import format_sql_value, quote_identifier
from incremental_backup.utils.datatypes import (ColumnInfo, EntityKey, Predicate,
                                                Segment, TableMetadata)
from incremental_backup.utils.errors import ConnectorError

SYSTEM_DATABASES = ('information_schema', 'performance_schema', 'mysql', 'sys')


class Connector(ABC):
    """
    ABC for data source implementations.
    Everything the engine needs to know about the source database.
    """

    @abstractmethod
    def list_entities(self) -> List[EntityKey]:
        """
        All user tables of the server.
        """

    @abstractmethod
    def metadata_for(self, key: EntityKey) -> TableMetadata:
        """
        Modification time and columns of a table.
        """

    @abstractmethod
    def max_value(self, key: EntityKey, column: str) -> Optional[str]:
        """
        Current maximum of a column over the whole table. None for empty tables.
        """

    @abstractmethod
    def extract(self, key: EntityKey, predicate: Predicate, out: BinaryIO) -> None:
        """
        Write the data selected by the predicate to out.
        :raises ConnectorError: on any failure, also after a partial write
        """

    @abstractmethod
    def list_log_segments(self) -> List[str]:
        """
        Binary log names, oldest first. The last one is the active one.
        """

    @abstractmethod
    def active_log_segment(self) -> Optional[str]:
        pass

    @abstractmethod
    def flush_active_segment(self) -> None:
        """
        Rotate the active binary log so it does not grow anymore.
        """

    @abstractmethod
    def binary_logging_enabled(self) -> bool:
        pass

    @abstractmethod
    def health(self) -> bool:
        pass

    @abstractmethod
    def connection_utilization(self) -> float:
        """
        Used connections in percent of max_connections.
        """

    def close(self) -> None:
        pass


class MySQLConnector(Connector):
    """
    MySQL client. Queries use mysql-connector, dumps the mysqldump binary.
    """

    def __init__(self, config: MySQLConfig):
        """
        Init a new client.
        :param config: connection settings
        """
        self._config = config
        self._connection = None
        self._datadir: Optional[str] = None

    @property
    def connection(self):
        """
        Open a new connection to MySQL.
        :return: connection
        """
        if self._connection is None or not self._connection.is_connected():
            logger.debug('Connecting to MySQL...')
            kwargs = {'user': self._config.user, 'password': self._config.password,
                      'autocommit': True}
            if self._config.socket:
                kwargs['unix_socket'] = self._config.socket
            else:
                kwargs['host'] = self._config.host
                kwargs['port'] = self._config.port
            try:
                self._connection = mysql.connector.connect(**kwargs)
            except mysql.connector.Error as e:
                raise ConnectorError(f'Failed to connect to MySQL: {e}') from e
        return self._connection

    def _query(self, query: str, params: tuple = ()) -> list:
        try:
            cursor = self.connection.cursor()
            try:
                cursor.execute(query, params)
                return cursor.fetchall() if cursor.with_rows else []
            finally:
                cursor.close()
        except mysql.connector.Error as e:
            raise ConnectorError(f'Query failed: {e}') from e

    def _variable(self, name: str, status: bool = False) -> Optional[str]:
        kind = 'STATUS' if status else 'VARIABLES'
        rows = self._query(f'SHOW {kind} LIKE %s', (name,))
        return format_sql_value(rows[0][1]) if rows else None

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def list_entities(self) -> List[EntityKey]:
        rows = self._query(
            'SELECT TABLE_SCHEMA, TABLE_NAME FROM information_schema.TABLES '
            "WHERE TABLE_TYPE = 'BASE TABLE' "
            f'AND TABLE_SCHEMA NOT IN ({", ".join(["%s"] * len(SYSTEM_DATABASES))}) '
            'ORDER BY TABLE_SCHEMA, TABLE_NAME',
            SYSTEM_DATABASES
        )
        return [EntityKey(format_sql_value(db), format_sql_value(table)) for db, table in rows]

    def metadata_for(self, key: EntityKey) -> TableMetadata:
        rows = self._query(
            'SELECT UNIX_TIMESTAMP(UPDATE_TIME) FROM information_schema.TABLES '
            'WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s',
            (key.database, key.table)
        )
        mod_time = None
        if rows and rows[0][0] is not None:
            mod_time = int(rows[0][0])
        columns = self._query(
            'SELECT COLUMN_NAME, DATA_TYPE, COLUMN_KEY, EXTRA FROM information_schema.COLUMNS '
            'WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s ORDER BY ORDINAL_POSITION',
            (key.database, key.table)
        )
        return TableMetadata(
            mod_time=mod_time,
            columns=tuple(ColumnInfo(*(format_sql_value(x) or '' for x in row))
                          for row in columns)
        )

    def max_value(self, key: EntityKey, column: str) -> Optional[str]:
        rows = self._query(
            f'SELECT MAX({quote_identifier(column)}) FROM '
            f'{quote_identifier(key.database)}.{quote_identifier(key.table)}'
        )
        return format_sql_value(rows[0][0]) if rows else None

    def _client_args(self) -> List[str]:
        args = [f'--user={self._config.user}']
        if self._config.socket:
            args.append(f'--socket={self._config.socket}')
        else:
            args += [f'--host={self._config.host}', f'--port={self._config.port}']
        return args

    def _run(self, args: List[str], out: BinaryIO):
        # password via env, not visible in the process list
        env = dict(os.environ, MYSQL_PWD=self._config.password)
        try:
            result = subprocess.run(args, stdout=out, stderr=subprocess.PIPE, env=env)
        except OSError as e:
            raise ConnectorError(f'Failed to run {args[0]}: {e}') from e
        if result.returncode != 0:
            raise ConnectorError(
                f'{args[0]} failed with exit code {result.returncode}: '
                f'{result.stderr.decode(errors="replace").strip()}')

    def extract(self, key: EntityKey, predicate: Predicate, out: BinaryIO) -> None:
        if isinstance(predicate, Segment):
            return self._copy_segment(predicate.name, out)
        args = [self._config.mysqldump, *self._client_args(),
                '--single-transaction', '--quick', '--lock-tables=false',
                '--no-create-info', '--skip-triggers']
        where = predicate.where_clause()
        if where:
            args.append(f'--where={where}')
        args += [key.database, key.table]
        logger.debug(f'Dumping {key} (where: {where or "all rows"})')
        self._run(args, out)

    def _copy_segment(self, name: str, out: BinaryIO):
        if self._datadir is None:
            self._datadir = self._variable('datadir') or ''
        source = os.path.join(self._datadir, name)
        try:
            with open(source, 'rb') as f:
                shutil.copyfileobj(f, out)
            return
        except OSError as e:
            logger.warning(f'Direct copy of {source} failed ({e}), trying mysqlbinlog...')
        out.seek(0)
        out.truncate()
        self._run([self._config.mysqlbinlog, source], out)

    def list_log_segments(self) -> List[str]:
        return [format_sql_value(row[0]) for row in self._query('SHOW BINARY LOGS')]

    def active_log_segment(self) -> Optional[str]:
        rows = self._query('SHOW MASTER STATUS')
        return format_sql_value(rows[0][0]) if rows else None

    def flush_active_segment(self) -> None:
        logger.info('Flushing binary logs to get a complete copy of the active log')
        self._query('FLUSH BINARY LOGS')
        # give the server a moment to finish the rotation
        time.sleep(1)

    def binary_logging_enabled(self) -> bool:
        return (self._variable('log_bin') or '').upper() == 'ON'

    def health(self) -> bool:
        try:
            return self._query('SELECT 1') == [(1,)]
        except ConnectorError as e:
            logger.debug(f'Health probe failed: {e}')
            return False

    def connection_utilization(self) -> float:
        max_connections = float(self._variable('max_connections') or 0)
        if max_connections == 0:
            return 0.0
        current = float(self._variable('Threads_connected', status=True) or 0)
        return current / max_connections * 100
