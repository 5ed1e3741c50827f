"""
helpers for converting values from one format to a different one
"""
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import quote, unquote

TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
SQL_DATETIME_FORMAT = '%Y-%m-%d %H:%M:%S'

_NUMERIC = re.compile(r'^-?\d+(\.\d+)?$')


def parse_timestamp(timestamp: str) -> datetime:
    """
    Convert the given timestamp string to a datetime object.
    Format: TIMESTAMP_FORMAT
    :param timestamp: timestamp to parse
    :return: parsed timestamp
    """
    return datetime.strptime(timestamp, TIMESTAMP_FORMAT)


def format_timestamp(timestamp: datetime) -> str:
    """
    Convert the given datetime object to the correct string.
    :param timestamp: datetime object
    :return: formatted time
    """
    return timestamp.strftime(TIMESTAMP_FORMAT)


def format_sql_value(value) -> Optional[str]:
    """
    String form of a value returned by the database.
    Temporal values use the SQL literal format so they compare lexicographically.
    :param value: value from a result row
    :return: string or None for NULL
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.strftime(SQL_DATETIME_FORMAT)
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


def quote_identifier(name: str) -> str:
    return '`' + name.replace('`', '``') + '`'


def quote_literal(value: str) -> str:
    return "'" + value.replace('\\', '\\\\').replace("'", "''") + "'"


def is_numeric(value: str) -> bool:
    return bool(_NUMERIC.match(value))


def segment_sort_key(name: str) -> Tuple[str, int]:
    """
    Sort key for binary log names like mysql-bin.000123.
    :param name: segment name
    :return: (base name, sequence number)
    """
    base, _, suffix = name.rpartition('.')
    if base and suffix.isdigit():
        return base, int(suffix)
    return name, -1


def compare_values(old: str, new: str) -> int:
    """
    Compare two column watermarks.
    Numbers are compared numerically, everything else as strings.
    :return: -1, 0 or 1 like cmp(old, new)
    """
    a, b = old, new
    if is_numeric(old) and is_numeric(new):
        try:
            a, b = Decimal(old), Decimal(new)
        except InvalidOperation:
            pass
    return (a > b) - (a < b)


def compare_segments(old: str, new: str) -> int:
    """
    Compare two binary log names by sequence number.
    A different base name means the server switched to a new log series,
    the new name always counts as newer.
    :return: -1, 0 or 1 like cmp(old, new)
    """
    a, b = segment_sort_key(old), segment_sort_key(new)
    if a[0] != b[0]:
        return -1
    return (a > b) - (a < b)


def compare_epochs(old: str, new: str) -> int:
    a, b = int(old), int(new)
    return (a > b) - (a < b)


def entity_slug(database: str, table: str) -> str:
    """
    File name form of db.table. Both parts are percent encoded (dots included),
    so the dot between them is unambiguous and the slug can be parsed back.
    :param database: database name
    :param table: table name
    :return: slug like shop.orders
    """
    return '.'.join(quote(x, safe='').replace('.', '%2E') for x in (database, table))


def parse_entity_slug(slug: str) -> Tuple[str, str]:
    """
    Inverse of entity_slug.
    :param slug: slug of a table
    :return: (database, table)
    """
    parts = slug.split('.')
    if len(parts) != 2 or not all(parts):
        raise ValueError(f'Invalid entity slug: {slug}')
    return unquote(parts[0]), unquote(parts[1])


def artifact_stem(entity: str, timestamp: datetime, segment: Optional[str] = None) -> str:
    """
    Base name of an artifact without extensions.
    shop.orders_20240101_120000 or global_mysql-bin.000001_20240101_120000
    :param entity: slug of the entity key
    :param timestamp: run timestamp
    :param segment: binary log name for log backups
    :return: file name stem
    """
    parts = [entity]
    if segment:
        parts.append(segment)
    parts.append(format_timestamp(timestamp))
    return '_'.join(parts)


def parse_artifact_name(file_path: str or Path) -> dict:
    """
    Parse the given artifact file name.
    shop.orders_YYYYmmdd_HHMMSS.sql.gz or global_<binlog>_YYYYmmdd_HHMMSS.binlog.gz
    :param file_path: artifact or checksum file
    :return: Dictionary with keys: entity, database, table, timestamp, kind, path.
             database and table are None for binary log artifacts.
    :raises ValueError: if the name is not an artifact name
    """
    match = re.match(r'^(.+)_(\d{8}_\d{6})\.(sql|binlog)\.(gz|sha256)$', Path(file_path).name)
    if not match:
        raise ValueError(f'Invalid file name: {file_path}')
    entity, kind = match.group(1), match.group(3)
    database = table = None
    if kind == 'sql':
        database, table = parse_entity_slug(entity)
    elif not entity.startswith('global_'):
        raise ValueError(f'Invalid binary log artifact: {file_path}')
    return {
        'entity': entity,
        'database': database,
        'table': table,
        'timestamp': parse_timestamp(match.group(2)),
        'kind': kind,
        'path': Path(file_path),
    }


def parse_entity_filter(value: Optional[str]) -> Tuple[str, frozenset]:
    """
    Parse a database filter.
    +a,b only includes a and b, -a,b excludes them, a,b is the same as +a,b.
    :param value: filter string
    :return: (mode, names) with mode 'all', 'include' or 'exclude'
    """
    value = (value or '').strip()
    if not value:
        return 'all', frozenset()
    mode = 'include'
    if value.startswith('+'):
        value = value[1:]
    elif value.startswith('-'):
        mode = 'exclude'
        value = value[1:]
    names = frozenset(x.strip() for x in value.split(',') if x.strip())
    return mode, names
