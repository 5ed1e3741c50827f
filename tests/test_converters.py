"""Tests for converters and data types."""

from datetime import datetime

import pytest

from incremental_backup.utils.converters import (artifact_stem, compare_segments,
                                                 compare_values, format_sql_value,
                                                 parse_artifact_name, parse_entity_filter,
                                                 parse_entity_slug)
from incremental_backup.utils.datatypes import ColumnAbove, EntityKey, Strategy


class TestCompare:
    """Watermark comparison per strategy."""

    def test_numeric_values_compare_as_numbers(self):
        assert compare_values('999', '1000') < 0
        assert compare_values('1050', '1050') == 0
        assert compare_values('10.5', '9') > 0

    def test_temporal_values_compare_as_strings(self):
        assert compare_values('2024-01-01 10:00:00', '2024-01-02 09:00:00') < 0

    def test_segments_compare_by_sequence_number(self):
        assert compare_segments('mysql-bin.000009', 'mysql-bin.000010') < 0
        assert compare_segments('mysql-bin.000010', 'mysql-bin.000010') == 0

    def test_strategy_compare(self):
        assert Strategy.TABLE.compare('99', '100') < 0
        assert Strategy.BINLOG.compare('b.000002', 'b.000001') > 0

    def test_renamed_log_series_is_newer(self):
        assert compare_segments('mysql-bin.000010', 'binlog.000001') < 0


class TestEntityKey:
    """Entity keys and their string form."""

    def test_str_and_parse(self):
        key = EntityKey('shop', 'orders')
        assert str(key) == 'shop.orders'
        assert EntityKey.parse('shop.orders') == key
        assert key.slug == 'shop.orders'

    def test_global_key(self):
        key = EntityKey.parse('global')
        assert key.is_global
        assert str(key) == 'global'
        assert key == EntityKey.global_key()

    def test_slug_is_unique_per_table(self):
        first, second = EntityKey('shop_eu', 'orders'), EntityKey('shop', 'eu_orders')
        assert first.slug != second.slug
        assert parse_entity_slug(first.slug) == ('shop_eu', 'orders')
        assert parse_entity_slug(second.slug) == ('shop', 'eu_orders')

    def test_slug_with_dots(self):
        key = EntityKey('a.b', 'c')
        assert key.slug == 'a%2Eb.c'
        assert parse_entity_slug(key.slug) == ('a.b', 'c')
        assert EntityKey('a', 'b.c').slug != key.slug

    def test_invalid_key(self):
        with pytest.raises(ValueError):
            EntityKey.parse('orders')


class TestPredicates:
    """SQL conditions of the row strategy."""

    def test_numeric_value(self):
        assert ColumnAbove('id', '1000').where_clause() == '`id` > 1000'

    def test_temporal_value_is_quoted(self):
        predicate = ColumnAbove('created_at', '2024-01-01 10:00:00')
        assert predicate.where_clause() == "`created_at` > '2024-01-01 10:00:00'"

    def test_no_value_selects_everything(self):
        assert ColumnAbove('id').where_clause() is None


class TestArtifactNames:
    """File names of artifacts."""

    def test_table_artifact(self):
        stem = artifact_stem('shop.orders', datetime(2024, 1, 2, 3, 4, 5))
        assert stem == 'shop.orders_20240102_030405'
        parsed = parse_artifact_name(f'/backups/{stem}.sql.gz')
        assert parsed['entity'] == 'shop.orders'
        assert (parsed['database'], parsed['table']) == ('shop', 'orders')
        assert parsed['timestamp'] == datetime(2024, 1, 2, 3, 4, 5)
        assert parsed['kind'] == 'sql'

    def test_binlog_artifact(self):
        stem = artifact_stem('global', datetime(2024, 1, 2, 3, 4, 5), 'mysql-bin.000003')
        parsed = parse_artifact_name(f'{stem}.binlog.sha256')
        assert parsed['entity'] == 'global_mysql-bin.000003'
        assert parsed['kind'] == 'binlog'

    def test_invalid_name(self):
        with pytest.raises(ValueError):
            parse_artifact_name('notes.txt')

    @pytest.mark.parametrize('name', [
        'schema_dump.gz',
        'shop_orders_20240101_000000.sql.gz',
        'shop.orders_20240101_000000.binlog.gz',
    ])
    def test_foreign_names(self, name):
        with pytest.raises(ValueError):
            parse_artifact_name(name)


class TestEntityFilter:
    """Database filter strings."""

    @pytest.mark.parametrize('value, expected', [
        ('', ('all', frozenset())),
        (None, ('all', frozenset())),
        ('shop,blog', ('include', frozenset({'shop', 'blog'}))),
        ('+shop', ('include', frozenset({'shop'}))),
        ('-test, staging', ('exclude', frozenset({'test', 'staging'}))),
    ])
    def test_parse(self, value, expected):
        assert parse_entity_filter(value) == expected


def test_format_sql_value():
    assert format_sql_value(datetime(2024, 1, 1, 10, 0)) == '2024-01-01 10:00:00'
    assert format_sql_value(1050) == '1050'
    assert format_sql_value(b'abc') == 'abc'
    assert format_sql_value(None) is None
