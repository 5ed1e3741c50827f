"""Tests for the watermark store."""

import json

import pytest

from incremental_backup.engine.watermarks import WatermarkStore
from incremental_backup.utils.datatypes import EntityKey, Strategy
from incremental_backup.utils.errors import StateError

ORDERS = EntityKey('shop', 'orders')


class TestWatermarkStore:
    """Persistence and monotonicity."""

    def test_missing_file_is_empty(self, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path, Strategy.ROWS)
        assert store.get(ORDERS) is None
        assert list(store.items()) == []

    def test_set_persists(self, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path, Strategy.ROWS)
        assert store.set(ORDERS, '1000')

        reloaded = WatermarkStore.for_strategy(tmp_path, Strategy.ROWS)
        assert reloaded.get(ORDERS) == '1000'
        data = json.loads((tmp_path / 'rows_watermarks.json').read_text())
        assert data['watermarks'] == {'shop.orders': '1000'}

    def test_refuses_regression(self, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path, Strategy.ROWS)
        store.set(ORDERS, '1050')
        assert not store.set(ORDERS, '999')
        assert store.get(ORDERS) == '1050'

    def test_numeric_order_not_lexicographic(self, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path, Strategy.ROWS)
        store.set(ORDERS, '999')
        assert store.set(ORDERS, '1000')
        assert store.get(ORDERS) == '1000'

    def test_binlog_series_change_is_accepted(self, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path, Strategy.BINLOG)
        key = EntityKey.global_key()
        store.set(key, 'mysql-bin.000010')
        assert not store.set(key, 'mysql-bin.000009')
        assert store.set(key, 'binlog.000001')
        assert store.get(key) == 'binlog.000001'

    def test_equal_marker_is_no_update(self, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path, Strategy.TABLE)
        store.set(ORDERS, '1700000000')
        assert not store.set(ORDERS, '1700000000')

    def test_strategies_are_independent(self, tmp_path):
        WatermarkStore.for_strategy(tmp_path, Strategy.TABLE).set(ORDERS, '1700000000')
        assert WatermarkStore.for_strategy(tmp_path, Strategy.ROWS).get(ORDERS) is None

    def test_global_key(self, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path, Strategy.BINLOG)
        store.set(EntityKey.global_key(), 'mysql-bin.000009')
        assert store.set(EntityKey.global_key(), 'mysql-bin.000010')
        assert list(store.items()) == [(EntityKey.global_key(), 'mysql-bin.000010')]

    def test_corrupt_file(self, tmp_path):
        (tmp_path / 'table_watermarks.json').write_text('{not json')
        store = WatermarkStore.for_strategy(tmp_path, Strategy.TABLE)
        with pytest.raises(StateError):
            store.get(ORDERS)

    def test_no_temp_files_left(self, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path, Strategy.TABLE)
        store.set(ORDERS, '1')
        store.set(ORDERS, '2')
        assert [x.name for x in tmp_path.iterdir()] == ['table_watermarks.json']

    def test_lock_per_key(self, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path, Strategy.TABLE)
        assert store.lock(ORDERS) is store.lock(EntityKey('shop', 'orders'))
        assert store.lock(ORDERS) is not store.lock(EntityKey('shop', 'items'))
