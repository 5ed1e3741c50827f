"""Tests for the commands that work without a database connection."""

from datetime import datetime

import pytest
from click.testing import CliRunner

from incremental_backup.engine.artifacts import ArtifactBuilder
from incremental_backup.engine.watermarks import WatermarkStore
from incremental_backup.run import main
from incremental_backup.utils.datatypes import Changed, ColumnAbove, EntityKey, Strategy


@pytest.fixture
def config_folder(tmp_path):
    folder = tmp_path / 'etc'
    folder.mkdir()
    (folder / 'config.toml').write_text(f"""
[mysql]
user = "backup"

[backup]
dir = "{tmp_path / 'backups'}"
strategy = "rows"

[upload]
target = "S3"

[upload.s3]
endpoint = "https://s3.example.com"
bucket = "backups"
access_key_id = "key"
secret_access_key = "secret"
""")
    return folder


class TestCli:
    """click commands."""

    def test_invalid_config_exits(self, tmp_path):
        folder = tmp_path / 'etc'
        result = CliRunner().invoke(main, ['-c', str(folder), 'watermarks'])
        assert result.exit_code == 1

    def test_watermarks_empty(self, config_folder):
        result = CliRunner().invoke(main, ['-c', str(config_folder), 'watermarks'])
        assert result.exit_code == 1

    def test_watermarks(self, config_folder, tmp_path):
        store = WatermarkStore.for_strategy(tmp_path / 'backups' / 'state', Strategy.ROWS)
        store.set(EntityKey('shop', 'orders'), '1050')

        result = CliRunner().invoke(main, ['-c', str(config_folder), 'watermarks', '-s', 'rows'])

        assert result.exit_code == 0
        assert 'shop.orders\t1050' in result.output

    def test_verify(self, config_folder, connector, tmp_path):
        key = connector.add_table('shop.orders', rows=[str(x) for x in range(1, 11)])
        builder = ArtifactBuilder(connector, tmp_path / 'backups' / 'incremental_rows',
                                  Strategy.ROWS)
        artifact = builder.build(key, Changed(ColumnAbove('id', None), '10'),
                                 datetime(2024, 1, 2, 3, 4, 5))
        (builder.directory / 'schema_dump.gz').write_bytes(b'not a backup')

        result = CliRunner().invoke(main, ['-c', str(config_folder), 'verify'])
        assert result.exit_code == 0
        assert f'{artifact.path.name}: OK' in result.output
        assert 'schema_dump.gz' not in result.output
        assert 'Verified: 1, Failed: 0' in result.output

        artifact.checksum_path.unlink()
        result = CliRunner().invoke(main, ['-c', str(config_folder), 'verify'])
        assert result.exit_code == 1

    def test_disabled_strategy_does_nothing(self, config_folder):
        with open(config_folder / 'config.toml', 'a') as f:
            f.write('\n[strategies.binlog]\nenabled = false\n')
        result = CliRunner().invoke(main, ['-c', str(config_folder), 'backup', '-s', 'binlog'])
        assert result.exit_code == 0
