"""Test configuration loading"""

import json
from pathlib import Path

import pytest

from chunkxfer.config import MAX_CHUNK_SIZE, Config, load_config


class TestConfig:
    """Test defaults, files and environment overrides"""

    def test_defaults_are_valid(self):
        config = Config().validate()
        assert config.window_size == 16
        assert config.files_dir == Path('./xfer_data') / 'files'

    @pytest.mark.parametrize("field,value", [
        ('chunk_size', 0),
        ('chunk_size', MAX_CHUNK_SIZE + 1),
        ('window_size', 0),
        ('retransmit_timeout', 0),
        ('max_retries', -1),
        ('backoff_factor', 0.5),
        ('hash_algorithm', 'nope'),
    ])
    def test_validate_rejects(self, field, value):
        config = Config()
        setattr(config, field, value)
        with pytest.raises(ValueError):
            config.validate()

    def test_file_round_trip(self, temp_dir):
        path = temp_dir / 'config.json'
        Config(port=7000, data_dir=temp_dir / 'x', backup_suffix='.bak').save(path)

        loaded = Config.from_file(path)
        assert loaded.port == 7000
        assert loaded.data_dir == temp_dir / 'x'
        assert loaded.backup_suffix == '.bak'

    def test_from_file_ignores_unknown_keys(self, temp_dir):
        path = temp_dir / 'config.json'
        path.write_text(json.dumps({'window_size': 4, 'flux_capacitor': True}))

        loaded = Config.from_file(path)
        assert loaded.window_size == 4
        assert not hasattr(loaded, 'flux_capacitor')

    def test_missing_file_gives_defaults(self, temp_dir):
        assert Config.from_file(temp_dir / 'absent.json') == Config()

    def test_env_overrides_file(self, temp_dir, monkeypatch):
        path = temp_dir / 'config.json'
        path.write_text(json.dumps({'port': 7000, 'window_size': 4}))
        monkeypatch.setenv('CHUNKXFER_PORT', '7100')
        monkeypatch.setenv('CHUNKXFER_RETRANSMIT_TIMEOUT', '0.25')

        config = load_config(path)
        assert config.port == 7100
        assert config.window_size == 4
        assert config.retransmit_timeout == 0.25

    def test_from_env(self, monkeypatch, temp_dir):
        monkeypatch.setenv('CHUNKXFER_DATA_DIR', str(temp_dir))
        monkeypatch.setenv('CHUNKXFER_UPLOAD_SLOTS', '3')
        monkeypatch.setenv('CHUNKXFER_BACKUP_SUFFIX', '')

        config = Config.from_env()
        assert config.data_dir == temp_dir
        assert config.upload_slots == 3
        assert config.backup_suffix is None
