# Tests for configuration and the configuration store

import json

import pytest
from clover_connector.config import (DEFAULT_CONFIGURATION_NAME, CloverConfig, ConfigStore,
                                     ConnectionSettings)


class TestConnectionSettings:
    """Test timing settings"""

    def test_default_thresholds(self):
        """2.5s heartbeat gives 5/10/20 second thresholds"""
        settings = ConnectionSettings()

        assert settings.warn_threshold == 5.0
        assert settings.error_threshold == 10.0
        assert settings.shutdown_threshold == 20.0
        assert settings.reconnect_timeout == 60.0
        assert settings.discovery_timeout == 30.0

    def test_thresholds_must_increase(self):
        """warn < error < shutdown is enforced"""
        with pytest.raises(ValueError):
            ConnectionSettings(warn_multiplier=4, error_multiplier=4)

    def test_interval_must_be_positive(self):
        """A zero heartbeat interval is rejected"""
        with pytest.raises(ValueError):
            ConnectionSettings(heartbeat_interval=0)

    def test_from_dict_ignores_unknown_keys(self):
        """Unknown keys in config.json are dropped"""
        settings = ConnectionSettings.from_dict({'reconnect_delay': 1.5, 'colour': 'blue'})

        assert settings.reconnect_delay == 1.5


class TestConfigStore:
    """Test persisting named configurations"""

    def setup_method(self):
        self.config = CloverConfig(
            device_url='wss://relay.example.com/support/cs?token=abc',
            oauth_token='token',
            domain='https://sandbox.dev.clover.com/',
            merchant_id='M1',
            device_serial_id='C010UQ12345',
        )

    def test_load_missing_file(self, tmp_path):
        """Nothing saved yet reads as None"""
        store = ConfigStore(tmp_path / 'configurations.json')

        assert store.load() is None

    def test_save_drops_device_url(self, tmp_path):
        """The per-connection URL is not persisted"""
        path = tmp_path / 'configurations.json'
        store = ConfigStore(path)

        store.save(self.config)

        saved = json.loads(path.read_text())[DEFAULT_CONFIGURATION_NAME]
        assert 'device_url' not in saved
        assert store.load().merchant_id == 'M1'

    def test_named_configurations(self, tmp_path):
        """Several terminals can be stored side by side"""
        store = ConfigStore(tmp_path / 'configurations.json')
        store.save(self.config, 'front')
        store.save(CloverConfig(merchant_id='M2'), 'back')

        assert store.load('front').device_serial_id == 'C010UQ12345'
        assert store.load('back').merchant_id == 'M2'

    def test_corrupt_file_reads_as_empty(self, tmp_path):
        """A damaged store does not raise"""
        path = tmp_path / 'configurations.json'
        path.write_text('{not json')

        assert ConfigStore(path).load() is None


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
