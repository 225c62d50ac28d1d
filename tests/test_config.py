"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for meter configs.
"""

import os
import tempfile

import pytest
import yaml

from credit_meter.config.loader import MeterConfig, config_from_env, load_meter_config


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        config_path = self._write_config({
            "db_path": "meter.db",
            "default_ratio": 0.5,
            "chars_per_token": 3,
            "default_model": "gpt-4o-mini",
            "provider_base_url": "https://openrouter.ai/api/v1",
        })

        config = load_meter_config(config_path)

        assert config.db_path == "meter.db"
        assert config.default_ratio == 0.5
        assert config.chars_per_token == 3
        assert config.default_model == "gpt-4o-mini"
        assert config.provider_base_url == "https://openrouter.ai/api/v1"
        # untouched defaults
        assert config.state_open_marker == "<STATE>"
        assert config.default_page_size == 20
        assert config.max_page_size == 100

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="Meter config file not found"):
            load_meter_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")
        with pytest.raises(ValueError, match="empty"):
            load_meter_config(config_path)

    def test_non_mapping(self):
        config_path = self._write_config(["a", "b"])
        with pytest.raises(ValueError, match="mapping"):
            load_meter_config(config_path)

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("db_path: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_meter_config(config_path)

    def test_unknown_key_rejected(self):
        config_path = self._write_config({"db_path": "meter.db", "ratio": 2})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_meter_config(config_path)

    def test_non_positive_ratio_rejected(self):
        for ratio in [0, -1]:
            config_path = self._write_config({"default_ratio": ratio})
            with pytest.raises(ValueError, match="default_ratio"):
                load_meter_config(config_path)

    def test_wrong_types_rejected(self):
        with pytest.raises(ValueError, match="must be a float"):
            load_meter_config(self._write_config({"default_ratio": "lots"}))
        with pytest.raises(ValueError, match="must be a number"):
            load_meter_config(self._write_config({"chars_per_token": True}))
        with pytest.raises(ValueError, match="must be a int"):
            load_meter_config(self._write_config({"chars_per_token": 2.5}))
        with pytest.raises(ValueError, match="must be a string"):
            load_meter_config(self._write_config({"default_model": 5}))

    def test_identical_markers_rejected(self):
        config_path = self._write_config({"state_open_marker": "##", "state_close_marker": "##"})
        with pytest.raises(ValueError, match="must differ"):
            load_meter_config(config_path)


class TestMeterConfig:
    """Test dataclass validation."""

    def test_defaults(self):
        config = MeterConfig()
        assert config.default_ratio == 1.0
        assert config.chars_per_token == 4
        assert config.service_type == "chat"

    def test_page_size_bounds(self):
        with pytest.raises(ValueError, match="max_page_size"):
            MeterConfig(default_page_size=50, max_page_size=10)

    def test_empty_model(self):
        with pytest.raises(ValueError, match="default_model"):
            MeterConfig(default_model="  ")


class TestConfigFromEnv:
    """Test CREDIT_METER_* environment configuration."""

    def test_reads_prefixed_variables(self):
        config = config_from_env({
            "CREDIT_METER_DB_PATH": "/tmp/env.db",
            "CREDIT_METER_DEFAULT_RATIO": "0.25",
            "CREDIT_METER_USAGE_WORKERS": "4",
            "UNRELATED": "x",
        })
        assert config.db_path == "/tmp/env.db"
        assert config.default_ratio == 0.25
        assert config.usage_workers == 4

    def test_empty_values_keep_defaults(self):
        config = config_from_env({"CREDIT_METER_DEFAULT_RATIO": ""})
        assert config.default_ratio == 1.0

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            config_from_env({"CREDIT_METER_CHARS_PER_TOKEN": "zero"})
