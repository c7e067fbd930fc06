"""
Tests for configuration loading.
"""

import json

import pytest

from config import CONFIG_ENV_VAR, DEFAULTS, ConfigLoader, config_value
from simulation import SimulationEngine


class TestConfigLoader:
    """Tests for ConfigLoader."""

    def test_defaults(self):
        cfg = ConfigLoader()
        assert cfg["time_step"] == DEFAULTS["time_step"]
        assert cfg["kB"] == 1.0
        assert "accommodation" in cfg
        assert cfg.get("missing", 7) == 7

    def test_singleton(self):
        assert ConfigLoader() is ConfigLoader()

    def test_file_overrides_defaults(self, isolated_config):
        isolated_config.write_text(json.dumps({"time_step": 0.01, "kB": 2.0}))
        ConfigLoader.reset_instance()
        cfg = ConfigLoader()
        assert cfg.path == isolated_config
        assert cfg["time_step"] == 0.01
        assert cfg["kB"] == 2.0
        assert cfg["accommodation"] == DEFAULTS["accommodation"]

    def test_environment_variable(self, tmp_path, monkeypatch):
        other = tmp_path / "other.json"
        other.write_text(json.dumps({"frame_buffer_size": 8}))
        monkeypatch.setenv(CONFIG_ENV_VAR, str(other))
        ConfigLoader.reset_instance()
        assert ConfigLoader()["frame_buffer_size"] == 8

    def test_explicit_path_reloads(self, tmp_path):
        other = tmp_path / "explicit.json"
        other.write_text(json.dumps({"energy_history": 10}))
        assert ConfigLoader()["energy_history"] == DEFAULTS["energy_history"]
        assert ConfigLoader(other)["energy_history"] == 10

    def test_set_persists(self, isolated_config):
        cfg = ConfigLoader()
        cfg.set("accommodation", 0.25)
        assert cfg["accommodation"] == 0.25
        assert json.loads(isolated_config.read_text()) == {"accommodation": 0.25}
        ConfigLoader.reset_instance()
        assert ConfigLoader()["accommodation"] == 0.25

    def test_invalid_file(self, isolated_config):
        isolated_config.write_text(json.dumps([1, 2, 3]))
        ConfigLoader.reset_instance()
        with pytest.raises(ValueError):
            ConfigLoader()

    def test_config_value(self):
        assert config_value(0.5, "time_step") == 0.5
        assert config_value(None, "time_step") == DEFAULTS["time_step"]

    def test_engine_reads_configuration(self, isolated_config, head_on_scene):
        isolated_config.write_text(json.dumps({"time_step": 0.02, "kB": 4.0}))
        ConfigLoader.reset_instance()
        engine = SimulationEngine(head_on_scene)
        assert engine.dt == 0.02
        assert engine.k_boltz == 4.0
