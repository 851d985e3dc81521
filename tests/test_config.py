"""Tests for config module: Settings and YAML loading."""

import dataclasses
import os

import pytest

from lognorm.config import Settings, _parse_bool, load_settings, load_yaml_config
from lognorm.errors import ConfigError

_ENV_NAMES = [
    "OFFSETS_FILE", "BATCH_SIZE", "FLUSH_INTERVAL", "POLL_INTERVAL", "RESCAN_INTERVAL",
    "QUEUE_SIZE", "MAX_RETRIES", "RETRY_BASE_DELAY", "RETRY_MAX_DELAY",
    "CHECKPOINT_INTERVAL", "DRAIN_TIMEOUT", "READ_FROM", "USE_WATCHDOG", "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_NAMES + ["CONFIG_PATH"]:
        monkeypatch.delenv(name, raising=False)


class TestParseBool:
    @pytest.mark.parametrize("value", ["true", "True", "1", "yes", " YES "])
    def test_truthy_values(self, value):
        assert _parse_bool(value) is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "", "maybe"])
    def test_falsy_values(self, value):
        assert _parse_bool(value) is False


class TestSettings:
    def test_defaults(self):
        s = load_settings({})
        assert s == Settings()
        assert s.read_from == "end"
        assert s.batch_size == 100

    def test_frozen(self):
        s = Settings()
        with pytest.raises(dataclasses.FrozenInstanceError):
            s.batch_size = 5

    def test_data_dir_sets_offsets_file(self):
        s = load_settings({"data_dir": "/var/lib/lognorm"})
        assert s.offsets_file == os.path.join("/var/lib/lognorm", "offsets.json")

    def test_yaml_settings_section(self):
        s = load_settings({"settings": {"batch_size": 7, "read_from": "beginning"}})
        assert s.batch_size == 7
        assert s.read_from == "beginning"

    def test_env_overrides_yaml(self, monkeypatch):
        monkeypatch.setenv("BATCH_SIZE", "3")
        monkeypatch.setenv("USE_WATCHDOG", "false")
        monkeypatch.setenv("RETRY_MAX_DELAY", "2.5")
        s = load_settings({"settings": {"batch_size": 7}})
        assert s.batch_size == 3
        assert s.use_watchdog is False
        assert s.retry_max_delay == 2.5

    def test_unknown_setting_rejected(self):
        with pytest.raises(ConfigError, match="unknown setting"):
            load_settings({"settings": {"batch_sise": 7}})

    def test_bad_env_value_rejected(self, monkeypatch):
        monkeypatch.setenv("QUEUE_SIZE", "lots")
        with pytest.raises(ConfigError, match="QUEUE_SIZE"):
            load_settings({})

    def test_bad_read_from_rejected(self, monkeypatch):
        monkeypatch.setenv("READ_FROM", "middle")
        with pytest.raises(ConfigError):
            load_settings({})


class TestLoadYamlConfig:
    def test_loads_mapping(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("sources:\n  a:\n    type: file\n    include: [/tmp/a.log]\n")
        data = load_yaml_config(str(path))
        assert data["sources"]["a"]["type"] == "file"

    def test_config_path_env(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yml"
        path.write_text("sinks: {}\n")
        monkeypatch.setenv("CONFIG_PATH", str(path))
        assert load_yaml_config() == {"sinks": {}}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_yaml_config(str(tmp_path / "nope.yml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("sources: [unclosed\n")
        with pytest.raises(ConfigError, match="not valid YAML"):
            load_yaml_config(str(path))

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_yaml_config(str(path))

    def test_duplicate_source_id_rejected(self, tmp_path):
        path = tmp_path / "dup.yml"
        path.write_text(
            "sources:\n"
            "  g_auth:\n    type: file\n    include: [/var/log/auth.log]\n"
            "  g_auth:\n    type: file\n    include: [/var/log/secure]\n"
        )
        with pytest.raises(ConfigError, match="duplicate key 'g_auth' at line 5"):
            load_yaml_config(str(path))

    def test_same_key_in_different_mappings_allowed(self, tmp_path):
        path = tmp_path / "ok.yml"
        path.write_text(
            "sources:\n  a:\n    type: file\n"
            "sinks:\n  a:\n    inputs: [a]\n"
        )
        data = load_yaml_config(str(path))
        assert data["sinks"]["a"]["inputs"] == ["a"]

    def test_bundled_config_is_valid(self):
        from lognorm.topology import load_topology

        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        data = load_yaml_config(os.path.join(root, "config.yml"))
        topology = load_topology(data, check_paths=False)
        assert len(topology.sources) == 6
        assert len(topology.transforms) == 5
        assert len(topology.sinks) == 6
        assert topology.transforms["remap_bodyfile"].parser == "bodyfile"
        assert topology.sinks_for("g_journal") == {"sink_journal"}
