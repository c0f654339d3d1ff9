"""Tests for awqaf.core.config."""

import json
import os

import pytest

from awqaf.core.config import Config, deep_merge, env_overrides, read_config_file
from awqaf.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep AWQAF_* variables from the developer's shell out of these tests."""
    for name in list(os.environ):
        if name.startswith("AWQAF_"):
            monkeypatch.delenv(name)


class TestConfig:
    def test_defaults(self):
        config = Config()
        assert config.get("paths.data_dir").endswith(".awqaf-data")
        assert config.get("logging.level") == "WARNING"
        assert config.get("engine") == {}

    def test_path_layout_follows_data_dir(self, tmp_dir):
        config = Config(data_dir=tmp_dir)
        assert config.get("paths.store_dir") == os.path.join(tmp_dir, "endowments")
        assert config.get("paths.log_dir") == os.path.join(tmp_dir, "logs")

    def test_yaml_config_file(self, tmp_config_file, tmp_dir):
        config = Config(config_file=tmp_config_file, data_dir=tmp_dir)
        assert config.get("engine.maturity.default_lock_months") == 6
        assert config.get("paths.store_dir") == os.path.join(tmp_dir, "data", "endowments")
        # Keys the file does not mention keep their defaults.
        assert config.get("paths.log_dir") == os.path.join(tmp_dir, "logs")

    def test_json_config_file(self, tmp_dir):
        config_path = os.path.join(tmp_dir, "config.json")
        with open(config_path, "w") as f:
            json.dump({"engine": {"ledger": {"amount_tolerance": 0.1}}}, f)
        config = Config(config_file=config_path, data_dir=tmp_dir)
        assert config.get("engine.ledger.amount_tolerance") == 0.1

    def test_env_overrides_file(self, tmp_config_file, tmp_dir, monkeypatch):
        monkeypatch.setenv("AWQAF_ENGINE__MATURITY__DEFAULT_LOCK_MONTHS", "18")
        config = Config(config_file=tmp_config_file, data_dir=tmp_dir)
        assert config.get("engine.maturity.default_lock_months") == "18"
        assert config.get("engine.maturity.maturing_soon_days") == 14
        assert config.validated().engine.maturity.default_lock_months == 18

    def test_custom_env_prefix(self, monkeypatch, tmp_dir):
        monkeypatch.setenv("ENDOW_LOGGING__LEVEL", "DEBUG")
        assert Config(env_prefix="ENDOW_", data_dir=tmp_dir).get("logging.level") == "DEBUG"
        assert Config(env_prefix="", data_dir=tmp_dir).get("logging.level") == "WARNING"

    def test_extra_defaults_lose_to_file(self, tmp_config_file, tmp_dir):
        defaults = {"engine": {"maturity": {"default_lock_months": 36}}, "custom": {"key": "value"}}
        config = Config(config_file=tmp_config_file, data_dir=tmp_dir, defaults=defaults)
        assert config.get("engine.maturity.default_lock_months") == 6
        assert config.get("custom.key") == "value"

    def test_get_missing_key(self, tmp_dir):
        config = Config(data_dir=tmp_dir)
        assert config.get("nonexistent.key") is None
        assert config.get("logging.level.deeper", "fallback") == "fallback"

    def test_set(self, tmp_dir):
        config = Config(data_dir=tmp_dir)
        config.set("engine.ledger.amount_tolerance", 0.01)
        assert config.get("engine.ledger.amount_tolerance") == 0.01
        assert config.validated().engine.ledger.amount_tolerance == 0.01

    def test_ensure_directories(self, tmp_dir):
        Config(data_dir=tmp_dir).ensure_directories()
        assert os.path.isdir(os.path.join(tmp_dir, "endowments"))
        assert os.path.isdir(os.path.join(tmp_dir, "logs"))


class TestConfigFile:
    def test_missing_file(self, tmp_dir):
        assert read_config_file(os.path.join(tmp_dir, "absent.yaml")) == {}

    def test_empty_yaml(self, tmp_dir):
        path = os.path.join(tmp_dir, "empty.yaml")
        open(path, "w").close()
        assert read_config_file(path) == {}

    def test_unparseable_file(self, tmp_dir):
        path = os.path.join(tmp_dir, "config.yaml")
        with open(path, "w") as f:
            f.write("engine: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Cannot parse"):
            Config(config_file=path, data_dir=tmp_dir)

    def test_non_mapping_file(self, tmp_dir):
        path = os.path.join(tmp_dir, "config.yaml")
        with open(path, "w") as f:
            f.write("- just\n- a list\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            read_config_file(path)


class TestMergeHelpers:
    def test_env_overrides_nesting(self):
        environ = {
            "AWQAF_ENGINE__LEDGER__AMOUNT_TOLERANCE": "0.1",
            "AWQAF_LOGGING__FILE": "/tmp/awqaf.log",
            "HOME": "/root",
        }
        assert env_overrides("AWQAF_", environ) == {
            "engine": {"ledger": {"amount_tolerance": "0.1"}},
            "logging": {"file": "/tmp/awqaf.log"},
        }

    def test_deep_merge_replaces_leaves(self):
        target = {"engine": {"ledger": {"amount_tolerance": 0.5}, "maturity": {}}, "paths": {"data_dir": "/a"}}
        deep_merge(target, {"engine": {"ledger": {"amount_tolerance": 0.1}}, "paths": "flat"})
        assert target == {"engine": {"ledger": {"amount_tolerance": 0.1}, "maturity": {}}, "paths": "flat"}
