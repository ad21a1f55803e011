# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for configuration loading"""

import pytest
import yaml

from loyaltyflow.core.config import (
    ConfigLoader,
    FlowConfig,
    ensure_directories,
    get_config,
    load_config,
    set_config,
)
from loyaltyflow.core.exceptions import ConfigError


class TestDefaults:
    """Values without any files"""

    def test_paths_derive_from_home(self, isolated_home):
        config = load_config()
        assert config.paths.home == isolated_home
        assert config.paths.database == isolated_home / "loyaltyflow.db"
        assert config.paths.definitions_dir == isolated_home / "workflows"
        assert config.paths.log_dir == isolated_home / "logs"

    def test_runtime_defaults(self):
        config = FlowConfig()
        assert config.runtime.max_steps_per_run == 200
        assert config.runtime.dispatch_max_attempts == 3
        assert config.runtime.max_page_size == 100
        assert config.outbound.user_agent == "loyaltyflow/1.0"

    def test_log_level_is_normalized(self):
        assert FlowConfig(observability={"log_level": "debug"}).observability.log_level == "DEBUG"


class TestSources:
    """Files and environment"""

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LOYALTYFLOW_MAX_STEPS", "50")
        monkeypatch.setenv("LOYALTYFLOW_MESSAGE_ENDPOINT", "https://bot.example.com/send")
        monkeypatch.setenv("LOYALTYFLOW_SSL_VERIFY", "false")

        config = load_config()
        assert config.runtime.max_steps_per_run == 50
        assert config.outbound.message_endpoint == "https://bot.example.com/send"
        assert config.outbound.enable_ssl_verify is False
        assert config.observability.file_logs is False

    def test_project_file_and_explicit_file(self, tmp_path):
        (tmp_path / ".loyaltyflow.yaml").write_text(
            yaml.safe_dump({"runtime": {"max_node_visits": 7, "max_steps_per_run": 10}})
        )
        explicit = tmp_path / "prod.yaml"
        explicit.write_text(yaml.safe_dump({"runtime": {"max_steps_per_run": 30}}))

        config = load_config(explicit)
        assert config.runtime.max_node_visits == 7
        assert config.runtime.max_steps_per_run == 30

    def test_env_beats_file(self, tmp_path, monkeypatch):
        (tmp_path / ".loyaltyflow.yaml").write_text(yaml.safe_dump({"runtime": {"max_steps_per_run": 10}}))
        monkeypatch.setenv("LOYALTYFLOW_MAX_STEPS", "60")
        assert load_config().runtime.max_steps_per_run == 60

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.yaml")

    def test_invalid_value(self, monkeypatch):
        monkeypatch.setenv("LOYALTYFLOW_LOG_LEVEL", "LOUD")
        with pytest.raises(ConfigError, match="validation failed"):
            load_config()

    def test_file_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            ConfigLoader.load_from_file(path)

    def test_merge_is_deep(self):
        merged = ConfigLoader.merge_configs(
            {"runtime": {"max_steps_per_run": 10, "max_node_visits": 5}},
            {"runtime": {"max_steps_per_run": 20}},
        )
        assert merged == {"runtime": {"max_steps_per_run": 20, "max_node_visits": 5}}


class TestGlobal:
    """Global instance and directories"""

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_set_config(self, tmp_path):
        config = FlowConfig(paths={"home": tmp_path / "other"})
        set_config(config)
        assert get_config() is config

    def test_ensure_directories(self, tmp_path):
        config = FlowConfig(paths={"home": tmp_path / "fresh"})
        ensure_directories(config)
        assert config.paths.definitions_dir.is_dir()
        assert config.paths.log_dir.is_dir()
