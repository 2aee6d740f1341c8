"""
Tests for supervisor configuration, restart policy and startup context.
"""

import dataclasses
import os

import pytest

from sync_supervisor.classifier import LineClassifier, Progress
from sync_supervisor.config import (
    DEFAULT_CONFIG,
    SupervisorConfig,
    SupervisorContext,
    load_config,
)
from sync_supervisor.errors import ConfigError
from sync_supervisor.run import RunStatus


class TestSupervisorConfig:
    """Tests for SupervisorConfig."""

    def test_default_config_frozen(self):
        """Default config should be frozen (immutable)."""
        with pytest.raises(dataclasses.FrozenInstanceError):
            DEFAULT_CONFIG.idle_limit = 10

    def test_default_values(self):
        assert DEFAULT_CONFIG.idle_limit == 3
        assert DEFAULT_CONFIG.db_lock_pattern == "db/LOCK"
        assert DEFAULT_CONFIG.restart_on_exit is False
        assert DEFAULT_CONFIG.echo_fatal_lines is False
        assert DEFAULT_CONFIG.isolate_process_group is False
        assert DEFAULT_CONFIG.max_restarts is None

    def test_idle_backoff_is_shorter(self):
        """A stalled daemon restarts sooner than a crashed one."""
        assert DEFAULT_CONFIG.idle_backoff_seconds < DEFAULT_CONFIG.crash_backoff_seconds
        assert DEFAULT_CONFIG.idle_backoff_seconds < DEFAULT_CONFIG.db_locked_backoff_seconds

    @pytest.mark.parametrize("kwargs", [
        {"idle_limit": 0},
        {"idle_limit": -1},
        {"idle_limit": True},
        {"idle_limit": "3"},
        {"crash_backoff_seconds": -1},
        {"idle_backoff_seconds": 1.5},
        {"kill_grace_seconds": 0},
        {"poll_interval_seconds": -0.1},
        {"max_restarts": -1},
        {"max_restarts": "many"},
        {"restart_on_exit": "yes"},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ConfigError):
            SupervisorConfig(**kwargs)

    def test_zero_backoff_allowed(self):
        config = SupervisorConfig(crash_backoff_seconds=0)
        assert config.crash_backoff_seconds == 0


class TestRestartPolicy:
    """Tests for backoff_for()."""

    def test_crashed_restarts(self):
        assert DEFAULT_CONFIG.backoff_for(RunStatus.CRASHED) == DEFAULT_CONFIG.crash_backoff_seconds

    def test_db_locked_restarts(self):
        assert DEFAULT_CONFIG.backoff_for(RunStatus.DB_LOCKED) == DEFAULT_CONFIG.db_locked_backoff_seconds

    def test_idled_restarts(self):
        assert DEFAULT_CONFIG.backoff_for(RunStatus.IDLED) == DEFAULT_CONFIG.idle_backoff_seconds

    def test_clean_stops(self):
        assert DEFAULT_CONFIG.backoff_for(RunStatus.CLEAN) is None

    def test_unknown_stops(self):
        assert DEFAULT_CONFIG.backoff_for(RunStatus.UNKNOWN) is None

    def test_custom_delays(self):
        config = SupervisorConfig(
            crash_backoff_seconds=30,
            db_locked_backoff_seconds=20,
            idle_backoff_seconds=1,
        )
        assert config.backoff_for(RunStatus.CRASHED) == 30
        assert config.backoff_for(RunStatus.DB_LOCKED) == 20
        assert config.backoff_for(RunStatus.IDLED) == 1


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_no_path_gives_defaults(self):
        assert load_config(None) is DEFAULT_CONFIG

    def test_missing_file_gives_defaults(self, temp_dir):
        assert load_config(str(temp_dir / "absent.yaml")) is DEFAULT_CONFIG

    def test_partial_override(self, temp_dir):
        path = temp_dir / "supervisor.yaml"
        path.write_text("idle_limit: 5\nrestart_on_exit: true\n")

        config = load_config(str(path))

        assert config.idle_limit == 5
        assert config.restart_on_exit is True
        assert config.crash_backoff_seconds == DEFAULT_CONFIG.crash_backoff_seconds

    def test_empty_file_gives_defaults(self, temp_dir):
        path = temp_dir / "supervisor.yaml"
        path.write_text("")
        assert load_config(str(path)) == DEFAULT_CONFIG

    def test_unknown_key_rejected(self, temp_dir):
        path = temp_dir / "supervisor.yaml"
        path.write_text("idle_limt: 5\n")

        with pytest.raises(ConfigError, match="idle_limt"):
            load_config(str(path))

    def test_non_mapping_rejected(self, temp_dir):
        path = temp_dir / "supervisor.yaml"
        path.write_text("- idle_limit\n- 5\n")

        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_bad_yaml_rejected(self, temp_dir):
        path = temp_dir / "supervisor.yaml"
        path.write_text("idle_limit: [unclosed\n")

        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_invalid_value_rejected(self, temp_dir):
        path = temp_dir / "supervisor.yaml"
        path.write_text("idle_limit: 0\n")

        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_example_config_loads(self):
        """The shipped example must stay in sync with SupervisorConfig."""
        root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
        example = os.path.join(root, "config", "supervisor.example.yaml")

        assert load_config(example) == DEFAULT_CONFIG


class TestSupervisorContext:
    """Tests for the startup context."""

    def test_create_compiles_classifier(self):
        context = SupervisorContext.create(DEFAULT_CONFIG)

        assert isinstance(context.classifier, LineClassifier)
        assert context.classifier.classify("x best #12") == Progress(12)

    def test_records_own_pid(self):
        context = SupervisorContext.create()

        assert context.supervisor_pid == os.getpid()
        if hasattr(os, "getpgid"):
            assert context.supervisor_pgid == os.getpgid(0)

    def test_custom_pattern_used(self):
        config = SupervisorConfig(progress_pattern=r"height=(\d+)")
        context = SupervisorContext.create(config)
        assert context.classifier.classify("height=9") == Progress(9)

    def test_bad_pattern_is_config_error(self):
        config = SupervisorConfig(progress_pattern=r"best #(\d+")
        with pytest.raises(ConfigError):
            SupervisorContext.create(config)

    def test_pattern_without_group_is_config_error(self):
        config = SupervisorConfig(progress_pattern=r"best")
        with pytest.raises(ConfigError):
            SupervisorContext.create(config)
