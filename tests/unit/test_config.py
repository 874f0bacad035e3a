"""Unit tests for configuration management."""

import os
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest
from pydantic import ValidationError
from ticketq.infrastructure.config import Config, ConfigManager, QueueConfig


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path):
    """Keep ~/.ticketq/config.yaml of the machine running the tests out of the way."""
    with patch("ticketq.infrastructure.config.Path.home", return_value=tmp_path / "home"):
        yield


class TestConfig:
    """Tests for Config model."""

    def test_default_config(self) -> None:
        """Test creating a config with defaults."""
        config = Config()

        assert config.version == "0.1.0"
        assert config.log_level == "INFO"
        assert config.database_path is None
        assert config.queue.default_priority == 5
        assert config.queue.default_max_parallel_items == 1
        assert config.queue.stuck_item_threshold_seconds == 3600
        assert config.queue.completed_item_max_age_seconds == 7 * 24 * 3600

    def test_log_level_normalized(self) -> None:
        """Test log level is upper-cased."""
        assert Config(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            Config(log_level="LOUD")

    def test_priority_bounds(self) -> None:
        """Test default priority must lie in 0..10."""
        with pytest.raises(ValidationError):
            QueueConfig(default_priority=11)


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_load_default_config(self) -> None:
        """Test loading config with no files present."""
        with TemporaryDirectory() as tmpdir:
            manager = ConfigManager(project_root=Path(tmpdir))
            config = manager.load_config()

            assert config.log_level == "INFO"
            assert config.queue.default_priority == 5

    def test_load_project_config(self) -> None:
        """Test project config overrides defaults and local.yaml overrides project config."""
        with TemporaryDirectory() as tmpdir:
            config_dir = Path(tmpdir) / ".ticketq"
            config_dir.mkdir()
            (config_dir / "config.yaml").write_text(
                "log_level: DEBUG\nqueue:\n  default_priority: 2\n  default_max_parallel_items: 4\n"
            )
            (config_dir / "local.yaml").write_text("queue:\n  default_priority: 7\n")

            config = ConfigManager(project_root=Path(tmpdir)).load_config()

            assert config.log_level == "DEBUG"
            assert config.queue.default_priority == 7
            assert config.queue.default_max_parallel_items == 4

    def test_env_var_override(self) -> None:
        """Test TICKETQ_* environment variables win over files."""
        with TemporaryDirectory() as tmpdir:
            config_dir = Path(tmpdir) / ".ticketq"
            config_dir.mkdir()
            (config_dir / "config.yaml").write_text("queue:\n  default_priority: 2\n")

            env = {
                "TICKETQ_DEFAULT_PRIORITY": "9",
                "TICKETQ_LOG_LEVEL": "warning",
                "TICKETQ_COMPLETED_MAX_AGE_SECONDS": "600",
            }
            with patch.dict(os.environ, env):
                config = ConfigManager(project_root=Path(tmpdir)).load_config()

            assert config.queue.default_priority == 9
            assert config.log_level == "WARNING"
            assert config.queue.completed_item_max_age_seconds == 600

    def test_default_database_path(self) -> None:
        """Test the database defaults to .ticketq/ticketq.db under the project."""
        with TemporaryDirectory() as tmpdir:
            manager = ConfigManager(project_root=Path(tmpdir))
            db_path = manager.get_database_path()

            assert db_path == Path(tmpdir) / ".ticketq" / "ticketq.db"
            assert db_path.parent.exists()

    def test_relative_database_path_resolved_to_project(self) -> None:
        with TemporaryDirectory() as tmpdir:
            with patch.dict(os.environ, {"TICKETQ_DATABASE_PATH": "data/q.db"}):
                manager = ConfigManager(project_root=Path(tmpdir))
                assert manager.get_database_path() == Path(tmpdir) / "data" / "q.db"

    def test_memory_database_path_kept(self) -> None:
        with TemporaryDirectory() as tmpdir:
            with patch.dict(os.environ, {"TICKETQ_DATABASE_PATH": ":memory:"}):
                manager = ConfigManager(project_root=Path(tmpdir))
                assert str(manager.get_database_path()) == ":memory:"

    def test_log_dir_created(self) -> None:
        with TemporaryDirectory() as tmpdir:
            log_dir = ConfigManager(project_root=Path(tmpdir)).get_log_dir()
            assert log_dir.is_dir()
            assert log_dir == Path(tmpdir) / ".ticketq" / "logs"
