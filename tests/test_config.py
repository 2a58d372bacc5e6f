"""Essential configuration tests."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from fieldsync.config import FieldSyncConfig, create_sample_config, load_config


class TestConfigBasics:
    """Test essential configuration functionality."""

    def test_default_config(self, monkeypatch):
        """Test default configuration values."""
        monkeypatch.delenv("FIELDSYNC_API_TOKEN", raising=False)
        config = FieldSyncConfig()

        assert config.api_url == "http://localhost:8000/api"
        assert config.api_token is None
        assert config.max_retry_attempts == 3
        assert config.retention_days == 7
        assert config.cache_expiry_hours == 24
        assert config.continuity_window_days == 7
        assert config.scheduler_batch_size == 20
        assert config.shutdown_timeout_seconds == 30.0
        assert config.required_categories == ["organizations", "people"]

    def test_config_with_custom_paths(self, tmp_path):
        config = FieldSyncConfig(data_dir=tmp_path / "data", log_dir=tmp_path / "logs")

        assert config.data_dir == tmp_path / "data"
        assert config.database_path == tmp_path / "data" / "fieldsync.db"

    def test_directory_creation(self, tmp_path):
        config = FieldSyncConfig(data_dir=tmp_path / "data", log_dir=tmp_path / "logs")

        config.ensure_directories()

        assert config.data_dir.exists()
        assert config.log_dir.exists()

    def test_path_expansion(self):
        config = FieldSyncConfig(data_dir=Path("~/fieldsync"), log_dir="~/fieldsync/logs")

        assert "~" not in str(config.data_dir)
        assert "~" not in str(config.log_dir)


class TestConfigValidation:
    """Test field validators."""

    def test_api_url_trailing_slash_removed(self):
        config = FieldSyncConfig(api_url="https://example.org/api/")

        assert config.api_url == "https://example.org/api"

    def test_api_url_requires_scheme(self):
        with pytest.raises(ValidationError, match="api_url must start"):
            FieldSyncConfig(api_url="example.org/api")

    @pytest.mark.parametrize(
        "field",
        ["max_retry_attempts", "scheduler_batch_size", "cache_expiry_hours"],
    )
    def test_positive_fields(self, field):
        with pytest.raises(ValidationError, match="greater than zero"):
            FieldSyncConfig(**{field: 0})

    def test_retention_may_be_zero(self):
        assert FieldSyncConfig(retention_days=0).retention_days == 0

    def test_negative_retries_rejected(self):
        with pytest.raises(ValidationError, match="must not be negative"):
            FieldSyncConfig(http_max_retries=-1)

    def test_token_from_environment(self, monkeypatch):
        monkeypatch.setenv("FIELDSYNC_API_TOKEN", "env-token")

        assert FieldSyncConfig().api_token == "env-token"
        assert FieldSyncConfig(api_token="file-token").api_token == "file-token"


class TestConfigLoading:
    """Test configuration loading from files."""

    def test_config_file_loading(self, tmp_path):
        config_file = tmp_path / "config.toml"
        config_file.write_text(
            """
api_url = "https://field.example.org/api"
max_retry_attempts = 5
scope_ids = ["1", "4"]
""",
        )

        config = load_config(config_file)

        assert config.api_url == "https://field.example.org/api"
        assert config.max_retry_attempts == 5
        assert config.scope_ids == ["1", "4"]
        assert config.retention_days == 7

    def test_missing_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        monkeypatch.chdir(tmp_path)

        config = load_config(tmp_path / "missing.toml")

        assert config.api_url == "http://localhost:8000/api"

    def test_discovers_project_config(self, tmp_path, monkeypatch):
        monkeypatch.setattr(Path, "home", lambda: tmp_path / "home")
        monkeypatch.chdir(tmp_path)
        (tmp_path / "fieldsync.toml").write_text('api_url = "https://cwd.example.org"\n')

        assert load_config().api_url == "https://cwd.example.org"

    def test_sample_config_loads(self, tmp_path):
        path = tmp_path / "nested" / "config.toml"

        create_sample_config(path)
        config = load_config(path)

        assert config.api_url == "https://example.org/api"
        assert config.api_token == "your_bearer_token_here"
        assert config.sync_interval_minutes == 5
