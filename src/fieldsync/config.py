"""Configuration management for FieldSync."""

import os
from pathlib import Path

import tomli
from pydantic import BaseModel, Field, field_validator


class FieldSyncConfig(BaseModel):
    """Main configuration for FieldSync."""

    # Paths
    data_dir: Path = Field(
        default=Path("~/.local/share/fieldsync"),
        validate_default=True,
    )
    log_dir: Path = Field(
        default=Path("~/.local/share/fieldsync/logs"),
        validate_default=True,
    )

    # Server of record
    api_url: str = Field(default="http://localhost:8000/api")
    api_token: str | None = Field(default=None, validate_default=True)
    health_endpoint: str = Field(default="health")

    # Notifications
    ntfy_topic: str | None = None
    ntfy_request_timeout: int = Field(default=10)  # seconds

    # HTTP transport (request-level retry, separate from queue retry)
    request_timeout: int = Field(default=30)  # seconds
    http_max_retries: int = Field(default=3)
    http_base_delay_seconds: float = Field(default=1.0)
    http_max_delay_seconds: float = Field(default=30.0)
    network_check_interval_seconds: int = Field(default=5)

    # Synchronization
    auto_sync_enabled: bool = Field(default=True)
    sync_interval_minutes: int = Field(default=5)
    orchestrator_batch_size: int = Field(default=50)
    scheduler_batch_size: int = Field(default=20)
    scheduler_batch_delay_seconds: float = Field(default=1.0)
    reconnect_settle_seconds: float = Field(default=2.0)
    shutdown_timeout_seconds: float = Field(default=30.0)
    syncing_stale_minutes: int = Field(default=30)

    # Queue
    max_retry_attempts: int = Field(default=3)
    retention_days: int = Field(default=7)

    # Reference data cache
    cache_expiry_hours: int = Field(default=24)
    continuity_window_days: int = Field(default=7)
    staleness_check_minutes: int = Field(default=30)
    required_categories: list[str] = Field(
        default_factory=lambda: ["organizations", "people"],
    )
    scope_ids: list[str] = Field(default_factory=list)

    # Local store
    store_pool_size: int = Field(default=4)
    store_busy_retries: int = Field(default=5)
    store_busy_base_delay: float = Field(default=0.05)  # seconds
    store_busy_timeout: float = Field(default=5.0)  # seconds

    @field_validator("data_dir", "log_dir", mode="before")
    @classmethod
    def expand_paths(cls, v: Path | str) -> Path:
        """Expand user home directory in paths."""
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser().resolve()

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Require an http(s) base URL without a trailing slash."""
        if not v.startswith(("http://", "https://")):
            msg = "api_url must start with http:// or https://"
            raise ValueError(msg)
        return v.rstrip("/")

    @field_validator("api_token", mode="after")
    @classmethod
    def token_from_environment(cls, v: str | None) -> str | None:
        """Fall back to FIELDSYNC_API_TOKEN when no token is configured."""
        return v or os.getenv("FIELDSYNC_API_TOKEN")

    @field_validator(
        "sync_interval_minutes",
        "orchestrator_batch_size",
        "scheduler_batch_size",
        "max_retry_attempts",
        "cache_expiry_hours",
        "continuity_window_days",
        "staleness_check_minutes",
        "syncing_stale_minutes",
        "store_pool_size",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        """Reject zero and negative counts and intervals."""
        if v <= 0:
            msg = "value must be greater than zero"
            raise ValueError(msg)
        return v

    @field_validator("retention_days", "http_max_retries", "store_busy_retries")
    @classmethod
    def must_not_be_negative(cls, v: int) -> int:
        """Reject negative retry counts and retention periods."""
        if v < 0:
            msg = "value must not be negative"
            raise ValueError(msg)
        return v

    @property
    def database_path(self) -> Path:
        """SQLite database holding the queue and the reference cache."""
        return self.data_dir / "fieldsync.db"

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for dir_path in [self.data_dir, self.log_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)


def load_config(config_path: Path | None = None) -> FieldSyncConfig:
    """Load configuration from file or defaults."""
    if config_path is None:
        # Check common config locations (user config first)
        possible_paths = [
            Path.home() / ".config" / "fieldsync" / "config.toml",
            Path.cwd() / "fieldsync.toml",
        ]

        for path in possible_paths:
            if path.exists():
                config_path = path
                break

    if config_path and config_path.exists():
        with open(config_path, "rb") as f:
            config_data = tomli.load(f)
        return FieldSyncConfig(**config_data)
    # Use defaults
    return FieldSyncConfig()


def create_sample_config(path: Path) -> None:
    """Create a sample configuration file."""
    sample_config = """# FieldSync Configuration
# ======================
# Edit the REQUIRED settings below, then customize optional settings as needed.

# ============================================================================
# REQUIRED SETTINGS
# ============================================================================

api_url = "https://example.org/api"              # Server of record base URL
api_token = "your_bearer_token_here"             # Pre-issued token (or set FIELDSYNC_API_TOKEN)

# ============================================================================
# COMMONLY CUSTOMIZED SETTINGS
# ============================================================================

data_dir = "~/.local/share/fieldsync"            # Auto-created: queue and cache database
log_dir = "~/.local/share/fieldsync/logs"        # Auto-created: log files
scope_ids = []                                   # Organizational units to cache people for (empty = all cached)

# Notifications (optional)
# ntfy_topic = "https://ntfy.sh/your_topic"

# ============================================================================
# SYNCHRONIZATION
# ============================================================================

auto_sync_enabled = true                         # Sync on a timer and on network reconnect
sync_interval_minutes = 5                        # Periodic sync interval
orchestrator_batch_size = 50                     # Items per upload request during a sync cycle
scheduler_batch_size = 20                        # Items per background processing batch
scheduler_batch_delay_seconds = 1.0              # Pause between background batches
reconnect_settle_seconds = 2.0                   # Wait after reconnect before syncing
syncing_stale_minutes = 30                       # Reclaim items stuck in syncing after this long
shutdown_timeout_seconds = 30.0                  # Max wait for an in-flight run on stop

# Queue
max_retry_attempts = 3                           # Failures before an operation is terminal
retention_days = 7                               # Keep synced operations this long

# ============================================================================
# REFERENCE DATA CACHE
# ============================================================================

cache_expiry_hours = 24                          # Cached data older than this is stale
continuity_window_days = 7                       # Cached data older than this cannot sustain offline work
staleness_check_minutes = 30                     # How often to check for stale data
required_categories = ["organizations", "people"]

# ============================================================================
# ADVANCED SETTINGS - Most users can leave these as defaults
# ============================================================================

request_timeout = 30                             # HTTP request timeout (seconds)
http_max_retries = 3                             # Per-request retries on connection errors and 5xx
http_base_delay_seconds = 1.0
http_max_delay_seconds = 30.0
network_check_interval_seconds = 5
health_endpoint = "health"

store_pool_size = 4                              # SQLite connections kept open
store_busy_retries = 5                           # Retries when the database is locked
store_busy_base_delay = 0.05
store_busy_timeout = 5.0
"""

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(sample_config)
