"""Configuration for the buffer table."""
from typing import Optional
import urllib.parse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_SCHEMES = ("sqlite", "postgresql")


class BufferTableSettings(BaseSettings):
    """
    Settings can be configured via environment variables with the
    `BUFFER_TABLE_` prefix, e.g. `BUFFER_TABLE_BATCH_SIZE=500`.
    """

    # `sqlite://` is an in-memory database, `sqlite:///path/to/file.db` a file.
    url: str = "sqlite://"

    batch_size: int = Field(default=1000, ge=1)
    max_batches_per_tick: int = Field(default=10, ge=1)
    distribution_interval: float = Field(default=60.0, gt=0)
    max_retry_attempts: int = Field(default=3, ge=1)

    # Scheduler backoff between attempts of a failing task, in seconds.
    retry_backoff_initial: float = Field(default=1.0, ge=0)
    retry_backoff_max: float = Field(default=60.0, ge=0)
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    # Most recent dead-lettered tasks kept in memory by the scheduler.
    dead_letter_limit: int = Field(default=1000, ge=1)

    single_flight: bool = False

    # Seconds without progress before a claimed batch counts as orphaned.
    orphan_timeout: Optional[float] = Field(default=900.0, gt=0)
    sweep_interval: float = Field(default=300.0, gt=0)

    encryption_key: Optional[str] = None

    pool_size: int = Field(default=10, ge=1)
    busy_timeout_ms: int = Field(default=5000, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="BUFFER_TABLE_",
        case_sensitive=False,
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def scheme(self) -> str:
        return self.url.split("://", 1)[0] if "://" in self.url else ""

    @model_validator(mode="after")
    def validate_settings(self) -> "BufferTableSettings":
        if self.scheme not in SUPPORTED_SCHEMES:
            raise ValueError(
                f"Unsupported scheme: {self.scheme or self.url!r}. "
                f"Expected one of {', '.join(SUPPORTED_SCHEMES)}."
            )
        if self.retry_backoff_max < self.retry_backoff_initial:
            raise ValueError("retry_backoff_max cannot be smaller than retry_backoff_initial")
        return self


def sqlite_path_from_url(url: str) -> str:
    """Maps `sqlite://` to `:memory:` and `sqlite:///some/file.db` to its path."""
    parsed = urllib.parse.urlparse(url)
    db_path = parsed.path
    if not db_path or db_path == "/":
        return ":memory:"
    # `sqlite:////abs/file.db` also names an absolute path.
    if db_path.startswith("//"):
        db_path = "/" + db_path.lstrip("/")
    return db_path
