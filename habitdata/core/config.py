from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_CHECKSUM_ALGORITHMS = {"sha256", "md5", "blake2b"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HABITDATA_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "HabitData"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    artifacts_root: Path | None = None
    database_url: str | None = None

    job_max_retries: PositiveInt = 3
    job_retry_delays_seconds: list[PositiveInt] = Field(default_factory=lambda: [60, 300, 900, 900])
    job_stage_timeout_seconds: PositiveInt = 300
    job_lease_ttl_seconds: PositiveInt = 600

    worker_concurrency: PositiveInt = 4
    worker_queue_capacity: PositiveInt = 1000

    checksum_algorithm: str = "sha256"
    compression_level: int = Field(default=6, ge=1, le=9)
    import_max_bytes: PositiveInt = 50 * 1024 * 1024
    import_max_errors: PositiveInt = 100

    default_page_size: PositiveInt = 50
    max_page_size: PositiveInt = 200

    @field_validator("state_root", "artifacts_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path | None:
        if value is None:
            return None
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        if self.artifacts_root is None:
            self.artifacts_root = self.state_root / "artifacts"
        self.artifacts_root = self.artifacts_root.resolve(strict=False)
        if self.state_root != self.artifacts_root and self.state_root not in self.artifacts_root.parents:
            raise ValueError("artifacts_root must be under state_root")
        self.artifacts_root.mkdir(parents=True, exist_ok=True)

        if not self.job_retry_delays_seconds:
            raise ValueError("job_retry_delays_seconds must not be empty")
        for earlier, later in zip(self.job_retry_delays_seconds, self.job_retry_delays_seconds[1:]):
            if later < earlier:
                raise ValueError("job_retry_delays_seconds must be non-decreasing")

        if self.job_lease_ttl_seconds <= self.job_stage_timeout_seconds:
            raise ValueError("job_lease_ttl_seconds must be greater than job_stage_timeout_seconds")

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        normalized_algorithm = self.checksum_algorithm.lower().strip()
        if normalized_algorithm not in SUPPORTED_CHECKSUM_ALGORITHMS:
            raise ValueError(f"checksum_algorithm must be one of {sorted(SUPPORTED_CHECKSUM_ALGORITHMS)}")
        self.checksum_algorithm = normalized_algorithm

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "habitdata.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def effective_artifacts_root(self) -> Path:
        assert self.artifacts_root is not None
        return self.artifacts_root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
