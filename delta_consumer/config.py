"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_OPERATION_BASE = "http://redpencil.data.gift/id/jobs/concept/JobOperation/deltas/"


class Settings(BaseSettings):
    """Delta consumer settings.

    Field names match the environment variables of the deployment
    (``SYNC_BASE_URL``, ``INGEST_GRAPH``, ...), case-insensitively.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Identity
    service_name: str = "delta-consumer"
    job_creator_uri: str = "http://data.lblod.info/id/services/delta-consumer"
    delta_sync_job_operation: str = _OPERATION_BASE + "consumer/deltaSyncing"
    initial_sync_job_operation: str = _OPERATION_BASE + "consumer/initialSync"

    # Producer
    sync_base_url: str | None = None
    sync_files_path: str = "/sync/files"
    download_file_path: str = "/files/:id/download"
    sync_dataset_path: str = "/datasets"
    sync_dataset_subject: str | None = None
    producer_timeout_seconds: float = Field(default=60.0, gt=0)

    # Watermark
    start_from_delta_timestamp: str | None = None

    # Staging
    delta_file_folder: Path = Path("/tmp/deltas")
    keep_delta_files: bool = False
    dump_file_folder: Path = Path("/tmp/dumps")

    # Toggles
    disable_delta_ingest: bool = False
    disable_initial_sync: bool = False
    wait_for_initial_sync: bool = True
    disable_file_ingest: bool = False

    # Graphs
    jobs_graph: str = "http://mu.semte.ch/graphs/system/jobs"
    ingest_graph: str = "http://mu.semte.ch/graphs/public"
    temp_file_graph: str = "http://mu.semte.ch/graphs/temp/files"
    temp_file_removal_graph: str = "http://mu.semte.ch/graphs/temp/files-removal"

    # Store
    sparql_endpoint: str | None = None
    oxigraph_path: Path | None = None
    sparql_extra_headers: dict[str, str] = Field(
        default_factory=lambda: {"mu-auth-sudo": "true"}
    )
    scope_header_name: str = "mu-call-scope-id"
    file_sync_scope_id: str = "http://redpencil.data.gift/id/concept/muScope/deltas/file-sync"
    initial_sync_scope_id: str = (
        "http://redpencil.data.gift/id/concept/muScope/deltas/initialSync"
    )
    store_timeout_seconds: float = Field(default=300.0, gt=0)

    # Batched updater
    batch_size: int = Field(default=100, ge=1)
    max_db_retry_attempts: int = Field(default=5, ge=1)
    sleep_between_batches_ms: int = Field(default=1000, ge=0)
    sleep_time_after_failed_db_operation_ms: int = Field(default=60000, ge=0)

    # Files
    file_prefixes: list[str] = Field(
        default_factory=lambda: ["share://", "http://data.lblod.info/files/"]
    )
    file_folder: Path = Path("/share")
    share_uri_scheme: str = "share://"
    remapping: dict[str, str] = Field(default_factory=dict)
    max_download_attempts: int = Field(default=3, ge=1)
    file_sync_concurrency: int = Field(default=4, ge=1)

    # Dispatching
    delta_sync_dispatch: str = "single-graph"
    initial_sync_dispatch: str = "single-graph"
    dispatch_target_graph: str | None = None

    # Scheduling (0 disables the periodic trigger)
    delta_sync_interval_seconds: int = Field(default=60, ge=0)
    file_sync_interval_seconds: int = Field(default=60, ge=0)

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    debug: bool = False
    api_token: str | None = None

    @property
    def sync_files_endpoint(self) -> str:
        return f"{(self.sync_base_url or '').rstrip('/')}{self.sync_files_path}"

    @property
    def sync_dataset_endpoint(self) -> str:
        return f"{(self.sync_base_url or '').rstrip('/')}{self.sync_dataset_path}"

    def download_file_endpoint(self, file_id: str) -> str:
        """Return the producer URL from which the body of ``file_id`` is downloaded."""
        path = self.download_file_path.replace(":id", file_id)
        return f"{(self.sync_base_url or '').rstrip('/')}{path}"

    @property
    def initial_sync_required(self) -> bool:
        return self.wait_for_initial_sync or not self.disable_initial_sync

    @property
    def sleep_between_batches(self) -> float:
        return self.sleep_between_batches_ms / 1000

    @property
    def sleep_time_after_failed_db_operation(self) -> float:
        return self.sleep_time_after_failed_db_operation_ms / 1000

    def validate_runtime(self) -> None:
        """Validate settings that have no safe default at runtime."""
        violations: list[str] = []
        if not self.sync_base_url:
            violations.append("SYNC_BASE_URL must be provided")
        if self.initial_sync_required and not self.sync_dataset_subject:
            violations.append(
                "SYNC_DATASET_SUBJECT must be provided unless initial sync is disabled "
                "and WAIT_FOR_INITIAL_SYNC is false"
            )
        if not self.file_prefixes:
            violations.append("FILE_PREFIXES must contain at least one prefix")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid consumer configuration: {joined}")
