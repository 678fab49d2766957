"""Configuration management for the ingestion engine.

Provides typed configuration classes that load values from environment
variables with support for dev/staging/prod environments.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from batchlineage.utils.sql_identifiers import UnsafeIdentifierError, validate_identifier


@dataclass
class PostgresConfig:
    """PostgreSQL connection configuration."""

    host: str = ""
    port: int = 5432
    user: str = ""
    password: str = ""
    database: str = ""
    url: str = ""

    def __post_init__(self):
        self.host = self.host or os.environ.get("POSTGRES_HOST", "localhost")
        self.port = int(os.environ.get("POSTGRES_PORT", str(self.port)))
        self.user = self.user or os.environ.get("POSTGRES_USER", "ingest")
        self.password = self.password or os.environ.get("POSTGRES_PASSWORD", "ingest")
        self.database = self.database or os.environ.get("POSTGRES_DB", "lake")
        self.url = self.url or os.environ.get("DATABASE_URL", "")

    @property
    def connection_string(self) -> str:
        if self.url:
            return self.url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


@dataclass
class IngestionConfig:
    """Batch ingestion settings: file discovery, schemas and lineage.

    Values passed to the constructor take precedence over ``INGEST_*``
    environment variables, which take precedence over the defaults.
    """

    raw_root: str = ""
    file_extension: str = ""
    checksum_algorithm: str = ""
    raw_schema: str = ""
    staging_schema: str = ""
    governance_schema: str = ""
    reference_schema: str = ""
    dictionary_table: str = ""
    derived_year_column: str = ""
    stale_after_hours: Optional[float] = None

    def __post_init__(self):
        env = os.environ.get
        self.raw_root = self.raw_root or env("INGEST_RAW_ROOT", "raw")
        self.file_extension = (self.file_extension or env("INGEST_FILE_EXTENSION", ".csv")).lower()
        self.checksum_algorithm = self.checksum_algorithm or env("INGEST_CHECKSUM_ALGORITHM", "sha256")
        self.raw_schema = self.raw_schema or env("INGEST_RAW_SCHEMA", "raw")
        self.staging_schema = self.staging_schema or env("INGEST_STAGING_SCHEMA", "staging")
        self.governance_schema = self.governance_schema or env("INGEST_GOVERNANCE_SCHEMA", "governance")
        self.reference_schema = self.reference_schema or env("INGEST_REFERENCE_SCHEMA", "reference")
        self.dictionary_table = self.dictionary_table or env("INGEST_DICTIONARY_TABLE", "ingest_dictionary")
        self.derived_year_column = self.derived_year_column or env("INGEST_DERIVED_YEAR_COLUMN", "file_year")
        if self.stale_after_hours is None:
            self.stale_after_hours = float(env("INGEST_STALE_AFTER_HOURS", "24"))

    @property
    def stale_after(self) -> timedelta:
        return timedelta(hours=self.stale_after_hours)

    def incoming_dir(self, source_id: str) -> str:
        """Directory holding a source's incoming files."""
        return os.path.join(self.raw_root, source_id, "incoming")


@dataclass
class PipelineConfig:
    """Top-level configuration combining all sub-configs."""

    environment: str = ""
    log_level: str = ""
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)

    def __post_init__(self):
        self.environment = self.environment or os.environ.get("ENVIRONMENT", "development")
        self.log_level = self.log_level or os.environ.get("LOG_LEVEL", "INFO")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate(self) -> list:
        """Validate required configuration parameters.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []

        if not self.postgres.url:
            if not self.postgres.host:
                errors.append("PostgreSQL host is required")
            if not self.postgres.user:
                errors.append("PostgreSQL user is required")

        ing = self.ingestion
        if not ing.raw_root:
            errors.append("Raw root directory is required")
        if not ing.file_extension.startswith("."):
            errors.append(f"File extension must start with '.': {ing.file_extension!r}")
        if ing.stale_after_hours <= 0:
            errors.append("Stale batch threshold must be positive")

        for label, name in (
            ("raw schema", ing.raw_schema),
            ("staging schema", ing.staging_schema),
            ("governance schema", ing.governance_schema),
            ("reference schema", ing.reference_schema),
            ("dictionary table", ing.dictionary_table),
            ("derived year column", ing.derived_year_column),
        ):
            try:
                validate_identifier(name)
            except UnsafeIdentifierError:
                errors.append(f"Invalid {label} name: {name!r}")

        return errors


def get_config() -> PipelineConfig:
    """Create and validate the pipeline configuration.

    Returns:
        Validated PipelineConfig instance.

    Raises:
        ValueError: If required configuration is missing.
    """
    config = PipelineConfig()
    errors = config.validate()
    if errors:
        raise ValueError(f"Configuration errors: {'; '.join(errors)}")
    return config
