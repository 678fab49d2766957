"""Environment-driven configuration for the ingestion engine."""

from batchlineage.config.pipeline_config import IngestionConfig, PipelineConfig, PostgresConfig, get_config

__all__ = ["IngestionConfig", "PipelineConfig", "PostgresConfig", "get_config"]
