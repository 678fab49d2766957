"""Batch ingestion and lineage engine for governed tabular sources."""

__version__ = "0.1.0"
