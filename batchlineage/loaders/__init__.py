"""Loaders moving ingested data between lake layers."""
