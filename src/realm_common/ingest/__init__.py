"""Snapshot ingestion pipeline."""
