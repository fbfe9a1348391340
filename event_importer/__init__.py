"""Batch event import pipeline: CSV parsing client and ingestion API."""

__version__ = "1.0.0"
