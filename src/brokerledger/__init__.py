"""Broker statement ingestion and portfolio reconciliation."""

__version__ = "0.1.0"
