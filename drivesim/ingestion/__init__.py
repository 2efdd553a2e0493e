"""
Telemetry Ingestion Module

Normalizes producer samples and writes them to storage in batches.

Usage:
    from drivesim.ingestion import TelemetryIngestor

    ingestor = TelemetryIngestor(store, buffer_size=10)
    ingestor.ingest(session_id, {'speed': 42.0})
"""

from .ingestor import TelemetryIngestor, IngestResult
from .normalize import normalize_sample, parse_timestamp

__all__ = [
    'TelemetryIngestor',
    'IngestResult',
    'normalize_sample',
    'parse_timestamp'
]
