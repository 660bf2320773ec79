"""Polling and batch ingestion jobs feeding the shared store."""

from hodwatch.ingest.avg_volume import AvgVolumeCalculator
from hodwatch.ingest.ipos import IpoIngestor
from hodwatch.ingest.low_float import LowFloatFilter
from hodwatch.ingest.metadata import MetadataIngestor
from hodwatch.ingest.news import NewsIngestor
from hodwatch.ingest.snapshot import SnapshotIngestor

__all__ = [
    "SnapshotIngestor",
    "MetadataIngestor",
    "LowFloatFilter",
    "AvgVolumeCalculator",
    "NewsIngestor",
    "IpoIngestor",
]
