"""Configuration management for the ingestion services."""

from hodwatch.config.constants import AlertType, IngestConstants, RestartPolicy, Table
from hodwatch.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "IngestConstants",
    "Table",
    "AlertType",
    "RestartPolicy",
]
