"""hodwatch - market-data ingestion and high-of-day alerting."""

__version__ = "0.1.0"
