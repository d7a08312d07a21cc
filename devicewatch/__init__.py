"""Device telemetry ingestion and owner-scoped access service."""

__version__ = "1.0.0"
