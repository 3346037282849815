"""Driver location ingestion, depot geofencing and stagnation alerts."""

__version__ = "0.1.0"
