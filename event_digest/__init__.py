"""Event ingestion and subscription-matching pipeline."""
__version__ = "1.0.0"
