"""Persisted work queue that fans items out to registered processors."""

__version__ = "0.1.0"
