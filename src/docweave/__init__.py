"""docweave: version tracking and section-aware merging for generated documents."""

__version__ = "0.3.0"

__all__ = ["__version__"]
