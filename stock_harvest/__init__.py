"""Taiwan equity daily harvest pipeline."""

__version__ = "0.1.0"
