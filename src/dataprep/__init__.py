"""dataprep: multi-tenant data preparation service."""

__version__ = "0.1.0"
