"""Multi-tenant document-store browser."""

__version__ = "0.1.0"
