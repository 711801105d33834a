"""Access to PostgreSQL translation pipeline."""

__version__ = "0.1.0"
