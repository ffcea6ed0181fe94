"""Concurrent SQL query job worker."""

__version__ = "0.1.0"
