"""Durable job store backing the table queue."""
