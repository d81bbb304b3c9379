"""Bulk export and import of notebook data."""
