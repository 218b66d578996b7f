"""Merge project sources and their import dependencies into one annotated document."""

__version__ = "0.1.0"
