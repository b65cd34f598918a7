"""Manga catalog and chapter PDF download service."""

__version__ = "0.1.0"
