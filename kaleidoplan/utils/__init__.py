"""Utility helpers: logging, single-flight de-duplication, token encryption."""
