"""Shared helpers: YAML/filesystem access and logging setup."""
