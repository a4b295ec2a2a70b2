"""Shared utilities: logging setup and filesystem helpers."""

from pa_generator.utils import fs, logging_config

__all__ = ["fs", "logging_config"]
