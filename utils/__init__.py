# utils/__init__.py
"""Shared helpers for scenecraft."""

from .logging import setup_logging

__all__ = ["setup_logging"]
