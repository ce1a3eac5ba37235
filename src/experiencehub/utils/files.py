"""Utility helpers for naming uploaded files."""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")


def sanitize_filename(name: str) -> str:
    """Replace every whitespace run with a single underscore."""
    return _WHITESPACE.sub("_", name)


def record_prefix(record_id: str) -> str:
    """Storage namespace owned by one experience."""
    return f"{record_id}/"


def build_object_path(record_id: str, filename: str, stamp: int) -> str:
    """Storage path for an upload: ``<record_id>/<stamp>_<sanitized name>``."""
    return f"{record_prefix(record_id)}{stamp}_{sanitize_filename(filename)}"
