#!/usr/bin/env python3
"""Path utilities for logical sync paths in cdsync.

Logical paths are relative to an account's sync root, always use forward
slashes and start with ``/`` (``/Documents/report.txt``). Comparison is
case-insensitive, via :func:`path_key`.
"""

import logging
import posixpath
from typing import List

logger = logging.getLogger(__name__)


class SecurityError(Exception):
    """Raised when a security violation is detected."""
    pass


def normalize_path(raw_path: str) -> str:
    """Normalize a logical path.

    Args:
        raw_path: Path using either separator, with or without leading slash

    Returns:
        Path of the form ``/a/b/c`` (``/`` for the sync root itself)
    """
    path = (raw_path or '').replace('\\', '/')

    safe_parts = []
    for part in path.split('/'):
        # Block path traversal and empty components
        if part in ('', '.'):
            continue
        if part == '..':
            logger.warning(f"Blocked dangerous path component in: {raw_path}")
            continue
        safe_parts.append(part)

    return '/' + '/'.join(safe_parts)


def path_key(path: str) -> str:
    """Return the case-insensitive comparison key for a logical path."""
    return normalize_path(path).lower()


def join_path(parent: str, name: str) -> str:
    """Join a logical folder path and an item name."""
    return normalize_path(posixpath.join(normalize_path(parent), name))


def parent_path(path: str) -> str:
    """Return the logical parent folder of a path (``/`` at the top)."""
    return posixpath.dirname(normalize_path(path)) or '/'


def path_parts(path: str) -> List[str]:
    """Split a logical path into its components."""
    normalized = normalize_path(path)
    return [part for part in normalized.split('/') if part]


def conflict_name(name: str, counter: int) -> str:
    """Build the deterministic conflict name for a colliding upload.

    Args:
        name: Original file name (``report.txt``)
        counter: 1-based collision counter

    Returns:
        Name such as ``report_conflict_1.txt``
    """
    base, ext = posixpath.splitext(name)
    if not base:
        # Dotfiles: keep the whole name as the stem
        base, ext = name, ''
    return f"{base}_conflict_{counter}{ext}"
