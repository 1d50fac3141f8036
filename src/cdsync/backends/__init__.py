"""Metadata storage backends for cdsync."""

from .base import MetadataStore
from .sqlite_backend import SqliteMetadataStore

__all__ = ['MetadataStore', 'SqliteMetadataStore']
