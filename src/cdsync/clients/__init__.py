"""Cloud storage clients for cdsync."""

from .base import Capabilities, CloudClient
from .onedrive_client import OneDriveClient
from .registry import ProviderRegistry, default_registry

__all__ = ['Capabilities', 'CloudClient', 'OneDriveClient', 'ProviderRegistry', 'default_registry']
