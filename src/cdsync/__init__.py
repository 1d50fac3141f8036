"""cdsync - keep files mirrored across cloud drive accounts."""

__version__ = '0.1.0'
__license__ = 'MIT'

from .config import Config
from .runner import TaskRunner

__all__ = ['Config', 'TaskRunner']
