"""
Tool adapters.

Importing this package registers the bundled GitHub and GitLab adapters.
"""

from directory_sync.adapters.base import ToolAdapter, RateLimiter
from directory_sync.adapters.registry import register_adapter, get_adapter_class, create_adapter, available_adapters
from directory_sync.adapters import github, gitlab  # noqa: F401

__all__ = [
    'ToolAdapter',
    'RateLimiter',
    'register_adapter',
    'get_adapter_class',
    'create_adapter',
    'available_adapters',
]
