"""String-keyed registry of tool adapter classes."""

import logging
from typing import Dict, List, Optional, Type

from directory_sync.errors import AdapterInitializationError, ValidationError

logger = logging.getLogger(__name__)

_ADAPTERS: Dict[str, Type] = {}


def register_adapter(tool_slug: str):
    """Class decorator registering an adapter under ``tool_slug``."""
    def decorator(cls):
        existing = _ADAPTERS.get(tool_slug)
        if existing is not None and existing is not cls:
            raise ValueError(f"Adapter already registered for {tool_slug}: {existing.__name__}")
        cls.tool_slug = tool_slug
        _ADAPTERS[tool_slug] = cls
        logger.debug(f"Registered adapter {cls.__name__} for {tool_slug}")
        return cls
    return decorator


def available_adapters() -> List[str]:
    return sorted(_ADAPTERS)


def get_adapter_class(tool_slug: str) -> Type:
    """
    Raises:
        ValidationError: If no adapter is registered for ``tool_slug``
    """
    try:
        return _ADAPTERS[tool_slug]
    except KeyError:
        raise ValidationError(f"No adapter registered for tool: {tool_slug}")


def create_adapter(tool_config, credential_provider, role_mappings: Optional[list] = None, settings=None):
    """Instantiate the registered adapter for ``tool_config.tool_slug``."""
    adapter_class = get_adapter_class(tool_config.tool_slug)
    try:
        return adapter_class(tool_config, credential_provider, role_mappings=role_mappings, settings=settings)
    except AdapterInitializationError:
        raise
    except (TypeError, ValueError, KeyError) as e:
        raise AdapterInitializationError(
            f"Failed to construct {tool_config.tool_slug} adapter for {tool_config.id}: {e}", cause=e
        ) from e
