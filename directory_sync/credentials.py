"""
Credential providers.

The engine never stores secrets itself; directory bind passwords and tool API
tokens are resolved at use time through a ``CredentialProvider``.
"""

import os
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Mapping

from directory_sync.errors import CredentialError
from directory_sync.models import DirectoryServer, ToolSyncConfig

logger = logging.getLogger(__name__)


def _env_name(value: str) -> str:
    return ''.join(ch if ch.isalnum() else '_' for ch in value).upper()


class CredentialProvider(ABC):
    """Resolves secrets for directory servers and tools."""

    @abstractmethod
    async def get_tool_credentials(self, tool_config: ToolSyncConfig) -> Dict[str, str]:
        """
        Return credentials for a tool, at least ``{'token': ...}``.

        Raises:
            CredentialError: If no credentials are available
        """

    @abstractmethod
    async def get_bind_password(self, server: DirectoryServer) -> Optional[str]:
        """Return the bind password for ``server`` or None for anonymous binds."""


class EnvironmentCredentialProvider(CredentialProvider):
    """
    Reads secrets from environment variables.

    Tool tokens come from ``tool_config.credentials_env`` (default
    ``<TOOL_SLUG>_TOKEN``); bind passwords from ``server.bind_password_env``
    (default ``<SERVER_ID>_BIND_PASSWORD``).
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = environ if environ is not None else os.environ

    async def get_tool_credentials(self, tool_config: ToolSyncConfig) -> Dict[str, str]:
        env_var = tool_config.credentials_env or f"{_env_name(tool_config.tool_slug)}_TOKEN"
        token = self.environ.get(env_var)
        if not token:
            raise CredentialError(f"No credentials for tool config {tool_config.id}: {env_var} is not set")
        logger.debug(f"Resolved credentials for {tool_config.id} from {env_var}")
        return {'token': token}

    async def get_bind_password(self, server: DirectoryServer) -> Optional[str]:
        if not server.bind_dn:
            return None
        env_var = server.bind_password_env or f"{_env_name(server.id)}_BIND_PASSWORD"
        password = self.environ.get(env_var)
        if not password:
            raise CredentialError(f"Bind DN configured for server {server.id} but {env_var} is not set")
        return password


class StaticCredentialProvider(CredentialProvider):
    """In-memory credentials, for embedding the engine in a larger service."""

    def __init__(self, tool_credentials: Optional[Dict[str, Dict[str, str]]] = None,
                 bind_passwords: Optional[Dict[str, str]] = None):
        self.tool_credentials = dict(tool_credentials or {})
        self.bind_passwords = dict(bind_passwords or {})

    async def get_tool_credentials(self, tool_config: ToolSyncConfig) -> Dict[str, str]:
        credentials = self.tool_credentials.get(tool_config.id)
        if not credentials:
            raise CredentialError(f"No credentials for tool config {tool_config.id}")
        return dict(credentials)

    async def get_bind_password(self, server: DirectoryServer) -> Optional[str]:
        if not server.bind_dn:
            return None
        password = self.bind_passwords.get(server.id)
        if not password:
            raise CredentialError(f"No bind password for server {server.id}")
        return password
