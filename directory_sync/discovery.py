"""
Directory discovery.

Each operation acquires its own ``DirectoryClient``, uses it, and releases it
before returning. Discovered records replace the server's cached snapshot in
one step; a failed discovery leaves the previous snapshot in place.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from directory_sync.cancellation import CancellationToken
from directory_sync.config import DirectorySettings
from directory_sync.credentials import CredentialProvider
from directory_sync.errors import (
    SyncEngineError, DiscoveryError, NotFoundError, OperationCancelled, ValidationError,
)
from directory_sync.ldap_client import DirectoryClient, DiscoveryOptions
from directory_sync.models import Actor, DirectoryServer
from directory_sync.repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    server_id: str
    entity_type: str
    count: int
    records: List[Any] = field(default_factory=list)
    duration_ms: int = 0


class DiscoveryService:
    """Discovers users and groups and maintains the per-server cache."""

    def __init__(self, repository: Repository, credential_provider: CredentialProvider,
                 settings: Optional[DirectorySettings] = None, audit=None,
                 client_factory: Callable[..., DirectoryClient] = DirectoryClient):
        self.repository = repository
        self.credential_provider = credential_provider
        self.settings = settings or DirectorySettings()
        self.audit = audit
        self.client_factory = client_factory

    async def _get_server(self, server_id: str) -> DirectoryServer:
        server = await self.repository.get_directory_server(server_id)
        if server is None:
            raise NotFoundError(f"Directory server not found: {server_id}")
        return server

    @asynccontextmanager
    async def _client(self, server: DirectoryServer):
        """Acquire a client for ``server`` and always release it."""
        bind_password = await self.credential_provider.get_bind_password(server)
        client = self.client_factory(server, self.settings, bind_password=bind_password)
        try:
            yield client
        finally:
            await client.disconnect()

    async def _audit(self, event_type: str, **kwargs):
        if self.audit is not None:
            await self.audit.log_event(event_type, **kwargs)

    async def test_connection(self, server_id: str, actor: Optional[Actor] = None,
                              correlation_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Test connectivity to a server.

        Records the outcome on the server record only; the user/group cache is
        never written.
        """
        server = await self._get_server(server_id)
        started = time.monotonic()
        try:
            async with self._client(server) as client:
                result = await client.test_connection()
        except SyncEngineError as e:
            # Credential resolution failures land here
            result = {
                'success': False, 'message': e.message, 'error_code': e.code,
                'server': server.server_url, 'base_dn': server.base_dn,
            }
        result['server_id'] = server_id

        status = 'success' if result['success'] else 'failed'
        await self.repository.update_server_test_status(
            server_id, status, None if result['success'] else result.get('message')
        )
        await self._audit(
            'ldap_connection_test', actor=actor, server_id=server_id,
            success=result['success'], error_code=result.get('error_code'),
            error_message=None if result['success'] else result.get('message'),
            duration_ms=int((time.monotonic() - started) * 1000),
            correlation_id=correlation_id, data={'server_url': server.server_url},
        )
        return result

    async def discover_users(self, server_id: str, options: Optional[DiscoveryOptions] = None,
                             actor: Optional[Actor] = None, correlation_id: Optional[str] = None,
                             cancel_token: Optional[CancellationToken] = None) -> DiscoveryResult:
        """
        Discover users and replace the cached user snapshot.

        Raises:
            DiscoveryError: Wrapping the underlying failure; the cache is unchanged
        """
        return await self._discover('users', server_id, options, actor, correlation_id, cancel_token)

    async def discover_groups(self, server_id: str, options: Optional[DiscoveryOptions] = None,
                              actor: Optional[Actor] = None, correlation_id: Optional[str] = None,
                              cancel_token: Optional[CancellationToken] = None) -> DiscoveryResult:
        """
        Discover groups and replace the cached group snapshot.

        Raises:
            DiscoveryError: Wrapping the underlying failure; the cache is unchanged
        """
        return await self._discover('groups', server_id, options, actor, correlation_id, cancel_token)

    async def discover_all(self, server_id: str, include_users: bool = True, include_groups: bool = True,
                           actor: Optional[Actor] = None, correlation_id: Optional[str] = None,
                           cancel_token: Optional[CancellationToken] = None) -> Dict[str, DiscoveryResult]:
        """Discover users and/or groups over a single client session."""
        entity_types = [name for name, wanted in (('users', include_users), ('groups', include_groups)) if wanted]
        return await self._discover_many(entity_types, server_id, None, actor, correlation_id, cancel_token)

    async def _discover(self, entity_type, server_id, options, actor, correlation_id, cancel_token):
        results = await self._discover_many([entity_type], server_id, options, actor, correlation_id, cancel_token)
        return results[entity_type]

    async def _discover_many(self, entity_types: List[str], server_id: str,
                             options: Optional[DiscoveryOptions], actor: Optional[Actor],
                             correlation_id: Optional[str],
                             cancel_token: Optional[CancellationToken]) -> Dict[str, DiscoveryResult]:
        options = options or DiscoveryOptions()
        options.validate(self.settings.max_entries)
        server = await self._get_server(server_id)

        records = {}
        durations = {}
        started = time.monotonic()
        current = entity_types[0] if entity_types else None
        try:
            async with self._client(server) as client:
                await client.connect(cancel_token)
                for current in entity_types:
                    phase_started = time.monotonic()
                    if current == 'users':
                        records[current] = await client.discover_users(options, cancel_token)
                    else:
                        records[current] = await client.discover_groups(options, cancel_token)
                    durations[current] = int((time.monotonic() - phase_started) * 1000)
            # Nothing is cached until every requested search has succeeded
            counts = await self.repository.replace_directory_snapshot(
                server_id, users=records.get('users'), groups=records.get('groups'),
            )
        except (OperationCancelled, ValidationError):
            raise
        except Exception as e:
            message = f"Discovery of {current} on {server_id} failed: {e}"
            logger.error(message)
            error = e if isinstance(e, SyncEngineError) else None
            await self._audit(
                f"{current}_discovered", actor=actor, server_id=server_id, success=False,
                error_code=error.code if error else 'internal_error', error_message=str(e),
                duration_ms=int((time.monotonic() - started) * 1000), correlation_id=correlation_id,
            )
            raise DiscoveryError(message, cause=e) from e

        results = {}
        for entity_type in entity_types:
            results[entity_type] = DiscoveryResult(
                server_id=server_id, entity_type=entity_type, count=counts[entity_type],
                records=records[entity_type], duration_ms=durations[entity_type],
            )
            await self._audit(
                f"{entity_type}_discovered", actor=actor, server_id=server_id,
                duration_ms=durations[entity_type], correlation_id=correlation_id,
                data={'count': counts[entity_type], 'search_base': options.search_base,
                      'additional_filter': options.additional_filter},
            )
        return results
