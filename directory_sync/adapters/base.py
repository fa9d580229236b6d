"""
Base tool adapter interface and common functionality.

This module defines the abstract base class every tool integration
implements, together with the shared HTTP client, SSL and authentication
handling, per-adapter rate limiting, and the preview/execute reconciliation
loop built on top of the adapter's capabilities.
"""

import asyncio
import base64
import json
import logging
import re
import ssl
import time
from abc import ABC, abstractmethod
from http.client import HTTPSConnection, HTTPConnection, HTTPException
from typing import Awaitable, Callable, Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode

from directory_sync.cancellation import CancellationToken
from directory_sync.config import EngineSettings
from directory_sync.credentials import CredentialProvider
from directory_sync.errors import (
    SyncEngineError, AdapterError, AdapterInitializationError, AdapterAuthenticationError,
    ConflictDetected, OperationCancelled,
)
from directory_sync.models import (
    ChangeAction, ChangeSet, DirectoryGroup, DirectoryUser, EntityChangeSet, FieldChange,
    RoleMapping, StagedChange, SyncResult, ToolSyncConfig, utcnow,
)
from directory_sync.retry import retry_async, MaxRetriesExceeded, is_retryable_error, create_retry_callback

logger = logging.getLogger(__name__)

USER_AGENT = 'directory-sync/1.0'


def email_local_part(email: Optional[str]) -> Optional[str]:
    """Lower-cased part of an e-mail address before the '@'."""
    if not email:
        return None
    return email.split('@', 1)[0].strip().lower() or None


def slugify(name: Optional[str]) -> Optional[str]:
    """Lower-case ``name`` with every run of non-alphanumerics replaced by '-'."""
    if not name:
        return None
    return re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-') or None


class RateLimiter:
    """
    Enforces a minimum spacing of ``60 / requests_per_minute`` seconds
    between dispatches.
    """

    def __init__(self, requests_per_minute: int,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_dispatch: Optional[float] = None

    async def acquire(self) -> float:
        """Wait for the next dispatch slot; returns the dispatch time."""
        async with self._lock:
            now = self._clock()
            if self._last_dispatch is not None:
                wait = self._last_dispatch + self.min_interval - now
                if wait > 0:
                    await self._sleep(wait)
                    now = self._clock()
            self._last_dispatch = now
            return now


class ToolAdapter(ABC):
    """
    Abstract base class for tool integrations.

    Subclasses supply remote listing, identifier mapping, diffing and change
    application; the base class drives previews and executions from those.
    """

    tool_slug: str = ''
    default_base_url: Optional[str] = None
    supported_sync_types = ('users', 'groups')
    supported_operations = ('create', 'update', 'delete', 'disable')
    page_size = 100
    max_pages = 100

    def __init__(self, tool_config: ToolSyncConfig, credential_provider: CredentialProvider,
                 role_mappings: Optional[List[RoleMapping]] = None,
                 settings: Optional[EngineSettings] = None,
                 rate_limiter: Optional[RateLimiter] = None):
        """
        Initialize the adapter.

        Args:
            tool_config: Tool sync configuration
            credential_provider: Source of the tool's API credentials
            role_mappings: Directory group to tool role mappings (defaults to the config's)
            settings: Engine settings (retries, conflict detection, preview limits)
            rate_limiter: Override for the per-adapter rate limiter
        """
        self.tool_config = tool_config
        self.name = tool_config.name or tool_config.id
        self.credential_provider = credential_provider
        self.role_mappings = list(role_mappings if role_mappings is not None else tool_config.role_mappings)
        self.settings = settings or EngineSettings()
        self.verify_ssl = tool_config.verify_ssl
        self.timeout = tool_config.timeout_seconds

        self.base_url = tool_config.base_url or self.default_base_url
        if not self.base_url:
            raise AdapterInitializationError(f"No base_url configured for {self.name}")
        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        rate = tool_config.rate_limit_per_minute or self.settings.default_rate_limit_per_minute
        self.rate_limiter = rate_limiter or RateLimiter(rate)

        self.connection = None
        self.ssl_context = None
        self.auth_headers: Dict[str, str] = {}
        self.initialized = False
        self._http_lock = asyncio.Lock()
        self.stats = self._new_stats()

        self._setup_ssl_context()

    # HTTP plumbing

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        try:
            self.ssl_context = ssl.create_default_context(cafile=self.tool_config.ca_cert_file)
        except (OSError, ssl.SSLError) as e:
            raise AdapterInitializationError(f"Failed to load CA bundle for {self.name}: {e}", cause=e)

    def build_auth_headers(self, credentials: Dict[str, str]) -> Dict[str, str]:
        """Authentication headers for ``credentials``. Bearer token or Basic by default."""
        if credentials.get('token'):
            return {'Authorization': f"Bearer {credentials['token']}"}
        if credentials.get('username') and credentials.get('password'):
            encoded = base64.b64encode(f"{credentials['username']}:{credentials['password']}".encode()).decode()
            return {'Authorization': f"Basic {encoded}"}
        raise AdapterInitializationError(f"Unsupported credentials for {self.name}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)
        return self.connection

    def request(self, method: str, path: str, body: Optional[Any] = None,
                params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make a blocking HTTP request to the tool API.

        Args:
            method: HTTP method
            path: Endpoint path relative to the base URL
            body: JSON-serializable request body
            params: Query string parameters

        Returns:
            Parsed JSON response, or None for empty responses

        Raises:
            AdapterAuthenticationError: On HTTP 401 or 403
            AdapterError: On any other failure
        """
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params, doseq=True)

        request_headers = {'Accept': 'application/json', 'User-Agent': USER_AGENT}
        request_headers.update(self.auth_headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (HTTPException, OSError) as e:
            self.close_connection()
            raise AdapterError(f"Connection error to {self.name}: {e}", cause=e, retryable=True)

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status == 403 and response.getheader('X-RateLimit-Remaining') == '0':
            raise AdapterError(f"API rate limit exhausted for {self.name}", status_code=403, retryable=True)
        if response.status in (401, 403):
            raise AdapterAuthenticationError(
                f"{'Authentication' if response.status == 401 else 'Authorization'} failed for {self.name}",
                status_code=response.status,
            )
        if response.status >= 400:
            detail = response_data[:200] if response_data else ''
            raise AdapterError(f"HTTP {response.status}: {response.reason} {detail}".strip(),
                               status_code=response.status)

        if not response_data:
            return None
        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise AdapterError(f"Invalid JSON response from {self.name}: {e}", cause=e)

    async def call_api(self, method: str, path: str, body: Optional[Any] = None,
                       params: Optional[Dict[str, Any]] = None) -> Any:
        """Rate-limited, retried, non-blocking wrapper around :meth:`request`."""
        async def dispatch():
            await self.rate_limiter.acquire()
            self.stats['api_calls'] += 1
            self.stats['last_api_call'] = utcnow()
            async with self._http_lock:
                return await asyncio.to_thread(self.request, method, path, body, params)

        try:
            return await retry_async(
                dispatch,
                max_attempts=self.settings.max_retries + 1,
                delay=self.settings.retry_wait_seconds,
                backoff=2.0,
                exceptions=(AdapterError,),
                should_retry=is_retryable_error,
                on_retry=create_retry_callback(f"{method} {path} on {self.name}"),
            )
        except MaxRetriesExceeded as e:
            raise e.last_exception from e

    async def call_api_paginated(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        """GET every page of a list endpoint using ``page``/``per_page`` parameters."""
        items = []
        for page in range(1, self.max_pages + 1):
            page_params = dict(params or {})
            page_params.update(per_page=self.page_size, page=page)
            batch = await self.call_api('GET', path, params=page_params) or []
            items.extend(batch)
            if len(batch) < self.page_size:
                break
        else:
            logger.warning(f"Stopped paging {path} on {self.name} after {self.max_pages} pages")
        return items

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    # Lifecycle

    async def get_credentials(self) -> Dict[str, str]:
        """Resolve API credentials through the credential provider."""
        return await self.credential_provider.get_tool_credentials(self.tool_config)

    async def validate_connection(self) -> None:
        """Check that the tool is reachable with the configured credentials."""

    async def initialize(self) -> None:
        """
        Resolve credentials and validate the tool connection.

        Raises:
            AdapterInitializationError: If the adapter cannot be used
        """
        logger.info(f"Initializing {self.tool_slug} adapter for {self.name}")
        try:
            credentials = await self.get_credentials()
            self.auth_headers = self.build_auth_headers(credentials)
            await self.validate_connection()
        except AdapterInitializationError:
            raise
        except SyncEngineError as e:
            raise AdapterInitializationError(
                f"Failed to initialize {self.tool_slug} adapter for {self.name}: {e.message}", cause=e
            ) from e
        self.initialized = True
        logger.info(f"{self.tool_slug} adapter initialized for {self.name}")

    async def close(self) -> None:
        async with self._http_lock:
            await asyncio.to_thread(self.close_connection)

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Capabilities subclasses implement

    @abstractmethod
    async def fetch_remote_users(self) -> List[Dict[str, Any]]:
        """All user records currently present in the tool."""

    @abstractmethod
    async def fetch_remote_groups(self) -> List[Dict[str, Any]]:
        """All group/team records currently present in the tool."""

    @abstractmethod
    def identify_user(self, user: DirectoryUser) -> Optional[str]:
        """Tool identifier for a directory user. Must be a pure function of its attributes."""

    @abstractmethod
    def identify_group(self, group: DirectoryGroup) -> Optional[str]:
        """Tool identifier for a directory group. Must be a pure function of its attributes."""

    @abstractmethod
    def remote_user_key(self, remote_user: Dict[str, Any]) -> Optional[str]:
        """Identifier of a remote user record, comparable with :meth:`identify_user`."""

    @abstractmethod
    def remote_group_key(self, remote_group: Dict[str, Any]) -> Optional[str]:
        """Identifier of a remote group record, comparable with :meth:`identify_group`."""

    @abstractmethod
    def map_directory_user_to_tool(self, user: DirectoryUser) -> Dict[str, Any]:
        pass

    @abstractmethod
    def map_directory_group_to_tool(self, group: DirectoryGroup) -> Dict[str, Any]:
        pass

    @abstractmethod
    def detect_user_diff(self, user: DirectoryUser, remote_user: Dict[str, Any]) -> List[FieldChange]:
        pass

    @abstractmethod
    def detect_group_diff(self, group: DirectoryGroup, remote_group: Dict[str, Any]) -> List[FieldChange]:
        pass

    @abstractmethod
    async def apply_user_change(self, change: StagedChange) -> None:
        pass

    @abstractmethod
    async def apply_group_change(self, change: StagedChange) -> None:
        pass

    def detect_user_conflicts(self, user: DirectoryUser,
                              remote_user: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return []

    def detect_group_conflicts(self, group: DirectoryGroup,
                               remote_group: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return []

    def is_managed_user(self, remote_user: Dict[str, Any]) -> bool:
        """False for remote accounts sync must never remove (bots, service accounts)."""
        return True

    def is_user_disabled(self, remote_user: Dict[str, Any]) -> bool:
        return False

    def supports(self, operation: str) -> bool:
        return operation in self.supported_operations

    def assigned_role(self, change: StagedChange) -> Optional[str]:
        """Tool role a user change grants, or None when it leaves the role alone."""
        return None

    # Reconciliation

    async def preview_sync(self, directory_users: List[DirectoryUser], directory_groups: List[DirectoryGroup],
                           sync_config: Optional[ToolSyncConfig] = None,
                           cancel_token: Optional[CancellationToken] = None) -> ChangeSet:
        """
        Compute every change an execution would attempt. Never mutates the tool.
        """
        sync_config = sync_config or self.tool_config
        change_set = ChangeSet(tool=self.tool_slug)
        logger.info(f"Previewing {self.tool_slug} sync changes for {self.name}")

        if sync_config.sync_users and 'users' in self.supported_sync_types:
            await self._stage_users(directory_users, sync_config, change_set, cancel_token)
        if sync_config.sync_groups and 'groups' in self.supported_sync_types:
            await self._stage_groups(directory_groups, sync_config, change_set, cancel_token)

        if change_set.estimated_changes > self.settings.preview_max_changes:
            change_set.warnings.append(
                f"{change_set.estimated_changes} changes exceed the preview limit of "
                f"{self.settings.preview_max_changes}"
            )
        logger.info(f"Preview complete: {change_set.estimated_changes} estimated changes for {self.name}")
        return change_set

    async def _stage_users(self, directory_users, sync_config, change_set, cancel_token):
        remote_index = self._index(await self.fetch_remote_users(), self.remote_user_key)
        bucket = change_set.users
        seen = set()

        for user in directory_users:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            identifier = self.identify_user(user)
            if not identifier:
                change_set.warnings.append(f"Skipping directory user without identifier: {user.dn}")
                continue
            if identifier in seen:
                change_set.warnings.append(f"Duplicate user identifier {identifier}: {user.dn}")
                continue
            seen.add(identifier)

            remote = remote_index.get(identifier)
            conflicts = self._conflicts(bucket, 'user', identifier, user.dn,
                                        self.detect_user_conflicts(user, remote))
            if remote is not None:
                if sync_config.user_update_enabled:
                    changes = self.detect_user_diff(user, remote)
                    if changes:
                        bucket.stage(StagedChange('user', ChangeAction.UPDATE, identifier,
                                                  mapped=self.map_directory_user_to_tool(user),
                                                  remote=remote, changes=changes, conflicts=conflicts))
            elif sync_config.user_create_enabled:
                bucket.stage(StagedChange('user', ChangeAction.CREATE, identifier,
                                          mapped=self.map_directory_user_to_tool(user), conflicts=conflicts))

        if sync_config.user_delete_enabled or sync_config.user_disable_enabled:
            for identifier, remote in remote_index.items():
                if identifier in seen or not self.is_managed_user(remote):
                    continue
                if sync_config.user_delete_enabled and self.supports('delete'):
                    bucket.stage(StagedChange('user', ChangeAction.DELETE, identifier, remote=remote))
                elif sync_config.user_disable_enabled and self.supports('disable'):
                    if self.is_user_disabled(remote):
                        continue
                    bucket.stage(StagedChange('user', ChangeAction.DISABLE, identifier, remote=remote))
                else:
                    change_set.warnings.append(
                        f"{self.tool_slug} cannot remove or disable user {identifier}; left unchanged"
                    )

    async def _stage_groups(self, directory_groups, sync_config, change_set, cancel_token):
        remote_index = self._index(await self.fetch_remote_groups(), self.remote_group_key)
        bucket = change_set.groups
        seen = set()

        for group in directory_groups:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            identifier = self.identify_group(group)
            if not identifier:
                change_set.warnings.append(f"Skipping directory group without identifier: {group.dn}")
                continue
            if identifier in seen:
                change_set.warnings.append(f"Duplicate group identifier {identifier}: {group.dn}")
                continue
            seen.add(identifier)

            remote = remote_index.get(identifier)
            conflicts = self._conflicts(bucket, 'group', identifier, group.dn,
                                        self.detect_group_conflicts(group, remote))
            if remote is not None:
                if sync_config.group_update_enabled:
                    changes = self.detect_group_diff(group, remote)
                    if changes:
                        bucket.stage(StagedChange('group', ChangeAction.UPDATE, identifier,
                                                  mapped=self.map_directory_group_to_tool(group),
                                                  remote=remote, changes=changes, conflicts=conflicts))
            elif sync_config.group_create_enabled:
                bucket.stage(StagedChange('group', ChangeAction.CREATE, identifier,
                                          mapped=self.map_directory_group_to_tool(group), conflicts=conflicts))

        if sync_config.group_delete_enabled and self.supports('delete'):
            for identifier, remote in remote_index.items():
                if identifier not in seen:
                    bucket.stage(StagedChange('group', ChangeAction.DELETE, identifier, remote=remote))

    @staticmethod
    def _index(records: List[Dict[str, Any]], key_func) -> Dict[str, Dict[str, Any]]:
        index = {}
        for record in records:
            key = key_func(record)
            if key:
                index.setdefault(key, record)
        return index

    def _conflicts(self, bucket: EntityChangeSet, entity_type: str, identifier: str, dn: str,
                   conflicts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not conflicts or not self.settings.conflict_detection_enabled:
            return []
        bucket.conflicts.append({
            'entity_type': entity_type,
            'identifier': identifier,
            'dn': dn,
            'conflicts': conflicts,
        })
        self.stats['conflicts_detected'] += 1
        return conflicts

    async def execute_sync(self, directory_users: List[DirectoryUser], directory_groups: List[DirectoryGroup],
                           sync_config: Optional[ToolSyncConfig] = None, is_preview: bool = False,
                           cancel_token: Optional[CancellationToken] = None) -> SyncResult:
        """
        Reconcile the tool with the directory snapshot.

        Each change is applied independently; a failing entity is counted and
        recorded without stopping the run. Previews count planned changes and
        apply nothing.

        Raises:
            AdapterInitializationError: For systemic credential/authentication failures
            OperationCancelled: If the cancellation token trips
        """
        sync_config = sync_config or self.tool_config
        self.reset_sync_stats()
        result = SyncResult(tool=self.tool_slug, is_preview=is_preview)
        logger.info(f"{'Previewing' if is_preview else 'Executing'} {self.tool_slug} sync for {self.name}")

        change_set = await self.preview_sync(directory_users, directory_groups, sync_config, cancel_token)
        result.change_set = change_set
        result.warnings = list(change_set.warnings)
        result.conflicts = list(change_set.conflicts)
        if sync_config.sync_users:
            result.users.processed = (len(directory_users) + len(change_set.users.to_delete)
                                      + len(change_set.users.to_disable))
        if sync_config.sync_groups:
            result.groups.processed = len(directory_groups) + len(change_set.groups.to_delete)

        # Groups first so that memberships applied with users can reference them
        for change in change_set.groups.changes() + change_set.users.changes():
            counters = result.counters_for(change.entity_type)
            if is_preview:
                counters.record(change.action)
                continue
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            try:
                if change.conflicts and not self._resolve_conflict(change, sync_config, result):
                    continue
                if change.entity_type == 'user':
                    await self.apply_user_change(change)
                else:
                    await self.apply_group_change(change)
            except (AdapterInitializationError, OperationCancelled):
                raise
            except SyncEngineError as e:
                self._record_failure(result, change, e.code, e.message)
            except Exception as e:
                logger.exception(f"Unexpected error applying {change.action.value} "
                                 f"to {change.entity_type} {change.identifier}")
                self._record_failure(result, change, 'internal_error', f"{type(e).__name__}: {e}")
            else:
                counters.record(change.action)
                self.stats[f"{change.entity_type}s_{change.action.value}d"] += 1
                applied = {'entity_type': change.entity_type, 'identifier': change.identifier,
                           'action': change.action.value}
                if change.entity_type == 'user':
                    role = self.assigned_role(change)
                    if role is not None:
                        applied['role'] = role
                result.applied.append(applied)

        result.completed_at = utcnow()
        logger.info(f"{self.tool_slug} sync {'preview' if is_preview else 'execution'} completed for {self.name}: "
                    f"users={result.users.to_dict()} groups={result.groups.to_dict()} "
                    f"errors={len(result.errors)}")
        return result

    def _resolve_conflict(self, change: StagedChange, sync_config: ToolSyncConfig, result: SyncResult) -> bool:
        """True if a conflicting change should still be applied."""
        if sync_config.block_on_conflict or sync_config.conflict_resolution == 'manual':
            raise ConflictDetected(
                f"Conflict blocks {change.action.value} of {change.entity_type} {change.identifier}"
            )
        if sync_config.conflict_resolution == 'tool_wins':
            result.warnings.append(
                f"Skipped {change.action.value} of {change.entity_type} {change.identifier}: tool state kept"
            )
            return False
        self.stats['conflicts_resolved'] += 1
        return True

    def _record_failure(self, result: SyncResult, change: StagedChange, code: str, message: str):
        result.counters_for(change.entity_type).failed += 1
        self.stats[f"{change.entity_type}s_failed"] += 1
        result.errors.append({
            'entity_type': change.entity_type,
            'identifier': change.identifier,
            'action': change.action.value,
            'code': code,
            'error': message,
        })
        logger.error(f"Failed to {change.action.value} {change.entity_type} {change.identifier} "
                     f"in {self.name}: {message}")

    # Statistics

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        stats = {'api_calls': 0, 'last_api_call': None, 'conflicts_detected': 0, 'conflicts_resolved': 0}
        for entity in ('users', 'groups'):
            for action in ('created', 'updated', 'deleted', 'disabled', 'failed'):
                stats[f"{entity}_{action}"] = 0
        return stats

    def reset_sync_stats(self):
        api_calls = self.stats['api_calls']
        self.stats = self._new_stats()
        self.stats['api_calls'] = api_calls

    def get_sync_stats(self) -> Dict[str, Any]:
        return dict(self.stats)

    def get_capabilities(self) -> Dict[str, Any]:
        return {
            'tool_slug': self.tool_slug,
            'supported_sync_types': list(self.supported_sync_types),
            'supported_operations': list(self.supported_operations),
            'rate_limit_per_minute': self.rate_limiter.requests_per_minute,
            'role_mappings': len(self.role_mappings),
        }
