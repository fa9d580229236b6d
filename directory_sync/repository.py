"""
Persistence interface for the engine.

``Repository`` is the async storage contract the engine consumes (servers,
tool configs, the per-server user/group cache, sync jobs, role mappings and
audit events). ``InMemoryRepository`` implements it for embedding and tests.

Cache writes are whole-snapshot replacements: readers observe either the
previous snapshot or the new one, never a mix.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Any, List, Optional, Tuple, Iterable

from directory_sync.errors import NotFoundError
from directory_sync.models import (
    DirectoryServer, DirectoryUser, DirectoryGroup, ToolSyncConfig, RoleMapping,
    SyncJob, JobStatus, AuditEvent, utcnow,
)

logger = logging.getLogger(__name__)


class Repository(ABC):
    """Async storage contract."""

    # Directory servers

    @abstractmethod
    async def get_directory_server(self, server_id: str) -> Optional[DirectoryServer]:
        pass

    @abstractmethod
    async def list_directory_servers(self) -> List[DirectoryServer]:
        pass

    @abstractmethod
    async def save_directory_server(self, server: DirectoryServer) -> None:
        pass

    @abstractmethod
    async def update_server_test_status(self, server_id: str, status: str,
                                        error: Optional[str] = None) -> None:
        pass

    # Tool configs

    @abstractmethod
    async def get_tool_config(self, config_id: str) -> Optional[ToolSyncConfig]:
        pass

    @abstractmethod
    async def list_tool_configs(self) -> List[ToolSyncConfig]:
        pass

    @abstractmethod
    async def save_tool_config(self, tool_config: ToolSyncConfig) -> None:
        pass

    @abstractmethod
    async def update_tool_sync_status(self, config_id: str, status: str) -> None:
        pass

    @abstractmethod
    async def get_role_mappings(self, config_id: str) -> List[RoleMapping]:
        pass

    # Directory cache

    @abstractmethod
    async def replace_directory_users(self, server_id: str, users: Iterable[DirectoryUser]) -> int:
        """Atomically replace the cached users of ``server_id``; returns the new count."""

    @abstractmethod
    async def get_directory_users(self, server_id: str) -> List[DirectoryUser]:
        pass

    @abstractmethod
    async def replace_directory_groups(self, server_id: str, groups: Iterable[DirectoryGroup]) -> int:
        """Atomically replace the cached groups of ``server_id``; returns the new count."""

    @abstractmethod
    async def get_directory_groups(self, server_id: str) -> List[DirectoryGroup]:
        pass

    @abstractmethod
    async def replace_directory_snapshot(self, server_id: str,
                                         users: Optional[Iterable[DirectoryUser]] = None,
                                         groups: Optional[Iterable[DirectoryGroup]] = None) -> Dict[str, int]:
        """
        Atomically replace the cached users and groups of ``server_id``.

        An entity type passed as ``None`` keeps its current snapshot. Returns
        the new count per replaced entity type.
        """

    # Sync jobs

    @abstractmethod
    async def create_sync_job(self, job: SyncJob) -> SyncJob:
        pass

    @abstractmethod
    async def update_sync_job(self, job_id: str, **fields) -> SyncJob:
        pass

    @abstractmethod
    async def get_sync_job(self, job_id: str) -> Optional[SyncJob]:
        pass

    @abstractmethod
    async def list_sync_jobs(self, status: Optional[JobStatus] = None,
                             config_id: Optional[str] = None,
                             limit: Optional[int] = None) -> List[SyncJob]:
        """Jobs newest first, optionally filtered."""

    # Audit

    @abstractmethod
    async def append_audit_event(self, event: AuditEvent) -> None:
        pass

    @abstractmethod
    async def list_audit_events(self, event_type: Optional[str] = None,
                                category: Optional[str] = None,
                                job_id: Optional[str] = None,
                                limit: Optional[int] = None) -> List[AuditEvent]:
        """Events newest first, optionally filtered."""


class InMemoryRepository(Repository):
    """
    Process-local repository.

    Stored objects are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._servers: Dict[str, DirectoryServer] = {}
        self._tool_configs: Dict[str, ToolSyncConfig] = {}
        self._users: Dict[str, Tuple[DirectoryUser, ...]] = {}
        self._groups: Dict[str, Tuple[DirectoryGroup, ...]] = {}
        self._jobs: Dict[str, SyncJob] = {}
        self._audit_events: List[AuditEvent] = []

    @classmethod
    def from_records(cls, servers: Iterable[DirectoryServer],
                     tool_configs: Iterable[ToolSyncConfig]) -> 'InMemoryRepository':
        repository = cls()
        for server in servers:
            repository._servers[server.id] = copy.deepcopy(server)
        for tool_config in tool_configs:
            repository._tool_configs[tool_config.id] = copy.deepcopy(tool_config)
        return repository

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'InMemoryRepository':
        """Seed servers, tool configs and role mappings from a loaded configuration."""
        from directory_sync.config import build_directory_servers, build_tool_configs
        return cls.from_records(build_directory_servers(config), build_tool_configs(config))

    async def get_directory_server(self, server_id: str) -> Optional[DirectoryServer]:
        server = self._servers.get(server_id)
        return copy.deepcopy(server) if server else None

    async def list_directory_servers(self) -> List[DirectoryServer]:
        return [copy.deepcopy(server) for server in self._servers.values()]

    async def save_directory_server(self, server: DirectoryServer) -> None:
        async with self._lock:
            self._servers[server.id] = copy.deepcopy(server)

    async def update_server_test_status(self, server_id: str, status: str,
                                        error: Optional[str] = None) -> None:
        async with self._lock:
            server = self._servers.get(server_id)
            if server is None:
                raise NotFoundError(f"Directory server not found: {server_id}")
            self._servers[server_id] = replace(
                server, last_test_at=utcnow(), last_test_status=status, last_test_error=error
            )

    async def get_tool_config(self, config_id: str) -> Optional[ToolSyncConfig]:
        tool_config = self._tool_configs.get(config_id)
        return copy.deepcopy(tool_config) if tool_config else None

    async def list_tool_configs(self) -> List[ToolSyncConfig]:
        return [copy.deepcopy(tool_config) for tool_config in self._tool_configs.values()]

    async def save_tool_config(self, tool_config: ToolSyncConfig) -> None:
        async with self._lock:
            self._tool_configs[tool_config.id] = copy.deepcopy(tool_config)

    async def update_tool_sync_status(self, config_id: str, status: str) -> None:
        async with self._lock:
            tool_config = self._tool_configs.get(config_id)
            if tool_config is None:
                raise NotFoundError(f"Tool config not found: {config_id}")
            self._tool_configs[config_id] = replace(
                tool_config, last_sync_at=utcnow(), last_sync_status=status
            )

    async def get_role_mappings(self, config_id: str) -> List[RoleMapping]:
        tool_config = self._tool_configs.get(config_id)
        return list(tool_config.role_mappings) if tool_config else []

    async def replace_directory_users(self, server_id: str, users: Iterable[DirectoryUser]) -> int:
        # Build the complete snapshot before taking the lock; a failure here leaves the old one
        snapshot = tuple(copy.deepcopy(user) for user in users)
        async with self._lock:
            self._users[server_id] = snapshot
        logger.debug(f"Replaced cached users for {server_id}: {len(snapshot)} records")
        return len(snapshot)

    async def get_directory_users(self, server_id: str) -> List[DirectoryUser]:
        return [copy.deepcopy(user) for user in self._users.get(server_id, ())]

    async def replace_directory_groups(self, server_id: str, groups: Iterable[DirectoryGroup]) -> int:
        snapshot = tuple(copy.deepcopy(group) for group in groups)
        async with self._lock:
            self._groups[server_id] = snapshot
        logger.debug(f"Replaced cached groups for {server_id}: {len(snapshot)} records")
        return len(snapshot)

    async def get_directory_groups(self, server_id: str) -> List[DirectoryGroup]:
        return [copy.deepcopy(group) for group in self._groups.get(server_id, ())]

    async def replace_directory_snapshot(self, server_id: str,
                                         users: Optional[Iterable[DirectoryUser]] = None,
                                         groups: Optional[Iterable[DirectoryGroup]] = None) -> Dict[str, int]:
        user_snapshot = tuple(copy.deepcopy(user) for user in users) if users is not None else None
        group_snapshot = tuple(copy.deepcopy(group) for group in groups) if groups is not None else None
        counts = {}
        async with self._lock:
            if user_snapshot is not None:
                self._users[server_id] = user_snapshot
                counts['users'] = len(user_snapshot)
            if group_snapshot is not None:
                self._groups[server_id] = group_snapshot
                counts['groups'] = len(group_snapshot)
        logger.debug(f"Replaced cached snapshot for {server_id}: {counts}")
        return counts

    async def create_sync_job(self, job: SyncJob) -> SyncJob:
        async with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    async def update_sync_job(self, job_id: str, **fields) -> SyncJob:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Sync job not found: {job_id}")
            updated = replace(job, **copy.deepcopy(fields))
            self._jobs[job_id] = updated
        return copy.deepcopy(updated)

    async def get_sync_job(self, job_id: str) -> Optional[SyncJob]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def list_sync_jobs(self, status: Optional[JobStatus] = None,
                             config_id: Optional[str] = None,
                             limit: Optional[int] = None) -> List[SyncJob]:
        jobs = sorted(self._jobs.values(), key=lambda job: job.created_at, reverse=True)
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        if config_id is not None:
            jobs = [job for job in jobs if job.config_id == config_id]
        if limit is not None:
            jobs = jobs[:limit]
        return [copy.deepcopy(job) for job in jobs]

    async def append_audit_event(self, event: AuditEvent) -> None:
        async with self._lock:
            self._audit_events.append(copy.deepcopy(event))

    async def list_audit_events(self, event_type: Optional[str] = None,
                                category: Optional[str] = None,
                                job_id: Optional[str] = None,
                                limit: Optional[int] = None) -> List[AuditEvent]:
        events = list(reversed(self._audit_events))
        if event_type is not None:
            events = [event for event in events if event.event_type == event_type]
        if category is not None:
            events = [event for event in events if event.category == category]
        if job_id is not None:
            events = [event for event in events if event.job_id == job_id]
        if limit is not None:
            events = events[:limit]
        return [copy.deepcopy(event) for event in events]
