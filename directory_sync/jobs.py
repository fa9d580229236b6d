"""
Sync job orchestration.

Creates job records, dispatches them through a bounded pool, resolves the
directory snapshot and the tool adapter, and persists the outcome.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Any, Optional

from directory_sync.adapters.registry import create_adapter, get_adapter_class
from directory_sync.audit import AuditTrail, new_correlation_id
from directory_sync.cancellation import CancellationToken
from directory_sync.config import EngineSettings
from directory_sync.credentials import CredentialProvider
from directory_sync.errors import (
    SyncEngineError, JobTimeoutError, NotFoundError, OperationCancelled, ValidationError,
)
from directory_sync.models import (
    Actor, ChangeSet, JobStatus, JobType, JOB_TRANSITIONS, SyncJob, SyncResult, SyncScope,
    ToolSyncConfig, TriggerSource, utcnow,
)
from directory_sync.repository import Repository

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = 'Internal error during sync job'


def _coerce(enum_class, value, name: str):
    if isinstance(value, enum_class):
        return value
    try:
        return enum_class(value)
    except ValueError:
        allowed = ', '.join(member.value for member in enum_class)
        raise ValidationError(f"Invalid {name}: {value!r} (expected one of: {allowed})")


class SyncJobOrchestrator:
    """
    Runs sync jobs.

    Each job is owned by exactly one task, which is the only writer of its
    record. At most ``max_concurrent_jobs`` jobs run at once; the rest wait
    in ``pending``.
    """

    def __init__(self, repository: Repository, discovery, credential_provider: CredentialProvider,
                 audit: Optional[AuditTrail] = None, settings: Optional[EngineSettings] = None,
                 adapter_factory: Callable[..., Any] = create_adapter):
        self.repository = repository
        self.discovery = discovery
        self.credential_provider = credential_provider
        self.audit = audit
        self.settings = settings or EngineSettings()
        self.adapter_factory = adapter_factory

        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_jobs)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._running: set = set()
        self._stopping = False

    async def _audit(self, event_type: str, **kwargs):
        if self.audit is not None:
            await self.audit.log_event(event_type, **kwargs)

    async def _get_tool_config(self, config_id: str) -> ToolSyncConfig:
        tool_config = await self.repository.get_tool_config(config_id)
        if tool_config is None:
            raise NotFoundError(f"Tool sync config not found: {config_id}")
        return tool_config

    # Job lifecycle

    async def start_sync_job(self, config_id: str, scope=SyncScope.BOTH, job_type=JobType.INCREMENTAL,
                             is_preview: bool = False, actor: Optional[Actor] = None,
                             triggered_by=TriggerSource.MANUAL) -> SyncJob:
        """
        Create a sync job and schedule it for dispatch.

        Returns immediately with the ``pending`` job record.

        Raises:
            ValidationError: If the request is invalid; no job is created
            NotFoundError: If the tool config does not exist
        """
        if self._stopping:
            raise ValidationError("Sync orchestrator is shutting down")
        scope = _coerce(SyncScope, scope, 'scope')
        job_type = _coerce(JobType, job_type, 'job_type')
        triggered_by = _coerce(TriggerSource, triggered_by, 'triggered_by')

        tool_config = await self._get_tool_config(config_id)
        get_adapter_class(tool_config.tool_slug)
        scoped = tool_config.scoped(scope)
        if not scoped.sync_users and not scoped.sync_groups:
            raise ValidationError(f"Scope {scope.value} selects nothing to sync for {config_id}")

        job = await self.repository.create_sync_job(SyncJob(
            config_id=config_id,
            tool_slug=tool_config.tool_slug,
            scope=scope,
            job_type=job_type,
            is_preview=is_preview,
            triggered_by=triggered_by,
            triggered_by_user=actor.id if actor else None,
            correlation_id=new_correlation_id(),
        ))
        await self._audit(
            'sync_requested', actor=actor, config_id=config_id, job_id=job.id, tool_slug=job.tool_slug,
            correlation_id=job.correlation_id,
            data={'scope': scope.value, 'job_type': job_type.value, 'is_preview': is_preview,
                  'triggered_by': triggered_by.value},
        )

        token = CancellationToken()
        self._tokens[job.id] = token
        task = asyncio.create_task(self._run_job(job, tool_config, actor, token), name=f"sync-job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _task, job_id=job.id: self._forget(job_id))

        logger.info(f"Queued {job_type.value} {'preview' if is_preview else 'sync'} job {job.id} "
                    f"for {tool_config.tool_slug} config {config_id} (scope={scope.value})")
        return job

    def _forget(self, job_id: str):
        self._tasks.pop(job_id, None)
        self._tokens.pop(job_id, None)

    async def _transition(self, job: SyncJob, status: JobStatus, **fields) -> SyncJob:
        if status not in JOB_TRANSITIONS[job.status]:
            raise RuntimeError(f"Illegal job transition {job.status.value} -> {status.value} for {job.id}")
        return await self.repository.update_sync_job(job.id, status=status, **fields)

    async def _run_job(self, job: SyncJob, tool_config: ToolSyncConfig, actor: Optional[Actor],
                       token: CancellationToken):
        try:
            await self._semaphore.acquire()
        except asyncio.CancelledError:
            token.cancel('stopped')
            await self._fail(job, actor, time.monotonic(), OperationCancelled("Sync job cancelled before it started"))
            raise

        try:
            self._running.add(job.id)
            started = time.monotonic()
            try:
                job = await self._transition(job, JobStatus.RUNNING, started_at=utcnow())
                await self._audit(
                    'sync_started', actor=actor, config_id=job.config_id, job_id=job.id,
                    tool_slug=job.tool_slug, correlation_id=job.correlation_id,
                    data={'scope': job.scope.value, 'job_type': job.job_type.value, 'is_preview': job.is_preview},
                )
                try:
                    result = await asyncio.wait_for(
                        self._execute(job, tool_config, actor, token),
                        timeout=self.settings.job_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    token.cancel('job_timeout')
                    await self._fail(job, actor, started, JobTimeoutError(
                        f"Sync job exceeded {self.settings.job_timeout_minutes} minute timeout"
                    ))
                except asyncio.CancelledError:
                    token.cancel('stopped')
                    await self._fail(job, actor, started, OperationCancelled("Sync job cancelled"))
                    raise
                except SyncEngineError as e:
                    await self._fail(job, actor, started, e)
                except Exception:
                    logger.exception(f"Unexpected error in sync job {job.id}")
                    await self._fail(job, actor, started, None)
                else:
                    await self._complete(job, actor, started, result)
            finally:
                self._running.discard(job.id)
        finally:
            self._semaphore.release()

    async def _load_snapshot(self, scoped: ToolSyncConfig, refresh: bool, actor: Optional[Actor],
                             correlation_id: Optional[str], token: Optional[CancellationToken] = None,
                             context: str = 'sync'):
        """Cached users and groups for ``scoped``, discovering whatever is missing or ``refresh`` asks for."""
        server_id = scoped.server_id
        users = await self.repository.get_directory_users(server_id) if scoped.sync_users else []
        groups = await self.repository.get_directory_groups(server_id) if scoped.sync_groups else []

        refresh_users = scoped.sync_users and (refresh or not users)
        refresh_groups = scoped.sync_groups and (refresh or not groups)
        if refresh_users or refresh_groups:
            if not refresh:
                logger.info(f"No cached snapshot for server {server_id}; discovering before {context}")
            await self.discovery.discover_all(
                server_id, include_users=refresh_users, include_groups=refresh_groups,
                actor=actor, correlation_id=correlation_id, cancel_token=token,
            )
            if refresh_users:
                users = await self.repository.get_directory_users(server_id)
            if refresh_groups:
                groups = await self.repository.get_directory_groups(server_id)
        return users, groups

    async def _execute(self, job: SyncJob, tool_config: ToolSyncConfig, actor: Optional[Actor],
                       token: CancellationToken) -> SyncResult:
        scoped = tool_config.scoped(job.scope)
        users, groups = await self._load_snapshot(scoped, job.job_type == JobType.FULL, actor,
                                                  job.correlation_id, token, context=f"job {job.id}")
        token.raise_if_cancelled()

        role_mappings = await self.repository.get_role_mappings(tool_config.id)
        adapter = self.adapter_factory(scoped, self.credential_provider,
                                       role_mappings=role_mappings, settings=self.settings)
        try:
            await adapter.initialize()
            token.raise_if_cancelled()
            return await adapter.execute_sync(users, groups, scoped, is_preview=job.is_preview, cancel_token=token)
        finally:
            await adapter.close()

    async def _complete(self, job: SyncJob, actor: Optional[Actor], started: float, result: SyncResult):
        duration = time.monotonic() - started
        job = await self._transition(
            job, JobStatus.COMPLETED,
            completed_at=utcnow(),
            duration_seconds=round(duration, 3),
            users=result.users.to_dict(),
            groups=result.groups.to_dict(),
            errors=result.errors,
            change_set=result.change_set.to_dict() if job.is_preview and result.change_set else None,
        )

        for conflict in result.conflicts:
            await self._audit(
                'conflict_detected', actor=actor, config_id=job.config_id, job_id=job.id,
                tool_slug=job.tool_slug, correlation_id=job.correlation_id,
                data=dict(conflict),
            )
        for applied in result.applied:
            await self._audit(
                f"{applied['entity_type']}_synced", actor=actor, config_id=job.config_id, job_id=job.id,
                tool_slug=job.tool_slug, correlation_id=job.correlation_id,
                data={'identifier': applied['identifier'], 'action': applied['action']},
            )
            if 'role' in applied:
                await self._audit(
                    'role_assigned', actor=actor, config_id=job.config_id, job_id=job.id,
                    tool_slug=job.tool_slug, correlation_id=job.correlation_id,
                    data={'identifier': applied['identifier'], 'role': applied['role']},
                )
        summary ={'users': job.users, 'groups': job.groups, 'errors': len(job.errors),
                   'conflicts': len(result.conflicts), 'warnings': result.warnings}
        if job.is_preview:
            summary['estimated_changes'] = result.change_set.estimated_changes if result.change_set else 0
            await self._audit(
                'sync_previewed', actor=actor, config_id=job.config_id, job_id=job.id,
                tool_slug=job.tool_slug, correlation_id=job.correlation_id, data=summary,
            )
        await self._audit(
            'sync_completed', actor=actor, config_id=job.config_id, job_id=job.id, tool_slug=job.tool_slug,
            success=result.success, duration_ms=int(duration * 1000), correlation_id=job.correlation_id,
            data=summary,
        )
        if not job.is_preview:
            await self._update_tool_status(job.config_id, 'completed' if result.success else 'completed_with_errors')

        logger.info(f"Sync job {job.id} completed in {duration:.2f}s: users={job.users} groups={job.groups} "
                    f"errors={len(job.errors)}")

    async def _fail(self, job: SyncJob, actor: Optional[Actor], started: float,
                    error: Optional[SyncEngineError]):
        duration = time.monotonic() - started
        error_code = error.code if error else 'internal_error'
        error_message = error.message if error else INTERNAL_ERROR_MESSAGE
        try:
            job = await self._transition(
                job, JobStatus.FAILED,
                completed_at=utcnow(),
                duration_seconds=round(duration, 3),
                error_code=error_code,
                error_message=error_message,
            )
        except SyncEngineError as e:
            logger.error(f"Failed to record failure of sync job {job.id}: {e}")
            return

        logger.error(f"Sync job {job.id} failed [{error_code}]: {error_message}")
        await self._audit(
            'sync_failed', actor=actor, config_id=job.config_id, job_id=job.id, tool_slug=job.tool_slug,
            success=False, error_code=error_code, error_message=error_message,
            duration_ms=int(duration * 1000), correlation_id=job.correlation_id,
        )
        if not job.is_preview:
            await self._update_tool_status(job.config_id, 'failed')

    async def _update_tool_status(self, config_id: str, status: str):
        try:
            await self.repository.update_tool_sync_status(config_id, status)
        except SyncEngineError as e:
            logger.warning(f"Could not update sync status of tool config {config_id}: {e}")

    # Queries

    async def get_sync_job(self, job_id: str) -> SyncJob:
        """
        Raises:
            NotFoundError: If no job has ``job_id``
        """
        job = await self.repository.get_sync_job(job_id)
        if job is None:
            raise NotFoundError(f"Sync job not found: {job_id}")
        return job

    async def list_sync_jobs(self, status=None, config_id: Optional[str] = None,
                             limit: Optional[int] = None) -> List[SyncJob]:
        if status is not None:
            status = _coerce(JobStatus, status, 'status')
        return await self.repository.list_sync_jobs(status=status, config_id=config_id, limit=limit)

    async def list_tool_configs(self) -> List[ToolSyncConfig]:
        return await self.repository.list_tool_configs()

    async def get_sync_status_overview(self) -> Dict[str, Any]:
        running = await self.repository.list_sync_jobs(status=JobStatus.RUNNING)
        pending = await self.repository.list_sync_jobs(status=JobStatus.PENDING)
        recent = await self.repository.list_sync_jobs(limit=self.settings.recent_jobs_limit)
        configs = await self.repository.list_tool_configs()
        return {
            'active_jobs': len(running),
            'pending_jobs': len(pending),
            'recent_jobs': [job.to_dict() for job in recent],
            'tool_configs': len(configs),
            'tools_enabled': sum(1 for c in configs if c.sync_users or c.sync_groups),
        }

    async def preview_sync(self, config_id: str, scope=SyncScope.BOTH, actor: Optional[Actor] = None,
                           correlation_id: Optional[str] = None) -> ChangeSet:
        """
        Compute a change set from the cached snapshot without creating a job.

        An empty cache is filled by discovery first, as incremental jobs do,
        so a missing snapshot never previews every remote account as removed.
        """
        scope = _coerce(SyncScope, scope, 'scope')
        tool_config = await self._get_tool_config(config_id)
        scoped = tool_config.scoped(scope)
        correlation_id = correlation_id or new_correlation_id()
        started = time.monotonic()

        users, groups = await self._load_snapshot(scoped, False, actor, correlation_id,
                                                  context=f"preview of {config_id}")
        role_mappings = await self.repository.get_role_mappings(config_id)

        adapter = self.adapter_factory(scoped, self.credential_provider,
                                       role_mappings=role_mappings, settings=self.settings)
        async with adapter:
            change_set = await adapter.preview_sync(users, groups, scoped)

        await self._audit(
            'sync_previewed', actor=actor, config_id=config_id, tool_slug=tool_config.tool_slug,
            duration_ms=int((time.monotonic() - started) * 1000), correlation_id=correlation_id,
            data={'scope': scope.value, 'estimated_changes': change_set.estimated_changes,
                  'warnings': change_set.warnings},
        )
        return change_set

    # Shutdown

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> SyncJob:
        """Wait until ``job_id`` is terminal and return its record."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.get_sync_job(job_id)

    @property
    def active_job_ids(self) -> List[str]:
        return sorted(self._running)

    async def stop(self, timeout: Optional[float] = None):
        """
        Refuse new jobs and wait for queued and running ones.

        Jobs still running after ``timeout`` seconds are cancelled and
        recorded as failed.
        """
        self._stopping = True
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info(f"Waiting for {len(tasks)} sync job(s) to finish")
        done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} sync job(s) during shutdown")
