#!/usr/bin/env python3
"""
Unit tests for the sync job orchestrator.

Jobs run against an in-memory repository, a fake discovery service and
recording adapters, so the lifecycle, pool limit, timeouts and failure
categories can be observed end to end.
"""

import asyncio
import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.audit import AuditTrail
from directory_sync.credentials import StaticCredentialProvider
from directory_sync.errors import DiscoveryError, NotFoundError, SearchTimeout, ValidationError
from directory_sync.jobs import INTERNAL_ERROR_MESSAGE, SyncJobOrchestrator
from directory_sync.models import Actor, JobStatus, JobType, TriggerSource
from directory_sync.repository import InMemoryRepository
from sync_doubles import (
    AdapterFactory, RecordingAdapter, fast_settings, make_group, make_server,
    make_tool_config, make_user,
)

ACTOR = Actor(id='u-1', email='ops@example.com', roles=('admin',))


class FakeDiscovery:
    """Stands in for DiscoveryService.discover_all, writing straight to the cache."""

    def __init__(self, repository, users=(), groups=(), error=None):
        self.repository = repository
        self.users = list(users)
        self.groups = list(groups)
        self.error = error
        self.calls = []

    async def discover_all(self, server_id, include_users=True, include_groups=True, actor=None,
                           correlation_id=None, cancel_token=None):
        self.calls.append((server_id, include_users, include_groups))
        if self.error:
            raise self.error
        if include_users:
            await self.repository.replace_directory_users(server_id, self.users)
        if include_groups:
            await self.repository.replace_directory_groups(server_id, self.groups)
        return {}


class SlowAdapter(RecordingAdapter):
    """Blocks on ``gate`` (or for a long time) before listing remote users."""

    gate = None

    async def fetch_remote_users(self):
        if SlowAdapter.gate is not None:
            await SlowAdapter.gate.wait()
        else:
            await asyncio.sleep(30)
        return await super().fetch_remote_users()


def slow_factory(tool_config, credential_provider, role_mappings=None, settings=None):
    return SlowAdapter(tool_config, credential_provider, role_mappings=role_mappings, settings=settings)


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.01)


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        SlowAdapter.gate = None
        self.repository = InMemoryRepository.from_records(
            [make_server()],
            [make_tool_config(), make_tool_config(id='cfg-users', sync_groups=False),
             make_tool_config(id='cfg-jira', tool_slug='jira')],
        )
        self.directory_users = [make_user('alice@example.com'), make_user('bob@example.com')]
        self.directory_groups = [make_group('developers', 'Developers')]
        self.discovery = FakeDiscovery(self.repository, self.directory_users, self.directory_groups)
        self.audit = AuditTrail(self.repository)
        self.factory = AdapterFactory()

    def orchestrator(self, credentials=None, adapter_factory=None, **settings):
        return SyncJobOrchestrator(
            self.repository, self.discovery, credentials or StaticCredentialProvider(tool_credentials={
                'cfg-1': {'token': 'test-token'}, 'cfg-users': {'token': 'test-token'},
            }),
            audit=self.audit, settings=fast_settings(**settings),
            adapter_factory=adapter_factory or self.factory,
        )

    async def seed_cache(self):
        await self.repository.replace_directory_users('corp', self.directory_users)
        await self.repository.replace_directory_groups('corp', self.directory_groups)

    async def event_types(self, job_id):
        events = await self.repository.list_audit_events(job_id=job_id)
        return [event.event_type for event in reversed(events)]


class TestJobLifecycle(OrchestratorTestCase):

    async def test_job_completes_and_records_outcome(self):
        await self.seed_cache()
        orchestrator = self.orchestrator()

        job = await orchestrator.start_sync_job('cfg-1', actor=ACTOR)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.triggered_by_user, 'u-1')
        self.assertIsNotNone(job.correlation_id)

        job = await orchestrator.wait_for_job(job.id, timeout=5)

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertIsNotNone(job.started_at)
        self.assertIsNotNone(job.completed_at)
        self.assertGreaterEqual(job.duration_seconds, 0)
        self.assertEqual(job.users['created'], 2)
        self.assertEqual(job.groups['created'], 1)
        self.assertEqual(job.errors, [])
        self.assertIsNone(job.change_set)
        self.assertEqual(self.discovery.calls, [])
        self.assertTrue(self.factory.adapters[0].closed)

        self.assertEqual(await self.event_types(job.id), [
            'sync_requested', 'sync_started', 'group_synced', 'user_synced', 'user_synced', 'sync_completed',
        ])
        events = await self.repository.list_audit_events(job_id=job.id)
        self.assertTrue(all(event.correlation_id == job.correlation_id for event in events))
        tool_config = await self.repository.get_tool_config('cfg-1')
        self.assertEqual(tool_config.last_sync_status, 'completed')

    async def test_full_preview_job_applies_nothing(self):
        self.factory = AdapterFactory(forbid_mutations=True)
        orchestrator = self.orchestrator()

        job = await orchestrator.start_sync_job('cfg-1', scope='both', job_type='full', is_preview=True)
        job = await orchestrator.wait_for_job(job.id, timeout=5)

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(self.discovery.calls, [('corp', True, True)])
        self.assertEqual(self.factory.adapters[0].applied, [])
        self.assertEqual(job.users['created'], 2)
        self.assertEqual(job.change_set['estimated_changes'], 3)
        self.assertIn('sync_previewed', await self.event_types(job.id))
        tool_config = await self.repository.get_tool_config('cfg-1')
        self.assertIsNone(tool_config.last_sync_status)

    async def test_incremental_job_discovers_when_cache_is_empty(self):
        orchestrator = self.orchestrator()

        job = await orchestrator.start_sync_job('cfg-users', scope='users')
        job = await orchestrator.wait_for_job(job.id, timeout=5)

        self.assertEqual(job.status, JobStatus.COMPLETED, job.error_message)
        self.assertEqual(self.discovery.calls, [('corp', True, False)])
        self.assertEqual(job.users['created'], 2)

    async def test_partial_failure_completes_with_errors(self):
        await self.seed_cache()
        self.factory = AdapterFactory(fail_identifiers={'bob'})
        orchestrator = self.orchestrator()

        job = await orchestrator.start_sync_job('cfg-1')
        job = await orchestrator.wait_for_job(job.id, timeout=5)

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.users['failed'], 1)
        self.assertEqual(job.errors[0]['identifier'], 'bob')
        tool_config = await self.repository.get_tool_config('cfg-1')
        self.assertEqual(tool_config.last_sync_status, 'completed_with_errors')
        completed = (await self.repository.list_audit_events(event_type='sync_completed'))[0]
        self.assertFalse(completed.success)
        synced = await self.repository.list_audit_events(event_type='user_synced')
        self.assertEqual([event.data['identifier'] for event in synced], ['alice'])

    async def test_applied_changes_and_roles_are_audited(self):
        await self.seed_cache()
        self.factory = AdapterFactory(roles={'alice': 'admin'})
        orchestrator = self.orchestrator()

        job = await orchestrator.start_sync_job('cfg-1')
        await orchestrator.wait_for_job(job.id, timeout=5)

        users = await self.repository.list_audit_events(event_type='user_synced', job_id=job.id)
        self.assertEqual(sorted(event.data['identifier'] for event in users), ['alice', 'bob'])
        self.assertTrue(all(event.data['action'] == 'create' for event in users))
        groups = await self.repository.list_audit_events(event_type='group_synced', job_id=job.id)
        self.assertEqual(groups[0].description, 'Group synced to github: developers')

        roles = await self.repository.list_audit_events(event_type='role_assigned', job_id=job.id)
        self.assertEqual(len(roles), 1)
        self.assertEqual(roles[0].category, 'mapping')
        self.assertEqual(roles[0].data, {'identifier': 'alice', 'role': 'admin'})
        self.assertEqual(roles[0].description, 'Role admin assigned to alice in github')

    async def test_preview_job_audits_no_applied_changes(self):
        await self.seed_cache()
        self.factory = AdapterFactory(forbid_mutations=True, roles={'alice': 'admin'})
        orchestrator = self.orchestrator()

        job = await orchestrator.start_sync_job('cfg-1', is_preview=True)
        await orchestrator.wait_for_job(job.id, timeout=5)

        types = await self.event_types(job.id)
        self.assertNotIn('user_synced', types)
        self.assertNotIn('role_assigned', types)

    async def test_conflicts_are_audited(self):
        await self.seed_cache()
        self.factory = AdapterFactory(remote_users=[{'username': 'alice', 'name': 'Old', 'locked': True}])
        orchestrator = self.orchestrator()

        job = await orchestrator.start_sync_job('cfg-1')
        await orchestrator.wait_for_job(job.id, timeout=5)

        conflicts = await self.repository.list_audit_events(event_type='conflict_detected')
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].data['identifier'], 'alice')
        self.assertEqual(conflicts[0].category, 'conflict')

    async def test_overview(self):
        await self.seed_cache()
        orchestrator = self.orchestrator()
        job = await orchestrator.start_sync_job('cfg-1')
        await orchestrator.wait_for_job(job.id, timeout=5)

        overview = await orchestrator.get_sync_status_overview()

        self.assertEqual(overview['active_jobs'], 0)
        self.assertEqual(overview['pending_jobs'], 0)
        self.assertEqual(overview['tool_configs'], 3)
        self.assertEqual(overview['recent_jobs'][0]['id'], job.id)
        self.assertEqual(overview['recent_jobs'][0]['status'], 'completed')

        jobs = await orchestrator.list_sync_jobs(status='completed', config_id='cfg-1')
        self.assertEqual([j.id for j in jobs], [job.id])


class TestJobFailures(OrchestratorTestCase):

    async def test_missing_credentials_fail_job(self):
        await self.seed_cache()
        orchestrator = self.orchestrator(credentials=StaticCredentialProvider())

        job = await orchestrator.start_sync_job('cfg-1')
        job = await orchestrator.wait_for_job(job.id, timeout=5)

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.error_code, 'credentials_unavailable')
        self.assertTrue(self.factory.adapters[0].closed)
        self.assertEqual(await self.event_types(job.id), ['sync_requested', 'sync_started', 'sync_failed'])
        tool_config = await self.repository.get_tool_config('cfg-1')
        self.assertEqual(tool_config.last_sync_status, 'failed')

    async def test_discovery_failure_fails_job(self):
        self.discovery.error = DiscoveryError('Discovery of users on corp failed',
                                              cause=SearchTimeout('Search exceeded 60s'))
        orchestrator = self.orchestrator()

        job = await orchestrator.start_sync_job('cfg-1', job_type=JobType.FULL)
        job = await orchestrator.wait_for_job(job.id, timeout=5)

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.error_code, 'discovery_failed')
        self.assertEqual(self.factory.adapters, [])

    async def test_unexpected_error_is_not_leaked(self):
        await self.seed_cache()

        def broken_factory(*args, **kwargs):
            raise RuntimeError('secret internal detail')

        orchestrator = self.orchestrator(adapter_factory=broken_factory)

        job = await orchestrator.start_sync_job('cfg-1')
        job = await orchestrator.wait_for_job(job.id, timeout=5)

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.error_code, 'internal_error')
        self.assertEqual(job.error_message, INTERNAL_ERROR_MESSAGE)

    async def test_job_timeout(self):
        await self.seed_cache()
        orchestrator = self.orchestrator(adapter_factory=slow_factory, job_timeout_minutes=0.001)

        job = await orchestrator.start_sync_job('cfg-1')
        job = await orchestrator.wait_for_job(job.id, timeout=5)

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.error_code, 'job_timeout')


class TestJobValidation(OrchestratorTestCase):

    async def test_invalid_scope(self):
        with self.assertRaises(ValidationError):
            await self.orchestrator().start_sync_job('cfg-1', scope='everything')
        self.assertEqual(await self.repository.list_sync_jobs(), [])

    async def test_invalid_job_type(self):
        with self.assertRaises(ValidationError):
            await self.orchestrator().start_sync_job('cfg-1', job_type='partial')

    async def test_unknown_config(self):
        with self.assertRaises(NotFoundError):
            await self.orchestrator().start_sync_job('missing')

    async def test_unregistered_tool(self):
        with self.assertRaises(ValidationError):
            await self.orchestrator().start_sync_job('cfg-jira')
        self.assertEqual(await self.repository.list_sync_jobs(), [])

    async def test_scope_selecting_nothing(self):
        with self.assertRaises(ValidationError):
            await self.orchestrator().start_sync_job('cfg-users', scope='groups')

    async def test_unknown_job(self):
        with self.assertRaises(NotFoundError):
            await self.orchestrator().get_sync_job('nope')


class TestConcurrency(OrchestratorTestCase):

    async def test_pool_limit_keeps_extra_jobs_pending(self):
        await self.seed_cache()
        SlowAdapter.gate = asyncio.Event()
        orchestrator = self.orchestrator(adapter_factory=slow_factory, max_concurrent_jobs=1)

        first = await orchestrator.start_sync_job('cfg-1')
        second = await orchestrator.start_sync_job('cfg-1')

        async def first_running():
            return (await self.repository.get_sync_job(first.id)).status == JobStatus.RUNNING

        await wait_until(first_running)
        await asyncio.sleep(0.05)
        self.assertEqual(orchestrator.active_job_ids, [first.id])
        self.assertEqual((await self.repository.get_sync_job(second.id)).status, JobStatus.PENDING)
        overview = await orchestrator.get_sync_status_overview()
        self.assertEqual(overview['active_jobs'], 1)
        self.assertEqual(overview['pending_jobs'], 1)

        SlowAdapter.gate.set()
        first = await orchestrator.wait_for_job(first.id, timeout=5)
        second = await orchestrator.wait_for_job(second.id, timeout=5)
        self.assertEqual(first.status, JobStatus.COMPLETED)
        self.assertEqual(second.status, JobStatus.COMPLETED)

    async def test_stop_cancels_running_jobs_and_refuses_new_ones(self):
        await self.seed_cache()
        orchestrator = self.orchestrator(adapter_factory=slow_factory)

        job = await orchestrator.start_sync_job('cfg-1')

        async def running():
            return (await self.repository.get_sync_job(job.id)).status == JobStatus.RUNNING

        await wait_until(running)
        await orchestrator.stop(timeout=0.05)

        job = await orchestrator.get_sync_job(job.id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.error_code, 'operation_cancelled')
        with self.assertRaises(ValidationError):
            await orchestrator.start_sync_job('cfg-1')

    async def test_stop_fails_jobs_still_waiting_for_the_pool(self):
        await self.seed_cache()
        orchestrator = self.orchestrator(adapter_factory=slow_factory, max_concurrent_jobs=1)

        first = await orchestrator.start_sync_job('cfg-1')
        second = await orchestrator.start_sync_job('cfg-1')

        async def first_running():
            return (await self.repository.get_sync_job(first.id)).status == JobStatus.RUNNING

        await wait_until(first_running)
        await orchestrator.stop(timeout=0.05)

        second = await orchestrator.get_sync_job(second.id)
        self.assertEqual(second.status, JobStatus.FAILED)
        self.assertEqual(second.error_code, 'operation_cancelled')
        self.assertIsNone(second.started_at)

    async def test_scheduled_trigger_recorded(self):
        await self.seed_cache()
        orchestrator = self.orchestrator()
        job = await orchestrator.start_sync_job('cfg-1', triggered_by=TriggerSource.SCHEDULE)
        job = await orchestrator.wait_for_job(job.id, timeout=5)
        self.assertEqual(job.triggered_by, TriggerSource.SCHEDULE)


class TestEphemeralPreview(OrchestratorTestCase):

    async def test_preview_creates_no_job(self):
        await self.seed_cache()
        self.factory = AdapterFactory(forbid_mutations=True)
        orchestrator = self.orchestrator()

        change_set = await orchestrator.preview_sync('cfg-1', scope='users', actor=ACTOR)

        self.assertEqual(len(change_set.users.to_create), 2)
        self.assertEqual(change_set.groups.changes(), [])
        self.assertEqual(await self.repository.list_sync_jobs(), [])
        self.assertTrue(self.factory.adapters[0].closed)
        events = await self.repository.list_audit_events(event_type='sync_previewed')
        self.assertEqual(len(events), 1)
        self.assertIsNone(events[0].job_id)
        self.assertEqual(events[0].actor_id, 'u-1')
        self.assertEqual(self.discovery.calls, [])

    async def test_preview_discovers_when_cache_is_empty(self):
        self.repository = InMemoryRepository.from_records([make_server()], [make_tool_config(user_delete_enabled=True)])
        self.discovery = FakeDiscovery(self.repository, self.directory_users, self.directory_groups)
        self.factory = AdapterFactory(forbid_mutations=True, remote_users=[
            {'username': 'alice', 'name': 'Alice'}, {'username': 'carol', 'name': 'Carol'},
        ])
        orchestrator = self.orchestrator()

        change_set = await orchestrator.preview_sync('cfg-1', scope='users')

        self.assertEqual(self.discovery.calls, [('corp', True, False)])
        self.assertEqual([c.identifier for c in change_set.users.to_create], ['bob'])
        self.assertEqual([c.identifier for c in change_set.users.to_delete], ['carol'])


if __name__ == '__main__':
    unittest.main()
