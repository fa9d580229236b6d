#!/usr/bin/env python3
"""
Unit tests for the tool adapter base class.

Covers rate limiting, the HTTP wrapper, retries, and the preview/execute
reconciliation loop (partial failures, conflict policies, orphan handling).
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.adapters.base import RateLimiter, email_local_part, slugify
from directory_sync.adapters.registry import create_adapter, get_adapter_class, register_adapter
from directory_sync.adapters.github import GitHubAdapter
from directory_sync.cancellation import CancellationToken
from directory_sync.credentials import StaticCredentialProvider
from directory_sync.errors import (
    AdapterAuthenticationError, AdapterError, AdapterInitializationError, CredentialError,
    OperationCancelled, ValidationError,
)
from sync_doubles import (
    RecordingAdapter, fast_settings, make_credentials, make_group, make_tool_config, make_user,
)


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_adapter(tool_config=None, credentials=None, settings=None, **kwargs):
    return RecordingAdapter(
        tool_config or make_tool_config(),
        credentials or make_credentials(),
        settings=settings or fast_settings(),
        rate_limiter=kwargs.pop('rate_limiter', RateLimiter(60000)),
        **kwargs
    )


def http_response(status, body=b'', reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    response.read.return_value = body
    return response


class TestHelpers(unittest.TestCase):

    def test_email_local_part(self):
        self.assertEqual(email_local_part('Alice@Example.com'), 'alice')
        self.assertIsNone(email_local_part(None))
        self.assertIsNone(email_local_part('@example.com'))

    def test_slugify(self):
        self.assertEqual(slugify('Platform Engineers'), 'platform-engineers')
        self.assertEqual(slugify('  DevOps__Team! '), 'devops-team')
        self.assertIsNone(slugify('***'))


class TestRateLimiter(unittest.IsolatedAsyncioTestCase):

    async def test_spacing_at_sixty_per_minute(self):
        clock = FakeClock()
        limiter = RateLimiter(60, clock=clock, sleep=clock.sleep)

        dispatches = [await limiter.acquire() for _ in range(3)]

        for earlier, later in zip(dispatches, dispatches[1:]):
            self.assertGreaterEqual(later - earlier, 1.0)
        self.assertEqual(clock.sleeps, [1.0, 1.0])

    async def test_no_wait_when_interval_already_elapsed(self):
        clock = FakeClock()
        limiter = RateLimiter(120, clock=clock, sleep=clock.sleep)

        await limiter.acquire()
        clock.now += 5
        await limiter.acquire()

        self.assertEqual(clock.sleeps, [])

    def test_rejects_non_positive_rate(self):
        with self.assertRaises(ValueError):
            RateLimiter(0)


class TestHttpWrapper(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.adapter = make_adapter()
        self.connection = Mock()
        patcher = patch.object(self.adapter, '_get_connection', return_value=self.connection)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_request_parses_json_and_sends_auth(self):
        self.adapter.auth_headers = {'Authorization': 'Bearer test-token'}
        self.connection.getresponse.return_value = http_response(200, b'{"login": "example-org"}')

        result = self.adapter.request('POST', 'orgs/example-org', body={'a': 1}, params={'page': 2})

        self.assertEqual(result, {'login': 'example-org'})
        method, path, body, headers = self.connection.request.call_args[0]
        self.assertEqual(method, 'POST')
        self.assertEqual(path, '/api/orgs/example-org?page=2')
        self.assertEqual(body, '{"a": 1}')
        self.assertEqual(headers['Authorization'], 'Bearer test-token')
        self.assertEqual(headers['Content-Type'], 'application/json')

    def test_request_empty_body_returns_none(self):
        self.connection.getresponse.return_value = http_response(204, b'', 'No Content')
        self.assertIsNone(self.adapter.request('DELETE', 'orgs/example-org/members/bob'))

    def test_request_401_raises_authentication_error(self):
        self.connection.getresponse.return_value = http_response(401, b'{}', 'Unauthorized')
        with self.assertRaises(AdapterAuthenticationError):
            self.adapter.request('GET', 'user')

    def test_request_403_raises_authentication_error(self):
        self.connection.getresponse.return_value = http_response(403, b'{"message": "Must be an owner"}',
                                                                 'Forbidden')
        self.connection.getresponse.return_value.getheader.return_value = None
        with self.assertRaises(AdapterAuthenticationError) as context:
            self.adapter.request('GET', 'orgs/example-org/members')
        self.assertEqual(context.exception.status_code, 403)

    def test_request_403_rate_limit_is_retryable(self):
        response = http_response(403, b'{"message": "API rate limit exceeded"}', 'Forbidden')
        response.getheader.side_effect = lambda name, default=None: (
            '0' if name == 'X-RateLimit-Remaining' else default
        )
        self.connection.getresponse.return_value = response
        with self.assertRaises(AdapterError) as context:
            self.adapter.request('GET', 'orgs/example-org/members')
        self.assertNotIsInstance(context.exception, AdapterAuthenticationError)
        self.assertTrue(context.exception.retryable)

    async def test_forbidden_response_aborts_execute_sync(self):
        self.connection.getresponse.return_value = http_response(403, b'{}', 'Forbidden')
        self.connection.getresponse.return_value.getheader.return_value = None

        async def create_remotely(change):
            await self.adapter.call_api('POST', 'users', change.mapped)

        users = [make_user('alice@example.com'), make_user('bob@example.com')]
        with patch.object(self.adapter, 'apply_user_change', side_effect=create_remotely):
            with self.assertRaises(AdapterAuthenticationError):
                await self.adapter.execute_sync(users, [])
        self.assertEqual(self.connection.request.call_count, 1)

    def test_request_http_error_carries_status(self):
        self.connection.getresponse.return_value = http_response(422, b'{"message": "invalid"}', 'Unprocessable')
        with self.assertRaises(AdapterError) as context:
            self.adapter.request('POST', 'users', body={})
        self.assertEqual(context.exception.status_code, 422)
        self.assertFalse(context.exception.retryable)

    def test_request_connection_error_is_retryable(self):
        self.connection.request.side_effect = ConnectionResetError('reset by peer')
        with self.assertRaises(AdapterError) as context:
            self.adapter.request('GET', 'users')
        self.assertTrue(context.exception.retryable)

    async def test_call_api_retries_server_errors(self):
        self.adapter.settings = fast_settings(max_retries=2)
        with patch.object(self.adapter, 'request',
                          side_effect=[AdapterError('HTTP 503', status_code=503), {'ok': True}]) as request:
            result = await self.adapter.call_api('GET', 'users')

        self.assertEqual(result, {'ok': True})
        self.assertEqual(request.call_count, 2)
        self.assertEqual(self.adapter.stats['api_calls'], 2)

    async def test_call_api_does_not_retry_client_errors(self):
        self.adapter.settings = fast_settings(max_retries=3)
        with patch.object(self.adapter, 'request',
                          side_effect=AdapterError('HTTP 404', status_code=404)) as request:
            with self.assertRaises(AdapterError):
                await self.adapter.call_api('GET', 'users/42')
        self.assertEqual(request.call_count, 1)

    async def test_call_api_raises_last_error_after_retries(self):
        self.adapter.settings = fast_settings(max_retries=1)
        with patch.object(self.adapter, 'request',
                          side_effect=AdapterError('HTTP 502', status_code=502)) as request:
            with self.assertRaises(AdapterError) as context:
                await self.adapter.call_api('GET', 'users')
        self.assertEqual(request.call_count, 2)
        self.assertEqual(context.exception.status_code, 502)

    async def test_call_api_waits_for_rate_limiter(self):
        clock = FakeClock()
        self.adapter.rate_limiter = RateLimiter(60, clock=clock, sleep=clock.sleep)
        with patch.object(self.adapter, 'request', return_value=[]):
            await self.adapter.call_api('GET', 'users')
            await self.adapter.call_api('GET', 'users')
        self.assertEqual(clock.sleeps, [1.0])

    async def test_call_api_paginated_reads_until_short_page(self):
        pages = [[{'id': i} for i in range(100)], [{'id': 100}, {'id': 101}]]
        with patch.object(self.adapter, 'request', side_effect=pages) as request:
            items = await self.adapter.call_api_paginated('users', {'active': 'true'})

        self.assertEqual(len(items), 102)
        first_params = request.call_args_list[0][0][3]
        second_params = request.call_args_list[1][0][3]
        self.assertEqual(first_params, {'active': 'true', 'per_page': 100, 'page': 1})
        self.assertEqual(second_params['page'], 2)


class TestInitialization(unittest.IsolatedAsyncioTestCase):

    async def test_initialize_builds_bearer_headers(self):
        adapter = make_adapter()
        await adapter.initialize()
        self.assertTrue(adapter.initialized)
        self.assertEqual(adapter.auth_headers, {'Authorization': 'Bearer test-token'})

    async def test_basic_auth_headers(self):
        adapter = make_adapter(credentials=StaticCredentialProvider(
            tool_credentials={'cfg-1': {'username': 'sync', 'password': 'pw'}}))
        await adapter.initialize()
        self.assertEqual(adapter.auth_headers, {'Authorization': 'Basic c3luYzpwdw=='})

    async def test_missing_credentials_raise_credential_error(self):
        adapter = make_adapter(credentials=StaticCredentialProvider())
        with self.assertRaises(CredentialError) as context:
            await adapter.initialize()
        self.assertEqual(context.exception.code, 'credentials_unavailable')
        self.assertFalse(adapter.initialized)

    async def test_validation_failure_wrapped_as_init_error(self):
        adapter = make_adapter()
        with patch.object(adapter, 'validate_connection',
                          side_effect=AdapterError('HTTP 404', status_code=404)):
            with self.assertRaises(AdapterInitializationError) as context:
                await adapter.initialize()
        self.assertEqual(context.exception.code, 'adapter_init_failed')

    def test_missing_base_url(self):
        class NoUrlAdapter(RecordingAdapter):
            default_base_url = None

        with self.assertRaises(AdapterInitializationError):
            NoUrlAdapter(make_tool_config(base_url=None), make_credentials())


class TestRegistry(unittest.TestCase):

    def test_unknown_slug(self):
        with self.assertRaises(ValidationError):
            get_adapter_class('jira')

    def test_create_adapter_for_registered_slug(self):
        adapter = create_adapter(make_tool_config(), make_credentials(), settings=fast_settings())
        self.assertIsInstance(adapter, GitHubAdapter)
        self.assertEqual(adapter.organization, 'example-org')

    def test_duplicate_registration_rejected(self):
        with self.assertRaises(ValueError):
            @register_adapter('github')
            class AnotherGitHub(RecordingAdapter):
                pass


class TestPreview(unittest.IsolatedAsyncioTestCase):

    async def test_preview_stages_changes_without_mutating(self):
        adapter = make_adapter(
            remote_users=[{'username': 'bob', 'name': 'Robert'}],
            remote_groups=[{'slug': 'developers', 'description': 'Devs'}],
            forbid_mutations=True,
        )
        users = [make_user('alice@example.com'), make_user('bob@example.com')]
        groups = [make_group('developers', 'Developers'), make_group('qa')]

        change_set = await adapter.preview_sync(users, groups)

        self.assertEqual([c.identifier for c in change_set.users.to_create], ['alice'])
        self.assertEqual([c.identifier for c in change_set.users.to_update], ['bob'])
        self.assertEqual([c.identifier for c in change_set.groups.to_create], ['qa'])
        self.assertEqual(change_set.groups.to_update[0].changes[0].new_value, 'Developers')
        self.assertEqual(change_set.estimated_changes, 4)
        self.assertEqual(adapter.applied, [])

    async def test_preview_warns_on_duplicates_and_missing_identifiers(self):
        adapter = make_adapter(forbid_mutations=True)
        users = [make_user('alice@example.com'), make_user('alice@other.example.com')]
        nameless = make_user('x@example.com')
        nameless.email = None
        users.append(nameless)

        change_set = await adapter.preview_sync(users, [])

        self.assertEqual(len(change_set.users.to_create), 1)
        self.assertEqual(len(change_set.warnings), 2)

    async def test_preview_limit_warning(self):
        adapter = make_adapter(settings=fast_settings(preview_max_changes=1), forbid_mutations=True)
        change_set = await adapter.preview_sync(
            [make_user('alice@example.com'), make_user('bob@example.com')], [])
        self.assertEqual(change_set.estimated_changes, 2)
        self.assertTrue(any('preview limit' in warning for warning in change_set.warnings))

    async def test_execute_as_preview_counts_without_applying(self):
        adapter = make_adapter(forbid_mutations=True)
        result = await adapter.execute_sync([make_user('alice@example.com')], [make_group('qa')],
                                            is_preview=True)
        self.assertTrue(result.is_preview)
        self.assertEqual(result.users.created, 1)
        self.assertEqual(result.groups.created, 1)
        self.assertEqual(adapter.applied, [])


class TestExecute(unittest.IsolatedAsyncioTestCase):

    async def test_groups_applied_before_users(self):
        adapter = make_adapter()
        await adapter.execute_sync([make_user('alice@example.com')], [make_group('qa')])
        self.assertEqual([entry[0] for entry in adapter.applied], ['group', 'user'])

    async def test_partial_failure_continues(self):
        adapter = make_adapter(fail_identifiers={'bob'})
        users = [make_user('alice@example.com'), make_user('bob@example.com'), make_user('carol@example.com')]

        result = await adapter.execute_sync(users, [])

        self.assertEqual(result.users.created, 2)
        self.assertEqual(result.users.failed, 1)
        self.assertEqual(result.users.processed, 3)
        self.assertFalse(result.success)
        self.assertEqual(result.errors[0]['identifier'], 'bob')
        self.assertEqual(result.errors[0]['code'], 'adapter_error')
        self.assertEqual(adapter.get_sync_stats()['users_created'], 2)
        self.assertEqual(adapter.get_sync_stats()['users_failed'], 1)

    async def test_unexpected_exception_recorded_as_internal_error(self):
        adapter = make_adapter()
        with patch.object(adapter, 'apply_user_change', side_effect=KeyError('email')):
            result = await adapter.execute_sync([make_user('alice@example.com')], [])
        self.assertEqual(result.errors[0]['code'], 'internal_error')

    async def test_systemic_auth_failure_aborts(self):
        adapter = make_adapter()
        with patch.object(adapter, 'apply_user_change',
                          side_effect=AdapterAuthenticationError('revoked', status_code=401)):
            with self.assertRaises(AdapterAuthenticationError):
                await adapter.execute_sync([make_user('alice@example.com')], [])

    async def test_second_run_is_a_no_op(self):
        adapter = make_adapter()
        users = [make_user('alice@example.com'), make_user('bob@example.com')]
        groups = [make_group('developers', 'Developers')]

        await adapter.execute_sync(users, groups)
        applied = list(adapter.applied)
        result = await adapter.execute_sync(users, groups)

        self.assertEqual(adapter.applied, applied)
        self.assertEqual(result.users.created, 0)
        self.assertEqual(result.users.updated, 0)
        self.assertEqual(result.groups.created, 0)

    async def test_delete_takes_precedence_over_disable(self):
        config = make_tool_config(user_delete_enabled=True, user_disable_enabled=True)
        adapter = make_adapter(config, remote_users=[{'username': 'carol', 'name': 'Carol'}])

        result = await adapter.execute_sync([make_user('alice@example.com')], [])

        self.assertEqual(result.users.deleted, 1)
        self.assertEqual(result.users.disabled, 0)
        self.assertIn(('user', 'delete', 'carol'), adapter.applied)

    async def test_disable_skips_already_disabled(self):
        config = make_tool_config(user_disable_enabled=True)
        adapter = make_adapter(config, remote_users=[
            {'username': 'carol', 'name': 'Carol'},
            {'username': 'dave', 'name': 'Dave', 'disabled': True},
        ])

        result = await adapter.execute_sync([], [])

        self.assertEqual(result.users.disabled, 1)
        self.assertEqual(adapter.applied, [('user', 'disable', 'carol')])

    async def test_orphans_left_alone_by_default(self):
        adapter = make_adapter(remote_users=[{'username': 'carol', 'name': 'Carol'}])
        result = await adapter.execute_sync([], [])
        self.assertEqual(adapter.applied, [])
        self.assertEqual(result.users.processed, 0)

    async def test_cancelled_token_stops_execution(self):
        adapter = make_adapter()
        token = CancellationToken()
        token.cancel('shutdown')
        with self.assertRaises(OperationCancelled):
            await adapter.execute_sync([make_user('alice@example.com')], [], cancel_token=token)
        self.assertEqual(adapter.applied, [])


class TestConflictPolicies(unittest.IsolatedAsyncioTestCase):

    remote = [{'username': 'alice', 'name': 'Old Name', 'locked': True}]

    async def _run(self, **config_overrides):
        adapter = make_adapter(make_tool_config(**config_overrides), remote_users=self.remote)
        result = await adapter.execute_sync([make_user('alice@example.com')], [])
        return adapter, result

    async def test_ldap_wins_applies_change(self):
        adapter, result = await self._run(conflict_resolution='ldap_wins')
        self.assertEqual(result.users.updated, 1)
        self.assertEqual(len(result.conflicts), 1)
        self.assertEqual(result.conflicts[0]['identifier'], 'alice')
        self.assertEqual(adapter.get_sync_stats()['conflicts_resolved'], 1)

    async def test_manual_records_failure(self):
        adapter, result = await self._run(conflict_resolution='manual')
        self.assertEqual(adapter.applied, [])
        self.assertEqual(result.users.failed, 1)
        self.assertEqual(result.errors[0]['code'], 'conflict_detected')

    async def test_block_on_conflict_records_failure(self):
        adapter, result = await self._run(block_on_conflict=True)
        self.assertEqual(adapter.applied, [])
        self.assertEqual(result.errors[0]['code'], 'conflict_detected')

    async def test_tool_wins_skips_with_warning(self):
        adapter, result = await self._run(conflict_resolution='tool_wins')
        self.assertEqual(adapter.applied, [])
        self.assertEqual(result.users.updated, 0)
        self.assertEqual(result.users.failed, 0)
        self.assertTrue(any('tool state kept' in warning for warning in result.warnings))

    async def test_detection_disabled_applies_without_conflicts(self):
        adapter = make_adapter(make_tool_config(conflict_resolution='manual'), remote_users=self.remote,
                               settings=fast_settings(conflict_detection_enabled=False))
        result = await adapter.execute_sync([make_user('alice@example.com')], [])
        self.assertEqual(result.conflicts, [])
        self.assertEqual(result.users.updated, 1)


if __name__ == '__main__':
    unittest.main()
