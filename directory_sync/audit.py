"""
Audit trail for discovery and sync activity.

Recording is best-effort: a failure to persist or forward an event is
logged and never propagates to the operation being audited.
"""

import asyncio
import json
import logging
import secrets
import time
from http.client import HTTPConnection, HTTPException, HTTPSConnection
from typing import Dict, Any, Optional, Set
from urllib.parse import urlparse

from directory_sync.logging_setup import get_audit_logger
from directory_sync.models import Actor, AuditEvent

logger = logging.getLogger(__name__)

EVENT_CATEGORIES = {
    'sync_requested': 'sync',
    'sync_started': 'sync',
    'sync_completed': 'sync',
    'sync_failed': 'sync',
    'sync_previewed': 'sync',
    'user_synced': 'sync',
    'group_synced': 'sync',
    'users_discovered': 'discovery',
    'groups_discovered': 'discovery',
    'ldap_connection_test': 'discovery',
    'role_assigned': 'mapping',
    'conflict_detected': 'conflict',
}

EVENT_DESCRIPTIONS = {
    'sync_requested': 'Directory sync requested for {tool_slug}',
    'sync_started': 'Directory sync started for {tool_slug}',
    'sync_completed': 'Directory sync completed for {tool_slug}',
    'sync_failed': 'Directory sync failed for {tool_slug}: {error_message}',
    'sync_previewed': 'Directory sync preview generated for {tool_slug}',
    'user_synced': 'User synced to {tool_slug}: {identifier}',
    'group_synced': 'Group synced to {tool_slug}: {identifier}',
    'users_discovered': 'Users discovered from directory server {server_id}',
    'groups_discovered': 'Groups discovered from directory server {server_id}',
    'ldap_connection_test': 'Directory connection test for server {server_id}',
    'role_assigned': 'Role {role} assigned to {identifier} in {tool_slug}',
    'conflict_detected': 'Sync conflict detected in {tool_slug}: {identifier}',
}


def new_correlation_id() -> str:
    return f"dirsync-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class _DescriptionValues(dict):
    def __missing__(self, key):
        return 'unknown'


class AuditTrail:
    """
    Records audit events to the repository and the audit logger, optionally
    forwarding each event to an external audit service over HTTP.
    """

    def __init__(self, repository, forward_url: Optional[str] = None, forward_timeout: float = 5,
                 service_name: str = 'directory-sync'):
        self.repository = repository
        self.forward_url = forward_url
        self.forward_timeout = forward_timeout
        self.service_name = service_name
        self._pending: Set[asyncio.Task] = set()
        self._audit_logger = get_audit_logger()

    @staticmethod
    def category_for(event_type: str) -> str:
        return EVENT_CATEGORIES.get(event_type, 'general')

    @staticmethod
    def describe(event_type: str, values: Dict[str, Any]) -> str:
        template = EVENT_DESCRIPTIONS.get(event_type)
        if template is None:
            return event_type.replace('_', ' ')
        return template.format_map(_DescriptionValues({k: v for k, v in values.items() if v is not None}))

    async def log_event(self, event_type: str, actor: Optional[Actor] = None,
                        server_id: Optional[str] = None, config_id: Optional[str] = None,
                        job_id: Optional[str] = None, tool_slug: Optional[str] = None,
                        success: bool = True, error_code: Optional[str] = None,
                        error_message: Optional[str] = None, duration_ms: Optional[int] = None,
                        correlation_id: Optional[str] = None,
                        data: Optional[Dict[str, Any]] = None) -> Optional[AuditEvent]:
        """
        Record one audit event.

        Returns:
            The recorded event, or None if it could not be built
        """
        try:
            data = dict(data or {})
            description_values = dict(data)
            description_values.update(
                server_id=server_id, config_id=config_id, tool_slug=tool_slug, error_message=error_message
            )
            event = AuditEvent(
                event_type=event_type,
                category=self.category_for(event_type),
                description=self.describe(event_type, description_values),
                success=success,
                actor_id=actor.id if actor else 'system',
                actor_email=actor.email if actor else None,
                actor_roles=tuple(actor.roles) if actor else (),
                server_id=server_id,
                config_id=config_id,
                job_id=job_id,
                tool_slug=tool_slug,
                error_code=error_code,
                error_message=error_message,
                duration_ms=duration_ms,
                correlation_id=correlation_id or new_correlation_id(),
                data=data,
            )
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to build audit event {event_type}: {e}")
            return None

        level = logging.INFO if success else logging.WARNING
        self._audit_logger.log(level, f"{event.category}/{event.event_type} actor={event.actor_id} "
                                      f"job={job_id} tool={tool_slug} server={server_id} "
                                      f"success={success} correlation_id={event.correlation_id}")

        try:
            await self.repository.append_audit_event(event)
        except Exception as e:
            logger.error(f"Failed to persist audit event {event_type}: {e}")

        if self.forward_url:
            task = asyncio.get_running_loop().create_task(self._forward(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return event

    async def _forward(self, event: AuditEvent):
        try:
            await asyncio.to_thread(self._post_event, event.to_dict())
        except (HTTPException, OSError, ValueError) as e:
            logger.warning(f"Failed to forward audit event {event.id} to {self.forward_url}: {e}")

    def _post_event(self, payload: Dict[str, Any]) -> None:
        """POST one event to the audit service. Runs in a worker thread."""
        parsed = urlparse(self.forward_url)
        if parsed.scheme == 'https':
            connection = HTTPSConnection(parsed.netloc, timeout=self.forward_timeout)
        else:
            connection = HTTPConnection(parsed.netloc, timeout=self.forward_timeout)
        try:
            body = json.dumps({'service': self.service_name, **payload}, default=str)
            connection.request('POST', parsed.path or '/', body, {
                'Content-Type': 'application/json',
                'Accept': 'application/json',
            })
            response = connection.getresponse()
            response.read()
            if response.status >= 400:
                raise ValueError(f"audit service responded HTTP {response.status}: {response.reason}")
        finally:
            connection.close()

    async def list_events(self, **filters):
        return await self.repository.list_audit_events(**filters)

    async def close(self):
        """Wait for in-flight forwards to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
