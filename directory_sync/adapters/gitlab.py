"""
GitLab adapter.

Directory users map to GitLab instance users (requires an administrator
token) and directory groups map to GitLab groups, optionally nested under
a configured parent group.
"""

import logging
from typing import Dict, List, Any, Optional

from directory_sync.adapters.base import ToolAdapter, email_local_part, slugify
from directory_sync.adapters.registry import register_adapter
from directory_sync.errors import AdapterError, AdapterInitializationError
from directory_sync.models import ChangeAction, DirectoryGroup, DirectoryUser, FieldChange, StagedChange

logger = logging.getLogger(__name__)


@register_adapter('gitlab')
class GitLabAdapter(ToolAdapter):
    """Users and groups through the GitLab REST API v4."""

    default_base_url = 'https://gitlab.com/api/v4'

    def __init__(self, tool_config, credential_provider, role_mappings=None, settings=None, rate_limiter=None):
        super().__init__(tool_config, credential_provider, role_mappings, settings, rate_limiter)
        self.parent_group_id = tool_config.settings.get('parent_group_id')
        self.group_visibility = tool_config.settings.get('group_visibility', 'private')

    def build_auth_headers(self, credentials):
        if credentials.get('token_type') == 'oauth':
            return super().build_auth_headers(credentials)
        if not credentials.get('token'):
            raise AdapterInitializationError(f"GitLab token required for {self.name}")
        return {'PRIVATE-TOKEN': credentials['token']}

    async def validate_connection(self):
        current = await self.call_api('GET', 'user')
        if not current.get('is_admin', False):
            logger.warning(f"GitLab token for {self.name} does not belong to an administrator; "
                           f"user management calls may be rejected")
        if self.parent_group_id:
            await self.call_api('GET', f"groups/{self.parent_group_id}")
        logger.info(f"Connected to GitLab as {current.get('username')}")

    def is_admin_user(self, user: DirectoryUser) -> bool:
        groups = {name.lower() for name in user.groups}
        return any(m.mapping_type == 'org_role' and m.role == 'admin' and m.ldap_group.lower() in groups
                   for m in self.role_mappings)

    # Identifiers and mapping

    def identify_user(self, user: DirectoryUser) -> Optional[str]:
        return email_local_part(user.email)

    def identify_group(self, group: DirectoryGroup) -> Optional[str]:
        return slugify(group.name or group.cn)

    def remote_user_key(self, remote_user):
        username = remote_user.get('username')
        return username.lower() if username else None

    def remote_group_key(self, remote_group):
        path = remote_group.get('path')
        return path.lower() if path else None

    def map_directory_user_to_tool(self, user: DirectoryUser) -> Dict[str, Any]:
        return {
            'username': self.identify_user(user),
            'email': user.email,
            'name': user.display_name or user.cn or self.identify_user(user),
            'admin': self.is_admin_user(user),
        }

    def map_directory_group_to_tool(self, group: DirectoryGroup) -> Dict[str, Any]:
        name = group.name or group.cn
        mapped = {
            'name': name,
            'path': self.identify_group(group),
            'description': group.description or f"Group synced from directory group: {name}",
            'visibility': self.group_visibility,
        }
        if self.parent_group_id:
            mapped['parent_id'] = self.parent_group_id
        return mapped

    # Remote state

    async def fetch_remote_users(self) -> List[Dict[str, Any]]:
        users = await self.call_api_paginated('users', {'exclude_internal': 'true'})
        logger.info(f"Fetched {len(users)} GitLab users for {self.name}")
        return [{
            'id': user.get('id'),
            'username': user.get('username'),
            'email': user.get('email'),
            'name': user.get('name'),
            'state': user.get('state'),
            'is_admin': user.get('is_admin'),
            'bot': user.get('bot', False),
        } for user in users]

    async def fetch_remote_groups(self) -> List[Dict[str, Any]]:
        if self.parent_group_id:
            groups = await self.call_api_paginated(f"groups/{self.parent_group_id}/subgroups")
        else:
            groups = await self.call_api_paginated('groups', {'top_level_only': 'true'})
        return [{
            'id': group.get('id'),
            'name': group.get('name'),
            'path': group.get('path'),
            'full_path': group.get('full_path'),
            'description': group.get('description'),
        } for group in groups]

    def is_managed_user(self, remote_user):
        # Bots and the token's own administrators are never removed
        return not remote_user.get('bot') and not remote_user.get('is_admin')

    def is_user_disabled(self, remote_user):
        return remote_user.get('state') == 'blocked'

    def assigned_role(self, change: StagedChange) -> Optional[str]:
        # Only instance administrator grants and revocations count as role changes
        if change.action == ChangeAction.CREATE:
            return 'admin' if change.mapped.get('admin') else None
        for field_change in change.changes:
            if field_change.field == 'admin':
                return 'admin' if field_change.new_value else 'regular'
        return None

    # Diffs and conflicts

    def detect_user_diff(self, user: DirectoryUser, remote_user: Dict[str, Any]) -> List[FieldChange]:
        mapped = self.map_directory_user_to_tool(user)
        changes = []
        if mapped['name'] and mapped['name'] != remote_user.get('name'):
            changes.append(FieldChange('name', remote_user.get('name'), mapped['name']))
        # email is only visible to administrators
        if remote_user.get('email') and mapped['email'] and \
                mapped['email'].lower() != remote_user['email'].lower():
            changes.append(FieldChange('email', remote_user['email'], mapped['email']))
        if remote_user.get('is_admin') is not None and bool(remote_user['is_admin']) != mapped['admin']:
            changes.append(FieldChange('admin', bool(remote_user['is_admin']), mapped['admin']))
        if remote_user.get('state') == 'blocked':
            changes.append(FieldChange('state', 'blocked', 'active'))
        return changes

    def detect_group_diff(self, group: DirectoryGroup, remote_group: Dict[str, Any]) -> List[FieldChange]:
        mapped = self.map_directory_group_to_tool(group)
        changes = []
        if mapped['name'] != remote_group.get('name'):
            changes.append(FieldChange('name', remote_group.get('name'), mapped['name']))
        if mapped['description'] != remote_group.get('description'):
            changes.append(FieldChange('description', remote_group.get('description'), mapped['description']))
        return changes

    def detect_user_conflicts(self, user, remote_user):
        if not remote_user or not remote_user.get('email') or not user.email:
            return []
        if remote_user['email'].lower() != user.email.lower():
            return [{
                'field': 'email',
                'tool_value': remote_user['email'],
                'directory_value': user.email,
                'reason': 'E-mail changed in GitLab independently of the directory',
            }]
        return []

    # Mutations

    async def apply_user_change(self, change: StagedChange) -> None:
        remote = change.remote or {}

        if change.action == ChangeAction.CREATE:
            mapped = change.mapped
            await self.call_api('POST', 'users', {
                'email': mapped['email'],
                'username': mapped['username'],
                'name': mapped['name'],
                'admin': mapped['admin'],
                'reset_password': True,
                'skip_confirmation': True,
            })
            logger.info(f"Created GitLab user {mapped['username']}")

        elif change.action == ChangeAction.UPDATE:
            user_id = remote['id']
            body = {}
            for field_change in change.changes:
                if field_change.field == 'state':
                    await self.call_api('POST', f"users/{user_id}/unblock")
                    logger.info(f"Unblocked GitLab user {change.identifier}")
                else:
                    body[field_change.field] = field_change.new_value
            if body:
                if 'email' in body:
                    body['skip_reconfirmation'] = True
                await self.call_api('PUT', f"users/{user_id}", body)
                logger.info(f"Updated GitLab user {change.identifier}: {sorted(body)}")

        elif change.action == ChangeAction.DELETE:
            await self.call_api('DELETE', f"users/{remote['id']}")
            logger.info(f"Deleted GitLab user {change.identifier}")

        elif change.action == ChangeAction.DISABLE:
            await self.call_api('POST', f"users/{remote['id']}/block")
            logger.info(f"Blocked GitLab user {change.identifier}")

        else:
            raise AdapterError(f"Unsupported GitLab user action: {change.action.value}")

    async def apply_group_change(self, change: StagedChange) -> None:
        if change.action == ChangeAction.CREATE:
            await self.call_api('POST', 'groups', change.mapped)
            logger.info(f"Created GitLab group {change.identifier}")

        elif change.action == ChangeAction.UPDATE:
            body = {fc.field: fc.new_value for fc in change.changes}
            await self.call_api('PUT', f"groups/{change.remote['id']}", body)
            logger.info(f"Updated GitLab group {change.identifier}: {sorted(body)}")

        elif change.action == ChangeAction.DELETE:
            await self.call_api('DELETE', f"groups/{change.remote['id']}")
            logger.info(f"Deleted GitLab group {change.identifier}")

        else:
            raise AdapterError(f"Unsupported GitLab group action: {change.action.value}")
