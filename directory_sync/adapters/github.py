"""
GitHub adapter.

Synchronizes directory users with organization membership (invitations,
organization role, mapped team memberships) and directory groups with
organization teams.
"""

import logging
from typing import Dict, List, Any, Optional

from directory_sync.adapters.base import ToolAdapter, email_local_part, slugify
from directory_sync.adapters.registry import register_adapter
from directory_sync.errors import AdapterError, AdapterInitializationError
from directory_sync.models import ChangeAction, DirectoryGroup, DirectoryUser, FieldChange, StagedChange

logger = logging.getLogger(__name__)

ORG_ROLES = ('member', 'admin')
TEAM_ROLES = ('member', 'maintainer')


@register_adapter('github')
class GitHubAdapter(ToolAdapter):
    """Organization members and teams through the GitHub REST API."""

    default_base_url = 'https://api.github.com'
    supported_operations = ('create', 'update', 'delete')

    def __init__(self, tool_config, credential_provider, role_mappings=None, settings=None, rate_limiter=None):
        super().__init__(tool_config, credential_provider, role_mappings, settings, rate_limiter)
        self.organization = tool_config.settings.get('organization')
        if not self.organization:
            raise AdapterInitializationError(f"GitHub organization not configured for {self.name}")
        self.default_role = tool_config.settings.get('default_role', 'member')
        self._teams_by_slug: Dict[str, Dict[str, Any]] = {}

    def build_auth_headers(self, credentials):
        headers = super().build_auth_headers(credentials)
        headers['X-GitHub-Api-Version'] = '2022-11-28'
        return headers

    async def validate_connection(self):
        org = await self.call_api('GET', f"orgs/{self.organization}")
        logger.info(f"Verified access to GitHub organization: {org.get('login', self.organization)}")

    # Role mapping

    def _matching_mappings(self, user: DirectoryUser, mapping_type: str):
        groups = {name.lower() for name in user.groups}
        return [m for m in self.role_mappings
                if m.mapping_type == mapping_type and m.ldap_group.lower() in groups]

    def map_user_role(self, user: DirectoryUser) -> str:
        roles = {m.role for m in self._matching_mappings(user, 'org_role') if m.role in ORG_ROLES}
        if 'admin' in roles:
            return 'admin'
        if roles:
            return 'member'
        return self.default_role

    def map_user_teams(self, user: DirectoryUser) -> List[Dict[str, str]]:
        teams = {}
        for mapping in self._matching_mappings(user, 'team'):
            slug = slugify(mapping.team or mapping.ldap_group)
            role = mapping.role if mapping.role in TEAM_ROLES else 'member'
            # maintainer outranks member when several groups map to one team
            if teams.get(slug) != 'maintainer':
                teams[slug] = role
        return [{'team': slug, 'role': teams[slug]} for slug in sorted(teams)]

    def _mapped_team_slugs(self) -> List[str]:
        return sorted({slugify(m.team or m.ldap_group) for m in self.role_mappings if m.mapping_type == 'team'})

    # Identifiers and mapping

    def identify_user(self, user: DirectoryUser) -> Optional[str]:
        return email_local_part(user.email)

    def identify_group(self, group: DirectoryGroup) -> Optional[str]:
        return slugify(group.name or group.cn)

    def remote_user_key(self, remote_user):
        login = remote_user.get('login')
        return login.lower() if login else None

    def remote_group_key(self, remote_group):
        return remote_group.get('slug')

    def map_directory_user_to_tool(self, user: DirectoryUser) -> Dict[str, Any]:
        return {
            'username': self.identify_user(user),
            'email': user.email,
            'name': user.display_name,
            'role': self.map_user_role(user),
            'teams': self.map_user_teams(user),
        }

    def map_directory_group_to_tool(self, group: DirectoryGroup) -> Dict[str, Any]:
        name = group.name or group.cn
        return {
            'name': name,
            'slug': self.identify_group(group),
            'description': group.description or f"Team synced from directory group: {name}",
            'privacy': 'closed',
        }

    # Remote state

    async def _load_teams(self) -> List[Dict[str, Any]]:
        teams = await self.call_api_paginated(f"orgs/{self.organization}/teams")
        self._teams_by_slug = {team['slug']: team for team in teams}
        return teams

    async def fetch_remote_users(self) -> List[Dict[str, Any]]:
        org = self.organization
        members = await self.call_api_paginated(f"orgs/{org}/members")
        admins = {m['login'].lower() for m in await self.call_api_paginated(f"orgs/{org}/members", {'role': 'admin'})}

        await self._load_teams()
        team_memberships: Dict[str, List[str]] = {}
        for slug in self._mapped_team_slugs():
            if slug not in self._teams_by_slug:
                continue
            for member in await self.call_api_paginated(f"orgs/{org}/teams/{slug}/members"):
                team_memberships.setdefault(member['login'].lower(), []).append(slug)

        users = []
        for member in members:
            login = member['login'].lower()
            users.append({
                'id': member.get('id'),
                'login': member['login'],
                'organization_role': 'admin' if login in admins else 'member',
                'teams': sorted(team_memberships.get(login, [])),
                'pending': False,
            })

        known = {user['login'].lower() for user in users}
        for invitation in await self.call_api_paginated(f"orgs/{org}/invitations"):
            login = invitation.get('login') or email_local_part(invitation.get('email'))
            if not login or login.lower() in known:
                continue
            known.add(login.lower())
            users.append({
                'id': invitation.get('id'),
                'login': login,
                'email': invitation.get('email'),
                'organization_role': 'admin' if invitation.get('role') == 'admin' else 'member',
                'teams': [],
                'pending': True,
                'invitation_id': invitation.get('id'),
            })

        logger.info(f"Fetched {len(users)} GitHub members and invitations for {org}")
        return users

    async def fetch_remote_groups(self) -> List[Dict[str, Any]]:
        teams = await self._load_teams()
        return [{
            'id': team.get('id'),
            'name': team.get('name'),
            'slug': team.get('slug'),
            'description': team.get('description'),
            'privacy': team.get('privacy'),
        } for team in teams]

    # Diffs and conflicts

    def detect_user_diff(self, user: DirectoryUser, remote_user: Dict[str, Any]) -> List[FieldChange]:
        if remote_user.get('pending'):
            # Invitations cannot be edited until accepted
            return []
        mapped = self.map_directory_user_to_tool(user)
        changes = []

        current_role = remote_user.get('organization_role', 'member')
        if mapped['role'] != current_role:
            changes.append(FieldChange('organization_role', current_role, mapped['role']))

        current_teams = sorted(remote_user.get('teams') or [])
        desired_teams = [team['team'] for team in mapped['teams']]
        if current_teams != desired_teams:
            changes.append(FieldChange('team_memberships', current_teams, desired_teams))
        return changes

    def detect_group_diff(self, group: DirectoryGroup, remote_group: Dict[str, Any]) -> List[FieldChange]:
        mapped = self.map_directory_group_to_tool(group)
        if mapped['description'] != remote_group.get('description'):
            return [FieldChange('description', remote_group.get('description'), mapped['description'])]
        return []

    def detect_user_conflicts(self, user, remote_user):
        if not remote_user or remote_user.get('pending'):
            return []
        if remote_user.get('organization_role') == 'admin' and self.map_user_role(user) != 'admin':
            return [{
                'field': 'organization_role',
                'tool_value': 'admin',
                'directory_value': self.map_user_role(user),
                'reason': 'Organization admin not granted admin by any directory group',
            }]
        return []

    def assigned_role(self, change: StagedChange) -> Optional[str]:
        if change.action == ChangeAction.CREATE:
            return change.mapped.get('role')
        for field_change in change.changes:
            if field_change.field == 'organization_role':
                return field_change.new_value
        return None

    # Mutations

    async def apply_user_change(self, change: StagedChange) -> None:
        org = self.organization
        login = change.identifier

        if change.action == ChangeAction.CREATE:
            mapped = change.mapped
            body = {
                'email': mapped['email'],
                'role': 'admin' if mapped['role'] == 'admin' else 'direct_member',
            }
            team_ids = []
            for team in mapped['teams']:
                existing = self._teams_by_slug.get(team['team'])
                if existing is None:
                    logger.warning(f"Team {team['team']} does not exist in {org}; not added to invitation for {login}")
                else:
                    team_ids.append(existing['id'])
            if team_ids:
                body['team_ids'] = team_ids
            await self.call_api('POST', f"orgs/{org}/invitations", body)
            logger.info(f"Invited {mapped['email']} to GitHub organization {org} as {mapped['role']}")

        elif change.action == ChangeAction.UPDATE:
            team_roles = {team['team']: team['role'] for team in change.mapped.get('teams', [])}
            for field_change in change.changes:
                if field_change.field == 'organization_role':
                    await self.call_api('PUT', f"orgs/{org}/memberships/{login}", {'role': field_change.new_value})
                    logger.info(f"Set {login} organization role to {field_change.new_value} in {org}")
                elif field_change.field == 'team_memberships':
                    current = set(field_change.current_value)
                    desired = set(field_change.new_value)
                    for slug in sorted(desired - current):
                        await self.call_api('PUT', f"orgs/{org}/teams/{slug}/memberships/{login}",
                                            {'role': team_roles.get(slug, 'member')})
                        logger.info(f"Added {login} to team {slug}")
                    for slug in sorted(current - desired):
                        await self.call_api('DELETE', f"orgs/{org}/teams/{slug}/memberships/{login}")
                        logger.info(f"Removed {login} from team {slug}")

        elif change.action == ChangeAction.DELETE:
            remote = change.remote or {}
            if remote.get('pending'):
                await self.call_api('DELETE', f"orgs/{org}/invitations/{remote['invitation_id']}")
                logger.info(f"Cancelled pending invitation for {login} in {org}")
            else:
                await self.call_api('DELETE', f"orgs/{org}/members/{login}")
                logger.info(f"Removed {login} from GitHub organization {org}")

        else:
            raise AdapterError(f"GitHub does not support {change.action.value} for users")

    async def apply_group_change(self, change: StagedChange) -> None:
        org = self.organization
        slug = change.identifier

        if change.action == ChangeAction.CREATE:
            mapped = change.mapped
            team = await self.call_api('POST', f"orgs/{org}/teams", {
                'name': mapped['name'],
                'description': mapped['description'],
                'privacy': mapped['privacy'],
            })
            if team:
                self._teams_by_slug[team.get('slug', slug)] = team
            logger.info(f"Created GitHub team {slug} in {org}")

        elif change.action == ChangeAction.UPDATE:
            body = {fc.field: fc.new_value for fc in change.changes}
            await self.call_api('PATCH', f"orgs/{org}/teams/{slug}", body)
            logger.info(f"Updated GitHub team {slug} in {org}: {sorted(body)}")

        elif change.action == ChangeAction.DELETE:
            await self.call_api('DELETE', f"orgs/{org}/teams/{slug}")
            self._teams_by_slug.pop(slug, None)
            logger.info(f"Deleted GitHub team {slug} from {org}")

        else:
            raise AdapterError(f"GitHub does not support {change.action.value} for teams")
