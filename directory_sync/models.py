"""
Data model for the directory sync engine.

Directory records (servers, users, groups), tool sync configuration, sync
jobs, audit events, and the change sets / results exchanged with tool
adapters.
"""

import copy
import uuid
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Any, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncScope(str, Enum):
    USERS = 'users'
    GROUPS = 'groups'
    BOTH = 'both'

    @property
    def includes_users(self) -> bool:
        return self in (SyncScope.USERS, SyncScope.BOTH)

    @property
    def includes_groups(self) -> bool:
        return self in (SyncScope.GROUPS, SyncScope.BOTH)


class JobType(str, Enum):
    FULL = 'full'
    INCREMENTAL = 'incremental'


class JobStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


class TriggerSource(str, Enum):
    MANUAL = 'manual'
    SCHEDULE = 'schedule'


class ChangeAction(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'
    DISABLE = 'disable'


# Allowed forward transitions; anything else is a programming error
JOB_TRANSITIONS = {
    JobStatus.PENDING: (JobStatus.RUNNING, JobStatus.FAILED),
    JobStatus.RUNNING: (JobStatus.COMPLETED, JobStatus.FAILED),
    JobStatus.COMPLETED: (),
    JobStatus.FAILED: (),
}

DEFAULT_ATTRIBUTE_ALIASES = {
    'user_id': 'uid',
    'user_email': 'mail',
    'user_name': 'cn',
    'user_first_name': 'givenName',
    'user_last_name': 'sn',
    'user_member_of': 'memberOf',
    'group_id': 'cn',
    'group_name': 'cn',
    'group_description': 'description',
    'group_member': 'member',
}


@dataclass(frozen=True)
class Actor:
    """An already-authenticated caller, as handed over by the transport layer."""

    id: str
    email: Optional[str] = None
    roles: Tuple[str, ...] = ()


SYSTEM_ACTOR = Actor(id='system', email=None, roles=('system',))


@dataclass
class DirectoryServer:
    id: str
    name: str
    host: str
    base_dn: str
    port: Optional[int] = None
    use_ssl: bool = False
    start_tls: bool = False
    verify_ssl: bool = True
    ca_cert_file: Optional[str] = None
    bind_dn: Optional[str] = None
    bind_password_env: Optional[str] = None
    user_search_base: Optional[str] = None
    group_search_base: Optional[str] = None
    user_object_class: str = 'person'
    group_object_class: str = 'group'
    user_search_filter: Optional[str] = None
    group_search_filter: Optional[str] = None
    attribute_aliases: Dict[str, str] = field(default_factory=dict)
    last_test_at: Optional[datetime] = None
    last_test_status: Optional[str] = None
    last_test_error: Optional[str] = None

    @property
    def effective_port(self) -> int:
        if self.port:
            return self.port
        return 636 if self.use_ssl else 389

    @property
    def server_url(self) -> str:
        scheme = 'ldaps' if self.use_ssl else 'ldap'
        return f"{scheme}://{self.host}:{self.effective_port}"

    def alias(self, name: str) -> str:
        """Directory attribute name for a logical attribute."""
        return self.attribute_aliases.get(name) or DEFAULT_ATTRIBUTE_ALIASES[name]


@dataclass
class DirectoryUser:
    server_id: str
    dn: str
    uid: Optional[str] = None
    cn: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    object_classes: List[str] = field(default_factory=list)
    groups: List[str] = field(default_factory=list)
    group_dns: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DirectoryGroup:
    server_id: str
    dn: str
    cn: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    object_classes: List[str] = field(default_factory=list)
    member_dns: List[str] = field(default_factory=list)
    parent_dn: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def member_count(self) -> int:
        return len(self.member_dns)


@dataclass(frozen=True)
class RoleMapping:
    """Maps a directory group to a tool role or team."""

    ldap_group: str
    mapping_type: str = 'org_role'
    role: Optional[str] = None
    team: Optional[str] = None


@dataclass
class ToolSyncConfig:
    id: str
    tool_slug: str
    server_id: str
    name: Optional[str] = None
    base_url: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    credentials_env: Optional[str] = None
    rate_limit_per_minute: int = 60
    timeout_seconds: int = 30
    verify_ssl: bool = True
    ca_cert_file: Optional[str] = None
    sync_users: bool = True
    sync_groups: bool = True
    user_create_enabled: bool = True
    user_update_enabled: bool = True
    user_delete_enabled: bool = False
    user_disable_enabled: bool = False
    group_create_enabled: bool = True
    group_update_enabled: bool = True
    group_delete_enabled: bool = False
    conflict_resolution: str = 'ldap_wins'
    block_on_conflict: bool = False
    schedule_cron: Optional[str] = None
    auto_sync_enabled: bool = False
    role_mappings: List[RoleMapping] = field(default_factory=list)
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None

    @property
    def schedule_key(self) -> str:
        return f"{self.tool_slug}-{self.id}"

    def scoped(self, scope: SyncScope) -> 'ToolSyncConfig':
        """Copy of this config limited to the entity types in ``scope``."""
        return replace(
            self,
            sync_users=self.sync_users and scope.includes_users,
            sync_groups=self.sync_groups and scope.includes_groups,
        )


@dataclass
class FieldChange:
    field: str
    current_value: Any
    new_value: Any


@dataclass
class StagedChange:
    """One planned mutation against a tool."""

    entity_type: str
    action: ChangeAction
    identifier: str
    mapped: Dict[str, Any] = field(default_factory=dict)
    remote: Optional[Dict[str, Any]] = None
    changes: List[FieldChange] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['action'] = self.action.value
        return data


@dataclass
class EntityChangeSet:
    to_create: List[StagedChange] = field(default_factory=list)
    to_update: List[StagedChange] = field(default_factory=list)
    to_delete: List[StagedChange] = field(default_factory=list)
    to_disable: List[StagedChange] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)

    def changes(self) -> List[StagedChange]:
        return self.to_create + self.to_update + self.to_delete + self.to_disable

    def stage(self, change: StagedChange):
        bucket = {
            ChangeAction.CREATE: self.to_create,
            ChangeAction.UPDATE: self.to_update,
            ChangeAction.DELETE: self.to_delete,
            ChangeAction.DISABLE: self.to_disable,
        }[change.action]
        bucket.append(change)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'to_create': [c.to_dict() for c in self.to_create],
            'to_update': [c.to_dict() for c in self.to_update],
            'to_delete': [c.to_dict() for c in self.to_delete],
            'to_disable': [c.to_dict() for c in self.to_disable],
            'conflicts': copy.deepcopy(self.conflicts),
        }


@dataclass
class ChangeSet:
    """Result of a preview: every change an execution would attempt."""

    tool: str
    users: EntityChangeSet = field(default_factory=EntityChangeSet)
    groups: EntityChangeSet = field(default_factory=EntityChangeSet)
    warnings: List[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def estimated_changes(self) -> int:
        return len(self.users.changes()) + len(self.groups.changes())

    @property
    def conflicts(self) -> List[Dict[str, Any]]:
        return self.users.conflicts + self.groups.conflicts

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tool': self.tool,
            'users': self.users.to_dict(),
            'groups': self.groups.to_dict(),
            'warnings': list(self.warnings),
            'estimated_changes': self.estimated_changes,
            'generated_at': self.generated_at.isoformat(),
        }


@dataclass
class EntityCounters:
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    disabled: int = 0
    failed: int = 0

    def record(self, action: ChangeAction):
        if action == ChangeAction.CREATE:
            self.created += 1
        elif action == ChangeAction.UPDATE:
            self.updated += 1
        elif action == ChangeAction.DELETE:
            self.deleted += 1
        elif action == ChangeAction.DISABLE:
            self.disabled += 1

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class SyncResult:
    tool: str
    is_preview: bool
    users: EntityCounters = field(default_factory=EntityCounters)
    groups: EntityCounters = field(default_factory=EntityCounters)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    applied: List[Dict[str, Any]] = field(default_factory=list)
    change_set: Optional[ChangeSet] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors

    def counters_for(self, entity_type: str) -> EntityCounters:
        return self.users if entity_type == 'user' else self.groups


@dataclass
class SyncJob:
    config_id: str
    tool_slug: str
    scope: SyncScope = SyncScope.BOTH
    job_type: JobType = JobType.INCREMENTAL
    is_preview: bool = False
    status: JobStatus = JobStatus.PENDING
    triggered_by: TriggerSource = TriggerSource.MANUAL
    triggered_by_user: Optional[str] = None
    correlation_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    users: Dict[str, int] = field(default_factory=lambda: EntityCounters().to_dict())
    groups: Dict[str, int] = field(default_factory=lambda: EntityCounters().to_dict())
    errors: List[Dict[str, Any]] = field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    change_set: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('scope', 'job_type', 'status', 'triggered_by'):
            data[key] = getattr(self, key).value
        for key in ('created_at', 'started_at', 'completed_at'):
            value = getattr(self, key)
            data[key] = value.isoformat() if value else None
        return data


@dataclass
class AuditEvent:
    event_type: str
    category: str
    description: str
    success: bool = True
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    actor_roles: Tuple[str, ...] = ()
    server_id: Optional[str] = None
    config_id: Optional[str] = None
    job_id: Optional[str] = None
    tool_slug: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    correlation_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['actor_roles'] = list(self.actor_roles)
        data['created_at'] = self.created_at.isoformat()
        return data
