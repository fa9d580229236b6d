"""
LDAP client for connecting to and querying directory servers.

``DirectoryClient`` owns exactly one server connection and moves through
``DISCONNECTED -> CONNECTING -> BOUND <-> SEARCHING -> DISCONNECTED``.
ldap3 calls are blocking; they run in worker threads and every call is raced
against a timeout and an optional cancellation token.
"""

import asyncio
import logging
import math
import ssl
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Any, Optional

from ldap3 import Server, Connection, Tls, ALL, BASE, LEVEL, SUBTREE
from ldap3.core.exceptions import (
    LDAPException, LDAPCommunicationError, LDAPBindError, LDAPInvalidDnError,
)
from ldap3.utils.ciDict import CaseInsensitiveDict
from ldap3.utils.dn import parse_dn

from directory_sync.cancellation import CancellationToken
from directory_sync.config import DirectorySettings
from directory_sync.errors import (
    SyncEngineError, DirectoryConnectionError, SearchError, SearchTimeout, ValidationError,
    OperationCancelled,
)
from directory_sync.models import DirectoryServer, DirectoryUser, DirectoryGroup
from directory_sync.retry import retry_async, MaxRetriesExceeded, create_retry_callback

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
RESULT_SUCCESS = 0
RESULT_TIME_LIMIT_EXCEEDED = 3
RESULT_SIZE_LIMIT_EXCEEDED = 4

SEARCH_SCOPES = {
    'base': BASE,
    'one': LEVEL,
    'sub': SUBTREE,
}


class ClientState(str, Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    BOUND = 'bound'
    SEARCHING = 'searching'


@dataclass
class DiscoveryOptions:
    """Caller-supplied narrowing of a discovery search."""

    search_base: Optional[str] = None
    additional_filter: Optional[str] = None
    max_results: Optional[int] = None

    def validate(self, max_entries: int):
        if self.max_results is not None:
            if not isinstance(self.max_results, int) or not 1 <= self.max_results <= max_entries:
                raise ValidationError(f"max_results must be between 1 and {max_entries}")
        if self.additional_filter and not is_wrapped_filter(self.additional_filter):
            raise ValidationError(f"Invalid LDAP filter: {self.additional_filter}")


def is_wrapped_filter(search_filter: str) -> bool:
    """True if ``search_filter`` is a single parenthesised, balanced filter."""
    text = search_filter.strip()
    if not (text.startswith('(') and text.endswith(')')):
        return False
    depth = 0
    for index, char in enumerate(text):
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
            if depth < 0:
                return False
            if depth == 0 and index != len(text) - 1:
                return False
    return depth == 0


def build_search_filter(object_class: str, server_filter: Optional[str] = None,
                        additional_filter: Optional[str] = None) -> str:
    """
    Compose a discovery filter.

    ``(&(objectClass=<class>)<server filter>)`` further conjoined with the
    caller's additional filter when one is given.
    """
    search_filter = f"(&(objectClass={object_class}){server_filter or ''})"
    if additional_filter:
        search_filter = f"(&{search_filter}{additional_filter})"
    return search_filter


def extract_group_name(group_dn: str) -> str:
    """Leading CN value of a group DN, or the DN itself when it has none."""
    try:
        components = parse_dn(group_dn)
    except LDAPInvalidDnError:
        return group_dn
    if components and components[0][0].lower() == 'cn':
        return components[0][1]
    return group_dn


def parent_dn(dn: str) -> Optional[str]:
    """DN with its first RDN removed."""
    try:
        components = parse_dn(dn)
    except LDAPInvalidDnError:
        return None
    if len(components) < 2:
        return None
    return ','.join(f"{attr}={value}" for attr, value, _ in components[1:])


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _first(value: Any) -> Any:
    values = _as_list(value)
    return values[0] if values else None


class DirectoryClient:
    """
    Async client for a single directory server.

    Supports simple binds (or anonymous), LDAPS and StartTLS, paged searches,
    and automatic reconnect after an unexpected close.
    """

    def __init__(self, server: DirectoryServer, settings: Optional[DirectorySettings] = None,
                 bind_password: Optional[str] = None):
        """
        Initialize the client.

        Args:
            server: Directory server record
            settings: Timeouts, reconnect policy and paging limits
            bind_password: Password for ``server.bind_dn``; None binds anonymously
        """
        self.server = server
        self.settings = settings or DirectorySettings()
        self._bind_password = bind_password

        self._connection = None
        self._state = ClientState.DISCONNECTED
        self._connect_lock = asyncio.Lock()
        self._operation_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._reconnect_exhausted = False
        self._last_error: Optional[BaseException] = None

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_bound(self) -> bool:
        return self._state in (ClientState.BOUND, ClientState.SEARCHING)

    # Connection lifecycle

    async def connect(self, cancel_token: Optional[CancellationToken] = None) -> None:
        """
        Open and bind the connection. A no-op when already bound.

        Raises:
            DirectoryConnectionError: If every attempt allowed by the reconnect policy fails
        """
        async with self._connect_lock:
            if self.is_bound:
                return

            self._reconnect_exhausted = False
            max_attempts = 1
            if self.settings.reconnect_enabled:
                max_attempts += self.settings.max_reconnect_attempts

            try:
                await retry_async(
                    self._open_and_bind, cancel_token,
                    max_attempts=max_attempts,
                    delay=self.settings.reconnect_interval,
                    exceptions=(DirectoryConnectionError,),
                    on_retry=create_retry_callback(f"Connection to {self.server.server_url}"),
                )
            except MaxRetriesExceeded as e:
                self._last_error = e.last_exception
                raise DirectoryConnectionError(
                    f"Failed to connect to {self.server.server_url} after {e.attempts} attempts: "
                    f"{e.last_exception}",
                    cause=e.last_exception,
                )

    async def _open_and_bind(self, cancel_token: Optional[CancellationToken]) -> None:
        self._state = ClientState.CONNECTING
        try:
            connection = await self._run_blocking(
                self._open_blocking,
                timeout=self.settings.connection_timeout,
                cancel_token=cancel_token,
                on_abandon=self._release_late_connection,
            )
        except asyncio.TimeoutError:
            self._state = ClientState.DISCONNECTED
            raise DirectoryConnectionError(
                f"Timed out after {self.settings.connection_timeout}s connecting to {self.server.server_url}"
            )
        except BaseException:
            self._state = ClientState.DISCONNECTED
            raise

        self._connection = connection
        self._state = ClientState.BOUND
        self._reconnect_attempts = 0
        self._last_error = None
        logger.info(f"Successfully connected and bound to LDAP server {self.server.server_url}")

    def _open_blocking(self) -> Connection:
        """Open, optionally StartTLS, and bind. Runs in a worker thread."""
        try:
            ldap_server = Server(
                self.server.host,
                port=self.server.effective_port,
                use_ssl=self.server.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.settings.connection_timeout,
            )
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server: {e}", cause=e)

        connection = Connection(
            ldap_server,
            user=self.server.bind_dn,
            password=self._bind_password,
            auto_bind=False,
            check_names=False,
            receive_timeout=self.settings.connection_timeout,
        )
        try:
            if not connection.open():
                raise DirectoryConnectionError(f"Failed to open connection: {connection.result}")

            if self.server.start_tls and not self.server.use_ssl:
                if not connection.start_tls():
                    raise DirectoryConnectionError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise DirectoryConnectionError(f"Bind failed: {connection.result.get('description')}")
        except DirectoryConnectionError:
            self._safe_unbind(connection)
            raise
        except (LDAPBindError, LDAPException, OSError) as e:
            self._safe_unbind(connection)
            raise DirectoryConnectionError(f"LDAP connection failed: {e}", cause=e)

        return connection

    def _create_tls_config(self) -> Optional[Tls]:
        """TLS settings for LDAPS/StartTLS, or None for plain connections."""
        if not (self.server.use_ssl or self.server.start_tls):
            return None

        tls_config = {}
        if not self.server.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning(f"SSL certificate verification disabled for {self.server.id}")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.server.ca_cert_file:
            tls_config['ca_certs_file'] = self.server.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.server.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}", cause=e)

    async def disconnect(self) -> None:
        """Unbind and release the connection. Safe to call repeatedly."""
        reconnect_task = self._reconnect_task
        self._reconnect_task = None
        if reconnect_task is not None and not reconnect_task.done():
            reconnect_task.cancel()
            try:
                await reconnect_task
            except asyncio.CancelledError:
                pass

        connection = self._connection
        self._connection = None
        self._state = ClientState.DISCONNECTED
        if connection is not None:
            await asyncio.to_thread(self._safe_unbind, connection)
            logger.debug(f"LDAP connection to {self.server.server_url} closed")

    @staticmethod
    def _safe_unbind(connection) -> None:
        try:
            connection.unbind()
        except (LDAPException, OSError) as e:
            logger.warning(f"Error closing LDAP connection: {e}")

    def _release_late_connection(self, connection) -> None:
        # A connect that finished after its caller gave up
        asyncio.get_running_loop().run_in_executor(None, self._safe_unbind, connection)

    def _discard_connection(self) -> None:
        """Drop a connection left mid-operation by a timeout or cancellation."""
        connection = self._connection
        self._connection = None
        self._state = ClientState.DISCONNECTED
        if connection is not None:
            asyncio.get_running_loop().run_in_executor(None, self._safe_unbind, connection)

    def _on_connection_lost(self, error: BaseException) -> None:
        logger.warning(f"Connection to {self.server.server_url} lost: {error}")
        self._last_error = error
        self._discard_connection()

        if not self.settings.reconnect_enabled or self.settings.max_reconnect_attempts <= 0:
            self._reconnect_exhausted = True
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        max_attempts = self.settings.max_reconnect_attempts
        while self._reconnect_attempts < max_attempts:
            await asyncio.sleep(self.settings.reconnect_interval)
            self._reconnect_attempts += 1
            logger.info(f"Reconnecting to {self.server.server_url} "
                        f"(attempt {self._reconnect_attempts}/{max_attempts})")
            try:
                await self._open_and_bind(None)
                return
            except DirectoryConnectionError as e:
                self._last_error = e
                logger.warning(f"Reconnect attempt {self._reconnect_attempts} failed: {e}")

        self._reconnect_exhausted = True
        logger.error(f"Giving up reconnecting to {self.server.server_url} after {max_attempts} attempts")

    async def _ensure_bound(self) -> None:
        if self._state == ClientState.BOUND and getattr(self._connection, 'closed', False) is True:
            self._on_connection_lost(DirectoryConnectionError("Connection closed by server"))

        if self._reconnect_task is not None and not self._reconnect_task.done():
            await asyncio.shield(self._reconnect_task)

        if self._state != ClientState.BOUND:
            if self._reconnect_exhausted:
                raise DirectoryConnectionError(
                    f"Connection to {self.server.server_url} lost and reconnect attempts exhausted",
                    cause=self._last_error,
                )
            raise DirectoryConnectionError(f"Not connected to LDAP server {self.server.server_url}")

    async def _run_blocking(self, func: Callable, *args, timeout: Optional[float],
                            cancel_token: Optional[CancellationToken] = None,
                            on_abandon: Optional[Callable[[Any], None]] = None) -> Any:
        """
        Run ``func`` in a worker thread, racing a timeout and a cancellation token.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first
            OperationCancelled: If the token trips first
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        future = asyncio.ensure_future(asyncio.to_thread(func, *args))
        waiters = {future}
        cancel_waiter = None
        if cancel_token is not None:
            cancel_waiter = asyncio.ensure_future(cancel_token.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._abandon(future, on_abandon)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if future in done:
            return future.result()

        self._abandon(future, on_abandon)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        raise asyncio.TimeoutError()

    @staticmethod
    def _abandon(future: asyncio.Future, on_abandon: Optional[Callable[[Any], None]]) -> None:
        def _collect(done_future: asyncio.Future):
            if done_future.cancelled() or done_future.exception() is not None:
                return
            if on_abandon is not None:
                on_abandon(done_future.result())

        future.add_done_callback(_collect)

    # Searching

    async def search(self, base_dn: str, search_filter: str, attributes: Optional[List[str]] = None,
                     scope: str = 'sub', size_limit: Optional[int] = None,
                     time_limit: Optional[float] = None,
                     cancel_token: Optional[CancellationToken] = None) -> List[Dict[str, Any]]:
        """
        Run a paged search.

        Args:
            base_dn: Search base
            search_filter: RFC 4515 filter
            attributes: Attributes to return (all user attributes when None)
            scope: 'base', 'one' or 'sub'
            size_limit: Maximum entries to return
            time_limit: Seconds before the search is abandoned (defaults to the search timeout)

        Returns:
            Entries as ``{'dn': ..., 'attributes': {...}}``

        Raises:
            SearchTimeout: If the time limit is exceeded
            SearchError: If the search fails
            DirectoryConnectionError: If the client is not bound or the connection drops
        """
        if scope not in SEARCH_SCOPES:
            raise SearchError(f"Invalid search scope: {scope}")
        time_limit = time_limit or self.settings.search_timeout

        await self._ensure_bound()

        async with self._operation_lock:
            self._state = ClientState.SEARCHING
            logger.debug(f"Searching with filter: {search_filter} in base: {base_dn}")
            try:
                entries = await self._run_blocking(
                    self._search_blocking, self._connection, base_dn, search_filter,
                    SEARCH_SCOPES[scope], attributes, size_limit, time_limit,
                    timeout=time_limit,
                    cancel_token=cancel_token,
                )
            except asyncio.TimeoutError:
                self._discard_connection()
                raise SearchTimeout(f"Search of {base_dn} exceeded {time_limit}s")
            except LDAPCommunicationError as e:
                self._on_connection_lost(e)
                raise DirectoryConnectionError(
                    f"Connection to {self.server.server_url} lost during search: {e}", cause=e
                )
            except LDAPException as e:
                raise SearchError(f"LDAP search failed: {e}", cause=e)
            except (OperationCancelled, asyncio.CancelledError):
                self._discard_connection()
                raise
            finally:
                if self._state == ClientState.SEARCHING:
                    self._state = ClientState.BOUND

        logger.debug(f"Search of {base_dn} returned {len(entries)} entries")
        return entries

    def _search_blocking(self, connection, base_dn: str, search_filter: str, search_scope: str,
                         attributes: Optional[List[str]], size_limit: Optional[int],
                         time_limit: float) -> List[Dict[str, Any]]:
        """Paged search loop. Runs in a worker thread."""
        results = []
        cookie = None
        page_count = 0

        while True:
            connection.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=search_scope,
                attributes=attributes or ['*'],
                size_limit=size_limit or 0,
                time_limit=max(1, int(math.ceil(time_limit))),
                paged_size=self.settings.page_size,
                paged_cookie=cookie,
            )
            result = connection.result or {}
            code = result.get('result', RESULT_SUCCESS)
            if code == RESULT_TIME_LIMIT_EXCEEDED:
                raise SearchTimeout(f"Server time limit exceeded searching {base_dn}")
            if code not in (RESULT_SUCCESS, RESULT_SIZE_LIMIT_EXCEEDED):
                raise SearchError(f"Search failed: {result.get('description')} {result.get('message', '')}".strip())

            page_count += 1
            for entry in connection.entries:
                results.append(self._entry_to_dict(entry))
                if size_limit and len(results) >= size_limit:
                    return results

            if code == RESULT_SIZE_LIMIT_EXCEEDED:
                break

            controls = result.get('controls') or {}
            cookie = controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
            if not cookie:
                break

        logger.debug(f"Retrieved {len(results)} entries across {page_count} pages")
        return results

    @staticmethod
    def _entry_to_dict(entry) -> Dict[str, Any]:
        attributes = {}
        for name, values in entry.entry_attributes_as_dict.items():
            values = list(values)
            if not values:
                continue
            attributes[name] = values[0] if len(values) == 1 else values
        return {'dn': str(entry.entry_dn), 'attributes': attributes}

    # Connection test and discovery

    async def test_connection(self, cancel_token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """
        Connect and run a base-scope search of the base DN.

        Never raises for directory failures; the outcome is reported in the result.
        """
        status = {'server': self.server.server_url, 'base_dn': self.server.base_dn}
        try:
            await self.connect(cancel_token)
            entries = await self.search(
                self.server.base_dn, '(objectClass=*)', ['objectClass'],
                scope='base', size_limit=1, cancel_token=cancel_token,
            )
        except SyncEngineError as e:
            logger.warning(f"Connection test failed for {self.server.id}: {e}")
            status.update({'success': False, 'message': e.message, 'error_code': e.code})
            return status

        status.update({'success': True, 'message': 'Connection successful', 'results_count': len(entries)})
        return status

    def user_attributes(self) -> List[str]:
        names = {self.server.alias(key) for key in (
            'user_id', 'user_email', 'user_name', 'user_first_name', 'user_last_name', 'user_member_of'
        )}
        names.update(('cn', 'objectClass'))
        return sorted(names)

    def group_attributes(self) -> List[str]:
        names = {self.server.alias(key) for key in (
            'group_id', 'group_name', 'group_description', 'group_member'
        )}
        names.update(('cn', 'objectClass'))
        return sorted(names)

    async def discover_users(self, options: Optional[DiscoveryOptions] = None,
                             cancel_token: Optional[CancellationToken] = None) -> List[DirectoryUser]:
        """Search for user entries and map them to ``DirectoryUser`` records."""
        options = options or DiscoveryOptions()
        search_base = options.search_base or self.server.user_search_base or self.server.base_dn
        search_filter = build_search_filter(
            self.server.user_object_class, self.server.user_search_filter, options.additional_filter
        )
        entries = await self.search(
            search_base, search_filter, self.user_attributes(),
            scope='sub', size_limit=options.max_results or self.settings.max_entries,
            cancel_token=cancel_token,
        )
        users = [self.transform_user(entry) for entry in entries]
        logger.info(f"Discovered {len(users)} users on {self.server.id}")
        return users

    async def discover_groups(self, options: Optional[DiscoveryOptions] = None,
                              cancel_token: Optional[CancellationToken] = None) -> List[DirectoryGroup]:
        """Search for group entries and map them to ``DirectoryGroup`` records."""
        options = options or DiscoveryOptions()
        search_base = options.search_base or self.server.group_search_base or self.server.base_dn
        search_filter = build_search_filter(
            self.server.group_object_class, self.server.group_search_filter, options.additional_filter
        )
        entries = await self.search(
            search_base, search_filter, self.group_attributes(),
            scope='sub', size_limit=options.max_results or self.settings.max_entries,
            cancel_token=cancel_token,
        )
        groups = [self.transform_group(entry) for entry in entries]
        logger.info(f"Discovered {len(groups)} groups on {self.server.id}")
        return groups

    def transform_user(self, entry: Dict[str, Any]) -> DirectoryUser:
        attributes = CaseInsensitiveDict(entry['attributes'])
        server = self.server

        first_name = _first(attributes.get(server.alias('user_first_name')))
        last_name = _first(attributes.get(server.alias('user_last_name')))
        display_name = _first(attributes.get(server.alias('user_name')))
        if not display_name:
            display_name = ' '.join(part for part in (first_name, last_name) if part) or None
        group_dns = [str(dn) for dn in _as_list(attributes.get(server.alias('user_member_of')))]

        return DirectoryUser(
            server_id=server.id,
            dn=entry['dn'],
            uid=_first(attributes.get(server.alias('user_id'))),
            cn=_first(attributes.get('cn')),
            email=_first(attributes.get(server.alias('user_email'))),
            first_name=first_name,
            last_name=last_name,
            display_name=display_name,
            object_classes=[str(value) for value in _as_list(attributes.get('objectClass'))],
            groups=[extract_group_name(dn) for dn in group_dns],
            group_dns=group_dns,
            attributes=dict(entry['attributes']),
        )

    def transform_group(self, entry: Dict[str, Any]) -> DirectoryGroup:
        attributes = CaseInsensitiveDict(entry['attributes'])
        server = self.server

        cn = _first(attributes.get('cn'))
        return DirectoryGroup(
            server_id=server.id,
            dn=entry['dn'],
            cn=cn,
            name=_first(attributes.get(server.alias('group_name'))) or cn,
            description=_first(attributes.get(server.alias('group_description'))),
            object_classes=[str(value) for value in _as_list(attributes.get('objectClass'))],
            member_dns=[str(dn) for dn in _as_list(attributes.get(server.alias('group_member')))],
            parent_dn=parent_dn(entry['dn']),
            attributes=dict(entry['attributes']),
        )

    # Introspection

    def get_status(self) -> Dict[str, Any]:
        return {
            'server_id': self.server.id,
            'server_url': self.server.server_url,
            'state': self._state.value,
            'use_ssl': self.server.use_ssl,
            'start_tls': self.server.start_tls,
            'bind_dn': self.server.bind_dn,
            'reconnect_attempts': self._reconnect_attempts,
            'reconnect_exhausted': self._reconnect_exhausted,
            'last_error': str(self._last_error) if self._last_error else None,
        }

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
