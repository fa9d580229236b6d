"""
Error taxonomy for the directory sync engine.

Every error carries a stable machine-readable ``code`` so that callers (CLI,
job records, audit events) receive categorized failures instead of raw
internal exceptions.
"""

from typing import Dict, Any, Optional


class SyncEngineError(Exception):
    """Base exception for all engine errors."""

    code = 'sync_engine_error'

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'message': self.message}


class DirectoryConnectionError(SyncEngineError, ConnectionError):
    """Raised when connecting or binding to a directory server fails."""

    code = 'ldap_connection_error'


class SearchError(SyncEngineError):
    """Raised when a directory search fails."""

    code = 'ldap_search_error'


class SearchTimeout(SearchError, TimeoutError):
    """Raised when a directory search exceeds its time limit."""

    code = 'ldap_search_timeout'


class DiscoveryError(SyncEngineError):
    """Raised when discovery fails; the previous cache is left untouched."""

    code = 'discovery_failed'


class AdapterError(SyncEngineError):
    """Raised by tool adapters for remote API failures."""

    code = 'adapter_error'

    def __init__(self, message: str, status_code: Optional[int] = None,
                 cause: Optional[BaseException] = None, retryable: bool = False):
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.retryable = retryable


class AdapterInitializationError(AdapterError):
    """Raised when an adapter cannot be constructed or initialized. Fatal to a job."""

    code = 'adapter_init_failed'


class CredentialError(AdapterInitializationError):
    """Raised when credentials for a tool or directory cannot be resolved."""

    code = 'credentials_unavailable'


class AdapterAuthenticationError(AdapterInitializationError):
    """Raised when a tool API rejects the configured credentials."""

    code = 'adapter_auth_failed'


class ConflictDetected(SyncEngineError):
    """Raised for an entity whose change is blocked by a detected conflict."""

    code = 'conflict_detected'


class ValidationError(SyncEngineError):
    """Raised when a request fails validation before any state changes."""

    code = 'validation_error'


class NotFoundError(SyncEngineError):
    """Raised when a referenced server, tool config or job does not exist."""

    code = 'not_found'


class JobTimeoutError(SyncEngineError):
    """Raised when a sync job exceeds its overall timeout."""

    code = 'job_timeout'


class OperationCancelled(SyncEngineError):
    """Raised when an operation observes a tripped cancellation token."""

    code = 'operation_cancelled'
