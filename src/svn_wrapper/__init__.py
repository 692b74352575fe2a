"""Tools for executing svn commands with managed authentication."""

from .auth import AuthOrchestrator, Credential, MemoryAccountStore, StoredAccount
from .auth_cache import SvnAuthCache, compute_realm
from .config import Settings
from .errors import CredentialCacheError, ErrorKind, SvnExecutionError, SvnWrapperError, get_svn_error_code
from .svn import CommandRequest, ExecutionResult, Svn

__all__ = [
    "AuthOrchestrator",
    "CommandRequest",
    "Credential",
    "CredentialCacheError",
    "ErrorKind",
    "ExecutionResult",
    "MemoryAccountStore",
    "Settings",
    "StoredAccount",
    "Svn",
    "SvnAuthCache",
    "SvnExecutionError",
    "SvnWrapperError",
    "compute_realm",
    "get_svn_error_code",
]
