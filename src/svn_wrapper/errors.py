"""Error types and stderr classification for svn invocations."""

from __future__ import annotations

import re
from enum import Enum
from typing import Dict, Optional, Sequence

SVN_ERROR_CODES: Dict[str, str] = {
    "AuthorizationFailed": "E170001",
    "RepositoryIsLocked": "E155004",
    "NotASvnRepository": "E155007",
    "NotShareCommonAncestry": "E195012",
    "WorkingCopyIsTooOld": "E155036",
    "UnableToConnect": "E170013",
    "NetworkTimeout": "E175002",
}

# svn reports E170013 alongside E215004 when it ran out of credentials; both
# must be treated as authentication failures.
_NO_MORE_CREDENTIALS = "No more credentials or we tried too many times"
_NO_MORE_CREDENTIALS_CODE = "E215004"

_FORMATTED_PREFIX = re.compile(r"^svn: E\d+: +", re.MULTILINE)


class ErrorKind(str, Enum):
    """Closed taxonomy of failures surfaced by this package."""

    TOOL_NOT_FOUND = "ToolNotFound"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    AUTHORIZATION_FAILED = "AuthorizationFailed"
    REPOSITORY_LOCKED = "RepositoryLocked"
    NOT_A_REPOSITORY = "NotARepository"
    ANCESTRY_MISMATCH = "AncestryMismatch"
    WORKING_COPY_TOO_OLD = "WorkingCopyTooOld"
    UNABLE_TO_CONNECT = "UnableToConnect"
    NETWORK_TIMEOUT = "NetworkTimeout"
    UNCLASSIFIED = "Unclassified"
    CREDENTIAL_IO = "CredentialIOError"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "ErrorKind":
        """Return the kind matching an ``E<number>`` svn error code."""

        if code is None:
            return cls.UNCLASSIFIED
        return _KIND_BY_CODE.get(code, cls.UNCLASSIFIED)


_KIND_BY_CODE: Dict[str, ErrorKind] = {
    SVN_ERROR_CODES["AuthorizationFailed"]: ErrorKind.AUTHORIZATION_FAILED,
    SVN_ERROR_CODES["RepositoryIsLocked"]: ErrorKind.REPOSITORY_LOCKED,
    SVN_ERROR_CODES["NotASvnRepository"]: ErrorKind.NOT_A_REPOSITORY,
    SVN_ERROR_CODES["NotShareCommonAncestry"]: ErrorKind.ANCESTRY_MISMATCH,
    SVN_ERROR_CODES["WorkingCopyIsTooOld"]: ErrorKind.WORKING_COPY_TOO_OLD,
    SVN_ERROR_CODES["UnableToConnect"]: ErrorKind.UNABLE_TO_CONNECT,
    SVN_ERROR_CODES["NetworkTimeout"]: ErrorKind.NETWORK_TIMEOUT,
}


def get_svn_error_code(stderr: str) -> Optional[str]:
    """Return the svn error code found in ``stderr`` or ``None``.

    Credential exhaustion is checked before the code table so that a failure
    reported as both "unable to connect" and "no more credentials" still takes
    the authentication retry path.
    """

    if _NO_MORE_CREDENTIALS in stderr or _NO_MORE_CREDENTIALS_CODE in stderr:
        return SVN_ERROR_CODES["AuthorizationFailed"]

    for code in SVN_ERROR_CODES.values():
        if f"svn: {code}" in stderr:
            return code
    return None


def format_stderr(stderr: str) -> str:
    """Strip the leading ``svn: E<code>: `` token from every stderr line."""

    return _FORMATTED_PREFIX.sub("", stderr)


class SvnWrapperError(RuntimeError):
    """Raised when preparing or executing svn commands fails."""

    kind: ErrorKind = ErrorKind.UNCLASSIFIED


class SvnExecutionError(SvnWrapperError):
    """Raised when an svn command fails, times out or is cancelled."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
        svn_error_code: Optional[str] = None,
    ) -> None:
        if stderr:
            message = f"{message}: {format_stderr(stderr).strip()}"
        super().__init__(message)
        self.kind = kind
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.stderr_formatted = format_stderr(stderr) if stderr is not None else None
        self.svn_error_code = svn_error_code

    @classmethod
    def from_exit(
        cls,
        args: Sequence[str],
        exit_code: int,
        stdout: str,
        stderr: str,
    ) -> "SvnExecutionError":
        """Build the error for a command that exited with a non-zero code."""

        code = get_svn_error_code(stderr)
        return cls(
            "Failed to execute svn",
            kind=ErrorKind.from_code(code),
            command=args[0] if args else None,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            svn_error_code=code,
        )

    @property
    def is_auth_error(self) -> bool:
        return self.kind is ErrorKind.AUTHORIZATION_FAILED


class CredentialCacheError(SvnWrapperError):
    """Raised when a credential cache file cannot be read or written."""

    kind = ErrorKind.CREDENTIAL_IO
