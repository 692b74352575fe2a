"""Asynchronous svn executor with timeout, cancellation and error classification."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from charset_normalizer import from_bytes

from .auth import Credential
from .config import Settings
from .errors import ErrorKind, SvnExecutionError

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("svn_wrapper.output")

DEFAULT_LOCALE = "en_US.UTF-8"
TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = 130
DEFAULT_TIMEOUT = 60.0

_PATH_SEPARATOR = re.compile(r"[\\/]+")

OutputSink = Callable[[str], None]


@dataclass
class CommandRequest:
    """Options for a single svn invocation."""

    cwd: Optional[Union[str, Path]] = None
    credential: Optional[Credential] = None
    timeout: Optional[float] = None
    cancel_event: Optional[asyncio.Event] = None
    encoding: Optional[str] = None
    log: bool = True
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    stdout: str
    stderr: str
    cwd: Optional[str] = None


@dataclass(frozen=True)
class BufferResult:
    exit_code: int
    stdout: bytes
    stderr: str
    cwd: Optional[str] = None


def cwd_tag(cwd: Optional[Union[str, Path]]) -> str:
    """Return the last path component of ``cwd`` used to prefix log lines."""

    if not cwd:
        return ""
    parts = [part for part in _PATH_SEPARATOR.split(str(cwd)) if part]
    return parts[-1] if parts else str(cwd)


def detect_encoding(data: bytes) -> Optional[str]:
    """Guess the text encoding of ``data``; ``None`` when it cannot be told."""

    if not data:
        return None
    best = from_bytes(data).best()
    if best is None:
        return None
    return best.encoding


def _positive(value: Optional[float]) -> Optional[float]:
    return value if value is not None and value > 0 else None


def _encoding_exists(name: Optional[str]) -> bool:
    if not name:
        return False
    try:
        codecs.lookup(name)
    except LookupError:
        return False
    return True


class Svn:
    """Run svn commands as subprocesses on behalf of a caller."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        output: Optional[OutputSink] = None,
    ) -> None:
        self._settings = settings or Settings()
        self.svn_path = self._settings.svn_path
        self._output = output or output_logger.info
        self._keyring_hint_shown = False

    @property
    def settings(self) -> Settings:
        return self._settings

    def log_output(self, text: str) -> None:
        self._output(text)

    async def exec(
        self,
        args: Sequence[str],
        request: Optional[CommandRequest] = None,
    ) -> ExecutionResult:
        """Run ``svn <args>`` and return its decoded output.

        Raises :class:`SvnExecutionError` on non-zero exit, spawn failure,
        timeout or cancellation.
        """

        request = request or CommandRequest()
        svn_args, stdin_data = self._prepare(args, request)
        exit_code, stdout, stderr = await self._run(svn_args, request, stdin_data)

        encoding = request.encoding
        if "--xml" in svn_args:
            # svn always emits UTF-8 XML and detectors often misread it
            encoding = "utf-8"
        if not encoding:
            encoding = detect_encoding(stdout)
        if not encoding:
            encoding = self._settings.default_encoding
        if not _encoding_exists(encoding):
            if encoding:
                logger.warning("The encoding %r is invalid, falling back to utf-8", encoding)
            encoding = "utf-8"

        decoded_stdout = stdout.decode(encoding, errors="replace")
        self._log_stderr(request, stderr)

        if exit_code:
            error = SvnExecutionError.from_exit(svn_args, exit_code, decoded_stdout, stderr)
            if self._settings.use_system_keyring and error.is_auth_error:
                self._show_keyring_hint()
            raise error

        return ExecutionResult(
            exit_code=exit_code,
            stdout=decoded_stdout,
            stderr=stderr,
            cwd=str(request.cwd) if request.cwd else None,
        )

    async def exec_buffer(
        self,
        args: Sequence[str],
        request: Optional[CommandRequest] = None,
    ) -> BufferResult:
        """Run ``svn <args>`` returning raw stdout bytes without checking the exit code."""

        request = request or CommandRequest()
        svn_args, stdin_data = self._prepare(args, request)
        exit_code, stdout, stderr = await self._run(svn_args, request, stdin_data)
        self._log_stderr(request, stderr)
        return BufferResult(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            cwd=str(request.cwd) if request.cwd else None,
        )

    def build_args(self, args: Sequence[str], credential: Optional[Credential]) -> Tuple[List[str], Optional[str]]:
        """Return the final argument list and any password destined for stdin."""

        svn_args = [str(arg) for arg in args]
        stdin_password: Optional[str] = None
        username = credential.username if credential else ""
        password = credential.password if credential else ""

        if username:
            svn_args.extend(["--username", username])

        if not self._settings.use_system_keyring:
            if password:
                if self._settings.password_from_stdin:
                    svn_args.append("--password-from-stdin")
                    stdin_password = password
                else:
                    svn_args.extend(["--password", password])
            if username or password:
                svn_args.extend(["--config-option", "config:auth:password-stores="])
                svn_args.extend(["--config-option", "servers:global:store-auth-creds=no"])

        svn_args.append("--non-interactive")
        return svn_args, stdin_password

    def _prepare(self, args: Sequence[str], request: CommandRequest) -> Tuple[List[str], Optional[bytes]]:
        if request.log:
            shown = [f"'{arg}'" if (" " in arg or not arg) else arg for arg in map(str, args)]
            self.log_output(f"[{cwd_tag(request.cwd)}]$ svn {' '.join(shown)}\n")

        svn_args, stdin_password = self.build_args(args, request.credential)

        if request.log:
            self.log_output(f"[auth: {self._describe_auth(request.credential)}]\n")

        stdin_data = stdin_password.encode("utf-8") if stdin_password is not None else None
        return svn_args, stdin_data

    def _describe_auth(self, credential: Optional[Credential]) -> str:
        username = credential.username if credential else ""
        password = credential.password if credential else ""
        method = "stdin" if self._settings.password_from_stdin else "--password"
        if self._settings.use_system_keyring:
            return "system keyring"
        if password:
            return f"extension-only ({method})"
        if username:
            return "username only"
        return "none"

    def _environment(self, request: CommandRequest) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(request.env)
        env.update({"LC_ALL": DEFAULT_LOCALE, "LANG": DEFAULT_LOCALE})
        return env

    async def _run(
        self,
        svn_args: List[str],
        request: CommandRequest,
        stdin_data: Optional[bytes],
    ) -> Tuple[int, bytes, str]:
        command = svn_args[0] if svn_args else None
        try:
            process = await asyncio.create_subprocess_exec(
                self.svn_path,
                *svn_args,
                cwd=str(request.cwd) if request.cwd else None,
                env=self._environment(request),
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise SvnExecutionError(
                f"Failed to execute svn ({self.svn_path} not found)",
                kind=ErrorKind.TOOL_NOT_FOUND,
                command=command,
            ) from exc
        except OSError as exc:
            raise SvnExecutionError(
                f"Failed to start svn: {exc}",
                kind=ErrorKind.UNCLASSIFIED,
                command=command,
            ) from exc

        timeout = _positive(request.timeout) or _positive(self._settings.command_timeout) or DEFAULT_TIMEOUT

        async with _race(process, stdin_data, request.cancel_event) as (completion, cancelled):
            waiters = [task for task in (completion, cancelled) if task is not None]
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if completion in done:
                stdout, stderr = completion.result()
                assert process.returncode is not None
                return process.returncode, stdout, stderr.decode("utf-8", errors="replace")

            if cancelled is not None and cancelled in done:
                raise SvnExecutionError(
                    "SVN command cancelled",
                    kind=ErrorKind.CANCELLED,
                    command=command,
                    exit_code=CANCELLED_EXIT_CODE,
                )

            raise SvnExecutionError(
                f"SVN command timeout after {timeout}s",
                kind=ErrorKind.TIMEOUT,
                command=command,
                exit_code=TIMEOUT_EXIT_CODE,
            )

    def _log_stderr(self, request: CommandRequest, stderr: str) -> None:
        if not request.log or not stderr:
            return
        name = cwd_tag(request.cwd)
        lines = [f"[{name}]$ {line}" for line in stderr.split("\n") if line]
        if lines:
            self.log_output("\n".join(lines))

    def _show_keyring_hint(self) -> None:
        if self._keyring_hint_shown:
            return
        self._keyring_hint_shown = True
        logger.warning(
            "SVN authentication failed while using the system keyring. The OS password "
            "manager may be locked; disable use_system_keyring or run 'svn info <url>' "
            "in a terminal to unlock it."
        )


@asynccontextmanager
async def _race(
    process: asyncio.subprocess.Process,
    stdin_data: Optional[bytes],
    cancel_event: Optional[asyncio.Event],
) -> AsyncIterator[Tuple["asyncio.Future[Tuple[bytes, bytes]]", Optional["asyncio.Future[bool]"]]]:
    """Own the tasks racing for one subprocess and tear them all down on exit."""

    completion = asyncio.ensure_future(process.communicate(stdin_data))
    cancelled = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
    tasks = [task for task in (completion, cancelled) if task is not None]
    try:
        yield completion, cancelled
    finally:
        if process.returncode is None:
            _kill(process)
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if process.returncode is None:
            await process.wait()


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
