"""Locate the svn executable and read its version."""

from __future__ import annotations

import asyncio
import os
import re
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import ErrorKind, SvnExecutionError

_VERSION = re.compile(r"^(\d+\.\d+\.\d+)")


@dataclass(frozen=True)
class SvnInstallation:
    path: str
    version: str


def _windows_candidates() -> List[str]:
    candidates: List[str] = []
    for variable in ("ProgramW6432", "ProgramFiles(x86)", "ProgramFiles"):
        base = os.environ.get(variable)
        if base:
            candidates.append(str(Path(base) / "TortoiseSVN" / "bin" / "svn.exe"))
    candidates.append("svn")
    return candidates


async def find_specific_svn(path: str) -> SvnInstallation:
    """Run ``<path> --version --quiet`` and return the installation it describes."""

    try:
        process = await asyncio.create_subprocess_exec(
            path,
            "--version",
            "--quiet",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        raise SvnExecutionError(f"Failed to execute {path}", kind=ErrorKind.TOOL_NOT_FOUND) from exc

    stdout, _ = await process.communicate()
    if process.returncode:
        raise SvnExecutionError(
            f"{path} --version exited with code {process.returncode}",
            kind=ErrorKind.TOOL_NOT_FOUND,
            exit_code=process.returncode,
        )

    # SlikSVN reports versions such as 1.6.17-SlikSvn-tag-1.6.17@1130898-X64
    match = _VERSION.match(stdout.decode("utf-8", errors="replace").strip())
    if match is None:
        raise SvnExecutionError(f"Invalid svn version reported by {path}", kind=ErrorKind.TOOL_NOT_FOUND)
    return SvnInstallation(path=path, version=match.group(1))


async def find_svn(hint: Optional[str] = None) -> SvnInstallation:
    """Return the first working svn installation, trying ``hint`` first."""

    candidates: List[str] = []
    if hint:
        candidates.append(hint)
    if sys.platform == "win32":
        candidates.extend(_windows_candidates())
    else:
        located = shutil.which("svn")
        candidates.append(located or "svn")

    for candidate in candidates:
        try:
            return await find_specific_svn(candidate)
        except SvnExecutionError:
            continue
    raise SvnExecutionError("Svn installation not found.", kind=ErrorKind.TOOL_NOT_FOUND)
