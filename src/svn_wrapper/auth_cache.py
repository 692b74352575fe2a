"""Ephemeral svn credential files in the ``auth/svn.simple`` store.

Files use the svn hash-dump format so the native client can read them, are
named after the MD5 of the realm string, and are restricted to the current
user (mode 600 on POSIX, an explicit ACL on Windows).
"""

from __future__ import annotations

import asyncio
import getpass
import hashlib
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union
from urllib.parse import urlsplit

from .auth import Credential
from .errors import CredentialCacheError

logger = logging.getLogger(__name__)

REALM_KEY = "svn:realmstring"
END_MARKER = b"END"

DEFAULT_PORTS: Dict[str, int] = {"http": 80, "https": 443, "svn": 3690}
# svn over http(s) names realms with the effective port even when it is the default
_REALM_KEEPS_DEFAULT_PORT = frozenset({"http", "https"})


def _is_windows() -> bool:
    return sys.platform == "win32"


def default_config_dir() -> Path:
    """Return the svn configuration directory for the current platform."""

    candidates: List[Path] = []
    env_dir = os.environ.get("SVN_CONFIG_DIR")
    if env_dir:
        candidates.append(Path(env_dir))
    if _is_windows() and os.environ.get("APPDATA"):
        candidates.append(Path(os.environ["APPDATA"]) / "Subversion")
    candidates.append(Path.home() / ".subversion")

    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    return candidates[0]


def compute_realm(realm_url: str) -> str:
    """Return the svn realm string for a repository URL.

    ``https://svn.example.com:443/repo`` gives
    ``<https://svn.example.com:443> Authentication Realm``. The realm is built
    from the effective port, so ``https://h/r`` and ``https://h:443/r`` share
    one realm. http(s) realms always carry the port; ``svn://`` realms drop it
    when it is the default 3690.
    """

    try:
        parts = urlsplit(realm_url)
        port = parts.port
    except ValueError:
        return f"<{realm_url}> Authentication Realm"

    if not parts.scheme or not parts.hostname:
        return f"<{realm_url}> Authentication Realm"

    scheme = parts.scheme.lower()
    default_port = DEFAULT_PORTS.get(scheme)
    if port is None:
        port = default_port
    if port == default_port and scheme not in _REALM_KEEPS_DEFAULT_PORT:
        port = None

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    if port is not None:
        host = f"{host}:{port}"
    return f"<{scheme}://{host}> Authentication Realm"


def realm_hash(realm: str) -> str:
    return hashlib.md5(realm.encode("utf-8")).hexdigest()


def format_credential_file(username: str, password: str, realm: str) -> bytes:
    """Serialize a credential record with byte-length prefixes."""

    chunks: List[bytes] = []
    for key, value in ((REALM_KEY, realm), ("username", username), ("password", password)):
        key_bytes = key.encode("utf-8")
        value_bytes = value.encode("utf-8")
        chunks.append(b"K %d\n%s\n" % (len(key_bytes), key_bytes))
        chunks.append(b"V %d\n%s\n" % (len(value_bytes), value_bytes))
    chunks.append(END_MARKER + b"\n")
    return b"".join(chunks)


def parse_credential_file(content: bytes) -> Optional[Credential]:
    """Parse a hash-dump record; ``None`` when it is empty, corrupt or incomplete."""

    values: Dict[str, str] = {}
    pos = 0
    try:
        while pos < len(content):
            line_end = content.index(b"\n", pos)
            header = content[pos:line_end].strip()
            pos = line_end + 1
            if header == END_MARKER:
                break
            if not header:
                continue
            if not header.startswith(b"K "):
                return None
            key, pos = _read_block(content, pos, int(header[2:]))

            line_end = content.index(b"\n", pos)
            header = content[pos:line_end].strip()
            pos = line_end + 1
            if not header.startswith(b"V "):
                return None
            value, pos = _read_block(content, pos, int(header[2:]))
            values[key.decode("utf-8")] = value.decode("utf-8")
        else:
            return None
    except (ValueError, UnicodeDecodeError):
        return None

    username = values.get("username")
    password = values.get("password")
    if not username or not password:
        return None
    return Credential(username, password)


def _read_block(content: bytes, pos: int, length: int) -> Tuple[bytes, int]:
    end = pos + length
    if length < 0 or end > len(content) or content[end:end + 1] != b"\n":
        raise ValueError("truncated record")
    return content[pos:end], end + 1


class SvnAuthCache:
    """Write, read and clean up per-realm svn credential files."""

    def __init__(self, config_dir: Optional[Union[str, Path]] = None) -> None:
        base = Path(config_dir) if config_dir else default_config_dir()
        self._cache_dir = base / "auth" / "svn.simple"
        self._written_files: Set[Path] = set()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @property
    def written_files(self) -> List[Path]:
        return sorted(self._written_files)

    def clear_tracking(self) -> None:
        """Forget tracked files without deleting them."""

        self._written_files.clear()

    def path_for(self, realm_url: str) -> Path:
        return self._cache_dir / realm_hash(compute_realm(realm_url))

    async def write_credential(self, username: str, password: str, realm_url: str) -> Path:
        """Write the credential file for ``realm_url`` and return its path."""

        realm = compute_realm(realm_url)
        path = self._cache_dir / realm_hash(realm)
        content = format_credential_file(username, password, realm)

        try:
            await asyncio.to_thread(self._write_file, path, content)
        except OSError as exc:
            raise CredentialCacheError(f"Unable to write credential file {path}: {exc}") from exc

        if _is_windows():
            await self._set_windows_acl(path)

        self._written_files.add(path)
        return path

    async def read_credential(self, realm_url: str) -> Optional[Credential]:
        """Return the cached credential for ``realm_url`` or ``None``."""

        path = self.path_for(realm_url)
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except PermissionError as exc:
            raise CredentialCacheError(f"Permission denied reading {path}") from exc
        except OSError:
            return None
        return parse_credential_file(content)

    async def delete_credential(self, realm_url: str) -> None:
        """Remove the credential file for ``realm_url``; a missing file is fine."""

        path = self.path_for(realm_url)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise CredentialCacheError(f"Unable to delete credential file {path}: {exc}") from exc
        self._written_files.discard(path)

    def dispose(self) -> None:
        """Delete every file written by this instance."""

        for path in list(self._written_files):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.error("Failed to delete credential file %s: %s", path, exc)
        self._written_files.clear()

    def _write_file(self, path: Path, content: bytes) -> None:
        self._cache_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        if not _is_windows():
            os.chmod(self._cache_dir, 0o700)

        # mkstemp creates the file with mode 600; os.replace swaps it in whole.
        fd, tmp_name = tempfile.mkstemp(dir=self._cache_dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            if not _is_windows():
                os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    async def _set_windows_acl(self, path: Path) -> None:
        """Restrict ``path`` to the current account using icacls."""

        username = os.environ.get("USERNAME") or getpass.getuser()
        args = [str(path), "/inheritance:r", "/grant:r", f"{username}:F"]
        try:
            process = await asyncio.create_subprocess_exec(
                "icacls",
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
        except OSError as exc:
            logger.warning("Failed to set Windows ACL on %s: %s", path, exc)
            return
        if process.returncode != 0:
            logger.warning(
                "icacls exited with code %s for %s: %s",
                process.returncode,
                path,
                stderr.decode("utf-8", errors="replace").strip(),
            )
