from __future__ import annotations

import asyncio
import hashlib
import logging
import stat
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from svn_wrapper import auth_cache as auth_cache_module
from svn_wrapper.auth import Credential
from svn_wrapper.auth_cache import (
    SvnAuthCache,
    compute_realm,
    format_credential_file,
    parse_credential_file,
)
from svn_wrapper.errors import CredentialCacheError

URL = "https://svn.example.com:443/repo/trunk"


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def cache(tmp_path: Path) -> SvnAuthCache:
    return SvnAuthCache(tmp_path / "subversion")


def test_realm_keeps_explicit_port() -> None:
    assert compute_realm("https://svn.example.com:443/repo") == "<https://svn.example.com:443> Authentication Realm"


def test_realm_omits_absent_default_port() -> None:
    assert compute_realm("svn://svn.local/repo") == "<svn://svn.local> Authentication Realm"


def test_realm_custom_port_and_path_independence() -> None:
    assert compute_realm("http://host:8080/a") == compute_realm("http://host:8080/b/c")
    assert compute_realm("http://host:8080/a") == "<http://host:8080> Authentication Realm"


def test_realm_uses_effective_port() -> None:
    assert compute_realm("https://h/r") == compute_realm("https://h:443/r")
    assert compute_realm("http://h/r") == "<http://h:80> Authentication Realm"
    assert compute_realm("svn://h:3690/r") == compute_realm("svn://h/r") == "<svn://h> Authentication Realm"
    assert compute_realm("svn://h:3691/r") == "<svn://h:3691> Authentication Realm"


def test_implicit_and_explicit_default_port_share_a_file(cache: SvnAuthCache) -> None:
    assert cache.path_for("https://h/r") == cache.path_for("https://h:443/r")

    path = _run(cache.write_credential("alice", "s3cret", "https://h/r"))

    assert path == cache.path_for("https://h:443/other")
    assert _run(cache.read_credential("https://h:443/r")) == Credential("alice", "s3cret")


def test_realm_falls_back_for_invalid_url() -> None:
    assert compute_realm("not a url") == "<not a url> Authentication Realm"


def test_file_format_is_byte_exact() -> None:
    realm = "<svn://svn.local> Authentication Realm"

    content = format_credential_file("jörg", "pw", realm)

    assert content == (
        b"K 15\nsvn:realmstring\n"
        b"V 38\n<svn://svn.local> Authentication Realm\n"
        b"K 8\nusername\n"
        b"V 5\nj\xc3\xb6rg\n"
        b"K 8\npassword\n"
        b"V 2\npw\n"
        b"END\n"
    )


def test_write_then_read_round_trip(cache: SvnAuthCache) -> None:
    path = _run(cache.write_credential("alice", "s3cret", URL))

    assert _run(cache.read_credential(URL)) == Credential("alice", "s3cret")
    assert path.parent == cache.cache_dir
    assert path.name == hashlib.md5(compute_realm(URL).encode("utf-8")).hexdigest()
    assert cache.written_files == [path]


def test_rewrite_keeps_one_file_per_realm(cache: SvnAuthCache) -> None:
    first = _run(cache.write_credential("alice", "old", URL))
    second = _run(cache.write_credential("alice", "new", "https://svn.example.com:443/other"))

    assert first == second
    assert _run(cache.read_credential(URL)) == Credential("alice", "new")
    assert [p for p in cache.cache_dir.iterdir()] == [first]


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
def test_permissions_are_owner_only(cache: SvnAuthCache) -> None:
    path = _run(cache.write_credential("alice", "s3cret", URL))

    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert stat.S_IMODE(cache.cache_dir.stat().st_mode) == 0o700


def test_read_missing_file_returns_none(cache: SvnAuthCache) -> None:
    assert _run(cache.read_credential(URL)) is None


def test_read_permission_error_is_raised(cache: SvnAuthCache, monkeypatch: pytest.MonkeyPatch) -> None:
    _run(cache.write_credential("alice", "s3cret", URL))

    def deny(self: Path) -> bytes:
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "read_bytes", deny)

    with pytest.raises(CredentialCacheError):
        _run(cache.read_credential(URL))


def test_write_disk_error_is_raised(cache: SvnAuthCache, monkeypatch: pytest.MonkeyPatch) -> None:
    def full(self: SvnAuthCache, path: Path, content: bytes) -> None:
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(SvnAuthCache, "_write_file", full)

    with pytest.raises(CredentialCacheError):
        _run(cache.write_credential("alice", "s3cret", URL))
    assert cache.written_files == []


@pytest.mark.parametrize(
    "content",
    [
        b"",
        b"garbage",
        b"K 8\nusername\nV 5\nalice\nEND\n",
        b"K 8\npassword\nV 6\ns3cret\nEND\n",
        b"K 8\nusername\nV 5\nalice\nK 8\npassword\nV 6\ns3cret\n",
        b"K 8\nusername\nV 99\nalice\nK 8\npassword\nV 6\ns3cret\nEND\n",
        b"K 8\nusername\nX 5\nalice\nEND\n",
        b"K x\nusername\nV 5\nalice\nEND\n",
    ],
)
def test_malformed_records_parse_to_none(content: bytes) -> None:
    assert parse_credential_file(content) is None


def test_parse_value_with_newline() -> None:
    content = format_credential_file("alice", "line1\nline2", "<r> Authentication Realm")

    assert parse_credential_file(content) == Credential("alice", "line1\nline2")


def test_malformed_file_reads_as_none(cache: SvnAuthCache) -> None:
    path = _run(cache.write_credential("alice", "s3cret", URL))
    path.write_bytes(b"K 8\nusername\nV 5\nalice\nEND\n")

    assert _run(cache.read_credential(URL)) is None


def test_delete_is_idempotent(cache: SvnAuthCache) -> None:
    path = _run(cache.write_credential("alice", "s3cret", URL))

    _run(cache.delete_credential(URL))
    _run(cache.delete_credential(URL))
    _run(cache.delete_credential("svn://never-written/repo"))

    assert not path.exists()
    assert cache.written_files == []


def test_dispose_removes_tracked_files(cache: SvnAuthCache) -> None:
    first = _run(cache.write_credential("alice", "a", URL))
    second = _run(cache.write_credential("bob", "b", "svn://svn.local/repo"))
    second.unlink()

    cache.dispose()

    assert not first.exists()
    assert cache.written_files == []


def test_clear_tracking_keeps_files(cache: SvnAuthCache) -> None:
    path = _run(cache.write_credential("alice", "a", URL))

    cache.clear_tracking()
    cache.dispose()

    assert path.exists()


def test_default_config_dir_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SVN_CONFIG_DIR", str(tmp_path))

    assert SvnAuthCache().cache_dir == tmp_path / "auth" / "svn.simple"


class FakeIcacls:
    """Stands in for ``asyncio.create_subprocess_exec`` running icacls."""

    def __init__(self, returncode: int = 0, error: Optional[OSError] = None) -> None:
        self.returncode = returncode
        self.error = error
        self.calls: List[Tuple[Tuple[str, ...], Dict[str, object]]] = []

    async def __call__(self, *args: str, **kwargs: object) -> "FakeIcacls":
        self.calls.append((args, kwargs))
        if self.error is not None:
            raise self.error
        return self

    async def communicate(self) -> Tuple[bytes, bytes]:
        return b"", b"Access is denied." if self.returncode else b""


@pytest.fixture()
def windows(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(auth_cache_module, "_is_windows", lambda: True)
    monkeypatch.setenv("USERNAME", "bob & calc")


def test_windows_acl_passes_username_as_single_argument(
    cache: SvnAuthCache, windows: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    icacls = FakeIcacls()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", icacls)

    path = _run(cache.write_credential("alice", "s3cret", URL))

    assert len(icacls.calls) == 1
    args, kwargs = icacls.calls[0]
    assert args == ("icacls", str(path), "/inheritance:r", "/grant:r", "bob & calc:F")
    assert "shell" not in kwargs
    assert cache.written_files == [path]


def test_windows_acl_nonzero_exit_only_warns(
    cache: SvnAuthCache, windows: None, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setattr(asyncio, "create_subprocess_exec", FakeIcacls(returncode=5))

    with caplog.at_level(logging.WARNING, logger="svn_wrapper.auth_cache"):
        path = _run(cache.write_credential("alice", "s3cret", URL))

    assert path.exists()
    assert "icacls exited with code 5" in caplog.text
    assert "Access is denied." in caplog.text


def test_windows_acl_spawn_failure_only_warns(
    cache: SvnAuthCache, windows: None, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setattr(asyncio, "create_subprocess_exec", FakeIcacls(error=FileNotFoundError(2, "icacls")))

    with caplog.at_level(logging.WARNING, logger="svn_wrapper.auth_cache"):
        path = _run(cache.write_credential("alice", "s3cret", URL))

    assert path == cache.path_for(URL)
    assert cache.written_files == [path]
    assert "Failed to set Windows ACL" in caplog.text
