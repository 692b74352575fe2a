from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from svn_wrapper.errors import ErrorKind, SvnExecutionError
from svn_wrapper.finder import find_specific_svn, find_svn


def test_find_specific_svn_reads_version(fake_svn: Path) -> None:
    installation = asyncio.run(find_specific_svn(str(fake_svn)))

    assert installation.path == str(fake_svn)
    assert installation.version == "1.14.2"


def test_find_specific_svn_trims_vendor_suffix(fake_svn: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_SVN_VERSION", "1.6.17-SlikSvn-tag-1.6.17@1130898-X64")

    assert asyncio.run(find_specific_svn(str(fake_svn))).version == "1.6.17"


def test_find_svn_prefers_hint(fake_svn: Path) -> None:
    assert asyncio.run(find_svn(str(fake_svn))).path == str(fake_svn)


def test_find_svn_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))

    with pytest.raises(SvnExecutionError) as excinfo:
        asyncio.run(find_svn(str(tmp_path / "nope")))
    assert excinfo.value.kind is ErrorKind.TOOL_NOT_FOUND
