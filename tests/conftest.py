"""Shared test fixtures."""

from __future__ import annotations

import stat
import sys
import textwrap
from dataclasses import replace
from pathlib import Path

import pytest

from svn_wrapper.config import Settings

_FAKE_SVN = textwrap.dedent(
    """\
    import json
    import os
    import sys
    import time

    mode = os.environ.get("FAKE_SVN_MODE", "ok")
    args = sys.argv[1:]

    if args == ["--version", "--quiet"]:
        print(os.environ.get("FAKE_SVN_VERSION", "1.14.2"))
    elif mode == "ok":
        print(json.dumps({"args": args, "lc_all": os.environ.get("LC_ALL"), "lang": os.environ.get("LANG")}))
    elif mode == "stdin":
        sys.stdout.write(sys.stdin.read())
    elif mode == "warn":
        sys.stderr.write("svn: warning: W155010: first\\nsvn: warning: W155010: second\\n")
        print("done")
    elif mode == "fail":
        sys.stdout.write("partial")
        sys.stderr.write(os.environ["FAKE_SVN_STDERR"])
        sys.exit(int(os.environ.get("FAKE_SVN_EXIT", "1")))
    elif mode == "sleep":
        with open(os.environ["FAKE_SVN_PIDFILE"], "w") as handle:
            handle.write(str(os.getpid()))
        time.sleep(30)
    elif mode == "latin1":
        sys.stdout.buffer.write("caf\\xe9 cr\\xe8me br\\xfbl\\xe9e, d\\xe9j\\xe0 vu\\n".encode("latin-1"))
    """
)


@pytest.fixture()
def fake_svn(tmp_path: Path) -> Path:
    """Executable standing in for the svn client."""

    if sys.platform == "win32":
        pytest.skip("fake svn script requires a POSIX shebang")
    script = tmp_path / "fake-svn"
    script.write_text(f"#!{sys.executable}\n{_FAKE_SVN}", "utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture()
def settings(fake_svn: Path, tmp_path: Path) -> Settings:
    return replace(
        Settings(),
        svn_path=str(fake_svn),
        command_timeout=10.0,
        config_dir=tmp_path / "subversion",
    )


@pytest.fixture()
def quick_settings(tmp_path: Path) -> Settings:
    """Settings without retry backoff."""

    return Settings(
        account_backoff=(0.0, 0.0),
        prompt_backoff=(0.0, 0.0),
        config_dir=tmp_path / "subversion",
    )
