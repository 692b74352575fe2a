"""Runtime configuration for svn execution and credential handling."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple, TypeVar

ENV_PREFIX = "SVN_WRAPPER_"

N = TypeVar("N", int, float)


@dataclass(frozen=True, slots=True)
class Settings:
    """Every option consumed by the executor, cache and auth orchestrator."""

    svn_path: str = "svn"
    command_timeout: float = 60.0
    use_system_keyring: bool = False
    save_auth_on_success: bool = True
    password_from_stdin: bool = False
    default_encoding: Optional[str] = None
    # None bounds a session by stored accounts plus prompt_attempts
    max_auth_attempts: Optional[int] = None
    prompt_attempts: int = 3
    account_backoff: Tuple[float, float] = (0.4, 0.6)
    prompt_backoff: Tuple[float, float] = (0.8, 1.2)
    config_dir: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from ``SVN_WRAPPER_*`` environment variables."""

        defaults = cls()
        config_dir = _env("CONFIG_DIR")
        return cls(
            svn_path=_env("SVN_PATH") or defaults.svn_path,
            command_timeout=_env_positive("COMMAND_TIMEOUT", float) or defaults.command_timeout,
            use_system_keyring=_env_bool("USE_SYSTEM_KEYRING", defaults.use_system_keyring),
            save_auth_on_success=_env_bool("SAVE_AUTH_ON_SUCCESS", defaults.save_auth_on_success),
            password_from_stdin=_env_bool("PASSWORD_FROM_STDIN", defaults.password_from_stdin),
            default_encoding=_env("DEFAULT_ENCODING") or defaults.default_encoding,
            max_auth_attempts=_env_positive("MAX_AUTH_ATTEMPTS", int),
            prompt_attempts=int(_env("PROMPT_ATTEMPTS") or defaults.prompt_attempts),
            account_backoff=_env_range("ACCOUNT_BACKOFF", defaults.account_backoff),
            prompt_backoff=_env_range("PROMPT_BACKOFF", defaults.prompt_backoff),
            config_dir=Path(config_dir).expanduser() if config_dir else None,
        )


def _env(name: str) -> Optional[str]:
    value = os.getenv(f"{ENV_PREFIX}{name}", "").strip()
    return value or None


def _env_positive(name: str, parse: Callable[[str], N]) -> Optional[N]:
    """Parse a numeric variable; zero or negative counts as unset."""

    raw = _env(name)
    if raw is None:
        return None
    value = parse(raw)
    return value if value > 0 else None


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_range(name: str, default: Tuple[float, float]) -> Tuple[float, float]:
    """Parse ``low,high`` (or a single value) into a backoff range."""

    raw = _env(name)
    if raw is None:
        return default
    parts = [float(part) for part in raw.split(",") if part.strip()]
    if not parts:
        return default
    if len(parts) == 1:
        return (parts[0], parts[0])
    return (min(parts[0], parts[1]), max(parts[0], parts[1]))
