"""Command line interface mapping to ``svn_wrapper`` operations."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional, Tuple

from .auth import AuthOrchestrator, Credential
from .auth_cache import SvnAuthCache, compute_realm, realm_hash
from .config import Settings
from .errors import SvnExecutionError, SvnWrapperError
from .finder import find_svn
from .svn import CommandRequest, Svn

try:  # Optional dependency group.
    import click
except ImportError:  # pragma: no cover - exercised only without the CLI extra.
    click = None  # type: ignore[assignment]


def _require_cli_dependencies() -> None:
    if click is None:
        message = (
            "svn-wrapper CLI dependencies are not installed. "
            "Install them with 'pip install svn-wrapper[cli]'."
        )
        print(message, file=sys.stderr)
        raise SystemExit(1)


if click is not None:
    _CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}

    def _settings_options(func):
        options = [
            click.option(
                "--svn-path",
                envvar="SVN_WRAPPER_SVN_PATH",
                help="svn executable to run. Defaults to 'svn' on PATH.",
            ),
            click.option(
                "--config-dir",
                type=click.Path(file_okay=False, path_type=Path),
                envvar="SVN_WRAPPER_CONFIG_DIR",
                help="svn configuration directory holding auth/svn.simple.",
            ),
            click.option(
                "--timeout",
                type=float,
                default=None,
                help="Command timeout in seconds.",
            ),
            click.option(
                "--system-keyring/--extension-store",
                default=None,
                help="Let svn use the OS credential store instead of passing the password.",
            ),
        ]
        for option in reversed(options):
            func = option(func)
        return func

    def _load_settings(
        svn_path: Optional[str],
        config_dir: Optional[Path],
        timeout: Optional[float],
        system_keyring: Optional[bool],
    ) -> Settings:
        settings = Settings.from_env()
        overrides = {}
        if svn_path:
            overrides["svn_path"] = svn_path
        if config_dir:
            overrides["config_dir"] = config_dir
        if timeout is not None and timeout > 0:
            overrides["command_timeout"] = timeout
        if system_keyring is not None:
            overrides["use_system_keyring"] = system_keyring
        return replace(settings, **overrides)

    async def _prompt_credential(
        previous: Optional[Credential],
        realm_url: Optional[str],
    ) -> Optional[Credential]:
        def ask() -> Optional[Credential]:
            target = f" for {realm_url}" if realm_url else ""
            try:
                username = click.prompt(
                    f"Username{target}",
                    default=previous.username if previous else None,
                    err=True,
                )
                password = click.prompt("Password", hide_input=True, err=True)
            except click.Abort:
                return None
            return Credential(username, password)

        return await asyncio.to_thread(ask)

    @click.group(context_settings=_CONTEXT_SETTINGS)
    @click.option("--verbose", "-v", is_flag=True, help="Show svn command lines and stderr.")
    def _cli(verbose: bool) -> None:
        """Execute svn commands with managed credentials."""

        logging.basicConfig(
            level=logging.INFO if verbose else logging.WARNING,
            format="%(message)s",
        )

    @_cli.command(context_settings=_CONTEXT_SETTINGS)
    @_settings_options
    @click.argument("args", nargs=-1, required=True)
    @click.option(
        "--cwd",
        "-C",
        default=Path("."),
        type=click.Path(file_okay=False, path_type=Path),
        show_default=True,
        help="Working copy to run svn in.",
    )
    @click.option("--username", "-u", envvar="SVN_WRAPPER_USERNAME", help="Username for the first attempt.")
    @click.option("--password", "-p", envvar="SVN_WRAPPER_PASSWORD", help="Password for the first attempt.")
    @click.option("--realm-url", help="Repository URL used to cache credentials on success.")
    @click.option(
        "--prompt/--no-prompt",
        default=True,
        show_default=True,
        help="Ask for credentials when authorization fails.",
    )
    @click.option(
        "--keep-credentials/--discard-credentials",
        default=False,
        show_default=True,
        help="Leave the svn.simple file written on success in place after the command.",
    )
    def run(  # type: ignore[misc]
        args: Tuple[str, ...],
        cwd: Path,
        username: Optional[str],
        password: Optional[str],
        realm_url: Optional[str],
        prompt: bool,
        keep_credentials: bool,
        svn_path: Optional[str],
        config_dir: Optional[Path],
        timeout: Optional[float],
        system_keyring: Optional[bool],
    ) -> None:
        """Execute an arbitrary svn command, retrying on authorization failures."""

        settings = _load_settings(svn_path, config_dir, timeout, system_keyring)
        svn = Svn(settings)
        cache = SvnAuthCache(settings.config_dir)
        credential = Credential(username, password or "") if username else None
        orchestrator = AuthOrchestrator(
            store=None,
            prompt=_prompt_credential if prompt else None,
            cache=cache if realm_url and not settings.use_system_keyring else None,
            realm_url=realm_url,
            settings=settings,
            credential=credential,
        )

        async def operation(current: Optional[Credential]):
            return await svn.exec(args, CommandRequest(cwd=cwd, credential=current))

        try:
            result = asyncio.run(orchestrator.run(operation))
        except SvnExecutionError as exc:
            if exc.stdout:
                click.echo(exc.stdout, nl=False)
            click.echo(f"Error: {exc}", err=True)
            raise SystemExit(exc.exit_code or 1) from exc
        except SvnWrapperError as exc:
            raise click.ClickException(str(exc)) from exc
        finally:
            if not keep_credentials:
                cache.dispose()

        if result.stdout:
            click.echo(result.stdout, nl=False)
        raise SystemExit(result.exit_code)

    @_cli.command(context_settings=_CONTEXT_SETTINGS)
    @click.argument("url")
    def realm(url: str) -> None:  # type: ignore[misc]
        """Print the authentication realm and cache file name for URL."""

        realm_string = compute_realm(url)
        click.echo(realm_string)
        click.echo(realm_hash(realm_string))

    @_cli.command(context_settings=_CONTEXT_SETTINGS)
    @_settings_options
    def version(  # type: ignore[misc]
        svn_path: Optional[str],
        config_dir: Optional[Path],
        timeout: Optional[float],
        system_keyring: Optional[bool],
    ) -> None:
        """Locate svn and print its path and version."""

        settings = _load_settings(svn_path, config_dir, timeout, system_keyring)
        try:
            installation = asyncio.run(find_svn(svn_path or settings.svn_path))
        except SvnWrapperError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"{installation.path} {installation.version}")

    @_cli.group(context_settings=_CONTEXT_SETTINGS)
    def cache() -> None:
        """Manage cached svn.simple credential files."""

    @cache.command("write", context_settings=_CONTEXT_SETTINGS)
    @_settings_options
    @click.argument("url")
    @click.option("--username", "-u", required=True, help="Username to cache.")
    @click.option(
        "--password",
        "-p",
        prompt=True,
        hide_input=True,
        envvar="SVN_WRAPPER_PASSWORD",
        help="Password to cache.",
    )
    def cache_write(  # type: ignore[misc]
        url: str,
        username: str,
        password: str,
        svn_path: Optional[str],
        config_dir: Optional[Path],
        timeout: Optional[float],
        system_keyring: Optional[bool],
    ) -> None:
        """Write a credential file for the realm of URL."""

        settings = _load_settings(svn_path, config_dir, timeout, system_keyring)
        auth_cache = SvnAuthCache(settings.config_dir)
        try:
            path = asyncio.run(auth_cache.write_credential(username, password, url))
        except SvnWrapperError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Credential written to {path}")

    @cache.command("read", context_settings=_CONTEXT_SETTINGS)
    @_settings_options
    @click.argument("url")
    def cache_read(  # type: ignore[misc]
        url: str,
        svn_path: Optional[str],
        config_dir: Optional[Path],
        timeout: Optional[float],
        system_keyring: Optional[bool],
    ) -> None:
        """Show the username cached for the realm of URL."""

        settings = _load_settings(svn_path, config_dir, timeout, system_keyring)
        auth_cache = SvnAuthCache(settings.config_dir)
        try:
            credential = asyncio.run(auth_cache.read_credential(url))
        except SvnWrapperError as exc:
            raise click.ClickException(str(exc)) from exc
        if credential is None:
            click.echo("No cached credential.", err=True)
            raise SystemExit(1)
        click.echo(credential.username)

    @cache.command("delete", context_settings=_CONTEXT_SETTINGS)
    @_settings_options
    @click.argument("url")
    def cache_delete(  # type: ignore[misc]
        url: str,
        svn_path: Optional[str],
        config_dir: Optional[Path],
        timeout: Optional[float],
        system_keyring: Optional[bool],
    ) -> None:
        """Remove the credential file for the realm of URL."""

        settings = _load_settings(svn_path, config_dir, timeout, system_keyring)
        auth_cache = SvnAuthCache(settings.config_dir)
        try:
            asyncio.run(auth_cache.delete_credential(url))
        except SvnWrapperError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo("Credential removed.")
else:
    _cli = None


def main() -> None:
    """Entry-point used by console_scripts."""

    _require_cli_dependencies()
    assert _cli is not None  # For type-checkers.
    _cli()


__all__ = ["main"]
