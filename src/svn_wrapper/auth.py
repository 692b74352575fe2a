"""Credential values and the authentication retry loop around svn operations."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Protocol, Tuple, TypeVar

from .config import Settings
from .errors import SvnExecutionError

if TYPE_CHECKING:  # pragma: no cover
    from .auth_cache import SvnAuthCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Credential:
    """Username and password pair handed to a single svn invocation."""

    username: str
    password: str

    @property
    def is_complete(self) -> bool:
        return bool(self.username) and bool(self.password)

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class StoredAccount:
    """Long-term account kept by an external secret store."""

    account: str
    password: str

    def to_credential(self) -> Credential:
        return Credential(self.account, self.password)

    def __repr__(self) -> str:
        return f"StoredAccount(account={self.account!r}, password='***')"


class AccountStore(Protocol):
    """Secret storage supplying stored accounts, newest first."""

    async def load(self) -> List[StoredAccount]:
        ...

    async def save(self, credential: Credential) -> None:
        ...


class MemoryAccountStore:
    """Account store kept in process memory; the newest account comes first."""

    def __init__(self, accounts: Optional[List[StoredAccount]] = None) -> None:
        self._accounts: List[StoredAccount] = list(accounts or ())

    async def load(self) -> List[StoredAccount]:
        return list(self._accounts)

    async def save(self, credential: Credential) -> None:
        entry = StoredAccount(credential.username, credential.password)
        self._accounts = [entry] + [acc for acc in self._accounts if acc.account != entry.account]


PromptCallback = Callable[[Optional[Credential], Optional[str]], Awaitable[Optional[Credential]]]
Operation = Callable[[Optional[Credential]], Awaitable[T]]


@dataclass(frozen=True)
class RetrySession:
    """State of one retry loop; each transition yields a new value."""

    max_attempts: int
    attempt: int = 0
    account_index: int = 0
    prompts: int = 0
    credential: Optional[Credential] = None

    def next_attempt(self) -> "RetrySession":
        return replace(self, attempt=self.attempt + 1)

    def with_account(self, account: StoredAccount) -> "RetrySession":
        return replace(self, credential=account.to_credential(), account_index=self.account_index + 1)

    def with_prompted(self, credential: Credential) -> "RetrySession":
        return replace(self, credential=credential, prompts=self.prompts + 1)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


class AuthOrchestrator:
    """Retry an operation across stored accounts and interactive prompts.

    Only authorization failures trigger a retry. The operation receives the
    credential for the current attempt and is never run concurrently within
    one call to :meth:`run`.
    """

    def __init__(
        self,
        *,
        store: Optional[AccountStore] = None,
        prompt: Optional[PromptCallback] = None,
        cache: Optional["SvnAuthCache"] = None,
        realm_url: Optional[str] = None,
        settings: Optional[Settings] = None,
        credential: Optional[Credential] = None,
    ) -> None:
        self._store = store
        self._prompt = prompt
        self._cache = cache
        self._realm_url = realm_url
        self._settings = settings or Settings()
        self._credential = credential

    @property
    def credential(self) -> Optional[Credential]:
        """Credential that last succeeded, or the one supplied at construction."""

        return self._credential

    def clear_credential(self) -> None:
        self._credential = None

    async def run(self, operation: Operation[T], *, max_attempts: Optional[int] = None) -> T:
        """Invoke ``operation`` until it succeeds or authentication retries run out.

        Without an explicit positive ``max_attempts`` (or
        ``Settings.max_auth_attempts``) a session may try every stored account
        and then prompt ``prompt_attempts`` times, plus one attempt for a
        credential supplied at construction.
        """

        accounts = await self._store.load() if self._store is not None else []
        session = RetrySession(
            max_attempts=self._attempt_limit(accounts, max_attempts),
            credential=self._credential,
        )
        if session.credential is None and accounts:
            session = session.with_account(accounts[0])

        while True:
            session = session.next_attempt()
            try:
                result = await operation(session.credential)
            except SvnExecutionError as exc:
                if not exc.is_auth_error:
                    raise
                session = await self._recover(session, accounts, exc)
                continue

            self._credential = session.credential
            await self._save(session.credential)
            return result

    def _attempt_limit(self, accounts: List[StoredAccount], override: Optional[int]) -> int:
        for limit in (override, self._settings.max_auth_attempts):
            if limit is not None and limit > 0:
                return limit
        limit = len(accounts) + max(self._settings.prompt_attempts, 0)
        if self._credential is not None:
            limit += 1
        return max(limit, 1)

    async def _recover(
        self,
        session: RetrySession,
        accounts: List[StoredAccount],
        error: SvnExecutionError,
    ) -> RetrySession:
        """Return the session for the next attempt or re-raise ``error``."""

        if session.exhausted:
            logger.info("Authentication failed after %d attempts", session.attempt)
            raise error

        if session.account_index < len(accounts):
            await _backoff(self._settings.account_backoff)
            account = accounts[session.account_index]
            logger.debug("Retrying with stored account %d of %d", session.account_index + 1, len(accounts))
            return session.with_account(account)

        if self._prompt is not None and session.prompts < self._settings.prompt_attempts:
            await _backoff(self._settings.prompt_backoff)
            prompted = await self._prompt(session.credential, self._realm_url)
            if prompted is None:
                logger.info("Authentication prompt cancelled")
                raise error
            return session.with_prompted(prompted)

        raise error

    async def _save(self, credential: Optional[Credential]) -> None:
        if not self._settings.save_auth_on_success:
            return
        if credential is None or not credential.is_complete:
            return
        if self._cache is not None and self._realm_url:
            await self._cache.write_credential(credential.username, credential.password, self._realm_url)
        if self._store is not None:
            await self._store.save(credential)


async def _backoff(bounds: Tuple[float, float]) -> None:
    low, high = bounds
    if high <= 0:
        return
    await asyncio.sleep(random.uniform(low, high))
