"""Per-(member, branch) token cache with single-flight refresh.

Each cache entry holds one token and one explicit refresh state, ``Idle`` or
``Refreshing(task)``.  Callers that find an entry refreshing await the same
task through ``asyncio.shield``, so concurrent requests trigger exactly one
round trip to the token authority and a cancelled waiter never cancels the
shared refresh.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from migration_gateway.auth.token_authority import (
    ACCESS_TOKEN_HEADER,
    AUTH_METHOD_API_KEY,
    CredentialSource,
    OrganizationCredentials,
    TokenAuthority,
    build_api_key_token,
)
from migration_gateway.core.errors import ClassifiedError
from migration_gateway.resilience.error_classifier import classify

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Refreshing:
    task: asyncio.Task


@dataclass
class TokenCacheEntry:
    token: str | None = None
    expires_at: float | None = None
    state: Idle | Refreshing = field(default_factory=Idle)


@dataclass
class CacheMetrics:
    """Counters for cache behaviour."""

    hits: int = 0
    misses: int = 0
    refreshes: int = 0
    refresh_failures: int = 0
    joined_refreshes: int = 0

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.refreshes = 0
        self.refresh_failures = 0
        self.joined_refreshes = 0


class CredentialCache:
    """Token cache for the new provider, keyed by ``(member_id, branch_id)``.

    Args:
        authority:      ``TokenAuthority`` that issues tokens.
        credentials:    ``CredentialSource`` consulted on refresh when the
                        caller does not pass credentials.
        ttl:            Token lifetime in seconds when the authority gives
                        none.
        refresh_buffer: Tokens are refreshed this many seconds early.
        clock:          Monotonic clock for expiry.
    """

    def __init__(
        self,
        authority: TokenAuthority,
        credentials: CredentialSource | None = None,
        *,
        ttl: float = 300.0,
        refresh_buffer: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.authority = authority
        self.credentials = credentials
        self.ttl = ttl
        self.refresh_buffer = refresh_buffer
        self._clock = clock
        self._entries: dict[CacheKey, TokenCacheEntry] = {}
        self.metrics = CacheMetrics()
        self.last_error: str | None = None

    def _entry(self, member_id: str, branch_id: str) -> TokenCacheEntry:
        key = (member_id, branch_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = TokenCacheEntry()
            self._entries[key] = entry
        return entry

    def _is_fresh(self, entry: TokenCacheEntry) -> bool:
        if entry.token is None or entry.expires_at is None:
            return False
        return self._clock() < entry.expires_at - self.refresh_buffer

    async def get_token(
        self,
        member_id: str,
        branch_id: str,
        credentials: OrganizationCredentials | None = None,
    ) -> str:
        """Return a valid token, refreshing it if needed.

        Raises:
            ClassifiedError: The refresh failed; the cached token is cleared.
        """
        entry = self._entry(member_id, branch_id)
        if self._is_fresh(entry):
            self.metrics.hits += 1
            return entry.token  # type: ignore[return-value]

        self.metrics.misses += 1
        if isinstance(entry.state, Refreshing):
            self.metrics.joined_refreshes += 1
            task = entry.state.task
        else:
            task = asyncio.ensure_future(self._refresh(member_id, branch_id, entry, credentials))
            task.add_done_callback(_consume_exception)
            entry.state = Refreshing(task)
        return await asyncio.shield(task)

    async def force_refresh(
        self,
        member_id: str,
        branch_id: str,
        credentials: OrganizationCredentials | None = None,
    ) -> str:
        """Drop the cached token and fetch a new one (joins an in-flight refresh)."""
        logger.info("Force refreshing token for %s:%s", member_id, branch_id)
        entry = self._entry(member_id, branch_id)
        entry.token = None
        entry.expires_at = None
        return await self.get_token(member_id, branch_id, credentials)

    def clear(self, member_id: str | None = None, branch_id: str | None = None) -> None:
        """Drop one entry, or every entry when no key is given.

        Entries with a refresh in flight keep their ``Refreshing`` state (only
        the token is dropped) so later callers still join that refresh.
        """
        if member_id is not None and branch_id is not None:
            logger.info("Clearing token cache for %s:%s", member_id, branch_id)
            keys = [(member_id, branch_id)]
        else:
            logger.info("Clearing all token caches (%d entries)", len(self._entries))
            keys = list(self._entries)
        for key in keys:
            entry = self._entries.get(key)
            if entry is None:
                continue
            if isinstance(entry.state, Refreshing):
                entry.token = None
                entry.expires_at = None
            else:
                del self._entries[key]

    def health(self) -> dict[str, Any]:
        """Token-authority health summary for ``/health``.  Never includes tokens."""
        return {
            "entries": len(self._entries),
            "valid_tokens": sum(1 for entry in self._entries.values() if self._is_fresh(entry)),
            "refreshing": sum(1 for entry in self._entries.values() if isinstance(entry.state, Refreshing)),
            "refreshes": self.metrics.refreshes,
            "refresh_failures": self.metrics.refresh_failures,
            "last_error": self.last_error,
        }

    def info(self, member_id: str, branch_id: str) -> dict[str, Any]:
        """Debug snapshot of one entry.  Never includes the token itself."""
        entry = self._entries.get((member_id, branch_id)) or TokenCacheEntry()
        now = self._clock()
        expires_in = None if entry.expires_at is None else max(0.0, entry.expires_at - now)
        return {
            "member_id": member_id,
            "branch_id": branch_id,
            "has_token": entry.token is not None,
            "is_valid": self._is_fresh(entry),
            "is_refreshing": isinstance(entry.state, Refreshing),
            "expires_in_seconds": None if expires_in is None else round(expires_in, 1),
        }

    async def auth_headers(self, credentials: OrganizationCredentials) -> dict[str, str]:
        """Headers for a new-provider call: static API key or cached token."""
        if credentials.method == AUTH_METHOD_API_KEY:
            return {ACCESS_TOKEN_HEADER: build_api_key_token(credentials)}
        token = await self.get_token(credentials.member_id, credentials.branch_id, credentials)
        return {ACCESS_TOKEN_HEADER: token}

    async def _refresh(
        self,
        member_id: str,
        branch_id: str,
        entry: TokenCacheEntry,
        credentials: OrganizationCredentials | None,
    ) -> str:
        self.metrics.refreshes += 1
        try:
            if credentials is None:
                if self.credentials is None:
                    raise ClassifiedError.configuration(
                        "No credential source configured",
                        config_key="credentials",
                        expected="a CredentialSource",
                    )
                credentials = await self.credentials.lookup(member_id, branch_id)
            issued = await self.authority.issue(credentials)
        except Exception as exc:
            entry.token = None
            entry.expires_at = None
            self.metrics.refresh_failures += 1
            error = classify(exc, "new", {"member_id": member_id, "branch_id": branch_id})
            self.last_error = f"{error.kind.value}: {error.message}"
            logger.error(
                "Token refresh failed for %s:%s: %s (kind=%s)",
                member_id,
                branch_id,
                error.message,
                error.kind.value,
            )
            raise error
        else:
            entry.token = issued.token
            entry.expires_at = self._clock() + (issued.expires_in or self.ttl)
            logger.info("Token cached for %s:%s", member_id, branch_id)
            return issued.token
        finally:
            entry.state = Idle()


def _consume_exception(task: asyncio.Task) -> None:
    # Waiters may all have been cancelled; mark the exception as retrieved
    if not task.cancelled():
        task.exception()
