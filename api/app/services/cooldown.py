from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CooldownStore(ABC):
    """Key/expiry store backing the per-village scan cooldown."""

    @abstractmethod
    async def claim(self, key: str, ttl: timedelta) -> datetime | None:
        """Start a cooldown window for ``key`` unless one is already running.

        Returns ``None`` when the window was claimed, otherwise the expiry of the
        window that is still held. Check and claim happen as one step.
        """

    @abstractmethod
    async def release(self, key: str) -> None:
        """Drop a window claimed by this caller whose scan never got queued."""


class InMemoryCooldownStore(CooldownStore):
    """Process-local cooldowns; not shared between API instances."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._expiries: dict[str, datetime] = {}

    async def claim(self, key: str, ttl: timedelta) -> datetime | None:
        # no await between the lookup and the write
        now = self._clock()
        expires_at = self._expiries.get(key)
        if expires_at is not None and expires_at > now:
            return expires_at
        self._expiries[key] = now + ttl
        return None

    async def release(self, key: str) -> None:
        self._expiries.pop(key, None)


class PostgresCooldownStore(CooldownStore):
    """Cooldowns kept in ``village_link_scan_cooldowns`` so every instance sees them."""

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    async def claim(self, key: str, ttl: timedelta) -> datetime | None:
        return await self._repository.claim_scan_cooldown(key, ttl)

    async def release(self, key: str) -> None:
        await self._repository.release_scan_cooldown(key)
