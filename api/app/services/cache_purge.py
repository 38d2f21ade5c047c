from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import httpx

from app.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CachePurgeOutcome:
    success: bool
    message: str


class CachePurgeNotifier:
    """Records village cache purge requests and forwards them to an optional webhook.

    Cache invalidation itself belongs to the hosting layer; this only passes the
    request along.
    """

    def __init__(self, webhook_url: str | None, timeout_seconds: float = 5.0) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds

    async def request_purge(
        self,
        *,
        village_slug: str,
        actor_user_id: str | None,
        client: httpx.AsyncClient | None = None,
    ) -> CachePurgeOutcome:
        logger.info("cache purge requested village_slug=%s actor=%s", village_slug, actor_user_id)
        if not self.webhook_url:
            return CachePurgeOutcome(success=True, message=f"Cache purge initiated for {village_slug}")

        payload = {"village_slug": village_slug, "requested_by": actor_user_id}
        try:
            if client is not None:
                response = await client.post(self.webhook_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                    response = await temp_client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("cache purge webhook failed village_slug=%s error=%s", village_slug, exc)
            return CachePurgeOutcome(success=False, message=f"Cache purge request for {village_slug} failed")

        return CachePurgeOutcome(success=True, message=f"Cache purge initiated for {village_slug}")


@lru_cache
def get_cache_purge_notifier() -> CachePurgeNotifier:
    settings = get_settings()
    return CachePurgeNotifier(
        webhook_url=settings.cache_purge_webhook_url,
        timeout_seconds=settings.cache_purge_timeout_seconds,
    )
