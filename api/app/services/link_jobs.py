from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from app.core.config import get_settings
from app.services.background import BackgroundTaskPool
from app.services.cooldown import CooldownStore, InMemoryCooldownStore, PostgresCooldownStore, utc_now
from app.services.link_scoring import (
    CONFIDENCE_THRESHOLD,
    ITEM_TYPES,
    MATCH_MODES,
    ScoredCandidate,
    VillageSnapshot,
    score_pool,
)
from app.services.repository import (
    RepositoryNotFoundError,
    RepositoryValidationError,
    get_repository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

BULK_IMPORT_REASON = "Bulk import"


class LinkScanRateLimitedError(Exception):
    """Raised when a village is still inside the cooldown of a previous scan."""

    def __init__(self, wait_minutes: int) -> None:
        self.wait_minutes = wait_minutes
        super().__init__(f"Rate limited. Please wait {wait_minutes} minutes.")


@dataclass(slots=True)
class CommitResult:
    committed_count: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BulkImportRowError:
    row: int
    error: str


@dataclass(slots=True)
class BulkImportResult:
    success_count: int = 0
    errors: list[BulkImportRowError] = field(default_factory=list)


class LinkJobRunner:
    def __init__(
        self,
        *,
        repository: Any,
        cooldowns: CooldownStore,
        tasks: BackgroundTaskPool,
        cooldown_minutes: int = 10,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.cooldowns = cooldowns
        self.tasks = tasks
        self.cooldown = timedelta(minutes=max(0, cooldown_minutes))
        self.confidence_threshold = confidence_threshold
        self._clock = clock

    async def trigger(
        self,
        *,
        village_id: str,
        mode: str,
        radius_meters: int,
        limit: int,
        actor_user_id: str | None,
    ) -> dict[str, Any]:
        """Queue a scan for a village and return the job without waiting for it."""
        if mode not in MATCH_MODES:
            raise RepositoryValidationError(f"mode must be one of: {', '.join(MATCH_MODES)}")
        if limit < 1:
            raise RepositoryValidationError("limit must be positive")

        held_until = await self.cooldowns.claim(village_id, self.cooldown)
        if held_until is not None:
            remaining_seconds = (held_until - self._clock()).total_seconds()
            raise LinkScanRateLimitedError(max(1, math.ceil(remaining_seconds / 60)))

        try:
            village = await self.repository.get_village(village_id)
            job = await self.repository.create_link_job(
                village_id=village.id,
                mode=mode,
                radius_meters=radius_meters,
                limit=limit,
                actor_user_id=actor_user_id,
            )
        except Exception:
            await self.cooldowns.release(village_id)
            raise

        logger.info(
            "link job queued job_id=%s village_id=%s mode=%s limit=%s",
            job["id"],
            village.id,
            mode,
            limit,
        )
        self.tasks.submit(f"link-job-{job['id']}", lambda: self.execute(job, village))
        return job

    async def execute(self, job: Mapping[str, Any], village: VillageSnapshot) -> None:
        job_id = job["id"]
        with tracer.start_as_current_span("link_job.execute") as span:
            span.set_attribute("link_job.id", job_id)
            span.set_attribute("link_job.village_id", village.id)
            span.set_attribute("link_job.mode", job["mode"])
            try:
                await self.repository.mark_link_job_running(job_id)
                batch = await self._collect_suggestions(job, village)
                await self.repository.complete_link_job(
                    job_id=job_id,
                    village_id=village.id,
                    suggestions=batch,
                )
            except Exception as exc:
                logger.exception("link job failed job_id=%s village_id=%s", job_id, village.id)
                span.record_exception(exc)
                await self._mark_failed(job_id, exc)
                return

            span.set_attribute("link_job.suggestion_count", len(batch))
            logger.info(
                "link job finished job_id=%s village_id=%s suggestions=%s",
                job_id,
                village.id,
                len(batch),
            )

    async def get_job(self, job_id: str) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        job = await self.repository.get_link_job(job_id)
        suggestions = await self.repository.list_job_suggestions(job_id)
        suggestions.sort(key=lambda row: row["confidence"], reverse=True)
        return job, suggestions

    async def list_jobs(self, *, village_id: str, limit: int) -> list[dict[str, Any]]:
        return await self.repository.list_link_jobs(village_id=village_id, limit=limit)

    async def commit(
        self,
        *,
        job_id: str,
        suggestion_ids: Sequence[str],
        actor_user_id: str | None,
    ) -> CommitResult:
        """Turn suggestions of one job into links; each suggestion succeeds or fails alone."""
        unique_ids = list(dict.fromkeys(suggestion_ids))
        suggestions = await self.repository.get_job_suggestions(job_id=job_id, suggestion_ids=unique_ids)
        if not suggestions:
            raise RepositoryNotFoundError("suggestions not found")

        result = CommitResult()
        reason = f"Auto-linked from job {job_id}"
        for suggestion in suggestions:
            try:
                await self.repository.commit_suggestion(
                    suggestion=suggestion,
                    actor_user_id=actor_user_id,
                    reason=reason,
                )
            except Exception:
                logger.exception(
                    "suggestion commit failed job_id=%s suggestion_id=%s",
                    job_id,
                    suggestion["id"],
                )
                result.errors.append(f"Failed to commit {suggestion['item_type']}:{suggestion['item_id']}")
                continue
            result.committed_count += 1

        logger.info(
            "suggestions committed job_id=%s committed=%s errors=%s",
            job_id,
            result.committed_count,
            len(result.errors),
        )
        return result

    async def rollback(self, *, audit_id: str, reason: str | None, actor_user_id: str | None) -> dict[str, Any]:
        entry = await self.repository.rollback_audit_entry(
            audit_id=audit_id,
            actor_user_id=actor_user_id,
            reason=reason,
        )
        logger.info(
            "audit entry rolled back audit_id=%s rollback_id=%s village_id=%s item=%s:%s",
            audit_id,
            entry["id"],
            entry["village_id"],
            entry["item_type"],
            entry["item_id"],
        )
        return entry

    async def bulk_import(
        self,
        *,
        village_id: str,
        items: Sequence[Mapping[str, Any]],
        actor_user_id: str | None,
    ) -> BulkImportResult:
        """Apply explicit links row by row; rows are numbered from 1 in errors."""
        result = BulkImportResult()
        for row_number, item in enumerate(items, start=1):
            item_type = item.get("item_type")
            if not item_type or item_type not in ITEM_TYPES:
                result.errors.append(BulkImportRowError(row=row_number, error=f"Invalid item_type: {item_type}"))
                continue
            item_id = str(item.get("item_id") or "").strip()
            if not item_id:
                result.errors.append(BulkImportRowError(row=row_number, error="Missing item_id"))
                continue

            try:
                await self.repository.upsert_link(
                    village_id=village_id,
                    item_type=item_type,
                    item_id=item_id,
                    promote=_coerce_promote(item.get("promote")),
                    priority=_coerce_priority(item.get("priority")),
                    actor_user_id=actor_user_id,
                    reason=BULK_IMPORT_REASON,
                    action="link",
                )
            except Exception as exc:
                logger.warning("bulk import row failed village_id=%s row=%s error=%s", village_id, row_number, exc)
                result.errors.append(BulkImportRowError(row=row_number, error=str(exc) or "Unknown error"))
                continue
            result.success_count += 1

        logger.info(
            "bulk import applied village_id=%s success=%s errors=%s",
            village_id,
            result.success_count,
            len(result.errors),
        )
        return result

    async def _collect_suggestions(self, job: Mapping[str, Any], village: VillageSnapshot) -> list[ScoredCandidate]:
        linked = await self.repository.list_linked_item_keys(village.id)
        batch: list[ScoredCandidate] = []
        for item_type in ITEM_TYPES:
            candidates = await self.repository.fetch_candidates(item_type=item_type, limit=job["limit"])
            batch.extend(
                score_pool(
                    job["mode"],
                    village,
                    candidates,
                    exclude=linked,
                    threshold=self.confidence_threshold,
                )
            )
        return batch

    async def _mark_failed(self, job_id: str, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        try:
            await self.repository.fail_link_job(job_id=job_id, error_message=message)
        except Exception:
            logger.exception("could not mark link job failed job_id=%s", job_id)


def _coerce_promote(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def _coerce_priority(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return 0
    return int(parsed) if math.isfinite(parsed) else 0


@lru_cache
def get_link_job_runner() -> LinkJobRunner:
    settings = get_settings()
    repository = get_repository()
    cooldowns: CooldownStore
    if settings.cooldown_backend == "postgres":
        cooldowns = PostgresCooldownStore(repository)
    else:
        cooldowns = InMemoryCooldownStore()
    return LinkJobRunner(
        repository=repository,
        cooldowns=cooldowns,
        tasks=BackgroundTaskPool(max_concurrency=settings.job_max_concurrency),
        cooldown_minutes=settings.scan_cooldown_minutes,
        confidence_threshold=settings.scan_confidence_threshold,
    )
