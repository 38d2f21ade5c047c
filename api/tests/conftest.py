from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

import app.core.security as security
from app.core.config import get_settings
from app.main import app
from app.services.background import BackgroundTaskPool
from app.services.cooldown import InMemoryCooldownStore
from app.services.link_jobs import LinkJobRunner, get_link_job_runner
from app.services.link_scoring import ITEM_TYPES, CandidateEntity, ScoredCandidate, VillageSnapshot
from app.services.repository import (
    RepositoryNotFoundError,
    RepositoryValidationError,
    get_repository,
)

VILLAGE_ID = "11111111-1111-1111-1111-111111111111"
DISTRICT_ID = "d1d1d1d1-0000-0000-0000-000000000001"
OTHER_DISTRICT_ID = "d2d2d2d2-0000-0000-0000-000000000002"

USERS = {
    "super-token": ("00000000-0000-0000-0000-0000000000a1", "super_admin"),
    "admin-token": ("00000000-0000-0000-0000-0000000000a2", "admin"),
    "content-token": ("00000000-0000-0000-0000-0000000000a3", "content_manager"),
    "viewer-token": ("00000000-0000-0000-0000-0000000000a4", "viewer"),
    "noprofile-token": ("00000000-0000-0000-0000-0000000000a5", None),
}


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeLinkRepository:
    """In-memory stand-in mirroring PostgresRepository's link methods."""

    def __init__(self) -> None:
        self.roles: dict[str, str] = {user_id: role for user_id, role in USERS.values() if role}
        self.villages: dict[str, VillageSnapshot] = {
            VILLAGE_ID: VillageSnapshot(id=VILLAGE_ID, name="Kanda", district_id=DISTRICT_ID, slug="kanda"),
        }
        self.candidates: dict[str, list[CandidateEntity]] = {item_type: [] for item_type in ITEM_TYPES}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.suggestions: list[dict[str, Any]] = []
        self.links: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.audit: list[dict[str, Any]] = []
        self.cooldowns: dict[str, datetime] = {}
        self.fail_fetch_for: set[str] = set()
        self.fail_create_job = False
        self.fail_complete = False
        self.fail_commit_item_ids: set[str] = set()
        self.status_history: dict[str, list[str]] = {}
        self._tick = 0

    async def close(self) -> None:
        return None

    async def get_profile_role(self, user_id: str) -> str | None:
        return self.roles.get(user_id)

    async def get_village(self, village_id: str) -> VillageSnapshot:
        village = self.villages.get(village_id)
        if village is None:
            raise RepositoryNotFoundError("village not found")
        return village

    async def create_link_job(
        self,
        *,
        village_id: str,
        mode: str,
        radius_meters: int,
        limit: int,
        actor_user_id: str | None,
    ) -> dict[str, Any]:
        # yield like a real insert so concurrent triggers interleave
        await asyncio.sleep(0)
        if self.fail_create_job:
            raise RuntimeError("job insert failed")
        job = {
            "id": str(uuid4()),
            "village_id": village_id,
            "mode": mode,
            "radius_meters": radius_meters,
            "limit": limit,
            "status": "queued",
            "created_by": actor_user_id,
            "created_at": self._now(),
            "completed_at": None,
            "suggestion_count": 0,
            "error_message": None,
        }
        self.jobs[job["id"]] = job
        self.status_history[job["id"]] = ["queued"]
        return dict(job)

    async def mark_link_job_running(self, job_id: str) -> None:
        self._set_job_status(job_id, "running")

    async def complete_link_job(
        self,
        *,
        job_id: str,
        village_id: str,
        suggestions: list[ScoredCandidate],
    ) -> dict[str, Any]:
        if self.fail_complete:
            raise RuntimeError("suggestion batch write failed")
        for scored in suggestions:
            self.suggestions.append(
                {
                    "id": str(uuid4()),
                    "job_id": job_id,
                    "village_id": village_id,
                    "item_type": scored.candidate.item_type,
                    "item_id": scored.candidate.item_id,
                    "confidence": scored.confidence,
                    "source": scored.source,
                    "candidate_data": scored.snapshot().to_dict(),
                    "status": "pending",
                    "created_at": self._now(),
                }
            )
        job = self.jobs[job_id]
        job["suggestion_count"] = len(suggestions)
        job["completed_at"] = self._now()
        self._set_job_status(job_id, "finished")
        return dict(job)

    async def fail_link_job(self, *, job_id: str, error_message: str) -> None:
        job = self.jobs[job_id]
        if job["status"] in {"queued", "running"}:
            job["error_message"] = error_message
            job["completed_at"] = self._now()
            self._set_job_status(job_id, "failed")

    async def get_link_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return dict(job)

    async def list_link_jobs(self, *, village_id: str, limit: int) -> list[dict[str, Any]]:
        rows = [dict(job) for job in self.jobs.values() if job["village_id"] == village_id]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows[:limit]

    async def list_job_suggestions(self, job_id: str) -> list[dict[str, Any]]:
        rows = [dict(row) for row in self.suggestions if row["job_id"] == job_id]
        return sorted(rows, key=lambda row: -row["confidence"])

    async def get_job_suggestions(self, *, job_id: str, suggestion_ids: list[str]) -> list[dict[str, Any]]:
        wanted = set(suggestion_ids)
        return [dict(row) for row in self.suggestions if row["job_id"] == job_id and row["id"] in wanted]

    async def list_linked_item_keys(self, village_id: str) -> set[tuple[str, str]]:
        return {(item_type, item_id) for (vid, item_type, item_id) in self.links if vid == village_id}

    async def fetch_candidates(self, *, item_type: str, limit: int) -> list[CandidateEntity]:
        if item_type in self.fail_fetch_for:
            raise RuntimeError(f"{item_type} pool unavailable")
        return list(self.candidates[item_type][:limit])

    async def commit_suggestion(
        self,
        *,
        suggestion: dict[str, Any],
        actor_user_id: str | None,
        reason: str,
    ) -> dict[str, Any]:
        if suggestion["item_id"] in self.fail_commit_item_ids:
            raise RuntimeError("link write failed")
        link = self._upsert(
            village_id=suggestion["village_id"],
            item_type=suggestion["item_type"],
            item_id=suggestion["item_id"],
            promote=None,
            priority=None,
            actor_user_id=actor_user_id,
            reason=reason,
            action="link",
        )
        for row in self.suggestions:
            if row["id"] == suggestion["id"]:
                row["status"] = "committed"
        return link

    async def upsert_link(
        self,
        *,
        village_id: str,
        item_type: str,
        item_id: str,
        promote: bool | None,
        priority: int | None,
        actor_user_id: str | None,
        reason: str | None,
        action: str | None = None,
    ) -> dict[str, Any]:
        if item_type not in ITEM_TYPES:
            raise RepositoryValidationError(f"Invalid item_type: {item_type}")
        if village_id not in self.villages:
            raise RepositoryNotFoundError("village not found")
        return self._upsert(
            village_id=village_id,
            item_type=item_type,
            item_id=item_id,
            promote=promote,
            priority=priority,
            actor_user_id=actor_user_id,
            reason=reason,
            action=action,
        )

    async def update_link(
        self,
        *,
        village_id: str,
        item_type: str,
        item_id: str,
        promote: bool | None,
        priority: int | None,
        status: str | None,
        actor_user_id: str | None,
        reason: str | None,
    ) -> dict[str, Any]:
        key = (village_id, item_type, item_id)
        existing = self.links.get(key)
        if existing is None:
            raise RepositoryNotFoundError("link not found")
        before = self._snapshot(existing)
        if promote is not None:
            existing["promote"] = promote
        if priority is not None:
            existing["priority"] = priority
        if status is not None:
            existing["status"] = status
        existing["updated_at"] = self._now()
        self._audit(key, "update", before, self._snapshot(existing), actor_user_id, reason)
        return dict(existing)

    async def unlink_link(
        self,
        *,
        village_id: str,
        item_type: str,
        item_id: str,
        actor_user_id: str | None,
        reason: str | None,
    ) -> dict[str, Any] | None:
        key = (village_id, item_type, item_id)
        existing = self.links.get(key)
        if existing is None or existing["status"] == "unlinked":
            return None
        before = self._snapshot(existing)
        existing["status"] = "unlinked"
        existing["updated_at"] = self._now()
        self._audit(key, "unlink", before, self._snapshot(existing), actor_user_id, reason)
        return dict(existing)

    async def list_links(self, *, village_id: str, include_unlinked: bool) -> list[dict[str, Any]]:
        rows = [
            dict(row)
            for (vid, _, _), row in self.links.items()
            if vid == village_id and (include_unlinked or row["status"] == "linked")
        ]
        rows.sort(key=lambda row: (-row["priority"], -row["created_at"].timestamp()))
        return rows

    async def list_audit_entries(self, *, village_id: str, limit: int) -> list[dict[str, Any]]:
        rows = [dict(row) for row in self.audit if row["village_id"] == village_id]
        return list(reversed(rows))[:limit]

    async def rollback_audit_entry(
        self,
        *,
        audit_id: str,
        actor_user_id: str | None,
        reason: str | None,
    ) -> dict[str, Any]:
        entry = next((row for row in self.audit if row["id"] == audit_id), None)
        if entry is None:
            raise RepositoryNotFoundError("audit entry not found")
        key = (entry["village_id"], entry["item_type"], entry["item_id"])
        before_state = entry["before_state"]
        if entry["action"] == "unlink":
            if before_state:
                self._restore({**before_state, "status": "linked"})
        elif before_state:
            self._restore(before_state)
        else:
            self.links.pop(key, None)
        return self._audit(
            key,
            "rollback",
            entry["after_state"],
            entry["before_state"],
            actor_user_id,
            reason or f"Rollback of audit {audit_id}",
        )

    async def claim_scan_cooldown(self, key: str, ttl: timedelta) -> datetime | None:
        now = datetime.now(timezone.utc)
        held_until = self.cooldowns.get(key)
        if held_until is not None and held_until > now:
            return held_until
        self.cooldowns[key] = now + ttl
        return None

    async def release_scan_cooldown(self, key: str) -> None:
        self.cooldowns.pop(key, None)

    def audit_for(self, item_type: str, item_id: str) -> list[dict[str, Any]]:
        return [row for row in self.audit if row["item_type"] == item_type and row["item_id"] == item_id]

    def _upsert(
        self,
        *,
        village_id: str,
        item_type: str,
        item_id: str,
        promote: bool | None,
        priority: int | None,
        actor_user_id: str | None,
        reason: str | None,
        action: str | None,
    ) -> dict[str, Any]:
        key = (village_id, item_type, item_id)
        existing = self.links.get(key)
        before = self._snapshot(existing) if existing else None
        now = self._now()
        if existing is None:
            existing = {
                "village_id": village_id,
                "item_type": item_type,
                "item_id": item_id,
                "status": "linked",
                "promote": bool(promote) if promote is not None else False,
                "priority": priority if priority is not None else 0,
                "created_by": actor_user_id,
                "created_at": now,
                "updated_at": now,
            }
            self.links[key] = existing
        else:
            existing["status"] = "linked"
            if promote is not None:
                existing["promote"] = promote
            if priority is not None:
                existing["priority"] = priority
            existing["updated_at"] = now
        self._audit(key, action or ("update" if before else "link"), before, self._snapshot(existing), actor_user_id, reason)
        return dict(existing)

    def _restore(self, snapshot: dict[str, Any]) -> None:
        key = (snapshot["village_id"], snapshot["item_type"], snapshot["item_id"])
        now = self._now()
        current = self.links.get(key)
        self.links[key] = {
            "village_id": snapshot["village_id"],
            "item_type": snapshot["item_type"],
            "item_id": snapshot["item_id"],
            "status": snapshot.get("status") or "linked",
            "promote": bool(snapshot.get("promote", False)),
            "priority": int(snapshot.get("priority") or 0),
            "created_by": snapshot.get("created_by"),
            "created_at": current["created_at"] if current else now,
            "updated_at": now,
        }

    def _audit(
        self,
        key: tuple[str, str, str],
        action: str,
        before_state: dict[str, Any] | None,
        after_state: dict[str, Any] | None,
        actor_user_id: str | None,
        reason: str | None,
    ) -> dict[str, Any]:
        village_id, item_type, item_id = key
        row = {
            "id": str(uuid4()),
            "village_id": village_id,
            "item_type": item_type,
            "item_id": item_id,
            "action": action,
            "before_state": before_state,
            "after_state": after_state,
            "changed_by": actor_user_id,
            "reason": reason,
            "created_at": self._now(),
        }
        self.audit.append(row)
        return dict(row)

    @staticmethod
    def _snapshot(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "village_id": row["village_id"],
            "item_type": row["item_type"],
            "item_id": row["item_id"],
            "status": row["status"],
            "promote": row["promote"],
            "priority": row["priority"],
            "created_by": row["created_by"],
        }

    def _set_job_status(self, job_id: str, status: str) -> None:
        self.jobs[job_id]["status"] = status
        self.status_history[job_id].append(status)

    def _now(self) -> datetime:
        self._tick += 1
        return datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._tick)


@pytest.fixture
def fake_repo() -> FakeLinkRepository:
    return FakeLinkRepository()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner(fake_repo: FakeLinkRepository, clock: FakeClock) -> LinkJobRunner:
    return LinkJobRunner(
        repository=fake_repo,
        cooldowns=InMemoryCooldownStore(clock=clock),
        tasks=BackgroundTaskPool(max_concurrency=2),
        cooldown_minutes=10,
        clock=clock,
    )


@pytest.fixture
def api_client(fake_repo: FakeLinkRepository, runner: LinkJobRunner, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    os.environ["VL_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["VL_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    async def _fake_fetch(*, token: str, **_: Any) -> dict[str, Any]:
        user_id, _role = USERS[token]
        return {"id": user_id}

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)
    app.dependency_overrides[get_repository] = lambda: fake_repo
    app.dependency_overrides[get_link_job_runner] = lambda: runner

    with TestClient(app) as client:
        yield client
        client.portal.call(runner.tasks.wait_idle)

    app.dependency_overrides.clear()
    os.environ.pop("VL_SUPABASE_URL", None)
    os.environ.pop("VL_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
