from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from app.core.config import get_settings
from app.services.link_scoring import ITEM_TYPES, CandidateEntity, ScoredCandidate, VillageSnapshot


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


LINK_STATUSES = {"linked", "unlinked"}
AUDIT_ACTIONS = {"link", "update", "unlink", "rollback"}

_LINK_COLUMNS = """
  village_id::text as village_id,
  item_type,
  item_id::text as item_id,
  status,
  promote,
  priority,
  created_by::text as created_by,
  created_at,
  updated_at
"""

_JOB_COLUMNS = """
  id::text as id,
  village_id::text as village_id,
  mode,
  radius_meters,
  scan_limit,
  status,
  created_by::text as created_by,
  created_at,
  completed_at,
  suggestion_count,
  error_message
"""

_SUGGESTION_COLUMNS = """
  id::text as id,
  job_id::text as job_id,
  village_id::text as village_id,
  item_type,
  item_id::text as item_id,
  confidence,
  source,
  candidate_data,
  status,
  created_at
"""

_AUDIT_COLUMNS = """
  id::text as id,
  village_id::text as village_id,
  item_type,
  item_id::text as item_id,
  action,
  before_state,
  after_state,
  changed_by::text as changed_by,
  reason,
  created_at
"""

_CANDIDATE_QUERIES: dict[str, str] = {
    "provider": """
        select
          id::text as id,
          name,
          village_id::text as village_id,
          district_id::text as district_id
        from tourism_providers
        where is_active = true
        order by id
        limit $1
    """,
    "listing": """
        select
          l.id::text as id,
          l.title as name,
          l.village_id::text as village_id,
          p.district_id::text as district_id
        from tourism_listings l
        left join tourism_providers p on p.id = l.provider_id
        where l.is_active = true
        order by l.id
        limit $1
    """,
    "package": """
        select
          id::text as id,
          title as name,
          destination,
          region,
          coalesce(village_ids, '{}')::text[] as village_ids
        from travel_packages
        where is_active = true
        order by id
        limit $1
    """,
    "product": """
        select
          lp.id::text as id,
          lp.name,
          lp.village_id::text as village_id,
          v.district_id::text as district_id
        from local_products lp
        left join villages v on v.id = lp.village_id
        where lp.is_active = true
        order by lp.id
        limit $1
    """,
}


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_profile_role(self, user_id: str) -> str | None:
        pool = await self._get_pool()
        try:
            role = await pool.fetchval("select role::text from profiles where id = $1::uuid", user_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return str(role) if role else None

    async def get_village(self, village_id: str) -> VillageSnapshot:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  id::text as id,
                  name,
                  slug,
                  district_id::text as district_id,
                  latitude,
                  longitude
                from villages
                where id = $1::uuid
                """,
                village_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("village not found") from exc
        if not row:
            raise RepositoryNotFoundError("village not found")
        return VillageSnapshot(
            id=row["id"],
            name=row["name"] or "",
            slug=row["slug"],
            district_id=row["district_id"],
            latitude=float(row["latitude"]) if row["latitude"] is not None else None,
            longitude=float(row["longitude"]) if row["longitude"] is not None else None,
        )

    async def create_link_job(
        self,
        *,
        village_id: str,
        mode: str,
        radius_meters: int,
        limit: int,
        actor_user_id: str | None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into village_link_jobs (village_id, mode, radius_meters, scan_limit, status, created_by)
            values ($1::uuid, $2, $3, $4, 'queued', $5::uuid)
            returning {_JOB_COLUMNS}
            """,
            village_id,
            mode,
            radius_meters,
            limit,
            actor_user_id,
        )
        return self._job_row_to_dict(row)

    async def mark_link_job_running(self, job_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update village_link_jobs
            set status = 'running'
            where id = $1::uuid
              and status = 'queued'
            """,
            job_id,
        )

    async def complete_link_job(
        self,
        *,
        job_id: str,
        village_id: str,
        suggestions: list[ScoredCandidate],
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if suggestions:
                    await conn.executemany(
                        """
                        insert into village_link_suggestions (
                          job_id,
                          village_id,
                          item_type,
                          item_id,
                          confidence,
                          source,
                          candidate_data,
                          status
                        )
                        values ($1::uuid, $2::uuid, $3, $4::uuid, $5, $6, $7::jsonb, 'pending')
                        """,
                        [
                            (
                                job_id,
                                village_id,
                                scored.candidate.item_type,
                                scored.candidate.item_id,
                                scored.confidence,
                                scored.source,
                                json.dumps(scored.snapshot().to_dict()),
                            )
                            for scored in suggestions
                        ],
                    )
                row = await conn.fetchrow(
                    f"""
                    update village_link_jobs
                    set
                      status = 'finished',
                      completed_at = now(),
                      suggestion_count = $2
                    where id = $1::uuid
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    len(suggestions),
                )
                if not row:
                    raise RepositoryNotFoundError("job not found")
                return self._job_row_to_dict(row)

    async def fail_link_job(self, *, job_id: str, error_message: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update village_link_jobs
            set
              status = 'failed',
              completed_at = now(),
              error_message = $2
            where id = $1::uuid
              and status in ('queued', 'running')
            """,
            job_id,
            error_message,
        )

    async def get_link_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from village_link_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def list_link_jobs(self, *, village_id: str, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from village_link_jobs
                where village_id = $1::uuid
                order by created_at desc
                limit $2
                """,
                village_id,
                limit,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid village id") from exc
        return [self._job_row_to_dict(row) for row in rows]

    async def list_job_suggestions(self, job_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SUGGESTION_COLUMNS}
            from village_link_suggestions
            where job_id = $1::uuid
            order by confidence desc, created_at asc
            """,
            job_id,
        )
        return [self._suggestion_row_to_dict(row) for row in rows]

    async def get_job_suggestions(self, *, job_id: str, suggestion_ids: list[str]) -> list[dict[str, Any]]:
        # malformed ids cannot belong to the job; drop them instead of failing the batch
        suggestion_ids = [value for value in suggestion_ids if _is_uuid(value)]
        if not suggestion_ids:
            return []
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_SUGGESTION_COLUMNS}
                from village_link_suggestions
                where job_id = $1::uuid
                  and id = any($2::uuid[])
                order by confidence desc
                """,
                job_id,
                suggestion_ids,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("suggestions not found") from exc
        return [self._suggestion_row_to_dict(row) for row in rows]

    async def list_linked_item_keys(self, village_id: str) -> set[tuple[str, str]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select item_type, item_id::text as item_id
            from village_links
            where village_id = $1::uuid
            """,
            village_id,
        )
        return {(row["item_type"], row["item_id"]) for row in rows}

    async def fetch_candidates(self, *, item_type: str, limit: int) -> list[CandidateEntity]:
        query = _CANDIDATE_QUERIES.get(item_type)
        if query is None:
            raise RepositoryValidationError(f"unknown item_type: {item_type}")
        pool = await self._get_pool()
        rows = await pool.fetch(query, limit)
        return [self._candidate_row_to_entity(item_type, row) for row in rows]

    async def commit_suggestion(
        self,
        *,
        suggestion: dict[str, Any],
        actor_user_id: str | None,
        reason: str,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                link = await self._upsert_link_with_audit(
                    conn=conn,
                    village_id=suggestion["village_id"],
                    item_type=suggestion["item_type"],
                    item_id=suggestion["item_id"],
                    promote=None,
                    priority=None,
                    actor_user_id=actor_user_id,
                    reason=reason,
                    action="link",
                )
                await conn.execute(
                    """
                    update village_link_suggestions
                    set status = 'committed'
                    where id = $1::uuid
                    """,
                    suggestion["id"],
                )
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
        """Link an item to a village and append the paired audit row.

        ``action`` defaults to ``update`` when a link row already existed and ``link``
        otherwise.
        """
        self._validate_item_type(item_type)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    return await self._upsert_link_with_audit(
                        conn=conn,
                        village_id=village_id,
                        item_type=item_type,
                        item_id=item_id,
                        promote=promote,
                        priority=priority,
                        actor_user_id=actor_user_id,
                        reason=reason,
                        action=action,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid village or item id") from exc
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("village not found") from exc

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
        self._validate_item_type(item_type)
        if status is not None and status not in LINK_STATUSES:
            raise RepositoryValidationError("status must be one of: linked, unlinked")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await self._fetch_link_for_update(
                        conn=conn,
                        village_id=village_id,
                        item_type=item_type,
                        item_id=item_id,
                    )
                    if not existing:
                        raise RepositoryNotFoundError("link not found")

                    row = await conn.fetchrow(
                        f"""
                        update village_links
                        set
                          promote = coalesce($4, promote),
                          priority = coalesce($5, priority),
                          status = coalesce($6, status),
                          updated_at = now()
                        where village_id = $1::uuid
                          and item_type = $2
                          and item_id = $3::uuid
                        returning {_LINK_COLUMNS}
                        """,
                        village_id,
                        item_type,
                        item_id,
                        promote,
                        priority,
                        status,
                    )
                    await self._insert_audit(
                        conn=conn,
                        village_id=village_id,
                        item_type=item_type,
                        item_id=item_id,
                        action="update",
                        before_state=self._link_snapshot(existing),
                        after_state=self._link_snapshot(row),
                        actor_user_id=actor_user_id,
                        reason=reason,
                    )
                    return self._link_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid village or item id") from exc

    async def unlink_link(
        self,
        *,
        village_id: str,
        item_type: str,
        item_id: str,
        actor_user_id: str | None,
        reason: str | None,
    ) -> dict[str, Any] | None:
        self._validate_item_type(item_type)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await self._fetch_link_for_update(
                        conn=conn,
                        village_id=village_id,
                        item_type=item_type,
                        item_id=item_id,
                    )
                    if not existing or existing["status"] == "unlinked":
                        return None

                    row = await conn.fetchrow(
                        f"""
                        update village_links
                        set
                          status = 'unlinked',
                          updated_at = now()
                        where village_id = $1::uuid
                          and item_type = $2
                          and item_id = $3::uuid
                        returning {_LINK_COLUMNS}
                        """,
                        village_id,
                        item_type,
                        item_id,
                    )
                    await self._insert_audit(
                        conn=conn,
                        village_id=village_id,
                        item_type=item_type,
                        item_id=item_id,
                        action="unlink",
                        before_state=self._link_snapshot(existing),
                        after_state=self._link_snapshot(row),
                        actor_user_id=actor_user_id,
                        reason=reason,
                    )
                    return self._link_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid village or item id") from exc

    async def list_links(self, *, village_id: str, include_unlinked: bool) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_LINK_COLUMNS}
                from village_links
                where village_id = $1::uuid
                  and ($2 or status = 'linked')
                order by priority desc, created_at desc
                """,
                village_id,
                include_unlinked,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid village id") from exc
        return [self._link_row_to_dict(row) for row in rows]

    async def list_audit_entries(self, *, village_id: str, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_AUDIT_COLUMNS}
                from village_link_audit
                where village_id = $1::uuid
                order by created_at desc, id desc
                limit $2
                """,
                village_id,
                limit,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid village id") from exc
        return [self._audit_row_to_dict(row) for row in rows]

    async def rollback_audit_entry(
        self,
        *,
        audit_id: str,
        actor_user_id: str | None,
        reason: str | None,
    ) -> dict[str, Any]:
        """Invert one audited link mutation and append a ``rollback`` audit row."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"select {_AUDIT_COLUMNS} from village_link_audit where id = $1::uuid",
                        audit_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError("audit entry not found")
                    entry = self._audit_row_to_dict(row)

                    await self._fetch_link_for_update(
                        conn=conn,
                        village_id=entry["village_id"],
                        item_type=entry["item_type"],
                        item_id=entry["item_id"],
                    )
                    before_state = entry["before_state"]
                    if entry["action"] == "unlink":
                        if before_state:
                            await self._restore_link(conn=conn, snapshot={**before_state, "status": "linked"})
                    elif before_state:
                        await self._restore_link(conn=conn, snapshot=before_state)
                    else:
                        await conn.execute(
                            """
                            delete from village_links
                            where village_id = $1::uuid
                              and item_type = $2
                              and item_id = $3::uuid
                            """,
                            entry["village_id"],
                            entry["item_type"],
                            entry["item_id"],
                        )

                    return await self._insert_audit(
                        conn=conn,
                        village_id=entry["village_id"],
                        item_type=entry["item_type"],
                        item_id=entry["item_id"],
                        action="rollback",
                        before_state=entry["after_state"],
                        after_state=entry["before_state"],
                        actor_user_id=actor_user_id,
                        reason=reason or f"Rollback of audit {audit_id}",
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("audit entry not found") from exc

    async def claim_scan_cooldown(self, key: str, ttl: timedelta) -> datetime | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            claimed = await conn.fetchval(
                """
                insert into village_link_scan_cooldowns (cooldown_key, expires_at)
                values ($1, now() + $2::interval)
                on conflict (cooldown_key) do update
                set expires_at = excluded.expires_at
                where village_link_scan_cooldowns.expires_at <= now()
                returning expires_at
                """,
                key,
                ttl,
            )
            if claimed is not None:
                return None
            held_until = await conn.fetchval(
                "select expires_at from village_link_scan_cooldowns where cooldown_key = $1",
                key,
            )
        return held_until or datetime.now(timezone.utc)

    async def release_scan_cooldown(self, key: str) -> None:
        pool = await self._get_pool()
        await pool.execute("delete from village_link_scan_cooldowns where cooldown_key = $1", key)

    async def _upsert_link_with_audit(
        self,
        *,
        conn: asyncpg.Connection,
        village_id: str,
        item_type: str,
        item_id: str,
        promote: bool | None,
        priority: int | None,
        actor_user_id: str | None,
        reason: str | None,
        action: str | None,
    ) -> dict[str, Any]:
        existing = await self._fetch_link_for_update(
            conn=conn,
            village_id=village_id,
            item_type=item_type,
            item_id=item_id,
        )
        row = await conn.fetchrow(
            f"""
            insert into village_links (village_id, item_type, item_id, status, promote, priority, created_by)
            values ($1::uuid, $2, $3::uuid, 'linked', coalesce($4, false), coalesce($5, 0), $6::uuid)
            on conflict (village_id, item_type, item_id) do update
            set
              status = 'linked',
              promote = coalesce($4, village_links.promote),
              priority = coalesce($5, village_links.priority),
              created_by = coalesce(village_links.created_by, excluded.created_by),
              updated_at = now()
            returning {_LINK_COLUMNS}
            """,
            village_id,
            item_type,
            item_id,
            promote,
            priority,
            actor_user_id,
        )
        await self._insert_audit(
            conn=conn,
            village_id=village_id,
            item_type=item_type,
            item_id=item_id,
            action=action or ("update" if existing else "link"),
            before_state=self._link_snapshot(existing) if existing else None,
            after_state=self._link_snapshot(row),
            actor_user_id=actor_user_id,
            reason=reason,
        )
        return self._link_row_to_dict(row)

    async def _restore_link(self, *, conn: asyncpg.Connection, snapshot: dict[str, Any]) -> None:
        await conn.execute(
            """
            insert into village_links (village_id, item_type, item_id, status, promote, priority, created_by)
            values ($1::uuid, $2, $3::uuid, $4, $5, $6, $7::uuid)
            on conflict (village_id, item_type, item_id) do update
            set
              status = excluded.status,
              promote = excluded.promote,
              priority = excluded.priority,
              created_by = excluded.created_by,
              updated_at = now()
            """,
            snapshot["village_id"],
            snapshot["item_type"],
            snapshot["item_id"],
            snapshot.get("status") or "linked",
            bool(snapshot.get("promote", False)),
            int(snapshot.get("priority") or 0),
            snapshot.get("created_by"),
        )

    async def _fetch_link_for_update(
        self,
        *,
        conn: asyncpg.Connection,
        village_id: str,
        item_type: str,
        item_id: str,
    ) -> asyncpg.Record | None:
        return await conn.fetchrow(
            f"""
            select {_LINK_COLUMNS}
            from village_links
            where village_id = $1::uuid
              and item_type = $2
              and item_id = $3::uuid
            for update
            """,
            village_id,
            item_type,
            item_id,
        )

    async def _insert_audit(
        self,
        *,
        conn: asyncpg.Connection,
        village_id: str,
        item_type: str,
        item_id: str,
        action: str,
        before_state: dict[str, Any] | None,
        after_state: dict[str, Any] | None,
        actor_user_id: str | None,
        reason: str | None,
    ) -> dict[str, Any]:
        if action not in AUDIT_ACTIONS:
            raise RepositoryValidationError(f"unknown audit action: {action}")
        row = await conn.fetchrow(
            f"""
            insert into village_link_audit (
              village_id,
              item_type,
              item_id,
              action,
              before_state,
              after_state,
              changed_by,
              reason
            )
            values ($1::uuid, $2, $3::uuid, $4, $5::jsonb, $6::jsonb, $7::uuid, $8)
            returning {_AUDIT_COLUMNS}
            """,
            village_id,
            item_type,
            item_id,
            action,
            json.dumps(before_state) if before_state is not None else None,
            json.dumps(after_state) if after_state is not None else None,
            actor_user_id,
            reason,
        )
        return self._audit_row_to_dict(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("VL_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _validate_item_type(item_type: str) -> None:
        if item_type not in ITEM_TYPES:
            raise RepositoryValidationError(f"Invalid item_type: {item_type}")

    @staticmethod
    def _candidate_row_to_entity(item_type: str, row: asyncpg.Record) -> CandidateEntity:
        keys = set(row.keys())
        if "village_ids" in keys:
            village_ids = tuple(str(value) for value in row["village_ids"] or [])
        else:
            village_ids = (row["village_id"],) if row["village_id"] else ()
        locality_text = tuple(
            str(row[key]) for key in ("destination", "region") if key in keys and row[key]
        )
        return CandidateEntity(
            item_type=item_type,  # type: ignore[arg-type]
            item_id=row["id"],
            name=row["name"] or "",
            village_ids=village_ids,
            district_id=row["district_id"] if "district_id" in keys else None,
            locality_text=locality_text,
        )

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "village_id": row["village_id"],
            "mode": row["mode"],
            "radius_meters": row["radius_meters"],
            "limit": row["scan_limit"],
            "status": row["status"],
            "created_by": row["created_by"],
            "created_at": row["created_at"],
            "completed_at": row["completed_at"],
            "suggestion_count": row["suggestion_count"] or 0,
            "error_message": row["error_message"],
        }

    @staticmethod
    def _suggestion_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "job_id": row["job_id"],
            "village_id": row["village_id"],
            "item_type": row["item_type"],
            "item_id": row["item_id"],
            "confidence": float(row["confidence"]),
            "source": row["source"],
            "candidate_data": _decode_json(row["candidate_data"]) or {},
            "status": row["status"],
            "created_at": row["created_at"],
        }

    @staticmethod
    def _link_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "village_id": row["village_id"],
            "item_type": row["item_type"],
            "item_id": row["item_id"],
            "status": row["status"],
            "promote": bool(row["promote"]),
            "priority": int(row["priority"] or 0),
            "created_by": row["created_by"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _link_snapshot(row: asyncpg.Record | dict[str, Any]) -> dict[str, Any]:
        return {
            "village_id": row["village_id"],
            "item_type": row["item_type"],
            "item_id": row["item_id"],
            "status": row["status"],
            "promote": bool(row["promote"]),
            "priority": int(row["priority"] or 0),
            "created_by": row["created_by"],
        }

    @staticmethod
    def _audit_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "village_id": row["village_id"],
            "item_type": row["item_type"],
            "item_id": row["item_id"],
            "action": row["action"],
            "before_state": _decode_json(row["before_state"]),
            "after_state": _decode_json(row["after_state"]),
            "changed_by": row["changed_by"],
            "reason": row["reason"],
            "created_at": row["created_at"],
        }


def _is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


def _decode_json(value: Any) -> dict[str, Any] | None:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    return value if isinstance(value, dict) else None


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
