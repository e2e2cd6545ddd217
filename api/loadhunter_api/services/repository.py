from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from loadhunter_api.core.config import get_settings
from loadhunter_api.services.broker_checks import BROKER_DECISION_STATUSES, decision_window_start
from loadhunter_api.services.fingerprint import (
    FingerprintResult,
    broker_key_for,
    compute_fingerprint,
    normalize_decimal,
    normalize_text,
)
from loadhunter_api.services.lifecycle import MatchTransitionError, plan_match_action
from loadhunter_api.services.matching import HuntPlanSnapshot, LoadSnapshot, evaluate_plans

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


TERMINAL_QUEUE_STATUSES = {"done", "failed"}
GLOBAL_CURSOR_SCOPE = "global"
RECEIPT_COUNT_BUCKETS = ("1", "2", "3_5", "6_10", "gt_10")

_QUEUE_ITEM_COLUMNS = """
  id::text as id,
  tenant_id::text as tenant_id,
  source_message_id,
  thread_id,
  payload_url,
  payload,
  status,
  attempts,
  queued_at,
  claimed_at,
  claim_token::text as claim_token,
  claimed_by,
  processed_at,
  last_error
"""

_LOAD_ITEM_COLUMNS = """
  id::text as id,
  load_seq,
  tenant_id::text as tenant_id,
  queue_item_id::text as queue_item_id,
  source_message_id,
  received_at,
  parsed_data,
  pickup_lat,
  pickup_lng,
  broker_key,
  fingerprint,
  fingerprint_version,
  dedup_eligible,
  dedup_ineligible_reason,
  dedup_outcome,
  expires_at
"""

_MATCH_COLUMNS = """
  id::text as id,
  load_item_id::text as load_item_id,
  hunt_plan_id::text as hunt_plan_id,
  vehicle_id::text as vehicle_id,
  tenant_id::text as tenant_id,
  distance_miles,
  match_score,
  match_status,
  is_active,
  deactivated_reason,
  bid_rate,
  matched_at,
  updated_at
"""

_BROKER_CHECK_COLUMNS = """
  id::text as id,
  tenant_id::text as tenant_id,
  broker_key,
  window_start,
  status,
  leader_id,
  claimed_at,
  decided_at,
  contender_count,
  takeover_count,
  raw_response
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        queue_max_attempts: int = 5,
        queue_lease_seconds: int = 900,
        queue_backlog_cutoff_minutes: int | None = 60,
        queue_claim_max_batch: int = 100,
        match_default_radius_miles: float = 200.0,
        match_lookback_minutes: int = 240,
        match_ttl_minutes: int = 240,
        initial_backfill_minutes: int = 30,
        broker_check_window_minutes: int = 60,
        broker_check_leader_lease_seconds: int = 120,
        archive_retention_hours: int = 72,
        archive_batch_size: int = 2000,
        archive_max_batches: int = 50,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.queue_max_attempts = max(1, queue_max_attempts)
        self.queue_lease_seconds = max(1, queue_lease_seconds)
        self.queue_backlog_cutoff_minutes = (
            queue_backlog_cutoff_minutes if queue_backlog_cutoff_minutes and queue_backlog_cutoff_minutes > 0 else None
        )
        self.queue_claim_max_batch = max(1, queue_claim_max_batch)
        self.match_default_radius_miles = max(0.0, match_default_radius_miles)
        self.match_lookback_minutes = max(1, match_lookback_minutes)
        self.match_ttl_minutes = max(1, match_ttl_minutes)
        self.initial_backfill_minutes = max(1, initial_backfill_minutes)
        self.broker_check_window_minutes = max(1, broker_check_window_minutes)
        self.broker_check_leader_lease_seconds = max(1, broker_check_leader_lease_seconds)
        self.archive_retention_hours = max(1, archive_retention_hours)
        self.archive_batch_size = max(1, archive_batch_size)
        self.archive_max_batches = max(1, archive_max_batches)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    # Work queue ------------------------------------------------------------

    async def enqueue_item(
        self,
        *,
        source_message_id: str,
        tenant_id: str | None = None,
        thread_id: str | None = None,
        payload_url: str | None = None,
        payload: dict[str, Any] | None = None,
        queued_at: datetime | None = None,
    ) -> dict[str, Any]:
        normalized_source_id = self._coerce_text(source_message_id)
        if not normalized_source_id:
            raise RepositoryValidationError("source_message_id must be a non-empty string")
        normalized_payload_url = self._coerce_text(payload_url)
        if normalized_payload_url is None and payload is None:
            raise RepositoryValidationError("either payload_url or payload is required")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        insert into queue_items (
                          tenant_id,
                          source_message_id,
                          thread_id,
                          payload_url,
                          payload,
                          queued_at
                        )
                        values ($1::uuid, $2, $3, $4, $5::jsonb, coalesce($6::timestamptz, now()))
                        on conflict (coalesce(tenant_id, '00000000-0000-0000-0000-000000000000'::uuid), source_message_id)
                        do nothing
                        returning id::text as id, status
                        """,
                        self._coerce_text(tenant_id),
                        normalized_source_id,
                        self._coerce_text(thread_id),
                        normalized_payload_url,
                        json.dumps(payload) if payload is not None else None,
                        queued_at,
                    )
                    if row:
                        return {"item_id": row["id"], "created": True, "status": row["status"]}

                    existing = await conn.fetchrow(
                        """
                        select id::text as id, status
                        from queue_items
                        where tenant_id is not distinct from $1::uuid
                          and source_message_id = $2
                        """,
                        self._coerce_text(tenant_id),
                        normalized_source_id,
                    )
                    if not existing:
                        raise RepositoryConflictError("queue item was removed concurrently; retry enqueue")
                    return {"item_id": existing["id"], "created": False, "status": existing["status"]}
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("tenant_id must be a uuid") from exc

    async def claim_items(
        self,
        *,
        worker_id: str,
        batch_size: int,
        backlog: bool = False,
    ) -> dict[str, Any]:
        """Reap stale claims, then claim up to ``batch_size`` pending items.

        The normal path only sees items queued inside the backlog cutoff; the
        reconciliation path (``backlog=True``) only sees items older than it.
        """
        bounded_batch_size = max(1, min(batch_size, self.queue_claim_max_batch))
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                reaped = await self._reap_stale_items(conn, limit=self.queue_claim_max_batch)
                rows = await conn.fetch(
                    f"""
                    with candidates as (
                      select id
                      from queue_items
                      where status = 'pending'
                        and attempts < $2
                        and (
                          $3::int is null
                          or ($4::boolean = false and queued_at >= now() - ($3::int * interval '1 minute'))
                          or ($4::boolean = true and queued_at < now() - ($3::int * interval '1 minute'))
                        )
                      order by queued_at asc, id asc
                      limit $1
                      for update skip locked
                    )
                    update queue_items q
                    set
                      status = 'processing',
                      claimed_at = now(),
                      claim_token = gen_random_uuid(),
                      claimed_by = $5,
                      attempts = q.attempts + 1,
                      updated_at = now()
                    from candidates c
                    where q.id = c.id
                    returning {self._qualified_queue_columns("q")}
                    """,
                    bounded_batch_size,
                    self.queue_max_attempts,
                    self.queue_backlog_cutoff_minutes,
                    backlog,
                    worker_id,
                )

        items = sorted((self._queue_item_row_to_dict(row) for row in rows), key=lambda item: (item["queued_at"], item["id"]))
        for item in items:
            item["lease_seconds"] = self.queue_lease_seconds
            item["lease_expires_at"] = item["claimed_at"] + timedelta(seconds=self.queue_lease_seconds)
        if reaped["requeued"] or reaped["failed"]:
            logger.info(
                "reaped stale queue items requeued=%s failed=%s worker=%s",
                reaped["requeued"],
                reaped["failed"],
                worker_id,
            )
        return {"items": items, "reaped": reaped}

    async def reap_stale_items(
        self,
        *,
        limit: int,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, int]:
        bounded_limit = max(1, min(limit, 1000))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                reaped = await self._reap_stale_items(conn, limit=bounded_limit)
                await self._record_provenance_event(
                    conn,
                    entity_type="queue",
                    entity_id=None,
                    event_type="stale_reaped",
                    actor_type=actor_type,
                    actor_id=actor_id,
                    payload=reaped,
                )
                return reaped

    async def _reap_stale_items(self, conn: asyncpg.Connection, *, limit: int) -> dict[str, int]:
        rows = await conn.fetch(
            """
            with stale as (
              select id
              from queue_items
              where status = 'processing'
                and claimed_at < now() - ($1::int * interval '1 second')
              order by claimed_at asc
              limit $2
              for update skip locked
            )
            update queue_items q
            set
              status = case when q.attempts < $3 then 'pending' else 'failed' end,
              last_error = case
                when q.attempts < $3 then 'reaped_stale_processing_' || q.attempts::text
                else 'max_attempts_exceeded_after_stale_requeue'
              end,
              processed_at = case when q.attempts < $3 then null else now() end,
              claimed_at = null,
              claim_token = null,
              claimed_by = null,
              updated_at = now()
            from stale s
            where q.id = s.id
            returning q.status
            """,
            self.queue_lease_seconds,
            limit,
            self.queue_max_attempts,
        )
        requeued = sum(1 for row in rows if row["status"] == "pending")
        return {"requeued": requeued, "failed": len(rows) - requeued}

    async def complete_item(
        self,
        *,
        item_id: str,
        claim_token: str,
        parsed: dict[str, Any],
        pickup_lat: float | None = None,
        pickup_lng: float | None = None,
        received_at: datetime | None = None,
    ) -> dict[str, Any]:
        """Admit the extracted load, deduplicate it, match it and mark the item done.

        Everything happens in one transaction so a crash leaves the item in
        ``processing`` for the reaper and nothing half-applied.
        """
        if not isinstance(parsed, dict):
            raise RepositoryValidationError("parsed must be an object")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    item_row = await self._lock_claimed_item(
                        conn,
                        item_id=item_id,
                        claim_token=claim_token,
                        settled_statuses={"done"},
                    )
                    if item_row["status"] == "done":
                        return {
                            "item": self._queue_item_row_to_dict(item_row),
                            "already_completed": True,
                            "load": None,
                            "dedup_outcome": None,
                            "matches": [],
                        }

                    fingerprint = compute_fingerprint(parsed)
                    load_row, inserted = await self._upsert_load_item(
                        conn,
                        item_row=item_row,
                        parsed=parsed,
                        fingerprint=fingerprint,
                        pickup_lat=pickup_lat,
                        pickup_lng=pickup_lng,
                        received_at=received_at or item_row["queued_at"],
                    )
                    load = self._load_item_row_to_dict(load_row)
                    if inserted:
                        load["dedup_outcome"] = await self._check_and_record_content(
                            conn,
                            load_id=load["id"],
                            fingerprint=fingerprint,
                        )

                    matches: list[dict[str, Any]] = []
                    floor_position = await self._effective_floor(conn, tenant_id=load["tenant_id"])
                    if load["load_seq"] >= floor_position:
                        matches = await self._match_load(conn, load=load, actor_type="machine", actor_id=None)
                    else:
                        logger.info(
                            "load below floor skipped for matching load_id=%s load_seq=%s floor=%s",
                            load["id"],
                            load["load_seq"],
                            floor_position,
                        )

                    await self._record_cursor_progress(
                        conn,
                        scope_key=load["tenant_id"] or GLOBAL_CURSOR_SCOPE,
                        position=load["load_seq"],
                        processed_at=load["received_at"],
                    )
                    done_row = await conn.fetchrow(
                        f"""
                        update queue_items
                        set
                          status = 'done',
                          processed_at = now(),
                          last_error = null,
                          claim_token = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {_QUEUE_ITEM_COLUMNS}
                        """,
                        item_id,
                    )
                    return {
                        "item": self._queue_item_row_to_dict(done_row),
                        "already_completed": False,
                        "load": load,
                        "dedup_outcome": load["dedup_outcome"],
                        "matches": matches,
                    }
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("queue item not found") from exc

    async def fail_item(
        self,
        *,
        item_id: str,
        claim_token: str,
        error: str,
        permanent: bool,
    ) -> dict[str, Any]:
        """Permanent failures are terminal; transient ones take the reap transition now."""
        normalized_error = self._coerce_text(error) or "unknown_error"
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    item_row = await self._lock_claimed_item(
                        conn,
                        item_id=item_id,
                        claim_token=claim_token,
                        settled_statuses=TERMINAL_QUEUE_STATUSES,
                    )
                    if item_row["status"] in TERMINAL_QUEUE_STATUSES:
                        return self._queue_item_row_to_dict(item_row)

                    terminal = permanent or item_row["attempts"] >= self.queue_max_attempts
                    if terminal and not permanent:
                        normalized_error = f"max_attempts_exceeded:{normalized_error}"
                    row = await conn.fetchrow(
                        f"""
                        update queue_items
                        set
                          status = case when $2::boolean then 'failed' else 'pending' end,
                          processed_at = case when $2::boolean then now() else null end,
                          last_error = $3,
                          claimed_at = null,
                          claim_token = null,
                          claimed_by = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {_QUEUE_ITEM_COLUMNS}
                        """,
                        item_id,
                        terminal,
                        normalized_error,
                    )
                    return self._queue_item_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("queue item not found") from exc

    async def _lock_claimed_item(
        self,
        conn: asyncpg.Connection,
        *,
        item_id: str,
        claim_token: str,
        settled_statuses: set[str],
    ) -> asyncpg.Record:
        """Lock the item for the caller holding its claim.

        Rows already in one of ``settled_statuses`` come back as-is so the call is
        a no-op; any other mismatch means the claim was reaped or taken over.
        """
        row = await conn.fetchrow(
            f"""
            select {_QUEUE_ITEM_COLUMNS}
            from queue_items
            where id = $1::uuid
            for update
            """,
            item_id,
        )
        if not row:
            raise RepositoryNotFoundError("queue item not found")
        if row["status"] in settled_statuses:
            return row
        if row["status"] != "processing" or row["claim_token"] != claim_token:
            raise RepositoryConflictError("claim lease lost")
        return row

    async def _upsert_load_item(
        self,
        conn: asyncpg.Connection,
        *,
        item_row: asyncpg.Record,
        parsed: dict[str, Any],
        fingerprint: FingerprintResult,
        pickup_lat: float | None,
        pickup_lng: float | None,
        received_at: datetime,
    ) -> tuple[asyncpg.Record, bool]:
        row = await conn.fetchrow(
            f"""
            insert into load_items (
              tenant_id,
              queue_item_id,
              source_message_id,
              received_at,
              parsed_data,
              pickup_lat,
              pickup_lng,
              broker_key,
              fingerprint,
              fingerprint_version,
              dedup_eligible,
              dedup_ineligible_reason,
              expires_at
            )
            values ($1::uuid, $2::uuid, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11, $12, $13)
            on conflict (queue_item_id) do nothing
            returning {_LOAD_ITEM_COLUMNS}
            """,
            item_row["tenant_id"],
            item_row["id"],
            item_row["source_message_id"],
            received_at,
            json.dumps(parsed),
            self._coerce_float(pickup_lat),
            self._coerce_float(pickup_lng),
            broker_key_for(parsed),
            fingerprint.fingerprint,
            fingerprint.fingerprint_version,
            fingerprint.dedup_eligible,
            fingerprint.ineligible_reason,
            self._coerce_datetime(parsed.get("expires_at")),
        )
        if row:
            return row, True

        existing = await conn.fetchrow(
            f"""
            select {_LOAD_ITEM_COLUMNS}
            from load_items
            where queue_item_id = $1::uuid
            """,
            item_row["id"],
        )
        return existing, False

    # Content store ---------------------------------------------------------

    async def _check_and_record_content(
        self,
        conn: asyncpg.Connection,
        *,
        load_id: str,
        fingerprint: FingerprintResult,
    ) -> str:
        if not fingerprint.dedup_eligible:
            logger.info(
                "dedup ineligible load_id=%s reason=%s",
                load_id,
                fingerprint.ineligible_reason,
            )
            outcome = "ineligible"
        else:
            inserted = await conn.fetchval(
                """
                insert into load_content (
                  fingerprint,
                  fingerprint_version,
                  canonical_payload,
                  size_bytes
                )
                values ($1, $2, $3::jsonb, $4)
                on conflict (fingerprint) do update
                set
                  receipt_count = load_content.receipt_count + 1,
                  last_seen_at = greatest(load_content.last_seen_at, now())
                returning (xmax = 0) as inserted
                """,
                fingerprint.fingerprint,
                fingerprint.fingerprint_version,
                json.dumps(fingerprint.canonical_payload, sort_keys=True),
                fingerprint.size_bytes,
            )
            outcome = "new" if inserted else "duplicate"

        await conn.execute(
            "update load_items set dedup_outcome = $2 where id = $1::uuid",
            load_id,
            outcome,
        )
        return outcome

    # Cursor / floor --------------------------------------------------------

    async def _effective_floor(self, conn: asyncpg.Connection, *, tenant_id: str | None) -> int:
        scopes = [GLOBAL_CURSOR_SCOPE] if not tenant_id else [GLOBAL_CURSOR_SCOPE, tenant_id]
        floor = await conn.fetchval(
            "select coalesce(max(floor_position), 0) from match_cursors where scope_key = any($1::text[])",
            scopes,
        )
        return int(floor or 0)

    async def _record_cursor_progress(
        self,
        conn: asyncpg.Connection,
        *,
        scope_key: str,
        position: int,
        processed_at: datetime,
    ) -> None:
        await conn.execute(
            """
            insert into match_cursors (scope_key, last_processed_position, last_processed_at)
            values ($1, $2, $3)
            on conflict (scope_key) do update
            set
              last_processed_at = case
                when excluded.last_processed_position >= match_cursors.last_processed_position
                  then excluded.last_processed_at
                else match_cursors.last_processed_at
              end,
              last_processed_position = greatest(
                match_cursors.last_processed_position,
                excluded.last_processed_position
              ),
              updated_at = now()
            """,
            scope_key,
            position,
            processed_at,
        )

    async def advance_cursor(
        self,
        *,
        scope_key: str,
        position: int,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        """Raise the floor for a scope; lower positions are ignored."""
        normalized_scope = self._coerce_text(scope_key)
        if not normalized_scope:
            raise RepositoryValidationError("scope_key must be a non-empty string")
        if position < 0:
            raise RepositoryValidationError("position must be non-negative")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                previous = await conn.fetchval(
                    "select floor_position from match_cursors where scope_key = $1 for update",
                    normalized_scope,
                )
                row = await conn.fetchrow(
                    """
                    insert into match_cursors (scope_key, floor_position)
                    values ($1, $2)
                    on conflict (scope_key) do update
                    set
                      floor_position = greatest(match_cursors.floor_position, excluded.floor_position),
                      updated_at = now()
                    returning scope_key, floor_position, last_processed_position, last_processed_at, backfill_done
                    """,
                    normalized_scope,
                    position,
                )
                moved = previous is None or row["floor_position"] > previous
                if moved:
                    await self._record_provenance_event(
                        conn,
                        entity_type="match_cursor",
                        entity_id=normalized_scope,
                        event_type="floor_advanced",
                        actor_type=actor_type,
                        actor_id=actor_id,
                        payload={"previous": previous, "floor_position": row["floor_position"]},
                    )
                result = self._cursor_row_to_dict(row)
                result["moved"] = moved
                return result

    async def advance_floors(self, *, horizon_minutes: int | None = None) -> int:
        """Move every floor up to the oldest load still inside the look-back horizon."""
        horizon = max(1, horizon_minutes or self.match_lookback_minutes)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "insert into match_cursors (scope_key) values ($1) on conflict (scope_key) do nothing",
                    GLOBAL_CURSOR_SCOPE,
                )
                rows = await conn.fetch(
                    """
                    with horizon as (
                      select coalesce(
                        min(load_seq),
                        (select coalesce(max(load_seq), 0) + 1 from load_items)
                      ) as position
                      from load_items
                      where received_at >= now() - ($1::int * interval '1 minute')
                    )
                    update match_cursors c
                    set floor_position = h.position, updated_at = now()
                    from horizon h
                    where c.floor_position < h.position
                    returning c.scope_key
                    """,
                    horizon,
                )
                return len(rows)

    async def run_initial_backfill(
        self,
        *,
        tenant_id: str,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        """Match a tenant's recent loads once, then pin its floor to the start of that window."""
        normalized_tenant_id = self._coerce_text(tenant_id)
        if not normalized_tenant_id:
            raise RepositoryValidationError("tenant_id must be a non-empty string")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    tenant_exists = await conn.fetchval(
                        "select 1 from tenants where id = $1::uuid",
                        normalized_tenant_id,
                    )
                    if not tenant_exists:
                        raise RepositoryNotFoundError("tenant not found")

                    await conn.execute(
                        "insert into match_cursors (scope_key) values ($1) on conflict (scope_key) do nothing",
                        normalized_tenant_id,
                    )
                    cursor = await conn.fetchrow(
                        """
                        select scope_key, floor_position, last_processed_position, last_processed_at, backfill_done
                        from match_cursors
                        where scope_key = $1
                        for update
                        """,
                        normalized_tenant_id,
                    )
                    if cursor["backfill_done"]:
                        return {
                            "tenant_id": normalized_tenant_id,
                            "performed": False,
                            "loads_scanned": 0,
                            "matches_created": 0,
                            "floor_position": cursor["floor_position"],
                        }

                    load_rows = await conn.fetch(
                        f"""
                        select {_LOAD_ITEM_COLUMNS}
                        from load_items
                        where tenant_id = $1::uuid
                          and received_at >= now() - ($2::int * interval '1 minute')
                        order by load_seq asc
                        """,
                        normalized_tenant_id,
                        self.initial_backfill_minutes,
                    )
                    matches_created = 0
                    for load_row in load_rows:
                        created = await self._match_load(
                            conn,
                            load=self._load_item_row_to_dict(load_row),
                            actor_type=actor_type,
                            actor_id=actor_id,
                        )
                        matches_created += len(created)

                    if load_rows:
                        new_floor = load_rows[0]["load_seq"]
                    else:
                        new_floor = await conn.fetchval("select coalesce(max(load_seq), 0) + 1 from load_items")

                    updated = await conn.fetchrow(
                        """
                        update match_cursors
                        set
                          floor_position = greatest(floor_position, $2),
                          backfill_done = true,
                          backfill_completed_at = now(),
                          updated_at = now()
                        where scope_key = $1
                        returning floor_position
                        """,
                        normalized_tenant_id,
                        new_floor,
                    )
                    result = {
                        "tenant_id": normalized_tenant_id,
                        "performed": True,
                        "loads_scanned": len(load_rows),
                        "matches_created": matches_created,
                        "floor_position": updated["floor_position"],
                    }
                    await self._record_provenance_event(
                        conn,
                        entity_type="match_cursor",
                        entity_id=normalized_tenant_id,
                        event_type="initial_backfill",
                        actor_type=actor_type,
                        actor_id=actor_id,
                        payload=result,
                    )
                    return result
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("tenant not found") from exc

    # Matcher ---------------------------------------------------------------

    async def _match_load(
        self,
        conn: asyncpg.Connection,
        *,
        load: dict[str, Any],
        actor_type: str,
        actor_id: str | None,
    ) -> list[dict[str, Any]]:
        tenant_id = load["tenant_id"]
        if not tenant_id:
            logger.info("load without tenant skipped for matching load_id=%s", load["id"])
            return []

        tenant = await conn.fetchrow(
            "select matching_enabled, cooldown_seconds_min from tenants where id = $1::uuid",
            tenant_id,
        )
        if not tenant or not tenant["matching_enabled"]:
            return []

        plan_rows = await conn.fetch(
            """
            select
              hp.id::text as id,
              hp.tenant_id::text as tenant_id,
              hp.vehicle_id::text as vehicle_id,
              hp.vehicle_sizes,
              hp.hunt_lat,
              hp.hunt_lng,
              hp.pickup_radius_miles,
              hp.load_capacity_lbs,
              hp.cooldown_seconds_min
            from hunt_plans hp
            join vehicles v on v.id = hp.vehicle_id
            where hp.tenant_id = $1::uuid
              and hp.enabled = true
              and v.is_active = true
            order by hp.created_at asc, hp.id asc
            """,
            tenant_id,
        )
        if not plan_rows:
            return []

        parsed = load["parsed_data"]
        snapshot = LoadSnapshot(
            load_id=load["id"],
            tenant_id=tenant_id,
            pickup_lat=load["pickup_lat"],
            pickup_lng=load["pickup_lng"],
            vehicle_type=normalize_text(parsed.get("vehicle_type")),
            weight=normalize_decimal(parsed.get("weight")),
        )
        plans = [
            HuntPlanSnapshot(
                plan_id=row["id"],
                tenant_id=row["tenant_id"],
                vehicle_id=row["vehicle_id"],
                vehicle_sizes=self._coerce_text_list(list(row["vehicle_sizes"] or [])),
                hunt_lat=row["hunt_lat"],
                hunt_lng=row["hunt_lng"],
                pickup_radius_miles=row["pickup_radius_miles"],
                load_capacity_lbs=row["load_capacity_lbs"],
            )
            for row in plan_rows
        ]
        decisions = evaluate_plans(snapshot, plans, default_radius_miles=self.match_default_radius_miles)

        created: list[dict[str, Any]] = []
        for plan, plan_row, decision in zip(plans, plan_rows, decisions):
            if not decision.matched:
                if decision.reason == "missing_coordinates":
                    logger.info(
                        "geographic plan skipped for load without coordinates load_id=%s plan_id=%s",
                        load["id"],
                        plan.plan_id,
                    )
                continue

            cooldown_seconds = plan_row["cooldown_seconds_min"] or tenant["cooldown_seconds_min"]
            if cooldown_seconds and load["dedup_eligible"] and load["fingerprint"]:
                allowed = await self._claim_cooldown_slot(
                    conn,
                    tenant_id=tenant_id,
                    plan_id=plan.plan_id,
                    fingerprint=load["fingerprint"],
                    cooldown_seconds=cooldown_seconds,
                )
                if not allowed:
                    logger.info(
                        "match suppressed by cooldown load_id=%s plan_id=%s",
                        load["id"],
                        plan.plan_id,
                    )
                    continue

            row = await conn.fetchrow(
                f"""
                insert into matches (
                  load_item_id,
                  hunt_plan_id,
                  vehicle_id,
                  tenant_id,
                  distance_miles,
                  match_score
                )
                values ($1::uuid, $2::uuid, $3::uuid, $4::uuid, $5, $6)
                on conflict (load_item_id, hunt_plan_id) do nothing
                returning {_MATCH_COLUMNS}
                """,
                load["id"],
                plan.plan_id,
                plan.vehicle_id,
                tenant_id,
                decision.distance_miles,
                decision.score,
            )
            if not row:
                continue

            await self._append_match_action(
                conn,
                match_id=row["id"],
                tenant_id=tenant_id,
                actor_type=actor_type,
                actor_id=actor_id,
                action_type="matched",
                details={
                    "load_item_id": load["id"],
                    "distance_miles": decision.distance_miles,
                    "match_score": decision.score,
                },
            )
            created.append(self._match_row_to_dict(row))
        return created

    async def _claim_cooldown_slot(
        self,
        conn: asyncpg.Connection,
        *,
        tenant_id: str,
        plan_id: str,
        fingerprint: str,
        cooldown_seconds: int,
    ) -> bool:
        allowed = await conn.fetchval(
            """
            insert into hunt_fingerprint_actions (tenant_id, hunt_plan_id, fingerprint)
            values ($1::uuid, $2::uuid, $3)
            on conflict (tenant_id, hunt_plan_id, fingerprint) do update
            set
              last_action_at = now(),
              action_count = hunt_fingerprint_actions.action_count + 1
            where hunt_fingerprint_actions.last_action_at <= now() - ($4::int * interval '1 second')
            returning true
            """,
            tenant_id,
            plan_id,
            fingerprint,
            cooldown_seconds,
        )
        return bool(allowed)

    # Match lifecycle -------------------------------------------------------

    async def list_active_matches(self, *, tenant_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  m.id::text as id,
                  m.load_item_id::text as load_item_id,
                  m.hunt_plan_id::text as hunt_plan_id,
                  m.vehicle_id::text as vehicle_id,
                  m.tenant_id::text as tenant_id,
                  m.distance_miles,
                  m.match_score,
                  m.match_status,
                  m.is_active,
                  m.deactivated_reason,
                  m.bid_rate,
                  m.matched_at,
                  m.updated_at,
                  l.received_at,
                  l.expires_at,
                  l.source_message_id,
                  l.broker_key,
                  l.fingerprint,
                  l.parsed_data,
                  (
                    select count(*)
                    from matches other
                    join load_items other_load on other_load.id = other.load_item_id
                    where other.tenant_id = m.tenant_id
                      and other.is_active = true
                      and other.id <> m.id
                      and l.fingerprint is not null
                      and other_load.fingerprint = l.fingerprint
                  ) as duplicate_count
                from matches m
                join load_items l on l.id = m.load_item_id
                where m.tenant_id = $1::uuid
                  and m.is_active = true
                  and (l.expires_at is null or l.expires_at > now())
                order by l.received_at desc, m.matched_at desc, m.id asc
                limit $2
                offset $3
                """,
                tenant_id,
                limit,
                offset,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("tenant_id must be a uuid") from exc

        results: list[dict[str, Any]] = []
        for row in rows:
            match = self._match_row_to_dict(row)
            match.update(
                {
                    "received_at": row["received_at"],
                    "expires_at": row["expires_at"],
                    "source_message_id": row["source_message_id"],
                    "broker_key": row["broker_key"],
                    "fingerprint": row["fingerprint"],
                    "parsed_data": self._coerce_json_dict(row["parsed_data"]),
                    "duplicate_count": int(row["duplicate_count"] or 0),
                }
            )
            results.append(match)
        return results

    async def list_match_actions(
        self,
        *,
        tenant_id: str,
        match_id: str,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                exists = await conn.fetchval(
                    "select 1 from matches where id = $1::uuid and tenant_id = $2::uuid",
                    match_id,
                    tenant_id,
                )
                if not exists:
                    raise RepositoryNotFoundError("match not found")
                rows = await conn.fetch(
                    """
                    select
                      id,
                      match_id::text as match_id,
                      actor_type,
                      actor_id,
                      action_type,
                      details,
                      created_at
                    from match_actions
                    where match_id = $1::uuid
                    order by created_at asc, id asc
                    limit $2
                    offset $3
                    """,
                    match_id,
                    limit,
                    offset,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("match not found") from exc
        return [self._match_action_row_to_dict(row) for row in rows]

    async def apply_match_action(
        self,
        *,
        tenant_id: str,
        match_id: str,
        action: str,
        actor_id: str,
        reason: str | None = None,
        notes: str | None = None,
        bid_rate: float | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        select {_MATCH_COLUMNS}
                        from matches
                        where id = $1::uuid and tenant_id = $2::uuid
                        for update
                        """,
                        match_id,
                        tenant_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError("match not found")

                    try:
                        change = plan_match_action(
                            current_status=row["match_status"],
                            is_active=row["is_active"],
                            action=action,
                            reason=reason,
                        )
                    except MatchTransitionError as exc:
                        raise RepositoryConflictError(str(exc)) from exc

                    if change.changed:
                        row = await conn.fetchrow(
                            f"""
                            update matches
                            set
                              match_status = $2,
                              is_active = $3,
                              deactivated_reason = coalesce($4, deactivated_reason),
                              bid_rate = coalesce($5::numeric, bid_rate),
                              updated_at = now()
                            where id = $1::uuid
                            returning {_MATCH_COLUMNS}
                            """,
                            match_id,
                            change.to_status,
                            change.is_active,
                            change.deactivated_reason,
                            bid_rate if change.to_status == "bid" else None,
                        )

                    if change.changed or action == "note":
                        details: dict[str, Any] = {
                            "from_status": change.from_status,
                            "to_status": change.to_status,
                        }
                        if change.deactivated_reason:
                            details["reason"] = change.deactivated_reason
                        if notes:
                            details["notes"] = notes
                        if bid_rate is not None and change.to_status == "bid":
                            details["bid_rate"] = bid_rate
                        await self._append_match_action(
                            conn,
                            match_id=match_id,
                            tenant_id=tenant_id,
                            actor_type="human",
                            actor_id=actor_id,
                            action_type=action,
                            details=details,
                        )
                    return self._match_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("match not found") from exc

    async def expire_stale_matches(self, *, limit: int = 1000) -> int:
        bounded_limit = max(1, min(limit, 5000))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select m.id
                      from matches m
                      join load_items l on l.id = m.load_item_id
                      where m.is_active = true
                        and (
                          (l.expires_at is not null and l.expires_at <= now())
                          or (l.expires_at is null and m.matched_at <= now() - ($1::int * interval '1 minute'))
                        )
                      order by m.matched_at asc
                      limit $2
                      for update of m skip locked
                    )
                    update matches m
                    set is_active = false, deactivated_reason = 'expired', updated_at = now()
                    from stale s
                    where m.id = s.id
                    returning m.id::text as id, m.tenant_id::text as tenant_id, m.match_status
                    """,
                    self.match_ttl_minutes,
                    bounded_limit,
                )
                for row in rows:
                    await self._append_match_action(
                        conn,
                        match_id=row["id"],
                        tenant_id=row["tenant_id"],
                        actor_type="system",
                        actor_id=None,
                        action_type="deactivate",
                        details={
                            "from_status": row["match_status"],
                            "to_status": row["match_status"],
                            "reason": "expired",
                        },
                    )
                return len(rows)

    async def _append_match_action(
        self,
        conn: asyncpg.Connection,
        *,
        match_id: str,
        tenant_id: str,
        actor_type: str,
        actor_id: str | None,
        action_type: str,
        details: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into match_actions (match_id, tenant_id, actor_type, actor_id, action_type, details)
            values ($1::uuid, $2::uuid, $3, $4, $5, $6::jsonb)
            """,
            match_id,
            tenant_id,
            actor_type,
            actor_id,
            action_type,
            json.dumps(details),
        )

    # Hunt plans ------------------------------------------------------------

    async def set_hunt_plan_enabled(
        self,
        *,
        tenant_id: str,
        plan_id: str,
        enabled: bool,
        actor_id: str,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        update hunt_plans
                        set enabled = $3, updated_at = now()
                        where id = $1::uuid and tenant_id = $2::uuid
                        returning
                          id::text as id,
                          tenant_id::text as tenant_id,
                          vehicle_id::text as vehicle_id,
                          name,
                          enabled,
                          vehicle_sizes,
                          hunt_lat,
                          hunt_lng,
                          pickup_radius_miles,
                          load_capacity_lbs,
                          cooldown_seconds_min,
                          updated_at
                        """,
                        plan_id,
                        tenant_id,
                        enabled,
                    )
                    if not row:
                        raise RepositoryNotFoundError("hunt plan not found")
                    await self._record_provenance_event(
                        conn,
                        entity_type="hunt_plan",
                        entity_id=plan_id,
                        event_type="enabled" if enabled else "disabled",
                        actor_type="human",
                        actor_id=actor_id,
                        payload={"tenant_id": tenant_id},
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("hunt plan not found") from exc

        plan = dict(row)
        plan["vehicle_sizes"] = list(row["vehicle_sizes"] or [])
        plan["backfill"] = None
        if enabled:
            plan["backfill"] = await self.run_initial_backfill(
                tenant_id=tenant_id,
                actor_type="human",
                actor_id=actor_id,
            )
        return plan

    # Leader election -------------------------------------------------------

    async def try_become_leader(
        self,
        *,
        tenant_id: str,
        broker_key: str,
        leader_id: str,
        at: datetime | None = None,
    ) -> dict[str, Any]:
        normalized_broker_key = self._coerce_text(broker_key)
        if not normalized_broker_key:
            raise RepositoryValidationError("broker_key must be a non-empty string")
        normalized_leader_id = self._coerce_text(leader_id)
        if not normalized_leader_id:
            raise RepositoryValidationError("leader_id must be a non-empty string")

        window_start = decision_window_start(at or datetime.now(timezone.utc), self.broker_check_window_minutes)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        insert into broker_credit_checks (
                          tenant_id,
                          broker_key,
                          window_start,
                          is_decision,
                          status,
                          leader_id,
                          claimed_at
                        )
                        values ($1::uuid, $2, $3, true, 'pending', $4, now())
                        on conflict (tenant_id, broker_key, window_start) where is_decision
                        do update set contender_count = broker_credit_checks.contender_count + 1
                        returning {_BROKER_CHECK_COLUMNS}, (xmax = 0) as inserted
                        """,
                        tenant_id,
                        normalized_broker_key,
                        window_start,
                        normalized_leader_id,
                    )
                    is_leader = bool(row["inserted"]) or (
                        row["status"] == "pending" and row["leader_id"] == normalized_leader_id
                    )
                    took_over = False
                    if not is_leader and row["status"] == "pending":
                        taken = await conn.fetchrow(
                            f"""
                            update broker_credit_checks
                            set
                              leader_id = $2,
                              claimed_at = now(),
                              takeover_count = takeover_count + 1
                            where id = $1::uuid
                              and is_decision = true
                              and status = 'pending'
                              and (claimed_at is null or claimed_at <= now() - ($3::int * interval '1 second'))
                            returning {_BROKER_CHECK_COLUMNS}
                            """,
                            row["id"],
                            normalized_leader_id,
                            self.broker_check_leader_lease_seconds,
                        )
                        if taken:
                            row = taken
                            is_leader = True
                            took_over = True
                            logger.info(
                                "broker check leader takeover check_id=%s leader_id=%s",
                                row["id"],
                                normalized_leader_id,
                            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("tenant_id must be a uuid") from exc

        check = self._broker_check_row_to_dict(row)
        check["is_leader"] = is_leader
        check["took_over"] = took_over
        return check

    async def record_broker_decision(
        self,
        *,
        check_id: str,
        leader_id: str,
        status: str,
        match_ids: list[str],
        raw_response: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if status not in BROKER_DECISION_STATUSES:
            raise RepositoryValidationError(f"status must be one of: {', '.join(sorted(BROKER_DECISION_STATUSES))}")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        select {_BROKER_CHECK_COLUMNS}
                        from broker_credit_checks
                        where id = $1::uuid and is_decision = true
                        for update
                        """,
                        check_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError("broker check not found")
                    if row["leader_id"] != leader_id:
                        raise RepositoryForbiddenError("only the current leader may record the decision")

                    if row["status"] == "pending":
                        row = await conn.fetchrow(
                            f"""
                            update broker_credit_checks
                            set status = $2, decided_at = now(), raw_response = $3::jsonb
                            where id = $1::uuid
                            returning {_BROKER_CHECK_COLUMNS}
                            """,
                            check_id,
                            status,
                            json.dumps(raw_response) if raw_response is not None else None,
                        )
                    elif row["status"] != status:
                        raise RepositoryConflictError(f"decision already recorded as {row['status']}")

                    fanned_out = await self._fan_out_decision(conn, decision=row, match_ids=match_ids)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("broker check not found") from exc

        check = self._broker_check_row_to_dict(row)
        check["fanned_out"] = fanned_out
        return check

    async def fan_out_broker_decision(self, *, check_id: str, match_ids: list[str]) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        select {_BROKER_CHECK_COLUMNS}
                        from broker_credit_checks
                        where id = $1::uuid and is_decision = true
                        """,
                        check_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError("broker check not found")
                    if row["status"] == "pending":
                        raise RepositoryConflictError("decision is still pending")
                    fanned_out = await self._fan_out_decision(conn, decision=row, match_ids=match_ids)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("broker check not found") from exc

        check = self._broker_check_row_to_dict(row)
        check["fanned_out"] = fanned_out
        return check

    async def get_broker_check(self, *, check_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select
                  {_BROKER_CHECK_COLUMNS},
                  (
                    select count(*)
                    from broker_credit_checks fan_out
                    where fan_out.is_decision = false
                      and fan_out.tenant_id = decision.tenant_id
                      and fan_out.broker_key = decision.broker_key
                      and fan_out.window_start = decision.window_start
                  ) as fan_out_count
                from broker_credit_checks decision
                where id = $1::uuid and is_decision = true
                """,
                check_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("broker check not found") from exc
        if not row:
            raise RepositoryNotFoundError("broker check not found")
        check = self._broker_check_row_to_dict(row)
        check["fan_out_count"] = int(row["fan_out_count"] or 0)
        return check

    async def _fan_out_decision(
        self,
        conn: asyncpg.Connection,
        *,
        decision: asyncpg.Record,
        match_ids: list[str],
    ) -> int:
        if not match_ids:
            return 0
        rows = await conn.fetch(
            """
            insert into broker_credit_checks (
              tenant_id,
              broker_key,
              window_start,
              is_decision,
              match_id,
              status,
              decided_at
            )
            select $1::uuid, $2, $3, false, m.id, $4, $5
            from matches m
            where m.id = any($6::uuid[])
              and m.tenant_id = $1::uuid
            on conflict (tenant_id, broker_key, window_start, match_id) where not is_decision
            do nothing
            returning id
            """,
            decision["tenant_id"],
            decision["broker_key"],
            decision["window_start"],
            decision["status"],
            decision["decided_at"],
            list(dict.fromkeys(match_ids)),
        )
        return len(rows)

    # Archiver --------------------------------------------------------------

    async def archive_queue_batch(self, *, cutoff: datetime, batch_size: int) -> int:
        """Move one batch of terminal items older than ``cutoff`` to the archive.

        Only rows the archive insert actually returned are deleted.
        """
        bounded_batch_size = max(1, min(batch_size, 10000))
        pool = await self._get_pool()
        archived = await pool.fetchval(
            """
            with batch as (
              select id
              from queue_items
              where status in ('done', 'failed')
                and processed_at < $1
              order by processed_at asc
              limit $2
              for update skip locked
            ),
            copied as (
              insert into queue_items_archive (
                id,
                tenant_id,
                source_message_id,
                thread_id,
                payload_url,
                payload,
                status,
                attempts,
                queued_at,
                claimed_at,
                processed_at,
                last_error
              )
              select
                q.id,
                q.tenant_id,
                q.source_message_id,
                q.thread_id,
                q.payload_url,
                q.payload,
                q.status,
                q.attempts,
                q.queued_at,
                q.claimed_at,
                q.processed_at,
                q.last_error
              from queue_items q
              join batch b on b.id = q.id
              on conflict (id) do nothing
              returning id
            ),
            removed as (
              delete from queue_items q
              using copied c
              where q.id = c.id
              returning q.id
            )
            select count(*) from removed
            """,
            cutoff,
            bounded_batch_size,
        )
        return int(archived or 0)

    async def archive_terminal_items(
        self,
        *,
        retention_hours: int | None = None,
        batch_size: int | None = None,
        max_batches: int | None = None,
    ) -> dict[str, int]:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=retention_hours or self.archive_retention_hours)
        effective_batch_size = batch_size or self.archive_batch_size
        archived = 0
        batches = 0
        for _ in range(max_batches or self.archive_max_batches):
            moved = await self.archive_queue_batch(cutoff=cutoff, batch_size=effective_batch_size)
            batches += 1
            archived += moved
            if moved < effective_batch_size:
                break
        return {"archived": archived, "batches": batches}

    # Maintenance & admin metrics -------------------------------------------

    async def run_maintenance(self, *, actor_type: str, actor_id: str | None) -> dict[str, int]:
        reaped = await self.reap_stale_items(limit=1000, actor_type=actor_type, actor_id=actor_id)
        expired = await self.expire_stale_matches()
        floors_advanced = await self.advance_floors()
        archive = await self.archive_terminal_items()
        return {
            "requeued": reaped["requeued"],
            "failed": reaped["failed"],
            "expired_matches": expired,
            "floors_advanced": floors_advanced,
            "archived": archive["archived"],
        }

    async def get_queue_metrics(self) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) filter (where status = 'pending') as pending,
              count(*) filter (where status = 'processing') as processing,
              count(*) filter (where status = 'done') as done,
              count(*) filter (where status = 'failed') as failed,
              count(*) filter (
                where status = 'pending'
                  and $1::int is not null
                  and queued_at < now() - ($1::int * interval '1 minute')
              ) as backlog_pending,
              count(*) filter (
                where status = 'processing'
                  and claimed_at < now() - ($2::int * interval '1 second')
              ) as stale_processing,
              extract(epoch from now() - min(queued_at) filter (where status = 'pending'))::float8
                as oldest_pending_age_seconds,
              extract(epoch from now() - min(claimed_at) filter (where status = 'processing'))::float8
                as oldest_processing_age_seconds
            from queue_items
            """,
            self.queue_backlog_cutoff_minutes,
            self.queue_lease_seconds,
        )
        archived = await pool.fetchval("select count(*) from queue_items_archive")
        metrics = {key: row[key] for key in row.keys()}
        metrics["depth"] = int(row["pending"]) + int(row["processing"])
        metrics["archived"] = int(archived or 0)
        return metrics

    async def get_dedup_metrics(self) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) as unique_content,
              coalesce(sum(receipt_count), 0) as total_receipts,
              coalesce(max(receipt_count), 0) as max_receipt_count,
              count(*) filter (where receipt_count = 1) as bucket_1,
              count(*) filter (where receipt_count = 2) as bucket_2,
              count(*) filter (where receipt_count between 3 and 5) as bucket_3_5,
              count(*) filter (where receipt_count between 6 and 10) as bucket_6_10,
              count(*) filter (where receipt_count > 10) as bucket_gt_10
            from load_content
            """
        )
        reason_rows = await pool.fetch(
            """
            select dedup_ineligible_reason as reason, count(*) as count
            from load_items
            where dedup_outcome = 'ineligible'
            group by dedup_ineligible_reason
            order by dedup_ineligible_reason
            """
        )
        unique_content = int(row["unique_content"])
        total_receipts = int(row["total_receipts"])
        duplicate_receipts = total_receipts - unique_content
        return {
            "unique_content": unique_content,
            "total_receipts": total_receipts,
            "duplicate_receipts": duplicate_receipts,
            "max_receipt_count": int(row["max_receipt_count"]),
            "reuse_rate": round(duplicate_receipts / total_receipts, 4) if total_receipts else 0.0,
            "receipt_count_distribution": {bucket: int(row[f"bucket_{bucket}"]) for bucket in RECEIPT_COUNT_BUCKETS},
            "ineligible_by_reason": {
                (reason_row["reason"] or "unknown"): int(reason_row["count"]) for reason_row in reason_rows
            },
        }

    async def get_leader_election_metrics(self, *, window_hours: int = 24) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) filter (where is_decision) as decisions,
              count(*) filter (where is_decision and status = 'pending') as pending_decisions,
              coalesce(sum(contender_count) filter (where is_decision), 0) as contenders,
              coalesce(max(contender_count) filter (where is_decision), 0) as max_contenders,
              coalesce(sum(takeover_count) filter (where is_decision), 0) as takeovers,
              count(*) filter (where not is_decision) as fan_out_rows
            from broker_credit_checks
            where window_start >= now() - ($1::int * interval '1 hour')
            """,
            max(1, window_hours),
        )
        decisions = int(row["decisions"])
        contenders = int(row["contenders"])
        return {
            "window_hours": max(1, window_hours),
            "decisions": decisions,
            "pending_decisions": int(row["pending_decisions"]),
            "contenders": contenders,
            "max_contenders": int(row["max_contenders"]),
            "takeovers": int(row["takeovers"]),
            "fan_out_rows": int(row["fan_out_rows"]),
            "checks_avoided": max(0, contenders - decisions),
        }

    async def _record_provenance_event(
        self,
        conn: asyncpg.Connection,
        *,
        entity_type: str,
        entity_id: str | None,
        event_type: str,
        actor_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into provenance_events (
              entity_type,
              entity_id,
              event_type,
              actor_type,
              actor_id,
              payload
            )
            values ($1, $2, $3, $4, $5, $6::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            actor_type,
            actor_id,
            json.dumps(payload, default=str),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LH_DATABASE_URL is required")

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
    def _qualified_queue_columns(alias: str) -> str:
        columns = []
        for line in _QUEUE_ITEM_COLUMNS.strip().splitlines():
            column = line.strip().rstrip(",")
            columns.append(f"{alias}.{column}")
        return ",\n".join(columns)

    def _queue_item_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "tenant_id": row["tenant_id"],
            "source_message_id": row["source_message_id"],
            "thread_id": row["thread_id"],
            "payload_url": row["payload_url"],
            "payload": self._coerce_json_dict(row["payload"]) if row["payload"] is not None else None,
            "status": row["status"],
            "attempts": row["attempts"],
            "queued_at": row["queued_at"],
            "claimed_at": row["claimed_at"],
            "claim_token": row["claim_token"],
            "claimed_by": row["claimed_by"],
            "processed_at": row["processed_at"],
            "last_error": row["last_error"],
        }

    def _load_item_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "load_seq": row["load_seq"],
            "tenant_id": row["tenant_id"],
            "queue_item_id": row["queue_item_id"],
            "source_message_id": row["source_message_id"],
            "received_at": row["received_at"],
            "parsed_data": self._coerce_json_dict(row["parsed_data"]),
            "pickup_lat": row["pickup_lat"],
            "pickup_lng": row["pickup_lng"],
            "broker_key": row["broker_key"],
            "fingerprint": row["fingerprint"],
            "fingerprint_version": row["fingerprint_version"],
            "dedup_eligible": row["dedup_eligible"],
            "dedup_ineligible_reason": row["dedup_ineligible_reason"],
            "dedup_outcome": row["dedup_outcome"],
            "expires_at": row["expires_at"],
        }

    @staticmethod
    def _match_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "load_item_id": row["load_item_id"],
            "hunt_plan_id": row["hunt_plan_id"],
            "vehicle_id": row["vehicle_id"],
            "tenant_id": row["tenant_id"],
            "distance_miles": row["distance_miles"],
            "match_score": row["match_score"],
            "match_status": row["match_status"],
            "is_active": row["is_active"],
            "deactivated_reason": row["deactivated_reason"],
            "bid_rate": float(row["bid_rate"]) if row["bid_rate"] is not None else None,
            "matched_at": row["matched_at"],
            "updated_at": row["updated_at"],
        }

    def _match_action_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "match_id": row["match_id"],
            "actor_type": row["actor_type"],
            "actor_id": row["actor_id"],
            "action_type": row["action_type"],
            "details": self._coerce_json_dict(row["details"]),
            "created_at": row["created_at"],
        }

    def _broker_check_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "tenant_id": row["tenant_id"],
            "broker_key": row["broker_key"],
            "window_start": row["window_start"],
            "status": row["status"],
            "leader_id": row["leader_id"],
            "claimed_at": row["claimed_at"],
            "decided_at": row["decided_at"],
            "contender_count": row["contender_count"],
            "takeover_count": row["takeover_count"],
            "raw_response": self._coerce_json_dict(row["raw_response"]) if row["raw_response"] is not None else None,
        }

    @staticmethod
    def _cursor_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "scope_key": row["scope_key"],
            "floor_position": row["floor_position"],
            "last_processed_position": row["last_processed_position"],
            "last_processed_at": row["last_processed_at"],
            "backfill_done": row["backfill_done"],
        }

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_text_list(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        items: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            stripped = item.strip()
            if stripped:
                items.append(stripped)
        return items

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_datetime(value: Any) -> datetime | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return None
            try:
                parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
            except ValueError:
                return None
        else:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        queue_max_attempts=settings.queue_max_attempts,
        queue_lease_seconds=settings.queue_lease_seconds,
        queue_backlog_cutoff_minutes=settings.queue_backlog_cutoff_minutes,
        queue_claim_max_batch=settings.queue_claim_max_batch,
        match_default_radius_miles=settings.match_default_radius_miles,
        match_lookback_minutes=settings.match_lookback_minutes,
        match_ttl_minutes=settings.match_ttl_minutes,
        initial_backfill_minutes=settings.initial_backfill_minutes,
        broker_check_window_minutes=settings.broker_check_window_minutes,
        broker_check_leader_lease_seconds=settings.broker_check_leader_lease_seconds,
        archive_retention_hours=settings.archive_retention_hours,
        archive_batch_size=settings.archive_batch_size,
        archive_max_batches=settings.archive_max_batches,
    )
