from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

import httpx
from opentelemetry import trace

from loadhunter_worker.jobs.broker_gate import resolve_broker_decision
from loadhunter_worker.jobs.leases import should_abandon
from loadhunter_worker.services.credit_check import CreditCheckClient
from loadhunter_worker.services.extraction import ExtractionError, ExtractorClient
from loadhunter_worker.services.geocoding import GeocoderClient, pickup_query
from loadhunter_worker.services.queue_client import LeaseLostError, QueueClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class ProcessorContext:
    queue_client: QueueClient
    extractor: ExtractorClient
    geocoder: GeocoderClient
    credit_client: CreditCheckClient
    worker_id: str
    broker_poll_attempts: int = 5
    broker_poll_interval_seconds: float = 1.0
    broker_leader_lease_seconds: int = 120


@dataclass(slots=True)
class ItemOutcome:
    item_id: str
    status: str
    reason: str | None = None
    dedup_outcome: str | None = None
    match_ids: list[str] = field(default_factory=list)
    broker_status: str | None = None


async def process_item(
    item: dict[str, Any],
    context: ProcessorContext,
    *,
    now: datetime | None = None,
) -> ItemOutcome:
    """Extract, geocode and complete one claimed item, then gate its matches on broker credit.

    Outcome statuses: ``done``, ``failed`` (permanent), ``retry`` (returned to the
    queue), ``abandoned`` (left for the reaper) and ``lease_lost``.
    """
    item_id = item["id"]
    with tracer.start_as_current_span("worker.process_item") as span:
        span.set_attribute("queue_item.id", item_id)
        span.set_attribute("queue_item.attempts", int(item.get("attempts") or 0))

        if should_abandon(item, now=now):
            logger.warning("lease already expired before processing item_id=%s", item_id)
            return ItemOutcome(item_id=item_id, status="abandoned", reason="lease_expired")

        try:
            parsed = await context.extractor.extract(item)
        except ExtractionError as exc:
            span.set_attribute("queue_item.error", exc.reason_code)
            try:
                await context.queue_client.fail_item(
                    item_id,
                    claim_token=item["claim_token"],
                    error=exc.reason_code,
                    permanent=exc.permanent,
                )
            except LeaseLostError:
                logger.warning("lease lost while failing item_id=%s", item_id)
                return ItemOutcome(item_id=item_id, status="lease_lost", reason=exc.reason_code)
            except httpx.HTTPError as http_exc:
                logger.warning("fail call failed item_id=%s error=%s; leaving for reaper", item_id, http_exc)
                return ItemOutcome(item_id=item_id, status="abandoned", reason=exc.reason_code)
            logger.info(
                "extraction failed item_id=%s reason=%s permanent=%s",
                item_id,
                exc.reason_code,
                exc.permanent,
            )
            return ItemOutcome(
                item_id=item_id,
                status="failed" if exc.permanent else "retry",
                reason=exc.reason_code,
            )

        coordinates = await context.geocoder.geocode(pickup_query(parsed))
        pickup_lat, pickup_lng = coordinates if coordinates is not None else (None, None)

        try:
            completed = await context.queue_client.complete_item(
                item_id,
                claim_token=item["claim_token"],
                parsed=parsed,
                pickup_lat=pickup_lat,
                pickup_lng=pickup_lng,
            )
        except LeaseLostError:
            logger.warning("lease lost while completing item_id=%s", item_id)
            return ItemOutcome(item_id=item_id, status="lease_lost")
        except httpx.HTTPError as exc:
            logger.warning("complete call failed item_id=%s error=%s; leaving for reaper", item_id, exc)
            return ItemOutcome(item_id=item_id, status="abandoned", reason="complete_failed")

        match_ids = [match["id"] for match in completed.get("matches") or []]
        outcome = ItemOutcome(
            item_id=item_id,
            status="done",
            dedup_outcome=completed.get("dedup_outcome"),
            match_ids=match_ids,
        )
        span.set_attribute("queue_item.match_count", len(match_ids))

        broker_key = completed.get("broker_key")
        tenant_id = item.get("tenant_id")
        if match_ids and broker_key and tenant_id and context.credit_client.enabled:
            try:
                gate = await resolve_broker_decision(
                    context.queue_client,
                    context.credit_client,
                    tenant_id=tenant_id,
                    broker_key=broker_key,
                    leader_id=context.worker_id,
                    match_ids=match_ids,
                    parsed=parsed,
                    poll_attempts=context.broker_poll_attempts,
                    poll_interval_seconds=context.broker_poll_interval_seconds,
                    leader_lease_seconds=context.broker_leader_lease_seconds,
                )
            except httpx.HTTPError as exc:
                logger.warning("broker gate failed item_id=%s broker_key=%s error=%s", item_id, broker_key, exc)
            else:
                outcome.broker_status = gate.status
                span.set_attribute("broker_check.role", gate.role)
        return outcome


async def process_batch(
    items: list[dict[str, Any]],
    context: ProcessorContext,
    *,
    concurrency: int = 4,
) -> list[ItemOutcome]:
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_one(item: dict[str, Any]) -> ItemOutcome:
        async with semaphore:
            return await process_item(item, context)

    return list(await asyncio.gather(*(run_one(item) for item in items)))
