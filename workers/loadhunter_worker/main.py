from __future__ import annotations

import asyncio
from collections import Counter
import logging
import os
import random
import socket
import time

from opentelemetry import trace

from loadhunter_worker.core.config import get_settings
from loadhunter_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from loadhunter_worker.jobs.processor import ProcessorContext, process_batch
from loadhunter_worker.services.credit_check import CreditCheckClient
from loadhunter_worker.services.extraction import ExtractorClient
from loadhunter_worker.services.geocoding import GeocoderClient
from loadhunter_worker.services.queue_client import QueueClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


async def run_worker() -> None:
    settings = get_settings()
    worker_id = settings.worker_id or default_worker_id()
    configure_worker_logging(settings)
    telemetry_runtime = setup_worker_telemetry(settings, worker_id=worker_id)
    queue_client = QueueClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.api_timeout_seconds,
    )
    context = ProcessorContext(
        queue_client=queue_client,
        extractor=ExtractorClient(settings.extractor_url, timeout_seconds=settings.extractor_timeout_seconds),
        geocoder=GeocoderClient(settings.geocoder_url, timeout_seconds=settings.geocoder_timeout_seconds),
        credit_client=CreditCheckClient(
            settings.credit_check_url,
            timeout_seconds=settings.credit_check_timeout_seconds,
        ),
        worker_id=worker_id,
        broker_poll_attempts=settings.broker_follower_poll_attempts,
        broker_poll_interval_seconds=settings.broker_follower_poll_interval_seconds,
        broker_leader_lease_seconds=settings.broker_leader_lease_seconds,
    )
    logger.info("worker starting worker_id=%s api=%s", worker_id, settings.api_base_url)

    backoff = settings.poll_interval_seconds
    last_maintenance_at = 0.0
    last_reconcile_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle") as cycle_span:
                    now = time.monotonic()
                    if settings.maintenance_enabled and now - last_maintenance_at >= settings.maintenance_interval_seconds:
                        summary = await queue_client.run_maintenance()
                        if any(summary.values()):
                            logger.info("maintenance pass: %s", summary)
                        last_maintenance_at = now

                    backlog = settings.reconcile_enabled and now - last_reconcile_at >= settings.reconcile_interval_seconds
                    if backlog:
                        last_reconcile_at = now
                    cycle_span.set_attribute("queue.backlog", backlog)

                    claimed = await queue_client.claim_items(
                        worker_id=worker_id,
                        batch_size=settings.reconcile_batch_size if backlog else settings.claim_batch_size,
                        backlog=backlog,
                    )
                    reaped = claimed.get("reaped") or {}
                    if reaped.get("requeued") or reaped.get("failed"):
                        logger.info("reaped stale items: %s", reaped)

                    items = claimed.get("items") or []
                    if not items:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    outcomes = await process_batch(items, context, concurrency=settings.processing_concurrency)
                    counts = Counter(outcome.status for outcome in outcomes)
                    logger.info("processed batch size=%s backlog=%s outcomes=%s", len(items), backlog, dict(counts))

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
