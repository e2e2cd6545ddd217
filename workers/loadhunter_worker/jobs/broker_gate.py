"""Single-flight broker credit checks across workers.

Every worker that produced matches for a broker contends for the check of the
current decision window. The leader calls the credit provider once and records
the decision for its matches; followers wait a bounded number of polls for that
decision and then fan it out to their own matches. A follower that outlives the
leader's claim contends again and may take the check over.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from typing import Any

from loadhunter_worker.jobs.leases import leader_claim_expired
from loadhunter_worker.services.credit_check import CreditCheckClient
from loadhunter_worker.services.queue_client import QueueClient

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class BrokerGateResult:
    check_id: str
    role: str
    status: str
    applied: int = 0


async def resolve_broker_decision(
    queue_client: QueueClient,
    credit_client: CreditCheckClient,
    *,
    tenant_id: str,
    broker_key: str,
    leader_id: str,
    match_ids: list[str],
    parsed: dict[str, Any],
    poll_attempts: int = 5,
    poll_interval_seconds: float = 1.0,
    leader_lease_seconds: int = 120,
    sleep: SleepFn = asyncio.sleep,
) -> BrokerGateResult:
    check = await queue_client.become_leader(tenant_id=tenant_id, broker_key=broker_key, leader_id=leader_id)
    if check["is_leader"]:
        return await _decide_as_leader(
            queue_client,
            credit_client,
            check=check,
            leader_id=leader_id,
            match_ids=match_ids,
            parsed=parsed,
        )

    for _ in range(max(0, poll_attempts)):
        if check["status"] != "pending":
            break
        await sleep(poll_interval_seconds)
        check = await queue_client.get_broker_check(check["id"])

    if check["status"] == "pending" and leader_claim_expired(check, lease_seconds=leader_lease_seconds):
        check = await queue_client.become_leader(tenant_id=tenant_id, broker_key=broker_key, leader_id=leader_id)
        if check["is_leader"]:
            logger.info("took over broker check check_id=%s broker_key=%s", check["id"], broker_key)
            return await _decide_as_leader(
                queue_client,
                credit_client,
                check=check,
                leader_id=leader_id,
                match_ids=match_ids,
                parsed=parsed,
            )

    if check["status"] == "pending":
        logger.info(
            "broker decision still pending check_id=%s broker_key=%s leader_id=%s",
            check["id"],
            broker_key,
            check.get("leader_id"),
        )
        return BrokerGateResult(check_id=check["id"], role="follower", status="pending")

    fanned = await queue_client.fan_out(check["id"], match_ids=match_ids)
    return BrokerGateResult(
        check_id=check["id"],
        role="follower",
        status=check["status"],
        applied=int(fanned.get("fanned_out", 0)),
    )


async def _decide_as_leader(
    queue_client: QueueClient,
    credit_client: CreditCheckClient,
    *,
    check: dict[str, Any],
    leader_id: str,
    match_ids: list[str],
    parsed: dict[str, Any],
) -> BrokerGateResult:
    status, raw_response = await credit_client.check(broker_key=check["broker_key"], parsed=parsed)
    decision = await queue_client.record_decision(
        check["id"],
        leader_id=leader_id,
        status=status,
        match_ids=match_ids,
        raw_response=raw_response,
    )
    return BrokerGateResult(
        check_id=check["id"],
        role="leader",
        status=decision["status"],
        applied=int(decision.get("fanned_out", 0)),
    )
