"""
ARQ background worker: consumes ticket lifecycle events and runs the periodic jobs
(workload rebalance, SLA sweep).
"""

import asyncio
import logging
from dataclasses import replace

from arq import cron, run_worker
from arq.connections import RedisSettings

from deskroute.activity import publish_event
from deskroute.config import REBALANCE_INTERVAL_MINUTES, REDIS_CONN_TIMEOUT, REDIS_URL
from deskroute.errors import RebalanceInProgress
from deskroute.models import TicketCreated, TicketReassigned
from deskroute.runtime import get_services

logger = logging.getLogger(__name__)


async def handle_ticket_created(ctx: dict, payload: dict) -> dict:
    """ARQ job: TicketCreated -> persist and assign."""
    event = TicketCreated.model_validate(payload)
    ticket_id = event.ticket.ticket_id
    logger.info("Assigning ticket %s...", ticket_id)
    try:
        result = await asyncio.to_thread(get_services().coordinator.on_ticket_created, event.ticket)
    except Exception as e:
        logger.exception("Failed to assign ticket %s: %s", ticket_id, e)
        raise
    publish_event("ticket_assignment_processed", {
        "ticket_id": ticket_id,
        "status": result.status.value,
        "agent_id": result.agent_id,
    })
    return result.model_dump(mode="json")


async def handle_ticket_reassigned(ctx: dict, payload: dict) -> dict:
    """ARQ job: TicketReassigned -> move the ticket off its current assignee."""
    event = TicketReassigned.model_validate(payload)
    logger.info("Reassigning ticket %s (%s)...", event.ticket_id, event.reason)
    try:
        result = await asyncio.to_thread(get_services().coordinator.reassign, event.ticket_id, event.reason)
    except Exception as e:
        logger.exception("Failed to reassign ticket %s: %s", event.ticket_id, e)
        raise
    return result.model_dump(mode="json")


async def run_rebalance(ctx: dict) -> dict | None:
    """Cron job: rebalance all active agents; skipped when another run holds the lock."""
    try:
        report = await asyncio.to_thread(get_services().rebalancer.rebalance)
    except RebalanceInProgress:
        logger.info("Scheduled rebalance skipped: another run in progress.")
        return None
    if report.moves:
        publish_event("rebalance_completed", {
            "moves": len(report.moves),
            "stddev_before": report.stddev_before,
            "stddev_after": report.stddev_after,
        })
    return report.model_dump(mode="json")


async def run_sla_check(ctx: dict) -> int:
    """Cron job: evaluate SLA state of open tickets and send breach alerts."""
    statuses = await asyncio.to_thread(get_services().sla_monitor.check)
    return len(statuses)


class WorkerSettings:
    functions = [handle_ticket_created, handle_ticket_reassigned]
    cron_jobs = [
        cron(run_rebalance, minute=set(range(0, 60, REBALANCE_INTERVAL_MINUTES)), unique=True),
        cron(run_sla_check, second=0, unique=True),
    ]
    redis_settings = replace(
        RedisSettings.from_dsn(REDIS_URL),
        conn_timeout=REDIS_CONN_TIMEOUT,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Worker starting (Redis: %s).", REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL)
    run_worker(WorkerSettings)
