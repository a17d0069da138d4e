"""
Maintenance Loop - The Safety Net
=================================
Background task that keeps the in-memory state bounded and makes sure no
confirmed payment is silently lost.

Each cycle:
- evicts rate-limit records whose window has elapsed
- retries balance credits held after a directory write failure
  (operator alerted once retries are exhausted)
- alerts the operator once about orders waiting longer than the stale
  threshold (they are never expired locally)
"""

import asyncio
from typing import Dict

import structlog

from pipeline.orchestrator import TopupOrchestrator

logger = structlog.get_logger().bind(component="maintenance")


async def run_maintenance_cycle(orchestrator: TopupOrchestrator) -> Dict[str, int]:
    """One pass over every maintenance job. Returns per-job counts."""
    evicted = await orchestrator.rate_limiter.sweep_expired()
    credited = await orchestrator.retry_held_credits()
    stale = await orchestrator.alert_stale_orders()

    summary = {
        "rate_limit_evicted": evicted,
        "credits_recovered": len(credited),
        "stale_alerted": stale,
    }
    if credited or stale:
        logger.warning("maintenance_cycle_actions", **summary)
    else:
        logger.debug("maintenance_cycle_idle", **summary)
    return summary


async def maintenance_loop(orchestrator: TopupOrchestrator, interval_seconds: float = 60) -> None:
    """
    Runs run_maintenance_cycle() every interval until cancelled.

    A failing cycle is logged and the loop keeps going.
    """
    logger.info("maintenance_loop_started", interval=interval_seconds)

    while True:
        try:
            await run_maintenance_cycle(orchestrator)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("maintenance_cycle_failed", error=str(e))

        await asyncio.sleep(interval_seconds)


__all__ = ["run_maintenance_cycle", "maintenance_loop"]
