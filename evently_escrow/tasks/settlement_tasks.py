"""
Celery tasks resuming settlement work left unfinished.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from .celery_app import celery_app
from ..config import get_settings
from ..ledger.base import EventRecord, Ledger
from ..services.settlement_service import SettlementService
from ..utils.exceptions import CancellationIncompleteError, EventlyError
from ..utils.retry import retry_on_concurrency_error

logger = logging.getLogger(__name__)


@retry_on_concurrency_error(max_attempts=3, base_delay=0.5)
async def _resume_cancellation(engine: SettlementService, event: EventRecord) -> None:
    # Lock contention with a live request is retried before giving up on this run
    await engine.cancel_event(event.event_id, event.organizer)


async def resume_pending_cancellations(ledger: Ledger, engine: SettlementService) -> Dict[str, Any]:
    """
    Retry the refunds of every event whose cancellation is incomplete.

    Each event is retried on the organizer's behalf; an event that still
    has failing refunds stays closing until the next run.

    Returns:
        Counts of completed and still incomplete cancellations
    """
    events = await ledger.list_events_pending_cancellation()
    if not events:
        logger.info("No cancellations pending")
        return {"pending": 0, "completed": 0, "incomplete": 0, "errors": 0}

    logger.info(f"Found {len(events)} incomplete cancellations")
    completed = incomplete = errors = 0
    for event in events:
        try:
            await _resume_cancellation(engine, event)
            completed += 1
        except CancellationIncompleteError as e:
            incomplete += 1
            logger.warning(f"Event {event.event_id} still has {len(e.pending)} refunds outstanding")
        except EventlyError as e:
            errors += 1
            logger.error(f"Failed to resume cancellation of event {event.event_id}: {e.message}")

    logger.info(f"Cancellation retry finished: {completed} completed, {incomplete} incomplete")
    return {"pending": len(events), "completed": completed, "incomplete": incomplete, "errors": errors}


@retry_on_concurrency_error(max_attempts=3, base_delay=0.5)
async def _resume_finalization(engine: SettlementService, event: EventRecord) -> None:
    await engine.finalize_event(event.event_id, event.organizer)


async def resume_pending_finalizations(ledger: Ledger, engine: SettlementService) -> Dict[str, Any]:
    """
    Retry the organizer payout of every event left finalizing.

    The payout replays the frozen settlement under its original idempotency
    key, so a transfer that already landed is confirmed rather than repeated.

    Returns:
        Counts of completed and still failing finalizations
    """
    events = await ledger.list_events_pending_finalization()
    if not events:
        logger.info("No finalizations pending")
        return {"pending": 0, "completed": 0, "errors": 0}

    logger.info(f"Found {len(events)} incomplete finalizations")
    completed = errors = 0
    for event in events:
        try:
            await _resume_finalization(engine, event)
            completed += 1
        except EventlyError as e:
            errors += 1
            logger.error(f"Failed to resume finalization of event {event.event_id}: {e.message}")

    logger.info(f"Finalization retry finished: {completed} completed, {errors} failed")
    return {"pending": len(events), "completed": completed, "errors": errors}


Job = Callable[[Ledger, SettlementService], Awaitable[Dict[str, Any]]]


async def _run_with_components(job: Job) -> Dict[str, Any]:
    from ..database import close_database, init_database
    from ..utils.dependencies import build_components

    settings = get_settings()
    uses_database = settings.ledger_backend == "sql" or settings.payment_rail_backend == "ledger"
    if uses_database:
        await init_database()

    components = build_components(settings)
    initialize = getattr(components.locks, "initialize", None)
    if initialize is not None:
        await initialize()

    try:
        return await job(components.ledger, components.engine)
    finally:
        close = getattr(components.locks, "close", None)
        if close is not None:
            await close()
        if uses_database:
            await close_database()


@celery_app.task(bind=True, name="retry_pending_refunds_task")
def retry_pending_refunds_task(self):
    """
    Periodic task completing cancellations whose refunds failed earlier.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_run_with_components(resume_pending_cancellations))
    finally:
        loop.close()


@celery_app.task(bind=True, name="retry_pending_finalizations_task")
def retry_pending_finalizations_task(self):
    """
    Periodic task completing finalizations whose organizer payout failed.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_run_with_components(resume_pending_finalizations))
    finally:
        loop.close()
