"""
Celery tasks for match recomputation and exception escalation.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List

from celery import Task
from sqlalchemy import select

from ap_match.core.config import settings
from ap_match.core.exceptions import ConcurrencyException, NotFoundException
from ap_match.db.session import AsyncSessionLocal, async_engine
from ap_match.models.matching import MatchException
from ap_match.services.exception_workflow_service import ExceptionWorkflowService
from ap_match.services.match_service import MatchService
from ap_match.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(work: Callable[[], Awaitable[Any]]) -> Any:
    """Run a coroutine on a fresh event loop, disposing loop-bound connections after."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(work())
    finally:
        loop.run_until_complete(async_engine.dispose())
        loop.close()


class MatchTask(Task):
    """Base task logging failures of match work."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Log task failure."""
        logger.error(f"Task {task_id} failed: {exc}")


async def _recompute(invoice_id: uuid.UUID, user_id: str) -> Dict[str, Any]:
    async with AsyncSessionLocal() as session:
        result = await MatchService(session).run_match(invoice_id, user_id=user_id)
        return result.model_dump(mode="json")


async def _sweep(company_id: str) -> Dict[str, Any]:
    async with AsyncSessionLocal() as session:
        result = await ExceptionWorkflowService(session).run_escalation_sweep(company_id)
        return result.model_dump(mode="json")


async def _companies_with_open_exceptions() -> List[str]:
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(MatchException.company_id)
            .where(MatchException.resolved.is_(False))
            .distinct()
            .order_by(MatchException.company_id)
        )
        return list(result.scalars().all())


@celery_app.task(bind=True, base=MatchTask, max_retries=3, default_retry_delay=30)
def recompute_match_task(self, invoice_id: str, user_id: str = None) -> Dict[str, Any]:
    """Recompute the three-way match of an invoice."""
    logger.info(f"Recomputing match for invoice {invoice_id} (task: {self.request.id})")

    try:
        result = run_async(lambda: _recompute(uuid.UUID(invoice_id), user_id))
        return {"status": "success", **result}

    except NotFoundException as e:
        logger.error(f"Match recompute skipped: {e.message}")
        return {"status": "not_found", "invoice_id": invoice_id, "error": e.message}

    except ConcurrencyException as e:
        logger.warning(f"Concurrent match run for invoice {invoice_id}, retrying")
        raise self.retry(exc=e)


@celery_app.task(bind=True, base=MatchTask, max_retries=3, default_retry_delay=60)
def escalation_sweep_task(self, company_id: str) -> Dict[str, Any]:
    """Run the escalation sweep for one company."""
    logger.info(f"Running escalation sweep for company {company_id} (task: {self.request.id})")

    try:
        result = run_async(lambda: _sweep(company_id))
        return {"status": "success", **result}

    except Exception as e:
        logger.error(f"Escalation sweep failed for company {company_id}: {e}")
        raise self.retry(exc=e)


@celery_app.task(bind=True, base=MatchTask)
def escalation_sweep_all_task(self) -> Dict[str, Any]:
    """Fan out one escalation sweep per company with open exceptions."""
    if not settings.ESCALATION_SWEEP_ENABLED:
        logger.info("Escalation sweep disabled, skipping")
        return {"status": "skipped", "companies": 0}

    company_ids = run_async(_companies_with_open_exceptions)
    for company_id in company_ids:
        escalation_sweep_task.delay(company_id)

    logger.info(f"Scheduled escalation sweeps for {len(company_ids)} companies")
    return {"status": "scheduled", "companies": len(company_ids)}
