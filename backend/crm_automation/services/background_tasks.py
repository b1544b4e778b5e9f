import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from crm_automation import config
from crm_automation.services.engine import AutomationEngine

logger = logging.getLogger(__name__)

ERROR = "error"


class DueWorkPoller:
    """
    In-process driver for due enrollments: a recurring poll that claims due work
    and processes it concurrently, bounded by a semaphore. The Celery beat task
    is the distributed equivalent; both rely on the same claims, so running
    several pollers side by side never processes an enrollment twice.
    """

    def __init__(self, engine: AutomationEngine, interval_seconds: Optional[float] = None,
                 concurrency: Optional[int] = None):
        self.engine = engine
        self.interval_seconds = interval_seconds if interval_seconds is not None else config.POLL_INTERVAL_SECONDS
        self.concurrency = concurrency or config.LOCAL_WORKER_CONCURRENCY
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        if not self.running:
            self.running = True
            self.task = asyncio.create_task(self._run_loop())
            logger.info("=== DUE WORK POLLER STARTED ===")
            logger.info(f"Poll interval: {self.interval_seconds}s, concurrency: {self.concurrency}")
        else:
            logger.warning("Due work poller is already running")

    async def stop(self):
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("=== DUE WORK POLLER STOPPED ===")

    async def _run_loop(self):
        loop_count = 0
        while self.running:
            loop_count += 1
            try:
                results = await self.poll_once()
                if results:
                    logger.info(f"[SCHEDULER] Poll {loop_count} processed: {results}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[SCHEDULER] Error in poll iteration {loop_count}: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    async def poll_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Claim everything due and process it; returns a count per result."""
        claimed = await self.engine.claim_due(now)
        if not claimed:
            return {}

        semaphore = asyncio.Semaphore(self.concurrency)

        async def process(enrollment_id: str, token: str) -> str:
            async with semaphore:
                try:
                    return await self.engine.process_enrollment(enrollment_id, claim_token=token, now=now)
                except Exception as e:
                    logger.error(f"[SCHEDULER] Enrollment {enrollment_id} failed: {e}", exc_info=True)
                    await self.engine.enrollments.release(enrollment_id, token)
                    return ERROR

        results = await asyncio.gather(*(process(enrollment_id, token) for enrollment_id, token in claimed))
        counts: Dict[str, int] = {}
        for result in results:
            counts[result] = counts.get(result, 0) + 1
        return counts
