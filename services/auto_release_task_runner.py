"""
Auto-Release Task Runner

Lightweight background task that runs the escrow auto-release sweep
periodically, off the request path. The sweep itself is synchronous and runs
in a worker thread so the event loop stays responsive.
"""

import asyncio
import logging
from typing import Optional

from config import Config
from services.escrow_engine import EscrowEngine, SweepReport

logger = logging.getLogger(__name__)


class AutoReleaseTaskRunner:
    """Simple task runner for auto-release functionality"""

    def __init__(self, escrow_engine: EscrowEngine, interval_seconds: Optional[float] = None):
        self.escrow_engine = escrow_engine
        self.interval_seconds = interval_seconds or Config.AUTO_RELEASE_SWEEP_INTERVAL_SECONDS
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self.sweeps_completed = 0
        self.last_report: Optional[SweepReport] = None

    async def start(self):
        """Start the background task runner"""
        if self.running:
            logger.warning("Auto-release task runner already running")
            return

        self.running = True
        self.task = asyncio.create_task(self._run_loop())
        logger.info("✅ Auto-release task runner started")

    async def stop(self):
        """Stop the background task runner"""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("✅ Auto-release task runner stopped")

    async def run_once(self) -> SweepReport:
        """Run one sweep now"""
        report = await asyncio.to_thread(self.escrow_engine.run_auto_release_sweep)
        self.sweeps_completed += 1
        self.last_report = report
        if report.released or report.flagged_for_review:
            logger.info(
                f"✅ Auto-releases: {len(report.released)} released, "
                f"{len(report.flagged_for_review)} held for manual review"
            )
        return report

    async def _run_loop(self):
        """Main loop for auto-release checks"""
        try:
            while self.running:
                try:
                    await self.run_once()
                except Exception as e:
                    # One failed sweep must not stop the loop; the next one retries
                    logger.error(f"❌ Error in auto-release check: {e}", exc_info=True)

                await asyncio.sleep(self.interval_seconds)

        except asyncio.CancelledError:
            logger.info("Auto-release task runner cancelled")
            raise
