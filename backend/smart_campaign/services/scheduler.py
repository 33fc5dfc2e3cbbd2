"""
Smart Scheduler — periodic sweep over every active campaign config.
A single asyncio task started and stopped by the app lifespan. Configs are
processed sequentially, winner commit first and then the rotation cycle.
One campaign's failure is logged and the sweep moves on.
"""

import asyncio
import logging
from typing import Optional
from smart_campaign.services.run_coordinator import RunCoordinator, RunOptions
from smart_campaign.services.store_service import SmartStore
from smart_campaign.utils import utcnow

logger = logging.getLogger(__name__)


class SmartScheduler:
    def __init__(
        self,
        coordinator: RunCoordinator,
        store: SmartStore,
        interval_minutes: float = 15,
        initial_delay_seconds: float = 120,
    ):
        self.coordinator = coordinator
        self.store = store
        self.interval_seconds = max(1.0, float(interval_minutes) * 60)
        self.initial_delay_seconds = max(0.0, float(initial_delay_seconds))
        self._task: Optional[asyncio.Task] = None
        self._sweep_lock = asyncio.Lock()
        self.last_sweep: Optional[dict] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="smart-scheduler")
        logger.info(
            f"Scheduler started: first sweep in {self.initial_delay_seconds:.0f}s, "
            f"then every {self.interval_seconds / 60:.0f} min"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Sweep crashed")
            await asyncio.sleep(self.interval_seconds)

    async def sweep(self) -> dict:
        """
        For each active config, one after another: commit any decided test
        rounds, then run the optimization cycle.
        Returns per-campaign outcomes. A sweep already in progress makes this
        call return ``busy`` immediately.
        """
        if self._sweep_lock.locked():
            logger.info("Sweep already in progress — busy")
            return {"status": "busy", "results": []}

        async with self._sweep_lock:
            started_at = utcnow()
            configs = await self.store.list_active_configs()
            logger.info(f"Sweep started over {len(configs)} active config(s)")

            results = []
            for cfg in configs:
                entry = {"campaign_id": cfg.campaign_id}
                try:
                    committed = await self.coordinator.commit_winners(
                        cfg.campaign_id,
                        cfg.account_id,
                        RunOptions(trigger="sweep"),
                    )
                    entry["commit"] = committed.get("status")
                except Exception as e:
                    logger.exception(f"Sweep: winner commit for campaign {cfg.campaign_id} failed")
                    entry["commit"] = "error"
                    entry["commit_error"] = str(e)
                try:
                    outcome = await self.coordinator.run_once(
                        cfg.campaign_id,
                        cfg.account_id,
                        RunOptions(trigger="sweep"),
                    )
                    entry.update(status=outcome.get("status"), reason=outcome.get("reason"))
                except Exception as e:
                    logger.exception(f"Sweep: campaign {cfg.campaign_id} failed")
                    entry.update(status="error", error=str(e))
                results.append(entry)

            self.last_sweep = {
                "status": "ok",
                "started_at": started_at.isoformat(),
                "completed_at": utcnow().isoformat(),
                "results": results,
            }
            logger.info(f"Sweep finished: {[(r['campaign_id'], r['status']) for r in results]}")
            return self.last_sweep
