"""Periodic sweep that fires due timers and heals stalled executions."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from .config import SchedulerConfig
from .engine import ExecutionEngine
from .errors import NotFoundError, PlaybookEngineError, ValidationError
from .models import SweepAction, SweepReport, Timer

logger = logging.getLogger(__name__)


class Scheduler:
    """Drives deferred work for an :class:`ExecutionEngine`.

    Any number of schedulers may sweep the same store. Timer claims are
    atomic per timer, so each due timer is processed by one worker at a
    time and marked fired at most once.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        config: Optional[SchedulerConfig] = None,
        worker_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> None:
        self.engine = engine
        self.config = config or engine.config.scheduler
        self.worker_id = worker_id or engine.config.resolved_worker_id()
        self.organization_id = organization_id

    async def run_sweep(
        self, dry_run: bool = False, max_instances_per_run: Optional[int] = None
    ) -> SweepReport:
        now = self.engine.now()
        report = SweepReport(worker_id=self.worker_id, dry_run=dry_run, started_at=now)

        if dry_run:
            timers = await self.engine.timers.peek_due_timers(
                now, self.config.timer_batch_size, self.organization_id
            )
        else:
            timers = await self.engine.timers.claim_due_timers(
                now, self.config.timer_batch_size, self.worker_id, self.organization_id
            )
        for timer in timers:
            report.actions.append(
                SweepAction(
                    kind="fire_timer",
                    execution_id=timer.instance_id,
                    organization_id=timer.organization_id,
                    timer_id=timer.timer_id,
                    purpose=timer.purpose,
                )
            )
            if dry_run:
                continue
            if await self._fire(timer, report):
                report.timers_processed += 1

        limit = max_instances_per_run or self.config.max_instances_per_run
        stale = await self.engine.repository.list_stale_instances(
            now,
            now - timedelta(seconds=self.config.stale_after_seconds),
            limit,
            self.organization_id,
        )
        for instance in stale:
            report.actions.append(
                SweepAction(
                    kind="advance_stale",
                    execution_id=instance.execution_id,
                    organization_id=instance.organization_id,
                    detail=f"last updated {instance.updated_at.isoformat()}",
                )
            )
            if dry_run:
                continue
            try:
                await self.engine.heal(instance.organization_id, instance.execution_id)
                report.instances_advanced += 1
            except PlaybookEngineError as e:
                self._record_error(report, f"advance {instance.execution_id}", e)
            except Exception as e:
                logger.exception(
                    f"Unexpected error advancing execution_id={instance.execution_id}"
                )
                report.errors.append(f"advance {instance.execution_id}: {e}")

        report.finished_at = self.engine.now()
        logger.info(
            f"Sweep by {self.worker_id} finished: {report.timers_processed} timers, "
            f"{report.instances_advanced} stale executions, {len(report.errors)} errors"
            + (" (dry run)" if dry_run else "")
        )
        return report

    async def _fire(self, timer: Timer, report: SweepReport) -> bool:
        try:
            await self.engine.handle_timer(timer)
        except (NotFoundError, ValidationError) as e:
            # the same timer would fail again on every reclaim
            self._record_error(report, f"timer {timer.timer_id}", e)
            await self._retire(timer, report)
            return False
        except PlaybookEngineError as e:
            self._record_error(report, f"timer {timer.timer_id}", e)
            return False
        except Exception as e:
            logger.exception(f"Unexpected error firing timer {timer.timer_id}")
            report.errors.append(f"timer {timer.timer_id}: {e}")
            return False
        try:
            await self.engine.timers.mark_fired(timer, self.worker_id)
        except PlaybookEngineError as e:
            self._record_error(report, f"timer {timer.timer_id}", e)
            return False
        return True

    async def _retire(self, timer: Timer, report: SweepReport) -> None:
        """Mark a timer that cannot be processed as fired without acting on it."""
        try:
            await self.engine.timers.mark_fired(timer, self.worker_id)
        except PlaybookEngineError as e:
            self._record_error(report, f"retire timer {timer.timer_id}", e)
            return
        logger.warning(
            f"Retired {timer.purpose.value} timer {timer.timer_id} of "
            f"execution_id={timer.instance_id} after a permanent failure"
        )

    @staticmethod
    def _record_error(report: SweepReport, what: str, error: PlaybookEngineError) -> None:
        logger.error(f"Sweep failed on {what}: {error}")
        report.errors.append(f"{what}: {error}")

    async def run_forever(
        self, interval: Optional[float] = None, lifespan: Optional[float] = None
    ) -> None:
        """Sweep every ``interval`` seconds.

        Args:
            interval: Seconds between sweeps (default from config).
            lifespan: Maximum time in seconds to keep running. If None, runs indefinitely.
        """
        interval = interval if interval is not None else self.config.interval_seconds
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        logger.info(f"Scheduler {self.worker_id} started (interval={interval}s)")

        while True:
            await self.run_sweep()
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            await asyncio.sleep(interval)
        logger.info(f"Scheduler {self.worker_id} stopped")
