# services/storage-service/storage_core/services/scheduler.py
"""Daily migration runner with retry/backoff and a single-run guard"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple
from ..config import settings
from ..exceptions import ConfigurationError
from ..monitoring.metrics import migration_in_progress
from .cost import format_cost
from .migration import MigrationJob, MigrationProgress

logger = logging.getLogger(__name__)


@dataclass
class ScheduleConfig:
    enabled: bool = False
    run_time: str = "02:00"  # HH:MM, local time
    batch_size: int = 10
    delay_ms: int = 1000
    max_retries: int = 3  # total attempts per run

    @classmethod
    def from_settings(cls) -> "ScheduleConfig":
        return cls(
            enabled=settings.MIGRATION_ENABLED,
            run_time=settings.MIGRATION_RUN_TIME,
            batch_size=settings.MIGRATION_BATCH_SIZE,
            delay_ms=settings.MIGRATION_DELAY_MS,
            max_retries=settings.MIGRATION_MAX_RETRIES,
        )


def parse_run_time(run_time: str) -> Tuple[int, int]:
    try:
        hours, minutes = (int(part) for part in run_time.split(":"))
    except ValueError:
        raise ValueError(f"run_time must be HH:MM, got {run_time!r}")
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"run_time out of range: {run_time!r}")
    return hours, minutes


def next_run_at(now: datetime, run_time: str) -> datetime:
    """Next occurrence of run_time; tomorrow if today's has already passed"""
    hours, minutes = parse_run_time(run_time)
    scheduled = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if scheduled <= now:
        scheduled += timedelta(days=1)
    return scheduled


def backoff_seconds(attempt: int) -> int:
    """Pause after failed attempt number `attempt` (0-based): 60s, 120s, 240s..."""
    return 2 ** attempt * 60


class MigrationScheduler:
    """
    IDLE -> RUNNING -> IDLE. A trigger while RUNNING returns immediately.
    The guard is a process-local flag, so it only protects one instance.
    """

    def __init__(
        self,
        job: MigrationJob,
        notifier,
        config: Optional[ScheduleConfig] = None,
        sleep=asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.job = job
        self.notifier = notifier
        self.config = config or ScheduleConfig.from_settings()
        self.sleep = sleep
        self.clock = clock

        self.in_progress = False
        self.last_stats: Optional[MigrationProgress] = None
        self.last_run_time: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    def status(self) -> dict:
        return {
            "in_progress": self.in_progress,
            "last_stats": self.last_stats.to_dict() if self.last_stats else None,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
        }

    def cancel(self) -> bool:
        """Ask the running job to stop between batches. False if nothing is running."""
        if not self.in_progress:
            return False
        self.job.cancel()
        return True

    async def execute(
        self, batch_size: Optional[int] = None, delay_ms: Optional[int] = None
    ) -> Optional[MigrationProgress]:
        if self.in_progress:
            logger.info("[Scheduled Migration] Migration already in progress, skipping")
            return None

        self.in_progress = True
        migration_in_progress.set(1)
        max_attempts = max(1, self.config.max_retries)
        batch_size = batch_size or self.config.batch_size
        delay_ms = self.config.delay_ms if delay_ms is None else delay_ms
        attempts = 0
        self.job.reset_cancel()

        try:
            logger.info("[Scheduled Migration] Starting migration")
            while True:
                attempts += 1
                try:
                    stats = await self.job.run(batch_size, delay_ms)
                except ConfigurationError:
                    raise
                except Exception as e:
                    if attempts >= max_attempts:
                        raise
                    delay = backoff_seconds(attempts - 1)
                    logger.warning(
                        f"[Scheduled Migration] Attempt {attempts} failed, retrying in {delay}s: {e}"
                    )
                    if not self.job.cancel_requested:
                        await self.sleep(delay)
                    if self.job.cancel_requested:
                        logger.warning(f"[Scheduled Migration] Cancelled after {attempts} attempts, not retrying")
                        await self.notifier.notify(
                            "Scheduled Storage Migration Cancelled",
                            f"Migration cancelled after {attempts} attempts; retry skipped. Last error: {e}",
                        )
                        return None
                    continue

                self.last_stats = stats
                self.last_run_time = self.clock()
                outcome = "cancelled" if stats.cancelled else "completed"
                logger.info(
                    f"[Scheduled Migration] Migration {outcome}: "
                    f"{stats.migrated_files}/{stats.total_files} migrated"
                )
                await self.notifier.notify(
                    f"Scheduled Storage Migration {outcome.capitalize()}",
                    f"Migrated {stats.migrated_files}/{stats.total_files} files. "
                    f"Cost: £{format_cost(stats.total_cost)}",
                )
                return stats

        except Exception as e:
            logger.error(f"[Scheduled Migration] Migration job failed after {attempts} attempts: {e}")
            await self.notifier.notify(
                "Scheduled Storage Migration Failed",
                f"Migration failed after {attempts} attempts: {e}",
            )
            return None
        finally:
            self.job.reset_cancel()
            self.in_progress = False
            migration_in_progress.set(0)

    async def _run_forever(self):
        while True:
            now = self.clock()
            run_at = next_run_at(now, self.config.run_time)
            delay = (run_at - now).total_seconds()
            logger.info(f"[Scheduled Migration] Next migration scheduled in {round(delay / 60)} minutes")
            await self.sleep(delay)
            await self.execute()

    def start(self) -> Optional[asyncio.Task]:
        if not self.config.enabled:
            logger.info("[Scheduled Migration] Scheduled migration is disabled")
            return None
        if self._task and not self._task.done():
            return self._task

        parse_run_time(self.config.run_time)
        logger.info(f"[Scheduled Migration] Scheduling migration at {self.config.run_time} daily")
        self._task = asyncio.create_task(self._run_forever())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
