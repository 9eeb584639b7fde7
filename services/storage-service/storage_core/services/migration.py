# services/storage-service/storage_core/services/migration.py
"""
Legacy backend -> current backend migration.

Every active file whose key does not follow the migrated layout
(owner/{ownerId}/files/{timestamp}-{name}) is fetched from its legacy URL,
re-uploaded under a fresh key and repointed. Batches run sequentially with a
pause in between; items inside a batch run concurrently. A failing item is
recorded and never aborts the batch or the run, so re-running the job is the
recovery path.

Concurrent calls to MigrationJob.run are not guarded here; the scheduler owns
the single-run guard.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from ..config import settings
from ..exceptions import RecordNotFound
from ..models.database import File
from ..monitoring.metrics import migration_items, migration_runs, migration_duration
from .cost import format_cost
from .fetch import fetch_bytes, probe_url, DEFAULT_CONTENT_TYPE
from .pricing import check_subscription_pricing
from .repository import FileRepository
from .storage import ObjectStore

logger = logging.getLogger(__name__)

MIGRATED_KEY_PATTERN = re.compile(r"^owner/\d+/files/\d+-.+")

_last_timestamp = 0


def _unique_timestamp_ms() -> int:
    """Wall-clock milliseconds, strictly increasing within this process"""
    global _last_timestamp
    _last_timestamp = max(int(time.time() * 1000), _last_timestamp + 1)
    return _last_timestamp


def derive_file_key(owner_id: int, file_name: str, timestamp_ms: Optional[int] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = _unique_timestamp_ms()
    return f"owner/{owner_id}/files/{timestamp_ms}-{file_name}"


def is_migrated_key(key: Optional[str]) -> bool:
    return bool(key) and MIGRATED_KEY_PATTERN.match(key) is not None


def is_migrated(record: File) -> bool:
    return is_migrated_key(record.file_key)


@dataclass
class MigrationError:
    record_id: int
    error_message: str

    def to_dict(self) -> dict:
        return {"recordId": self.record_id, "errorMessage": self.error_message}


@dataclass
class MigrationProgress:
    total_files: int = 0
    migrated_files: int = 0
    failed_files: int = 0
    total_size: int = 0
    total_cost: Decimal = Decimal("0")
    start_time: datetime = field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    errors: List[MigrationError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or datetime.utcnow()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "total_files": self.total_files,
            "migrated_files": self.migrated_files,
            "failed_files": self.failed_files,
            "total_size": self.total_size,
            "total_cost": format_cost(self.total_cost),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "cancelled": self.cancelled,
            "errors": [e.to_dict() for e in self.errors],
        }


class MigrationJob:
    def __init__(
        self,
        repository: FileRepository,
        target: ObjectStore,
        notifier,
        fetch=fetch_bytes,
        probe=probe_url,
        sleep=asyncio.sleep,
        item_timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.target = target
        self.notifier = notifier
        self.fetch = fetch
        self.probe = probe
        self.sleep = sleep
        self.item_timeout = settings.MIGRATION_ITEM_TIMEOUT if item_timeout is None else item_timeout
        self._cancel = asyncio.Event()

    def cancel(self):
        """Stop after the batch currently in flight"""
        logger.info("[Migration] Migration cancellation requested")
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def reset_cancel(self):
        self._cancel.clear()

    async def migrate_record(self, record: File) -> Decimal:
        """Copy one record's bytes to the target backend and repoint it. Returns the new cost."""
        body, content_type = await self.fetch(record.file_url)

        new_key = derive_file_key(record.owner_id, record.file_name)
        result = await self.target.put(
            new_key, body, record.mime_type or content_type or DEFAULT_CONTENT_TYPE
        )
        await self.repository.update_pointer(record.id, result["key"], result["url"])

        logger.info(f"[Migration] Migrated file {record.id} -> {result['key']} - Cost: £{format_cost(result['cost'])}")
        return result["cost"]

    async def _migrate_bounded(self, record: File) -> Decimal:
        if not self.item_timeout:
            return await self.migrate_record(record)
        try:
            return await asyncio.wait_for(self.migrate_record(record), timeout=self.item_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Timed out after {self.item_timeout}s")

    async def run(self, batch_size: Optional[int] = None, delay_ms: Optional[int] = None) -> MigrationProgress:
        batch_size = batch_size or settings.MIGRATION_BATCH_SIZE
        delay_ms = settings.MIGRATION_DELAY_MS if delay_ms is None else delay_ms
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        progress = MigrationProgress()

        try:
            logger.info(f"[Migration] Starting migration to {self.target.config.name}...")

            records = await self.repository.list_pending_migration(is_migrated)
            progress.total_files = len(records)
            logger.info(f"[Migration] Found {progress.total_files} files to migrate")

            for start in range(0, len(records), batch_size):
                if self._cancel.is_set():
                    progress.cancelled = True
                    logger.warning(
                        f"[Migration] Cancelled with {progress.total_files - start} files not attempted"
                    )
                    break

                batch = records[start:start + batch_size]
                results = await asyncio.gather(
                    *(self._migrate_bounded(record) for record in batch),
                    return_exceptions=True,
                )

                for record, result in zip(batch, results):
                    if isinstance(result, BaseException):
                        progress.failed_files += 1
                        message = str(result) or type(result).__name__
                        progress.errors.append(MigrationError(record.id, message))
                        migration_items.labels(result="failed").inc()
                        logger.error(f"[Migration] Failed to migrate file {record.id}: {message}")
                    else:
                        progress.migrated_files += 1
                        progress.total_cost += result
                        progress.total_size += record.file_size or 0
                        migration_items.labels(result="migrated").inc()

                done = progress.migrated_files + progress.failed_files
                logger.info(
                    f"[Migration] Progress: {done}/{progress.total_files} "
                    f"({round(done / progress.total_files * 100)}%), {progress.failed_files} failed"
                )

                if start + batch_size < len(records):
                    await self.sleep(delay_ms / 1000)

            logger.info("[Migration] Checking subscription prices...")
            checked = await check_subscription_pricing(self.repository)

            progress.end_time = datetime.utcnow()
            status = "cancelled" if progress.cancelled else "completed"
            await self.repository.record_run(progress, status)
            migration_runs.labels(status=status).inc()
            migration_duration.observe(progress.duration_seconds)

            duration = round(progress.duration_seconds)
            logger.info(
                f"[Migration] Migration {status} in {duration}s: "
                f"{progress.migrated_files} migrated, {progress.failed_files} failed"
            )
            await self.notifier.notify(
                "Storage Migration Complete" if not progress.cancelled else "Storage Migration Cancelled",
                f"Migrated {progress.migrated_files}/{progress.total_files} files in {duration}s. "
                f"Failed: {progress.failed_files}. Total cost: £{format_cost(progress.total_cost)}. "
                f"Checked {checked} active subscriptions against the tier table.",
            )
            # Token consumed by this run
            self._cancel.clear()
            return progress

        except Exception as e:
            progress.end_time = datetime.utcnow()
            migration_runs.labels(status="failed").inc()
            logger.error(f"[Migration] Migration job failed: {e}")
            try:
                await self.repository.record_run(progress, "failed")
            except Exception as log_error:
                logger.error(f"[Migration] Could not record failed run: {log_error}")
            await self.notifier.notify("Storage Migration Failed", f"Migration failed: {e}")
            raise

    async def verify_integrity(self, file_id: int) -> bool:
        """Spot check: is the record's current URL reachable?"""
        record = await self.repository.get(file_id)
        if record is None:
            logger.error(f"[Verification] File {file_id} not found")
            return False
        return await self.probe(record.file_url)

    async def rollback_record(self, file_id: int) -> None:
        """Delete the record's object from the target backend and mark it deleted"""
        record = await self.repository.get(file_id)
        if record is None:
            raise RecordNotFound(file_id)

        if record.file_key:
            await self.target.delete(record.file_key)
        await self.repository.mark_deleted(file_id)
        logger.info(f"[Rollback] File {file_id} rolled back from {self.target.config.name}")

    async def summary(self) -> dict:
        return await self.repository.migration_summary(is_migrated)
