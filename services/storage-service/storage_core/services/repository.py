# services/storage-service/storage_core/services/repository.py
"""Relational record store access for files, subscriptions and migration runs"""
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional
from sqlalchemy import select, update, desc
from sqlalchemy.ext.asyncio import AsyncSession
from ..models.database import File, Subscription, MigrationRun


class FileRepository:
    """Thin async wrapper over a session factory (one short session per call)"""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def list_active(self) -> List[File]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(File).filter(File.is_deleted == False).order_by(File.id)  # noqa: E712
            )
            return list(result.scalars().all())

    async def list_pending_migration(self, is_migrated: Callable[[File], bool]) -> List[File]:
        """Active files whose pointer does not yet reflect the current backend"""
        return [f for f in await self.list_active() if not is_migrated(f)]

    async def get(self, file_id: int) -> Optional[File]:
        async with self.session_factory() as db:
            result = await db.execute(select(File).filter(File.id == file_id))
            return result.scalar_one_or_none()

    async def create_file(
        self, owner_id: int, file_name: str, file_key: str, file_url: str,
        file_size: int, mime_type: Optional[str] = None, folder: str = "/",
    ) -> File:
        record = File(
            owner_id=owner_id,
            file_name=file_name,
            file_key=file_key,
            file_url=file_url,
            file_size=file_size,
            mime_type=mime_type,
            folder=folder,
        )
        async with self.session_factory() as db:
            db.add(record)
            await db.commit()
            await db.refresh(record)
        return record

    async def update_pointer(self, file_id: int, file_key: str, file_url: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(File)
                .where(File.id == file_id)
                .values(file_key=file_key, file_url=file_url, updated_at=datetime.utcnow())
            )
            await db.commit()

    async def mark_deleted(self, file_id: int) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(File)
                .where(File.id == file_id)
                .values(is_deleted=True, updated_at=datetime.utcnow())
            )
            await db.commit()

    async def active_subscriptions(self) -> List[Subscription]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription).filter(Subscription.status == "active")
            )
            return list(result.scalars().all())

    async def record_run(self, progress, status: str) -> MigrationRun:
        """Append one migration_runs row for a finished run"""
        run = MigrationRun(
            started_at=progress.start_time,
            ended_at=progress.end_time,
            status=status,
            total_files=progress.total_files,
            migrated_files=progress.migrated_files,
            failed_files=progress.failed_files,
            total_size=progress.total_size,
            total_cost=progress.total_cost,
            errors=[e.to_dict() for e in progress.errors],
        )
        async with self.session_factory() as db:
            db.add(run)
            await db.commit()
            await db.refresh(run)
        return run

    async def recent_runs(self, limit: int = 10) -> List[MigrationRun]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MigrationRun).order_by(desc(MigrationRun.id)).limit(limit)
            )
            return list(result.scalars().all())

    async def migration_summary(self, is_migrated: Callable[[File], bool]) -> dict:
        files = await self.list_active()
        migrated = sum(1 for f in files if is_migrated(f))
        total = len(files)
        return {
            "total_files": total,
            "migrated_files": migrated,
            "remaining_files": total - migrated,
            "migration_percentage": round(migrated / total * 100) if total else 100,
        }


def run_to_dict(run: MigrationRun) -> dict:
    return {
        "id": run.id,
        "status": run.status,
        "start_time": run.started_at.isoformat() if run.started_at else None,
        "end_time": run.ended_at.isoformat() if run.ended_at else None,
        "total_files": run.total_files,
        "migrated_files": run.migrated_files,
        "failed_files": run.failed_files,
        "total_size": run.total_size,
        "total_cost": str(Decimal(run.total_cost or 0)),
        "errors": run.errors or [],
    }
