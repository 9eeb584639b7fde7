# services/storage-service/storage_core/models/database.py

from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean,
    JSON, BigInteger, Text, Numeric, Index
)
from sqlalchemy.orm import declarative_base
from datetime import datetime

Base = declarative_base()

class File(Base):
    __tablename__ = "files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    file_name = Column(String(500), nullable=False)
    file_key = Column(String(500), nullable=False)
    file_url = Column(Text, nullable=False)
    file_size = Column(BigInteger, nullable=False, default=0)
    mime_type = Column(String(100))
    folder = Column(String(500), nullable=False, default="/")
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_files_owner_key", "owner_id", "file_key"),
    )

class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    tier = Column(String(50), nullable=False, default="free")
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, default=datetime.utcnow)

class MigrationRun(Base):
    """Append-only log, one row per migration run"""
    __tablename__ = "migration_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime)
    status = Column(String(20), nullable=False)  # completed | failed | cancelled
    total_files = Column(Integer, nullable=False, default=0)
    migrated_files = Column(Integer, nullable=False, default=0)
    failed_files = Column(Integer, nullable=False, default=0)
    total_size = Column(BigInteger, nullable=False, default=0)
    total_cost = Column(Numeric(14, 4), nullable=False, default=0)
    errors = Column(JSON)
