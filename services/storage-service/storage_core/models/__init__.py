# services/storage-service/storage_core/models/__init__.py
"""Database models and schemas"""
from .database import Base, File, Subscription, MigrationRun
__all__ = ["Base", "File", "Subscription", "MigrationRun"]
from .schemas import *
