# services/storage-service/storage_core/services/__init__.py
"""Business logic services"""
from .storage import storage_service, legacy_storage
from .notifications import notification_service
