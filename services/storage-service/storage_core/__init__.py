# services/storage-service/storage_core/__init__.py
"""Cloud Storage Core Service"""
def __getattr__(name):
    if name == "__version__":
        from .config import settings
        return settings.VERSION
    raise AttributeError(name)
