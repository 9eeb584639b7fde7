# services/storage-service/storage_core/exceptions.py
"""Error taxonomy for the storage core"""
from typing import Optional


class StorageError(Exception):
    """Base class for every error raised by the storage core"""


class BackendUnavailable(StorageError):
    """Backing object store cannot be reached or is not configured"""


class ConfigurationError(BackendUnavailable):
    """Required backend credentials/config are missing. Never retried."""


class BackendRequestFailed(StorageError):
    """A remote call answered with a non-success status"""

    operation = "request"

    def __init__(self, key: str, status: Optional[int] = None, reason: str = ""):
        self.key = key
        self.status = status
        self.reason = reason
        detail = f"{status} {reason}".strip() if status is not None else reason
        super().__init__(f"{self.operation} failed for {key}: {detail}")


class UploadFailed(BackendRequestFailed):
    operation = "Upload"


class DeleteFailed(BackendRequestFailed):
    operation = "Delete"


class MetadataUnavailable(BackendRequestFailed):
    operation = "Metadata lookup"


class FetchFailed(BackendRequestFailed):
    operation = "Fetch"


class ChunkError(StorageError):
    """Chunk session contract violation"""


class InvalidSession(ChunkError, ValueError):
    pass


class SessionNotFound(ChunkError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class IncompleteUpload(ChunkError):
    def __init__(self, session_id: str, received: int, expected: int):
        self.session_id = session_id
        self.received = received
        self.expected = expected
        super().__init__(f"Missing chunks: {received}/{expected} received for {session_id}")


class ChunkNotFound(ChunkError):
    def __init__(self, session_id: str, index: int):
        self.session_id = session_id
        self.index = index
        super().__init__(f"Chunk {index} not found in session {session_id}")


class RecordNotFound(StorageError):
    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(f"File {record_id} not found")
