# services/storage-service/storage_core/models/schemas.py

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

# Chunked upload schemas
class ChunkSessionCreate(BaseModel):
    file_name: str = Field(min_length=1)
    file_size: int = Field(ge=0)
    mime_type: Optional[str] = None

class ChunkSessionResponse(BaseModel):
    session_id: str
    total_chunks: int
    chunk_size: int

class ChunkRegister(BaseModel):
    chunk_url: str

class ChunkUploadResponse(BaseModel):
    chunk_index: int
    url: str
    received: int
    total_chunks: int

class CompleteUploadRequest(BaseModel):
    folder: str = "/"

class StoredObjectResponse(BaseModel):
    file_id: int
    key: str
    url: str
    size: int
    cost: str

# Migration schemas
class MigrationRunRequest(BaseModel):
    batch_size: Optional[int] = Field(default=None, ge=1)
    delay_ms: Optional[int] = Field(default=None, ge=0)

class MigrationStatusResponse(BaseModel):
    in_progress: bool
    last_stats: Optional[Dict[str, Any]] = None
    last_run_time: Optional[str] = None

class MigrationSummaryResponse(BaseModel):
    total_files: int
    migrated_files: int
    remaining_files: int
    migration_percentage: int

class MigrationRunRecord(BaseModel):
    id: int
    status: str
    start_time: Optional[str]
    end_time: Optional[str]
    total_files: int
    migrated_files: int
    failed_files: int
    total_size: int
    total_cost: str
    errors: List[Dict[str, Any]]
