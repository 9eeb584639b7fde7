# services/storage-service/storage_core/routers/upload.py

import logging
from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from ..dependencies import get_current_owner, get_chunk_manager, get_file_repository
from ..exceptions import (
    StorageError, ConfigurationError, BackendUnavailable, BackendRequestFailed,
    InvalidSession, SessionNotFound, IncompleteUpload, ChunkNotFound,
)
from ..models.schemas import (
    ChunkSessionCreate, ChunkSessionResponse, ChunkRegister,
    ChunkUploadResponse, CompleteUploadRequest, StoredObjectResponse,
)
from ..services.chunks import ChunkSessionManager
from ..services.cost import format_cost
from ..services.migration import derive_file_key
from ..services.repository import FileRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/upload", tags=["upload"])


def storage_http_error(e: Exception) -> HTTPException:
    """Map storage-core errors onto HTTP responses"""
    if isinstance(e, InvalidSession):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (SessionNotFound, ChunkNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, IncompleteUpload):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=503, detail="Storage backend not configured")
    if isinstance(e, (BackendUnavailable, BackendRequestFailed)):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail="Internal storage error")


@router.post("/init", response_model=ChunkSessionResponse)
async def init_upload(
    body: ChunkSessionCreate,
    owner_id: int = Depends(get_current_owner),
    manager: ChunkSessionManager = Depends(get_chunk_manager),
):
    """Start a chunked upload session"""
    try:
        session = await manager.create_session(
            body.file_name, body.file_size, body.mime_type, owner_id=owner_id
        )
    except InvalidSession as e:
        raise storage_http_error(e)
    logger.info(f"[Upload] Owner {owner_id} started {session['session_id']}")
    return ChunkSessionResponse(**session)


@router.get("/{session_id}")
async def upload_status(
    session_id: str,
    owner_id: int = Depends(get_current_owner),
    manager: ChunkSessionManager = Depends(get_chunk_manager),
):
    session = await manager.get_session(session_id, owner_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Upload session not found")
    return {
        "session_id": session.session_id,
        "file_name": session.file_name,
        "received": len(session.uploaded_chunks),
        "total_chunks": session.total_chunks,
        "missing_chunks": session.missing_chunks(),
    }


@router.put("/{session_id}/chunk/{chunk_index}", response_model=ChunkUploadResponse)
async def upload_chunk(
    session_id: str,
    chunk_index: int,
    chunk: UploadFile = File(...),
    owner_id: int = Depends(get_current_owner),
    manager: ChunkSessionManager = Depends(get_chunk_manager),
):
    """Upload one chunk's bytes; re-sending an index replaces it"""
    data = await chunk.read()
    try:
        result = await manager.upload_chunk(session_id, chunk_index, data, owner_id=owner_id)
    except StorageError as e:
        raise storage_http_error(e)
    return ChunkUploadResponse(**result)


@router.post("/{session_id}/chunk/{chunk_index}/register")
async def register_chunk(
    session_id: str,
    chunk_index: int,
    body: ChunkRegister,
    owner_id: int = Depends(get_current_owner),
    manager: ChunkSessionManager = Depends(get_chunk_manager),
):
    """Register a chunk the client uploaded elsewhere"""
    try:
        await manager.register_chunk(session_id, chunk_index, body.chunk_url, owner_id=owner_id)
    except StorageError as e:
        raise storage_http_error(e)
    return {"status": "registered", "chunk_index": chunk_index}


@router.post("/{session_id}/complete", response_model=StoredObjectResponse)
async def complete_upload(
    session_id: str,
    body: CompleteUploadRequest,
    owner_id: int = Depends(get_current_owner),
    manager: ChunkSessionManager = Depends(get_chunk_manager),
    repository: FileRepository = Depends(get_file_repository),
):
    """Combine every chunk into the final object and create its file record"""
    session = await manager.get_session(session_id, owner_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Upload session not found")

    final_key = derive_file_key(owner_id, session.file_name)
    try:
        result = await manager.combine_chunks(session_id, final_key, owner_id=owner_id)
    except StorageError as e:
        raise storage_http_error(e)

    record = await repository.create_file(
        owner_id=owner_id,
        file_name=session.file_name,
        file_key=result["key"],
        file_url=result["url"],
        file_size=result["size"],
        mime_type=session.mime_type,
        folder=body.folder,
    )
    return StoredObjectResponse(
        file_id=record.id,
        key=result["key"],
        url=result["url"],
        size=result["size"],
        cost=format_cost(result["cost"]),
    )
