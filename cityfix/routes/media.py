from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from bson.errors import InvalidId
from gridfs.errors import NoFile
import logging

from cityfix.core.dependencies import get_blob_store
from cityfix.services.storage_service import BlobStore, GridFSBlobStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/media/{file_id}")
async def get_media(file_id: str, blob_store: BlobStore = Depends(get_blob_store)):
    """Stream an uploaded evidence file back from GridFS."""
    if not isinstance(blob_store, GridFSBlobStore):
        raise HTTPException(status_code=404, detail="Media not found")
    try:
        grid_out = await blob_store.open(file_id)
    except (NoFile, InvalidId):
        raise HTTPException(status_code=404, detail="Media not found")

    metadata = grid_out.metadata or {}
    media_type = metadata.get("contentType") or "application/octet-stream"

    async def chunks():
        while True:
            chunk = await grid_out.readchunk()
            if not chunk:
                break
            yield chunk

    return StreamingResponse(
        chunks(),
        media_type=media_type,
        headers={"Content-Length": str(grid_out.length)},
    )
