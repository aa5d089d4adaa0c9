"""
Evidence storage: blob uploads with progress reporting and cooperative cancellation.

Uploads go one item at a time. A cancelled or failed action deletes whatever
it already uploaded, so no partial evidence list is ever persisted.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from bson.objectid import ObjectId
from bson.errors import InvalidId
from gridfs.errors import NoFile

from cityfix.core.config import settings, MAX_PHOTOS, MAX_VIDEOS, MAX_VIDEO_BYTES
from cityfix.core.errors import ValidationError, UploadFailure, UploadCancelled

logger = logging.getLogger(__name__)

PHOTO = "photo"
VIDEO = "video"

UPLOAD_CHUNK_BYTES = 256 * 1024


@dataclass
class EvidenceItem:
    kind: str
    data: bytes
    filename: str = ""
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadProgress:
    index: int
    total_items: int
    filename: str
    bytes_sent: int
    total_bytes: int


ProgressCallback = Callable[[UploadProgress], None]


@dataclass
class UploadedEvidence:
    photo_urls: List[str] = field(default_factory=list)
    video_urls: List[str] = field(default_factory=list)

    @property
    def urls(self) -> List[str]:
        return self.photo_urls + self.video_urls


class CancelToken:
    """
    Cooperative cancellation for upload-bound transitions.

    The engine seals the token right before the final document write; after
    that cancel() has no effect and returns False.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._sealed = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def sealed(self) -> bool:
        return self._sealed

    def cancel(self) -> bool:
        if self._sealed:
            return False
        self._event.set()
        return True

    def seal(self) -> bool:
        if self.cancelled:
            return False
        self._sealed = True
        return True

    async def wait(self):
        await self._event.wait()


def validate_evidence(
    items: List[EvidenceItem],
    label: str = "evidence",
    existing_photos: int = 0,
    existing_videos: int = 0,
):
    """
    Check one evidence set (before or after) before anything is uploaded.

    `existing_*` count media already stored in the same set, e.g. after photos
    kept from an earlier progress save.
    """
    photos = [item for item in items if item.kind == PHOTO]
    videos = [item for item in items if item.kind == VIDEO]

    unknown = [item.kind for item in items if item.kind not in (PHOTO, VIDEO)]
    if unknown:
        raise ValidationError(f"Unsupported {label} type: {unknown[0]}")
    if len(photos) + existing_photos > MAX_PHOTOS:
        raise ValidationError(f"At most {MAX_PHOTOS} photos allowed per {label} set")
    if len(videos) + existing_videos > MAX_VIDEOS:
        raise ValidationError(f"At most {MAX_VIDEOS} video allowed per {label} set")
    for video in videos:
        if video.size > MAX_VIDEO_BYTES:
            size_mb = video.size / (1024 * 1024)
            raise ValidationError(f"Video is {size_mb:.1f} MB; the limit is 15 MB")


class BlobStore(ABC):

    @abstractmethod
    async def upload(
        self,
        name: str,
        data: bytes,
        content_type: Optional[str] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> str:
        """Store the bytes and return a retrievable URL."""

    @abstractmethod
    async def delete(self, url: str):
        pass


class GridFSBlobStore(BlobStore):
    """Blob store on MongoDB GridFS; files are served by GET /media/{file_id}."""

    def __init__(self, fs, base_url: Optional[str] = None):
        self.fs = fs
        self.base_url = (base_url or settings.public_base_url).rstrip("/")

    def url_for(self, file_id) -> str:
        return f"{self.base_url}/media/{file_id}"

    @staticmethod
    def file_id_from_url(url: str) -> ObjectId:
        return ObjectId(url.rstrip("/").rsplit("/", 1)[-1])

    async def upload(self, name, data, content_type=None, on_progress=None) -> str:
        grid_in = self.fs.open_upload_stream(name, metadata={"contentType": content_type})
        total = len(data)
        sent = 0
        try:
            while sent < total:
                chunk = data[sent:sent + UPLOAD_CHUNK_BYTES]
                await grid_in.write(chunk)
                sent += len(chunk)
                if on_progress:
                    on_progress(sent, total)
            await grid_in.close()
        except BaseException:
            # Covers task cancellation too: drop the chunks written so far
            await grid_in.abort()
            raise
        return self.url_for(grid_in._id)

    async def delete(self, url: str):
        try:
            await self.fs.delete(self.file_id_from_url(url))
        except (NoFile, InvalidId):
            logger.warning(f"Blob already gone or not ours: {url}")

    async def open(self, file_id: str):
        return await self.fs.open_download_stream(ObjectId(file_id))


class EvidenceUploader:

    def __init__(self, blob_store: BlobStore):
        self.blob_store = blob_store

    async def upload(
        self,
        items: List[EvidenceItem],
        prefix: str,
        cancel_token: Optional[CancelToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadedEvidence:
        uploaded: List[Tuple[str, str]] = []
        try:
            for index, item in enumerate(items):
                if cancel_token and cancel_token.cancelled:
                    raise UploadCancelled()
                url = await self._upload_one(item, index, len(items), prefix, cancel_token, on_progress)
                uploaded.append((item.kind, url))
            if cancel_token and cancel_token.cancelled:
                raise UploadCancelled()
        except (UploadCancelled, asyncio.CancelledError):
            # CancelledError: the request itself went away (client disconnect)
            logger.info(f"Upload cancelled after {len(uploaded)}/{len(items)} items ({prefix})")
            await self.discard([url for _, url in uploaded])
            raise
        except Exception as e:
            logger.error(f"❌ Evidence upload failed ({prefix}): {e}")
            await self.discard([url for _, url in uploaded])
            raise UploadFailure(f"Failed to upload evidence: {e}") from e

        result = UploadedEvidence()
        for kind, url in uploaded:
            if kind == VIDEO:
                result.video_urls.append(url)
            else:
                result.photo_urls.append(url)
        return result

    async def _upload_one(self, item, index, total_items, prefix, cancel_token, on_progress) -> str:
        name = f"{prefix}/{item.kind}_{index}_{item.filename or 'upload'}"

        def report(sent: int, total: int):
            if on_progress:
                on_progress(UploadProgress(index, total_items, item.filename, sent, total))

        upload = asyncio.ensure_future(self.blob_store.upload(name, item.data, item.content_type, report))
        if cancel_token is None:
            return await upload

        waiter = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({upload, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if upload.done():
            return upload.result()

        upload.cancel()
        try:
            await upload
        except asyncio.CancelledError:
            pass
        raise UploadCancelled()

    async def discard(self, urls: List[str]):
        for url in urls:
            try:
                await self.blob_store.delete(url)
            except Exception as e:
                logger.error(f"❌ Could not discard uploaded blob {url}: {e}")
