"""
Change-stream worker for the reports collection.

Every committed insert/update on `reports` is handed to a handler as
(report_id, before, after), where `after` is the document as that change left
it. Changes to different reports are handled concurrently; changes to the
same report run in commit order. A failing handler is logged and the stream
keeps going.
"""

import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pymongo.errors import PyMongoError

from cityfix.core.config import REPORTS

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[str, Optional[Dict[str, Any]], Optional[Dict[str, Any]]], Awaitable[Any]]

RETRY_DELAY_SECONDS = 5
MAX_CONCURRENT_HANDLERS = 20


def _apply_update(doc: Dict[str, Any], updated: Dict[str, Any], removed: List[str]) -> Dict[str, Any]:
    result = copy.deepcopy(doc)
    for path, value in updated.items():
        *parents, leaf = path.split(".")
        target = result
        for key in parents:
            target = target.setdefault(key, {})
        target[leaf] = value
    for path in removed:
        *parents, leaf = path.split(".")
        target = result
        for key in parents:
            target = target.get(key) or {}
        target.pop(leaf, None)
    return result


def after_image(change: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    The document as this change left it.

    `updateLookup` returns the document as it is when the event is read, which
    can already include later changes. For updates the change's own fields are
    laid over the pre-image when one is recorded, otherwise over the looked-up
    document, so each event reports its own status.
    """
    looked_up = change.get("fullDocument")
    if looked_up is None:
        # Deleted before the lookup ran
        return None
    if change.get("operationType") != "update":
        return looked_up

    description = change.get("updateDescription") or {}
    updated = description.get("updatedFields") or {}
    removed = description.get("removedFields") or []
    base = change.get("fullDocumentBeforeChange")
    return _apply_update(base if base is not None else looked_up, updated, removed)


def before_image(change: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Best available view of the document before the change.

    Uses the pre-image when the collection records one. Without it, an update
    that touched `status` is reported with an unknown previous status so the
    status-change check still fires; other updates reuse the post-image.
    """
    if change.get("operationType") == "insert":
        return None
    if change.get("fullDocumentBeforeChange") is not None:
        return change["fullDocumentBeforeChange"]

    after = after_image(change) or {}
    updated = (change.get("updateDescription") or {}).get("updatedFields") or {}
    if "status" in updated:
        return {**after, "status": None}
    return after


async def dispatch_change(handler: ChangeHandler, name: str, change: Dict[str, Any]):
    report_id = str(change.get("documentKey", {}).get("_id"))
    after = after_image(change)
    if after is None:
        return
    try:
        await handler(report_id, before_image(change), after)
    except Exception as e:
        logger.error(f"❌ Change handler '{name}' failed for report {report_id}: {e}", exc_info=True)


class HandlerPool:
    """
    Runs one handler per change as its own task, at most `limit` at a time.

    A change waits for the previous change of the same report to finish.
    """

    def __init__(self, handler: ChangeHandler, name: str, limit: int = MAX_CONCURRENT_HANDLERS):
        self.handler = handler
        self.name = name
        self._slots = asyncio.Semaphore(limit)
        self._tasks: Set[asyncio.Task] = set()
        self._latest: Dict[str, asyncio.Task] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def submit(self, change: Dict[str, Any]) -> asyncio.Task:
        await self._slots.acquire()
        report_id = str(change.get("documentKey", {}).get("_id"))
        previous = self._latest.get(report_id)
        task = asyncio.ensure_future(self._run(change, previous))
        self._tasks.add(task)
        self._latest[report_id] = task
        task.add_done_callback(lambda done: self._finished(report_id, done))
        return task

    async def _run(self, change: Dict[str, Any], previous: Optional[asyncio.Task]):
        try:
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            await dispatch_change(self.handler, self.name, change)
        finally:
            self._slots.release()

    def _finished(self, report_id: str, task: asyncio.Task):
        self._tasks.discard(task)
        if self._latest.get(report_id) is task:
            del self._latest[report_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"❌ Change task '{self.name}' for report {report_id} crashed: {task.exception()!r}")

    async def drain(self):
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def cancel(self):
        for task in list(self._tasks):
            task.cancel()
        await self.drain()


class Subscription:
    """Handle returned by ChangeWatcher.subscribe(); close() stops the stream."""

    def __init__(self, name: str, task: asyncio.Task):
        self.name = name
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    async def close(self):
        if self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        logger.info(f"🔒 Change subscription '{self.name}' closed")


class ChangeWatcher:

    def __init__(self, db, collection: str = REPORTS, max_concurrent: int = MAX_CONCURRENT_HANDLERS):
        self.db = db
        self.collection = collection
        self.max_concurrent = max_concurrent

    def subscribe(self, handler: ChangeHandler, name: str = "fanout") -> Subscription:
        task = asyncio.ensure_future(self._run(handler, name))
        logger.info(f"👀 Watching '{self.collection}' for changes ({name})")
        return Subscription(name, task)

    async def _run(self, handler: ChangeHandler, name: str):
        resume_token = None
        pipeline = [{"$match": {"operationType": {"$in": ["insert", "update", "replace"]}}}]
        pool = HandlerPool(handler, name, self.max_concurrent)

        try:
            while True:
                try:
                    async with self.db[self.collection].watch(
                        pipeline,
                        full_document="updateLookup",
                        full_document_before_change="whenAvailable",
                        resume_after=resume_token,
                    ) as stream:
                        async for change in stream:
                            resume_token = stream.resume_token
                            await pool.submit(change)
                except PyMongoError as e:
                    logger.error(f"❌ Change stream '{name}' failed: {e}; retrying in {RETRY_DELAY_SECONDS}s")
                    await asyncio.sleep(RETRY_DELAY_SECONDS)
        finally:
            await pool.cancel()
