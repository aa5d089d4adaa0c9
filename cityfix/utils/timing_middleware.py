import time
import logging
import os
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from pymongo import monitoring

logger = logging.getLogger("performance")

QUIET_PATHS = {"/", "/health", "/favicon.ico"}


class CommandLogger(monitoring.CommandListener):
    """Logs slow MongoDB commands; fast ones stay silent."""

    def __init__(self):
        self._started = {}

    def started(self, event):
        self._started[event.request_id] = time.time()

    def succeeded(self, event):
        start_time = self._started.pop(event.request_id, None)
        if start_time is None:
            return
        duration = (time.time() - start_time) * 1000
        if duration > 100:
            logger.warning(f"🐌 Slow MongoDB {event.command_name}: {duration:.2f} ms")

    def failed(self, event):
        start_time = self._started.pop(event.request_id, None)
        duration = (time.time() - start_time) * 1000 if start_time else 0

        # Index creation at startup overlaps harmlessly with existing indexes
        if event.command_name == "createIndexes" and getattr(event.failure, "code", 0) == 85:
            return
        logger.error(f"❌ MongoDB {event.command_name} failed after {duration:.2f} ms")


class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        response: Response = await call_next(request)
        process_time = time.time() - start_time

        path = request.url.path
        if path not in QUIET_PATHS and not path.startswith("/media/"):
            slow_ms = int(os.getenv("SLOW_REQUEST_MS", "2500"))
            if process_time * 1000 > slow_ms:
                logger.warning(f"🐌 Slow request {request.method} {path} took {process_time * 1000:.2f} ms")

        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        return response
