"""
Expo push delivery.

Messages are posted to the Expo push API in chunks of at most 100. Each chunk
is sent on its own; a failed chunk is reported in its outcome and does not
stop the remaining chunks.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from cityfix.core.config import settings, EXPO_CHUNK_SIZE
from cityfix.core.errors import NotificationDeliveryFailure
from cityfix.models.notification_model import PushMessage

logger = logging.getLogger(__name__)

_EXPO_TOKEN_RE = re.compile(r"^Expo(nent)?PushToken\[.+\]$")


def is_expo_push_token(token: Optional[str]) -> bool:
    return bool(token) and bool(_EXPO_TOKEN_RE.match(token))


def chunk_messages(messages: List[PushMessage], size: int = EXPO_CHUNK_SIZE) -> List[List[PushMessage]]:
    return [messages[i:i + size] for i in range(0, len(messages), size)]


@dataclass
class ChunkOutcome:
    index: int
    size: int
    ok: bool
    tickets: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[NotificationDeliveryFailure] = None


class PushClient:
    """Thin aiohttp client for https://exp.host/--/api/v2/push/send"""

    def __init__(
        self,
        url: Optional[str] = None,
        access_token: Optional[str] = None,
        dry_run: Optional[bool] = None,
        timeout_seconds: Optional[float] = None,
        chunk_size: int = EXPO_CHUNK_SIZE,
    ):
        self.url = url or settings.expo_push_url
        self.access_token = access_token if access_token is not None else settings.expo_access_token
        self.dry_run = settings.push_dry_run if dry_run is None else dry_run
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or settings.push_timeout_seconds)
        self.chunk_size = chunk_size

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def send(self, messages: List[PushMessage]) -> List[ChunkOutcome]:
        if not messages:
            return []

        chunks = chunk_messages(messages, self.chunk_size)
        if self.dry_run:
            for index, chunk in enumerate(chunks):
                logger.info(f"📲 [dry run] push chunk {index}: {len(chunk)} message(s)")
            return [ChunkOutcome(index, len(chunk), ok=True) for index, chunk in enumerate(chunks)]

        outcomes = []
        async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
            for index, chunk in enumerate(chunks):
                outcomes.append(await self._send_chunk(session, index, chunk))
        return outcomes

    async def _send_chunk(self, session: aiohttp.ClientSession, index: int, chunk: List[PushMessage]) -> ChunkOutcome:
        body = [message.model_dump() for message in chunk]
        try:
            async with session.post(self.url, json=body) as response:
                if response.status != 200:
                    text = await response.text()
                    raise NotificationDeliveryFailure(index, f"HTTP {response.status}: {text[:200]}")
                payload = await response.json()
        except NotificationDeliveryFailure as e:
            logger.error(f"❌ {e.message}")
            return ChunkOutcome(index, len(chunk), ok=False, error=e)
        except Exception as e:
            failure = NotificationDeliveryFailure(index, str(e) or type(e).__name__)
            logger.error(f"❌ {failure.message}")
            return ChunkOutcome(index, len(chunk), ok=False, error=failure)

        tickets = payload.get("data", []) if isinstance(payload, dict) else []
        rejected = [t for t in tickets if isinstance(t, dict) and t.get("status") == "error"]
        if rejected:
            # Per-message rejections (e.g. DeviceNotRegistered) do not fail the chunk
            logger.warning(f"⚠️ Push chunk {index}: {len(rejected)} message(s) rejected by Expo")
        logger.info(f"📲 Push chunk {index} sent ({len(chunk)} message(s))")
        return ChunkOutcome(index, len(chunk), ok=True, tickets=tickets)
