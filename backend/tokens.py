import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from config import settings

logger = logging.getLogger(__name__)


@dataclass
class QueuedToken:
    value: str
    received_at: float


class TokenBroker:
    """Hands out paint tokens captured out of band.

    Tokens are served FIFO and expire after the TTL. When none is queued, callers
    share a single pending future that the next supplied token resolves. The most
    recent fingerprint and pawtect values travel alongside for paint requests.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds or settings.token_ttl_seconds
        self.clock = clock
        self._queue: Deque[QueuedToken] = deque()
        self._waiter: Optional[asyncio.Future] = None
        self.token_needed = False
        self.fingerprint: Optional[str] = None
        self.pawtect: Optional[str] = None

    def _purge_expired(self):
        now = self.clock()
        while self._queue and now - self._queue[0].received_at > self.ttl_seconds:
            expired = self._queue.popleft()
            logger.info(f"Discarded expired token received at {expired.received_at:.0f}")

    def request_token(self, label: str = "") -> asyncio.Future:
        """Future resolving to a token; completed immediately when one is queued"""
        self._purge_expired()
        loop = asyncio.get_running_loop()

        if self._queue:
            future = loop.create_future()
            future.set_result(self._queue.popleft().value)
            return future

        if self._waiter is None or self._waiter.done():
            self._waiter = loop.create_future()
        if not self.token_needed:
            logger.info(f"{label} waiting for a paint token...".strip())
        self.token_needed = True
        return self._waiter

    def supply_token(self, value: str, fingerprint: Optional[str] = None, pawtect: Optional[str] = None):
        if fingerprint:
            self.fingerprint = fingerprint
        if pawtect:
            self.pawtect = pawtect

        waiter = self._waiter
        if waiter is not None and not waiter.done():
            self._waiter = None
            self.token_needed = False
            waiter.set_result(value)
            logger.info("Token handed to waiting template")
            return

        self._queue.append(QueuedToken(value, self.clock()))
        logger.info(f"Token queued. Queue size: {len(self._queue)}")

    def invalidate(self):
        if self._queue:
            self._queue.popleft()
            logger.info(f"Invalidated oldest token. Queue size: {len(self._queue)}")

    def status(self) -> dict:
        return {
            "queue_size": len(self._queue),
            "token_needed": self.token_needed,
            "has_waiter": self._waiter is not None and not self._waiter.done(),
        }
