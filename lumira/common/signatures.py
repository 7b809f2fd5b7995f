"""HMAC signing/verification shared by the outbound dispatch and inbound callback edges.

Outbound bodies are signed as `hex(HMAC-SHA256(secret, body))`. Inbound
callbacks sign `timestamp "." nonce "." raw_body` and are additionally guarded
by a freshness window and a single-use nonce.
"""

import asyncio
import hashlib
import hmac
import threading
import time
from dataclasses import dataclass
from typing import Callable

from lumira.common.config import settings
from lumira.common.logging import logger
from lumira.common.metrics import replay_nonce_cache_size


SIGNATURE_HEADER = "x-webhook-signature"
TIMESTAMP_HEADER = "x-webhook-timestamp"
NONCE_HEADER = "x-webhook-nonce"


def sign_body(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the exact bytes sent on the wire."""

    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def callback_signature(secret: str, timestamp: str, nonce: str, raw_body: bytes) -> str:
    """Signature expected in the callback signature header (`sha256=<hex>`)."""

    signed = timestamp.encode("utf-8") + b"." + nonce.encode("utf-8") + b"." + raw_body
    return "sha256=" + hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


class NonceCache:
    """Process-scoped set of recently accepted callback nonces.

    Constructed once at startup; `start()` launches the periodic sweep and
    `stop()` cancels it on shutdown.
    """

    def __init__(
        self,
        ttl_seconds: int = 3600,
        sweep_interval_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def seen(self, nonce: str) -> bool:
        with self._lock:
            return nonce in self._entries

    def add(self, nonce: str) -> bool:
        """Insert `nonce`; return False when it was already present."""

        with self._lock:
            if nonce in self._entries:
                return False
            self._entries[nonce] = self._clock() + self.ttl_seconds
            size = len(self._entries)
        replay_nonce_cache_size.labels(service=settings.service_name).set(size)
        return True

    def sweep(self) -> int:
        """Drop entries whose expiry has passed; return how many were removed."""

        now = self._clock()
        with self._lock:
            expired = [nonce for nonce, expiry in self._entries.items() if expiry < now]
            for nonce in expired:
                del self._entries[nonce]
            size = len(self._entries)
        replay_nonce_cache_size.labels(service=settings.service_name).set(size)
        return len(expired)

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("nonce_cache_sweep_started interval_s=%s", self.sweep_interval_seconds)

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("nonce_cache_sweep_stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("nonce_cache_swept removed=%s", removed)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of the inbound signature precondition."""

    ok: bool
    reason: str = ""


def verify_callback(
    signature: str | None,
    timestamp: str | None,
    nonce: str | None,
    raw_body: bytes,
    secret: str,
    nonce_cache: NonceCache,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> VerificationResult:
    """Check presence, freshness, replay and HMAC, in that order.

    The nonce is recorded only once every check has passed.
    """

    if not signature or not timestamp or not nonce:
        return VerificationResult(False, "missing security headers")
    if not secret:
        logger.error("callback webhook secret is not configured")
        return VerificationResult(False, "webhook secret not configured")

    try:
        sent_at = int(timestamp)
    except ValueError:
        return VerificationResult(False, "invalid timestamp")
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        return VerificationResult(False, "timestamp expired")

    if nonce_cache.seen(nonce):
        return VerificationResult(False, "replay detected")

    expected = callback_signature(secret, timestamp, nonce, raw_body)
    if not hmac.compare_digest(expected, signature):
        logger.warning("invalid callback signature prefix=%s", signature[:12])
        return VerificationResult(False, "invalid signature")

    if not nonce_cache.add(nonce):
        return VerificationResult(False, "replay detected")
    return VerificationResult(True)
