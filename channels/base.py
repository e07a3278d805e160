"""
Channel Adapters — base infrastructure for outbound delivery.

Provides:
- ChannelError: delivery failure raised by adapters (a DeliveryError)
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: per-channel send/fail/latency tracking
- OutboundDeduplicator: remembers delivered idempotency keys
- DeliveryResult: outcome of one OutboundMessage
- ChannelAdapter: abstract base wrapping every send with resilience
- ChannelRegistry: adapter lookup by platform
"""
from __future__ import annotations

import abc
import time
import uuid
import structlog
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import (
    RetryError, retry, retry_if_exception, stop_after_attempt, wait_exponential,
)

from models.errors import DeliveryError
from models.schemas import OutboundMessage, Platform

logger = structlog.get_logger()

GRAPH_API_BASE = "https://graph.facebook.com/v18.0"


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(DeliveryError):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = True):
        super().__init__(message, channel=channel, retryable=retryable)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


def _is_retryable_http(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.duplicates_suppressed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "duplicates_suppressed": self.duplicates_suppressed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  OUTBOUND DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class OutboundDeduplicator:
    """
    Bounded set of idempotency keys already delivered. A key is remembered
    only after a successful send, so a failed send can be retried.
    """

    def __init__(self, max_size: int = 5000):
        self.max_size = max_size
        self._seen: OrderedDict[str, float] = OrderedDict()

    def is_duplicate(self, key: str) -> bool:
        return bool(key) and key in self._seen

    def remember(self, key: str):
        if not key:
            return
        self._seen[key] = time.monotonic()
        self._seen.move_to_end(key)
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)


# ══════════════════════════════════════════════════════════════
#  DELIVERY RESULT
# ══════════════════════════════════════════════════════════════

@dataclass
class DeliveryResult:
    status: str                         # sent | mock_sent | duplicate
    channel_message_ids: list[str] = field(default_factory=list)
    latency_ms: float = 0.0
    requests: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in ("sent", "mock_sent", "duplicate")


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER: Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement _render (OutboundMessage → API request bodies) and
    _endpoint. The base class wraps every send with deduplication, circuit
    breaking, HTTP retries and metrics. Without an access token the adapter
    runs in mock mode: it renders and logs, but posts nothing.
    """

    name: str = "channel"
    platforms: tuple[Platform, ...] = ()

    def __init__(self, transport: httpx.AsyncBaseTransport = None):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._access_token: str = ""
        self._breaker = CircuitBreaker()
        self._metrics = ChannelMetrics(self.name)
        self._deduplicator = OutboundDeduplicator()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config or {}
        self._access_token = self._config.get("access_token", "")
        self._initialized = True
        logger.info("channel_initialized", channel=self.name,
                    mode="live" if self._access_token else "mock")

    @property
    def mock_mode(self) -> bool:
        return not self._access_token

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    def _render(self, message: OutboundMessage) -> list[dict[str, Any]]:
        """Platform request bodies for one outbound message, in send order."""
        ...

    @abc.abstractmethod
    def _endpoint(self, message: OutboundMessage) -> str:
        ...

    def render(self, message: OutboundMessage) -> list[dict[str, Any]]:
        return self._render(message)

    # ── HTTP ──────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    @retry(
        retry=retry_if_exception(_is_retryable_http),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
    )
    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(url, json=body)
        response.raise_for_status()
        return response.json()

    # ── Public send ───────────────────────────────────────────

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        key = message.idempotency_key
        if self._deduplicator.is_duplicate(key):
            self._metrics.duplicates_suppressed += 1
            logger.info("outbound_duplicate_suppressed", channel=self.name,
                        conversation_id=message.conversation_id, idempotency_key=key)
            return DeliveryResult(status="duplicate")

        if not message.recipient_id:
            raise ChannelError(f"No recipient for {message.conversation_id}",
                               self.name, retryable=False)
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.name)

        requests = self._render(message)
        start = time.monotonic()

        if self.mock_mode:
            ids = [f"mock.{uuid.uuid4().hex[:16]}" for _ in requests]
            logger.info("outbound_mock_sent", channel=self.name,
                        conversation_id=message.conversation_id,
                        kind=message.kind.value, requests=requests)
            self._deduplicator.remember(key)
            self._metrics.record_send()
            return DeliveryResult(status="mock_sent", channel_message_ids=ids, requests=requests)

        ids = []
        url = self._endpoint(message)
        try:
            for body in requests:
                data = await self._post(url, body)
                ids.append(self._message_id(data))
        except (httpx.HTTPError, RetryError) as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            retryable = not isinstance(e, httpx.HTTPStatusError) or _is_retryable_http(e)
            logger.warning("outbound_send_failed", channel=self.name,
                           conversation_id=message.conversation_id,
                           sent_parts=len(ids), error=str(e))
            raise ChannelError(f"{self.name} send failed: {e}", self.name, retryable) from e

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self._metrics.record_send(latency)
        self._deduplicator.remember(key)
        logger.info("outbound_sent", channel=self.name,
                    conversation_id=message.conversation_id,
                    kind=message.kind.value, parts=len(ids))
        return DeliveryResult(status="sent", channel_message_ids=ids,
                              latency_ms=round(latency, 1), requests=requests)

    @staticmethod
    def _message_id(data: dict[str, Any]) -> str:
        if "message_id" in data:
            return str(data["message_id"])
        messages = data.get("messages") or [{}]
        return str(messages[0].get("id", ""))

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "platforms": [p.value for p in self.platforms],
            "initialized": self._initialized,
            "mode": "mock" if self.mock_mode else "live",
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[Platform, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        for platform in adapter.platforms:
            self._adapters[platform] = adapter

    def get(self, platform: Platform) -> Optional[ChannelAdapter]:
        return self._adapters.get(platform)

    def get_available(self) -> list[Platform]:
        return list(self._adapters.keys())

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        adapter = self._adapters.get(message.platform)
        if adapter is None:
            raise ChannelError(f"No adapter for platform {message.platform.value}",
                               message.platform.value, retryable=False)
        return await adapter.send(message)

    def _unique(self) -> list[ChannelAdapter]:
        seen: list[ChannelAdapter] = []
        for adapter in self._adapters.values():
            if adapter not in seen:
                seen.append(adapter)
        return seen

    async def health_check_all(self) -> dict[str, Any]:
        return {a.name: await a.health_check() for a in self._unique()}

    async def initialize_all(self, configs: dict[str, Any]):
        for adapter in self._unique():
            ch_cfg = configs.get(adapter.name, {})
            # ChannelConfig dataclass → dict so adapters can call .get()
            if hasattr(ch_cfg, "credentials"):
                ch_cfg = ch_cfg.credentials
            await adapter.initialize(ch_cfg)

    async def shutdown_all(self):
        for adapter in self._unique():
            try:
                await adapter.shutdown()
            except httpx.HTTPError as e:
                logger.warning("channel_shutdown_failed", channel=adapter.name, error=str(e))
