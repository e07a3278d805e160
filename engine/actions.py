"""
Action Dispatcher — maps action-node effects onto the dashboard's APIs.

  request_human       hand the conversation to a human agent
  close               close the conversation
  add_tag(tagName)    tag the conversation's contact

Implementations:
  - LoggingActionDispatcher  logs and records calls (development, demos)
  - RestActionDispatcher     calls configured REST endpoints (production)

A failed dispatch raises DeliveryError; the scheduler treats it like a failed
send and retries the action node.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from config.settings import ActionConfig
from models.errors import DeliveryError
from models.schemas import ActionType

logger = structlog.get_logger()


class ActionDispatcher(abc.ABC):
    """Abstract base for all action dispatchers."""

    @abc.abstractmethod
    async def request_human(self, conversation_id: str) -> None:
        ...

    @abc.abstractmethod
    async def close_conversation(self, conversation_id: str) -> None:
        ...

    @abc.abstractmethod
    async def add_tag(self, conversation_id: str, tag_name: str) -> None:
        ...

    async def dispatch(self, conversation_id: str, action: ActionType, value: Optional[str] = None) -> None:
        if action == ActionType.REQUEST_HUMAN:
            await self.request_human(conversation_id)
        elif action == ActionType.CLOSE:
            await self.close_conversation(conversation_id)
        elif action == ActionType.ADD_TAG:
            await self.add_tag(conversation_id, value or "")
        else:
            raise ValueError(f"Unknown action: {action}")

    async def close(self) -> None:
        return None


class LoggingActionDispatcher(ActionDispatcher):
    """Logs every action and keeps a list of (action, conversation_id, value)."""

    def __init__(self):
        self.calls: list[tuple[str, str, Optional[str]]] = []

    async def request_human(self, conversation_id: str) -> None:
        self.calls.append((ActionType.REQUEST_HUMAN.value, conversation_id, None))
        logger.info("action_request_human", conversation_id=conversation_id)

    async def close_conversation(self, conversation_id: str) -> None:
        self.calls.append((ActionType.CLOSE.value, conversation_id, None))
        logger.info("action_close_conversation", conversation_id=conversation_id)

    async def add_tag(self, conversation_id: str, tag_name: str) -> None:
        self.calls.append((ActionType.ADD_TAG.value, conversation_id, tag_name))
        logger.info("action_add_tag", conversation_id=conversation_id, tag=tag_name)


class RestActionDispatcher(ActionDispatcher):
    """
    REST dispatcher. Endpoint names map to URL templates in settings, e.g.

        actions:
          type: rest
          base_url: https://dashboard.internal/api
          endpoints:
            request_human: /conversations/{conversation_id}/handover
            close: /conversations/{conversation_id}/close
            add_tag: /conversations/{conversation_id}/tags
    """

    DEFAULT_ENDPOINTS = {
        "request_human": "/conversations/{conversation_id}/handover",
        "close": "/conversations/{conversation_id}/close",
        "add_tag": "/conversations/{conversation_id}/tags",
    }

    def __init__(self, config: ActionConfig, transport: httpx.AsyncBaseTransport = None):
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
                transport=self._transport,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def _request(self, endpoint: str, conversation_id: str, payload: dict[str, Any]) -> None:
        client = await self._get_client()
        template = self.config.endpoints.get(endpoint, self.DEFAULT_ENDPOINTS[endpoint])
        url = template.replace("{conversation_id}", conversation_id)
        response = await client.post(url, json=payload)
        response.raise_for_status()

    async def _call(self, endpoint: str, conversation_id: str, payload: dict[str, Any] = None) -> None:
        try:
            await self._request(endpoint, conversation_id, payload or {})
        except (httpx.HTTPError, RetryError) as e:
            logger.error("action_dispatch_failed", action=endpoint,
                         conversation_id=conversation_id, error=str(e))
            raise DeliveryError(f"{endpoint} failed for {conversation_id}: {e}",
                                channel="actions") from e
        logger.info("action_dispatched", action=endpoint, conversation_id=conversation_id)

    async def request_human(self, conversation_id: str) -> None:
        await self._call("request_human", conversation_id)

    async def close_conversation(self, conversation_id: str) -> None:
        await self._call("close", conversation_id)

    async def add_tag(self, conversation_id: str, tag_name: str) -> None:
        await self._call("add_tag", conversation_id, {"tag": tag_name})

    async def close(self):
        if self.client:
            await self.client.aclose()


def create_action_dispatcher(config: ActionConfig = None) -> ActionDispatcher:
    config = config or ActionConfig()
    if config.type == "rest":
        logger.info("action_dispatcher_created", type="rest", base_url=config.base_url)
        return RestActionDispatcher(config)
    logger.info("action_dispatcher_created", type="log")
    return LoggingActionDispatcher()
