"""HTTP boundary to the upstream generation service.

The upstream endpoint takes ``{config, userInput, chartType, conversationId,
history}`` and answers with a stream of ``data: {...}`` lines. Timeouts and
cancellation live here; the stream consumer only sees bytes.
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..cache import TTLCache
from ..config import GENERATE_URL, HISTORY_LIMIT, HISTORY_XML_PLACEHOLDER, HTTP_TIMEOUT_SECS, MODELS_URL
from ..data.records import StoredMessage
from ..errors import TransportError, category_for_status, user_message_for_status
from ..settings import SessionSettings

logger = logging.getLogger(__name__)


@dataclass
class GenerationRequest:
    user_input: Any  # str, or {"text", "images"?, "contextXml"?}
    chart_type: str
    conversation_id: str
    config: dict | None = None
    history: list[dict] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "config": self.config,
            "userInput": self.user_input,
            "chartType": self.chart_type,
            "conversationId": self.conversation_id,
            "history": self.history,
        }


def build_history(messages: list[StoredMessage], limit: int = HISTORY_LIMIT) -> list[dict]:
    """The last ``limit`` messages, with prior diagrams replaced by a placeholder."""
    history = []
    for msg in messages[-limit:] if limit else []:
        if msg.role not in ("user", "assistant"):
            continue
        content = HISTORY_XML_PLACEHOLDER if msg.type == "xml" else (msg.content or "")
        if content:
            history.append({"role": msg.role, "content": content})
    return history


def error_from_response(response: httpx.Response) -> TransportError:
    status = response.status_code
    message = None
    try:
        data = response.json()
        if isinstance(data, dict) and data.get("error"):
            message = str(data["error"])
    except ValueError:
        pass
    return TransportError(
        code="UPSTREAM_ERROR",
        message=message or user_message_for_status(status),
        category=category_for_status(status),
        http_status=status,
    )


class GenerationClient:
    def __init__(
        self,
        settings: SessionSettings,
        model_cache: TTLCache | None = None,
        generate_url: str = GENERATE_URL,
        models_url: str = MODELS_URL,
        timeout: float = HTTP_TIMEOUT_SECS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._model_cache = model_cache
        self._generate_url = generate_url
        self._models_url = models_url
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        password = self._settings.access_password()
        if password:
            headers["x-access-password"] = password
        return headers

    async def stream(self, req: GenerationRequest) -> AsyncIterator[bytes]:
        """Yield raw response bytes; the response is closed when the caller stops."""
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    self._generate_url,
                    json=req.to_payload(),
                    headers=self._headers(),
                ) as resp:
                    if not resp.is_success:
                        await resp.aread()
                        raise error_from_response(resp)
                    async for chunk in resp.aiter_bytes():
                        yield chunk
        except httpx.HTTPError as e:
            raise TransportError(code="NETWORK_ERROR", message=f"Network error: {e}", http_status=502) from e

    async def list_models(self, refresh: bool = False) -> list[dict]:
        """Fetch the model catalog, served from the TTL cache when fresh."""
        if self._model_cache is not None:
            if refresh:
                self._model_cache.invalidate()
            cached = self._model_cache.get()
            if cached is not None:
                return cached

        try:
            async with self._client() as client:
                resp = await client.get(self._models_url)
        except httpx.HTTPError as e:
            raise TransportError(code="NETWORK_ERROR", message=f"Network error: {e}", http_status=502) from e
        if not resp.is_success:
            raise error_from_response(resp)

        models = [
            {
                "id": m.get("id", ""),
                "name": m.get("name") or m.get("id", ""),
                "context_length": m.get("context_length"),
            }
            for m in resp.json().get("data", [])
            if isinstance(m, dict)
        ]
        if self._model_cache is not None:
            self._model_cache.set(models)
        logger.info("Fetched %d models from catalog", len(models))
        return models
