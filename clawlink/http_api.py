"""HTTP access to the gateway's OpenAI-compatible endpoints.

Used for health checks and for the http-sse and off streaming modes.
Base URL and token are read through accessors on every call so the
latest settings always apply.
"""

import json
import logging
from typing import AsyncIterator, Callable, Optional

import httpx

from .rpc import GatewayError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 120.0


class HttpGatewayError(GatewayError):
    """Non-2xx reply from the gateway's HTTP API."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def model_for_agent(agent_id: str) -> str:
    return f"openclaw:{agent_id}"


class HttpGateway:
    """
    Client for the gateway HTTP API.

    Endpoints:
        GET  /health
        POST /v1/chat/completions  (stream false or true)
    """

    def __init__(
        self,
        get_base_url: Callable[[], str],
        get_token: Callable[[], str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self._get_base_url = get_base_url
        self._get_token = get_token
        self.client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            limits=httpx.Limits(
                max_keepalive_connections=5,
                max_connections=10,
                keepalive_expiry=30.0,
            ),
        )

    @property
    def base_url(self) -> str:
        return self._get_base_url().rstrip("/")

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._get_token()}"}

    async def close(self):
        """Close the HTTP client. Call on shutdown."""
        await self.client.aclose()

    async def health(self) -> bool:
        """Check if the gateway answers GET /health with 200."""
        try:
            response = await self.client.get(f"{self.base_url}/health", headers=self._headers())
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Health check failed: %s", e)
            return False

    def _chat_body(self, agent_id: str, messages: list[dict], stream: bool, user: Optional[str]) -> dict:
        body = {
            "model": model_for_agent(agent_id),
            "messages": messages,
            "stream": stream,
        }
        if user:
            body["user"] = user
        return body

    async def chat_completion(self, agent_id: str, messages: list[dict], user: Optional[str] = None) -> str:
        """Send a non-streaming chat completion and return the reply text."""
        response = await self.client.post(
            f"{self.base_url}/v1/chat/completions",
            json=self._chat_body(agent_id, messages, False, user),
            headers=self._headers(),
        )
        if response.status_code // 100 != 2:
            raise HttpGatewayError(
                f"Gateway returned {response.status_code}: {response.text[:200]}",
                response.status_code,
            )

        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    async def stream_chat_completion(
        self,
        agent_id: str,
        messages: list[dict],
        user: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion, yielding incremental text pieces."""
        async with self.client.stream(
            "POST",
            f"{self.base_url}/v1/chat/completions",
            json=self._chat_body(agent_id, messages, True, user),
            headers=self._headers(),
        ) as response:
            if response.status_code // 100 != 2:
                error_text = (await response.aread()).decode(errors="replace")[:200]
                raise HttpGatewayError(
                    f"Gateway returned {response.status_code}: {error_text}",
                    response.status_code,
                )

            async for line in response.aiter_lines():
                # SSE format: "data: {...}" or "data: [DONE]"
                if not line.startswith("data:"):
                    continue
                data_str = line[5:].strip()
                if data_str == "[DONE]":
                    break

                try:
                    chunk = json.loads(data_str)
                except json.JSONDecodeError:
                    logger.warning("Failed to parse SSE chunk: %s", data_str[:100])
                    continue

                choices = chunk.get("choices") or []
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                text = delta.get("content")
                if text:
                    yield text
                if choices[0].get("finish_reason"):
                    break
