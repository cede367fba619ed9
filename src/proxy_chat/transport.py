"""httpx transport for the local OpenAI-compatible proxy."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
import logging
from typing import Any, Protocol

import httpx

from .exceptions import ProxyChatError, ProxyConnectionError, TransportError

LOGGER = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
DEFAULT_API_KEY = "sk-antigravity"


@dataclass(frozen=True)
class ProxyStatus:
    """Status snapshot reported by the host runtime."""

    running: bool
    port: int
    base_url: str = ""
    active_accounts: int = 0

    @property
    def api_base(self) -> str:
        # Loopback IPv4 literal; "localhost" may resolve to ::1 first.
        return f"http://{LOOPBACK_HOST}:{self.port}/v1"


class ProxyStatusProvider(Protocol):
    """Anything that can report whether the proxy accepts requests."""

    async def get_status(self) -> ProxyStatus: ...


class StaticStatusProvider:
    """Report a fixed status, typically built from configuration."""

    def __init__(self, status: ProxyStatus) -> None:
        self.status = status

    async def get_status(self) -> ProxyStatus:
        return self.status


class HttpStatusProvider:
    """Probe ``GET {api_base}/models`` and report running on a 2xx answer."""

    def __init__(
        self,
        port: int,
        api_key: str = DEFAULT_API_KEY,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.port = port
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def get_status(self) -> ProxyStatus:
        stopped = ProxyStatus(running=False, port=self.port)
        try:
            response = await self._client.get(
                f"{stopped.api_base}/models",
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as exc:
            LOGGER.info(
                "proxy.status.unreachable",
                extra={
                    "event": "proxy.status.unreachable",
                    "port": self.port,
                    "error_type": type(exc).__name__,
                },
            )
            return stopped
        if not response.is_success:
            return stopped
        return ProxyStatus(
            running=True,
            port=self.port,
            base_url=f"http://{LOOPBACK_HOST}:{self.port}",
        )

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass(frozen=True)
class ChatRequest:
    """A streaming chat completion request body."""

    model: str
    messages: list[dict[str, Any]]

    def to_payload(self) -> dict[str, Any]:
        return {"model": self.model, "messages": self.messages, "stream": True}


class ChatTransport(Protocol):
    """Open a streamed completion and yield raw response body chunks."""

    def stream_chat(
        self, base_url: str, request: ChatRequest
    ) -> AsyncIterator[bytes]: ...


def map_exception(exc: Exception, url: str) -> ProxyChatError:
    """Translate httpx failures into domain errors."""
    if isinstance(exc, ProxyChatError):
        return exc
    if isinstance(
        exc,
        (
            httpx.ConnectError,
            httpx.ConnectTimeout,
            httpx.ReadTimeout,
            httpx.NetworkError,
        ),
    ):
        return ProxyConnectionError(f"Unable to connect to proxy at {url}.")
    return TransportError(f"Request to {url} failed: {exc}")


class HttpxChatTransport:
    """POST ``/chat/completions`` with ``stream: true`` over httpx."""

    def __init__(
        self,
        api_key: str = DEFAULT_API_KEY,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def stream_chat(
        self, base_url: str, request: ChatRequest
    ) -> AsyncIterator[bytes]:
        url = f"{base_url.rstrip('/')}/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        LOGGER.info(
            "transport.request.start",
            extra={
                "event": "transport.request.start",
                "model": request.model,
                "messages": len(request.messages),
            },
        )
        try:
            async with self._client.stream(
                "POST", url, json=request.to_payload(), headers=headers
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"API Error: {response.status_code} - {body}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as exc:
            raise map_exception(exc, url) from exc

    async def aclose(self) -> None:
        await self._client.aclose()
