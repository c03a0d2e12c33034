# src/keypool/transports.py
"""
Transports used by the prober to send a single minimal request.

The prober only knows two capabilities: await a complete response, or
iterate a streamed response chunk by chunk. How the request reaches the
upstream service is decided here.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import litellm

lib_logger = logging.getLogger("keypool")

DEFAULT_PROBE_MESSAGES = ({"role": "user", "content": "hello"},)


@dataclass(frozen=True)
class ProbeRequest:
    """
    A fixed minimal request. Only `api_key` changes between probes; use
    `with_credential` to produce the per-key copy.
    """

    model: str
    messages: List[Dict[str, str]] = field(
        default_factory=lambda: [dict(m) for m in DEFAULT_PROBE_MESSAGES]
    )
    api_base: Optional[str] = None
    max_tokens: Optional[int] = None
    extra_params: Dict[str, Any] = field(default_factory=dict)
    api_key: Optional[str] = None

    def with_credential(self, secret: str) -> "ProbeRequest":
        return replace(self, api_key=secret)

    def to_litellm_kwargs(self) -> Dict[str, Any]:
        kwargs = dict(self.extra_params)
        kwargs["model"] = self.model
        kwargs["messages"] = [dict(m) for m in self.messages]
        if self.api_key is not None:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base.rstrip("/")
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        return kwargs

    def to_openai_payload(self, stream: bool) -> Dict[str, Any]:
        payload = dict(self.extra_params)
        # OpenAI-compatible servers expect the bare model id
        payload["model"] = self.model.split("/", 1)[1] if "/" in self.model else self.model
        payload["messages"] = [dict(m) for m in self.messages]
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        payload["stream"] = stream
        return payload


class ProbeTransport(ABC):
    """Sends one probe request on behalf of the prober."""

    @abstractmethod
    async def complete(self, request: ProbeRequest) -> Any:
        """Sends the request and returns once the full response has arrived."""
        pass

    @abstractmethod
    def stream(self, request: ProbeRequest) -> AsyncIterator[Any]:
        """
        Sends the request as a stream. The returned async iterator yields data
        units as they arrive and must release the connection when closed early.
        """
        pass


class LiteLLMTransport(ProbeTransport):
    """Routes probes through litellm, so any provider litellm knows works."""

    def __init__(self, litellm_params: Optional[Dict[str, Any]] = None):
        self.litellm_params = litellm_params or {}
        litellm.drop_params = True

    async def complete(self, request: ProbeRequest) -> Any:
        kwargs = {**self.litellm_params, **request.to_litellm_kwargs()}
        return await litellm.acompletion(**kwargs)

    async def stream(self, request: ProbeRequest) -> AsyncIterator[Any]:
        kwargs = {**self.litellm_params, **request.to_litellm_kwargs(), "stream": True}
        response = await litellm.acompletion(**kwargs)
        try:
            async for chunk in response:
                yield chunk
        finally:
            aclose = getattr(response, "aclose", None)
            if aclose is not None:
                await aclose()


class HttpxTransport(ProbeTransport):
    """
    Talks to an OpenAI-compatible `/chat/completions` endpoint directly.
    Non-2xx responses raise httpx.HTTPStatusError, whose message carries the
    status code used for rate limit classification.
    """

    def __init__(
        self,
        api_base: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.api_base = api_base.rstrip("/")
        self._owns_client = client is None
        self.http_client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP client if this transport created it."""
        if self._owns_client and self.http_client:
            await self.http_client.aclose()

    def _url(self, request: ProbeRequest) -> str:
        base = (request.api_base or self.api_base).rstrip("/")
        return f"{base}/chat/completions"

    def _headers(self, request: ProbeRequest) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"
        return headers

    async def complete(self, request: ProbeRequest) -> Any:
        response = await self.http_client.post(
            self._url(request),
            headers=self._headers(request),
            json=request.to_openai_payload(stream=False),
        )
        response.raise_for_status()
        return response.json()

    async def stream(self, request: ProbeRequest) -> AsyncIterator[str]:
        async with self.http_client.stream(
            "POST",
            self._url(request),
            headers=self._headers(request),
            json=request.to_openai_payload(stream=True),
        ) as response:
            if response.is_error:
                await response.aread()
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if not data or data == "[DONE]":
                    continue
                yield data
