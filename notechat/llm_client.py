"""OpenAI-compatible LLM and embedding client with error mapping."""
import json
from typing import AsyncIterator, Dict, List, Optional

import httpx
import structlog

from notechat import config
from notechat.errors import UpstreamError
from notechat.settings import Settings

logger = structlog.get_logger()

# End-of-stream marker sent by the provider on a clean finish
STREAM_DONE = "[DONE]"

_RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}

# Raised when a decoded body does not have the expected shape
_SHAPE_ERRORS = (AttributeError, KeyError, TypeError, IndexError)


def _json_object(response: httpx.Response, operation: str) -> dict:
    """Decode a JSON object body; anything else (a gateway error page) is an UpstreamError."""
    try:
        data = response.json()
    except ValueError as e:
        raise UpstreamError(
            f"{operation} returned a non-JSON body: {response.text[:100]}", retryable=False
        ) from e
    if not isinstance(data, dict):
        raise UpstreamError(
            f"{operation} returned {type(data).__name__}, expected an object", retryable=False
        )
    return data


def _to_upstream_error(e: httpx.HTTPError, operation: str) -> UpstreamError:
    """Map an httpx error to UpstreamError, flagging which ones are worth retrying."""
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        return UpstreamError(
            f"{operation} failed with HTTP {status}",
            status_code=status,
            retryable=status in _RETRYABLE_STATUS,
        )
    return UpstreamError(f"{operation} failed: {type(e).__name__}: {e}", retryable=True)


class OpenAIClient:
    """Async client for an OpenAI-compatible chat and embeddings API."""

    def __init__(
        self,
        settings: Settings,
        base_url: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            settings: Live settings; ``api_key`` and ``model_name`` are read per call
            base_url: API base URL (defaults to config.OPENAI_BASE_URL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.settings = settings
        self.base_url = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout or config.REQUEST_TIMEOUT
        self.transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    def _headers(self) -> Dict[str, str]:
        if not self.settings.api_key:
            raise UpstreamError("No API key configured", status_code=401, retryable=False)
        return {"Authorization": f"Bearer {self.settings.api_key}"}

    async def embeddings(self, texts: List[str], model: str = None) -> List[List[float]]:
        """Embed a batch of texts in one request.

        Args:
            texts: Texts to embed
            model: Embedding model (defaults to config.EMBEDDING_MODEL)

        Returns:
            One vector per input text, in input order

        Raises:
            UpstreamError: On network, auth or rate-limit failure
        """
        model = model or config.EMBEDDING_MODEL
        if not texts:
            return []

        payload = {"model": model, "input": texts}

        try:
            async with self._client(self.timeout) as client:
                logger.debug("embedding_request", model=model, batch_size=len(texts))
                response = await client.post(
                    f"{self.base_url}/embeddings",
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()
                data = _json_object(response, "embeddings")
        except httpx.HTTPError as e:
            logger.error("embedding_http_error", error=str(e), model=model)
            raise _to_upstream_error(e, "embeddings") from e

        try:
            items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
            vectors = [item.get("embedding", []) for item in items]
        except _SHAPE_ERRORS as e:
            raise UpstreamError(f"Embedding response malformed: {e}", retryable=False) from e

        if len(vectors) != len(texts) or any(not v for v in vectors):
            raise UpstreamError(
                f"Embedding response malformed: {len(vectors)} vectors for {len(texts)} texts",
                retryable=False,
            )

        logger.debug("embedding_response", model=model, dimension=len(vectors[0]))
        return vectors

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Non-streaming chat completion; returns the full reply text.

        Raises:
            UpstreamError: On network, auth or rate-limit failure
        """
        model = model or self.settings.model_name
        payload = {"model": model, "messages": messages, "stream": False}
        if temperature is not None:
            payload["temperature"] = temperature

        try:
            async with self._client(self.timeout) as client:
                logger.info("chat_request", model=model, message_count=len(messages))
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()
                data = _json_object(response, "chat")
        except httpx.HTTPError as e:
            logger.error("chat_http_error", error=str(e), model=model)
            raise _to_upstream_error(e, "chat") from e

        try:
            choices = data.get("choices") or [{}]
            return (choices[0].get("message") or {}).get("content") or ""
        except _SHAPE_ERRORS as e:
            raise UpstreamError(f"Chat response malformed: {e}", retryable=False) from e

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """Streaming chat completion yielding content tokens as they arrive.

        The provider sends server-sent events terminated by ``data: [DONE]``.
        A stream that closes without that marker is treated as an error.

        Raises:
            UpstreamError: On failure before or during the stream
        """
        model = model or self.settings.model_name
        payload = {"model": model, "messages": messages, "stream": True}
        if temperature is not None:
            payload["temperature"] = temperature

        token_count = 0
        try:
            async with self._client(self.timeout) as client:
                logger.info("chat_stream_request", model=model, message_count=len(messages))
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == STREAM_DONE:
                            logger.info("chat_stream_completed", model=model, tokens=token_count)
                            return
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError as e:
                            raise UpstreamError(
                                f"Malformed stream event: {data[:100]}", retryable=False
                            ) from e
                        try:
                            tokens = [
                                (choice.get("delta") or {}).get("content")
                                for choice in event.get("choices", [])
                            ]
                        except _SHAPE_ERRORS as e:
                            raise UpstreamError(
                                f"Malformed stream event: {data[:100]}", retryable=False
                            ) from e
                        for token in tokens:
                            if token:
                                token_count += 1
                                yield token
        except httpx.HTTPError as e:
            logger.error("chat_stream_http_error", error=str(e), model=model, tokens=token_count)
            raise _to_upstream_error(e, "chat stream") from e

        raise UpstreamError("Chat stream ended without end-of-stream marker")

    async def list_models(self) -> List[str]:
        """List model ids available to the configured credential.

        Raises:
            UpstreamError: On API errors
        """
        try:
            async with self._client(5.0) as client:
                response = await client.get(f"{self.base_url}/models", headers=self._headers())
                response.raise_for_status()
                data = _json_object(response, "list models")
        except httpx.HTTPError as e:
            logger.error("list_models_error", error=str(e))
            raise _to_upstream_error(e, "list models") from e
        try:
            return [m["id"] for m in data.get("data", [])]
        except _SHAPE_ERRORS as e:
            raise UpstreamError(f"Model list malformed: {e}", retryable=False) from e
