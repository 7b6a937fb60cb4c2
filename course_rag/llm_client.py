"""Client for the remote model API (OpenAI-compatible) with error handling."""
import json
from typing import AsyncIterator, Dict, List, Optional

import httpx
import structlog

from course_rag import config

logger = structlog.get_logger()


class LLMClientError(Exception):
    """Base class for remote model API failures."""


class LLMUnavailableError(LLMClientError):
    """Service unreachable, not configured, or failing server-side."""


class LLMAuthError(LLMClientError):
    """Credentials were rejected."""


class LLMRateLimitError(LLMClientError):
    """Quota or rate limit exceeded."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class LLMResponseError(LLMClientError):
    """The service answered with an unexpected payload."""


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def _raise_for_status(response: httpx.Response) -> None:
    """Map HTTP error statuses onto the client error hierarchy."""
    status = response.status_code
    if status < 400:
        return
    if status in (401, 403):
        raise LLMAuthError(f"Authentication failed (HTTP {status})")
    if status == 429:
        raise LLMRateLimitError(
            "Rate limit exceeded (HTTP 429)", retry_after=_retry_after(response)
        )
    if status >= 500:
        raise LLMUnavailableError(f"Service error (HTTP {status})")
    raise LLMResponseError(f"Request rejected (HTTP {status})")


class LLMClient:
    """Async client for embedding and chat completion requests."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        chat_model: str = None,
        embedding_model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL (defaults to config.LLM_BASE_URL)
            api_key: Bearer token (defaults to config.LLM_API_KEY)
            chat_model: Chat model name (defaults to config.CHAT_MODEL)
            embedding_model: Embedding model name (defaults to config.EMBEDDING_MODEL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = (base_url or config.LLM_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.LLM_API_KEY
        self.chat_model = chat_model or config.CHAT_MODEL
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.LLM_TIMEOUT
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        if not self.is_configured:
            raise LLMUnavailableError("No API key configured")
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            transport=self._transport,
        )

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for a batch of texts.

        Args:
            texts: Texts to embed (the service accepts at most 25 per call)

        Returns:
            One embedding vector per input text, in input order

        Raises:
            LLMClientError: On any API failure
        """
        if not texts:
            return []

        payload = {"model": self.embedding_model, "input": list(texts)}

        try:
            async with self._client() as client:
                logger.debug(
                    "embedding_request",
                    model=self.embedding_model,
                    batch_size=len(texts),
                )
                response = await client.post("/embeddings", json=payload)
                _raise_for_status(response)
                data = response.json()
        except httpx.HTTPError as e:
            logger.error("embedding_http_error", error=str(e), base_url=self.base_url)
            raise LLMUnavailableError(f"Embedding request failed: {e}") from e
        except ValueError as e:
            raise LLMResponseError(f"Embedding response is not JSON: {e}") from e

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [list(item["embedding"]) for item in items]
        except (KeyError, TypeError, AttributeError) as e:
            raise LLMResponseError(f"Malformed embedding response: {e}") from e

        logger.debug(
            "embedding_response",
            model=self.embedding_model,
            count=len(vectors),
            dimension=len(vectors[0]) if vectors else 0,
        )
        return vectors

    def _chat_payload(self, prompt: str, stream: bool, temperature: Optional[float]) -> Dict:
        payload = {
            "model": self.chat_model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    async def generate(self, prompt: str, temperature: Optional[float] = None) -> str:
        """Send a chat completion request and return the full answer.

        Args:
            prompt: Fully rendered prompt
            temperature: Sampling temperature (0.0-2.0)

        Returns:
            Generated text

        Raises:
            LLMClientError: On any API failure
        """
        payload = self._chat_payload(prompt, stream=False, temperature=temperature)

        try:
            async with self._client() as client:
                logger.info("chat_request", model=self.chat_model, stream=False)
                response = await client.post("/chat/completions", json=payload)
                _raise_for_status(response)
                data = response.json()
        except httpx.HTTPError as e:
            logger.error("chat_http_error", error=str(e), base_url=self.base_url)
            raise LLMUnavailableError(f"Chat request failed: {e}") from e
        except ValueError as e:
            raise LLMResponseError(f"Chat response is not JSON: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise LLMResponseError(f"Malformed chat response: {e}") from e

        logger.info("chat_response", model=self.chat_model, response_length=len(content))
        return content

    async def stream(
        self, prompt: str, temperature: Optional[float] = None
    ) -> AsyncIterator[str]:
        """Stream a chat completion token by token.

        Closing the iterator closes the HTTP response, aborting the request.

        Args:
            prompt: Fully rendered prompt
            temperature: Sampling temperature (0.0-2.0)

        Yields:
            Text deltas as they arrive

        Raises:
            LLMClientError: On any API failure
        """
        payload = self._chat_payload(prompt, stream=True, temperature=temperature)

        try:
            async with self._client() as client:
                logger.info("chat_request", model=self.chat_model, stream=True)
                async with client.stream("POST", "/chat/completions", json=payload) as response:
                    _raise_for_status(response)
                    async for line in response.aiter_lines():
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                            delta = chunk["choices"][0].get("delta") or {}
                        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
                            raise LLMResponseError(f"Malformed stream event: {e}") from e
                        content = delta.get("content")
                        if content:
                            yield content
        except httpx.HTTPError as e:
            logger.error("chat_stream_http_error", error=str(e), base_url=self.base_url)
            raise LLMUnavailableError(f"Chat stream failed: {e}") from e


# Global client instance
llm_client = LLMClient()
