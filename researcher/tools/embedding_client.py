"""OpenAI-compatible embeddings client used for semantic search."""

from typing import List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from libs.common.settings import Settings, get_settings
from researcher.errors import EmbeddingError

logger = structlog.get_logger(__name__)

MAX_INPUT_CHARS = 8000


class EmbeddingClient:
    """Generates query embeddings through the ``/embeddings`` endpoint."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._http_client = http_client

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.embedding_base_url,
                timeout=httpx.Timeout(self.settings.embedding_timeout_seconds),
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def embed(self, text: str) -> List[float]:
        """Return the embedding vector for ``text``.

        Raises:
            EmbeddingError: if the provider is not configured or fails
        """
        if not self.settings.openai_api_key:
            raise EmbeddingError("embedding API key not configured")
        if not text.strip():
            raise EmbeddingError("cannot embed empty text")

        try:
            data = await self._request(text[:MAX_INPUT_CHARS])
        except httpx.HTTPError as e:
            raise EmbeddingError(f"embedding request failed: {e}") from e

        try:
            embedding = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingError("malformed embedding response") from e

        logger.debug(
            "Embedding generated",
            model=self.settings.embedding_model,
            input_length=len(text),
            embedding_dim=len(embedding),
        )
        return embedding

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, text: str) -> dict:
        response = await self._client().post(
            "/embeddings",
            headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
            json={
                "model": self.settings.embedding_model,
                "input": text,
                "encoding_format": "float",
            },
        )
        response.raise_for_status()
        return response.json()
