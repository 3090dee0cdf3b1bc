"""
Embedder - Text-to-vector providers.

Two providers share one contract, `await embed(text, model, timeout_seconds)`
returning a float32 vector:

- HttpEmbeddingProvider: any OpenAI-compatible /embeddings endpoint
  (OpenRouter by default) over httpx.
- LocalEmbeddingProvider: sentence-transformers on this machine, with an
  optional ONNX backend.

Provider failures are raised as vaultindex.errors exceptions so the work
queue can tell transient from terminal ones.
"""

import asyncio
import logging
from typing import Optional, Protocol

import httpx
import numpy as np

from .config import IndexerConfig, get_config
from .errors import (
    EmbeddingProviderError,
    EmbeddingTimeoutError,
    MalformedResponseError,
    ProviderNetworkError,
)


logger = logging.getLogger(__name__)

DEFAULT_LOCAL_MODEL = "all-MiniLM-L6-v2"


class EmbeddingProvider(Protocol):
    """Anything that can turn text into a vector."""

    async def embed(
        self,
        text: str,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> np.ndarray:
        ...


class HttpEmbeddingProvider:
    """
    OpenAI-compatible embeddings over HTTP.

    The client is created lazily and reused; call aclose() when done.
    """

    def __init__(
        self,
        config: IndexerConfig | None = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._client = httpx.AsyncClient(headers=headers)
        return self._client

    @property
    def endpoint(self) -> str:
        return f"{self.config.api_base_url.rstrip('/')}/embeddings"

    async def embed(
        self,
        text: str,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> np.ndarray:
        """
        Embed one text.

        Raises:
            EmbeddingProviderError: non-2xx status (retryable for 429/5xx)
            EmbeddingTimeoutError: request exceeded the timeout
            ProviderNetworkError: connection-level failure
            MalformedResponseError: no embedding in the response body
        """
        model = model or self.config.embedding_model
        timeout = timeout_seconds or self.config.embedding_timeout_seconds

        try:
            response = await self._get_client().post(
                self.endpoint,
                json={"model": model, "input": text},
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise EmbeddingTimeoutError(timeout) from e
        except httpx.TransportError as e:
            raise ProviderNetworkError(f"Embedding request failed: {e}") from e

        if response.status_code >= 400:
            raise EmbeddingProviderError(response.status_code, _error_detail(response))

        try:
            embedding = response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError(f"Invalid embedding response: {e}") from e

        if not embedding:
            raise MalformedResponseError("Invalid embedding response: empty vector")

        return np.asarray(embedding, dtype=np.float32)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def _error_detail(response: httpx.Response) -> str:
    """Best-effort error message from a provider error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message", ""))
        if error:
            return str(error)
    return ""


class LocalEmbeddingProvider:
    """
    sentence-transformers embeddings computed in-process.

    Features:
    - Lazy model loading
    - MPS / CUDA / CPU device selection
    - Optional ONNX backend (config.use_onnx)
    - Encoding runs in the default executor, off the event loop
    """

    def __init__(self, config: IndexerConfig | None = None, model_name: str = DEFAULT_LOCAL_MODEL):
        self.config = config or get_config()
        self.model_name = model_name
        self._model = None
        self._dimension: Optional[int] = None

    def _get_model(self):
        """Lazy-load the embedding model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            import torch

            device = "cpu"
            if torch.backends.mps.is_available():
                device = "mps"
            elif torch.cuda.is_available():
                device = "cuda"

            if self.config.use_onnx:
                self._model = SentenceTransformer(self.model_name, device=device, backend="onnx")
            else:
                self._model = SentenceTransformer(self.model_name, device=device)

            self._dimension = self._model.get_sentence_embedding_dimension()
            backend_name = "ONNX" if self.config.use_onnx else "PyTorch"
            logger.info(f"Loaded {backend_name} model {self.model_name} (dim={self._dimension}) on {device}")
        return self._model

    @property
    def dimension(self) -> int:
        """Embedding dimension (loads the model if needed)."""
        self._get_model()
        return self._dimension

    def embed_sync(self, text: str) -> np.ndarray:
        model = self._get_model()
        vector = model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        return np.asarray(vector, dtype=np.float32)

    async def embed(
        self,
        text: str,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> np.ndarray:
        # The model is fixed at construction; `model` is accepted for the shared contract
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.embed_sync, text)

    async def aclose(self) -> None:
        self._model = None


def get_embedder(config: IndexerConfig | None = None, local: bool = False):
    """Build the provider selected by `local`."""
    config = config or get_config()
    if local:
        return LocalEmbeddingProvider(config)
    return HttpEmbeddingProvider(config)
