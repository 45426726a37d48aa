"""Embedding providers for postmortem indexing and incident queries."""

import asyncio
import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Callable

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from postmortem_kg.config import settings
from postmortem_kg.vectorstore.exceptions import (
    EmbeddingError,
    EmbeddingProviderNotConfiguredError,
)

logger = logging.getLogger(__name__)

# Provider registry
_EMBEDDING_REGISTRY: dict[str, Callable[[], "BaseEmbeddings"]] = {}


def register_embedding_provider(name: str):
    """Decorator to register an embedding provider factory."""

    def decorator(factory: Callable[[], "BaseEmbeddings"]):
        _EMBEDDING_REGISTRY[name.lower()] = factory
        return factory

    return decorator


class BaseEmbeddings(ABC):
    """Abstract base class for embedding providers."""

    model_name: str = ""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimension."""
        pass

    @abstractmethod
    async def embed(self, texts: list[str], **kwargs) -> list[list[float]]:
        """Generate embeddings for a list of texts.

        Args:
            texts: List of texts to embed
            **kwargs: Additional provider-specific parameters

        Returns:
            List of embedding vectors

        Raises:
            EmbeddingError: If the provider fails
        """
        pass

    async def embed_single(self, text: str) -> list[float]:
        """Generate embedding for a single text (document side)."""
        embeddings = await self.embed([text])
        return self._first_vector(embeddings)

    async def embed_query(self, text: str) -> list[float]:
        """Generate embedding for a query text.

        Providers with asymmetric query/document models override this.
        """
        return await self.embed_single(text)

    async def is_available(self) -> bool:
        """Lightweight configuration check, no network calls."""
        return True

    def _first_vector(self, embeddings: list[list[float]]) -> list[float]:
        if not embeddings or not embeddings[0]:
            raise EmbeddingError("Provider returned an empty vector", provider=self.provider_name)
        return [float(v) for v in embeddings[0]]


class SentenceTransformerEmbeddings(BaseEmbeddings):
    """Embeddings using sentence-transformers (runs locally, no external API)."""

    def __init__(self, model: str | None = None):
        self.model_name = model or settings.EMBEDDING_MODEL
        self._model = None
        self._dimension: int | None = None

    @property
    def provider_name(self) -> str:
        return "sentence-transformer"

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._load_model()
        return self._dimension  # type: ignore

    def _load_model(self):
        """Lazy load the model."""
        if self._model is not None:
            return
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise EmbeddingProviderNotConfiguredError(
                "sentence-transformers not installed. "
                "Install with: pip install 'postmortem-kg[local]'",
                provider=self.provider_name,
            ) from e

        logger.info(f"Loading sentence-transformer model: {self.model_name}")
        self._model = SentenceTransformer(self.model_name)
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Model loaded, dimension: {self._dimension}")

    async def embed(self, texts: list[str], **kwargs) -> list[list[float]]:
        """Generate embeddings using sentence-transformers."""
        self._load_model()

        loop = asyncio.get_running_loop()
        try:
            embeddings = await loop.run_in_executor(
                None, lambda: self._model.encode(texts, convert_to_numpy=True)
            )
        except Exception as e:
            raise EmbeddingError(f"Local encoding failed: {e}", provider=self.provider_name) from e
        return embeddings.tolist()


class OllamaEmbeddings(BaseEmbeddings):
    """Embeddings using Ollama (requires Ollama server)."""

    # Known dimensions for common Ollama embedding models
    MODEL_DIMENSIONS = {
        "mxbai-embed-large": 1024,
        "nomic-embed-text": 768,
        "all-minilm": 384,
    }

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.OLLAMA_BASE_URL).rstrip("/")
        self.model_name = model or settings.OLLAMA_EMBEDDING_MODEL
        self.timeout = timeout or settings.EMBEDDING_TIMEOUT
        self._dimension: int | None = self.MODEL_DIMENSIONS.get(self.model_name)

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            # Default to 1024 if unknown
            return 1024
        return self._dimension

    async def is_available(self) -> bool:
        return bool(self.base_url)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.RemoteProtocolError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _embed_one(self, client: httpx.AsyncClient, text: str) -> list[float]:
        response = await client.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model_name, "prompt": text},
        )
        response.raise_for_status()
        return response.json().get("embedding", [])

    async def embed(self, texts: list[str], **kwargs) -> list[list[float]]:
        """Generate embeddings using Ollama."""
        if not self.base_url:
            raise EmbeddingProviderNotConfiguredError(
                "OLLAMA_BASE_URL not configured", provider=self.provider_name
            )

        embeddings = []
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                for text in texts:
                    embedding = await self._embed_one(client, text)
                    embeddings.append(embedding)

                    # Update dimension from first response
                    if self._dimension is None and embedding:
                        self._dimension = len(embedding)
        except httpx.HTTPError as e:
            logger.error(f"HTTP error while generating embeddings: {e}")
            raise EmbeddingError(f"HTTP error: {e}", provider=self.provider_name) from e

        return embeddings


class VertexAIEmbeddings(BaseEmbeddings):
    """Embeddings using Google Vertex AI Text Embeddings API."""

    TASK_TYPE_DOCUMENT = "RETRIEVAL_DOCUMENT"
    TASK_TYPE_QUERY = "RETRIEVAL_QUERY"

    def __init__(
        self,
        project: str | None = None,
        location: str | None = None,
        model: str | None = None,
    ):
        self.project = project or settings.vertex_project
        self.location = location or settings.VERTEX_AI_LOCATION
        self.model_name = model or settings.VERTEX_AI_EMBEDDING_MODEL
        self._model = None
        self._initialized = False

        if not self.project:
            logger.warning("Vertex AI project not configured")

    @property
    def provider_name(self) -> str:
        return "vertex-ai"

    @property
    def dimension(self) -> int:
        return settings.VERTEX_AI_EMBEDDING_DIMENSION

    async def is_available(self) -> bool:
        return bool(self.project)

    def _initialize(self):
        """Lazy initialization of Vertex AI client."""
        if self._initialized:
            return

        try:
            from google.cloud import aiplatform
            from vertexai.language_models import TextEmbeddingModel
        except ImportError as e:
            raise EmbeddingProviderNotConfiguredError(
                "google-cloud-aiplatform not installed. "
                "Install with: pip install 'postmortem-kg[vertex]'",
                provider=self.provider_name,
            ) from e

        aiplatform.init(project=self.project, location=self.location)
        self._model = TextEmbeddingModel.from_pretrained(self.model_name)
        self._initialized = True
        logger.info(
            f"Initialized Vertex AI embeddings: model={self.model_name}, "
            f"project={self.project}, location={self.location}"
        )

    def _embed_batch(self, texts: list[str], task_type: str) -> list[list[float]]:
        """Synchronous batch embedding (runs in executor)."""
        from vertexai.language_models import TextEmbeddingInput

        inputs = [TextEmbeddingInput(text=text, task_type=task_type) for text in texts]
        embeddings = self._model.get_embeddings(inputs, output_dimensionality=self.dimension)
        return [e.values for e in embeddings]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _embed_with_retry(self, texts: list[str], task_type: str) -> list[list[float]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self._embed_batch(texts, task_type))

    async def embed(
        self, texts: list[str], task_type: str = "RETRIEVAL_DOCUMENT"
    ) -> list[list[float]]:
        """Generate embeddings using Vertex AI."""
        if not texts:
            return []
        if not self.project:
            raise EmbeddingProviderNotConfiguredError(
                "Vertex AI project not configured", provider=self.provider_name
            )

        self._initialize()
        try:
            return await self._embed_with_retry(texts, task_type)
        except Exception as e:
            raise EmbeddingError(f"Vertex AI embedding failed: {e}", provider=self.provider_name) from e

    async def embed_query(self, text: str) -> list[float]:
        """Generate embedding for a query (uses the retrieval-query task type)."""
        embeddings = await self.embed([text], task_type=self.TASK_TYPE_QUERY)
        return self._first_vector(embeddings)


# Register providers
@register_embedding_provider("sentence-transformer")
def _create_sentence_transformer():
    return SentenceTransformerEmbeddings()


@register_embedding_provider("ollama")
def _create_ollama():
    return OllamaEmbeddings()


@register_embedding_provider("vertex-ai")
def _create_vertex_ai():
    return VertexAIEmbeddings()


def get_available_embedding_providers() -> list[str]:
    """Get list of registered embedding provider names."""
    return list(_EMBEDDING_REGISTRY.keys())


@lru_cache(maxsize=None)
def _shared_provider(provider_name: str) -> BaseEmbeddings:
    logger.info(f"Creating {provider_name} embedding provider")
    return _EMBEDDING_REGISTRY[provider_name]()


def reset_embeddings() -> None:
    """Drop the shared provider instances."""
    _shared_provider.cache_clear()


def get_embeddings(provider: str | None = None) -> BaseEmbeddings:
    """Get the shared embeddings instance for a provider.

    One instance per provider name lives for the process, so a local model
    is loaded once. ``reset_embeddings()`` drops them.

    Args:
        provider: Provider name (defaults to settings.EMBEDDING_PROVIDER)

    Returns:
        Embeddings instance

    Raises:
        EmbeddingProviderNotConfiguredError: If no provider is configured or
            the name is not registered
    """
    provider_name = (provider or settings.EMBEDDING_PROVIDER).lower()

    if not provider_name:
        raise EmbeddingProviderNotConfiguredError(
            "No embedding provider configured. Set EMBEDDING_PROVIDER.",
            provider="none",
        )

    if provider_name not in _EMBEDDING_REGISTRY:
        available = ", ".join(get_available_embedding_providers())
        raise EmbeddingProviderNotConfiguredError(
            f"Unknown embedding provider '{provider_name}'. Available: {available}",
            provider=provider_name,
        )

    return _shared_provider(provider_name)
