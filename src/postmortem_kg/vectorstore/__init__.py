"""Embeddings, indexing and similarity retrieval for postmortems."""

from postmortem_kg.vectorstore.embeddings import (
    BaseEmbeddings,
    OllamaEmbeddings,
    SentenceTransformerEmbeddings,
    VertexAIEmbeddings,
    get_available_embedding_providers,
    get_embeddings,
    register_embedding_provider,
)
from postmortem_kg.vectorstore.exceptions import (
    DimensionMismatchError,
    EmbeddingError,
    EmbeddingProviderNotConfiguredError,
)
from postmortem_kg.vectorstore.indexer import (
    EmbeddingIndexer,
    IndexResult,
    build_incident_query_text,
    build_postmortem_text,
    build_source_text,
)
from postmortem_kg.vectorstore.retriever import (
    SimilarityRetriever,
    SimilarPostmortem,
    cosine_similarity,
)

__all__ = [
    "BaseEmbeddings",
    "OllamaEmbeddings",
    "SentenceTransformerEmbeddings",
    "VertexAIEmbeddings",
    "get_embeddings",
    "get_available_embedding_providers",
    "register_embedding_provider",
    "DimensionMismatchError",
    "EmbeddingError",
    "EmbeddingProviderNotConfiguredError",
    "EmbeddingIndexer",
    "IndexResult",
    "build_incident_query_text",
    "build_postmortem_text",
    "build_source_text",
    "SimilarityRetriever",
    "SimilarPostmortem",
    "cosine_similarity",
]
