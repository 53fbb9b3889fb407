"""Vector embedding and database integration module."""

from .vectorizer import VectorDatabase, ChromaVectorDatabase, create_vector_database
from .embedder import TextEmbedder, SentenceTransformerEmbedder, ProviderEmbedder, create_embedder
from .search import VectorSearchManager, merge_by_best_score

__all__ = [
    "VectorDatabase",
    "ChromaVectorDatabase",
    "create_vector_database",
    "TextEmbedder",
    "SentenceTransformerEmbedder",
    "ProviderEmbedder",
    "create_embedder",
    "VectorSearchManager",
    "merge_by_best_score",
]
