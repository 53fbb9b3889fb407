"""Vector database implementation using ChromaDB."""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import chromadb
from chromadb import Collection
from chromadb.config import Settings as ChromaSettings

from pagelens.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Raw distances are squared L2; scores are derived from them by the caller
COLLECTION_METADATA = {"hnsw:space": "l2"}


class VectorDatabase(ABC):
    """Abstract base class for vector databases.

    Rows carry an id, the source text, flat metadata and an embedding.
    ``where`` filters use the Chroma operator syntax (``{"field": value}``,
    ``{"field": {"$in": [...]}}``, ``{"$and": [...]}``).
    """

    @abstractmethod
    async def open_collection(self, name: str) -> bool:
        """Open an existing collection. Returns False if it does not exist yet."""
        pass

    @abstractmethod
    async def add_documents(
        self,
        collection_name: str,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[dict[str, Any]],
    ) -> None:
        """Add rows, creating the collection on first write."""
        pass

    @abstractmethod
    async def query(
        self,
        collection_name: str,
        query_embedding: list[float],
        limit: int = 10,
        where: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Nearest neighbours as dicts with id, content, metadata and distance."""
        pass

    @abstractmethod
    async def get(
        self,
        collection_name: str,
        where: dict[str, Any] | None = None,
        ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Rows matching a filter as dicts with id, content and metadata."""
        pass

    @abstractmethod
    async def delete(
        self,
        collection_name: str,
        where: dict[str, Any] | None = None,
        ids: list[str] | None = None,
    ) -> None:
        """Bulk-delete rows matching a filter or ids."""
        pass

    @abstractmethod
    async def count(self, collection_name: str) -> int:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the database is healthy."""
        pass


class ChromaVectorDatabase(VectorDatabase):
    """ChromaDB implementation of vector database."""

    def __init__(
        self,
        path: Path | None = None,
        host: str | None = None,
        port: int | None = None,
        namespace: str | None = None,
        client: Any = None,
    ):
        """Initialize ChromaDB client.

        Args:
            path: Directory of an on-disk database (used when no host is given)
            host: ChromaDB server host
            port: ChromaDB server port
            namespace: Prefix for collection names, isolating users on a shared server
            client: Pre-built Chroma client
        """
        self.namespace = namespace
        self._collections: dict[str, Collection] = {}
        chroma_settings = ChromaSettings(anonymized_telemetry=False)

        try:
            if client is not None:
                self.client = client
            elif host:
                self.client = chromadb.HttpClient(
                    host=host, port=port or 8000, settings=chroma_settings
                )
                logger.info(f"Connected to ChromaDB at http://{host}:{port}")
            elif path is not None:
                self.client = chromadb.PersistentClient(path=str(path), settings=chroma_settings)
                logger.info(f"Opened ChromaDB at {path}")
            else:
                raise ValueError("Either a database path or a host is required")
        except Exception as e:
            logger.error(f"Failed to open ChromaDB: {e}")
            raise

    def collection_name(self, name: str) -> str:
        """Physical collection name, namespaced and limited to Chroma's charset."""
        if not self.namespace:
            return name
        prefix = re.sub(r"[^a-zA-Z0-9_-]", "_", self.namespace)
        return f"{prefix}_{name}"[:63]

    def _get_collection(self, name: str) -> Collection | None:
        physical = self.collection_name(name)
        if physical in self._collections:
            return self._collections[physical]
        try:
            collection = self.client.get_collection(name=physical)
        except Exception:
            return None
        self._collections[physical] = collection
        return collection

    async def open_collection(self, name: str) -> bool:
        return self._get_collection(name) is not None

    async def add_documents(
        self,
        collection_name: str,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[dict[str, Any]],
    ) -> None:
        if not ids:
            logger.warning("No documents provided to add")
            return

        collection = self._get_collection(collection_name)
        if collection is None:
            physical = self.collection_name(collection_name)
            collection = self.client.get_or_create_collection(
                name=physical,
                metadata=COLLECTION_METADATA,
                embedding_function=None,  # We provide embeddings manually
            )
            self._collections[physical] = collection
            logger.info(f"Created collection: {physical}")

        try:
            collection.upsert(
                ids=ids,
                embeddings=embeddings,
                documents=documents,
                metadatas=metadatas,
            )
        except Exception as e:
            logger.error(f"Failed to add documents to collection {collection_name}: {e}")
            raise

        logger.info(f"Added {len(ids)} documents to collection {collection_name}")

    async def query(
        self,
        collection_name: str,
        query_embedding: list[float],
        limit: int = 10,
        where: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        collection = self._get_collection(collection_name)
        if collection is None:
            return []

        available = collection.count()
        if available == 0:
            return []

        results = collection.query(
            query_embeddings=[query_embedding],
            n_results=min(limit, available),
            where=where,
            include=["documents", "metadatas", "distances"],
        )

        search_results = []
        if results["ids"] and len(results["ids"]) > 0:
            for i in range(len(results["ids"][0])):
                search_results.append(
                    {
                        "id": results["ids"][0][i],
                        "content": results["documents"][0][i] if results["documents"] else "",
                        "metadata": results["metadatas"][0][i] if results["metadatas"] else {},
                        "distance": results["distances"][0][i] if results["distances"] else 0.0,
                    }
                )
        return search_results

    async def get(
        self,
        collection_name: str,
        where: dict[str, Any] | None = None,
        ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        collection = self._get_collection(collection_name)
        if collection is None:
            return []

        results = collection.get(where=where, ids=ids, include=["documents", "metadatas"])
        documents = results.get("documents") or []
        metadatas = results.get("metadatas") or []
        return [
            {
                "id": doc_id,
                "content": documents[i] if i < len(documents) else "",
                "metadata": metadatas[i] if i < len(metadatas) else {},
            }
            for i, doc_id in enumerate(results["ids"])
        ]

    async def delete(
        self,
        collection_name: str,
        where: dict[str, Any] | None = None,
        ids: list[str] | None = None,
    ) -> None:
        collection = self._get_collection(collection_name)
        if collection is None:
            return
        collection.delete(where=where, ids=ids)

    async def count(self, collection_name: str) -> int:
        collection = self._get_collection(collection_name)
        return collection.count() if collection is not None else 0

    async def health_check(self) -> bool:
        """Check if ChromaDB is healthy and accessible."""
        try:
            self.client.heartbeat()
            return True
        except Exception as e:
            logger.warning(f"ChromaDB health check failed: {e}")
            return False


def create_vector_database(user_id: str, settings: Settings | None = None) -> VectorDatabase:
    """Open the vector database holding one user's collections.

    Uses the configured ChromaDB server when one is set, otherwise an on-disk
    database under the user's data directory.
    """
    settings = settings or get_settings()
    if settings.chroma_host:
        return ChromaVectorDatabase(
            host=settings.chroma_host, port=settings.chroma_port, namespace=user_id
        )
    return ChromaVectorDatabase(path=settings.user_data_path(user_id) / "vector-db")
