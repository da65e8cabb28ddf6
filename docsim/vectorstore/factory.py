"""
Vector Store Factory

Selects the backend (Weaviate | Pinecone) from config. The rest of the app
only calls create_vector_store() and never touches the concrete classes.
"""

from __future__ import annotations

from docsim.core.config import Settings, settings as default_settings
from docsim.vectorstore.base import VectorStoreBase


def create_vector_store(settings: Settings | None = None) -> VectorStoreBase:
    """Build the configured store. Call once per process and share it."""
    settings = settings or default_settings
    backend = settings.vector_store_backend.lower()

    if backend == "weaviate":
        from docsim.vectorstore.weaviate_store import WeaviateVectorStore, create_weaviate_client
        return WeaviateVectorStore(create_weaviate_client(settings), settings.weaviate_collection)

    if backend == "pinecone":
        from docsim.vectorstore.pinecone_store import PineconeVectorStore, create_pinecone_client
        return PineconeVectorStore(
            create_pinecone_client(settings),
            settings.pinecone_index_name,
            dimension=settings.embedding_dimensions,
            cloud=settings.pinecone_cloud,
            region=settings.pinecone_region,
        )

    raise ValueError(
        f"Unknown vector store backend: '{backend}'. "
        f"Valid options: 'weaviate', 'pinecone'"
    )
