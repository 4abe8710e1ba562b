import threading
from typing import Any, Dict, List, Optional

import chromadb
import structlog
from chromadb.config import Settings as ChromaSettings

from .config import Settings
from .embeddings import Embedder
from .errors import VectorStoreError
from .models import Chunk, SimilarChunk
from .utils import extract_chunk_texts

logger = structlog.get_logger(__name__)

COLLECTION_DESCRIPTION = "Document embeddings for RAG"


def _collection_name(entry) -> str:
    # chromadb < 0.6 lists Collection objects, 0.6 lists names, 1.x objects again
    return getattr(entry, "name", entry)


def _where(document_id: Optional[str] = None, policy_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    clauses = []
    if document_id:
        clauses.append({"document_id": document_id})
    if policy_id:
        clauses.append({"policy_id": policy_id})
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class VectorStore:
    """Owns the Chroma client and the single embeddings collection.

    Both are created on first use. Built once per process and handed to
    whatever needs it.
    """

    def __init__(self, embedder: Embedder, collection_name: str, client_factory=None):
        self.embedder = embedder
        self.collection_name = collection_name
        self._client_factory = client_factory
        self._client = None
        self._collection = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, embedder: Embedder) -> "VectorStore":
        host, port, ssl = settings.chroma_endpoint()

        def connect():
            return chromadb.HttpClient(
                host=host,
                port=port,
                ssl=ssl,
                settings=ChromaSettings(anonymized_telemetry=False),
            )

        return cls(embedder, settings.collection_name, client_factory=connect)

    @property
    def client(self):
        if self._client is None:
            with self._lock:
                if self._client is None:
                    self._client = self._connect()
        return self._client

    def _connect(self):
        if self._client_factory is None:
            raise VectorStoreError("No vector database client configured")
        try:
            return self._client_factory()
        except Exception as e:
            raise VectorStoreError(f"Failed to connect to vector database: {e}") from e

    def get_collection(self):
        if self._collection is None:
            client = self.client
            with self._lock:
                if self._collection is None:
                    self._collection = self._get_or_create(client)
        return self._collection

    def _get_or_create(self, client):
        name = self.collection_name
        try:
            existing = {_collection_name(c) for c in client.list_collections()}
            if name not in existing:
                try:
                    collection = client.create_collection(
                        name,
                        metadata={"description": COLLECTION_DESCRIPTION, "hnsw:space": "cosine"},
                    )
                    logger.info("collection_created", collection=name)
                    return collection
                except Exception as e:
                    if "already exists" not in str(e).lower():
                        raise
                    # another process won the race
                    logger.info("collection_created_concurrently", collection=name)
            return client.get_collection(name)
        except Exception as e:
            raise VectorStoreError(f"Failed to get or create collection '{name}': {e}") from e

    def store_chunks(self, chunks: List[Chunk], document_id: str, policy_id: Optional[str] = None) -> int:
        if not document_id:
            raise VectorStoreError("Document ID is required to store chunks")
        if not chunks:
            return 0

        collection = self.get_collection()
        texts = extract_chunk_texts(chunks)
        ids = [f"{document_id}_{c.chunk_index}" for c in chunks]
        metas = []
        for c in chunks:
            meta = {
                "document_id": document_id,
                "chunk_index": c.chunk_index,
                "page_number": c.metadata.page_number,
            }
            pid = policy_id or c.metadata.policy_id
            if pid:
                meta["policy_id"] = pid
            metas.append(meta)

        try:
            embeddings = self.embedder.embed_documents(texts)
            collection.add(ids=ids, embeddings=embeddings, documents=texts, metadatas=metas)
        except Exception as e:
            raise VectorStoreError(f"Failed to store chunks in vector database: {e}") from e

        logger.info("chunks_stored", document_id=document_id, policy_id=policy_id, count=len(chunks))
        return len(chunks)

    def query_similar_chunks(
        self,
        query: str,
        n_results: int = 5,
        document_id: Optional[str] = None,
        policy_id: Optional[str] = None,
    ) -> List[SimilarChunk]:
        collection = self.get_collection()
        try:
            query_embedding = self.embedder.embed_query(query)
            kwargs = {
                "query_embeddings": [query_embedding],
                "n_results": n_results,
                "include": ["documents", "metadatas", "distances"],
            }
            where = _where(document_id, policy_id)
            if where:
                kwargs["where"] = where
            results = collection.query(**kwargs)
        except Exception as e:
            raise VectorStoreError(f"Failed to query similar chunks: {e}") from e

        ids = (results.get("ids") or [[]])[0]
        docs = (results.get("documents") or [[]])[0]
        metas = (results.get("metadatas") or [[]])[0] or []
        distances = (results.get("distances") or [[]])[0] or []

        similar = []
        for i in range(len(ids)):
            meta = (metas[i] if i < len(metas) else None) or {}
            similar.append(
                SimilarChunk(
                    text=docs[i] or "",
                    chunk_index=meta.get("chunk_index") or 0,
                    page_number=meta.get("page_number"),
                    document_id=meta.get("document_id"),
                    policy_id=meta.get("policy_id"),
                    distance=distances[i] if i < len(distances) else 0.0,
                )
            )
        return similar

    def _delete_where(self, where: Dict[str, Any], label: str) -> int:
        collection = self.get_collection()
        try:
            results = collection.get(where=where)
            ids = results.get("ids") or []
            if ids:
                collection.delete(ids=ids)
        except Exception as e:
            raise VectorStoreError(f"Failed to delete chunks for {label}: {e}") from e
        logger.info("chunks_deleted", target=label, count=len(ids), **where)
        return len(ids)

    def delete_document(self, document_id: str) -> int:
        return self._delete_where({"document_id": document_id}, "document")

    def delete_policy(self, policy_id: str) -> int:
        return self._delete_where({"policy_id": policy_id}, "policy")
