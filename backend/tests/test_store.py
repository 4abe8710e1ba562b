"""Tests for the Chroma-backed vector store and the query-embedding cache."""

import threading

import pytest
from conftest import FakeChromaClient, FakeCollection, FakeModel, seed

from policy_assistant.embeddings import Embedder
from policy_assistant.errors import VectorStoreError
from policy_assistant.store import COLLECTION_DESCRIPTION, VectorStore


def _run_concurrently(*funcs):
    results, errors = [None] * len(funcs), []

    def call(i, f):
        try:
            results[i] = f()
        except Exception as e:  # surfaced through ``errors``
            errors.append(e)

    threads = [threading.Thread(target=call, args=(i, f)) for i, f in enumerate(funcs)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results, errors


class TestGetCollection:

    def test_creates_when_absent(self, store, fake_client):
        collection = store.get_collection()

        assert collection.name == "document_embeddings"
        assert collection.metadata["description"] == COLLECTION_DESCRIPTION
        assert fake_client.create_calls == 1

    def test_handle_is_reused(self, store, fake_client):
        first = store.get_collection()
        second = store.get_collection()

        assert first is second
        assert fake_client.list_calls == 1
        assert fake_client.create_calls == 1

    def test_fetches_existing(self, store, fake_client):
        existing = FakeCollection("document_embeddings")
        fake_client.collections["document_embeddings"] = existing

        assert store.get_collection() is existing
        assert fake_client.create_calls == 0

    def test_concurrent_first_use_in_one_process(self, store, fake_client):
        results, errors = _run_concurrently(store.get_collection, store.get_collection)

        assert errors == []
        assert results[0] is results[1]
        assert len(fake_client.collections) == 1
        assert fake_client.create_calls == 1

    def test_concurrent_create_race_treated_as_success(self, embedder):
        # Two independent stores both see no collection and both try to create it.
        client = FakeChromaClient(barrier=threading.Barrier(2, timeout=5))
        a = VectorStore(embedder, "document_embeddings", client_factory=lambda: client)
        b = VectorStore(embedder, "document_embeddings", client_factory=lambda: client)

        results, errors = _run_concurrently(a.get_collection, b.get_collection)

        assert errors == []
        assert len(client.collections) == 1
        assert client.create_calls == 2
        assert results[0] is results[1] is client.collections["document_embeddings"]

    def test_other_create_failures_raise(self, embedder):
        class BrokenClient(FakeChromaClient):
            def create_collection(self, name, metadata=None):
                raise RuntimeError("disk full")

        client = BrokenClient()
        store = VectorStore(embedder, "document_embeddings", client_factory=lambda: client)

        with pytest.raises(VectorStoreError, match="disk full"):
            store.get_collection()

    def test_connection_failure(self, embedder):
        def refuse():
            raise ConnectionError("connection refused")

        store = VectorStore(embedder, "document_embeddings", client_factory=refuse)
        with pytest.raises(VectorStoreError, match="connect"):
            store.get_collection()


class TestStoreAndQuery:

    def test_store_chunks_ids_and_metadata(self, store, fake_client):
        chunks = seed(store, "Deductible and waiting period terms", "doc1", "polA")
        records = fake_client.collections["document_embeddings"].records

        assert len(chunks) == 1
        emb, doc, meta = records["doc1_0"]
        assert doc == "Deductible and waiting period terms"
        assert meta == {"document_id": "doc1", "chunk_index": 0, "page_number": 1, "policy_id": "polA"}
        assert len(emb) == 26

    def test_policy_id_omitted_when_absent(self, store, fake_client):
        seed(store, "Some text", "doc2")
        _, _, meta = fake_client.collections["document_embeddings"].records["doc2_0"]
        assert "policy_id" not in meta

    def test_document_id_required(self, store):
        with pytest.raises(VectorStoreError):
            store.store_chunks([], "")

    def test_empty_chunk_list_is_noop(self, store, fake_client):
        assert store.store_chunks([], "doc3") == 0
        assert fake_client.list_calls == 0

    def test_query_filters_by_policy(self, store):
        seed(store, "Dental cleanings are covered", "doc1", "polA")
        seed(store, "Dental cleanings are excluded", "doc2", "polB")

        results = store.query_similar_chunks("dental", 5, policy_id="polB")

        assert [r.document_id for r in results] == ["doc2"]
        assert results[0].policy_id == "polB"
        assert results[0].page_number == 1

    def test_query_filters_by_document_and_policy(self, store):
        seed(store, "Hip dysplasia covered after waiting period", "doc1", "polA")
        seed(store, "Cruciate ligament covered after waiting period", "doc2", "polA")

        results = store.query_similar_chunks("waiting period", 5, document_id="doc2", policy_id="polA")
        assert [r.document_id for r in results] == ["doc2"]

    def test_query_orders_by_distance(self, store):
        seed(store, "zzzz qqqq", "doc1")
        seed(store, "deductible deductible", "doc2")

        results = store.query_similar_chunks("deductible", 2)
        assert results[0].document_id == "doc2"
        assert results[0].distance <= results[1].distance

    def test_delete_document_and_policy(self, store, fake_client):
        seed(store, "a " * 800, "doc1", "polA", chunk_size=300, chunk_overlap=50)
        seed(store, "b " * 100, "doc2", "polA")
        seed(store, "c " * 100, "doc3", "polB")

        deleted = store.delete_document("doc1")
        assert deleted > 1
        assert store.delete_policy("polA") == 1
        remaining = fake_client.collections["document_embeddings"].records
        assert list(remaining) == ["doc3_0"]

    def test_query_failure_is_wrapped(self, store):
        class Exploding(FakeCollection):
            def query(self, **kwargs):
                raise RuntimeError("timeout talking to chroma")

        store._collection = Exploding("document_embeddings")
        with pytest.raises(VectorStoreError, match="Failed to query similar chunks"):
            store.query_similar_chunks("anything")


class TestEmbedderCache:

    def test_query_cache_normalizes_question(self):
        model = FakeModel()
        embedder = Embedder("fake", model=model)

        first = embedder.embed_query("What is my  Deductible?")
        second = embedder.embed_query("  what is my deductible?")

        assert first == second
        assert model.encoded == 1
        assert embedder.cache_stats() == {"hits": 1, "misses": 1, "size": 1}

    def test_clear_cache(self):
        embedder = Embedder("fake", model=FakeModel())
        embedder.embed_query("question")
        embedder.clear_cache()
        assert embedder.cache_stats() == {"hits": 0, "misses": 0, "size": 0}

    def test_embed_documents_empty(self):
        assert Embedder("fake", model=FakeModel()).embed_documents([]) == []
