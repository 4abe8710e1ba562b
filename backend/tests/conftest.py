import math
import threading
from types import SimpleNamespace
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from policy_assistant.config import Settings
from policy_assistant.embeddings import Embedder
from policy_assistant.llm import LLMClient
from policy_assistant.main import create_app
from policy_assistant.store import VectorStore
from policy_assistant.utils import chunk_document


# --------- PDF builder ---------

def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def make_pdf(pages: List[str], title: Optional[str] = None, author: Optional[str] = None,
             subject: Optional[str] = None) -> bytes:
    """Build a minimal text PDF with correct xref offsets."""
    n = len(pages)
    page_ids = [4 + 2 * i for i in range(n)]
    content_ids = [5 + 2 * i for i in range(n)]
    info_id = 4 + 2 * n

    objs = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        2: ("<< /Type /Pages /Kids [%s] /Count %d >>"
            % (" ".join(f"{p} 0 R" for p in page_ids), n)).encode(),
        3: b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    }
    for text, pid, cid in zip(pages, page_ids, content_ids):
        objs[pid] = (
            "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            f"/Resources << /Font << /F1 3 0 R >> >> /Contents {cid} 0 R >>"
        ).encode()
        stream = f"BT /F1 12 Tf 72 720 Td ({_escape(text)}) Tj ET".encode("latin-1")
        objs[cid] = b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream"

    info = []
    for key, value in (("Title", title), ("Author", author), ("Subject", subject)):
        if value:
            info.append(f"/{key} ({_escape(value)})")
    objs[info_id] = ("<< %s >>" % " ".join(info)).encode("latin-1")

    out = bytearray(b"%PDF-1.4\n")
    offsets = {}
    for i in range(1, info_id + 1):
        offsets[i] = len(out)
        out += f"{i} 0 obj\n".encode() + objs[i] + b"\nendobj\n"
    xref_pos = len(out)
    out += f"xref\n0 {info_id + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for i in range(1, info_id + 1):
        out += f"{offsets[i]:010d} 00000 n \n".encode()
    out += (
        f"trailer\n<< /Size {info_id + 1} /Root 1 0 R /Info {info_id} 0 R >>\n"
        f"startxref\n{xref_pos}\n%%EOF\n"
    ).encode()
    return bytes(out)


# --------- Test doubles ---------

def letter_vector(text: str) -> List[float]:
    counts = [0.0] * 26
    for ch in text.lower():
        if "a" <= ch <= "z":
            counts[ord(ch) - 97] += 1
    norm = math.sqrt(sum(c * c for c in counts)) or 1.0
    return [c / norm for c in counts]


class FakeModel:
    def __init__(self):
        self.encoded = 0

    def encode(self, texts, show_progress_bar=False, normalize_embeddings=True):
        self.encoded += len(texts)
        return [letter_vector(t) for t in texts]


class FakeCollection:
    def __init__(self, name, metadata=None):
        self.name = name
        self.metadata = metadata
        self.records = {}

    def _matches(self, meta, where):
        if not where:
            return True
        if "$and" in where:
            return all(self._matches(meta, w) for w in where["$and"])
        return all(meta.get(k) == v for k, v in where.items())

    def add(self, ids, embeddings, documents, metadatas):
        for rid, emb, doc, meta in zip(ids, embeddings, documents, metadatas):
            self.records[rid] = (emb, doc, dict(meta))

    def query(self, query_embeddings, n_results, include=None, where=None):
        q = query_embeddings[0]
        scored = []
        for rid, (emb, doc, meta) in self.records.items():
            if self._matches(meta, where):
                distance = 1.0 - sum(a * b for a, b in zip(q, emb))
                scored.append((distance, rid, doc, meta))
        scored.sort(key=lambda s: (s[0], s[1]))
        top = scored[:n_results]
        return {
            "ids": [[s[1] for s in top]],
            "documents": [[s[2] for s in top]],
            "metadatas": [[s[3] for s in top]],
            "distances": [[s[0] for s in top]],
        }

    def get(self, where=None):
        return {"ids": [rid for rid, (_, _, meta) in self.records.items() if self._matches(meta, where)]}

    def delete(self, ids):
        for rid in ids:
            self.records.pop(rid, None)


class FakeChromaClient:
    def __init__(self, barrier: Optional[threading.Barrier] = None):
        self.collections = {}
        self.barrier = barrier
        self.list_calls = 0
        self.create_calls = 0
        self._lock = threading.Lock()

    def list_collections(self):
        with self._lock:
            self.list_calls += 1
            existing = list(self.collections.values())
        if self.barrier is not None:
            self.barrier.wait()
        return existing

    def create_collection(self, name, metadata=None):
        with self._lock:
            self.create_calls += 1
            if name in self.collections:
                raise ValueError(f"Collection {name} already exists")
            collection = FakeCollection(name, metadata)
            self.collections[name] = collection
            return collection

    def get_collection(self, name):
        with self._lock:
            if name not in self.collections:
                raise ValueError(f"Collection {name} does not exist.")
            return self.collections[name]


class FakeOpenAI:
    """Mimics ``openai.OpenAI().chat.completions.create``."""

    def __init__(self, reply="", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, model, messages, temperature):
        self.calls.append({"model": model, "messages": messages, "temperature": temperature})
        if self.error is not None:
            raise self.error
        content = self.reply(messages) if callable(self.reply) else self.reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


# --------- Fixtures ---------

@pytest.fixture
def fake_client():
    return FakeChromaClient()


@pytest.fixture
def embedder():
    return Embedder("fake-model", model=FakeModel())


@pytest.fixture
def store(embedder, fake_client):
    return VectorStore(embedder, "document_embeddings", client_factory=lambda: fake_client)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def no_llm():
    return LLMClient(None, "gpt-4o-mini")


def llm_replying(reply) -> LLMClient:
    return LLMClient(None, "gpt-4o-mini", client=FakeOpenAI(reply))


@pytest.fixture
def make_client(settings, store, no_llm):
    def build(llm: Optional[LLMClient] = None, store_override=None, settings_override=None):
        app = create_app(settings_override or settings, store_override or store, llm or no_llm)
        return TestClient(app)

    return build


def seed(store: VectorStore, text: str, document_id: str, policy_id: Optional[str] = None,
         page_count: int = 1, chunk_size: int = 1000, chunk_overlap: int = 200):
    chunks = chunk_document(text, page_count, document_id, policy_id, chunk_size, chunk_overlap)
    store.store_chunks(chunks, document_id, policy_id)
    return chunks
