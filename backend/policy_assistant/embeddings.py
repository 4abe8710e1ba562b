import re
import threading
from typing import Dict, List

import structlog

logger = structlog.get_logger(__name__)


def normalize_question(question: str) -> str:
    return re.sub(r"\s+", " ", question.strip().lower())


class Embedder:
    """Sentence-transformers wrapper with an in-memory cache for query embeddings.

    The model is loaded on first use so that building the app stays cheap.
    """

    def __init__(self, model_name: str, model=None):
        self.model_name = model_name
        self._model = model
        self._model_lock = threading.Lock()
        self._cache: Dict[str, List[float]] = {}
        self._cache_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def model(self):
        if self._model is None:
            with self._model_lock:
                if self._model is None:
                    from sentence_transformers import SentenceTransformer

                    logger.info("loading_embedding_model", model=self.model_name)
                    self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        vectors = self.model.encode(texts, show_progress_bar=False, normalize_embeddings=True)
        return [list(map(float, v)) for v in vectors]

    def embed_query(self, text: str) -> List[float]:
        key = normalize_question(text)
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

        vector = self.embed_documents([text])[0]
        with self._cache_lock:
            self._cache[key] = vector
        return vector

    def cache_stats(self) -> Dict[str, int]:
        with self._cache_lock:
            return {"hits": self._hits, "misses": self._misses, "size": len(self._cache)}

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0
