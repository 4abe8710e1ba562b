"""Process configuration, read once from the environment at startup."""

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_CHROMA_URL = "http://localhost:8000"
DEFAULT_COLLECTION = "document_embeddings"
DEFAULT_EMBED_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


@dataclass
class Settings:
    environment: str = "development"
    log_level: str = "DEBUG"
    log_dir: Optional[str] = None
    cors_origin: str = "*"
    chroma_url: str = DEFAULT_CHROMA_URL
    collection_name: str = DEFAULT_COLLECTION
    embed_model: str = DEFAULT_EMBED_MODEL
    openai_api_key: Optional[str] = None
    openai_model: str = DEFAULT_OPENAI_MODEL
    chunk_size: int = 1000
    chunk_overlap: int = 200
    max_upload_bytes: int = 5 * 1024 * 1024
    pdf_parse_timeout: float = 30.0
    request_timeout: float = 60.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def json_logs(self) -> bool:
        return self.is_production

    def chroma_endpoint(self):
        """Split ``chroma_url`` into ``(host, port, ssl)`` for ``chromadb.HttpClient``."""
        parsed = urlparse(self.chroma_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ConfigError(f"Invalid CHROMA_URL: {self.chroma_url!r}")
        ssl = parsed.scheme == "https"
        port = parsed.port or (443 if ssl else 8000)
        return parsed.hostname, port, ssl

    def validate(self) -> "Settings":
        if self.is_production and self.cors_origin == "*":
            raise ConfigError(
                'CORS_ORIGIN cannot be "*" in production. '
                "Set it to the frontend origin."
            )
        if self.chunk_size < 1 or self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ConfigError(
                f"Invalid chunking settings: size={self.chunk_size}, overlap={self.chunk_overlap}"
            )
        if self.max_upload_bytes < 1:
            raise ConfigError("MAX_UPLOAD_BYTES must be positive")
        self.chroma_endpoint()
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        environment = os.getenv("APP_ENV", "development")
        default_level = "INFO" if environment == "production" else "DEBUG"
        settings = cls(
            environment=environment,
            log_level=os.getenv("LOG_LEVEL", default_level),
            log_dir=os.getenv("LOG_DIR") or ("logs" if environment == "production" else None),
            cors_origin=os.getenv("CORS_ORIGIN", "*"),
            chroma_url=os.getenv("CHROMA_URL", DEFAULT_CHROMA_URL),
            collection_name=os.getenv("CHROMA_COLLECTION", DEFAULT_COLLECTION),
            embed_model=os.getenv("EMBED_MODEL", DEFAULT_EMBED_MODEL),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
            chunk_size=_int_env("CHUNK_SIZE", 1000),
            chunk_overlap=_int_env("CHUNK_OVERLAP", 200),
            max_upload_bytes=_int_env("MAX_UPLOAD_BYTES", 5 * 1024 * 1024),
            pdf_parse_timeout=_float_env("PDF_PARSE_TIMEOUT", 30.0),
            request_timeout=_float_env("REQUEST_TIMEOUT", 60.0),
        )
        return settings.validate()
