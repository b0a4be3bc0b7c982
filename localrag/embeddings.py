"""Embedding generation through an Ollama server."""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Sequence

import httpx
from cachetools import LRUCache

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
QUERY_CACHE_SIZE = 1000


class OllamaError(RuntimeError):
    """Raised when the Ollama server is unreachable or answers with an error."""


def _status_text(response: httpx.Response) -> str:
    return f"{response.status_code} {response.reason_phrase}".strip()


def _debug_list(names: Sequence[str]) -> str:
    return "[" + ", ".join(f'"{name}"' for name in names) + "]"


def _new_client() -> httpx.Client:
    return httpx.Client(timeout=None)


def check_ollama(
    client: httpx.Client, ollama_url: str, model: str, label: str = "Model"
) -> None:
    """Check that Ollama is reachable and that ``model`` has been pulled.

    ``label`` names the model in error messages, e.g. ``"Rerank model"``.
    """
    try:
        response = client.get(f"{ollama_url}/api/tags")
    except httpx.HTTPError as exc:
        raise OllamaError(
            f"Cannot connect to Ollama at {ollama_url}. Make sure Ollama is running. ({exc})"
        ) from exc

    if not response.is_success:
        raise OllamaError(
            f"Cannot connect to Ollama at {ollama_url}. Make sure Ollama is running."
        )
    logger.info("Successfully connected to Ollama at %s", ollama_url)

    try:
        tags = response.json()
    except ValueError as exc:
        raise OllamaError(f"Failed to list models from Ollama: {exc}") from exc

    models = tags.get("models") if isinstance(tags, dict) else None
    if not isinstance(models, list):
        raise OllamaError("Cannot list models")

    names = [
        entry["name"]
        for entry in models
        if isinstance(entry, dict) and isinstance(entry.get("name"), str)
    ]
    if not any(name.startswith(model) for name in names):
        raise OllamaError(
            f"{label} '{model}' not found. Available: {_debug_list(names)}. "
            f"Run: ollama pull {model}"
        )
    logger.info("✅ %s '%s' verified", label, model)


class EmbeddingService:
    """Client for the Ollama embeddings API with an LRU cache for queries."""

    def __init__(
        self,
        ollama_url: str = DEFAULT_OLLAMA_URL,
        model: str = DEFAULT_EMBEDDING_MODEL,
        client: httpx.Client | None = None,
    ) -> None:
        self.ollama_url = ollama_url.rstrip("/")
        self.model = model
        self.client = client if client is not None else _new_client()
        self._cache: LRUCache = LRUCache(maxsize=QUERY_CACHE_SIZE)
        self._cache_lock = threading.Lock()

    @classmethod
    def from_env(cls, client: httpx.Client | None = None) -> "EmbeddingService":
        """Build a service from OLLAMA_URL and OLLAMA_EMBEDDING_MODEL and verify it."""
        ollama_url = os.environ.get("OLLAMA_URL", DEFAULT_OLLAMA_URL)
        model = os.environ.get("OLLAMA_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
        logger.info("Ollama URL: %s", ollama_url)
        logger.info("Ollama Model: %s", model)
        service = cls(ollama_url, model, client)
        service.check()
        return service

    def check(self) -> None:
        """Verify the server is reachable and the embedding model exists."""
        check_ollama(self.client, self.ollama_url, self.model, "Model")

    def _post_embeddings(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.client.post(f"{self.ollama_url}/api/embeddings", json=payload)
        except httpx.HTTPError as exc:
            raise OllamaError(f"Failed to contact Ollama: {exc}") from exc
        if not response.is_success:
            raise OllamaError(f"Ollama API error: {_status_text(response)} - {response.text}")
        try:
            body = response.json()
        except ValueError as exc:
            raise OllamaError(f"Failed to parse Ollama response: {exc}") from exc
        return body if isinstance(body, dict) else {}

    def get_embedding(self, text: str) -> list[float]:
        """Return the embedding vector of one text."""
        body = self._post_embeddings({"model": self.model, "prompt": text})
        embedding = body.get("embedding")
        if embedding is None:
            raise OllamaError("No embedding returned from Ollama")
        return [float(x) for x in embedding]

    def get_query_embedding(self, text: str) -> list[float]:
        """Return the embedding of a query, served from the cache when possible."""
        with self._cache_lock:
            cached = self._cache.get(text)
        if cached is not None:
            return list(cached)
        embedding = self.get_embedding(text)
        with self._cache_lock:
            self._cache[text] = list(embedding)
        return embedding

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed several texts in a single request."""
        if not texts:
            return []
        if len(texts) == 1:
            payload: dict[str, Any] = {"model": self.model, "prompt": texts[0]}
        else:
            payload = {"model": self.model, "input": list(texts)}

        body = self._post_embeddings(payload)
        embedding = body.get("embedding")
        if embedding is not None:
            return [[float(x) for x in embedding]]
        embeddings = body.get("embeddings")
        if embeddings is not None:
            return [[float(x) for x in vector] for vector in embeddings]
        raise OllamaError("Ollama returned no embeddings for the provided input")