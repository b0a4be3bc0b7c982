"""Second-stage reranking of search candidates with an Ollama LLM."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

import httpx

from localrag.embeddings import (
    DEFAULT_OLLAMA_URL,
    OllamaError,
    _new_client,
    _status_text,
    check_ollama,
)

logger = logging.getLogger(__name__)

DEFAULT_RERANK_MODEL = "llama3.1"
_MAX_WORKERS = 8


@dataclass
class RerankerCandidate:
    """A chunk to rerank, with its first-stage retrieval score."""

    chunk_id: str
    document: str
    text: str
    page_number: int
    section: str | None
    initial_score: float


@dataclass
class RerankedResult:
    """The LLM relevance (0.0 to 1.0) given to one chunk."""

    chunk_id: str
    relevance: float


def parse_score(response: str) -> float | None:
    """Pull the first number out of an LLM answer, clamped to [0, 1]."""
    number = []
    found = False
    for ch in response:
        if ch.isascii() and (ch.isdigit() or ch == "."):
            number.append(ch)
            found = True
        elif found:
            break
    try:
        score = float("".join(number).strip())
    except ValueError:
        return None
    return min(max(score, 0.0), 1.0)


class RerankerService:
    """Scores candidate chunks against a query using an Ollama model."""

    def __init__(
        self,
        ollama_url: str = DEFAULT_OLLAMA_URL,
        model: str = DEFAULT_RERANK_MODEL,
        client: httpx.Client | None = None,
    ) -> None:
        self.ollama_url = ollama_url.rstrip("/")
        self.model = model
        self.client = client if client is not None else _new_client()

    @classmethod
    def from_env(cls, client: httpx.Client | None = None) -> "RerankerService":
        """Build a service from OLLAMA_URL and OLLAMA_RERANK_MODEL and verify it."""
        ollama_url = os.environ.get("OLLAMA_URL", DEFAULT_OLLAMA_URL)
        model = os.environ.get("OLLAMA_RERANK_MODEL", DEFAULT_RERANK_MODEL)
        service = cls(ollama_url, model, client)
        service.check()
        return service

    def check(self) -> None:
        """Verify the server is reachable and the rerank model exists."""
        check_ollama(self.client, self.ollama_url, self.model, "Rerank model")

    def build_prompt(self, query: str, candidate: RerankerCandidate) -> str:
        """Build the scoring prompt for one candidate."""
        page = "unknown" if candidate.page_number == 0 else str(candidate.page_number)
        prompt = (
            "You are a retrieval relevance scorer. Given a search query and a document chunk, "
            "respond with a single number between 0 and 1 indicating how relevant the chunk "
            "is to the query.\n\n"
            f"Query: {query.strip()}\nDocument: {candidate.document}\nPage: {page}\n"
        )
        if candidate.section is not None and candidate.section.strip():
            prompt += f"Section heading: {candidate.section.strip()}\n"
        prompt += "\nChunk:\n"
        prompt += candidate.text.strip()
        prompt += (
            "\n\nRespond with only the numeric relevance score between 0 and 1, "
            "using decimal format."
        )
        return prompt

    def score_candidate(self, query: str, candidate: RerankerCandidate) -> float:
        """Ask the model for the relevance of one candidate."""
        payload = {
            "model": self.model,
            "prompt": self.build_prompt(query, candidate),
            "stream": False,
        }
        try:
            response = self.client.post(f"{self.ollama_url}/api/generate", json=payload)
        except httpx.HTTPError as exc:
            raise OllamaError(f"Failed to contact Ollama reranker: {exc}") from exc

        if not response.is_success:
            raise OllamaError(f"Reranker API error: {_status_text(response)} - {response.text}")

        try:
            body = response.json()
            answer = body["response"]
            if not isinstance(answer, str):
                raise TypeError("response is not a string")
        except (ValueError, KeyError, TypeError) as exc:
            raise OllamaError(f"Failed to parse reranker response: {exc}") from exc

        score = parse_score(answer)
        if score is None:
            raise OllamaError("No numeric score in reranker response")
        return score

    def _score_or_fallback(self, query: str, candidate: RerankerCandidate) -> RerankedResult:
        try:
            score = self.score_candidate(query, candidate)
        except OllamaError as exc:
            logger.warning(
                "Falling back to embedding score for chunk %s: %s", candidate.chunk_id, exc
            )
            score = candidate.initial_score
        return RerankedResult(candidate.chunk_id, score)

    def rerank(
        self, query: str, candidates: Sequence[RerankerCandidate]
    ) -> list[RerankedResult]:
        """Score all candidates concurrently and return them by relevance, highest first."""
        if not candidates:
            return []
        workers = min(_MAX_WORKERS, len(candidates))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(
                pool.map(lambda candidate: self._score_or_fallback(query, candidate), candidates)
            )
        return sorted(results, key=lambda result: result.relevance, reverse=True)