"""Document store with hybrid semantic and keyword search."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import subprocess
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol, Sequence

from localrag.ann import AnnIndex, cosine_similarity
from localrag.chunking import ChunkMetadata, chunk_text
from localrag.lexical import LexicalIndex
from localrag.reranker import RerankedResult, RerankerCandidate

logger = logging.getLogger(__name__)

EMBEDDING_WEIGHT = 0.7
LEXICAL_WEIGHT = 0.3
MIN_CHUNK_BYTES = 10
STATE_VERSION = 2
STATE_FILE = "chunks.json"
_F32_EPSILON = 1.1920929e-07


class _Embedder(Protocol):
    model: str

    def get_query_embedding(self, text: str) -> list[float]: ...

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]: ...


class _Reranker(Protocol):
    def rerank(
        self, query: str, candidates: Sequence[RerankerCandidate]
    ) -> list[RerankedResult]: ...


def _range_to_json(value: tuple[int, int] | None) -> list[int] | None:
    return list(value) if value is not None else None


def _range_from_json(value: Any) -> tuple[int, int] | None:
    if value is None:
        return None
    start, end = value
    return int(start), int(end)


def _metadata_to_dict(metadata: ChunkMetadata) -> dict[str, Any]:
    return {
        "page_range": _range_to_json(metadata.page_range),
        "sentence_range": _range_to_json(metadata.sentence_range),
        "section_title": metadata.section_title,
        "token_count": metadata.token_count,
        "overlap_with_previous": metadata.overlap_with_previous,
    }


def _metadata_from_dict(data: Any) -> ChunkMetadata:
    if data is None:
        return ChunkMetadata()
    if not isinstance(data, Mapping):
        raise ValueError("metadata must be an object")
    return ChunkMetadata(
        page_range=_range_from_json(data.get("page_range")),
        sentence_range=_range_from_json(data.get("sentence_range")),
        section_title=data.get("section_title"),
        token_count=int(data.get("token_count", 0)),
        overlap_with_previous=int(data.get("overlap_with_previous", 0)),
    )


@dataclass
class DocumentChunk:
    """A piece of a document together with its embedding."""

    id: str
    document_name: str
    text: str
    embedding: list[float]
    chunk_index: int
    page_number: int = 0
    section: str | None = None
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form stored on disk."""
        return {
            "id": self.id,
            "document_name": self.document_name,
            "text": self.text,
            "embedding": list(self.embedding),
            "chunk_index": self.chunk_index,
            "page_number": self.page_number,
            "section": self.section,
            "metadata": _metadata_to_dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "DocumentChunk":
        """Build a chunk from its JSON form; raises ValueError when it is malformed."""
        if not isinstance(data, Mapping):
            raise ValueError("chunk must be an object")
        try:
            section = data.get("section")
            if section is not None and not isinstance(section, str):
                raise TypeError("section must be a string")
            return cls(
                id=str(data["id"]),
                document_name=str(data["document_name"]),
                text=str(data["text"]),
                embedding=[float(x) for x in data["embedding"]],
                chunk_index=int(data["chunk_index"]),
                page_number=int(data.get("page_number", 0)),
                section=section,
                metadata=_metadata_from_dict(data.get("metadata")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid chunk: {exc}") from exc


@dataclass(frozen=True)
class SearchResult:
    """One hit returned by a search."""

    text: str
    score: float
    document: str
    chunk_id: str
    chunk_index: int
    page_number: int
    section: str | None


@dataclass
class _PersistedState:
    version: int
    model: str
    chunks: dict[str, DocumentChunk]
    needs_reindex: bool
    document_hashes: dict[str, str]


def _parse_state(raw: Any) -> _PersistedState | None:
    if not isinstance(raw, dict):
        return None
    version = raw.get("version")
    model = raw.get("model")
    chunks = raw.get("chunks")
    needs_reindex = raw.get("needs_reindex", False)
    hashes = raw.get("document_hashes", {})
    if isinstance(version, bool) or not isinstance(version, int) or version < 0:
        return None
    if not isinstance(model, str) or not isinstance(chunks, dict):
        return None
    if not isinstance(needs_reindex, bool) or not isinstance(hashes, dict):
        return None
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in hashes.items()):
        return None
    try:
        parsed = {key: DocumentChunk.from_dict(value) for key, value in chunks.items()}
    except ValueError:
        return None
    return _PersistedState(version, model, parsed, needs_reindex, dict(hashes))


def _parse_legacy(raw: Any) -> dict[str, DocumentChunk]:
    if not isinstance(raw, dict):
        raise ValueError("Failed to parse legacy chunks.json")
    try:
        return {key: DocumentChunk.from_dict(value) for key, value in raw.items()}
    except ValueError as exc:
        raise ValueError(f"Failed to parse legacy chunks.json: {exc}") from exc


def compute_document_hash(data: bytes) -> str:
    """Return the hex SHA-256 fingerprint of a document's bytes."""
    return hashlib.sha256(data).hexdigest()


def extract_pdf_text(data: bytes) -> str:
    """Extract the text of a PDF with the ``pdftotext`` tool from poppler."""
    logger.info("Extracting PDF text using pdftotext system binary")
    with tempfile.NamedTemporaryFile(prefix="temp_pdf_", suffix=".pdf", delete=False) as tmp:
        tmp.write(data)
        temp_path = Path(tmp.name)

    cmd = ["pdftotext", "-layout", "-enc", "UTF-8", str(temp_path), "-"]
    try:
        output = subprocess.run(cmd, capture_output=True, check=False)
    except OSError as exc:
        logger.warning("Failed to run pdftotext command: %s", exc)
        raise RuntimeError(
            f"pdftotext command failed: {exc} (is poppler installed?)"
        ) from exc
    finally:
        temp_path.unlink(missing_ok=True)

    if output.returncode != 0:
        message = output.stderr.decode("utf-8", errors="replace")
        logger.warning("pdftotext failed with error: %s", message)
        raise RuntimeError(f"pdftotext failed: {message}")

    text = output.stdout.decode("utf-8", errors="replace")
    if not text.strip():
        logger.warning("pdftotext extracted 0 characters")
        raise RuntimeError("pdftotext produced no text output")
    logger.info("✅ pdftotext extracted %d characters", len(text))
    return text


def _walk_pdfs(directory: str | os.PathLike[str]) -> Iterator[Path]:
    for root, dirs, files in os.walk(directory):
        dirs.sort()
        for name in sorted(files):
            path = Path(root) / name
            if path.suffix == ".pdf":
                yield path


class RagEngine:
    """Keeps document chunks, their embeddings and the indexes used for search."""

    def __init__(
        self,
        data_dir: str | os.PathLike[str],
        embedding_service: _Embedder,
        reranker: _Reranker | None = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.embedding_service = embedding_service
        self.reranker = reranker
        self.chunks: dict[str, DocumentChunk] = {}
        self.document_hashes: dict[str, str] = {}
        self.needs_reindex = False
        self._lexical = LexicalIndex()
        self._ann: AnnIndex | None = None
        try:
            self.load_from_disk()
        except (OSError, ValueError) as exc:
            logger.warning("Could not load existing data: %s", exc)

    @property
    def embedding_model(self) -> str:
        """Name of the model the embeddings come from."""
        return self.embedding_service.model

    @property
    def _state_path(self) -> Path:
        return self.data_dir / STATE_FILE

    def _index_chunk(self, chunk: DocumentChunk) -> None:
        if self._ann is None and chunk.embedding:
            self._ann = AnnIndex(len(chunk.embedding))
        if self._ann is not None:
            self._ann.insert(chunk.id, chunk.embedding)
        self._lexical.add_chunk(chunk.id, chunk.text)

    def _remove_document(self, filename: str) -> None:
        stale = [cid for cid, chunk in self.chunks.items() if chunk.document_name == filename]
        for cid in stale:
            del self.chunks[cid]
            if self._ann is not None:
                self._ann.remove(cid)
            self._lexical.remove_chunk(cid)

    def _rebuild_indexes(self) -> None:
        self._lexical.clear()
        self._ann = None
        for chunk in self.chunks.values():
            self._index_chunk(chunk)

    def add_document(self, filename: str, data: bytes) -> int:
        """Index a PDF and return the number of chunks stored (0 when unchanged)."""
        logger.info("Processing document: %s", filename)

        digest = compute_document_hash(data)
        existing = self.document_hashes.get(filename)
        if existing is not None:
            if existing == digest:
                logger.info(
                    "Document %s unchanged since last index. Skipping re-embedding.", filename
                )
                return 0
            logger.info("Document %s has changed. Refreshing embeddings.", filename)

        text = extract_pdf_text(data)
        if not text.strip():
            raise ValueError("No text extracted from PDF")

        fragments = chunk_text(text)
        logger.info("Created %d chunks for %s", len(fragments), filename)

        kept = [
            (index, fragment)
            for index, fragment in enumerate(fragments)
            if len(fragment.text.strip().encode("utf-8")) >= MIN_CHUNK_BYTES
        ]

        if not kept:
            logger.warning(
                "Document %s produced no sizeable chunks after filtering. "
                "Removing any cached chunks for this file.",
                filename,
            )
            self._remove_document(filename)
            self.document_hashes[filename] = digest
            self.save_to_disk()
            return 0

        logger.debug(
            "Generating embeddings for %d chunks from %s in a single request",
            len(kept),
            filename,
        )
        embeddings = self.embedding_service.embed_texts([f.text for _, f in kept])
        if len(embeddings) != len(kept):
            raise RuntimeError(
                f"Received {len(embeddings)} embeddings for {len(kept)} chunks in {filename}"
            )

        self._remove_document(filename)
        for (index, fragment), embedding in zip(kept, embeddings):
            chunk = DocumentChunk(
                id=str(uuid.uuid4()),
                document_name=filename,
                text=fragment.text,
                embedding=list(embedding),
                chunk_index=index,
                page_number=fragment.page_number,
                section=fragment.section,
            )
            self.chunks[chunk.id] = chunk
            self._index_chunk(chunk)

        self.document_hashes[filename] = digest
        self.save_to_disk()
        logger.info("Successfully processed %d chunks for %s", len(kept), filename)
        return len(kept)

    def _rerank(
        self, query: str, shortlist: Sequence[tuple[float, DocumentChunk]]
    ) -> list[RerankedResult]:
        if self.reranker is None:
            logger.debug("Reranker not available, using embedding scores only")
            return []
        candidates = [
            RerankerCandidate(
                chunk_id=chunk.id,
                document=chunk.document_name,
                text=chunk.text,
                page_number=chunk.page_number,
                section=chunk.section,
                initial_score=score,
            )
            for score, chunk in shortlist
        ]
        try:
            return list(self.reranker.rerank(query, candidates))
        except RuntimeError as exc:
            logger.warning("Reranker failed, falling back to embedding scores: %s", exc)
            return []

    def search(self, query: str, top_k: int = 5) -> list[SearchResult]:
        """Return the ``top_k`` chunks most relevant to ``query``, best first."""
        if not self.chunks:
            return []

        top_k = max(top_k, 1)
        logger.debug("Searching for: '%s'", query)
        query_embedding = self.embedding_service.get_query_embedding(query)

        pool = top_k * 5
        if self._ann is not None:
            ann_ids = self._ann.search(query_embedding, pool)
        else:
            ann_ids = list(self.chunks)
        lexical = dict(self._lexical.score(query, pool))

        candidate_ids = list(dict.fromkeys([*ann_ids, *lexical]))
        if not candidate_ids:
            return []

        max_lexical = max(max(lexical.values(), default=0.0), _F32_EPSILON)
        scored: list[tuple[float, DocumentChunk]] = []
        for cid in candidate_ids:
            chunk = self.chunks.get(cid)
            if chunk is None:
                continue
            embedding_score = cosine_similarity(query_embedding, chunk.embedding)
            lexical_score = lexical.get(cid, 0.0) / max_lexical
            combined = EMBEDDING_WEIGHT * embedding_score + LEXICAL_WEIGHT * lexical_score
            scored.append((combined, chunk))

        scored.sort(key=lambda item: item[0], reverse=True)
        shortlist = scored[: min(len(scored), max(top_k * 3, top_k))]
        if not shortlist:
            return []

        by_id = {chunk.id: (score, chunk) for score, chunk in shortlist}
        results: list[SearchResult] = []
        seen: set[str] = set()

        for item in self._rerank(query, shortlist):
            if len(results) >= top_k:
                break
            entry = by_id.get(item.chunk_id)
            if entry is None or item.chunk_id in seen:
                continue
            seen.add(item.chunk_id)
            results.append(self._to_result(entry[1], item.relevance))

        for score, chunk in shortlist:
            if len(results) >= top_k:
                break
            if chunk.id in seen:
                continue
            seen.add(chunk.id)
            results.append(self._to_result(chunk, score))

        return results

    @staticmethod
    def _to_result(chunk: DocumentChunk, score: float) -> SearchResult:
        return SearchResult(
            text=chunk.text,
            score=score,
            document=chunk.document_name,
            chunk_id=chunk.id,
            chunk_index=chunk.chunk_index,
            page_number=chunk.page_number,
            section=chunk.section,
        )

    def list_documents(self) -> list[str]:
        """Names of the indexed documents, sorted."""
        return sorted({chunk.document_name for chunk in self.chunks.values()})

    def get_stats(self) -> dict[str, Any]:
        """Counts of documents and chunks and the indexing status."""
        return {
            "documents": len(self.list_documents()),
            "chunks": len(self.chunks),
            "status": "reindexing" if self.needs_reindex else "ready",
        }

    def load_documents_from_dir(self, directory: str | os.PathLike[str]) -> None:
        """Index every ``.pdf`` file under ``directory``, skipping ones that fail."""
        was_reindexing = self.needs_reindex
        if was_reindexing:
            logger.info(
                "Reindexing documents in '%s' with embedding model '%s'",
                directory,
                self.embedding_model,
            )

        for path in _walk_pdfs(directory):
            filename = path.name
            try:
                data = path.read_bytes()
            except OSError as exc:
                logger.error("Failed to read %s: %s", filename, exc)
                continue

            logger.info("Loading document: %s", filename)
            try:
                count = self.add_document(filename, data)
            except (OSError, RuntimeError, ValueError) as exc:
                logger.warning("Skipping %s: %s", filename, exc)
                continue
            if count > 0:
                logger.info("Successfully processed %s with %d chunks", filename, count)
            else:
                logger.info("%s is already up to date. No reindex needed.", filename)

        if was_reindexing:
            self.needs_reindex = False
            self.save_to_disk()
            logger.info(
                "Reindexing complete. Indexed %d chunks across %d documents.",
                len(self.chunks),
                len(self.list_documents()),
            )

    def save_to_disk(self) -> None:
        """Write all chunks and fingerprints to ``chunks.json`` in the data directory."""
        state: dict[str, Any] = {
            "version": STATE_VERSION,
            "model": self.embedding_model,
            "chunks": {cid: chunk.to_dict() for cid, chunk in self.chunks.items()},
            "needs_reindex": self.needs_reindex,
        }
        if self.document_hashes:
            state["document_hashes"] = dict(self.document_hashes)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._state_path.write_text(json.dumps(state, indent=2), encoding="utf-8")
        logger.debug("Saved %d chunks to disk", len(self.chunks))

    def _reset_for_reindex(self) -> None:
        self.chunks.clear()
        self.needs_reindex = True
        self._lexical.clear()
        self._ann = None
        self.save_to_disk()

    def load_from_disk(self) -> None:
        """Load saved chunks, marking a reindex when the model or format has changed."""
        path = self._state_path
        if not path.exists():
            return

        text = path.read_text(encoding="utf-8")
        try:
            raw = json.loads(text)
        except ValueError as exc:
            raise ValueError(f"Failed to parse legacy chunks.json: {exc}") from exc

        state = _parse_state(raw)
        if state is None:
            legacy = _parse_legacy(raw)
            if legacy:
                logger.warning(
                    "Existing embeddings were created before provenance metadata was "
                    "tracked. Reindexing with model '%s' is required.",
                    self.embedding_model,
                )
                logger.info(
                    "Discarding %d legacy chunks so they can be regenerated.", len(legacy)
                )
                self.needs_reindex = True
            self.chunks.clear()
            self.document_hashes.clear()
            self._rebuild_indexes()
            self.save_to_disk()
            return

        if state.model != self.embedding_model:
            logger.warning(
                "Embedding model changed from '%s' to '%s'. Existing embeddings will be reindexed.",
                state.model,
                self.embedding_model,
            )
            self._reset_for_reindex()
        elif state.version < STATE_VERSION:
            logger.info(
                "Chunk metadata version %d is outdated. Marking for reindex to capture "
                "provenance data.",
                state.version,
            )
            self._reset_for_reindex()
        else:
            self.chunks = state.chunks
            self.needs_reindex = state.needs_reindex
            self.document_hashes = state.document_hashes
            if not self.document_hashes and self.chunks:
                logger.info(
                    "No document fingerprints found in cache. Existing documents will be "
                    "reindexed to initialize change detection."
                )
                self.needs_reindex = True
            self._rebuild_indexes()
            logger.info("Loaded %d chunks from disk", len(self.chunks))