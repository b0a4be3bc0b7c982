"""BM25 keyword index over chunk texts."""

from __future__ import annotations

import math
from collections import Counter
from itertools import groupby

K1 = 1.5
B = 0.75


def tokenize(text: str) -> list[str]:
    """Split text on non-alphanumeric characters and lowercase the pieces."""
    return [
        "".join(group).lower()
        for is_word, group in groupby(text, key=str.isalnum)
        if is_word
    ]


class LexicalIndex:
    """An in-memory inverted index scored with BM25."""

    def __init__(self) -> None:
        self._postings: dict[str, dict[str, int]] = {}
        self._doc_lengths: dict[str, int] = {}
        self._doc_terms: dict[str, Counter[str]] = {}
        self._total_length = 0

    def __len__(self) -> int:
        return len(self._doc_terms)

    def clear(self) -> None:
        """Forget every chunk."""
        self._postings.clear()
        self._doc_lengths.clear()
        self._doc_terms.clear()
        self._total_length = 0

    def add_chunk(self, chunk_id: str, text: str) -> None:
        """Index a chunk's text, replacing any earlier text under the same id."""
        if chunk_id in self._doc_terms:
            self.remove_chunk(chunk_id)

        term_counts = Counter(tokenize(text))
        doc_length = sum(term_counts.values())
        if doc_length == 0:
            return

        for term, count in term_counts.items():
            self._postings.setdefault(term, {})[chunk_id] = count
        self._doc_lengths[chunk_id] = doc_length
        self._doc_terms[chunk_id] = term_counts
        self._total_length += doc_length

    def remove_chunk(self, chunk_id: str) -> None:
        """Drop a chunk from the index; unknown ids are ignored."""
        term_counts = self._doc_terms.pop(chunk_id, None)
        length = self._doc_lengths.pop(chunk_id, None)
        if term_counts is not None:
            for term in term_counts:
                postings = self._postings.get(term)
                if postings is not None:
                    postings.pop(chunk_id, None)
                    if not postings:
                        del self._postings[term]
            if length is not None:
                self._total_length = max(self._total_length - length, 0)
        if not self._doc_terms:
            self._total_length = 0

    def score(self, query: str, limit: int = 0) -> list[tuple[str, float]]:
        """Return (chunk id, BM25 score) pairs, best first.

        A positive ``limit`` caps the number of pairs returned.
        """
        total_docs = len(self._doc_terms)
        if total_docs == 0:
            return []

        terms = dict.fromkeys(tokenize(query))
        if not terms:
            return []

        avg_doc_len = self._total_length / total_docs
        scores: dict[str, float] = {}

        for term in terms:
            postings = self._postings.get(term)
            if not postings:
                continue
            df = len(postings)
            idf = max(math.log((total_docs - df + 0.5) / (df + 0.5)), 0.0)

            for doc_id, term_freq in postings.items():
                doc_length = self._doc_lengths.get(doc_id, 0)
                if doc_length == 0:
                    continue
                denom = term_freq + K1 * (1.0 - B + B * (doc_length / avg_doc_len))
                if denom == 0.0:
                    continue
                contribution = idf * (term_freq * (K1 + 1.0)) / denom
                scores[doc_id] = scores.get(doc_id, 0.0) + contribution

        results = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        if limit > 0:
            results = results[:limit]
        return results