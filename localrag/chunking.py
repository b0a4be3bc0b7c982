"""Splitting extracted document text into sentences and chunks."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

MAX_HEADING_BYTES = 120
MAX_HEADING_WORDS = 12
SECTION_HEADING_CHARS = 120
MAX_TITLE_CHARS = 160
PAGE_BREAK = "\f"

_NUMBERED_HEADING = re.compile(r"^\d+\.\s")
_SENTENCE_END = re.compile(r"[.!?]+[\"'\u201d\u2019)\]]*(?=\s)")
_ABBREVIATIONS = frozenset(
    {
        "dr", "mr", "mrs", "ms", "prof", "sr", "jr", "st", "vs", "etc",
        "e.g", "i.e", "fig", "no", "al", "inc", "ltd", "co", "corp", "dept",
        "approx", "cf", "vol", "p", "pp", "jan", "feb", "mar", "apr", "jun",
        "jul", "aug", "sep", "sept", "oct", "nov", "dec",
    }
)


@dataclass(frozen=True)
class ChunkFragment:
    """A run of words from one page, with the heading it appears to start with."""

    text: str
    page_number: int
    section: str | None


@dataclass
class ChunkMetadata:
    """Provenance of a chunk built from sentences."""

    page_range: tuple[int, int] | None = None
    sentence_range: tuple[int, int] | None = None
    section_title: str | None = None
    token_count: int = 0
    overlap_with_previous: int = 0


@dataclass(frozen=True)
class SentenceInfo:
    """One sentence with its page, the heading above it and its position."""

    text: str
    tokens: int
    page: int
    heading: str | None
    index: int


def normalize_whitespace(value: str) -> str:
    """Collapse every run of whitespace to a single space and trim the ends."""
    return " ".join(value.split())


def is_heading(line: str) -> bool:
    """Guess whether a single line is a section heading."""
    trimmed = line.strip()
    if not trimmed or len(trimmed.encode("utf-8")) > MAX_HEADING_BYTES:
        return False

    word_count = len(trimmed.split())
    if word_count == 0 or word_count > MAX_HEADING_WORDS:
        return False

    uppercase = sum(1 for ch in trimmed if ch.isupper())
    lowercase = sum(1 for ch in trimmed if ch.islower())

    if lowercase == 0 and uppercase > 0:
        return True
    if trimmed.endswith(":"):
        return True
    if word_count <= 4 and uppercase >= lowercase:
        return True
    return bool(_NUMBERED_HEADING.match(trimmed))


def approximate_token_count(value: str) -> int:
    """Estimate the number of model tokens in a piece of text."""
    trimmed = value.strip()
    if not trimmed:
        return 0
    char_estimate = -(-len(trimmed) // 4)
    word_estimate = -(-len(trimmed.split()) * 9 // 10)
    return max(char_estimate, word_estimate, 1)


def extract_section_heading(text: str) -> str | None:
    """Return the first line with at least three letters that is not just digits.

    The heading is cut to 120 characters.
    """
    for line in text.split("\n"):
        trimmed = line.strip()
        if not trimmed:
            continue
        if all("0" <= ch <= "9" for ch in trimmed):
            continue
        if sum(1 for ch in trimmed if ch.isalpha()) < 3:
            continue
        return trimmed[:SECTION_HEADING_CHARS]
    return None


def _is_abbreviation(preceding: str) -> bool:
    words = preceding.split()
    if not words:
        return False
    token = words[-1].lstrip("(\"'")
    if len(token) == 1 and token.isalpha():
        return True
    return token.lower() in _ABBREVIATIONS


def split_sentences(text: str) -> list[str]:
    """Split text into sentences, keeping common abbreviations and initials intact."""
    parts: list[str] = []
    start = 0
    for match in _SENTENCE_END.finditer(text):
        end = match.end()
        rest = text[end:].lstrip()
        if not rest or rest[0].islower():
            continue
        if match.group() == "." and _is_abbreviation(text[start : match.start()]):
            continue
        piece = text[start:end].strip()
        if piece:
            parts.append(piece)
        start = end
    tail = text[start:].strip()
    if tail:
        parts.append(tail)
    return parts


def extract_sentences(text: str) -> list[SentenceInfo]:
    """Break text into sentences, tracking pages (form feeds) and headings."""
    sentences: list[SentenceInfo] = []

    for page_number, page_text in enumerate(text.split(PAGE_BREAK), start=1):
        last_heading: str | None = None

        for raw_block in page_text.split("\n\n"):
            block = raw_block.strip()
            if not block:
                continue

            lines = block.split("\n")
            if len(lines) == 1 and is_heading(lines[0]):
                last_heading = lines[0].strip()
                continue

            paragraph: list[str] = []
            for line in lines:
                trimmed = line.strip()
                if not trimmed:
                    continue
                if not paragraph and is_heading(trimmed):
                    last_heading = trimmed
                    continue
                paragraph.append(trimmed)

            if not paragraph:
                continue
            normalized = normalize_whitespace(" ".join(paragraph))
            if not normalized:
                continue

            for part in split_sentences(normalized) or [normalized]:
                tokens = approximate_token_count(part)
                if tokens == 0:
                    continue
                sentences.append(
                    SentenceInfo(
                        text=part,
                        tokens=tokens,
                        page=page_number,
                        heading=last_heading,
                        index=len(sentences),
                    )
                )

    if not sentences:
        normalized = normalize_whitespace(text)
        if normalized:
            sentences.append(
                SentenceInfo(
                    text=normalized,
                    tokens=approximate_token_count(normalized),
                    page=1,
                    heading=None,
                    index=0,
                )
            )
    return sentences


def finalize_chunk(
    sentences: Sequence[SentenceInfo], overlap_with_previous: int = 0
) -> tuple[str, ChunkMetadata] | None:
    """Join sentences into one chunk and describe where it came from.

    Returns None when there is nothing to join.
    """
    if not sentences:
        return None

    chunk_text = normalize_whitespace(" ".join(s.text for s in sentences))
    if not chunk_text:
        return None

    pages = [s.page for s in sentences]
    title = next((s.heading for s in sentences if s.heading is not None), None)
    if title is not None:
        title = title[:MAX_TITLE_CHARS]

    metadata = ChunkMetadata(
        page_range=(min(pages), max(pages)),
        sentence_range=(sentences[0].index, sentences[-1].index),
        section_title=title,
        token_count=sum(s.tokens for s in sentences),
        overlap_with_previous=overlap_with_previous,
    )
    return chunk_text, metadata


def _word_fragments(text: str, chunk_size: int, page_number: int) -> list[ChunkFragment]:
    words = text.split()
    fragments = []
    for start in range(0, len(words), chunk_size):
        joined = " ".join(words[start : start + chunk_size])
        if joined.strip():
            fragments.append(
                ChunkFragment(
                    text=joined,
                    page_number=page_number,
                    section=extract_section_heading(joined),
                )
            )
    return fragments


def chunk_text(text: str, chunk_size: int = 500) -> list[ChunkFragment]:
    """Cut text into fragments of at most ``chunk_size`` words, page by page."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    fragments = [
        fragment
        for page_number, page_text in enumerate(text.split(PAGE_BREAK), start=1)
        for fragment in _word_fragments(page_text, chunk_size, page_number)
    ]
    if not fragments:
        fragments = _word_fragments(text, chunk_size, 1)
    return fragments