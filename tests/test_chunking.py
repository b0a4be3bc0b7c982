import pytest

from localrag.chunking import (
    ChunkMetadata,
    SentenceInfo,
    approximate_token_count,
    chunk_text,
    extract_section_heading,
    extract_sentences,
    finalize_chunk,
    is_heading,
    normalize_whitespace,
    split_sentences,
)


def test_normalize_whitespace_collapses_runs():
    assert normalize_whitespace("  alpha \t beta\n\n gamma  ") == "alpha beta gamma"
    assert normalize_whitespace(" \n\t ") == ""


@pytest.mark.parametrize(
    "line",
    ["INTRODUCTION", "Results and discussion:", "Key Terms", "1. Introduction to the topic at hand"],
)
def test_is_heading_accepts_headings(line):
    assert is_heading(line) is True


@pytest.mark.parametrize(
    "line",
    [
        "",
        "This is an ordinary sentence with plenty of lowercase words.",
        "one two three four five six seven eight nine ten eleven twelve thirteen",
        "A" * 121,
    ],
)
def test_is_heading_rejects_non_headings(line):
    assert is_heading(line) is False


def test_approximate_token_count_empty_is_zero():
    assert approximate_token_count("   ") == 0


def test_approximate_token_count_bounds():
    samples = ["x", "hello world", "a b c d e f g h i j", "supercalifragilistic " * 5]
    for sample in samples:
        count = approximate_token_count(sample)
        stripped = sample.strip()
        assert count >= 1
        assert count * 4 >= len(stripped)
        assert count >= len(stripped.split()) * 0.9


def test_extract_section_heading_skips_numbers_and_short_lines():
    text = "123\n\nab\n  Introduction here  \nmore text"
    assert extract_section_heading(text) == "Introduction here"


def test_extract_section_heading_none_and_truncation():
    assert extract_section_heading("12\n\n x1\n 42") is None
    long_line = "word " * 60
    heading = extract_section_heading(long_line)
    assert len(heading) == 120
    assert long_line.strip().startswith(heading)


def test_split_sentences_keeps_abbreviations():
    text = "Dr. Smith arrived at noon. He left early! Did J. Doe stay?"
    assert split_sentences(text) == [
        "Dr. Smith arrived at noon.",
        "He left early!",
        "Did J. Doe stay?",
    ]


def test_split_sentences_no_split_before_lowercase():
    text = "Values rose by 3.5 percent. then fell."
    assert split_sentences(text) == [text]


def test_extract_sentences_tracks_pages_and_headings():
    text = (
        "OVERVIEW\n\nThe first page has text. It has two sentences."
        "\fSecond page sentence here."
    )
    sentences = extract_sentences(text)
    assert [s.text for s in sentences] == [
        "The first page has text.",
        "It has two sentences.",
        "Second page sentence here.",
    ]
    assert [s.page for s in sentences] == [1, 1, 2]
    assert [s.heading for s in sentences] == ["OVERVIEW", "OVERVIEW", None]
    assert [s.index for s in sentences] == list(range(len(sentences)))
    assert all(s.tokens == approximate_token_count(s.text) for s in sentences)


def test_extract_sentences_heading_at_top_of_block():
    text = "Methods:\nWe measured the samples carefully."
    sentences = extract_sentences(text)
    assert len(sentences) == 1
    assert sentences[0].heading == "Methods:"
    assert sentences[0].text == "We measured the samples carefully."


def test_extract_sentences_empty_text():
    assert extract_sentences("  \n\n \f ") == []


def test_finalize_chunk_empty_is_none():
    assert finalize_chunk([], 0) is None


def test_finalize_chunk_builds_metadata():
    sentences = [
        SentenceInfo("First  sentence.", 4, 2, None, 7),
        SentenceInfo("Second sentence.", 4, 3, "Section A", 8),
        SentenceInfo("Third sentence.", 4, 1, "Section B", 9),
    ]
    text, metadata = finalize_chunk(sentences, 2)
    assert text == "First sentence. Second sentence. Third sentence."
    assert metadata == ChunkMetadata(
        page_range=(1, 3),
        sentence_range=(7, 9),
        section_title="Section A",
        token_count=12,
        overlap_with_previous=2,
    )


def test_finalize_chunk_truncates_title():
    title = "T" * 200
    _, metadata = finalize_chunk([SentenceInfo("Body text.", 3, 1, title, 0)])
    assert metadata.section_title == title[:160]


def test_chunk_text_respects_size_and_pages():
    page_one = " ".join(f"word{i}" for i in range(25))
    page_two = "Closing remarks on page two"
    fragments = chunk_text(page_one + "\f" + page_two, 10)
    assert all(len(f.text.split()) <= 10 for f in fragments)
    assert [f.page_number for f in fragments] == [1, 1, 1, 2]
    rebuilt = " ".join(f.text for f in fragments if f.page_number == 1)
    assert rebuilt == page_one
    assert fragments[-1].text == page_two
    assert fragments[-1].section == page_two


def test_chunk_text_skips_blank_pages():
    fragments = chunk_text("\f\fonly words here", 5)
    assert [(f.text, f.page_number) for f in fragments] == [("only words here", 3)]


def test_chunk_text_empty_and_invalid_size():
    assert chunk_text("   ", 5) == []
    with pytest.raises(ValueError):
        chunk_text("some text", 0)