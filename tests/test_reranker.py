import json

import httpx
import pytest

from localrag.embeddings import OllamaError
from localrag.reranker import (
    RerankedResult,
    RerankerCandidate,
    RerankerService,
    parse_score,
)


def make_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def candidate(chunk_id, text="some text", page=0, section=None, score=0.5):
    return RerankerCandidate(
        chunk_id=chunk_id,
        document="doc.pdf",
        text=text,
        page_number=page,
        section=section,
        initial_score=score,
    )


@pytest.mark.parametrize(
    "answer, expected",
    [
        ("0.85", 0.85),
        ("Score: 0.7 out of 1", 0.7),
        ("  0.25\n", 0.25),
        ("1.", 1.0),
        ("7", 1.0),
        ("-0.5", 0.5),
    ],
)
def test_parse_score_values(answer, expected):
    assert parse_score(answer) == pytest.approx(expected)


@pytest.mark.parametrize("answer", ["none", "", ".", "1.2.3"])
def test_parse_score_rejects(answer):
    assert parse_score(answer) is None


def test_parse_score_is_clamped():
    for answer in ["0", "3.5", "0.999", "42 points"]:
        score = parse_score(answer)
        assert 0.0 <= score <= 1.0


def test_build_prompt_unknown_page_and_no_section():
    service = RerankerService("http://ollama.test", "m", make_client(lambda r: httpx.Response(500)))
    prompt = service.build_prompt("  what  ", candidate("c1", text="  body text  ", section="   "))
    assert "Query: what\n" in prompt
    assert "Document: doc.pdf\n" in prompt
    assert "Page: unknown\n" in prompt
    assert "Section heading" not in prompt
    assert "\nChunk:\nbody text\n\n" in prompt
    assert prompt.endswith("using decimal format.")


def test_build_prompt_with_page_and_section():
    service = RerankerService("http://ollama.test", "m", make_client(lambda r: httpx.Response(500)))
    prompt = service.build_prompt("q", candidate("c1", page=3, section=" Intro "))
    assert "Page: 3\n" in prompt
    assert "Section heading: Intro\n" in prompt


def test_score_candidate_sends_generate_request():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"response": "0.9"})

    service = RerankerService("http://ollama.test", "llama3.1", make_client(handler))
    assert service.score_candidate("q", candidate("c1")) == pytest.approx(0.9)
    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/api/generate"
    assert body["model"] == "llama3.1"
    assert body["stream"] is False
    assert body["prompt"] == service.build_prompt("q", candidate("c1"))


def test_score_candidate_api_error():
    service = RerankerService(
        "http://ollama.test", "m", make_client(lambda r: httpx.Response(500, text="fail"))
    )
    with pytest.raises(OllamaError, match="Reranker API error: 500"):
        service.score_candidate("q", candidate("c1"))


def test_score_candidate_without_number():
    service = RerankerService(
        "http://ollama.test",
        "m",
        make_client(lambda r: httpx.Response(200, json={"response": "irrelevant"})),
    )
    with pytest.raises(OllamaError, match="No numeric score in reranker response"):
        service.score_candidate("q", candidate("c1"))


def test_score_candidate_bad_payload():
    service = RerankerService(
        "http://ollama.test", "m", make_client(lambda r: httpx.Response(200, json={}))
    )
    with pytest.raises(OllamaError, match="Failed to parse reranker response"):
        service.score_candidate("q", candidate("c1"))


def test_rerank_sorts_and_falls_back():
    def handler(request):
        prompt = json.loads(request.content)["prompt"]
        if "alpha" in prompt:
            return httpx.Response(200, json={"response": "0.2"})
        if "beta" in prompt:
            return httpx.Response(200, json={"response": "0.9"})
        return httpx.Response(500, text="down")

    service = RerankerService("http://ollama.test", "m", make_client(handler))
    candidates = [
        candidate("a", text="alpha"),
        candidate("b", text="beta"),
        candidate("g", text="gamma", score=0.4),
    ]
    results = service.rerank("q", candidates)
    assert [r.chunk_id for r in results] == ["b", "g", "a"]
    assert results[1] == RerankedResult("g", 0.4)
    relevances = [r.relevance for r in results]
    assert relevances == sorted(relevances, reverse=True)


def test_rerank_empty():
    service = RerankerService("http://ollama.test", "m", make_client(lambda r: httpx.Response(500)))
    assert service.rerank("q", []) == []


def test_rerank_ties_keep_input_order():
    service = RerankerService(
        "http://ollama.test",
        "m",
        make_client(lambda r: httpx.Response(200, json={"response": "0.5"})),
    )
    results = service.rerank("q", [candidate("x"), candidate("y"), candidate("z")])
    assert [r.chunk_id for r in results] == ["x", "y", "z"]


def test_from_env_uses_rerank_model(monkeypatch):
    monkeypatch.delenv("OLLAMA_URL", raising=False)
    monkeypatch.delenv("OLLAMA_RERANK_MODEL", raising=False)
    tags = httpx.Response(200, json={"models": [{"name": "llama3.1:8b"}]})
    service = RerankerService.from_env(make_client(lambda r: tags))
    assert service.model == "llama3.1"
    assert service.ollama_url == "http://localhost:11434"


def test_from_env_missing_model(monkeypatch):
    monkeypatch.setenv("OLLAMA_RERANK_MODEL", "mistral")
    tags = httpx.Response(200, json={"models": [{"name": "llama3.1:8b"}]})
    with pytest.raises(OllamaError, match="Rerank model 'mistral' not found"):
        RerankerService.from_env(make_client(lambda r: tags))