# localrag

localrag indexes the PDF files in a directory and answers search queries about them as
Model Context Protocol (MCP) tools, over newline-delimited JSON-RPC on stdin and stdout.

Text is pulled out of each PDF with the `pdftotext` tool and cut into chunks of up to 500
words per page. Each chunk is embedded through a local Ollama server. A search blends two
scores for each candidate chunk:

- cosine similarity between the query and chunk embeddings, with weight 0.7
- BM25 keyword relevance, normalised to the best keyword hit, with weight 0.3

Candidates come from a random-hyperplane LSH index (`localrag.ann.AnnIndex`) and a BM25
index (`localrag.lexical.LexicalIndex`). When an Ollama reranking model is available, the
top candidates are scored again by that model. If it fails for one chunk, that chunk keeps
its blended score.

## Requirements

- Python 3.10 or newer
- A running Ollama server with an embedding model pulled (default `nomic-embed-text`)
- `pdftotext` from poppler on the `PATH`
- Optionally, an Ollama generation model for reranking (default `llama3.1`)

## Installation

```
pip install .
```

## Running

```
localrag
```

The command does the following, in order:

1. Loads a `.env` file, if one is found. If none is found, it prints a warning.
2. Sets up logging.
3. Creates the data and documents directories.
4. Checks that Ollama is reachable and that the embedding model is present. If either check fails, it exits with status 1.
5. Tries to set up the reranker. If that fails, searching uses the blended scores only.
6. Starts indexing the documents directory in a background thread.
7. Serves MCP requests on stdin/stdout until input ends.

An MCP client is expected to launch the command itself. The command takes no options
besides `--help`.

### Protocol

Each line on stdin is one JSON-RPC 2.0 message, and each response is one line on stdout.
The server answers these methods:

- `initialize`, with protocol version `2024-11-05`
- `ping`
- `tools/list`
- `tools/call`

Notifications get no reply.

| Tool               | Arguments                            | Result                                                   |
|--------------------|--------------------------------------|----------------------------------------------------------|
| `search_documents` | `query`, optional `top_k` (default 5) | Ranked chunks with relevance, document, page, chunk id and section |
| `list_documents`   | none                                 | Numbered, sorted names of indexed documents              |
| `get_stats`        | none                                 | JSON with `documents`, `chunks` and `status` (`ready` or `reindexing`) |

## Configuration

All settings come from environment variables, which can also be set in a `.env` file.

| Variable                 | Default                          | Meaning                                              |
|--------------------------|----------------------------------|------------------------------------------------------|
| `DATA_DIR`               | `./data`                         | Where `chunks.json` is stored                        |
| `DOCUMENTS_DIR`          | `./documents`                    | Directory searched recursively for `.pdf` files      |
| `LOG_DIR`                | `/var/log/local-rag` if `/var/log` is writable, else `./logs` | Log directory                                        |
| `LOG_LEVEL`              | `info`                           | One of `trace`, `debug`, `info`, `warn`, `warning`, `error`, `off` |
| `LOG_MAX_MB`             | `5`                              | Size above which the log file is truncated. Checked every 5 minutes. |
| `DEV` / `DEVELOPMENT`    | unset                            | When set, log to stderr instead of the JSON log file |
| `CONSOLE_LOGS`           | unset                            | Same effect as `DEV`                                 |
| `OLLAMA_URL`             | `http://localhost:11434`         | Ollama endpoint                                      |
| `OLLAMA_EMBEDDING_MODEL` | `nomic-embed-text`               | Embedding model                                      |
| `OLLAMA_RERANK_MODEL`    | `llama3.1`                       | Reranking model                                      |

Unless console logging is on, log records are written as JSON lines to `local-rag.log` in
the log directory.

Stored chunks are discarded and every document is indexed again in these cases:

- the embedding model has changed
- the stored format is older than the current one
- the store has no document fingerprints

A document whose SHA-256 fingerprint is unchanged is skipped. A document whose fingerprint
has changed has its old chunks replaced.

## Using it as a library

```python
from localrag.embeddings import EmbeddingService
from localrag.engine import RagEngine

embedder = EmbeddingService.from_env()   # checks the server and the model
engine = RagEngine("./data", embedder, None)
engine.load_documents_from_dir("./documents")
for result in engine.search("what is the warranty period?", 3):
    print(result.score, result.document, result.page_number)
```

`RagEngine.add_document(filename, data)` indexes the bytes of a single PDF. The tools
served over MCP can be used directly through `localrag.mcp_server.RagMcpServer`.

These building blocks can also be used on their own:

- `localrag.chunking`
  - `chunk_text`: word-based chunks per page
  - `extract_sentences`, `split_sentences`, `finalize_chunk`: sentence splitting with page and heading tracking
- `localrag.lexical.LexicalIndex`, with `tokenize`
- `localrag.ann.AnnIndex`, with `cosine_similarity`
- `localrag.reranker.RerankerService`, with `parse_score`

## Limitations

- Only PDF files are indexed, and only through the external `pdftotext` program.
- No MCP tool adds or removes documents. Indexing happens once at start-up, from the documents directory.
- The only transport is stdin/stdout. The package has no HTTP or socket server.
- The search indexes live in memory and are rebuilt from `chunks.json` on start-up.
- The sentence-level chunking helpers in `localrag.chunking` are not used by the engine, which uses the word-based chunks.

## Tests

```
pip install ".[test]"
pytest
```