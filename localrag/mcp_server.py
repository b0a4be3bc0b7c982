"""MCP tool server over newline-delimited JSON-RPC on stdin/stdout."""

from __future__ import annotations

import json
import logging
import sys
import threading
from typing import Any, Iterable, Protocol, Sequence, TextIO

from localrag.engine import SearchResult

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "local-rag-server"
SERVER_VERSION = "0.1.0"
INSTRUCTIONS = "A local RAG server for document search and analysis."
DEFAULT_TOP_K = 5

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

TOOLS: list[dict[str, Any]] = [
    {
        "name": "search_documents",
        "description": "Search through uploaded documents using semantic similarity",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query"},
                "top_k": {
                    "type": ["integer", "null"],
                    "description": "Number of results to return (default: 5)",
                    "minimum": 0,
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "list_documents",
        "description": "List all uploaded documents",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "get_stats",
        "description": "Get RAG system statistics",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


class _Engine(Protocol):
    def search(self, query: str, top_k: int) -> Sequence[SearchResult]: ...

    def list_documents(self) -> list[str]: ...

    def get_stats(self) -> dict[str, Any]: ...


class _RpcError(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _text_result(text: str, is_error: bool = False) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def _format_result(position: int, result: SearchResult) -> str:
    if result.page_number > 0:
        provenance = f"{result.document} (page {result.page_number})"
    else:
        provenance = result.document
    section = f"Section: {result.section}\n" if result.section is not None else ""
    return (
        f"**Result {position}** (Relevance: {result.score:.3f}) [{provenance}] "
        f"(Chunk: {result.chunk_id} / idx {result.chunk_index})\n{section}{result.text}\n"
    )


def _error_response(msg_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}}


class RagMcpServer:
    """Exposes search, listing and statistics of a RAG engine as MCP tools."""

    def __init__(self, engine: _Engine, lock: threading.Lock | None = None) -> None:
        self.engine = engine
        self.lock = lock if lock is not None else threading.Lock()

    def search_documents(self, query: str, top_k: int | None = None) -> dict[str, Any]:
        """Run a search and format the hits as text."""
        limit = DEFAULT_TOP_K if top_k is None else top_k
        with self.lock:
            try:
                results = list(self.engine.search(query, limit))
            except (RuntimeError, OSError, ValueError) as exc:
                return _text_result(f"Search error: {exc}", is_error=True)

        if results:
            formatted = "\n---\n\n".join(
                _format_result(position, result)
                for position, result in enumerate(results, start=1)
            )
        else:
            formatted = "No results found."
        return _text_result(f"Found {len(results)} results for '{query}':\n\n{formatted}")

    def list_documents(self) -> dict[str, Any]:
        """List the names of indexed documents."""
        with self.lock:
            documents = self.engine.list_documents()
        if not documents:
            return _text_result("No documents uploaded yet.")
        listing = "\n".join(f"{i}. {doc}" for i, doc in enumerate(documents, start=1))
        return _text_result(f"Uploaded documents ({len(documents)}):\n{listing}")

    def get_stats(self) -> dict[str, Any]:
        """Report document and chunk counts as pretty JSON."""
        with self.lock:
            stats = self.engine.get_stats()
        return _text_result(
            f"RAG System Stats:\n{json.dumps(stats, indent=2, sort_keys=True)}"
        )

    def _server_info(self) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "instructions": INSTRUCTIONS,
        }

    def _call_tool(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise _RpcError(INVALID_PARAMS, "Tool arguments must be an object")

        if name == "search_documents":
            query = arguments.get("query")
            if not isinstance(query, str):
                raise _RpcError(INVALID_PARAMS, "Missing or invalid 'query'")
            top_k = arguments.get("top_k")
            if top_k is not None and (
                isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 0
            ):
                raise _RpcError(INVALID_PARAMS, "'top_k' must be a non-negative integer")
            return self.search_documents(query, top_k)
        if name == "list_documents":
            return self.list_documents()
        if name == "get_stats":
            return self.get_stats()
        raise _RpcError(INVALID_PARAMS, f"Unknown tool: {name}")

    def _dispatch(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if method == "initialize":
            return self._server_info()
        if method == "ping":
            return {}
        if method.startswith("notifications/"):
            return {}
        if method == "tools/list":
            return {"tools": TOOLS}
        if method == "tools/call":
            return self._call_tool(params)
        raise _RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")

    def handle_message(self, message: Any) -> dict[str, Any] | None:
        """Answer one JSON-RPC message; notifications and client replies give None."""
        if not isinstance(message, dict):
            return _error_response(None, INVALID_REQUEST, "Invalid request")

        is_notification = "id" not in message
        msg_id = message.get("id")
        method = message.get("method")
        if not isinstance(method, str):
            if is_notification:
                return None
            return _error_response(msg_id, INVALID_REQUEST, "Invalid request")

        params = message.get("params")
        if params is None:
            params = {}
        try:
            if not isinstance(params, dict):
                raise _RpcError(INVALID_PARAMS, "Params must be an object")
            result = self._dispatch(method, params)
        except _RpcError as exc:
            if is_notification:
                logger.warning("Ignoring failed notification %s: %s", method, exc.message)
                return None
            return _error_response(msg_id, exc.code, exc.message)

        if is_notification:
            return None
        return {"jsonrpc": "2.0", "id": msg_id, "result": result}

    def serve(self, reader: Iterable[str], writer: TextIO) -> None:
        """Read one JSON message per line and write one response per line."""
        for line in reader:
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError as exc:
                response: dict[str, Any] | None = _error_response(
                    None, PARSE_ERROR, f"Parse error: {exc}"
                )
            else:
                response = self.handle_message(message)
            if response is not None:
                writer.write(json.dumps(response, ensure_ascii=False) + "\n")
                writer.flush()


def start_mcp_server(engine: _Engine, lock: threading.Lock | None = None) -> None:
    """Serve the engine's tools on stdin/stdout until input ends."""
    logger.info("Starting MCP server")
    RagMcpServer(engine, lock).serve(sys.stdin, sys.stdout)