"""Command-line entry point: set up logging, build the engine and serve MCP."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from localrag.embeddings import EmbeddingService, OllamaError
from localrag.engine import RagEngine
from localrag.mcp_server import start_mcp_server
from localrag.reranker import RerankerService

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "local-rag.log"
DEFAULT_LOG_MAX_MB = 5
CLEANUP_INTERVAL_SECONDS = 300

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": logging.CRITICAL + 1,
}


def get_data_dir() -> str:
    """Directory holding the chunk store (DATA_DIR, default ./data)."""
    return os.environ.get("DATA_DIR", "./data")


def get_documents_dir() -> str:
    """Directory scanned for PDFs (DOCUMENTS_DIR, default ./documents)."""
    return os.environ.get("DOCUMENTS_DIR", "./documents")


def get_log_dir() -> str:
    """LOG_DIR, else /var/log/local-rag when writable, else ./logs."""
    configured = os.environ.get("LOG_DIR")
    if configured is not None:
        return configured
    if Path("/var/log").exists() and is_writable("/var/log"):
        return "/var/log/local-rag"
    return "./logs"


def get_log_level() -> str:
    """LOG_LEVEL, default info."""
    return os.environ.get("LOG_LEVEL", "info")


def get_log_max_mb() -> int:
    """LOG_MAX_MB as a non-negative integer, default 5."""
    try:
        value = int(os.environ.get("LOG_MAX_MB", ""))
    except ValueError:
        return DEFAULT_LOG_MAX_MB
    return value if value >= 0 else DEFAULT_LOG_MAX_MB


def is_writable(path: str | os.PathLike[str]) -> bool:
    """Whether a file can be created in ``path``."""
    probe = Path(path) / "test_write"
    try:
        with probe.open("a"):
            pass
    except OSError:
        return False
    try:
        probe.unlink()
    except OSError:
        pass
    return True


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {"message": record.getMessage()}
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "fields": fields,
            "target": record.name,
        }
        return json.dumps(entry, ensure_ascii=False)


def setup_logging() -> Path | None:
    """Configure the root logger; returns the log file, or None when logging to the console."""
    log_dir = Path(get_log_dir())
    level_name = get_log_level()
    log_max_mb = get_log_max_mb()

    log_dir.mkdir(parents=True, exist_ok=True)
    level = _LEVELS.get(level_name.strip().lower(), logging.INFO)

    is_development = "DEVELOPMENT" in os.environ or "DEV" in os.environ
    force_console = "CONSOLE_LOGS" in os.environ
    console = is_development or force_console

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    log_file: Path | None
    if console:
        handler: logging.Handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        log_file = None
    else:
        log_file = log_dir / LOG_FILE_NAME
        handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        handler.setFormatter(_JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level)

    if console:
        logger.info("Development mode: logging to console")
    logger.info("Logging initialized")
    logger.info("Log directory: %s", log_dir)
    logger.info("Log level: %s", level_name)
    logger.info("Log max size: %sMB (auto-truncate)", log_max_mb)
    logger.info("Development mode: %s", console)
    return log_file


def truncate_log_if_needed(log_file: str | os.PathLike[str], max_mb: int) -> bool:
    """Replace the log with a short notice when it exceeds ``max_mb``; True if truncated."""
    path = Path(log_file)
    try:
        size = path.stat().st_size
    except OSError:
        return False
    if size <= max_mb * 1024 * 1024:
        return False
    try:
        path.write_text(f"[LOG TRUNCATED - Size exceeded {max_mb}MB]\n", encoding="utf-8")
    except OSError as exc:
        print(f"Failed to truncate log file: {exc}", file=sys.stderr)
        return False
    return True


def _start_log_cleanup(log_file: Path, max_mb: int) -> threading.Thread:
    def run() -> None:
        stop = threading.Event()
        while True:
            truncate_log_if_needed(log_file, max_mb)
            stop.wait(CLEANUP_INTERVAL_SECONDS)

    thread = threading.Thread(target=run, name="log-cleanup", daemon=True)
    thread.start()
    return thread


def _load_documents_in_background(
    engine: RagEngine, lock: threading.Lock, documents_dir: str
) -> threading.Thread:
    def run() -> None:
        logger.info("Starting document loading in background...")
        with lock:
            if engine.needs_reindex:
                logger.info(
                    "Starting reindex to rebuild embeddings using model '%s'...",
                    engine.embedding_model,
                )
            try:
                engine.load_documents_from_dir(documents_dir)
            except (OSError, RuntimeError, ValueError) as exc:
                logger.error("Failed to load documents: %s", exc)
            else:
                logger.info("Document loading completed successfully")

    thread = threading.Thread(target=run, name="document-loader", daemon=True)
    thread.start()
    return thread


def main(argv: list[str] | None = None) -> int:
    """Start the RAG server on stdin/stdout; returns the process exit code."""
    parser = argparse.ArgumentParser(
        prog="local-rag",
        description="Local retrieval-augmented search served as MCP tools over stdin/stdout.",
    )
    parser.parse_args(argv)

    dotenv_path = find_dotenv(usecwd=True)
    if not dotenv_path or not load_dotenv(dotenv_path):
        print("Warning: Could not load .env file", file=sys.stderr)

    try:
        setup_logging()
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    data_dir = get_data_dir()
    documents_dir = get_documents_dir()
    log_dir = get_log_dir()
    log_max_mb = get_log_max_mb()

    try:
        Path(data_dir).mkdir(parents=True, exist_ok=True)
        Path(documents_dir).mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    _start_log_cleanup(Path(log_dir) / LOG_FILE_NAME, log_max_mb)
    logger.info("Started automatic log cleanup task (max: %sMB)", log_max_mb)

    try:
        embedding_service = EmbeddingService.from_env()
    except OllamaError as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        reranker: RerankerService | None = RerankerService.from_env()
        logger.info("Reranker service initialized successfully")
    except OllamaError as exc:
        logger.warning(
            "Reranker service unavailable, will fall back to embedding scores only: %s", exc
        )
        reranker = None

    engine = RagEngine(data_dir, embedding_service, reranker)
    if engine.needs_reindex:
        logger.warning(
            "Embedding model changed to '%s'. Existing embeddings were cleared and a full "
            "reindex will start shortly.",
            engine.embedding_model,
        )

    lock = threading.Lock()
    _load_documents_in_background(engine, lock, documents_dir)

    logger.info("Starting MCP server (stdin/stdout mode)")
    logger.info("Data directory: %s", data_dir)
    logger.info("Documents directory: %s", documents_dir)
    logger.info(
        "Ollama Model: %s",
        os.environ.get("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text (default)"),
    )

    try:
        start_mcp_server(engine, lock)
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())