"""Local retrieval-augmented search over PDF documents with Ollama embeddings, served as MCP tools."""

__version__ = "0.1.0"