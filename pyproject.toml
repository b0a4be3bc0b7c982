[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "localrag"
version = "0.1.0"
description = "Local retrieval-augmented search over PDF documents with Ollama embeddings, served as MCP tools on stdin/stdout"
requires-python = ">=3.10"
keywords = ["rag", "embeddings", "pdf", "search", "mcp", "ollama", "bm25", "lsh"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Text Processing :: Indexing",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]
dependencies = [
    "httpx>=0.24",
    "cachetools>=5.0",
    "python-dotenv>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[project.scripts]
localrag = "localrag.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["localrag"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
