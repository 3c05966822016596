"""Search and embedding tools used by the research loop."""

from researcher.tools.embedding_client import EmbeddingClient
from researcher.tools.search_executor import SearchExecutor

__all__ = ["EmbeddingClient", "SearchExecutor"]
