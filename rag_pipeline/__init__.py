"""RAG Pipeline - incremental document collection, AI enrichment and vector indexing."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("rag-pipeline")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for development without install
