"""Command-line interface for the RAG pipeline."""
