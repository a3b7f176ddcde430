"""Three-stage incremental pipeline for the RAG knowledge base.

Stage 1: Collection (clone) - Enumerates drive folders and fetches changed documents
Stage 2: Enrichment (clean) - Adds AI titles, summaries, keywords and categories, then splits
Stage 3: Indexing (upload) - Embeds documents and writes them to the vector index

A fingerprinted Redis cache sits beside every stage so unchanged work is skipped.
"""
