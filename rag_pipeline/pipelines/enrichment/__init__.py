"""AI enrichment collaborators: LLM/embedding client and content splitter."""
