"""Document source clients and content extractors."""
