"""Search index collaborator."""
