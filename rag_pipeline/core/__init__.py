"""Core infrastructure: configuration, logging, errors and Redis connections."""
