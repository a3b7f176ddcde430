"""Fixtures for the CLI tests."""

import logging
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep CLI commands from configuring process logging or opening log files."""
    with patch(
        "rag_pipeline.cli.common.setup_logging",
        return_value=logging.getLogger("tests.cli"),
    ) as mock_setup:
        yield mock_setup
