"""
Shared pytest setup for the chaos scan test suite.

Run from the project root:
    python -m pytest tests/ -v
"""

import os
import sys

import pytest

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config


@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()
