"""
Shared fixtures for AIDB tests.
"""

import pytest


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Each test starts from the default configuration."""
    from aidb.core.config import reset_config

    for name in ("AIDB_LOG_LEVEL", "AIDB_GENERATION__SEED", "AIDB_RESOLUTION__FUZZY_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)

    reset_config()
    yield
    reset_config()


@pytest.fixture
def blog_schema():
    """Blog -> Topic -> Post with explicit and declared backrefs."""
    return {
        "Blog": {"title": "string", "topics": "[Topic.blog]"},
        "Topic": {"name": "string", "posts": "->Post"},
        "Post": {"title": "string", "topic": "<-Topic"},
    }
