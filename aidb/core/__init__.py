"""
AIDB Core

Configuration, logging and the LLM client shared by the engine.
"""

from aidb.core.config import (
    AIDBConfig,
    CascadeConfig,
    EmbeddingConfig,
    GenerationConfig,
    LLMProviderConfig,
    ResolutionConfig,
    get_config,
    reset_config,
    set_config,
)
from aidb.core.logging import setup_logging

__all__ = [
    "AIDBConfig",
    "CascadeConfig",
    "EmbeddingConfig",
    "GenerationConfig",
    "LLMProviderConfig",
    "ResolutionConfig",
    "get_config",
    "reset_config",
    "set_config",
    "setup_logging",
]
