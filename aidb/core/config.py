"""
AIDB Configuration Management

Centralized configuration for the schema engine with:
- Environment-based configuration
- Type-safe settings with Pydantic
- JSON file loading and saving
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional, Literal
from enum import Enum
import json

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for AIDB."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LLMProviderConfig(BaseModel):
    """Configuration for the LLM behind AI value generation."""
    enabled: bool = False  # build an adapter in Providers.from_config
    provider: Literal["openai", "anthropic", "local", "mock"] = "openai"
    model: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: int = 512
    temperature: float = 0.7
    timeout: float = 60.0
    max_retries: int = 3


class GenerationConfig(BaseModel):
    """Configuration for field value generation."""
    timeout: float = 30.0  # seconds per AI call
    on_failure: Literal["fallback", "raise"] = "fallback"
    default_array_count: int = 1
    seed: Optional[str] = None


class ResolutionConfig(BaseModel):
    """Configuration for relationship resolution and search."""
    fuzzy_threshold: float = 0.75
    search_mode: Literal["ordered", "parallel"] = "ordered"
    union_on_error: Literal["continue", "throw"] = "continue"
    search_limit: int = 10
    search_timeout: float = 10.0
    ranking: Literal["semantic", "hybrid"] = "semantic"
    rrf_k: int = 60
    fts_weight: float = 0.5
    semantic_weight: float = 0.5

    @field_validator("fuzzy_threshold")
    @classmethod
    def check_threshold(cls, v: float) -> float:
        """Thresholds are similarities in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"fuzzy_threshold must be between 0 and 1, got {v}")
        return v


class CascadeConfig(BaseModel):
    """Configuration for cascade generation."""
    max_depth: int = 3
    hard_max_depth: int = 10
    max_concurrency: int = 8


class EmbeddingConfig(BaseModel):
    """Configuration for the semantic provider."""
    provider: Literal["hashing", "sentence-transformers"] = "hashing"
    model: str = "all-MiniLM-L6-v2"
    dimension: int = 256
    device: str = "cpu"
    cache_enabled: bool = True


class AIDBConfig(BaseSettings):
    """
    Main AIDB Configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with AIDB_ (e.g., AIDB_LOG_LEVEL=DEBUG,
    AIDB_RESOLUTION__FUZZY_THRESHOLD=0.8).
    """

    log_level: LogLevel = LogLevel.INFO
    json_logs: bool = True

    llm: LLMProviderConfig = Field(default_factory=LLMProviderConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    resolution: ResolutionConfig = Field(default_factory=ResolutionConfig)
    cascade: CascadeConfig = Field(default_factory=CascadeConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)

    model_config = {
        "env_prefix": "AIDB_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        """Accept lower-case level names."""
        if isinstance(v, str):
            return v.upper()
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "AIDBConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def get_llm_api_key(self) -> Optional[str]:
        """Get the LLM API key from config or environment."""
        if self.llm.api_key:
            return self.llm.api_key

        env_keys = {
            "openai": "OPENAI_API_KEY",
            "anthropic": "ANTHROPIC_API_KEY",
        }

        env_var = env_keys.get(self.llm.provider)
        if env_var:
            return os.environ.get(env_var)

        return None


# Global configuration instance (lazy loaded)
_config: Optional[AIDBConfig] = None


def get_config() -> AIDBConfig:
    """Get the global AIDB configuration instance."""
    global _config
    if _config is None:
        _config = AIDBConfig()
    return _config


def set_config(config: AIDBConfig) -> None:
    """Set the global AIDB configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
