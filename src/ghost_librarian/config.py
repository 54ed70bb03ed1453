"""Validated configuration for the distillation pipeline and the surrounding tooling."""

from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dedup import DEFAULT_DEDUP_THRESHOLD
from .models import DuplicatePolicy
from .packer import DEFAULT_CONTEXT_BUDGET
from .ranker import DEFAULT_KEYWORD_WEIGHT, DEFAULT_VECTOR_WEIGHT
from .search import DEFAULT_TOP_K
from .text import DEFAULT_CHARS_PER_TOKEN
from .vectors import DEFAULT_DIMENSION

load_dotenv()

DEFAULT_STORE_PATH = Path.home() / ".ghost_librarian" / "store.json"


class DistillationConfig(BaseModel):
    """Tunable knobs of the rank -> dedup -> compress -> pack pipeline."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    top_k: int = Field(default=DEFAULT_TOP_K, ge=1)
    context_budget: int = Field(default=DEFAULT_CONTEXT_BUDGET, ge=1)
    vector_weight: float = Field(default=DEFAULT_VECTOR_WEIGHT, ge=0.0, le=1.0)
    keyword_weight: float = Field(default=DEFAULT_KEYWORD_WEIGHT, ge=0.0, le=1.0)
    dedup_threshold: float = Field(default=DEFAULT_DEDUP_THRESHOLD, ge=-1.0, le=1.0)
    search_shards: int | None = Field(default=None, ge=1)
    chars_per_token: int = Field(default=DEFAULT_CHARS_PER_TOKEN, ge=1)

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "DistillationConfig":
        if not math.isclose(self.vector_weight + self.keyword_weight, 1.0, abs_tol=1e-9):
            raise ValueError(
                f"vector_weight + keyword_weight must equal 1.0 (got {self.vector_weight} + {self.keyword_weight})"
            )
        return self

    @classmethod
    def from_env(cls, **overrides: object) -> "DistillationConfig":
        values = _collect_env(
            {
                "top_k": "GHOST_TOP_K",
                "context_budget": "GHOST_CONTEXT_BUDGET",
                "vector_weight": "GHOST_VECTOR_WEIGHT",
                "keyword_weight": "GHOST_KEYWORD_WEIGHT",
                "dedup_threshold": "GHOST_DEDUP_THRESHOLD",
                "search_shards": "GHOST_SEARCH_SHARDS",
                "chars_per_token": "GHOST_CHARS_PER_TOKEN",
            }
        )
        # one weight given alone implies the other
        if "vector_weight" in values and "keyword_weight" not in values:
            values["keyword_weight"] = 1.0 - float(values["vector_weight"])
        elif "keyword_weight" in values and "vector_weight" not in values:
            values["vector_weight"] = 1.0 - float(values["keyword_weight"])
        values.update({key: value for key, value in overrides.items() if value is not None})
        return _validated(cls, values)


class LibrarianSettings(BaseModel):
    """Locations, providers and policies used by the command-line front end."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    store_path: Path = DEFAULT_STORE_PATH
    dimension: int = Field(default=DEFAULT_DIMENSION, ge=1)
    chunk_size: int = Field(default=2000, ge=100)
    embed_provider: Literal["fastembed", "ollama"] = "fastembed"
    embed_model: str | None = None
    generation_provider: Literal["ollama", "openai"] = "ollama"
    ollama_host: str = "http://localhost"
    ollama_port: int = Field(default=11434, ge=1, le=65535)
    model: str = "llama3"
    openai_base_url: str | None = None
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.REPLACE
    request_timeout: float = Field(default=120.0, gt=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        return value.strip().upper() if isinstance(value, str) else value

    @property
    def ollama_url(self) -> str:
        return f"{self.ollama_host.rstrip('/')}:{self.ollama_port}"

    @classmethod
    def from_env(cls, **overrides: object) -> "LibrarianSettings":
        values = _collect_env(
            {
                "store_path": "GHOST_STORE_PATH",
                "dimension": "GHOST_EMBED_DIMENSION",
                "chunk_size": "GHOST_CHUNK_SIZE",
                "embed_provider": "GHOST_EMBED_PROVIDER",
                "embed_model": "GHOST_EMBED_MODEL",
                "generation_provider": "GHOST_LLM_PROVIDER",
                "ollama_host": "GHOST_OLLAMA_HOST",
                "ollama_port": "GHOST_OLLAMA_PORT",
                "model": "GHOST_MODEL",
                "openai_base_url": "GHOST_OPENAI_BASE_URL",
                "duplicate_policy": "GHOST_DUPLICATE_POLICY",
                "request_timeout": "GHOST_REQUEST_TIMEOUT",
                "log_level": "GHOST_LOG_LEVEL",
            }
        )
        for key in ("embed_provider", "generation_provider", "duplicate_policy"):
            if key in values:
                values[key] = values[key].lower()
        if "store_path" in values:
            values["store_path"] = Path(values["store_path"]).expanduser()
        values.update({key: value for key, value in overrides.items() if value is not None})
        return _validated(cls, values)


def _collect_env(mapping: dict[str, str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for field_name, variable in mapping.items():
        raw = os.getenv(variable)
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()
    return values


def _validated(model: type[BaseModel], values: dict[str, object]):
    try:
        return model.model_validate(values)
    except ValidationError as exc:
        raise ValueError(f"Invalid {model.__name__}: {exc}") from exc


__all__ = ["DEFAULT_STORE_PATH", "DistillationConfig", "LibrarianSettings"]
