"""Pipeline configuration: defaults, environment loading and validation."""

import os
import logging
from dataclasses import dataclass, field, fields, replace, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from primer.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "PRIMER_"

# Output dimensions of the supported OpenAI embedding models
MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

EMBEDDING_PROVIDERS = ("openai", "local")
HEADING_MATCH_MODES = ("anchored", "substring")


@dataclass
class PipelineConfig:
    """Settings shared by every pipeline component.

    Constructed once (usually by ``load_pipeline_config``) and handed to each
    component's constructor.
    """
    # Embedding
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    batch_size: int = 100
    max_concurrent_requests: int = 5
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds, doubled on each retry
    batch_delay: float = 0.1  # seconds between batch dispatches
    max_input_tokens: int = 8191
    openai_api_key: Optional[str] = field(default=None, repr=False)

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_size: int = 300

    # Structure detection
    detect_structure: bool = True
    preserve_formatting: bool = True
    extract_keywords: bool = True
    min_chapter_confidence: float = 0.7
    structure_quality_threshold: float = 0.3
    heading_match: str = "anchored"

    # Vector index
    index_path: Optional[Path] = Path("./index")
    upsert_batch_size: int = 100

    def validate(self) -> None:
        """Raise ConfigurationError if any setting is out of range."""
        issues = []

        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            issues.append(f"embedding_provider must be one of {EMBEDDING_PROVIDERS}")
        if self.heading_match not in HEADING_MATCH_MODES:
            issues.append(f"heading_match must be one of {HEADING_MATCH_MODES}")

        for name in ("embedding_dimensions", "batch_size", "max_concurrent_requests",
                     "max_retries", "chunk_size", "upsert_batch_size"):
            if getattr(self, name) < 1:
                issues.append(f"{name} must be a positive integer")

        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            issues.append("chunk_overlap must be >= 0 and smaller than chunk_size")
        if self.min_chunk_size < 0 or self.min_chunk_size > self.chunk_size:
            issues.append("min_chunk_size must be between 0 and chunk_size")
        if self.retry_delay < 0 or self.batch_delay < 0:
            issues.append("retry_delay and batch_delay must not be negative")

        for name in ("min_chapter_confidence", "structure_quality_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                issues.append(f"{name} must be within [0, 1]")

        if issues:
            raise ConfigurationError("; ".join(issues))

    def to_dict(self) -> Dict[str, Any]:
        """Settings as plain values, with the API key masked."""
        data = asdict(self)
        data["index_path"] = str(self.index_path) if self.index_path else None
        if data.get("openai_api_key"):
            data["openai_api_key"] = "***"
        return data


def _coerce(raw: Any, default: Any) -> Any:
    """Convert an env/override value to the type of the field default."""
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, Path):
        return Path(raw) if raw not in ("", None) else None
    return raw


def load_pipeline_config(overrides: Optional[Dict[str, Any]] = None) -> PipelineConfig:
    """
    Build a PipelineConfig from defaults, PRIMER_* environment variables and overrides.

    Args:
        overrides: Explicit values that win over the environment (e.g. CLI settings)

    Returns:
        A validated PipelineConfig
    """
    load_dotenv()

    defaults = PipelineConfig()
    values: Dict[str, Any] = {}

    for f in fields(PipelineConfig):
        env_value = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
        if env_value is not None:
            values[f.name] = env_value

    # The OpenAI SDK's own variable is honoured as well
    if "openai_api_key" not in values and os.getenv("OPENAI_API_KEY"):
        values["openai_api_key"] = os.getenv("OPENAI_API_KEY")

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if not hasattr(defaults, key):
            logger.warning(f"Ignoring unknown configuration key: {key}")
            continue
        values[key] = value

    if "embedding_model" in values and "embedding_dimensions" not in values:
        values["embedding_dimensions"] = MODEL_DIMENSIONS.get(
            values["embedding_model"], defaults.embedding_dimensions
        )

    try:
        converted = {
            key: _coerce(value, getattr(defaults, key)) if key != "openai_api_key" else value
            for key, value in values.items()
        }
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e

    config = replace(defaults, **converted)
    config.validate()
    return config
