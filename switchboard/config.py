"""Configuration management for the switchboard runtime."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class OpenAIConfig:
    """OpenAI-compatible model endpoint configuration."""

    api_key: str
    base_url: Optional[str] = None
    default_model: str = "gpt-4o-mini"
    max_concurrent: int = 50


@dataclass(frozen=True)
class ResilienceConfig:
    """Retry and fallback settings for upstream model calls."""

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter_factor: float = 0.2
    fallback_model: Optional[str] = None


@dataclass(frozen=True)
class CompactionConfig:
    """Conversation compaction settings."""

    enabled: bool = True
    threshold: int = 20
    preserve_recent: int = 4
    prompt: Optional[str] = None
    model: Optional[str] = None


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    openai: Optional[OpenAIConfig] = None
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    max_delegation_depth: int = 3
    default_max_steps: int = 5
    data_dir: Optional[str] = None
    log_level: str = "INFO"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        openai_config = None
        api_key = os.getenv("OPENAI_API_KEY")
        if api_key:
            openai_config = OpenAIConfig(
                api_key=api_key,
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                default_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
                max_concurrent=int(os.getenv("OPENAI_MAX_CONCURRENT", "50")),
            )

        resilience = ResilienceConfig(
            max_retries=int(os.getenv("SWITCHBOARD_MAX_RETRIES", "3")),
            base_delay_ms=int(os.getenv("SWITCHBOARD_BASE_DELAY_MS", "1000")),
            max_delay_ms=int(os.getenv("SWITCHBOARD_MAX_DELAY_MS", "30000")),
            jitter_factor=float(os.getenv("SWITCHBOARD_JITTER_FACTOR", "0.2")),
            fallback_model=os.getenv("SWITCHBOARD_FALLBACK_MODEL") or None,
        )

        compaction = CompactionConfig(
            enabled=_env_bool("SWITCHBOARD_COMPACTION_ENABLED", True),
            threshold=int(os.getenv("SWITCHBOARD_COMPACTION_THRESHOLD", "20")),
            preserve_recent=int(os.getenv("SWITCHBOARD_COMPACTION_PRESERVE_RECENT", "4")),
            prompt=os.getenv("SWITCHBOARD_COMPACTION_PROMPT") or None,
            model=os.getenv("SWITCHBOARD_COMPACTION_MODEL") or None,
        )

        return cls(
            openai=openai_config,
            resilience=resilience,
            compaction=compaction,
            max_delegation_depth=int(os.getenv("SWITCHBOARD_MAX_DEPTH", "3")),
            default_max_steps=int(os.getenv("SWITCHBOARD_MAX_STEPS", "5")),
            data_dir=os.getenv("SWITCHBOARD_DATA_DIR") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            environment=os.getenv("ENVIRONMENT", "development"),
        )


# Global config instance
config = Config.from_env()
