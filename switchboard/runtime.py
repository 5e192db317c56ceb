"""Application runtime composition helpers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request

from switchboard.config import Config, OpenAIConfig
from switchboard.config import config as default_config
from switchboard.core.registry import AgentRegistry
from switchboard.orchestration.requests import RequestRegistry
from switchboard.services.file_storage import create_file_storage
from switchboard.services.llm import LLMPool, ModelClient, OpenAIModelClient
from switchboard.services.resilience import ResiliencePolicy
from switchboard.services.storage import KeyedLock, StorageProvider, create_memory_storage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppContext:
    """Everything a request handler needs, owned by the process entry point."""

    config: Config
    registry: AgentRegistry
    storage: StorageProvider
    model: ModelClient
    resilience: ResiliencePolicy
    requests: RequestRegistry = field(default_factory=RequestRegistry)
    conversation_locks: KeyedLock = field(default_factory=KeyedLock)
    pool: Optional[LLMPool] = None

    @property
    def max_delegation_depth(self) -> int:
        return self.config.max_delegation_depth

    @property
    def default_max_steps(self) -> int:
        return self.config.default_max_steps

    async def load_prompt_overrides(self) -> None:
        overrides = await self.storage.prompts.load_overrides()
        self.registry.load_prompt_overrides({name: o.prompt for name, o in overrides.items()})

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()


def build_app_context(
    cfg: Optional[Config] = None,
    *,
    model: Optional[ModelClient] = None,
    storage: Optional[StorageProvider] = None,
    registry: Optional[AgentRegistry] = None,
) -> AppContext:
    cfg = cfg or default_config
    pool = None
    if model is None:
        openai_config = cfg.openai
        if openai_config is None:
            logger.warning("OPENAI_API_KEY is not set; model calls will fail until it is configured")
            openai_config = OpenAIConfig(api_key="")
        pool = LLMPool(openai_config)
        model = OpenAIModelClient(pool)

    if storage is None:
        storage = create_file_storage(cfg.data_dir) if cfg.data_dir else create_memory_storage()

    return AppContext(
        config=cfg,
        registry=registry or AgentRegistry(),
        storage=storage,
        model=model,
        resilience=ResiliencePolicy.from_config(cfg.resilience),
        pool=pool,
    )


def get_app_context(request: Request) -> AppContext:
    return request.app.state.context
