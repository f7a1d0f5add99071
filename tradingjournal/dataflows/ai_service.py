"""
Per-user AI session
Resolves the user's configured LLM provider, wires the embeddings indexer into
the chat assistant and insight generator, and exposes them behind one object.
Each user gets their own session; nothing is cached at module level.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

from tradingjournal.config.analysis_config import AI_CONFIG
from tradingjournal.database.db_service import get_user_ai_configs
from tradingjournal.database.models import AIConfig, AIInsight, ChatExchange, DegradedReason, Trade
from tradingjournal.dataflows.chat_assistant import ChatAssistant
from tradingjournal.dataflows.embeddings import EmbeddingsService
from tradingjournal.dataflows.insight_generator import InsightGenerator, InsightType
from tradingjournal.dataflows.llm_clients import BaseLLMClient, ProviderKind, create_llm_client
from tradingjournal.exceptions import AIServiceError, PersistenceError

logger = logging.getLogger(__name__)

INIT_FAILURE_MESSAGE = "Failed to initialize AI service"


def resolve_provider(config: Optional[AIConfig]) -> ProviderKind:
    """Configured provider if it is one we support, else the deployment default."""
    for candidate in ((config.provider if config else None), AI_CONFIG["default_provider"]):
        if not candidate:
            continue
        try:
            return ProviderKind(candidate)
        except ValueError:
            logger.warning("Unsupported AI provider %r; falling back", candidate)
    return ProviderKind.OPENAI


class AIService:
    """AI features for one user"""

    def __init__(self, user_id: str, supabase, llm: Optional[BaseLLMClient] = None,
                 embeddings: Optional[EmbeddingsService] = None, sleep=asyncio.sleep):
        self.user_id = user_id
        self.supabase = supabase
        self.llm = llm
        self.embeddings = embeddings
        self._sleep = sleep
        self.chat_assistant: Optional[ChatAssistant] = None
        self.insight_generator: Optional[InsightGenerator] = None

    @property
    def provider(self) -> Optional[ProviderKind]:
        return self.llm.kind if self.llm is not None else None

    @property
    def degraded_reason(self) -> Optional[DegradedReason]:
        """Why retrieval is unavailable, if it is."""
        if self.embeddings is None:
            return DegradedReason.NOT_CONFIGURED
        return self.embeddings.degraded_reason

    @property
    def is_ready(self) -> bool:
        return self.chat_assistant is not None and self.insight_generator is not None

    async def initialize(self) -> bool:
        if self.supabase is None:
            logger.error("Supabase not configured; AI service unavailable")
            return False

        if self.llm is None:
            try:
                configs = await get_user_ai_configs(self.supabase, self.user_id)
            except PersistenceError as e:
                logger.error("Error loading AI config for %s: %s", self.user_id, e)
                return False
            config = configs[0] if configs else None
            kind = resolve_provider(config)
            api_key = config.api_key if config and config.api_key and config.provider == kind.value else None
            model = config.model if config and config.provider == kind.value else None
            self.llm = create_llm_client(kind.value, api_key or os.getenv(kind.env_key), model)

        if not self.llm.initialize():
            logger.error("No usable %s credentials for user %s", self.llm.kind.value, self.user_id)
            return False

        if self.embeddings is None:
            self.embeddings = EmbeddingsService(self.user_id, self.supabase)
        if not await self.embeddings.initialize():
            logger.info("Retrieval disabled for %s: %s", self.user_id, self.embeddings.degraded_reason)

        self.chat_assistant = ChatAssistant(self.user_id, self.supabase, self.llm, self.embeddings, self._sleep)
        self.insight_generator = InsightGenerator(self.user_id, self.supabase, self.llm, self._sleep)
        return True

    async def _ensure_initialized(self) -> None:
        if self.is_ready:
            return
        if not await self.initialize():
            raise AIServiceError(INIT_FAILURE_MESSAGE)

    async def validate_api_key(self, api_key: str, provider: Optional[str] = None) -> bool:
        """Check a key for the given provider (default: the session's provider)."""
        if provider is not None or self.llm is None:
            client = create_llm_client(provider or AI_CONFIG["default_provider"], None)
        else:
            client = self.llm
        return await client.validate_api_key(api_key)

    async def chat(self, message: str, context: Optional[Dict[str, Any]] = None,
                   conversation_id: Optional[str] = None, message_order: Optional[int] = None) -> str:
        await self._ensure_initialized()
        return await self.chat_assistant.chat(message, context, conversation_id, message_order)

    async def generate_insights(self, trades: Sequence[Trade], insight_type) -> AIInsight:
        await self._ensure_initialized()
        return await self.insight_generator.generate_insights(trades, insight_type)

    async def get_conversation(self, conversation_id: str) -> List[ChatExchange]:
        await self._ensure_initialized()
        return await self.chat_assistant.get_conversation(conversation_id)

    async def list_conversations(self) -> List[Dict[str, Any]]:
        await self._ensure_initialized()
        return await self.chat_assistant.list_conversations()

    async def delete_conversation(self, conversation_id: str) -> bool:
        await self._ensure_initialized()
        return await self.chat_assistant.delete_conversation(conversation_id)

    async def list_insights(self, insight_type: Optional[InsightType] = None) -> List[AIInsight]:
        await self._ensure_initialized()
        return await self.insight_generator.list_insights(insight_type)

    async def delete_insight(self, insight_id: str) -> bool:
        await self._ensure_initialized()
        return await self.insight_generator.delete_insight(insight_id)


async def get_ai_service(user_id: str, supabase) -> AIService:
    """Create and initialize a session for the user, or raise AIServiceError once."""
    service = AIService(user_id, supabase)
    if not await service.initialize():
        raise AIServiceError(INIT_FAILURE_MESSAGE)
    return service
