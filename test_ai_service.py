"""
Tests for the per-user AI session
"""
import asyncio

import pytest

from conftest import USER_ID, FakeEmbedder, ScriptedLLM, make_trade, no_sleep
from tradingjournal.config.analysis_config import AI_CONFIG, EMBEDDING_CONFIG
from tradingjournal.database.models import AIConfig, DegradedReason
from tradingjournal.dataflows.ai_service import INIT_FAILURE_MESSAGE, AIService, get_ai_service, resolve_provider
from tradingjournal.dataflows.embeddings import EmbeddingsService
from tradingjournal.dataflows.llm_clients import GroqClient, ProviderKind
from tradingjournal.exceptions import AIServiceError, APIKeyValidationError


@pytest.fixture
def no_env_keys(monkeypatch):
    for name in ("OPENAI_API_KEY", "GROQ_API_KEY", "GEMINI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setitem(EMBEDDING_CONFIG, "provider", "openai")
    monkeypatch.setitem(AI_CONFIG, "default_provider", "openai")


def test_resolve_provider():
    assert resolve_provider(AIConfig(provider="groq")) is ProviderKind.GROQ
    assert resolve_provider(AIConfig(provider="anthropic")) is ProviderKind.OPENAI
    assert resolve_provider(None) is ProviderKind.OPENAI


def test_no_provider_fails_once_and_writes_nothing(db, no_env_keys):
    service = AIService(USER_ID, db, sleep=no_sleep)
    with pytest.raises(AIServiceError) as excinfo:
        asyncio.run(service.chat("hello"))
    assert str(excinfo.value) == INIT_FAILURE_MESSAGE
    assert db.rows("ai_chat_history") == []
    assert not service.is_ready


def test_get_ai_service_without_database():
    with pytest.raises(AIServiceError):
        asyncio.run(get_ai_service(USER_ID, None))


def test_groq_config_selects_groq(db, no_env_keys):
    db.seed("user_ai_configs", [{"user_id": USER_ID, "provider": "groq", "api_key": "gsk_test",
                                 "model": "llama-3.1-8b-instant", "updated_at": "2024-01-01T00:00:00+00:00"}])
    service = asyncio.run(get_ai_service(USER_ID, db))
    assert service.provider is ProviderKind.GROQ
    assert isinstance(service.llm, GroqClient)
    assert service.llm.model == "llama-3.1-8b-instant"
    assert service.degraded_reason is DegradedReason.NOT_CONFIGURED, "No OpenAI key means no retrieval"


def test_sessions_are_per_user(db, no_env_keys):
    db.seed("user_ai_configs", [{"user_id": USER_ID, "provider": "groq", "api_key": "gsk_test",
                                 "updated_at": "2024-01-01T00:00:00+00:00"}])
    assert asyncio.run(get_ai_service(USER_ID, db)).provider is ProviderKind.GROQ
    with pytest.raises(AIServiceError):
        asyncio.run(get_ai_service("someone-else", db))


def test_invalid_key_prefix(db):
    service = AIService(USER_ID, db)
    with pytest.raises(APIKeyValidationError) as excinfo:
        asyncio.run(service.validate_api_key("not-a-key", provider="openai"))
    assert str(excinfo.value) == "Invalid API key"
    with pytest.raises(APIKeyValidationError):
        asyncio.run(service.validate_api_key("sk-looks-like-openai", provider="groq"))


def test_injected_clients_end_to_end(db):
    llm = ScriptedLLM(["Keep your stops tight.", '{"title": "t", "description": "d", '
                                                   '"metrics": {"strengths": ["s"]}, "recommendations": ["r"]}'])
    embeddings = EmbeddingsService(USER_ID, db, FakeEmbedder())
    service = AIService(USER_ID, db, llm=llm, embeddings=embeddings, sleep=no_sleep)

    assert asyncio.run(service.chat("Any advice?")) == "Keep your stops tight."
    insight = asyncio.run(service.generate_insights([make_trade(50)], "risk"))
    assert insight.content["recommendations"] == ["r"]
    assert service.degraded_reason is None

    conversations = asyncio.run(service.list_conversations())
    assert len(conversations) == 1
    turns = asyncio.run(service.get_conversation(conversations[0]["conversation_id"]))
    assert turns[0].response == "Keep your stops tight."
    assert len(asyncio.run(service.list_insights())) == 1
