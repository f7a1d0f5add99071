"""
Tests for the retrieval-augmented chat assistant
"""
import asyncio

import pytest

from conftest import USER_ID, FakeEmbedder, ScriptedLLM, make_trade, no_sleep
from tradingjournal.dataflows.chat_assistant import CHAT_FAILURE_MESSAGE, ChatAssistant, sanitize_response
from tradingjournal.dataflows.embeddings import EmbeddingsService, generate_trade_content
from tradingjournal.exceptions import AIServiceError, ProviderError, ProviderTransientError


def _assistant(db, replies, embeddings=None):
    return ChatAssistant(USER_ID, db, ScriptedLLM(replies), embeddings, sleep=no_sleep)


def test_sanitize_response():
    assert sanitize_response('{"answer": 1}\nReal answer') == "Real answer"
    assert sanitize_response("Assistant: Hold winners longer.") == "Hold winners longer."
    assert sanitize_response("Look:\n```python\nprint(1)\n```\nDone") == "Look:\n\nDone"
    assert sanitize_response("One\n\n\n\nTwo") == "One\n\nTwo"
    assert sanitize_response("") == ""


def test_chat_stores_exchange(db):
    assistant = _assistant(db, ["Your win rate improved."])
    response = asyncio.run(assistant.chat("How am I doing?"))
    assert response == "Your win rate improved."

    rows = db.rows("ai_chat_history")
    assert len(rows) == 1
    assert rows[0]["user_id"] == USER_ID
    assert rows[0]["conversation_id"] == assistant.last_conversation_id
    assert rows[0]["message_order"] == 0


def test_followup_sends_history(db):
    assistant = _assistant(db, ["First answer", "Second answer"])
    asyncio.run(assistant.chat("First question"))
    conversation_id = assistant.last_conversation_id
    asyncio.run(assistant.chat("Second question", conversation_id=conversation_id))

    second_call = assistant.llm.calls[1]
    assert [t.message for t in second_call["history"]] == ["First question"]
    turns = asyncio.run(assistant.get_conversation(conversation_id))
    assert [t.message_order for t in turns] == [0, 1]


def test_history_is_limited_to_recent_turns(db):
    conversation_id = "conv-1"
    db.seed("ai_chat_history", [
        {"user_id": USER_ID, "conversation_id": conversation_id, "message": f"q{i}",
         "response": f"a{i}", "message_order": i, "context": {}}
        for i in range(8)
    ])
    assistant = _assistant(db, ["ok"])
    asyncio.run(assistant.chat("next", conversation_id=conversation_id))
    history = assistant.llm.calls[0]["history"]
    assert [t.message for t in history] == ["q3", "q4", "q5", "q6", "q7"]
    assert db.rows("ai_chat_history")[-1]["message_order"] == 8


def test_provider_failure_raises_user_message(db):
    assistant = _assistant(db, [ProviderError("model not found", status_code=404)])
    with pytest.raises(AIServiceError) as excinfo:
        asyncio.run(assistant.chat("hello"))
    assert str(excinfo.value) == CHAT_FAILURE_MESSAGE
    assert db.rows("ai_chat_history") == []


def test_transient_failure_is_retried(db):
    assistant = _assistant(db, [ProviderTransientError("503"), "Recovered"])
    assert asyncio.run(assistant.chat("hello")) == "Recovered"
    assert len(assistant.llm.calls) == 2


def test_empty_reply_fallback(db):
    assistant = _assistant(db, [""])
    assert asyncio.run(assistant.chat("hello")) == "No response generated"


def test_history_write_failure_still_answers(db):
    db.fail("ai_chat_history", "insert")
    assistant = _assistant(db, ["Still here"])
    assert asyncio.run(assistant.chat("hello")) == "Still here"


def test_retrieved_trades_reach_prompt(db):
    trade = make_trade(250, notes="Opening range breakout")
    db.seed("trades", [trade.to_row()])
    embeddings = EmbeddingsService(USER_ID, db, FakeEmbedder())
    asyncio.run(embeddings.index_trade(trade))

    assistant = _assistant(db, ["Nice trade"], embeddings)
    asyncio.run(assistant.chat(generate_trade_content(trade), context={"page": "journal"}))

    prompt = assistant.llm.calls[0]["system_prompt"]
    assert "I've found 1 similar trades and 0 relevant trading plans" in prompt
    assert "Opening range breakout" in prompt
    stored = db.rows("ai_chat_history")[0]["context"]
    assert stored["page"] == "journal"
    assert stored["trades"][0]["ticker"] == "ES"


def test_retrieval_honours_date_range(db):
    trade = make_trade(250)
    db.seed("trades", [trade.to_row()])
    embeddings = EmbeddingsService(USER_ID, db, FakeEmbedder())
    asyncio.run(embeddings.index_trade(trade))

    assistant = _assistant(db, ["ok"], embeddings)
    context = {"date_range": {"start": "2024-06-01", "end": "2024-06-30"}}
    asyncio.run(assistant.chat(generate_trade_content(trade), context=context))
    assert "similar trades" not in assistant.llm.calls[0]["system_prompt"]


def test_degraded_retrieval_still_answers(db):
    embeddings = EmbeddingsService(USER_ID, db, FakeEmbedder(fail=True))
    assistant = _assistant(db, ["General advice"], embeddings)
    assert asyncio.run(assistant.chat("What should I work on?")) == "General advice"


def test_list_and_delete_conversations(db):
    assistant = _assistant(db, ["a", "b", "c"])
    asyncio.run(assistant.chat("First topic"))
    first = assistant.last_conversation_id
    asyncio.run(assistant.chat("Follow up", conversation_id=first))
    asyncio.run(assistant.chat("Second topic"))
    second = assistant.last_conversation_id

    summaries = asyncio.run(assistant.list_conversations())
    assert [s["conversation_id"] for s in summaries] == [second, first]
    assert summaries[1]["title"] == "First topic"
    assert summaries[1]["turns"] == 2

    assert asyncio.run(assistant.delete_conversation(first))
    assert {r["conversation_id"] for r in db.rows("ai_chat_history")} == {second}
    assert any(r["event"] == "conversation_deleted" for r in db.rows("system_logs"))
