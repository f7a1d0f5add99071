"""
Tests for the embedding indexer and similarity search
"""
import asyncio

import pytest

from conftest import OTHER_USER_ID, USER_ID, FakeEmbedder, make_trade
from tradingjournal.config.analysis_config import EMBEDDING_CONFIG
from tradingjournal.database.models import DegradedReason, Trade, TradeSetup, TradingPlan
from tradingjournal.dataflows.embeddings import (
    EmbeddingsService,
    format_currency,
    generate_plan_content,
    generate_trade_content,
)
from tradingjournal.dataflows.llm_clients import OpenAIEmbedder


def _service(db, embedder=None):
    return EmbeddingsService(USER_ID, db, embedder or FakeEmbedder())


def _plan(db, date="2024-01-02", bias="Bullish above 5000"):
    plan = TradingPlan(date=date, user_id=USER_ID, market_bias=bias, key_levels=["5000", "5050"])
    db.seed("trading_plans", [plan.to_row()])
    plan.id = db.rows("trading_plans")[-1]["id"]
    return plan


def test_trade_content_format():
    trade = make_trade(-1250.5, hour=9, minute=30, contracts=2, notes="Chased the open", strategy_id="s-1")
    content = generate_trade_content(trade)
    assert "Direction: LONG" in content
    assert "Entry Time: 09:30:00" in content
    assert "Exit Time: 09:40:00" in content
    assert "Net P&L: -$1,250.50" in content
    assert "Notes: Chased the open" in content
    assert content.endswith("Has Strategy: Yes")
    assert generate_trade_content(trade) == content, "Content must be stable"


def test_plan_content_lists_setups():
    plan = TradingPlan(date="2024-01-02", market_bias="Bearish", key_levels=["4950"])
    setups = [TradeSetup(ticker="ES", direction="short", entry_price=4950, stop_loss=4960, target_price=4930)]
    content = generate_plan_content(plan, setups)
    assert "Market bias: Bearish" in content
    assert "ES short setup - Entry: 4950, Stop: 4960, Target: 4930" in content


def test_format_currency():
    assert format_currency(1234.5) == "$1,234.50"
    assert format_currency(None) == "$0.00"


def test_reindex_keeps_one_row(db):
    trade = make_trade(100)
    service = _service(db)
    assert asyncio.run(service.index_trade(trade))
    trade.notes = "Updated notes"
    assert asyncio.run(service.index_trade(trade))
    rows = db.rows("trade_embeddings")
    assert len(rows) == 1, "One live embedding per trade"
    assert "Updated notes" in rows[0]["content"]
    assert len(rows[0]["embedding"]) == 768


def test_index_rejects_incomplete_or_foreign_trade(db):
    service = _service(db)
    missing = asyncio.run(service.index_trade(Trade(ticker="ES", user_id=USER_ID)))
    assert not missing and missing.reason is DegradedReason.MISSING_FIELDS
    foreign = asyncio.run(service.index_trade(make_trade(10, user_id=OTHER_USER_ID)))
    assert foreign.reason is DegradedReason.MISSING_FIELDS
    assert db.rows("trade_embeddings") == []


def test_index_reports_embedding_failure(db):
    service = _service(db, FakeEmbedder(fail=True))
    result = asyncio.run(service.index_trade(make_trade(10)))
    assert not result
    assert result.reason is DegradedReason.EMBEDDING_FAILED
    assert service.degraded_reason is DegradedReason.EMBEDDING_FAILED


def test_index_reports_write_failure(db):
    db.fail("trade_embeddings", "insert")
    result = asyncio.run(_service(db).index_trade(make_trade(10)))
    assert result.reason is DegradedReason.WRITE_FAILED


def test_index_plan_hydration_failure(db):
    plan = _plan(db)
    db.fail("trade_plans", "select")
    result = asyncio.run(_service(db).index_plan(plan))
    assert result.reason is DegradedReason.HYDRATION_FAILED


def test_search_finds_indexed_trade(db):
    trades = [make_trade(100, ticker="ES", notes="clean breakout"), make_trade(-30, ticker="CL", day=1)]
    db.seed("trades", [t.to_row() for t in trades])
    service = _service(db)
    for trade in trades:
        asyncio.run(service.index_trade(trade))

    results = asyncio.run(service.search_trades_with_scores(generate_trade_content(trades[0])))
    assert results, "Exact content should clear the similarity threshold"
    best, score = results[0]
    assert best.id == trades[0].id
    assert score == pytest.approx(1.0)


def test_search_respects_date_range(db):
    trade = make_trade(100)
    db.seed("trades", [trade.to_row()])
    service = _service(db)
    asyncio.run(service.index_trade(trade))
    query = generate_trade_content(trade)
    assert asyncio.run(service.search_trades(query, date_range={"start": "2024-02-01"})) == []
    assert len(asyncio.run(service.search_trades(query, date_range={"start": "2024-01-01"}))) == 1


def test_search_with_no_trades_is_empty(db):
    assert asyncio.run(_service(db).search_trades("any question")) == []


def test_search_failures_return_empty(db):
    failing = _service(db, FakeEmbedder(fail=True))
    assert asyncio.run(failing.search_trades("question")) == []
    assert failing.degraded_reason is DegradedReason.EMBEDDING_FAILED

    db.fail("search_trade_embeddings", "rpc")
    service = _service(db)
    assert asyncio.run(service.search_trades("question")) == []
    assert service.degraded_reason is DegradedReason.SEARCH_FAILED


def test_search_is_owner_scoped(db):
    foreign = make_trade(100, user_id=OTHER_USER_ID)
    db.seed("trades", [foreign.to_row()])
    other = EmbeddingsService(OTHER_USER_ID, db, FakeEmbedder())
    asyncio.run(other.index_trade(foreign))
    assert asyncio.run(_service(db).search_trades(generate_trade_content(foreign))) == []


def test_search_plans_hydrates_setups(db):
    plan = _plan(db)
    db.seed("trade_plans", [{"trading_plan_id": plan.id, "ticker": "ES", "direction": "long",
                             "entry_price": 5000, "stop_loss": 4990, "target_price": 5020}])
    service = _service(db)
    assert asyncio.run(service.index_plan(plan))
    content = db.rows("plan_embeddings")[0]["content"]

    matches = asyncio.run(service.search_plans(content))
    assert len(matches) == 1
    assert matches[0].plan.id == plan.id
    assert matches[0].setups[0].ticker == "ES"


def test_backfill_is_idempotent(db):
    trades = [make_trade(10 * i, day=i) for i in range(1, 4)]
    db.seed("trades", [t.to_row() for t in trades])
    _plan(db)
    service = _service(db)

    summary = asyncio.run(service.backfill_embeddings(batch_size=2, pause_seconds=0))
    assert summary == {"trades_pending": 3, "trades_indexed": 3, "plans_pending": 1, "plans_indexed": 1}
    again = asyncio.run(service.backfill_embeddings(pause_seconds=0))
    assert again["trades_pending"] == 0 and again["plans_pending"] == 0
    assert len(db.rows("trade_embeddings")) == 3
    assert any(r["event"] == "embeddings_backfilled" for r in db.rows("system_logs"))


def test_backfill_throttles_in_fixed_batches(db):
    db.seed("trades", [make_trade(10, day=i).to_row() for i in range(11)])
    pauses = []

    async def record_pause(seconds):
        pauses.append((seconds, len(db.rows("trade_embeddings"))))

    service = EmbeddingsService(USER_ID, db, FakeEmbedder(), sleep=record_pause)
    summary = asyncio.run(service.backfill_embeddings())
    assert summary["trades_indexed"] == 11
    assert pauses == [(1.0, 5), (1.0, 10)], "Five per batch with a pause between batches only"


def test_delete_embedding(db):
    trade = make_trade(10)
    service = _service(db)
    asyncio.run(service.index_trade(trade))
    assert asyncio.run(service.delete_embedding(trade.id))
    assert db.rows("trade_embeddings") == []
    db.fail("trade_embeddings", "delete")
    assert asyncio.run(service.delete_embedding(trade.id)) is False


def test_initialize_without_database():
    service = EmbeddingsService(USER_ID, None)
    assert asyncio.run(service.initialize()) is False
    assert service.degraded_reason is DegradedReason.DATABASE_UNAVAILABLE


def test_initialize_without_credentials(db, monkeypatch):
    monkeypatch.setitem(EMBEDDING_CONFIG, "provider", "openai")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    service = EmbeddingsService(USER_ID, db)
    assert asyncio.run(service.initialize()) is False
    assert service.degraded_reason is DegradedReason.NOT_CONFIGURED
    result = asyncio.run(service.index_trade(make_trade(10)))
    assert result.reason is DegradedReason.NOT_CONFIGURED


def test_initialize_with_user_openai_key(db, monkeypatch):
    monkeypatch.setitem(EMBEDDING_CONFIG, "provider", "openai")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    db.seed("user_ai_configs", [{"user_id": USER_ID, "provider": "openai", "api_key": "sk-user",
                                 "updated_at": "2024-01-01T00:00:00+00:00"}])
    service = EmbeddingsService(USER_ID, db)
    assert asyncio.run(service.initialize()) is True
    assert isinstance(service.embedder, OpenAIEmbedder)
    assert service.degraded_reason is None
