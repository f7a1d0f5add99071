"""
Embedding indexer for trades and trading plans
Keeps one live embedding per (user, entity) in the Supabase pgvector tables and
answers similarity searches through the search_* RPCs. Embedding capability is
optional: nothing here raises to the caller; failures are logged and surfaced
as a DegradedReason.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from tradingjournal.config.analysis_config import EMBEDDING_CONFIG
from tradingjournal.database.db_service import (
    get_trading_plan_setups,
    get_user_ai_configs,
    get_user_trades,
    log_event,
    run_query,
)
from tradingjournal.database.models import (
    DegradedReason,
    SourceKind,
    Trade,
    TradeSetup,
    TradingPlan,
    utc_now,
)
from tradingjournal.dataflows.llm_clients import BaseEmbedder, GeminiEmbedder, OpenAIEmbedder
from tradingjournal.dataflows.trade_metrics import trade_net_profit
from tradingjournal.exceptions import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class IndexResult:
    """Outcome of an index call; falsy when the entity was not indexed."""

    ok: bool
    entity_id: Optional[str] = None
    reason: Optional[DegradedReason] = None

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class PlanMatch:
    plan: TradingPlan
    setups: List[TradeSetup] = field(default_factory=list)
    score: float = 0.0


def format_currency(value: Optional[float]) -> str:
    amount = float(value or 0.0)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def generate_trade_content(trade: Trade) -> str:
    """Canonical text summary of a trade, stable for identical input."""
    entry = trade.entry_datetime
    exit_ = trade.exit_datetime
    parts = [
        f"Date: {trade.date}",
        f"Ticker: {trade.ticker}",
        f"Direction: {(trade.direction or '').upper()}",
        f"Contracts: {trade.contracts:g}",
        f"Entry Time: {entry.strftime('%H:%M:%S') if entry else 'N/A'}",
        f"Exit Time: {exit_.strftime('%H:%M:%S') if exit_ else 'N/A'}",
        f"P&L: {format_currency(trade.profit_loss)}",
        f"Net P&L: {format_currency(trade_net_profit(trade))}",
    ]
    if trade.notes:
        parts.append(f"Notes: {trade.notes}")
    if trade.strategy_id:
        parts.append("Has Strategy: Yes")
    return "\n".join(parts)


def generate_plan_content(plan: TradingPlan, setups: Sequence[TradeSetup]) -> str:
    parts = [f"Trading plan for {plan.date}"]
    if plan.market_bias:
        parts.append(f"Market bias: {plan.market_bias}")
    if plan.key_levels:
        parts.append(f"Key levels: {', '.join(plan.key_levels)}")
    if plan.news_impact:
        parts.append(f"News impact: {plan.news_impact}")
    if plan.max_daily_loss:
        parts.append(f"Max daily loss: {plan.max_daily_loss:g}")
    if setups:
        parts.append("Trade setups:")
        for setup in setups:
            parts.append(
                f"{setup.ticker} {setup.direction} setup - Entry: {setup.entry_price:g}, "
                f"Stop: {setup.stop_loss:g}, Target: {setup.target_price:g}"
            )
    return "\n".join(parts)


class EmbeddingsService:
    """Per-user embedding indexer and similarity search"""

    def __init__(self, user_id: str, supabase, embedder: Optional[BaseEmbedder] = None, sleep=asyncio.sleep):
        self.user_id = user_id
        self.supabase = supabase
        self.embedder = embedder
        self._sleep = sleep
        self.degraded_reason: Optional[DegradedReason] = None

    def _degrade(self, reason: DegradedReason) -> None:
        self.degraded_reason = reason

    async def initialize(self) -> bool:
        """Load embedding credentials. Returns False instead of raising."""
        if self.supabase is None:
            logger.warning("Supabase not configured; embeddings disabled")
            self._degrade(DegradedReason.DATABASE_UNAVAILABLE)
            return False
        if self.embedder is not None:
            self.degraded_reason = None
            return True

        provider = EMBEDDING_CONFIG["provider"]
        try:
            if provider == "gemini":
                api_key = os.getenv("GEMINI_API_KEY")
                if api_key:
                    self.embedder = GeminiEmbedder(api_key)
            else:
                api_key = await self._user_openai_key() or os.getenv("OPENAI_API_KEY")
                if api_key:
                    self.embedder = OpenAIEmbedder(api_key)
        except Exception as e:
            logger.warning("Could not initialize %s embedder: %s", provider, e)
            self.embedder = None

        if self.embedder is None:
            logger.info("No embedding configuration found for user %s; embeddings disabled", self.user_id)
            self._degrade(DegradedReason.NOT_CONFIGURED)
            return False
        self.degraded_reason = None
        return True

    async def _user_openai_key(self) -> Optional[str]:
        try:
            configs = await get_user_ai_configs(self.supabase, self.user_id)
        except PersistenceError as e:
            logger.warning("Could not read AI config for embeddings: %s", e)
            return None
        for config in configs:
            if config.provider == "openai" and config.api_key:
                return config.api_key
        return None

    async def _ready(self) -> bool:
        if self.embedder is not None and self.supabase is not None:
            return True
        return await self.initialize()

    # --------------------------------------------------------------------- #
    # Indexing
    # --------------------------------------------------------------------- #
    async def _upsert(self, kind: SourceKind, entity_id: str, content: str) -> IndexResult:
        try:
            vector = await self.embedder.embed(content)
        except Exception as e:
            logger.warning("Embedding request for %s %s failed: %s", kind.value, entity_id, e)
            self._degrade(DegradedReason.EMBEDDING_FAILED)
            return IndexResult(False, entity_id, DegradedReason.EMBEDDING_FAILED)

        table = kind.embedding_table
        try:
            existing = await run_query(
                self.supabase.table(table)
                .select("id")
                .eq("user_id", self.user_id)
                .eq(kind.id_column, entity_id)
                .limit(1),
                table,
                "select",
            )
            if existing:
                await run_query(
                    self.supabase.table(table)
                    .update({"content": content, "embedding": vector, "updated_at": utc_now().isoformat()})
                    .eq("id", existing[0]["id"]),
                    table,
                    "update",
                )
            else:
                await run_query(
                    self.supabase.table(table).insert({
                        "user_id": self.user_id,
                        kind.id_column: entity_id,
                        "content": content,
                        "embedding": vector,
                    }),
                    table,
                    "insert",
                )
        except PersistenceError as e:
            logger.error("Failed to store %s embedding for %s: %s", kind.value, entity_id, e)
            self._degrade(DegradedReason.WRITE_FAILED)
            return IndexResult(False, entity_id, DegradedReason.WRITE_FAILED)
        return IndexResult(True, entity_id)

    async def index_trade(self, trade: Trade) -> IndexResult:
        if not trade.id or not trade.user_id or trade.user_id != self.user_id:
            logger.error("Missing required trade data: id=%s user_id=%s", trade.id, trade.user_id)
            return IndexResult(False, trade.id, DegradedReason.MISSING_FIELDS)
        if not await self._ready():
            return IndexResult(False, trade.id, self.degraded_reason)
        return await self._upsert(SourceKind.TRADE, trade.id, generate_trade_content(trade))

    async def index_plan(self, plan: TradingPlan, setups: Optional[Sequence[TradeSetup]] = None) -> IndexResult:
        if not plan.id or not plan.user_id or plan.user_id != self.user_id:
            logger.error("Missing required plan data: id=%s user_id=%s", plan.id, plan.user_id)
            return IndexResult(False, plan.id, DegradedReason.MISSING_FIELDS)
        if not await self._ready():
            return IndexResult(False, plan.id, self.degraded_reason)
        if setups is None:
            try:
                setups = await get_trading_plan_setups(self.supabase, plan.id)
            except PersistenceError as e:
                logger.warning("Could not load setups for plan %s: %s", plan.id, e)
                return IndexResult(False, plan.id, DegradedReason.HYDRATION_FAILED)
        return await self._upsert(SourceKind.PLAN, plan.id, generate_plan_content(plan, setups))

    # --------------------------------------------------------------------- #
    # Search
    # --------------------------------------------------------------------- #
    async def _nearest(self, kind: SourceKind, query: str, threshold: float, limit: int) -> Dict[str, float]:
        """Entity id -> similarity for the nearest neighbours; raises on failure."""
        try:
            vector = await self.embedder.embed(query)
        except Exception:
            self._degrade(DegradedReason.EMBEDDING_FAILED)
            raise
        try:
            rows = await run_query(
                self.supabase.rpc(kind.search_rpc, {
                    "query_embedding": vector,
                    "match_threshold": threshold,
                    "match_count": limit,
                    "user_id_input": self.user_id,
                }),
                kind.embedding_table,
                "search",
            )
        except PersistenceError:
            self._degrade(DegradedReason.SEARCH_FAILED)
            raise
        scores: Dict[str, float] = {}
        for row in rows:
            entity_id = row.get(kind.id_column)
            if entity_id is None:
                continue
            scores[str(entity_id)] = float(row.get("similarity", row.get("score", 0.0)) or 0.0)
        return scores

    async def search_trades_with_scores(
        self,
        query: str,
        threshold: float = EMBEDDING_CONFIG["similarity_threshold"],
        limit: int = 5,
        date_range: Optional[Dict[str, str]] = None,
    ) -> List[Tuple[Trade, float]]:
        """Similar trades with their similarity, best first. Returns [] on any failure."""
        try:
            if not await self._ready():
                return []
            scores = await self._nearest(SourceKind.TRADE, query, threshold, limit)
            if not scores:
                return []
            try:
                trades = await get_user_trades(self.supabase, self.user_id, ids=scores.keys(),
                                               date_range=date_range)
            except PersistenceError:
                self._degrade(DegradedReason.HYDRATION_FAILED)
                raise
            ranked = [(t, scores.get(t.id, 0.0)) for t in trades]
            ranked.sort(key=lambda pair: pair[1], reverse=True)
            return ranked
        except Exception as e:
            logger.warning("Trade similarity search failed: %s", e)
            return []

    async def search_trades(
        self,
        query: str,
        threshold: float = EMBEDDING_CONFIG["similarity_threshold"],
        limit: int = 5,
        date_range: Optional[Dict[str, str]] = None,
    ) -> List[Trade]:
        results = await self.search_trades_with_scores(query, threshold, limit, date_range)
        return [trade for trade, _ in results]

    async def search_plans(
        self,
        query: str,
        threshold: float = EMBEDDING_CONFIG["similarity_threshold"],
        limit: int = 5,
    ) -> List[PlanMatch]:
        """Similar plans with their setups, best first. Returns [] on any failure."""
        try:
            if not await self._ready():
                return []
            scores = await self._nearest(SourceKind.PLAN, query, threshold, limit)
            if not scores:
                return []
            try:
                rows = await run_query(
                    self.supabase.table("trading_plans")
                    .select("*")
                    .eq("user_id", self.user_id)
                    .in_("id", list(scores.keys())),
                    "trading_plans",
                    "select",
                )
                matches = []
                for row in rows:
                    plan = TradingPlan.from_row(row)
                    setups = await get_trading_plan_setups(self.supabase, plan.id)
                    matches.append(PlanMatch(plan, setups, scores.get(plan.id, 0.0)))
            except PersistenceError:
                self._degrade(DegradedReason.HYDRATION_FAILED)
                raise
            matches.sort(key=lambda m: m.score, reverse=True)
            return matches
        except Exception as e:
            logger.warning("Plan similarity search failed: %s", e)
            return []

    # --------------------------------------------------------------------- #
    # Backfill and removal
    # --------------------------------------------------------------------- #
    async def _embedded_ids(self, kind: SourceKind) -> Set[str]:
        rows = await run_query(
            self.supabase.table(kind.embedding_table).select(kind.id_column).eq("user_id", self.user_id),
            kind.embedding_table,
            "select",
        )
        return {str(row[kind.id_column]) for row in rows if row.get(kind.id_column)}

    async def _run_batches(self, backlog, index_one, batch_size: int, pause_seconds: float) -> int:
        indexed = 0
        for start in range(0, len(backlog), batch_size):
            batch = backlog[start:start + batch_size]
            # At most batch_size requests in flight at once
            results = await asyncio.gather(*(index_one(item) for item in batch))
            indexed += sum(1 for r in results if r)
            if start + batch_size < len(backlog) and pause_seconds > 0:
                await self._sleep(pause_seconds)
        return indexed

    async def backfill_embeddings(
        self,
        batch_size: Optional[int] = None,
        pause_seconds: Optional[float] = None,
    ) -> Dict[str, int]:
        """Index every trade and plan that has no live embedding yet."""
        batch_size = batch_size or EMBEDDING_CONFIG["backfill_batch_size"]
        pause = EMBEDDING_CONFIG["backfill_pause_seconds"] if pause_seconds is None else pause_seconds
        summary = {"trades_pending": 0, "trades_indexed": 0, "plans_pending": 0, "plans_indexed": 0}

        if not await self._ready():
            logger.info("Embeddings not available; skipping backfill")
            return summary

        try:
            trades = await get_user_trades(self.supabase, self.user_id, newest_first=True)
            embedded = await self._embedded_ids(SourceKind.TRADE)
            trade_backlog = [t for t in trades if t.id and t.id not in embedded]

            plan_rows = await run_query(
                self.supabase.table("trading_plans").select("*").eq("user_id", self.user_id)
                .order("date", desc=True),
                "trading_plans",
                "select",
            )
            embedded_plans = await self._embedded_ids(SourceKind.PLAN)
            plan_backlog = [p for p in (TradingPlan.from_row(r) for r in plan_rows)
                            if p.id and p.id not in embedded_plans]
        except PersistenceError as e:
            logger.error("Could not compute embedding backlog: %s", e)
            self._degrade(DegradedReason.HYDRATION_FAILED)
            return summary

        summary["trades_pending"] = len(trade_backlog)
        summary["plans_pending"] = len(plan_backlog)
        if not trade_backlog and not plan_backlog:
            logger.info("No trades or plans need embeddings backfill")
            return summary

        logger.info("Starting embeddings backfill for %d trades and %d plans",
                    len(trade_backlog), len(plan_backlog))
        summary["trades_indexed"] = await self._run_batches(trade_backlog, self.index_trade, batch_size, pause)
        summary["plans_indexed"] = await self._run_batches(plan_backlog, self.index_plan, batch_size, pause)

        await log_event(self.supabase, "embeddings_backfilled", {"user_id": self.user_id, **summary})
        return summary

    async def _delete(self, kind: SourceKind, entity_id: str) -> bool:
        if self.supabase is None:
            return False
        try:
            await run_query(
                self.supabase.table(kind.embedding_table)
                .delete()
                .eq(kind.id_column, entity_id)
                .eq("user_id", self.user_id),
                kind.embedding_table,
                "delete",
            )
            return True
        except PersistenceError as e:
            logger.error("Error deleting %s embedding %s: %s", kind.value, entity_id, e)
            return False

    async def delete_embedding(self, trade_id: str) -> bool:
        return await self._delete(SourceKind.TRADE, trade_id)

    async def delete_plan_embedding(self, plan_id: str) -> bool:
        return await self._delete(SourceKind.PLAN, plan_id)
