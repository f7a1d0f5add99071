"""
Trade journal persistence
Saving a trade derives its duration and net profit and indexes it for
similarity search. Deleting a trade removes its pattern matches and its
embedding before the trade itself, so the index never outlives a trade.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from tradingjournal.database.db_service import _make_json_serializable, get_user_trades, log_event, run_query
from tradingjournal.database.models import Trade
from tradingjournal.dataflows.embeddings import EmbeddingsService
from tradingjournal.dataflows.trade_metrics import compute_duration_seconds, compute_net_profit
from tradingjournal.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class TradeJournal:
    def __init__(self, user_id: str, supabase, embeddings: Optional[EmbeddingsService] = None):
        self.user_id = user_id
        self.supabase = supabase
        self.embeddings = embeddings or EmbeddingsService(user_id, supabase)

    async def save_trade(self, trade: Trade) -> Trade:
        """Insert or update a trade. Raises ValueError when exit is not after entry."""
        if not trade.ticker:
            raise ValueError("A trade needs a ticker")
        trade.duration_seconds = compute_duration_seconds(trade.entry_time, trade.exit_time)
        trade.net_profit = compute_net_profit(trade.profit_loss, trade.commission_per_contract, trade.contracts)
        trade.user_id = self.user_id
        trade.ticker = trade.ticker.upper()

        row = _make_json_serializable(trade.to_row())
        row.pop("created_at", None)
        if trade.id:
            row.pop("id", None)
            query = self.supabase.table("trades").update(row).eq("id", trade.id).eq("user_id", self.user_id)
            rows = await run_query(query, "trades", "update")
            if not rows:
                raise PersistenceError(f"Trade {trade.id} not found for user {self.user_id}", table="trades")
        else:
            rows = await run_query(self.supabase.table("trades").insert(row), "trades", "insert")
        saved = Trade.from_row(rows[0]) if rows else trade

        result = await self.embeddings.index_trade(saved)
        if not result:
            logger.warning("Trade %s saved but not indexed: %s", saved.id, result.reason)
        return saved

    async def get_trades(self, date_range: Optional[Dict[str, str]] = None) -> List[Trade]:
        return await get_user_trades(self.supabase, self.user_id, date_range=date_range)

    async def delete_trade(self, trade_id: str) -> bool:
        """Delete a trade and everything derived from it. False when the trade is not the user's."""
        owned = await get_user_trades(self.supabase, self.user_id, ids=[trade_id])
        if not owned:
            return False

        await run_query(
            self.supabase.table("pattern_matches").delete().eq("trade_id", trade_id),
            "pattern_matches",
            "delete",
        )
        if not await self.embeddings.delete_embedding(trade_id):
            raise PersistenceError(f"Could not remove embedding for trade {trade_id}", table="trade_embeddings")
        await run_query(
            self.supabase.table("trades").delete().eq("id", trade_id).eq("user_id", self.user_id),
            "trades",
            "delete",
        )
        await log_event(self.supabase, "trade_deleted", {"user_id": self.user_id, "trade_id": trade_id})
        return True
