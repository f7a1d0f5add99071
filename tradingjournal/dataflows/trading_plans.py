"""
Daily trading plans and their trade setups
One plan per user per date. Setup risk and reward are priced with the
per-ticker point values; saving a plan reindexes its embedding and deleting
it removes the embedding first.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from tradingjournal.database.db_service import (
    _make_json_serializable,
    get_ticker_point_values,
    get_trading_plan,
    get_trading_plan_setups,
    log_event,
    run_query,
)
from tradingjournal.database.models import TradeSetup, TradingPlan, utc_now
from tradingjournal.dataflows.embeddings import EmbeddingsService
from tradingjournal.exceptions import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_POINT_VALUE = 1.0


def calculate_setup_risk_reward(setup: TradeSetup, point_value: float = DEFAULT_POINT_VALUE) -> Tuple[float, float]:
    """(risk, reward) in dollars: price distance x size x point value."""
    size = setup.max_position_size or 0.0
    risk = abs(setup.entry_price - setup.stop_loss) * size * point_value
    reward = abs(setup.target_price - setup.entry_price) * size * point_value
    return risk, reward


class TradingPlanService:
    def __init__(self, user_id: str, supabase, embeddings: Optional[EmbeddingsService] = None):
        self.user_id = user_id
        self.supabase = supabase
        self.embeddings = embeddings or EmbeddingsService(user_id, supabase)

    async def save_plan(self, plan: TradingPlan, setups: Sequence[TradeSetup] = ()) -> Tuple[TradingPlan, List[TradeSetup]]:
        """Upsert the plan for its date, replace its setups and reindex it."""
        if not plan.date:
            raise ValueError("A trading plan needs a date")

        plan.user_id = self.user_id
        plan.updated_at = utc_now().isoformat()
        row = plan.to_row()
        row.pop("created_at", None)
        rows = await run_query(
            self.supabase.table("trading_plans").upsert(_make_json_serializable(row), on_conflict="user_id,date"),
            "trading_plans",
            "upsert",
        )
        saved = TradingPlan.from_row(rows[0]) if rows else plan
        if not saved.id:
            raise PersistenceError("Trading plan upsert returned no id", table="trading_plans")

        point_values = await get_ticker_point_values(self.supabase, self.user_id)
        await run_query(
            self.supabase.table("trade_plans").delete().eq("trading_plan_id", saved.id),
            "trade_plans",
            "delete",
        )
        saved_setups: List[TradeSetup] = []
        if setups:
            setup_rows = []
            for setup in setups:
                setup.trading_plan_id = saved.id
                setup.risk_amount, setup.reward_amount = calculate_setup_risk_reward(
                    setup, point_values.get(setup.ticker.upper(), DEFAULT_POINT_VALUE)
                )
                setup_row = setup.to_row()
                setup_row.pop("id", None)
                setup_rows.append(_make_json_serializable(setup_row))
            inserted = await run_query(
                self.supabase.table("trade_plans").insert(setup_rows),
                "trade_plans",
                "insert",
            )
            saved_setups = [TradeSetup.from_row(r) for r in inserted] or list(setups)

        result = await self.embeddings.index_plan(saved, saved_setups)
        if not result:
            logger.warning("Plan %s saved but not indexed: %s", saved.id, result.reason)
        return saved, saved_setups

    async def get_plan(self, plan_id: str) -> Optional[Tuple[TradingPlan, List[TradeSetup]]]:
        plan = await get_trading_plan(self.supabase, self.user_id, plan_id)
        if plan is None:
            return None
        return plan, await get_trading_plan_setups(self.supabase, plan.id)

    async def get_plan_for_date(self, date: str) -> Optional[Tuple[TradingPlan, List[TradeSetup]]]:
        rows = await run_query(
            self.supabase.table("trading_plans").select("*").eq("user_id", self.user_id).eq("date", date).limit(1),
            "trading_plans",
            "select",
        )
        if not rows:
            return None
        plan = TradingPlan.from_row(rows[0])
        return plan, await get_trading_plan_setups(self.supabase, plan.id)

    async def delete_plan(self, plan_id: str) -> bool:
        """Remove the plan's embedding, its setups and the plan."""
        plan = await get_trading_plan(self.supabase, self.user_id, plan_id)
        if plan is None:
            return False
        if not await self.embeddings.delete_plan_embedding(plan_id):
            raise PersistenceError(f"Could not remove embedding for plan {plan_id}", table="plan_embeddings")
        await run_query(
            self.supabase.table("trade_plans").delete().eq("trading_plan_id", plan_id),
            "trade_plans",
            "delete",
        )
        await run_query(
            self.supabase.table("trading_plans").delete().eq("id", plan_id).eq("user_id", self.user_id),
            "trading_plans",
            "delete",
        )
        await log_event(self.supabase, "trading_plan_deleted", {"user_id": self.user_id, "plan_id": plan_id})
        return True
