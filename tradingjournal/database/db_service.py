"""
Database service helpers shared by the dataflows
All reads and writes are owner scoped; the row-level security policies in
Supabase enforce the same rule server side.
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from tradingjournal.database.models import AIConfig, Trade, TradeSetup, TradingPlan, utc_now
from tradingjournal.exceptions import PersistenceError

logger = logging.getLogger(__name__)


def _make_json_serializable(obj: Any) -> Any:
    """Convert numpy scalars, datetimes, enums and non-finite floats for jsonb columns."""
    if isinstance(obj, dict):
        return {str(k): _make_json_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_make_json_serializable(v) for v in obj]
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        obj = float(obj)
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.ndarray):
        return [_make_json_serializable(v) for v in obj.tolist()]
    if isinstance(obj, float) and not math.isfinite(obj):
        return None
    return obj


async def run_query(query, table: str, action: str = "query") -> List[Dict[str, Any]]:
    """Execute a PostgREST builder and return its rows, raising PersistenceError on failure."""
    try:
        response = await query.execute()
    except Exception as e:
        raise PersistenceError(f"Supabase {action} on {table} failed: {e}", table=table) from e
    if response is None:
        return []
    data = response.data
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    return list(data)


async def log_event(supabase, event: str, details: Dict[str, Any]) -> bool:
    """Record a domain event in system_logs. Never raises."""
    if supabase is None:
        return False
    try:
        payload = {
            "event": event,
            "details": _make_json_serializable(details),
            "timestamp": utc_now().isoformat(),
        }
        await supabase.table("system_logs").insert(payload).execute()
        return True
    except Exception as e:
        logger.warning("Could not log event %s: %s", event, e)
        return False


async def get_user_trades(
    supabase,
    user_id: str,
    ids: Optional[Iterable[str]] = None,
    date_range: Optional[Dict[str, str]] = None,
    newest_first: bool = False,
) -> List[Trade]:
    """Fetch the owner's trades, optionally restricted to ids and a date range."""
    query = supabase.table("trades").select("*").eq("user_id", user_id)
    if ids is not None:
        id_list = [str(i) for i in ids]
        if not id_list:
            return []
        query = query.in_("id", id_list)
    if date_range:
        if date_range.get("start"):
            query = query.gte("date", date_range["start"])
        if date_range.get("end"):
            query = query.lte("date", date_range["end"])
    query = query.order("date", desc=newest_first)
    rows = await run_query(query, "trades", "select")
    return [Trade.from_row(row) for row in rows]


async def get_trading_plan_setups(supabase, plan_id: str) -> List[TradeSetup]:
    rows = await run_query(
        supabase.table("trade_plans")
        .select("*")
        .eq("trading_plan_id", plan_id)
        .order("created_at"),
        "trade_plans",
        "select",
    )
    return [TradeSetup.from_row(row) for row in rows]


async def get_trading_plan(supabase, user_id: str, plan_id: str) -> Optional[TradingPlan]:
    rows = await run_query(
        supabase.table("trading_plans")
        .select("*")
        .eq("id", plan_id)
        .eq("user_id", user_id)
        .limit(1),
        "trading_plans",
        "select",
    )
    return TradingPlan.from_row(rows[0]) if rows else None


async def get_user_ai_configs(supabase, user_id: str) -> List[AIConfig]:
    """Return the user's stored provider configs, most recently updated first."""
    rows = await run_query(
        supabase.table("user_ai_configs")
        .select("provider, api_key, model, user_id, updated_at")
        .eq("user_id", user_id)
        .order("updated_at", desc=True),
        "user_ai_configs",
        "select",
    )
    return [AIConfig.from_row(row) for row in rows]


async def get_ticker_point_values(supabase, user_id: str) -> Dict[str, float]:
    """Map ticker to dollars-per-point; user rows override system rows."""
    rows = await run_query(
        supabase.table("ticker_point_values").select("ticker, point_value, user_id, is_system"),
        "ticker_point_values",
        "select",
    )
    values: Dict[str, float] = {}
    # System rows first so user rows win
    for row in sorted(rows, key=lambda r: 0 if r.get("is_system") else 1):
        if row.get("user_id") not in (None, user_id):
            continue
        try:
            values[str(row["ticker"]).upper()] = float(row["point_value"])
        except (KeyError, TypeError, ValueError):
            continue
    return values
