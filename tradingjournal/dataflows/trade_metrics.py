"""
Trade statistics shared by pattern analysis, recommendations and insight prompts
Derives duration and net P&L from raw trade records and computes performance,
drawdown and duration metrics over a trade history.
"""
from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import pytz

from tradingjournal.config.analysis_config import INITIAL_CAPITAL, RISK_FREE_RATE
from tradingjournal.database.models import Trade, parse_timestamp


def compute_net_profit(profit_loss: float, commission_per_contract: float, contracts: float) -> float:
    """Net P&L = raw P&L minus commission charged per contract."""
    return float(profit_loss) - float(commission_per_contract) * float(contracts)


def compute_duration_seconds(entry_time, exit_time) -> int:
    """Seconds between entry and exit; exit must be strictly after entry."""
    entry = parse_timestamp(entry_time)
    exit_ = parse_timestamp(exit_time)
    if entry is None or exit_ is None:
        raise ValueError("entry_time and exit_time are both required")
    if (entry.tzinfo is None) != (exit_.tzinfo is None):
        raise ValueError("entry_time and exit_time must both carry a timezone or neither")
    seconds = (exit_ - entry).total_seconds()
    if seconds <= 0:
        raise ValueError("exit_time must be after entry_time")
    return int(seconds)


def trade_duration_seconds(trade: Trade) -> float:
    """Duration of a trade, derived from timestamps when not stored; 0 when unknown."""
    if trade.duration_seconds is not None:
        return max(0.0, float(trade.duration_seconds))
    try:
        return float(compute_duration_seconds(trade.entry_time, trade.exit_time))
    except ValueError:
        return 0.0


def trade_net_profit(trade: Trade) -> float:
    if trade.net_profit is not None:
        return float(trade.net_profit)
    return compute_net_profit(trade.profit_loss or 0.0, trade.commission_per_contract or 0.0,
                              trade.contracts or 0.0)


def entry_hour(trade: Trade, tz: Optional[str] = None) -> Optional[int]:
    """Hour of day (0-23) of the entry timestamp.

    Uses the wall-clock hour recorded in the timestamp; when a timezone name is
    given and the timestamp is offset-aware, converts to that zone first.
    """
    entry = trade.entry_datetime
    if entry is None:
        return None
    if tz and entry.tzinfo is not None:
        entry = entry.astimezone(pytz.timezone(tz))
    return entry.hour


def trades_to_frame(trades: Sequence[Trade], tz: Optional[str] = None) -> pd.DataFrame:
    """Flatten trades into a DataFrame with derived net profit, duration and hour."""
    records = []
    for trade in trades:
        records.append({
            "id": trade.id,
            "ticker": trade.ticker,
            "direction": trade.direction,
            "contracts": float(trade.contracts or 0.0),
            "net_profit": trade_net_profit(trade),
            "duration": trade_duration_seconds(trade),
            "hour": entry_hour(trade, tz),
            "date": trade.date,
            "entry_time": trade.entry_time,
            "entry_price": trade.entry_price,
        })
    columns = ["id", "ticker", "direction", "contracts", "net_profit", "duration",
               "hour", "date", "entry_time", "entry_price"]
    frame = pd.DataFrame.from_records(records, columns=columns)
    frame["hour"] = pd.to_numeric(frame["hour"], errors="coerce")
    return frame


def sort_chronologically(trades: Iterable[Trade]) -> List[Trade]:
    """Oldest first, by trade date then entry time."""
    def key(trade: Trade) -> Tuple[str, str]:
        return (trade.date or "", trade.entry_time or "")
    return sorted(trades, key=key)


def win_rate(profits: Sequence[float]) -> float:
    if len(profits) == 0:
        return 0.0
    return sum(1 for p in profits if p > 0) / len(profits)


def profit_factor(profits: Sequence[float]) -> Optional[float]:
    """Gross profit over gross loss; None when there are no losses."""
    gross_profit = sum(p for p in profits if p > 0)
    gross_loss = abs(sum(p for p in profits if p < 0))
    if gross_loss == 0:
        return None
    return gross_profit / gross_loss


def risk_reward_ratio(profits: Sequence[float]) -> Optional[float]:
    """Average win over average loss magnitude; None without both wins and losses."""
    wins = [p for p in profits if p > 0]
    losses = [p for p in profits if p < 0]
    if not wins or not losses:
        return None
    return float(np.mean(wins)) / abs(float(np.mean(losses)))


def drawdown_stats(profits: Sequence[float]) -> Tuple[float, float]:
    """Maximum peak-to-trough drop of the cumulative P&L curve, and its highest peak.

    The curve starts at zero, so a history that only loses has peak 0.
    """
    peak = 0.0
    equity = 0.0
    max_drawdown = 0.0
    for profit in profits:
        equity += profit
        peak = max(peak, equity)
        max_drawdown = max(max_drawdown, peak - equity)
    return max_drawdown, peak


def max_consecutive_losses(profits: Sequence[float]) -> int:
    longest = 0
    current = 0
    for profit in profits:
        if profit < 0:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return longest


def preferred_direction(trades: Sequence[Trade]) -> Optional[str]:
    """Most common direction among the trades, ties broken by first seen."""
    if not trades:
        return None
    counts = Counter(t.direction for t in trades if t.direction)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def calculate_performance_summary(trades: Sequence[Trade]) -> Dict[str, Optional[float]]:
    """Headline numbers for a trade batch."""
    profits = [trade_net_profit(t) for t in sort_chronologically(trades)]
    max_dd, peak = drawdown_stats(profits)
    wins = [p for p in profits if p > 0]
    losses = [p for p in profits if p < 0]
    return {
        "total_trades": len(profits),
        "total_net_profit": float(sum(profits)),
        "win_rate": win_rate(profits),
        "avg_win": float(np.mean(wins)) if wins else 0.0,
        "avg_loss": float(np.mean(losses)) if losses else 0.0,
        "profit_factor": profit_factor(profits),
        "max_drawdown": max_dd,
        "peak_equity": peak,
        "max_consecutive_losses": max_consecutive_losses(profits),
    }


def calculate_advanced_metrics(trades: Sequence[Trade], initial_capital: float = INITIAL_CAPITAL) -> Dict:
    """Risk-adjusted metrics against a fixed notional account."""
    if not trades:
        return {
            "roi": 0.0,
            "sharpe_ratio": 0.0,
            "sortino_ratio": 0.0,
            "max_drawdown_pct": 0.0,
            "value_at_risk": 0.0,
            "risk_reward_ratio": 0.0,
            "equity_curve": [],
            "win_rate_by_hour": [],
        }

    ordered = sort_chronologically(trades)
    profits = np.array([trade_net_profit(t) for t in ordered], dtype=float)
    returns = profits / initial_capital

    avg_return = float(returns.mean())
    std = float(returns.std())
    downside = returns[returns < 0]
    downside_std = float(downside.std()) if len(downside) else 0.0

    sharpe = 0.0 if std == 0 else (avg_return - RISK_FREE_RATE) / std
    sortino = 0.0 if downside_std == 0 else (avg_return - RISK_FREE_RATE) / downside_std

    equity = initial_capital + np.cumsum(profits)
    running_peak = np.maximum.accumulate(np.concatenate([[initial_capital], equity]))[1:]
    drawdown_pct = (running_peak - equity) / running_peak * 100
    max_drawdown_pct = float(drawdown_pct.max()) if len(drawdown_pct) else 0.0

    # 95% historical VaR
    sorted_returns = np.sort(returns)
    var_index = int(len(sorted_returns) * 0.05)
    value_at_risk = float(-sorted_returns[var_index] * initial_capital)

    frame = trades_to_frame(ordered)
    by_hour = []
    hourly = frame.dropna(subset=["hour"]).groupby("hour")["net_profit"]
    for hour, series in hourly:
        by_hour.append({
            "hour": int(hour),
            "win_rate": float((series > 0).mean() * 100),
            "trades": int(series.count()),
            "avg_pnl": float(series.mean()),
        })

    return {
        "roi": float(profits.sum() / initial_capital * 100),
        "sharpe_ratio": sharpe,
        "sortino_ratio": sortino,
        "max_drawdown_pct": max_drawdown_pct,
        "value_at_risk": value_at_risk,
        "risk_reward_ratio": risk_reward_ratio(profits.tolist()) or 0.0,
        "equity_curve": [
            {"date": t.date, "value": float(v)} for t, v in zip(ordered, equity)
        ],
        "win_rate_by_hour": by_hour,
    }


def duration_category(duration_seconds: float) -> str:
    hours = duration_seconds / 3600
    if hours < 1:
        return "Under 1 hour"
    if hours < 4:
        return "1-4 hours"
    if hours < 8:
        return "4-8 hours"
    return "Over 8 hours"


def format_duration(duration_seconds: float) -> str:
    """Human readable duration, e.g. '1 hour 5 minutes'."""
    total = int(max(0, duration_seconds))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    parts = []
    for value, unit in ((hours, "hour"), (minutes, "minute"), (seconds, "second")):
        if value:
            parts.append(f"{value} {unit}{'s' if value != 1 else ''}")
    return " ".join(parts) if parts else "0 seconds"


def calculate_duration_stats(trades: Sequence[Trade]) -> Dict:
    """Holding-time statistics over trades that have both timestamps."""
    timed = [t for t in trades if t.entry_time and t.exit_time and trade_duration_seconds(t) > 0]
    if not timed:
        return {
            "average_duration": 0.0,
            "short_trade_win_rate": 0.0,
            "long_trade_win_rate": 0.0,
            "profit_by_duration": [],
        }

    durations = [trade_duration_seconds(t) for t in timed]
    short = [trade_net_profit(t) for t, d in zip(timed, durations) if d < 3600]
    long_ = [trade_net_profit(t) for t, d in zip(timed, durations) if d >= 3600]

    buckets: Dict[str, Dict[str, float]] = {}
    for trade, duration in zip(timed, durations):
        bucket = buckets.setdefault(duration_category(duration), {"profit": 0.0, "trades": 0})
        bucket["profit"] += trade_net_profit(trade)
        bucket["trades"] += 1

    return {
        "average_duration": float(np.mean(durations)),
        "short_trade_win_rate": win_rate(short) * 100,
        "long_trade_win_rate": win_rate(long_) * 100,
        "profit_by_duration": [
            {"duration": name, "profit": stats["profit"], "trades": int(stats["trades"])}
            for name, stats in buckets.items()
        ],
    }


def format_trade_for_context(trade: Trade) -> str:
    """Multi-line trade summary used inside LLM prompts."""
    entry = trade.entry_datetime
    exit_ = trade.exit_datetime
    parts = [
        f"Date: {trade.date}",
        f"Time: {entry.strftime('%H:%M') if entry else 'N/A'} - {exit_.strftime('%H:%M') if exit_ else 'N/A'}",
        f"Ticker: {trade.ticker}",
        f"Direction: {trade.direction}",
        f"Contracts: {trade.contracts:g}",
        f"P&L: {trade.profit_loss}",
        f"Net P&L: {trade_net_profit(trade)}",
    ]
    if trade.notes:
        parts.append(f"Notes: {trade.notes}")
    return "\n".join(parts)
