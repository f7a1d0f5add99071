"""
Risk pattern checks over a user's trade history
Four independent checks (position size, drawdown, volatility, time of day),
each scored 0-100. A check yields a pattern only when its score clears the
configured floor.
"""
from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence

import numpy as np

from tradingjournal.config.analysis_config import PATTERN_CONFIG
from tradingjournal.database.models import PatternType, RiskCategory, Trade, TradePattern
from tradingjournal.dataflows.trade_metrics import (
    drawdown_stats,
    entry_hour,
    max_consecutive_losses,
    sort_chronologically,
    trade_net_profit,
    win_rate,
)


def _risk_pattern(
    category: RiskCategory,
    trades: Sequence[Trade],
    risk_score: float,
    pattern_data: Dict,
    evidence: Sequence[Trade],
    **metrics,
) -> TradePattern:
    profits = [trade_net_profit(t) for t in trades]
    divisor = PATTERN_CONFIG["risk_confidence_divisor"]
    return TradePattern(
        pattern_type=PatternType.RISK.value,
        pattern_key=f"{PatternType.RISK.value}:{category.value}",
        risk_category=category.value,
        pattern_data=pattern_data,
        risk_score=float(risk_score),
        confidence_score=min(len(trades) / divisor, 1.0),
        success_rate=win_rate(profits),
        sample_size=len(trades),
        evidence_trade_ids=[t.id for t in evidence if t.id],
        **metrics,
    )


def position_size_risk_score(sizes: Sequence[float]) -> float:
    """min(50 * std/mean + 50 * max/(2 * mean), 100); 0 when the mean size is not positive."""
    if len(sizes) == 0:
        return 0.0
    values = np.asarray(sizes, dtype=float)
    mean = float(values.mean())
    if mean <= 0:
        return 0.0
    std = float(values.std())
    return min(std / mean * 50 + float(values.max()) / (mean * 2) * 50, 100.0)


def drawdown_ratio(max_drawdown: float, peak: float) -> float:
    """Drawdown relative to the peak; a curve that never rose above zero counts as a full drawdown."""
    if peak > 0:
        return max_drawdown / peak
    return 1.0 if max_drawdown > 0 else 0.0


def volatility_risk_score(profits: Sequence[float]) -> float:
    """min(100 * std/|mean|, 100) over net P&L."""
    if len(profits) == 0:
        return 0.0
    values = np.asarray(profits, dtype=float)
    mean = float(values.mean())
    std = float(values.std())
    if mean == 0:
        return 100.0 if std > 0 else 0.0
    return min(std / abs(mean) * 100, 100.0)


def analyze_position_size_risk(trades: Sequence[Trade]) -> Optional[TradePattern]:
    sizes = [float(t.contracts or 0.0) for t in trades]
    risk_score = position_size_risk_score(sizes)
    if risk_score <= PATTERN_CONFIG["risk_min_score"]:
        return None

    avg_size = float(np.mean(sizes))
    size_variation = float(np.std(sizes))
    # Oversized trades are the evidence
    evidence = [t for t in trades if float(t.contracts or 0.0) > avg_size]
    return _risk_pattern(
        RiskCategory.POSITION_SIZE,
        trades,
        risk_score,
        {
            "avg_size": avg_size,
            "max_size": float(max(sizes)),
            "size_variation": size_variation,
        },
        evidence,
        volatility_metrics={"size_volatility": size_variation / avg_size},
    )


def analyze_drawdown_risk(trades: Sequence[Trade]) -> Optional[TradePattern]:
    ordered = sort_chronologically(trades)
    profits = [trade_net_profit(t) for t in ordered]
    max_dd, peak = drawdown_stats(profits)
    losing_streak = max_consecutive_losses(profits)
    ratio = drawdown_ratio(max_dd, peak)

    risk_score = min(
        ratio * 50 + losing_streak / PATTERN_CONFIG["risk_max_consecutive_losses"] * 50,
        100.0,
    )
    if risk_score <= PATTERN_CONFIG["risk_min_score"]:
        return None

    return _risk_pattern(
        RiskCategory.DRAWDOWN,
        ordered,
        risk_score,
        {
            "max_drawdown": max_dd,
            "max_consecutive_losses": losing_streak,
            "peak_balance": peak,
        },
        [t for t, p in zip(ordered, profits) if p < 0],
        drawdown_metrics={
            "drawdown_percentage": ratio * 100,
            "recovery_factor": peak / max_dd if max_dd > 0 else None,
        },
    )


def analyze_volatility_risk(trades: Sequence[Trade]) -> Optional[TradePattern]:
    profits = [trade_net_profit(t) for t in trades]
    risk_score = volatility_risk_score(profits)
    if risk_score <= PATTERN_CONFIG["risk_min_score"]:
        return None

    avg_return = float(np.mean(profits))
    volatility = float(np.std(profits))
    # Outliers beyond one standard deviation
    evidence = [t for t, p in zip(trades, profits) if abs(p - avg_return) > volatility]
    return _risk_pattern(
        RiskCategory.VOLATILITY,
        trades,
        risk_score,
        {
            "avg_return": avg_return,
            "volatility": volatility,
            "sharpe_ratio": avg_return / volatility if volatility > 0 else None,
        },
        evidence,
        volatility_metrics={
            "daily_volatility": volatility,
            "annualized_volatility": volatility * math.sqrt(252),
        },
    )


def hourly_risk_stats(trades: Sequence[Trade], tz: Optional[str] = None) -> List[Dict]:
    """Per-hour trade count, net P&L, losses, worst loss and risk amount (loss rate x average loss)."""
    buckets: Dict[int, List[Trade]] = {}
    for trade in trades:
        hour = entry_hour(trade, tz)
        if hour is None:
            continue
        buckets.setdefault(hour, []).append(trade)

    stats = []
    for hour in range(24):
        hour_trades = buckets.get(hour, [])
        profits = [trade_net_profit(t) for t in hour_trades]
        losses = [p for p in profits if p < 0]
        loss_rate = len(losses) / len(profits) if profits else 0.0
        avg_loss = abs(sum(losses)) / len(losses) if losses else 0.0
        stats.append({
            "hour": hour,
            "trades": len(profits),
            "total_pl": float(sum(profits)),
            "losses": len(losses),
            "max_loss": float(min(losses)) if losses else 0.0,
            "loss_rate": loss_rate,
            "risk_amount": loss_rate * avg_loss,
            "trade_ids": [t.id for t in hour_trades if t.id],
        })
    return stats


def analyze_time_risk(trades: Sequence[Trade], tz: Optional[str] = None) -> Optional[TradePattern]:
    stats = hourly_risk_stats(trades, tz)
    riskiest = stats[0]
    for current in stats[1:]:
        if current["risk_amount"] > riskiest["risk_amount"]:
            riskiest = current

    risk_score = min(
        abs(riskiest["risk_amount"]) / PATTERN_CONFIG["time_risk_amount_normalizer"] * 50
        + riskiest["loss_rate"] * 50,
        100.0,
    )
    if risk_score <= PATTERN_CONFIG["risk_min_score"]:
        return None

    riskiest_ids = set(riskiest["trade_ids"])
    return _risk_pattern(
        RiskCategory.TIME_RISK,
        trades,
        risk_score,
        {
            "riskiest_hour": riskiest["hour"],
            "max_hourly_loss": riskiest["max_loss"],
            "trades_by_hour": [
                {
                    "hour": s["hour"],
                    "count": s["trades"],
                    "net_pl": s["total_pl"],
                    "risk_amount": s["risk_amount"],
                    "loss_rate": s["loss_rate"] * 100,
                }
                for s in stats
            ],
        },
        [t for t in trades if t.id in riskiest_ids],
    )


def analyze_risk(trades: Sequence[Trade], tz: Optional[str] = None) -> List[TradePattern]:
    """Run all four checks; fewer than the minimum sample yields nothing."""
    if len(trades) < PATTERN_CONFIG["risk_min_sample"]:
        return []
    candidates = [
        analyze_position_size_risk(trades),
        analyze_drawdown_risk(trades),
        analyze_volatility_risk(trades),
        analyze_time_risk(trades, tz),
    ]
    return [p for p in candidates if p is not None]
