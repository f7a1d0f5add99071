"""
Recommendation maths and lifecycle
A recommendation is derived from the trades matched to a pattern: an entry
zone of mean +/- one standard deviation, a buffered stop beyond the worst loss
and a conservative target short of the best profit. Status is a one-way
machine: pending -> triggered | invalidated by the user, pending -> expired
once the expiration passes (computed on read).
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence

import numpy as np

from tradingjournal.config.analysis_config import RECOMMENDATION_CONFIG
from tradingjournal.database.models import (
    PatternRecommendation,
    RecommendationStatus,
    Trade,
    TradePattern,
    utc_now,
)
from tradingjournal.dataflows.trade_metrics import preferred_direction, sort_chronologically, trade_net_profit


def _most_recent(trades: Sequence[Trade]) -> Trade:
    return sort_chronologically(trades)[-1]


def calculate_entry_zone(trades: Sequence[Trade]) -> Dict[str, float]:
    """Mean +/- population std of entry prices, or of net P&L when no entry price was recorded."""
    prices = [float(t.entry_price) for t in trades if t.entry_price is not None]
    series = prices if prices else [trade_net_profit(t) for t in trades]
    mean = float(np.mean(series))
    std = float(np.std(series))
    return {"lower": mean - std, "upper": mean + std}


def calculate_stop_loss(trades: Sequence[Trade]) -> float:
    losses = [p for p in (trade_net_profit(t) for t in trades) if p < 0]
    if losses:
        return min(losses) * RECOMMENDATION_CONFIG["stop_loss_buffer"]
    return -abs(trade_net_profit(_most_recent(trades)))


def calculate_target_price(trades: Sequence[Trade]) -> float:
    profits = [p for p in (trade_net_profit(t) for t in trades) if p > 0]
    if profits:
        return max(profits) * RECOMMENDATION_CONFIG["target_factor"]
    return abs(trade_net_profit(_most_recent(trades)))


def build_recommendation(
    pattern: TradePattern,
    trades: Sequence[Trade],
    user_id: str,
    now: Optional[datetime] = None,
) -> PatternRecommendation:
    """Derive a pending recommendation; trades must be non-empty."""
    if not trades:
        raise ValueError("a recommendation needs at least one matched trade")
    now = now or utc_now()
    data = pattern.pattern_data or {}
    ticker = data.get("ticker") or _most_recent(trades).ticker
    direction = data.get("preferred_direction") or preferred_direction(trades) or _most_recent(trades).direction
    expiration = now + timedelta(hours=RECOMMENDATION_CONFIG["expiry_hours"])
    return PatternRecommendation(
        pattern_id=pattern.id,
        user_id=user_id,
        ticker=ticker,
        direction=direction,
        entry_zone=calculate_entry_zone(trades),
        stop_loss=calculate_stop_loss(trades),
        target_price=calculate_target_price(trades),
        confidence_score=min(pattern.confidence_score * pattern.success_rate, 1.0),
        expiration=expiration.isoformat(),
        status=RecommendationStatus.PENDING.value,
    )


def effective_status(recommendation: PatternRecommendation, now: Optional[datetime] = None) -> RecommendationStatus:
    """Stored status, except a pending recommendation past its expiration reads as expired."""
    status = RecommendationStatus(recommendation.status)
    if status is not RecommendationStatus.PENDING:
        return status
    expires = recommendation.expiration_datetime
    if expires is not None and expires <= (now or utc_now()):
        return RecommendationStatus.EXPIRED
    return status


def check_transition(
    recommendation: PatternRecommendation,
    target: RecommendationStatus,
    now: Optional[datetime] = None,
) -> None:
    """Only a live pending recommendation may move to triggered or invalidated."""
    if target not in (RecommendationStatus.TRIGGERED, RecommendationStatus.INVALIDATED):
        raise ValueError(f"Cannot move a recommendation to {target.value}")
    current = effective_status(recommendation, now)
    if current is not RecommendationStatus.PENDING:
        raise ValueError(f"Recommendation is {current.value}; only pending recommendations can be {target.value}")
