"""
Setup archetype classification for the pattern analysis engine
Each archetype is a coarse duration/profit heuristic standing in for real
price-pattern recognition. Swap the predicates here to change classification
without touching aggregation or scoring.
"""
from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, List, Sequence

from tradingjournal.database.models import Trade
from tradingjournal.dataflows.trade_metrics import trade_duration_seconds, trade_net_profit


def _is_breakout(trade: Trade) -> bool:
    return trade_duration_seconds(trade) < 1800


def _is_pullback(trade: Trade) -> bool:
    duration = trade_duration_seconds(trade)
    return 1800 < duration < 3600


def _is_reversal(trade: Trade) -> bool:
    return trade_net_profit(trade) > 100


def _is_trend_continuation(trade: Trade) -> bool:
    return trade_duration_seconds(trade) > 3600


def _is_range_bound(trade: Trade) -> bool:
    return 0 < trade_net_profit(trade) < 100


def _is_momentum(trade: Trade) -> bool:
    return trade_duration_seconds(trade) < 900


_PREDICATES: Dict[str, Callable[[Trade], bool]] = {
    "breakout": _is_breakout,
    "pullback": _is_pullback,
    "reversal": _is_reversal,
    "trend_continuation": _is_trend_continuation,
    "range_bound": _is_range_bound,
    "momentum": _is_momentum,
}

_ENTRY_CONDITIONS: Dict[str, List[str]] = {
    "breakout": ["Price breaks above resistance", "Volume increases on breakout"],
    "pullback": ["Price pulls back to moving average", "Previous trend remains intact"],
    "reversal": ["Price rejects a key level", "Momentum diverges from price"],
    "trend_continuation": ["Higher highs and higher lows remain intact", "Price holds above the prior swing"],
    "range_bound": ["Price tests range support or resistance", "No expansion in volatility"],
    "momentum": ["Strong directional candle with volume", "Price extends away from the open"],
}

_EXIT_CONDITIONS: Dict[str, List[str]] = {
    "breakout": ["Price reaches target extension", "Volume decreases significantly"],
    "pullback": ["Price resumes original trend", "Moving average begins to flatten"],
    "reversal": ["Price reaches the opposite side of the range", "Reversal candle fails"],
    "trend_continuation": ["Trend structure breaks", "Price closes below the prior swing"],
    "range_bound": ["Price reaches the opposite boundary", "Range breaks with volume"],
    "momentum": ["Momentum stalls", "Volume dries up"],
}


class SetupType(str, Enum):
    BREAKOUT = "breakout"
    PULLBACK = "pullback"
    REVERSAL = "reversal"
    TREND_CONTINUATION = "trend_continuation"
    RANGE_BOUND = "range_bound"
    MOMENTUM = "momentum"

    def matches(self, trade: Trade) -> bool:
        return _PREDICATES[self.value](trade)

    def classify(self, trades: Sequence[Trade]) -> List[Trade]:
        """Trades that fit this archetype's heuristic."""
        return [t for t in trades if self.matches(t)]

    @property
    def entry_conditions(self) -> List[str]:
        return list(_ENTRY_CONDITIONS[self.value])

    @property
    def exit_conditions(self) -> List[str]:
        return list(_EXIT_CONDITIONS[self.value])


def generate_pattern_tags(setup_type: SetupType, avg_profit: float, avg_duration: float) -> List[str]:
    tags = [setup_type.value]
    if avg_profit > 100:
        tags.append("high_profit")
    if avg_duration < 1800:
        tags.append("short_term")
    elif avg_duration > 3600:
        tags.append("long_term")
    return tags
