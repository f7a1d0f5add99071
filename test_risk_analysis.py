"""
Tests for the four risk checks
"""
import pytest

from conftest import make_trade
from tradingjournal.database.models import RiskCategory
from tradingjournal.dataflows.risk_analysis import (
    analyze_drawdown_risk,
    analyze_position_size_risk,
    analyze_risk,
    analyze_time_risk,
    analyze_volatility_risk,
    drawdown_ratio,
    hourly_risk_stats,
    position_size_risk_score,
    volatility_risk_score,
)


def test_uneven_position_sizes_flagged():
    trades = [make_trade(50, contracts=c, day=i) for i, c in enumerate([1, 1, 1, 10])]
    pattern = analyze_position_size_risk(trades)
    assert pattern is not None, "A 10-lot among 1-lots should be flagged"
    assert pattern.pattern_key == "risk:position_size"
    assert pattern.risk_score == 100.0
    assert pattern.evidence_trade_ids == [trades[3].id], "Only the oversized trade is evidence"
    assert pattern.pattern_data["max_size"] == 10


def test_even_position_sizes_not_flagged():
    assert position_size_risk_score([2, 2, 2, 2]) == pytest.approx(25.0)
    trades = [make_trade(50, contracts=2, day=i) for i in range(4)]
    assert analyze_position_size_risk(trades) is None


def test_position_score_zero_mean():
    assert position_size_risk_score([0, 0]) == 0.0
    assert position_size_risk_score([]) == 0.0


def test_all_losing_history_is_full_drawdown():
    trades = [make_trade(-10 * (i + 1), day=i) for i in range(5)]
    pattern = analyze_drawdown_risk(trades)
    assert pattern is not None
    assert pattern.risk_score == 100.0
    assert pattern.drawdown_metrics["drawdown_percentage"] == 100.0
    assert pattern.pattern_data["max_consecutive_losses"] == 5
    assert len(pattern.evidence_trade_ids) == 5


def test_drawdown_ratio_edges():
    assert drawdown_ratio(0.0, 0.0) == 0.0
    assert drawdown_ratio(50.0, 0.0) == 1.0
    assert drawdown_ratio(50.0, 200.0) == 0.25


def test_profitable_history_has_no_drawdown_pattern():
    trades = [make_trade(100, day=i) for i in range(5)]
    assert analyze_drawdown_risk(trades) is None


def test_volatility_edges():
    assert volatility_risk_score([10, 10, 10]) == 0.0
    assert volatility_risk_score([100, -100]) == 100.0
    assert volatility_risk_score([0, 0]) == 0.0


def test_volatility_pattern_evidence_outliers():
    profits = [10, 12, 8, 11, 400]
    trades = [make_trade(p, day=i) for i, p in enumerate(profits)]
    pattern = analyze_volatility_risk(trades)
    assert pattern is not None
    assert pattern.evidence_trade_ids == [trades[4].id]
    assert pattern.volatility_metrics["annualized_volatility"] == pytest.approx(
        pattern.volatility_metrics["daily_volatility"] * 252 ** 0.5
    )


def test_time_risk_picks_worst_hour():
    losers = [make_trade(-200, hour=10, day=i) for i in range(5)]
    winners = [make_trade(100, hour=9, day=i) for i in range(5)]
    pattern = analyze_time_risk(losers + winners)
    assert pattern is not None
    assert pattern.pattern_data["riskiest_hour"] == 10
    assert pattern.risk_score == pytest.approx(60.0)
    assert set(pattern.evidence_trade_ids) == {t.id for t in losers}
    assert len(pattern.pattern_data["trades_by_hour"]) == 24


def test_hourly_stats_shape():
    stats = hourly_risk_stats([make_trade(-50, hour=3), make_trade(50, hour=3)])
    hour_three = stats[3]
    assert hour_three["trades"] == 2
    assert hour_three["loss_rate"] == 0.5
    assert hour_three["risk_amount"] == 25.0
    assert stats[4]["trades"] == 0


def test_analyze_risk_runs_on_small_history():
    trades = [make_trade(50, contracts=c, day=i) for i, c in enumerate([1, 1, 1, 10])]
    patterns = analyze_risk(trades)
    assert [p.risk_category for p in patterns] == [RiskCategory.POSITION_SIZE.value]
    assert patterns[0].confidence_score == pytest.approx(4 / 50)
    assert analyze_risk([]) == []
