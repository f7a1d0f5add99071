"""
Pattern analysis engine
Derives time-of-day, setup and risk patterns from a user's trades, persists them
to trade_patterns (one row per user and pattern key) with their supporting
pattern_matches, and turns a pattern's matched trades into a time-boxed
recommendation.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np

from tradingjournal.config.analysis_config import PATTERN_CONFIG, RECOMMENDATION_CONFIG
from tradingjournal.database.db_service import _make_json_serializable, get_user_trades, log_event, run_query
from tradingjournal.database.models import (
    PatternMatch,
    PatternRecommendation,
    PatternType,
    RecommendationStatus,
    Trade,
    TradePattern,
    utc_now,
)
from tradingjournal.dataflows.embeddings import EmbeddingsService
from tradingjournal.dataflows.recommendations import build_recommendation, check_transition, effective_status
from tradingjournal.dataflows.risk_analysis import analyze_risk
from tradingjournal.dataflows.setup_classifier import SetupType, generate_pattern_tags
from tradingjournal.dataflows.trade_metrics import (
    drawdown_stats,
    preferred_direction,
    profit_factor,
    risk_reward_ratio,
    sort_chronologically,
    trade_duration_seconds,
    trade_net_profit,
    trades_to_frame,
    win_rate,
)

logger = logging.getLogger(__name__)


class PatternAnalysisService:
    """Pattern mining and recommendations for one user"""

    def __init__(self, user_id: str, supabase, embeddings: Optional[EmbeddingsService] = None,
                 timezone: Optional[str] = None):
        self.user_id = user_id
        self.supabase = supabase
        self.embeddings = embeddings
        self.timezone = timezone

    async def initialize(self) -> bool:
        """Prepare the similarity search used by find_similar_trades; optional."""
        if self.embeddings is None:
            self.embeddings = EmbeddingsService(self.user_id, self.supabase)
        return await self.embeddings.initialize()

    async def load_trades(self) -> List[Trade]:
        return await get_user_trades(self.supabase, self.user_id)

    # --------------------------------------------------------------------- #
    # Analysis passes
    # --------------------------------------------------------------------- #
    def find_time_based_patterns(self, trades: Sequence[Trade]) -> List[TradePattern]:
        frame = trades_to_frame(trades, self.timezone).dropna(subset=["hour"])
        patterns = []
        for hour, group in frame.groupby("hour"):
            sample_size = len(group)
            if sample_size < PATTERN_CONFIG["time_min_sample"]:
                continue
            success_rate = float((group["net_profit"] > 0).mean())
            if success_rate <= PATTERN_CONFIG["time_min_success_rate"]:
                continue
            hour = int(hour)
            patterns.append(TradePattern(
                pattern_type=PatternType.TIME_BASED.value,
                pattern_key=f"{PatternType.TIME_BASED.value}:hour:{hour}",
                pattern_data={
                    "hour": hour,
                    "avg_profit": float(group["net_profit"].mean()),
                    "avg_duration": float(group["duration"].mean()),
                },
                confidence_score=min(sample_size / PATTERN_CONFIG["time_confidence_divisor"], 1.0),
                success_rate=success_rate,
                sample_size=sample_size,
                evidence_trade_ids=[str(i) for i in group["id"].dropna()],
            ))
        return patterns

    def find_setup_patterns(self, trades: Sequence[Trade]) -> List[TradePattern]:
        by_ticker: Dict[str, List[Trade]] = {}
        for trade in trades:
            by_ticker.setdefault(trade.ticker, []).append(trade)

        patterns = []
        for ticker, ticker_trades in by_ticker.items():
            if len(ticker_trades) < PATTERN_CONFIG["setup_min_ticker_trades"]:
                continue
            ticker_win_rate = win_rate([trade_net_profit(t) for t in ticker_trades])

            for setup_type in SetupType:
                setup_trades = sort_chronologically(setup_type.classify(ticker_trades))
                if len(setup_trades) < PATTERN_CONFIG["setup_min_sample"]:
                    continue
                profits = [trade_net_profit(t) for t in setup_trades]
                setup_win_rate = win_rate(profits)
                if setup_win_rate <= ticker_win_rate:
                    continue

                avg_profit = float(np.mean(profits))
                avg_duration = float(np.mean([trade_duration_seconds(t) for t in setup_trades]))
                max_drawdown, _ = drawdown_stats(profits)
                patterns.append(TradePattern(
                    pattern_type=PatternType.SETUP.value,
                    pattern_key=f"{PatternType.SETUP.value}:{setup_type.value}:{ticker}",
                    setup_type=setup_type.value,
                    pattern_data={
                        "ticker": ticker,
                        "avg_profit": avg_profit,
                        "avg_duration": avg_duration,
                        "preferred_direction": preferred_direction(setup_trades),
                        "entry_conditions": setup_type.entry_conditions,
                        "exit_conditions": setup_type.exit_conditions,
                    },
                    pattern_tags=generate_pattern_tags(setup_type, avg_profit, avg_duration),
                    risk_metrics={
                        "win_rate": setup_win_rate,
                        "profit_factor": profit_factor(profits),
                        "max_drawdown": max_drawdown,
                        "risk_reward_ratio": risk_reward_ratio(profits),
                    },
                    confidence_score=min(len(setup_trades) / PATTERN_CONFIG["setup_confidence_divisor"], 1.0),
                    success_rate=setup_win_rate,
                    sample_size=len(setup_trades),
                    evidence_trade_ids=[t.id for t in setup_trades if t.id],
                ))
        return patterns

    async def analyze_time_based_patterns(self, trades: Sequence[Trade]) -> List[TradePattern]:
        patterns = self.find_time_based_patterns(trades)
        await self._retire_stale_patterns(PatternType.TIME_BASED, patterns)
        await self._save_patterns(patterns)
        return patterns

    async def analyze_setup_patterns(self, trades: Sequence[Trade]) -> List[TradePattern]:
        patterns = self.find_setup_patterns(trades)
        await self._retire_stale_patterns(PatternType.SETUP, patterns)
        await self._save_patterns(patterns)
        return patterns

    async def analyze_risk_patterns(self, trades: Sequence[Trade]) -> List[TradePattern]:
        patterns = analyze_risk(trades, self.timezone)
        await self._retire_stale_patterns(PatternType.RISK, patterns)
        await self._save_patterns(patterns)
        return patterns

    async def run_full_analysis(self, trades: Optional[Sequence[Trade]] = None) -> Dict[str, List[TradePattern]]:
        """Run all three passes over the given trades, or over every trade the user owns."""
        if trades is None:
            trades = await self.load_trades()
        results = {
            PatternType.TIME_BASED.value: await self.analyze_time_based_patterns(trades),
            PatternType.SETUP.value: await self.analyze_setup_patterns(trades),
            PatternType.RISK.value: await self.analyze_risk_patterns(trades),
        }
        logger.info("Pattern analysis for %s over %d trades: %s", self.user_id, len(trades),
                    {k: len(v) for k, v in results.items()})
        return results

    # --------------------------------------------------------------------- #
    # Persistence
    # --------------------------------------------------------------------- #
    async def _save_patterns(self, patterns: List[TradePattern]) -> None:
        """Upsert patterns on (user_id, pattern_key) and replace their pattern_matches."""
        if not patterns:
            return
        now = utc_now().isoformat()
        rows = []
        for pattern in patterns:
            pattern.user_id = self.user_id
            pattern.updated_at = now
            row = _make_json_serializable(pattern.to_row())
            # Identity comes from the (user_id, pattern_key) conflict target
            row.pop("id", None)
            row.pop("created_at", None)
            rows.append(row)
        # Bulk upserts need one column set; absent metrics are cleared
        columns = set().union(*(row.keys() for row in rows))
        for row in rows:
            for column in columns:
                row.setdefault(column, None)

        saved = await run_query(
            self.supabase.table("trade_patterns").upsert(rows, on_conflict="user_id,pattern_key"),
            "trade_patterns",
            "upsert",
        )
        saved_by_key = {row.get("pattern_key"): row for row in saved}
        for pattern in patterns:
            row = saved_by_key.get(pattern.pattern_key)
            if row:
                pattern.id = row.get("id", pattern.id)
                pattern.created_at = row.get("created_at", pattern.created_at)

        for pattern in patterns:
            if not pattern.id:
                continue
            await run_query(
                self.supabase.table("pattern_matches").delete().eq("pattern_id", pattern.id),
                "pattern_matches",
                "delete",
            )
            if pattern.evidence_trade_ids:
                await run_query(
                    self.supabase.table("pattern_matches").insert([
                        PatternMatch(pattern.id, trade_id, 1.0).to_row()
                        for trade_id in pattern.evidence_trade_ids
                    ]),
                    "pattern_matches",
                    "insert",
                )

        await log_event(self.supabase, "patterns_saved", {
            "user_id": self.user_id,
            "pattern_keys": [p.pattern_key for p in patterns],
        })

    async def _retire_stale_patterns(self, pattern_type: PatternType, patterns: List[TradePattern]) -> None:
        """Delete stored patterns of this type whose key the latest pass no longer emits."""
        current_keys = {p.pattern_key for p in patterns}
        rows = await run_query(
            self.supabase.table("trade_patterns").select("id, pattern_key")
            .eq("user_id", self.user_id).eq("pattern_type", pattern_type.value),
            "trade_patterns",
            "select",
        )
        stale = [row for row in rows if row.get("pattern_key") not in current_keys]
        if not stale:
            return
        stale_ids = [row["id"] for row in stale]

        # Matches and recommendations first so no row points at a deleted pattern
        for table in ("pattern_matches", "pattern_recommendations"):
            await run_query(
                self.supabase.table(table).delete().in_("pattern_id", stale_ids),
                table,
                "delete",
            )
        await run_query(
            self.supabase.table("trade_patterns").delete()
            .eq("user_id", self.user_id).in_("id", stale_ids),
            "trade_patterns",
            "delete",
        )
        logger.info("Retired %d %s patterns for %s", len(stale_ids), pattern_type.value, self.user_id)
        await log_event(self.supabase, "patterns_retired", {
            "user_id": self.user_id,
            "pattern_keys": [row.get("pattern_key") for row in stale],
        })

    async def get_patterns(self, pattern_type: Optional[PatternType] = None) -> List[TradePattern]:
        query = self.supabase.table("trade_patterns").select("*").eq("user_id", self.user_id)
        if pattern_type is not None:
            query = query.eq("pattern_type", pattern_type.value)
        rows = await run_query(query.order("confidence_score", desc=True), "trade_patterns", "select")
        return [TradePattern.from_row(row) for row in rows]

    async def find_similar_trades(
        self,
        trade: Trade,
        pattern_id: Optional[str] = None,
        threshold: float = 0.7,
        limit: int = 5,
    ) -> List[PatternMatch]:
        """Trades similar to ``trade`` scored by similarity; persisted when a pattern id is given."""
        if self.embeddings is None:
            return []
        query = json.dumps({
            "ticker": trade.ticker,
            "direction": trade.direction,
            "duration": trade_duration_seconds(trade),
            "profit": trade_net_profit(trade),
        })
        results = await self.embeddings.search_trades_with_scores(query, threshold, limit)
        matches = [
            PatternMatch(pattern_id or "", similar.id, score)
            for similar, score in results
            if similar.id and similar.id != trade.id
        ]
        if pattern_id and matches:
            saved = await run_query(
                self.supabase.table("pattern_matches").insert([m.to_row() for m in matches]),
                "pattern_matches",
                "insert",
            )
            matches = [PatternMatch.from_row(row) for row in saved] or matches
        return matches

    # --------------------------------------------------------------------- #
    # Recommendations
    # --------------------------------------------------------------------- #
    async def generate_recommendation(self, pattern: TradePattern) -> Optional[PatternRecommendation]:
        """Create a pending recommendation from the pattern's most recent matched trades.

        Returns None without writing when the pattern has no matched trades.
        """
        if not pattern.id:
            logger.warning("Pattern %s has no id; cannot gather matched trades", pattern.pattern_key)
            return None
        if pattern.user_id and pattern.user_id != self.user_id:
            logger.warning("Pattern %s does not belong to user %s", pattern.id, self.user_id)
            return None

        matches = await run_query(
            self.supabase.table("pattern_matches")
            .select("trade_id")
            .eq("pattern_id", pattern.id)
            .order("created_at", desc=True)
            .limit(RECOMMENDATION_CONFIG["max_matched_trades"]),
            "pattern_matches",
            "select",
        )
        trade_ids = [m["trade_id"] for m in matches if m.get("trade_id")]
        if not trade_ids:
            logger.info("No matched trades for pattern %s; skipping recommendation", pattern.id)
            return None

        trades = await get_user_trades(self.supabase, self.user_id, ids=trade_ids)
        if not trades:
            logger.info("Matched trades for pattern %s are gone; skipping recommendation", pattern.id)
            return None

        recommendation = build_recommendation(pattern, trades, self.user_id)
        rows = await run_query(
            self.supabase.table("pattern_recommendations").insert(
                _make_json_serializable(recommendation.to_row())
            ),
            "pattern_recommendations",
            "insert",
        )
        if rows:
            recommendation = PatternRecommendation.from_row(rows[0])

        await log_event(self.supabase, "recommendation_created", {
            "user_id": self.user_id,
            "pattern_id": pattern.id,
            "recommendation_id": recommendation.id,
            "ticker": recommendation.ticker,
        })
        return recommendation

    async def get_recommendation(self, recommendation_id: str) -> Optional[PatternRecommendation]:
        rows = await run_query(
            self.supabase.table("pattern_recommendations")
            .select("*")
            .eq("id", recommendation_id)
            .eq("user_id", self.user_id)
            .limit(1),
            "pattern_recommendations",
            "select",
        )
        return PatternRecommendation.from_row(rows[0]) if rows else None

    async def _transition(self, recommendation_id: str, target: RecommendationStatus) -> PatternRecommendation:
        recommendation = await self.get_recommendation(recommendation_id)
        if recommendation is None:
            raise ValueError(f"Recommendation {recommendation_id} not found")
        check_transition(recommendation, target)

        now = utc_now().isoformat()
        await run_query(
            self.supabase.table("pattern_recommendations")
            .update({"status": target.value, "updated_at": now})
            .eq("id", recommendation_id)
            .eq("user_id", self.user_id),
            "pattern_recommendations",
            "update",
        )
        recommendation.status = target.value
        recommendation.updated_at = now
        return recommendation

    async def trigger_recommendation(self, recommendation_id: str) -> PatternRecommendation:
        return await self._transition(recommendation_id, RecommendationStatus.TRIGGERED)

    async def invalidate_recommendation(self, recommendation_id: str) -> PatternRecommendation:
        return await self._transition(recommendation_id, RecommendationStatus.INVALIDATED)

    async def get_active_recommendations(self, now: Optional[datetime] = None) -> List[PatternRecommendation]:
        """Pending recommendations that have not yet expired, newest first."""
        rows = await run_query(
            self.supabase.table("pattern_recommendations")
            .select("*")
            .eq("user_id", self.user_id)
            .eq("status", RecommendationStatus.PENDING.value)
            .order("created_at", desc=True),
            "pattern_recommendations",
            "select",
        )
        recommendations = [PatternRecommendation.from_row(row) for row in rows]
        return [r for r in recommendations
                if effective_status(r, now) is RecommendationStatus.PENDING]
