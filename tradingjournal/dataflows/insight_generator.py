"""
AI insight generation
Builds a category prompt over a trade batch, asks the provider for a fixed JSON
shape and stores the result in ai_insights. A reply that does not parse or lacks
required fields is replaced by a placeholder so there is always something to
render.
"""
from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from tradingjournal.config.analysis_config import AI_CONFIG
from tradingjournal.database.db_service import _make_json_serializable, run_query
from tradingjournal.database.models import AIInsight, Trade
from tradingjournal.dataflows.llm_clients import BaseLLMClient
from tradingjournal.dataflows.retry import retry_with_backoff
from tradingjournal.dataflows.trade_metrics import (
    calculate_advanced_metrics,
    calculate_duration_stats,
    calculate_performance_summary,
    format_duration,
    format_trade_for_context,
    sort_chronologically,
)
from tradingjournal.exceptions import AIServiceError, PersistenceError, ProviderError

logger = logging.getLogger(__name__)

INSIGHT_FAILURE_MESSAGE = "Failed to generate insights. Please try again."
METRIC_KEYS = ("strengths", "weaknesses", "patterns", "concerns", "positives", "effective")

_FOCUS = {
    "performance": [
        "Overall profitability and consistency",
        "Win rate and profit factor",
        "Position sizing effectiveness",
        "Trading frequency and timing",
        "Best and worst performing trades",
    ],
    "psychology": [
        "Emotional control in trades",
        "Decision-making patterns",
        "Response to wins and losses",
        "Trading discipline",
        "Stress management",
    ],
    "pattern": [
        "Common trading setups",
        "Market condition adaptation",
        "Entry and exit timing",
        "Recurring trade characteristics",
        "Strategy effectiveness",
    ],
    "risk": [
        "Risk management practices",
        "Position sizing patterns",
        "Stop loss usage",
        "Risk/reward ratios",
        "Drawdown management",
    ],
}


class InsightType(str, Enum):
    PERFORMANCE = "performance"
    PSYCHOLOGY = "psychology"
    PATTERN = "pattern"
    RISK = "risk"

    @property
    def focus(self) -> List[str]:
        return list(_FOCUS[self.value])

    @property
    def title(self) -> str:
        return f"{self.value.capitalize()} Analysis"


def placeholder_content(insight_type: InsightType) -> Dict[str, Any]:
    return {
        "title": insight_type.title,
        "description": "Analysis generation encountered an error. Please try again.",
        "metrics": {key: [] for key in METRIC_KEYS},
        "recommendations": [],
    }


def _as_text_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return [str(value)]


def normalize_content(content: Dict[str, Any]) -> Dict[str, Any]:
    """Every metric key present with a list value; recommendations a list of strings."""
    metrics = content.get("metrics") if isinstance(content.get("metrics"), dict) else {}
    return {
        "title": str(content.get("title") or ""),
        "description": str(content.get("description") or ""),
        "metrics": {key: _as_text_list(metrics.get(key)) for key in METRIC_KEYS},
        "recommendations": _as_text_list(content.get("recommendations")),
    }


def parse_insight_content(text: Optional[str], insight_type: InsightType) -> Dict[str, Any]:
    """Parse the model reply, falling back to the placeholder on any shape problem."""
    try:
        content = json.loads(text or "{}")
    except (TypeError, ValueError) as e:
        logger.error("Error parsing AI insight response: %s", e)
        return placeholder_content(insight_type)
    if not isinstance(content, dict):
        logger.error("AI insight response is not a JSON object")
        return placeholder_content(insight_type)
    required = ("title", "description", "metrics", "recommendations")
    missing = [key for key in required if content.get(key) is None]
    if missing:
        logger.error("AI insight response missing %s", ", ".join(missing))
        return placeholder_content(insight_type)
    return normalize_content(content)


def build_insight_prompt(insight_type: InsightType, trades: Sequence[Trade]) -> str:
    summary = calculate_performance_summary(trades)
    advanced = calculate_advanced_metrics(trades)
    durations = calculate_duration_stats(trades)
    profit_factor = summary["profit_factor"]
    stats = "\n".join([
        f"Total trades: {summary['total_trades']}",
        f"Total net P&L: {summary['total_net_profit']:.2f}",
        f"Win rate: {summary['win_rate'] * 100:.1f}%",
        f"Profit factor: {profit_factor:.2f}" if profit_factor is not None else "Profit factor: n/a",
        f"Max drawdown: {summary['max_drawdown']:.2f}",
        f"Max drawdown %: {advanced['max_drawdown_pct']:.2f}%",
        f"ROI: {advanced['roi']:.2f}%",
        f"Sharpe ratio: {advanced['sharpe_ratio']:.2f}",
        f"Sortino ratio: {advanced['sortino_ratio']:.2f}",
        f"95% value at risk: {advanced['value_at_risk']:.2f}",
        f"Average holding time: {format_duration(durations['average_duration'])}",
    ])
    focus = "\n".join(f"- {item}" for item in insight_type.focus)
    trade_lines = "\n\n".join(format_trade_for_context(t) for t in trades)
    kind = insight_type.value
    return f"""You are an expert trading analyst. Analyze the provided trading data and generate insights focusing on {kind}.

Keep your response concise and focused. Limit metrics and recommendations to the most important points.

Your response should be in this exact JSON format:
{{
  "title": "Brief, specific title about the {kind} analysis",
  "description": "Detailed analysis of the findings",
  "metrics": {{
    "strengths": ["2-3 key strengths"],
    "weaknesses": ["2-3 areas for improvement"],
    "patterns": ["2-3 key patterns"],
    "concerns": ["2-3 main concerns"],
    "positives": ["2-3 positive aspects"],
    "effective": ["2-3 effective strategies"]
  }},
  "recommendations": ["3-4 specific, actionable recommendations"]
}}

Summary statistics:
{stats}

Trading data to analyze:
{trade_lines}

Focus your analysis on:
{focus}

Ensure your response is in valid JSON format and includes specific, actionable insights."""


class InsightGenerator:
    def __init__(self, user_id: str, supabase, llm: BaseLLMClient, sleep=asyncio.sleep):
        self.user_id = user_id
        self.supabase = supabase
        self.llm = llm
        self._sleep = sleep

    async def generate_insights(self, trades: Sequence[Trade], insight_type) -> AIInsight:
        insight_type = InsightType(insight_type)
        analyzed = sort_chronologically(trades)[-AI_CONFIG["insight_max_trades"]:]
        system_prompt = build_insight_prompt(insight_type, analyzed)

        try:
            raw = await retry_with_backoff(
                lambda: self.llm.complete(
                    system_prompt,
                    "Generate insights based on the trading data provided.",
                    max_tokens=AI_CONFIG["insight_max_tokens"],
                    temperature=AI_CONFIG["temperature"],
                    json_mode=True,
                ),
                sleep=self._sleep,
            )
        except ProviderError as e:
            logger.error("Error generating insights: %s", e, exc_info=True)
            raise AIServiceError(INSIGHT_FAILURE_MESSAGE) from e

        insight = AIInsight(
            type=insight_type.value,
            content=parse_insight_content(raw, insight_type),
            user_id=self.user_id,
        )
        try:
            rows = await run_query(
                self.supabase.table("ai_insights").insert(_make_json_serializable(insight.to_row())),
                "ai_insights",
                "insert",
            )
        except PersistenceError as e:
            logger.error("Error saving insight: %s", e)
            raise AIServiceError(INSIGHT_FAILURE_MESSAGE) from e
        return AIInsight.from_row(rows[0]) if rows else insight

    async def list_insights(self, insight_type: Optional[InsightType] = None) -> List[AIInsight]:
        query = self.supabase.table("ai_insights").select("*").eq("user_id", self.user_id)
        if insight_type is not None:
            query = query.eq("type", InsightType(insight_type).value)
        rows = await run_query(query.order("created_at", desc=True), "ai_insights", "select")
        return [AIInsight.from_row(row) for row in rows]

    async def delete_insight(self, insight_id: str) -> bool:
        await run_query(
            self.supabase.table("ai_insights").delete().eq("id", insight_id).eq("user_id", self.user_id),
            "ai_insights",
            "delete",
        )
        return True
