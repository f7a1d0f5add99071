"""
Retrieval-augmented trading assistant
Answers a question using trades and plans retrieved from the similarity store,
the recent turns of the conversation and the caller's structured context.
Every exchange is stored in ai_chat_history.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from tradingjournal.config.analysis_config import AI_CONFIG
from tradingjournal.database.db_service import _make_json_serializable, log_event, run_query
from tradingjournal.database.models import ChatExchange, Trade
from tradingjournal.dataflows.embeddings import EmbeddingsService, PlanMatch
from tradingjournal.dataflows.llm_clients import BaseLLMClient
from tradingjournal.dataflows.retry import retry_with_backoff
from tradingjournal.dataflows.trade_metrics import trade_net_profit
from tradingjournal.exceptions import AIServiceError, PersistenceError, ProviderError

logger = logging.getLogger(__name__)

CHAT_FAILURE_MESSAGE = "Failed to generate response. Please try again."

_JSON_BLOCK = re.compile(r"^\{[\s\S]*\}$", re.MULTILINE)
_ROLE_PREFIX = re.compile(r"^(System:|Assistant:|AI:|Bot:)", re.IGNORECASE | re.MULTILINE)
_CODE_FENCE = re.compile(r"```[\s\S]*?```")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")


def sanitize_response(text: str) -> str:
    """Strip JSON blocks, role prefixes and code fences from a model reply."""
    cleaned = (text or "").strip()
    cleaned = _JSON_BLOCK.sub("", cleaned, count=1)
    cleaned = _ROLE_PREFIX.sub("", cleaned)
    cleaned = _CODE_FENCE.sub("", cleaned)
    cleaned = _EXTRA_NEWLINES.sub("\n\n", cleaned)
    return cleaned.strip()


def _trade_context(trade: Trade) -> Dict[str, Any]:
    return {
        "date": trade.date,
        "ticker": trade.ticker,
        "direction": trade.direction,
        "profit_loss": trade.profit_loss,
        "net_profit": trade_net_profit(trade),
        "notes": trade.notes,
    }


def _plan_context(match: PlanMatch) -> Dict[str, Any]:
    plan = match.plan
    return {
        "date": plan.date,
        "market_bias": plan.market_bias,
        "key_levels": plan.key_levels,
        "economic_events": plan.economic_events,
        "news_impact": plan.news_impact,
        "max_daily_loss": plan.max_daily_loss,
        "trade_setups": [
            {
                "ticker": s.ticker,
                "direction": s.direction,
                "entry_price": s.entry_price,
                "stop_loss": s.stop_loss,
                "target_price": s.target_price,
                "risk_amount": s.risk_amount,
                "reward_amount": s.reward_amount,
                "max_position_size": s.max_position_size,
                "entry_criteria": s.entry_criteria,
                "exit_criteria": s.exit_criteria,
            }
            for s in match.setups
        ],
    }


def build_system_prompt(context: Dict[str, Any], trade_count: int, plan_count: int) -> str:
    retrieved = ""
    if trade_count or plan_count:
        retrieved = (
            f"I've found {trade_count} similar trades and {plan_count} relevant trading plans "
            "that might be helpful. I'll consider these when providing my response.\n\n"
        )
    return (
        "You are an expert AI trading assistant with deep knowledge of trading psychology, "
        "technical analysis, and risk management. Your role is to help traders improve their "
        "performance by providing data-driven insights and psychological support.\n\n"
        "Keep your responses clear, concise, and well-formatted. Focus on providing specific, "
        "actionable advice based on the available data.\n\n"
        f"{retrieved}"
        f"Current context: {json.dumps(_make_json_serializable(context))}\n\n"
        "IMPORTANT INSTRUCTIONS:\n"
        "1. Provide your response in clear, natural language\n"
        "2. Use proper paragraphs and formatting for readability\n"
        "3. Do not include any JSON or structured data formats\n"
        "4. Do not include any system messages or metadata\n"
        "5. Start your response directly with the relevant content\n"
        "6. Be concise and to the point"
    )


class ChatAssistant:
    def __init__(self, user_id: str, supabase, llm: BaseLLMClient,
                 embeddings: Optional[EmbeddingsService] = None, sleep=asyncio.sleep):
        self.user_id = user_id
        self.supabase = supabase
        self.llm = llm
        self.embeddings = embeddings
        self._sleep = sleep
        self.last_conversation_id: Optional[str] = None

    async def _retrieve(self, message: str, date_range: Optional[Dict[str, str]]) -> Tuple[List[Trade], List[PlanMatch]]:
        if self.embeddings is None:
            return [], []
        threshold = AI_CONFIG["retrieval_threshold"]
        trades = await self.embeddings.search_trades(
            message, threshold, AI_CONFIG["retrieval_trade_limit"], date_range=date_range
        )
        plans = await self.embeddings.search_plans(message, threshold, AI_CONFIG["retrieval_plan_limit"])
        return trades, plans

    async def chat(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
        message_order: Optional[int] = None,
    ) -> str:
        context = dict(context or {})
        trades, plans = await self._retrieve(message, context.get("date_range"))

        stored_turns: List[ChatExchange] = []
        if conversation_id:
            try:
                stored_turns = await self.get_conversation(conversation_id)
            except PersistenceError as e:
                logger.warning("Could not load conversation %s: %s", conversation_id, e)
        history = stored_turns[-AI_CONFIG["history_turns"]:]

        enhanced_context = {
            **context,
            "trades": [_trade_context(t) for t in trades],
            "plans": [_plan_context(p) for p in plans],
        }
        system_prompt = build_system_prompt(enhanced_context, len(trades), len(plans))

        try:
            raw = await retry_with_backoff(
                lambda: self.llm.complete(
                    system_prompt,
                    message,
                    history=history,
                    max_tokens=AI_CONFIG["chat_max_tokens"],
                    temperature=AI_CONFIG["temperature"],
                ),
                sleep=self._sleep,
            )
        except ProviderError as e:
            logger.error("Error in AI chat: %s", e, exc_info=True)
            raise AIServiceError(CHAT_FAILURE_MESSAGE) from e

        response = sanitize_response(raw or "No response generated")

        conversation_id = conversation_id or str(uuid.uuid4())
        self.last_conversation_id = conversation_id
        exchange = ChatExchange(
            message=message,
            response=response,
            user_id=self.user_id,
            conversation_id=conversation_id,
            context=_make_json_serializable(enhanced_context),
            message_order=message_order if message_order is not None else len(stored_turns),
        )
        try:
            await run_query(
                self.supabase.table("ai_chat_history").insert(exchange.to_row()),
                "ai_chat_history",
                "insert",
            )
        except PersistenceError as e:
            logger.error("Failed to save chat history for %s: %s", conversation_id, e)
        return response

    # --------------------------------------------------------------------- #
    # Conversations
    # --------------------------------------------------------------------- #
    async def get_conversation(self, conversation_id: str) -> List[ChatExchange]:
        rows = await run_query(
            self.supabase.table("ai_chat_history")
            .select("*")
            .eq("user_id", self.user_id)
            .eq("conversation_id", conversation_id)
            .order("message_order"),
            "ai_chat_history",
            "select",
        )
        return [ChatExchange.from_row(row) for row in rows]

    async def list_conversations(self) -> List[Dict[str, Any]]:
        """One summary per conversation, most recently active first."""
        rows = await run_query(
            self.supabase.table("ai_chat_history")
            .select("conversation_id, message, message_order, created_at")
            .eq("user_id", self.user_id)
            .order("created_at"),
            "ai_chat_history",
            "select",
        )
        summaries: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            conversation_id = row.get("conversation_id")
            if not conversation_id:
                continue
            summary = summaries.setdefault(conversation_id, {
                "conversation_id": conversation_id,
                "title": row.get("message", ""),
                "turns": 0,
                "started_at": row.get("created_at"),
                "last_message_at": row.get("created_at"),
            })
            summary["turns"] += 1
            summary["last_message_at"] = row.get("created_at") or summary["last_message_at"]
        return sorted(summaries.values(), key=lambda s: s["last_message_at"] or "", reverse=True)

    async def delete_conversation(self, conversation_id: str) -> bool:
        await run_query(
            self.supabase.table("ai_chat_history")
            .delete()
            .eq("user_id", self.user_id)
            .eq("conversation_id", conversation_id),
            "ai_chat_history",
            "delete",
        )
        await log_event(self.supabase, "conversation_deleted", {
            "user_id": self.user_id,
            "conversation_id": conversation_id,
        })
        return True
