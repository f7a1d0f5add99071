"""
Shared pytest fixtures for the trading journal AI core tests.

Provides an in-memory stand-in for the async Supabase client, a deterministic
embedder, a scripted LLM client and trade factories.
"""
import copy
import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pytest

from tradingjournal.database.models import Trade
from tradingjournal.dataflows.llm_clients import BaseEmbedder, BaseLLMClient, ProviderKind
from tradingjournal.exceptions import ProviderTransientError

USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_USER_ID = "22222222-2222-2222-2222-222222222222"


# ============================================================================
# Supabase double
# ============================================================================

class FakeResponse:
    def __init__(self, data):
        self.data = data


def _sort_key(column):
    def key(row):
        value = row.get(column)
        return (1, 0) if value is None else (0, value)
    return key


class FakeQuery:
    """Mimics the PostgREST builder chain: table().select().eq()...execute()"""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.action = "select"
        self.payload = None
        self.on_conflict: Optional[str] = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.orders: List[tuple] = []
        self._limit: Optional[int] = None

    def select(self, *columns, **kwargs):
        return self

    def insert(self, payload, **kwargs):
        self.action, self.payload = "insert", payload
        return self

    def update(self, payload, **kwargs):
        self.action, self.payload = "update", payload
        return self

    def upsert(self, payload, on_conflict: str = "", **kwargs):
        self.action, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def delete(self, **kwargs):
        self.action = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        allowed = set(values)
        self.filters.append(lambda row: row.get(column) in allowed)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) <= value)
        return self

    def order(self, column, desc: bool = False, **kwargs):
        self.orders.append((column, desc))
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    async def execute(self):
        self.db.calls.append((self.table, self.action))
        if (self.table, self.action) in self.db.failures:
            raise RuntimeError(f"simulated {self.action} failure on {self.table}")
        rows = self.db.tables.setdefault(self.table, [])

        if self.action == "select":
            result = [r for r in rows if self._matches(r)]
            for column, desc in reversed(self.orders):
                result.sort(key=_sort_key(column), reverse=desc)
            if self._limit is not None:
                result = result[:self._limit]
            return FakeResponse(copy.deepcopy(result))

        if self.action == "insert":
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = [self.db._store(self.table, dict(item)) for item in payload]
            return FakeResponse(copy.deepcopy(inserted))

        if self.action == "upsert":
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            keys = [k.strip() for k in (self.on_conflict or "id").split(",")]
            saved = []
            for item in payload:
                existing = next((r for r in rows if all(r.get(k) == item.get(k) for k in keys)), None)
                if existing is None:
                    saved.append(self.db._store(self.table, dict(item)))
                else:
                    existing.update({k: v for k, v in item.items() if k not in ("id", "created_at")})
                    saved.append(existing)
            return FakeResponse(copy.deepcopy(saved))

        if self.action == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self.payload)
                    updated.append(row)
            return FakeResponse(copy.deepcopy(updated))

        if self.action == "delete":
            deleted = [r for r in rows if self._matches(r)]
            self.db.tables[self.table] = [r for r in rows if not self._matches(r)]
            return FakeResponse(copy.deepcopy(deleted))

        raise AssertionError(f"unsupported action {self.action}")


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self.db = db
        self.name = name
        self.params = params

    async def execute(self):
        self.db.calls.append((self.name, "rpc"))
        if (self.name, "rpc") in self.db.failures:
            raise RuntimeError(f"simulated failure of {self.name}")
        handler = self.db.rpc_handlers[self.name]
        return FakeResponse(handler(self.params))


class FakeSupabase:
    """In-memory async Supabase client with pgvector-style search RPCs"""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.failures = set()
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.rpc_handlers = {
            "search_trade_embeddings": lambda p: self._search("trade_embeddings", "trade_id", p),
            "search_plan_embeddings": lambda p: self._search("plan_embeddings", "trading_plan_id", p),
        }

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> FakeRpc:
        return FakeRpc(self, name, params)

    def fail(self, table: str, action: str):
        self.failures.add((table, action))

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.get(table, [])

    def writes(self, table: str) -> List[str]:
        return [action for name, action in self.calls
                if name == table and action in ("insert", "upsert", "update")]

    def seed(self, table: str, rows):
        for row in rows:
            self._store(table, dict(row))

    def _store(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._clock += timedelta(seconds=1)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", self._clock.isoformat())
        self.tables.setdefault(table, []).append(row)
        return row

    def _search(self, table: str, id_column: str, params: Dict[str, Any]):
        query = np.asarray(params["query_embedding"], dtype=float)
        results = []
        for row in self.rows(table):
            if row.get("user_id") != params["user_id_input"]:
                continue
            vector = np.asarray(row["embedding"], dtype=float)
            denominator = np.linalg.norm(query) * np.linalg.norm(vector)
            similarity = float(query @ vector / denominator) if denominator else 0.0
            if similarity > params["match_threshold"]:
                results.append({id_column: row[id_column], "similarity": similarity})
        results.sort(key=lambda r: r["similarity"], reverse=True)
        return results[:params["match_count"]]


# ============================================================================
# Provider doubles
# ============================================================================

class FakeEmbedder(BaseEmbedder):
    """Bag-of-words hashing embedder; identical text gives identical vectors"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise ProviderTransientError("embedding provider unreachable")
        vector = np.zeros(self.dimensions)
        for word in text.lower().split():
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        norm = np.linalg.norm(vector)
        return (vector / norm if norm else vector).tolist()


class ScriptedLLM(BaseLLMClient):
    """Returns queued replies in order; queued exceptions are raised"""

    kind = ProviderKind.OPENAI

    def __init__(self, replies=None):
        super().__init__("sk-test", "gpt-4o")
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    def _create_client(self, api_key: str):
        return object()

    async def complete(self, system_prompt, user_message, history=None, max_tokens=1000,
                       temperature=0.7, json_mode=False):
        self.calls.append({
            "system_prompt": system_prompt,
            "user_message": user_message,
            "history": list(history or []),
            "max_tokens": max_tokens,
            "temperature": temperature,
            "json_mode": json_mode,
        })
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return reply


async def no_sleep(seconds):
    return None


# ============================================================================
# Trade factories
# ============================================================================

def make_trade(net_profit, hour=9, contracts=1, duration=600, ticker="ES", day=0,
               trade_id=None, user_id=USER_ID, direction="long", entry_price=None,
               notes=None, strategy_id=None, minute=0):
    entry = datetime(2024, 1, 2, hour, minute, tzinfo=timezone.utc) + timedelta(days=day)
    exit_ = entry + timedelta(seconds=duration)
    return Trade(
        ticker=ticker,
        id=trade_id or str(uuid.uuid4()),
        user_id=user_id,
        date=entry.date().isoformat(),
        entry_time=entry.isoformat(),
        exit_time=exit_.isoformat(),
        duration_seconds=duration,
        direction=direction,
        contracts=contracts,
        profit_loss=net_profit,
        commission_per_contract=0.0,
        net_profit=net_profit,
        entry_price=entry_price,
        notes=notes,
        strategy_id=strategy_id,
    )


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def user_id():
    return USER_ID
