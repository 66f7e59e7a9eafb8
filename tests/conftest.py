"""Shared fixtures: an in-memory Supabase table client and fragment streams."""
import asyncio
import os
import sys
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

import pytest

from services.conversation_manager import ConversationManager
from services.llm_client import StreamFragment


class FakeQuery:
    """Mimics the chained postgrest query builder for the calls the manager makes."""

    def __init__(self, rows: List[Dict[str, Any]], op: str, payload: Any = None, count: Optional[str] = None):
        self._rows = rows
        self._op = op
        self._payload = payload
        self._count = count
        self._filters: List[tuple] = []
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def execute(self):
        if self._op == "insert":
            self._rows.append(dict(self._payload))
            return SimpleNamespace(data=[dict(self._payload)], count=None)

        matched = [r for r in self._rows if all(r.get(c) == v for c, v in self._filters)]

        if self._op == "select":
            if self._order:
                column, desc = self._order
                matched = sorted(matched, key=lambda r: r[column], reverse=desc)
            if self._limit is not None:
                matched = matched[:self._limit]
            count = len(matched) if self._count else None
            return SimpleNamespace(data=[dict(r) for r in matched], count=count)

        if self._op == "update":
            for row in matched:
                row.update(self._payload)
            return SimpleNamespace(data=[dict(r) for r in matched], count=None)

        if self._op == "delete":
            for row in matched:
                self._rows.remove(row)
            return SimpleNamespace(data=[dict(r) for r in matched], count=None)

        raise AssertionError(f"unsupported op {self._op}")


class FakeTable:
    def __init__(self, rows):
        self.rows = rows

    def select(self, columns="*", count=None):
        return FakeQuery(self.rows, "select", count=count)

    def insert(self, row):
        return FakeQuery(self.rows, "insert", payload=row)

    def update(self, values):
        return FakeQuery(self.rows, "update", payload=values)

    def delete(self):
        return FakeQuery(self.rows, "delete")


class FakeSupabaseClient:
    """In-memory stand-in for supabase.Client (table API only)."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}

    def table(self, name):
        return FakeTable(self.tables.setdefault(name, []))


@pytest.fixture
def supabase_client():
    return FakeSupabaseClient()


@pytest.fixture
def manager(supabase_client):
    """ConversationManager backed by the in-memory client."""
    return ConversationManager(client=supabase_client)


@pytest.fixture
def make_fragments():
    """Factory for async fragment streams; ``None`` pieces carry no content."""
    def _make(pieces, error=None, delay=0.0):
        async def _gen():
            for piece in pieces:
                if delay:
                    await asyncio.sleep(delay)
                yield StreamFragment(content=piece)
            if error is not None:
                raise error
        return _gen()
    return _make
