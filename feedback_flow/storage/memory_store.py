"""In-process record store for local development and tests.

Keeps rows in a dict and fans change notifications out to subscribers.
No external dependencies (Supabase) needed.
"""

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from feedback_flow.storage.record_store import ChangeCallback, ChangeEvent, RecordStore

logger = logging.getLogger(__name__)


class InMemoryRecordStore(RecordStore):
    def __init__(self):
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._subscribers: Dict[str, ChangeCallback] = {}
        self._seq = 0

    async def insert(self, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        # monotonic tiebreak so ordering by created_at is stable within one tick
        self._seq += 1
        stored.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        stored["_seq"] = self._seq
        self._rows[stored["id"]] = stored
        await self._notify("INSERT", stored)
        return self._public(stored)

    async def select(
        self,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = [
            r for r in self._rows.values()
            if all(r.get(k) == v for k, v in (filters or {}).items())
        ]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) or "", r["_seq"]), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [self._public(r) for r in rows]

    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._rows.get(record_id)
        return self._public(row) if row is not None else None

    async def update(self, record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        row = self._rows.get(record_id)
        if row is None:
            return None
        row.update(copy.deepcopy(fields))
        await self._notify("UPDATE", row)
        return self._public(row)

    async def delete(self, record_id: str) -> bool:
        row = self._rows.pop(record_id, None)
        if row is None:
            return False
        await self._notify("DELETE", row)
        return True

    async def subscribe(self, callback: ChangeCallback) -> str:
        token = str(uuid.uuid4())
        self._subscribers[token] = callback
        return token

    async def unsubscribe(self, token: str) -> None:
        self._subscribers.pop(token, None)

    async def _notify(self, event: str, row: Dict[str, Any]) -> None:
        change = ChangeEvent(event=event, record_id=row.get("id"), row=self._public(row))
        for callback in list(self._subscribers.values()):
            try:
                result = callback(change)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Change subscriber failed for %s %s", event, change.record_id)

    @staticmethod
    def _public(row: Dict[str, Any]) -> Dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in row.items() if k != "_seq"}
