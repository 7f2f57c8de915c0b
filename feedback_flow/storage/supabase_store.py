"""Record store backed by a Supabase (PostgREST + Realtime) table."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from supabase import AsyncClient

from feedback_flow.storage.record_store import ChangeCallback, ChangeEvent, RecordStore

logger = logging.getLogger(__name__)


class SupabaseRecordStore(RecordStore):
    """Reads and writes job rows through the Supabase client.

    Change notifications come from a Realtime `postgres_changes` channel on
    the same table.
    """

    def __init__(self, client: AsyncClient, table: str = "data_sources", schema: str = "public"):
        self._client = client
        self._table = table
        self._schema = schema
        self._pending: Set[asyncio.Task] = set()

    def _query(self):
        return self._client.table(self._table)

    async def insert(self, row: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._query().insert(row).execute()
        if not response.data:
            raise RuntimeError(f"No data returned after insert into {self._table}")
        return response.data[0]

    async def select(
        self,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = self._query().select("*")
        for column, value in (filters or {}).items():
            query = query.eq(column, value)
        if order_by:
            query = query.order(order_by, desc=descending)
        if limit is not None:
            query = query.limit(limit)
        response = await query.execute()
        return response.data or []

    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        response = await self._query().select("*").eq("id", record_id).limit(1).execute()
        return response.data[0] if response.data else None

    async def update(self, record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = await self._query().update(fields).eq("id", record_id).execute()
        return response.data[0] if response.data else None

    async def delete(self, record_id: str) -> bool:
        response = await self._query().delete().eq("id", record_id).execute()
        return bool(response.data)

    async def subscribe(self, callback: ChangeCallback):
        def _on_change(payload: Dict[str, Any]) -> None:
            change = _to_change_event(payload)
            try:
                result = callback(change)
                if asyncio.iscoroutine(result):
                    self._track(asyncio.ensure_future(result), change)
            except Exception:
                logger.exception("Change subscriber failed for %s %s", change.event, change.record_id)

        channel = self._client.channel(f"{self._table}-changes")
        channel.on_postgres_changes(
            "*",
            schema=self._schema,
            table=self._table,
            callback=_on_change,
        )
        await channel.subscribe()
        return channel

    def _track(self, task: asyncio.Future, change: ChangeEvent) -> None:
        self._pending.add(task)

        def _done(t: asyncio.Future) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Change subscriber failed for %s %s", change.event, change.record_id, exc_info=t.exception(),
                )

        task.add_done_callback(_done)

    async def _cancel_pending(self) -> None:
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    async def unsubscribe(self, token) -> None:
        await self._client.remove_channel(token)
        await self._cancel_pending()

    async def close(self) -> None:
        await self._cancel_pending()


def _to_change_event(payload: Dict[str, Any]) -> ChangeEvent:
    data = payload.get("data", payload)
    event = (data.get("type") or data.get("eventType") or "").upper()
    row = data.get("record") or data.get("new") or {}
    old = data.get("old_record") or data.get("old") or {}
    record_id = row.get("id", old.get("id"))
    return ChangeEvent(
        event=event,
        record_id=str(record_id) if record_id is not None else None,
        row=row or old,
    )
