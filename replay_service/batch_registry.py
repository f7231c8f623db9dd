"""
Batch registry: where batch descriptors live between and across runs.

The orchestrator only needs ``get``/``put``/``list``. The SQL registry
survives restarts; the in-memory one is for tests and one-off scripts.
Both store serialised descriptors, so a caller never shares a mutable
batch object with the registry.
"""

from typing import Dict, List, Optional, Protocol

from historical_replay.intervals import now_ms
from historical_replay.schemas import ReplayBatch

from . import storage as st


class BatchRegistry(Protocol):
    async def get(self, batch_id: str) -> Optional[ReplayBatch]:
        ...

    async def put(self, batch: ReplayBatch) -> None:
        ...

    async def list(self) -> List[ReplayBatch]:
        ...


class InMemoryBatchRegistry:
    def __init__(self):
        self._items: Dict[str, dict] = {}

    async def get(self, batch_id: str) -> Optional[ReplayBatch]:
        data = self._items.get(batch_id)
        return ReplayBatch.from_dict(data) if data else None

    async def put(self, batch: ReplayBatch) -> None:
        self._items[batch.batch_id] = batch.to_dict()

    async def list(self) -> List[ReplayBatch]:
        batches = [ReplayBatch.from_dict(d) for d in self._items.values()]
        return sorted(batches, key=lambda b: b.created_at_ms, reverse=True)


class SqlBatchRegistry:
    def __init__(self, sessionmaker):
        self.sessionmaker = sessionmaker

    async def get(self, batch_id: str) -> Optional[ReplayBatch]:
        row = await st.get_batch(self.sessionmaker, batch_id)
        return ReplayBatch.from_dict(row["descriptor"]) if row else None

    async def put(self, batch: ReplayBatch) -> None:
        await st.upsert_batch(
            self.sessionmaker,
            batch.batch_id,
            batch.symbol,
            batch.status.value,
            batch.to_dict(),
            now_ms(),
        )

    async def list(self) -> List[ReplayBatch]:
        rows = await st.list_batches(self.sessionmaker)
        return [ReplayBatch.from_dict(r["descriptor"]) for r in rows]


def create_batch_registry(kind: str, sessionmaker=None) -> BatchRegistry:
    if kind == "memory":
        return InMemoryBatchRegistry()
    if kind == "sql":
        if sessionmaker is None:
            raise ValueError("sql batch registry needs a sessionmaker")
        return SqlBatchRegistry(sessionmaker)
    raise ValueError(f"unknown batch registry '{kind}'")
