"""
Context store: structured facts plus an eventually consistent similarity index.

``upsert`` writes the fact and an outbox row in one transaction; nothing touches
the similarity index on the write path. ``ContextReconciler`` drains the outbox
into a chromadb collection with per-entry exponential backoff, so a search made
right after a write may miss the record, and one made after ``max_lag_seconds``
will see it. Search hits are re-read from the structured store; a hit whose
indexed version lags the stored fact is still served, flagged ``stale``.
"""

import asyncio
import inspect
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import chromadb

from . import storage
from .config import get_settings
from .errors import ContextStoreStale
from .metrics import outbox_backlog, outbox_dead_total, outbox_retries_total
from .models import ContextRecord, new_id

logger = logging.getLogger("planner_service.context_store")

EmbeddingProvider = Callable[[Dict[str, Any]], Any]


def plan_scope(plan_id: str) -> str:
    return f"plan:{plan_id}"


class ChromaSimilarityIndex:
    """Nearest-neighbour index over fact embeddings, one chromadb collection per store."""

    def __init__(self, client=None, collection_name: Optional[str] = None):
        self._client = client if client is not None else chromadb.EphemeralClient()
        self.collection_name = collection_name or f"context-{new_id()}"
        self._collection = self._client.get_or_create_collection(self.collection_name)

    def upsert(self, record_id: str, embedding: List[float], metadata: Dict[str, Any], document: str) -> None:
        # chromadb rejects None metadata values
        clean = {k: v for k, v in metadata.items() if v is not None}
        self._collection.upsert(ids=[record_id], embeddings=[list(embedding)], metadatas=[clean], documents=[document])

    def query(self, embedding: List[float], k: int, where: Dict[str, Any]) -> List[Dict[str, Any]]:
        total = self._collection.count()
        if total == 0:
            return []
        conditions = [{key: value} for key, value in where.items()]
        clause = conditions[0] if len(conditions) == 1 else {"$and": conditions}
        results = self._collection.query(
            query_embeddings=[list(embedding)],
            n_results=min(k, total),
            where=clause,
            include=["metadatas", "distances"],
        )
        ids = (results.get("ids") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0]
        return [
            {"id": rid, "distance": float(dist), "metadata": meta or {}}
            for rid, dist, meta in zip(ids, distances, metadatas)
        ]

    def count(self) -> int:
        return self._collection.count()


async def _embed(provider: EmbeddingProvider, payload: Dict[str, Any]) -> List[float]:
    result = provider(payload)
    if inspect.isawaitable(result):
        result = await result
    return [float(x) for x in result]


class ContextStore:
    def __init__(self, sessionmaker, index: Optional[ChromaSimilarityIndex] = None):
        self._sessionmaker = sessionmaker
        self.index = index if index is not None else ChromaSimilarityIndex()

    @property
    def sessionmaker(self):
        return self._sessionmaker

    async def upsert(
        self,
        scope: str,
        payload: Dict[str, Any],
        embedding_provider: EmbeddingProvider,
        *,
        searchable: bool = True,
        content_type: str = "note",
        source_run_id: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> ContextRecord:
        """Store a fact; searchable facts reach the similarity index through the outbox."""
        embedding = await _embed(embedding_provider, payload) if searchable else []
        record = ContextRecord(
            scope=scope,
            payload=dict(payload),
            embedding=embedding,
            source_run_id=source_run_id,
            content_type=content_type,
        )
        if record_id:
            record.id = record_id
        return await storage.write_context_fact(self._sessionmaker, record, searchable=searchable)

    async def search(
        self,
        scope: str,
        query_embedding: List[float],
        k: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
        *,
        strict: bool = False,
    ) -> List[ContextRecord]:
        """Nearest facts in ``scope``, ordered by similarity.

        With ``strict`` a lagging hit raises ContextStoreStale instead of being
        served with ``stale=True``.
        """
        k = int(k or get_settings().CONTEXT_SEARCH_K)
        where = {"scope": scope}
        where.update(filters or {})
        hits = await asyncio.to_thread(self.index.query, query_embedding, k, where)
        facts = await storage.get_context_facts(self._sessionmaker, [h["id"] for h in hits])

        records: List[ContextRecord] = []
        for hit in hits:
            fact = facts.get(hit["id"])
            if fact is None:
                continue
            indexed_version = int(hit["metadata"].get("fact_version", 0))
            fact.score = 1.0 / (1.0 + hit["distance"])
            fact.stale = indexed_version < fact.version
            records.append(fact)

        stale_ids = [r.id for r in records if r.stale]
        if stale_ids:
            if strict:
                raise ContextStoreStale(stale_ids)
            logger.info("serving %d stale context records in %s", len(stale_ids), scope)
        return records

    async def facts(self, scope: str, content_type: Optional[str] = None) -> List[ContextRecord]:
        return await storage.find_context_facts(self._sessionmaker, scope, content_type)


class ContextReconciler:
    """Background worker that drains the context outbox into the similarity index."""

    def __init__(self, store: ContextStore, *, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def poll_interval(self) -> float:
        return max(0.01, float(get_settings().OUTBOX_POLL_INTERVAL_SECONDS))

    @property
    def max_lag_seconds(self) -> float:
        """Upper bound between an outbox write and its visibility, absent index failures."""
        return self.poll_interval * 2

    async def run_once(self) -> int:
        """Drain every due outbox entry; returns how many were applied.

        Batches of OUTBOX_BATCH_SIZE are fetched until a short batch comes
        back, so a backlog larger than one batch still lands within
        ``max_lag_seconds``. Each entry is tried at most once per call.
        """
        cfg = get_settings()
        sm = self._store.sessionmaker
        batch_size = max(1, int(cfg.OUTBOX_BATCH_SIZE))
        now = self._clock()
        tried = set()
        applied = 0
        while True:
            entries = await storage.fetch_due_outbox(sm, now, batch_size)
            fresh = [e for e in entries if e["id"] not in tried]
            for entry in fresh:
                tried.add(entry["id"])
                if await self._apply(entry, now):
                    applied += 1
            if not fresh or len(entries) < batch_size:
                break
        try:
            outbox_backlog.set(await storage.count_outbox(sm, "pending"))
        except Exception:
            logger.exception("failed to refresh outbox backlog gauge")
        return applied

    async def _apply(self, entry: Dict[str, Any], now: float) -> bool:
        sm = self._store.sessionmaker
        try:
            facts = await storage.get_context_facts(sm, [entry["fact_id"]])
            fact = facts.get(entry["fact_id"])
            if fact is None or fact.version > entry["fact_version"]:
                # superseded by a later write with its own outbox row
                await storage.mark_outbox_done(sm, entry["id"])
                return False
            await asyncio.to_thread(
                self._store.index.upsert,
                fact.id,
                entry["embedding"] or [],
                {
                    "scope": fact.scope,
                    "content_type": fact.content_type,
                    "fact_version": fact.version,
                    "source_run_id": fact.source_run_id,
                },
                json.dumps(fact.payload, sort_keys=True, default=str),
            )
            await storage.mark_outbox_done(sm, entry["id"])
            return True
        except Exception as e:
            await self._reschedule(entry, e, now)
            return False

    async def _reschedule(self, entry: Dict[str, Any], exc: Exception, now: float) -> None:
        cfg = get_settings()
        attempts = int(entry.get("attempts", 0)) + 1
        delay = min(float(cfg.OUTBOX_MAX_DELAY_SECONDS), float(cfg.OUTBOX_BASE_DELAY_SECONDS) * (2 ** (attempts - 1)))
        dead = attempts >= int(cfg.OUTBOX_MAX_RETRIES)
        await storage.reschedule_outbox(self._store.sessionmaker, entry["id"], attempts, now + delay, str(exc), dead=dead)
        if dead:
            outbox_dead_total.inc()
            logger.error("outbox entry %s for fact %s exceeded max retries and is dead: %s", entry["id"], entry["fact_id"], exc)
        else:
            outbox_retries_total.inc()
            logger.warning("outbox entry %s failed attempt %d, next in %.1fs: %s", entry["id"], attempts, delay, exc)

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("error during outbox reconciliation")
            await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
