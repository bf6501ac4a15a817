import asyncio
import os
import sys
import threading

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from planner_service import storage
from planner_service.context_store import ChromaSimilarityIndex, ContextReconciler, ContextStore, plan_scope
from planner_service.errors import ContextStoreStale


class FailingIndex(ChromaSimilarityIndex):
    def upsert(self, record_id, embedding, metadata, document):
        raise ConnectionError("index unreachable")


def vec(*xs):
    return lambda payload: list(xs)


async def _store(db_url, index=None):
    engine, sm = await storage.create_engine_and_sessionmaker(db_url)
    await storage.init_models(engine)
    return engine, ContextStore(sm, index or ChromaSimilarityIndex())


@pytest.mark.asyncio
async def test_search_right_after_write_may_miss_then_sees_record_after_reconcile(db_url):
    engine, store = await _store(db_url)
    try:
        scope = plan_scope("p1")
        rec = await store.upsert(scope, {"note": "likes hiking"}, vec(1.0, 0.0, 0.0))
        assert await store.search(scope, [1.0, 0.0, 0.0], k=3) == []

        applied = await ContextReconciler(store).run_once()
        assert applied == 1
        hits = await store.search(scope, [1.0, 0.0, 0.0], k=3)
        assert [h.id for h in hits] == [rec.id]
        assert hits[0].payload == {"note": "likes hiking"}
        assert hits[0].stale is False
        assert hits[0].score == pytest.approx(1.0)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_background_reconciler_makes_writes_visible_within_max_lag(db_url):
    engine, store = await _store(db_url)
    reconciler = ContextReconciler(store)
    reconciler.start()
    try:
        scope = plan_scope("p2")
        rec = await store.upsert(scope, {"note": "vegetarian"}, vec(0.0, 1.0, 0.0))
        await asyncio.sleep(reconciler.max_lag_seconds + 0.1)
        hits = await store.search(scope, [0.0, 1.0, 0.0])
        assert rec.id in [h.id for h in hits]
    finally:
        await reconciler.stop()
        await engine.dispose()
    assert reconciler.running is False


@pytest.mark.asyncio
async def test_lagging_index_serves_stale_record(db_url):
    engine, store = await _store(db_url)
    try:
        scope = plan_scope("p3")
        rec = await store.upsert(scope, {"budget": 1000}, vec(1.0, 1.0, 0.0), record_id="fact-1")
        await ContextReconciler(store).run_once()
        updated = await store.upsert(scope, {"budget": 1500}, vec(1.0, 1.0, 0.0), record_id="fact-1")
        assert updated.version == rec.version + 1

        hits = await store.search(scope, [1.0, 1.0, 0.0])
        assert len(hits) == 1
        assert hits[0].stale is True
        # structured store is the source of truth for the payload
        assert hits[0].payload == {"budget": 1500}
        with pytest.raises(ContextStoreStale):
            await store.search(scope, [1.0, 1.0, 0.0], strict=True)

        await ContextReconciler(store).run_once()
        hits = await store.search(scope, [1.0, 1.0, 0.0])
        assert hits[0].stale is False
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_search_is_scoped_and_filtered(db_url):
    engine, store = await _store(db_url)
    try:
        a = await store.upsert(plan_scope("a"), {"n": 1}, vec(1.0, 0.0), content_type="location")
        await store.upsert(plan_scope("a"), {"n": 2}, vec(0.9, 0.1), content_type="weather")
        await store.upsert(plan_scope("b"), {"n": 3}, vec(1.0, 0.0), content_type="location")
        await ContextReconciler(store).run_once()

        hits = await store.search(plan_scope("a"), [1.0, 0.0], k=10)
        assert len(hits) == 2
        assert hits[0].id == a.id

        filtered = await store.search(plan_scope("a"), [1.0, 0.0], k=10, filters={"content_type": "location"})
        assert [h.id for h in filtered] == [a.id]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_non_searchable_fact_has_no_outbox_row(db_url):
    engine, store = await _store(db_url)
    try:
        await store.upsert(plan_scope("p4"), {"private": True}, vec(1.0), searchable=False)
        assert await storage.count_outbox(store.sessionmaker, "pending") == 0
        facts = await store.facts(plan_scope("p4"))
        assert facts[0].payload == {"private": True}
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_outbox_entry_backs_off_between_attempts(db_url, fast_settings, monkeypatch):
    monkeypatch.setattr(fast_settings, "OUTBOX_BASE_DELAY_SECONDS", 1.0)
    engine, store = await _store(db_url, FailingIndex())
    now = {"t": 1000.0}
    try:
        await store.upsert(plan_scope("p5"), {"x": 1}, vec(1.0))
        reconciler = ContextReconciler(store, clock=lambda: now["t"])
        assert await reconciler.run_once() == 0
        [row] = await storage.list_outbox(store.sessionmaker, "pending")
        assert row["attempts"] == 1
        assert row["next_attempt_at"] == pytest.approx(1001.0)

        # not due yet
        await reconciler.run_once()
        [row] = await storage.list_outbox(store.sessionmaker, "pending")
        assert row["attempts"] == 1

        now["t"] = 1001.5
        await reconciler.run_once()
        [row] = await storage.list_outbox(store.sessionmaker, "pending")
        assert row["attempts"] == 2
        assert row["next_attempt_at"] == pytest.approx(1003.5)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_outbox_entry_goes_dead_after_max_retries(db_url):
    engine, store = await _store(db_url, FailingIndex())
    try:
        await store.upsert(plan_scope("p6"), {"x": 1}, vec(1.0))
        reconciler = ContextReconciler(store)
        for _ in range(3):
            await reconciler.run_once()
        assert await storage.count_outbox(store.sessionmaker, "pending") == 0
        assert await storage.count_outbox(store.sessionmaker, "dead") == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_backlog_larger_than_one_batch_is_drained_in_a_single_pass(db_url, fast_settings, monkeypatch):
    monkeypatch.setattr(fast_settings, "OUTBOX_BATCH_SIZE", 2)
    engine, store = await _store(db_url)
    try:
        scope = plan_scope("p-backlog")
        records = [await store.upsert(scope, {"n": i}, vec(float(i), 1.0, 0.0)) for i in range(8)]

        assert await ContextReconciler(store).run_once() == 8
        hits = await store.search(scope, [0.0, 1.0, 0.0], k=10)
        assert {h.id for h in hits} == {r.id for r in records}
        assert await storage.count_outbox(store.sessionmaker, "pending") == 0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_background_reconciler_drains_backlog_within_max_lag(db_url, fast_settings, monkeypatch):
    monkeypatch.setattr(fast_settings, "OUTBOX_BATCH_SIZE", 2)
    engine, store = await _store(db_url)
    scope = plan_scope("p-backlog-bg")
    records = [await store.upsert(scope, {"n": i}, vec(1.0, float(i), 0.0)) for i in range(8)]
    reconciler = ContextReconciler(store)
    reconciler.start()
    try:
        await asyncio.sleep(reconciler.max_lag_seconds + 0.2)
        hits = await store.search(scope, [1.0, 0.0, 0.0], k=10)
        assert len(hits) == len(records)
    finally:
        await reconciler.stop()
        await engine.dispose()


class ThreadRecordingIndex(ChromaSimilarityIndex):
    def __init__(self):
        super().__init__()
        self.threads = []

    def upsert(self, record_id, embedding, metadata, document):
        self.threads.append(threading.get_ident())
        super().upsert(record_id, embedding, metadata, document)

    def query(self, embedding, k, where):
        self.threads.append(threading.get_ident())
        return super().query(embedding, k, where)


@pytest.mark.asyncio
async def test_index_calls_run_off_the_event_loop_thread(db_url):
    index = ThreadRecordingIndex()
    engine, store = await _store(db_url, index)
    try:
        scope = plan_scope("p-threads")
        await store.upsert(scope, {"note": "window seat"}, vec(0.0, 0.0, 1.0))
        await ContextReconciler(store).run_once()
        assert len(await store.search(scope, [0.0, 0.0, 1.0])) == 1

        assert len(index.threads) == 2
        assert threading.get_ident() not in index.threads
    finally:
        await engine.dispose()
