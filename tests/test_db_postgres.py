import os
import threading
import time
import uuid

import pytest

from alarmqueue import db
from alarmqueue.db import PostgresKeyValueStore
from alarmqueue.queue.models import QueueStatus
from alarmqueue.queue.queue_core import QueueCore

DSN = os.environ.get("TEST_DATABASE_URL")

requires_postgres = pytest.mark.skipif(not DSN, reason="TEST_DATABASE_URL is required for Postgres tests")


class FakeCursor:
    """Answers the queries `update` issues; the advisory lock never blocks."""

    def __init__(self, table):
        self.table = table
        self._row = None

    def execute(self, sql, params=None):
        if "pg_advisory_xact_lock" in sql:
            return
        if sql.strip().startswith("SELECT value"):
            value = self.table.get(params)
            time.sleep(0.001)
            self._row = {"value": value} if value is not None else None
        elif "INSERT INTO queue_kv" in sql:
            scope, key, value = params
            self.table[(scope, key)] = value

    def fetchone(self):
        return self._row

    def close(self):
        pass


class FakeConnection:
    closed = 0

    def __init__(self, table):
        self.table = table

    def cursor(self, cursor_factory=None):
        return FakeCursor(self.table)

    def commit(self):
        pass

    def rollback(self):
        pass


class FakePool:
    closed = False

    def __init__(self, minconn, maxconn, dsn):
        self.table = {}
        self.checked_out = 0
        self._lock = threading.Lock()

    def getconn(self):
        with self._lock:
            self.checked_out += 1
        return FakeConnection(self.table)

    def putconn(self, conn, close=False):
        with self._lock:
            self.checked_out -= 1

    def closeall(self):
        self.closed = True


def _bump(current):
    return str(int(current or 0) + 1)


def test_shared_store_updates_from_many_threads(monkeypatch):
    monkeypatch.setattr(db, "ThreadedConnectionPool", FakePool)
    store = PostgresKeyValueStore("postgresql://fake")

    def worker():
        for _ in range(20):
            store.update("scope", "counter", _bump)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.pool.table[("scope", "counter")] == "80"
    assert store.pool.checked_out == 0
    store.close()


@pytest.fixture
def pg_store():
    store = PostgresKeyValueStore(DSN)
    store.ensure_schema()
    yield store
    store.close()


@pytest.fixture
def scope():
    return f"test-{uuid.uuid4()}"


@requires_postgres
def test_set_get_scan(pg_store, scope):
    pg_store.set_many(scope, {"telegram_queue_entry_a": "1", "telegram_queue_entry_b": "2", "other": "3"})

    assert pg_store.get(scope, "other") == "3"
    assert pg_store.get_many(scope, ["telegram_queue_entry_a", "missing"]) == {"telegram_queue_entry_a": "1"}
    assert set(pg_store.scan(scope, "telegram_queue_entry_")) == {"telegram_queue_entry_a", "telegram_queue_entry_b"}


@requires_postgres
def test_scan_escapes_like_wildcards(pg_store, scope):
    pg_store.set_many(scope, {"a_1": "x", "ab1": "y"})

    assert set(pg_store.scan(scope, "a_")) == {"a_1"}


@requires_postgres
def test_concurrent_updates_from_separate_stores(scope):
    def bump():
        store = PostgresKeyValueStore(DSN)
        try:
            for _ in range(20):
                store.update(scope, "counter", _bump)
        finally:
            store.close()

    PostgresKeyValueStore(DSN).ensure_schema()
    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    reader = PostgresKeyValueStore(DSN)
    assert reader.get(scope, "counter") == "80"
    reader.close()


@requires_postgres
def test_concurrent_enqueue_on_one_shared_store(pg_store, scope):
    queue = QueueCore(pg_store)
    ids = []
    ids_lock = threading.Lock()

    def producer(n):
        for i in range(10):
            entry = queue.normalize({"text": f"{n}-{i}"}, {"tenantId": scope, "originId": f"dev-{n}"})
            entry.priority = 1
            queue.enqueue(entry)
            with ids_lock:
                ids.append(entry.queue_id)

    threads = [threading.Thread(target=producer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(queue.get_index(scope, 1)) == sorted(ids)
    assert len(ids) == 40


@requires_postgres
def test_queue_over_postgres(pg_store, scope):
    queue = QueueCore(pg_store)
    entry = queue.normalize({"text": "hi"}, {"tenantId": scope, "originId": "dev"})
    entry.priority = 2
    queue.enqueue(entry)

    queue.update_status(scope, entry.queue_id, QueueStatus.SENDING)
    queue.update_status(scope, entry.queue_id, QueueStatus.SENT)

    assert queue.get_index(scope, 2) == []
    assert queue.get_stats(scope).sent_count == 1
