"""Tests for the keyed state store."""

import threading

from agent_runner.resilience.store import KeyedStateStore


def counter():
    return {"count": 0}


def bump(state):
    state["count"] += 1
    return state["count"]


class TestKeyedStateStore:
    def test_update_creates_value_lazily(self):
        store = KeyedStateStore(counter)
        assert "a" not in store

        assert store.update("a", bump) == 1
        assert store.update("a", bump) == 2
        assert store.get("a") == {"count": 2}
        assert len(store) == 1

    def test_concurrent_updates_keep_every_increment(self):
        store = KeyedStateStore(counter)

        def worker():
            for _ in range(200):
                store.update("shared", bump)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("shared") == {"count": 1600}

    def test_clear_keeps_the_key_lock(self):
        store = KeyedStateStore(counter)
        store.update("a", bump)
        before = store._lock_for("a")

        store.clear()

        assert "a" not in store
        assert store._lock_for("a") is before
        assert store.update("a", bump) == 1

    def test_update_after_clear_waits_for_in_flight_update(self):
        store = KeyedStateStore(counter)
        order = []
        holding = threading.Event()
        release = threading.Event()

        def slow(state):
            holding.set()
            release.wait(timeout=5)
            order.append("first")
            return bump(state)

        def fast(state):
            order.append("second")
            return bump(state)

        first = threading.Thread(target=store.update, args=("a", slow))
        first.start()
        assert holding.wait(timeout=5)

        store.clear()
        second = threading.Thread(target=store.update, args=("a", fast))
        second.start()
        second.join(timeout=0.1)
        assert order == []

        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert order == ["first", "second"]
        # The in-flight update wrote to the dropped value; the next one
        # starts from a fresh state
        assert store.get("a") == {"count": 1}
