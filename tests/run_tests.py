#!/usr/bin/env python3
"""Standalone test runner for dnsprobe.py (no pytest needed, no network)."""

from __future__ import annotations

import asyncio
import math
import sqlite3
import sys
import tempfile
import traceback
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
import dnsprobe as probe

PASSED = 0
FAILED = 0


def test(name, func):
    global PASSED, FAILED
    try:
        func()
        print(f"  PASS: {name}")
        PASSED += 1
    except Exception as e:
        print(f"  FAIL: {name}")
        traceback.print_exc()
        FAILED += 1


def close(a, b, tol=1e-9):
    return math.isclose(a, b, rel_tol=tol, abs_tol=tol)


def received(t, ms):
    return probe.Event(t, "abcd.example.com", probe.EventKind.RECEIVE_DATA, ms)


# --- Statistics ---

print("--- Statistics ---")


def test_running_stats():
    d = probe.Domain("example.com")
    for i, (ms, avg, std) in enumerate([(10, 10, 0), (20, 15, 5),
                                        (30, 20, math.sqrt(200 / 3))]):
        assert d.update(received(1000 + i, ms))
        assert close(d.query_time_avg, avg), f"avg {d.query_time_avg} != {avg}"
        assert close(d.query_time_stddev, std), f"stddev {d.query_time_stddev} != {std}"
test("Mean and population stddev after each update", test_running_stats)


def test_send_request_no_stats():
    d = probe.Domain("example.com")
    assert not d.update(probe.Event(1000, "x.example.com", probe.EventKind.SEND_REQUEST, 5.0))
    assert d.query_count == 0 and d.time_first == 0
    assert len(d.pending_events) == 1
test("Unanswered query only queued", test_send_request_no_stats)


def test_time_first_once():
    d = probe.Domain("example.com")
    d.update(received(1000, 1))
    d.update(received(2000, 1))
    assert (d.time_first, d.time_last) == (1000, 2000)
test("time_first set once", test_time_first_once)


# --- Probe targets ---

print("\n--- Probe targets ---")


def test_targets():
    a, b = probe.Domain("example.com"), probe.Domain("example.com")
    for _ in range(100):
        label = a.generate_probe_target()
        assert 4 <= len(label) <= 10, label
        assert label.isalnum() and label == label.lower(), label
        assert label == b.generate_probe_target()
test("Labels reproducible and well formed", test_targets)


# --- Vantage ---

print("\n--- Vantage ---")


class Sender:
    async def send_query(self, domain):
        reply = probe.Reply(1000, f"{domain.generate_probe_target()}.{domain.name}")
        reply.kind = probe.EventKind.RECEIVE_DATA
        reply.duration_ms = 3.0
        return reply, True

    def close(self):
        pass


class Store:
    saves = 0

    def load_domains(self):
        return [probe.Domain("example.com", rank=1)]

    def save_domains(self, domains):
        self.saves += 1
        for d in domains:
            d.drain_events()


def test_flush_cadence():
    async def scenario():
        store = Store()
        v = probe.Vantage(store, flush_every=4, sender_factory=lambda d: Sender())
        v.load()
        for _ in range(5):
            v.on_tick()
        await v.wait_for_cycles()
        return v, store

    v, store = asyncio.run(scenario())
    assert store.saves == 1, f"got {store.saves} flushes"
    assert v.ticks == 1
test("Flush after four ticks", test_flush_cadence)


# --- Database ---

print("\n--- Database ---")


def test_db():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        dbpath = Path(f.name)
    try:
        with probe.SQLiteStore(str(dbpath)) as store:
            store.add_domains([probe.Domain("example.com")])
            d = store.load_domains()[0]
            d.update(received(1000, 25))
            store.save_domains([d])
            assert d.pending_events == ()

        conn = sqlite3.connect(dbpath)
        assert conn.execute("SELECT COUNT(*) FROM measurement").fetchone()[0] == 1
        assert conn.execute("SELECT query_count FROM domain").fetchone()[0] == 1
        conn.close()
    finally:
        dbpath.unlink(missing_ok=True)
test("DB add, save, drain", test_db)


# --- Summary ---

print()
print(f"{'='*40}")
print(f" {PASSED} passed, {FAILED} failed")
print(f"{'='*40}")
sys.exit(1 if FAILED else 0)
