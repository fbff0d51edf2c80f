#!/usr/bin/env python3
"""DNS Probe Dashboard - JSON API over the dnsprobe database (stdlib only).

Reads the domain and measurement tables written by dnsprobe.py for later
analysis of the collected latencies.

Usage:
    python3 probe_dashboard.py                       # http://0.0.0.0:5000
    python3 probe_dashboard.py --port 8080 --db x.db
"""

from __future__ import annotations

import argparse
import json
import os
import sqlite3
import sys
from http.server import HTTPServer, BaseHTTPRequestHandler
from pathlib import Path
from urllib.parse import urlparse

SCRIPT_DIR = Path(__file__).parent
DB_FILE = Path(os.environ.get("DNSPROBE_DB",
                              Path(os.environ.get("DATA_DIR", SCRIPT_DIR / "data")) / "dnsprobe.db"))

# measurement.type values, see dnsprobe.EventKind
KIND_NAMES = {0: "SEND_REQUEST", 1: "RECEIVE_DATA", 2: "TIMEOUT", 3: "ERROR"}


def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_FILE)
    conn.row_factory = sqlite3.Row
    return conn


def q(sql: str, params: tuple = ()) -> list[dict]:
    conn = get_db()
    try:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]
    finally:
        conn.close()


def q1(sql: str, params: tuple = ()) -> dict | None:
    rows = q(sql, params)
    return rows[0] if rows else None


# ---------------------------------------------------------------------------
# API handlers — each returns a JSON-serializable object
# ---------------------------------------------------------------------------

def api_domains() -> list[dict]:
    return q("""
        SELECT rank, name,
               ROUND(query_time_avg, 3) as avg_ms,
               ROUND(query_time_stddev, 3) as stddev_ms,
               query_count,
               datetime(NULLIF(time_first, 0), 'unixepoch', 'localtime') as first,
               datetime(NULLIF(time_last, 0), 'unixepoch', 'localtime') as last
        FROM domain ORDER BY rank
    """)


def api_measurements(rank: int) -> list[dict]:
    rows = q("""
        SELECT datetime(time, 'unixepoch', 'localtime') as time,
               target, type, ROUND(duration_ms, 3) as ms
        FROM measurement WHERE domain_rank=?
        ORDER BY id DESC LIMIT 200
    """, (rank,))
    for r in rows:
        r["kind"] = KIND_NAMES.get(r.pop("type"), "UNKNOWN")
    return rows


def api_kinds(rank: int) -> list[dict]:
    rows = q("""
        SELECT type, COUNT(*) as count
        FROM measurement WHERE domain_rank=?
        GROUP BY type ORDER BY type
    """, (rank,))
    return [{"kind": KIND_NAMES.get(r["type"], "UNKNOWN"), "count": r["count"]}
            for r in rows]


def api_latency_distribution(rank: int) -> list[dict]:
    return q("""
        SELECT
            CASE
                WHEN duration_ms < 10 THEN '<10ms'
                WHEN duration_ms < 25 THEN '10-25ms'
                WHEN duration_ms < 50 THEN '25-50ms'
                WHEN duration_ms < 100 THEN '50-100ms'
                WHEN duration_ms < 250 THEN '100-250ms'
                WHEN duration_ms < 500 THEN '250-500ms'
                WHEN duration_ms < 1000 THEN '500ms-1s'
                ELSE '>1s'
            END as bucket, COUNT(*) as count
        FROM measurement
        WHERE domain_rank=? AND type=1 AND duration_ms IS NOT NULL
        GROUP BY bucket ORDER BY MIN(duration_ms)
    """, (rank,))


def api_summary() -> dict:
    domains = q1("SELECT COUNT(*) as n, SUM(query_count) as answered FROM domain")
    total = q1("SELECT COUNT(*) as n FROM measurement")
    return {
        "domains": domains["n"] if domains else 0,
        "answered_queries": (domains["answered"] or 0) if domains else 0,
        "measurements": total["n"] if total else 0,
    }


# Map URL prefix -> handler (handler receives the domain rank)
API_ROUTES: dict[str, callable] = {
    "/api/domains":               lambda _: api_domains(),
    "/api/summary":               lambda _: api_summary(),
    "/api/measurements":          api_measurements,
    "/api/kinds":                 api_kinds,
    "/api/latency_distribution":  api_latency_distribution,
}


def route(path: str) -> tuple[int, object]:
    """Resolve an API path to (status, payload)."""
    path = path.rstrip("/") or "/"
    for prefix, handler in API_ROUTES.items():
        if path == prefix or path.startswith(prefix + "/"):
            rank = 0
            remainder = path[len(prefix):]
            if remainder.startswith("/"):
                try:
                    rank = int(remainder[1:])
                except ValueError:
                    return 400, {"error": f"bad domain rank: {remainder[1:]}"}
            return 200, handler(rank)
    return 404, {"error": f"no route for {path}"}


class DashboardHandler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        pass  # Quiet logging

    def _send_json(self, status: int, data) -> None:
        body = json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-cache")
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        parsed = urlparse(self.path)
        try:
            status, data = route(parsed.path)
        except sqlite3.Error as e:
            status, data = 500, {"error": str(e)}
        self._send_json(status, data)


def main(argv: list[str] | None = None) -> None:
    global DB_FILE

    parser = argparse.ArgumentParser(description="DNS Probe Dashboard")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--db", type=Path, default=DB_FILE)
    args = parser.parse_args(argv)

    DB_FILE = args.db
    if not DB_FILE.exists():
        print(f"Database not found: {DB_FILE}")
        print("Run dnsprobe.py first to create data.")
        sys.exit(1)

    server = HTTPServer((args.host, args.port), DashboardHandler)
    print(f"Dashboard: http://{args.host}:{args.port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutdown.")
        server.server_close()


if __name__ == "__main__":
    main()
