#!/usr/bin/env python3
"""DNS Probe - periodic DNS latency measurement for a set of tracked domains.

Every probe interval one non-recursive query is sent per domain for a random
label under that domain (so answers never come from a cache). Each outcome is
folded into running per-domain statistics, and every few cycles the
statistics and raw measurements are flushed to a SQLite database.

Usage:
    python3 dnsprobe.py -a example.com example.org   # register domains, then probe
    python3 dnsprobe.py -d example.org               # unregister, then probe the rest
    python3 dnsprobe.py -t 500 -v 1                  # 500ms interval, no debug output
    PROBE_INTERVAL=2000 FLUSH_EVERY=10 python3 dnsprobe.py
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import enum
import logging
import math
import os
import random
import signal
import sqlite3
import string
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Protocol

try:
    import dns.asyncquery
    import dns.exception
    import dns.flags
    import dns.message
    import dns.rcode
    import dns.rdataclass
    import dns.rdatatype
    import dns.resolver
except ImportError:
    print("Missing dependencies. Install with:")
    print("  pip install -e .")
    sys.exit(1)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

SCRIPT_DIR = Path(__file__).parent
DATA_DIR = Path(os.environ.get("DATA_DIR", SCRIPT_DIR / "data"))
DB_FILE = os.environ.get("DNSPROBE_DB", str(DATA_DIR / "dnsprobe.db"))
LOG_FILE = os.environ.get("LOG_FILE")

DEFAULT_USER_NAME = "root"
DEFAULT_PASSWORD = ""

PROBE_INTERVAL = int(os.environ.get("PROBE_INTERVAL", 1000))  # ms
FLUSH_EVERY = int(os.environ.get("FLUSH_EVERY", 4))           # probe cycles
DNS_RETRY = int(os.environ.get("DNS_RETRY", 2))
DNS_TIMEOUT = float(os.environ.get("DNS_TIMEOUT", 2.0))       # seconds per attempt
DNS_PORT = 53

TARGET_LENGTH_RANGE = (4, 10)
TARGET_ALPHABET = string.ascii_lowercase + string.digits

# -v 0 prints everything, each step up hides one more severity
VERBOSITY_LEVELS = [logging.DEBUG, logging.INFO, logging.WARNING,
                    logging.ERROR, logging.CRITICAL]

TERMINATION_SIGNALS = tuple(getattr(signal, name)
                            for name in ("SIGINT", "SIGTERM", "SIGHUP")
                            if hasattr(signal, name))


@dataclass
class ProbeConfig:
    """How each DNS probe builds and sends its query."""
    nameservers: list[str] = field(default_factory=list)
    qtype: str = "A"
    qclass: str = "IN"
    retry: int = DNS_RETRY
    timeout: float = DNS_TIMEOUT
    port: int = DNS_PORT
    strict_kinds: bool = False

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

log = logging.getLogger("dnsprobe")


class ContextFormatter(logging.Formatter):
    """Appends the calling function and line to debug records only."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        if record.levelno == logging.DEBUG:
            text += f" in {record.funcName} at line {record.lineno}"
        return text


def setup_logging(verbosity: int = 0, log_file: str | None = None) -> logging.Logger:
    level = VERBOSITY_LEVELS[max(0, min(verbosity, len(VERBOSITY_LEVELS) - 1))]
    log.setLevel(level)
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

    fmt = ContextFormatter("[%(asctime)s] %(levelname)-8s %(message)s",
                           datefmt="%Y-%m-%d %H:%M:%S")

    ch = logging.StreamHandler(sys.stderr)
    ch.setFormatter(fmt)
    log.addHandler(ch)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setFormatter(fmt)
        log.addHandler(fh)

    return log

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ProbeError(Exception):
    """Base class for every error raised by dnsprobe."""


class ConfigError(ProbeError):
    """Invalid or missing configuration. Fatal at startup."""


class StorageConnectionError(ProbeError, ConnectionError):
    """The measurement database cannot be opened."""


class ProbeSendError(ProbeError):
    """A query could not be dispatched to any nameserver."""


class StorageWriteError(ProbeError):
    """Saving domains or measurements failed; the failed domains keep their events."""


class ResolverInitError(ProbeError):
    """A probe could not acquire its resolver."""

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

class EventKind(enum.IntEnum):
    SEND_REQUEST = 0
    RECEIVE_DATA = 1
    TIMEOUT = 2
    ERROR = 3


@dataclass(frozen=True)
class Event:
    timestamp: int
    target: str
    kind: EventKind
    duration_ms: float | None = None


@dataclass
class Reply:
    """Outcome of a probe while it is still being built by a sender."""
    timestamp: int
    target: str
    kind: EventKind = EventKind.SEND_REQUEST
    duration_ms: float | None = None

    def to_event(self) -> Event:
        return Event(self.timestamp, self.target, self.kind, self.duration_ms)

# ---------------------------------------------------------------------------
# Domain statistics
# ---------------------------------------------------------------------------

def name_seed(name: str) -> int:
    """8-bit XOR fold of the name's bytes."""
    seed = 0
    for byte in name.encode():
        seed ^= byte
    return seed


class Domain:
    """A zone under measurement, with running latency statistics.

    ``query_time_avg`` and ``query_time_stddev`` are the mean and population
    standard deviation (no Bessel correction) of every RECEIVE_DATA duration
    folded in so far, in milliseconds. Events are queued until drained by a
    flush.
    """

    def __init__(self, name: str, rank: int = 0,
                 query_time_avg: float = 0.0, query_time_stddev: float = 0.0,
                 query_count: int = 0, time_first: int = 0, time_last: int = 0) -> None:
        self._rank = rank
        self._name = name
        self._query_time_avg = float(query_time_avg)
        self._query_time_stddev = float(query_time_stddev)
        self._query_count = int(query_count)
        self._time_first = int(time_first)
        self._time_last = int(time_last)
        self._events: deque[Event] = deque()
        self._rng = random.Random(name_seed(name))

        log.debug(f"Domain {name} constructed with q_tm_avg={query_time_avg} "
                  f"q_tm_stddev={query_time_stddev} q_count={query_count} "
                  f"tm_first={time_first} tm_last={time_last}")

    def __repr__(self) -> str:
        return (f"Domain({self._name!r}, rank={self._rank}, "
                f"count={self._query_count}, avg={self._query_time_avg:.3f})")

    @property
    def rank(self) -> int:
        return self._rank

    @property
    def name(self) -> str:
        return self._name

    @property
    def query_time_avg(self) -> float:
        return self._query_time_avg

    @property
    def query_time_stddev(self) -> float:
        return self._query_time_stddev

    @property
    def query_count(self) -> int:
        return self._query_count

    @property
    def time_first(self) -> int:
        return self._time_first

    @property
    def time_last(self) -> int:
        return self._time_last

    @property
    def pending_events(self) -> tuple[Event, ...]:
        return tuple(self._events)

    def drain_events(self) -> list[Event]:
        events = list(self._events)
        self._events.clear()
        return events

    def update(self, event: Event) -> bool:
        """Queue the event; fold it into the statistics if it carries an answer."""
        self._events.append(event)

        if event.kind != EventKind.RECEIVE_DATA:
            return False

        if not self._time_first:
            self._time_first = event.timestamp
        self._time_last = event.timestamp

        n = self._query_count
        d = event.duration_ms or 0.0
        old_avg = self._query_time_avg

        total = old_avg * n + d
        # mean of squares recovered from the current mean and stddev
        sq_avg = old_avg * old_avg + self._query_time_stddev * self._query_time_stddev
        sq_total = sq_avg * n + d * d

        n += 1
        avg = total / n
        variance = sq_total / n - avg * avg

        self._query_count = n
        self._query_time_avg = avg
        self._query_time_stddev = math.sqrt(max(variance, 0.0))
        return True

    def generate_probe_target(self) -> str:
        """Random label of 4-10 lowercase letters and digits."""
        length = self._rng.randint(*TARGET_LENGTH_RANGE)
        return "".join(TARGET_ALPHABET[self._rng.randint(0, len(TARGET_ALPHABET) - 1)]
                       for _ in range(length))


class DomainRegistry:
    """Owns every loaded Domain; probes refer to them by integer handle."""

    def __init__(self) -> None:
        self._domains: list[Domain] = []

    def add(self, domain: Domain) -> int:
        self._domains.append(domain)
        return len(self._domains) - 1

    def __getitem__(self, handle: int) -> Domain:
        return self._domains[handle]

    def __iter__(self) -> Iterator[Domain]:
        return iter(self._domains)

    def __len__(self) -> int:
        return len(self._domains)

    def domains(self) -> list[Domain]:
        return list(self)

# ---------------------------------------------------------------------------
# Remote probes
# ---------------------------------------------------------------------------

class QuerySender(Protocol):
    async def send_query(self, domain: Domain) -> tuple[Reply, bool]: ...

    def close(self) -> None: ...


class RemoteProbe:
    """Binds one sender to one registered domain."""

    def __init__(self, registry: DomainRegistry, handle: int, sender: QuerySender) -> None:
        self.registry = registry
        self.handle = handle
        self.sender = sender

    @property
    def domain(self) -> Domain:
        return self.registry[self.handle]

    async def probe(self) -> bool:
        domain = self.domain
        reply, ok = await self.sender.send_query(domain)
        if not ok:
            log.error(f"Cannot send query to {domain.name}")
        # failed sends are still recorded
        domain.update(reply.to_event())
        return ok

    def close(self) -> None:
        self.sender.close()


class DNSQuerySender:
    """Sends one non-recursive UDP query per probe for a random name in the domain.

    A received response is a latency sample whatever its rcode, since the
    random labels almost always produce NXDOMAIN. Unanswered queries stay
    SEND_REQUEST events unless ``strict_kinds`` is set, in which case they
    become TIMEOUT (or ERROR when nothing could be sent at all).
    """

    def __init__(self, domain: Domain, *, nameservers: list[str] | None = None,
                 qtype: str = "A", qclass: str = "IN", retry: int = DNS_RETRY,
                 timeout: float = DNS_TIMEOUT, port: int = DNS_PORT,
                 strict_kinds: bool = False) -> None:
        self.domain_name = domain.name
        self.retry = retry
        self.timeout = timeout
        self.strict_kinds = strict_kinds
        try:
            self.rdtype = dns.rdatatype.from_text(qtype)
            self.rdclass = dns.rdataclass.from_text(qclass)
        except dns.exception.DNSException as e:
            raise ConfigError(f"Invalid query type/class {qtype}/{qclass}: {e}") from e

        try:
            if nameservers:
                resolver = dns.resolver.Resolver(configure=False)
                resolver.nameservers = list(nameservers)
            else:
                resolver = dns.resolver.Resolver()
        except (dns.exception.DNSException, OSError, ValueError) as e:
            log.critical(f"Cannot create a resolver for {domain.name}: {e}")
            raise ResolverInitError(f"Cannot create a resolver for {domain.name}: {e}") from e

        self._resolver: dns.resolver.Resolver | None = resolver
        self._nameservers = [(getattr(ns, "address", ns), port)
                             for ns in resolver.nameservers]

    @property
    def nameservers(self) -> list[tuple[str, int]]:
        return list(self._nameservers)

    async def _exchange(self, query: dns.message.Message
                        ) -> tuple[dns.message.Message | None, str, float, Exception | None]:
        """Try every nameserver, ``retry + 1`` times over.

        Returns (response, server, sent_at, last_error), where ``sent_at`` is
        the wall-clock time the answered attempt went out. Raises
        ProbeSendError when no attempt could be dispatched at all.
        """
        dispatched = False
        failure: Exception | None = None
        for attempt in range(self.retry + 1):
            for address, port in self._nameservers:
                sent_at = time.time()
                try:
                    response = await dns.asyncquery.udp(query, address,
                                                        timeout=self.timeout, port=port)
                except dns.exception.Timeout as e:
                    dispatched = True
                    failure = e
                    log.debug(f"Attempt {attempt + 1} to {address} timed out")
                    continue
                except OSError as e:
                    failure = e
                    log.debug(f"Attempt {attempt + 1} to {address} failed: {e}")
                    continue
                except dns.exception.DNSException as e:
                    dispatched = True
                    failure = e
                    log.debug(f"Attempt {attempt + 1} to {address} got a bad response: {e}")
                    continue
                return response, address, sent_at, None
        if not dispatched:
            raise ProbeSendError(f"no nameserver reachable: {failure}")
        return None, "", 0.0, failure

    async def send_query(self, domain: Domain) -> tuple[Reply, bool]:
        reply = Reply(timestamp=int(time.time()),
                      target=f"{domain.generate_probe_target()}.{domain.name}")

        log.info(f"Sending query for {reply.target}")

        query = dns.message.make_query(reply.target, self.rdtype, self.rdclass)
        query.flags &= ~dns.flags.RD

        start = time.monotonic()
        try:
            response, server, sent_at, failure = await self._exchange(query)
        except ProbeSendError as e:
            reply.duration_ms = (time.monotonic() - start) * 1000
            log.debug(f"Query for {reply.target} not sent: {e}")
            if self.strict_kinds:
                reply.kind = EventKind.ERROR
            return reply, False
        reply.duration_ms = (time.monotonic() - start) * 1000

        if response is not None and response.flags & dns.flags.QR:
            reply.kind = EventKind.RECEIVE_DATA
            rtt = getattr(response, "time", None)
            if rtt is not None:
                reply.timestamp = int(sent_at + rtt)
                reply.duration_ms = rtt * 1000
            log.info(f"Got answer from {server} with status: "
                     f"{{ {dns.rcode.to_text(response.rcode())} }} in {reply.duration_ms:.3f} ms")
            return reply, True

        log.info(f"No answer for {reply.target} after {reply.duration_ms:.0f} ms ({failure})")
        if self.strict_kinds:
            reply.kind = EventKind.TIMEOUT
        return reply, True

    def close(self) -> None:
        if self._resolver is None:
            return
        log.debug(f"Free resolver resources for domain {self.domain_name}")
        self._resolver = None
        self._nameservers = []

    def __enter__(self) -> DNSQuerySender:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _dns_sender(domain: Domain, config: ProbeConfig) -> DNSQuerySender:
    return DNSQuerySender(domain, nameservers=config.nameservers,
                          qtype=config.qtype, qclass=config.qclass,
                          retry=config.retry, timeout=config.timeout,
                          port=config.port, strict_kinds=config.strict_kinds)


# Probe kind -> sender factory
SENDERS: dict[str, Callable[[Domain, ProbeConfig], QuerySender]] = {
    "dns": _dns_sender,
}


def make_sender(kind: str, domain: Domain, config: ProbeConfig | None = None) -> QuerySender:
    try:
        factory = SENDERS[kind]
    except KeyError:
        raise ConfigError(f"Unknown probe kind: {kind}") from None
    return factory(domain, config or ProbeConfig())

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS domain (
    rank INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    query_time_avg REAL DEFAULT 0,
    query_time_stddev REAL DEFAULT 0,
    query_count INTEGER DEFAULT 0,
    time_first INTEGER DEFAULT 0,
    time_last INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS measurement (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    time INTEGER,
    target TEXT NOT NULL,
    type INTEGER,
    duration_ms REAL,
    domain_rank INTEGER NOT NULL,
    FOREIGN KEY (domain_rank) REFERENCES domain(rank)
        ON DELETE CASCADE ON UPDATE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_measurement_domain ON measurement(domain_rank);
CREATE INDEX IF NOT EXISTS idx_measurement_time ON measurement(time);
"""


class SQLiteStore:
    """Storage gateway persisting domains and their measurements."""

    def __init__(self, db_name: str | None = None, user: str = DEFAULT_USER_NAME,
                 password: str = DEFAULT_PASSWORD) -> None:
        self.db_name = db_name or ""
        self.user = user
        self.password = password
        self._conn: sqlite3.Connection | None = None

    def __enter__(self) -> SQLiteStore:
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.disconnect()

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageConnectionError(f"Not connected to {self.db_name or 'a database'}")
        return self._conn

    def connect(self, db_name: str | None = None, user: str | None = None,
                password: str | None = None) -> bool:
        if db_name is not None:
            self.db_name = str(db_name)
        if user:
            self.user = user
        if password:
            self.password = password

        if not self.db_name:
            raise ConfigError("Database name is required. Exiting..")

        try:
            if self.db_name != ":memory:":
                Path(self.db_name).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_name)
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(SCHEMA_SQL)
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StorageConnectionError(
                f"Cannot connect to {self.db_name} as {self.user}: {e}") from e

        self._conn = conn
        log.debug(f"Connected to {self.db_name} as {self.user}")
        return True

    def disconnect(self) -> bool:
        if self.connected:
            self._conn.close()
            self._conn = None
            log.debug(f"Disconnected from {self.db_name}")
        return True

    def load_domains(self) -> list[Domain]:
        sql = ("SELECT rank, name, query_time_avg, query_time_stddev, query_count, "
               "time_first, time_last FROM domain ORDER BY rank")
        log.debug(f"Loading domains with query {sql}")
        try:
            rows = self._connection().execute(sql).fetchall()
        except sqlite3.Error as e:
            log.error(f"Failed to execute SQL statement: {e}")
            return []
        return [Domain(name, rank, avg or 0.0, stddev or 0.0, count or 0,
                       first or 0, last or 0)
                for rank, name, avg, stddev, count, first, last in rows]

    def add_domains(self, domains: list[Domain]) -> bool:
        if not domains:
            return False
        rows = [(d.name, d.query_time_avg, d.query_time_stddev, d.query_count,
                 d.time_first, d.time_last) for d in domains]
        log.debug(f"Inserting domains {', '.join(d.name for d in domains)}")
        conn = self._connection()
        try:
            with conn:
                conn.executemany(
                    """INSERT OR IGNORE INTO domain
                       (name,query_time_avg,query_time_stddev,query_count,time_first,time_last)
                       VALUES (?,?,?,?,?,?)""", rows)
        except sqlite3.Error as e:
            raise StorageWriteError(f"Failed to insert domains: {e}") from e
        return True

    def delete_domains(self, domains: list[Domain]) -> bool:
        if not domains:
            return False
        log.debug(f"Deleting domains {', '.join(d.name for d in domains)}")
        conn = self._connection()
        try:
            with conn:
                conn.executemany("DELETE FROM domain WHERE name=?",
                                 [(d.name,) for d in domains])
        except sqlite3.Error as e:
            raise StorageWriteError(f"Failed to delete domains: {e}") from e
        return True

    def save_domains(self, domains: list[Domain]) -> bool:
        """Update statistics and insert pending events, one transaction per domain.

        A domain's queue is drained only once its own transaction has
        committed. A domain whose row is gone (deleted by another process)
        has its events dropped. Failures for one domain do not stop the
        others from being saved; they are reported together afterwards.
        """
        if not domains:
            return False

        conn = self._connection()
        saved = 0
        written = 0
        failed = []
        for d in domains:
            if not d.rank:
                log.warning(f"Domain {d.name} has no rank, not saved")
                continue

            events = d.pending_events
            try:
                with conn:
                    cur = conn.execute(
                        """UPDATE domain SET query_time_avg=?, query_time_stddev=?,
                           query_count=?, time_first=?, time_last=? WHERE rank=?""",
                        (d.query_time_avg, d.query_time_stddev, d.query_count,
                         d.time_first, d.time_last, d.rank))
                    if cur.rowcount == 0:
                        log.warning(f"Domain {d.name} (rank {d.rank}) no longer in database, "
                                    f"dropping {len(events)} measurements")
                        d.drain_events()
                        continue
                    if events:
                        conn.executemany(
                            """INSERT INTO measurement
                               (time,target,type,duration_ms,domain_rank)
                               VALUES (?,?,?,?,?)""",
                            [(e.timestamp, e.target, int(e.kind), e.duration_ms, d.rank)
                             for e in events])
            except sqlite3.Error as e:
                log.error(f"Failed to save domain {d.name}: {e}")
                failed.append(d.name)
                continue

            d.drain_events()
            saved += 1
            written += len(events)

        log.debug(f"Saved {saved} domains and {written} measurements")
        if failed:
            raise StorageWriteError(f"Failed to save domains {', '.join(failed)}")
        return True

# ---------------------------------------------------------------------------
# Vantage point
# ---------------------------------------------------------------------------

class State(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Message(enum.Enum):
    TICK = "tick"
    STOP = "stop"


class Vantage:
    """Local vantage point: drives the probe and flush cadence.

    The timer and the termination signals never touch state directly; they
    post a Message onto a queue and the coordinator loop in ``start`` handles
    each one in turn. Probe cycles run as tasks so a slow cycle never holds up
    the loop, but in-flight probes are always awaited, never cancelled.
    """

    def __init__(self, store, probe_interval_ms: int = PROBE_INTERVAL,
                 flush_every: int = FLUSH_EVERY, probe_kind: str = "dns",
                 sender_factory: Callable[[Domain], QuerySender] | None = None,
                 config: ProbeConfig | None = None) -> None:
        if probe_interval_ms <= 0:
            raise ConfigError(f"Probe interval must be positive, got {probe_interval_ms}")
        if flush_every <= 0:
            raise ConfigError(f"Flush cadence must be positive, got {flush_every}")

        self.store = store
        self.probe_interval_ms = probe_interval_ms
        self.flush_every = flush_every
        self.config = config or ProbeConfig()
        self._sender_factory = sender_factory or (
            lambda domain: make_sender(probe_kind, domain, self.config))

        self.registry = DomainRegistry()
        self.probes: list[RemoteProbe] = []
        self.state = State.UNINITIALIZED
        self.ticks = 0
        self.cycles = 0
        self.flushes = 0

        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._inflight: set[asyncio.Task] = set()
        self._timer_task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def domains(self) -> list[Domain]:
        return self.registry.domains()

    def load(self) -> int:
        """Load every domain and bind one probe to each. Returns probes bound."""
        self.state = State.LOADING
        for domain in self.store.load_domains():
            handle = self.registry.add(domain)
            try:
                sender = self._sender_factory(domain)
            except ResolverInitError as e:
                log.error(f"Not probing {domain.name}: {e}")
                continue
            self.probes.append(RemoteProbe(self.registry, handle, sender))
        log.debug(f"Loaded {len(self.registry)} domains, {len(self.probes)} probes bound")
        return len(self.probes)

    async def start(self, install_signals: bool = True) -> bool:
        if self.state is not State.UNINITIALIZED:
            raise RuntimeError(f"Vantage cannot start from state {self.state.value}")

        if not self.load():
            log.info("No domain to probe.")
            self.state = State.STOPPED
            return False

        self._loop = asyncio.get_running_loop()
        if install_signals:
            self._install_signal_handlers()
        self._timer_task = asyncio.create_task(self._timer())
        self.state = State.RUNNING

        self._dispatch_cycle()
        try:
            while True:
                message = await self._queue.get()
                if message is Message.STOP:
                    break
                self.on_tick()
        finally:
            await self.stop()
            if install_signals:
                self._remove_signal_handlers()
        return True

    def post(self, message: Message) -> None:
        self._queue.put_nowait(message)

    def request_stop(self) -> None:
        """Ask the coordinator loop to stop; safe to call from another thread."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is not None and running is not self._loop:
            self._loop.call_soon_threadsafe(self.post, Message.STOP)
        else:
            self.post(Message.STOP)

    def on_tick(self) -> None:
        self.ticks += 1
        if self.ticks >= self.flush_every:
            self.flush()
            self.ticks = 0
        self._dispatch_cycle()
        log.debug("Timer fired")

    async def probe_all(self) -> list:
        """One probe cycle: every domain probed concurrently."""
        self.cycles += 1
        log.debug("Probing all...")
        results = await asyncio.gather(*(p.probe() for p in self.probes),
                                       return_exceptions=True)
        for probe, result in zip(self.probes, results):
            if isinstance(result, Exception):
                log.error(f"Probe for {probe.domain.name} failed: {result!r}")
        return results

    def flush(self) -> bool:
        self.flushes += 1
        domains = self.registry.domains()
        log.debug(f"Flushing {len(domains)} domains")
        try:
            self.store.save_domains(domains)
        except (StorageWriteError, StorageConnectionError, sqlite3.Error) as e:
            log.error(f"Failed to save domains, will retry at next flush: {e}")
            return False
        return True

    async def wait_for_cycles(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def stop(self) -> None:
        if self.state in (State.STOPPING, State.STOPPED):
            return
        self.state = State.STOPPING

        if self._timer_task is not None:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None

        await self.wait_for_cycles()
        self.flush()

        for probe in self.probes:
            probe.close()
        self.state = State.STOPPED
        log.debug("Vantage stopped")

    def _dispatch_cycle(self) -> None:
        task = asyncio.create_task(self.probe_all())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _timer(self) -> None:
        interval = self.probe_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.post(Message.TICK)

    def _on_signal(self, sig: int) -> None:
        log.debug(f"Application interrupted by {signal.Signals(sig).name}.")
        self.post(Message.STOP)

    def _install_signal_handlers(self) -> None:
        for sig in TERMINATION_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                log.debug(f"Cannot handle {signal.Signals(sig).name}: {e}")

    def _remove_signal_handlers(self) -> None:
        for sig in TERMINATION_SIGNALS:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                self._loop.remove_signal_handler(sig)

# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dnsprobe",
        description="Fills a dnsprobe database with DNS probe statistics. "
                    "Durations are in ms.")
    manage = parser.add_mutually_exclusive_group()
    manage.add_argument("-a", "--add", action="store_true",
                        help="add all listed domains")
    manage.add_argument("-d", "--delete", action="store_true",
                        help="delete all listed domains")
    parser.add_argument("-b", "--database", default=DB_FILE,
                        help="database file (default: %(default)s)")
    parser.add_argument("-u", "--user", default=DEFAULT_USER_NAME)
    parser.add_argument("-p", "--password", default=DEFAULT_PASSWORD)
    parser.add_argument("-t", "--interval", type=int, default=PROBE_INTERVAL,
                        help="probe interval in ms (default: %(default)s)")
    parser.add_argument("-f", "--flush-every", type=int, default=FLUSH_EVERY,
                        help="probe cycles between database flushes (default: %(default)s)")
    parser.add_argument("-v", "--verbosity", type=int, default=0,
                        choices=range(len(VERBOSITY_LEVELS)),
                        help="0 = highest verbosity level, 1 = no debug messages, etc.")
    parser.add_argument("--log-file", default=LOG_FILE)
    parser.add_argument("--nameserver", action="append", default=[],
                        help="nameserver to query (repeatable; default: system resolvers)")
    parser.add_argument("--qtype", default="A")
    parser.add_argument("--qclass", default="IN")
    parser.add_argument("--timeout", type=float, default=DNS_TIMEOUT,
                        help="seconds per query attempt (default: %(default)s)")
    parser.add_argument("--retry", type=int, default=DNS_RETRY)
    parser.add_argument("--strict-kinds", action="store_true",
                        help="record unanswered queries as TIMEOUT/ERROR events")
    parser.add_argument("--no-probe", action="store_true",
                        help="only add/delete domains, do not start probing")
    parser.add_argument("domains", nargs="*", metavar="domain")

    args = parser.parse_args(argv)
    if args.interval <= 0:
        parser.error("probe interval must be positive")
    if args.flush_every <= 0:
        parser.error("flush cadence must be positive")
    if (args.add or args.delete) and not args.domains:
        parser.error("-a/-d need at least one domain")
    return args


def manage_domains(store: SQLiteStore, args: argparse.Namespace) -> None:
    if args.delete:
        store.delete_domains([Domain(name) for name in args.domains])
    elif args.add:
        existing = {d.name for d in store.load_domains()}
        new = []
        for name in args.domains:
            if name in existing:
                log.debug(f"Domain {name} already in database.")
            else:
                new.append(Domain(name))
                existing.add(name)
        store.add_domains(new)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbosity, args.log_file)

    store = SQLiteStore()
    try:
        store.connect(args.database, args.user, args.password)
    except (ConfigError, StorageConnectionError) as e:
        log.critical(str(e))
        return 1

    try:
        try:
            manage_domains(store, args)
        except StorageWriteError as e:
            log.error(str(e))

        if args.no_probe:
            return 0

        config = ProbeConfig(nameservers=args.nameserver, qtype=args.qtype,
                             qclass=args.qclass, retry=args.retry,
                             timeout=args.timeout, strict_kinds=args.strict_kinds)
        vantage = Vantage(store, args.interval, args.flush_every, config=config)
        try:
            asyncio.run(vantage.start())
        except KeyboardInterrupt:
            pass
        except ConfigError as e:
            log.critical(str(e))
            return 1
    finally:
        store.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(main())
