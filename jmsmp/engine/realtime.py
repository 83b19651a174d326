"""
jmsmp.engine.realtime — Room-Based Realtime Fanout
==================================================

Connections (browser WebSockets) join named rooms; services emit
``(room, event, payload)`` triples and every connection in the room gets
``{"event": ..., "data": ...}``.  In-process listeners such as the review
bot can :meth:`~RealtimeHub.subscribe` to a room as well.

Two backends implement the same :class:`RealtimeHub` interface:

- :class:`InProcessHub` — rooms live in this process.  Good for a single
  API worker.
- :class:`PostgresHub` — ``emit`` publishes through PostgreSQL
  ``pg_notify``; every process runs a LISTEN thread that relays events to
  its own :class:`InProcessHub`.  Needed as soon as more than one process
  (several API workers, or the API plus the bot) shares rooms.

Delivery is fire-and-forget: ``emit`` never blocks on a socket, never
retries and never raises.  A disconnected recipient simply misses the live
event; anything that must survive is written to the database first.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import select as _select
import threading
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Coroutine
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from jmsmp.config import JmsmpConfig

logger = logging.getLogger(__name__)

# PG channel carrying realtime events between processes
REALTIME_NOTIFY_CHANNEL = "jmsmp_realtime"

# PostgreSQL rejects NOTIFY payloads of 8000 bytes or more
MAX_NOTIFY_PAYLOAD = 7900

RoomCallback = Callable[[str, dict], Awaitable[None]]


class Connection(Protocol):
    """Anything that can push a JSON frame to a client (Starlette WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------
class RealtimeHub(ABC):
    """Room publish/subscribe capability used by the services."""

    @abstractmethod
    def join(self, conn: Connection, room: str) -> None:
        """Add *conn* to *room*.  Call from the event loop that owns *conn*."""

    @abstractmethod
    def leave(self, conn: Connection) -> None:
        """Remove *conn* from every room it joined."""

    @abstractmethod
    def emit(self, room: str, event: str, payload: dict) -> None:
        """Best-effort delivery of *event* to everything in *room*.

        Safe to call from any thread.  Never raises.
        """

    @abstractmethod
    def subscribe(
        self,
        room: str,
        callback: RoomCallback,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Invoke ``await callback(event, payload)`` for every event in *room*."""


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------
class InProcessHub(RealtimeHub):
    """Thread-safe room registry for connections owned by this process.

    Services usually run on worker threads (FastAPI threadpool or
    :func:`~jmsmp.database.engine.run_db`), so sends are handed to the
    connections' event loop with :func:`asyncio.run_coroutine_threadsafe`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rooms: dict[str, set[Connection]] = {}
        self._memberships: dict[Connection, set[str]] = {}
        self._subscribers: dict[str, list[tuple[RoomCallback, asyncio.AbstractEventLoop | None]]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    # -- membership ---------------------------------------------------------
    def join(self, conn: Connection, room: str) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            pass
        with self._lock:
            self._rooms.setdefault(room, set()).add(conn)
            self._memberships.setdefault(conn, set()).add(room)

    def leave(self, conn: Connection) -> None:
        with self._lock:
            rooms = self._memberships.pop(conn, set())
            for room in rooms:
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(conn)
                if not members:
                    del self._rooms[room]

    def rooms_of(self, conn: Connection) -> set[str]:
        with self._lock:
            return set(self._memberships.get(conn, set()))

    def room_size(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def subscribe(
        self,
        room: str,
        callback: RoomCallback,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        with self._lock:
            self._subscribers.setdefault(room, []).append((callback, loop))
        logger.info("Registered realtime subscriber for room '%s'", room)

    # -- delivery -----------------------------------------------------------
    def emit(self, room: str, event: str, payload: dict) -> None:
        self.deliver(room, event, payload)

    def deliver(self, room: str, event: str, payload: dict) -> None:
        """Fan one event out to local connections and subscribers of *room*."""
        try:
            with self._lock:
                targets = list(self._rooms.get(room, ()))
                subscribers = list(self._subscribers.get(room, ()))
            message = {"event": event, "data": payload}
            for conn in targets:
                self._schedule(self._loop, self._send(conn, message))
            for callback, loop in subscribers:
                self._schedule(loop or self._loop, self._notify(callback, event, payload))
        except Exception:
            logger.warning("Realtime delivery of '%s' to %s failed", event, room, exc_info=True)

    @staticmethod
    def _schedule(loop: asyncio.AbstractEventLoop | None, coro: Coroutine) -> None:
        if loop is None or loop.is_closed():
            coro.close()
            logger.debug("No event loop bound — dropping realtime event")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            loop.create_task(coro)
        else:
            asyncio.run_coroutine_threadsafe(coro, loop)

    async def _send(self, conn: Connection, message: dict) -> None:
        try:
            await conn.send_json(message)
        except Exception:
            logger.warning("Dropping realtime connection after failed send", exc_info=True)
            self.leave(conn)

    @staticmethod
    async def _notify(callback: RoomCallback, event: str, payload: dict) -> None:
        try:
            await callback(event, payload)
        except Exception:
            logger.exception("Realtime subscriber failed on '%s'", event)


# ---------------------------------------------------------------------------
# PostgreSQL LISTEN/NOTIFY backend
# ---------------------------------------------------------------------------
class PostgresHub(RealtimeHub):
    """Cross-process hub: publish with ``pg_notify``, relay with LISTEN.

    Usage::

        hub = PostgresHub(engine)
        hub.start_listener()
        hub.emit("admin-room", "new-application", {...})   # any process
    """

    def __init__(self, engine: Engine, local: InProcessHub | None = None) -> None:
        self._engine = engine
        self.local = local or InProcessHub()
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()
        self._listener_healthy = False
        self._listener_failed = False

    def join(self, conn: Connection, room: str) -> None:
        self.local.join(conn, room)

    def leave(self, conn: Connection) -> None:
        self.local.leave(conn)

    def subscribe(
        self,
        room: str,
        callback: RoomCallback,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.local.subscribe(room, callback, loop)

    def emit(self, room: str, event: str, payload: dict) -> None:
        raw = json.dumps({"room": room, "event": event, "data": payload}, default=str)
        if len(raw.encode("utf-8")) > MAX_NOTIFY_PAYLOAD:
            logger.warning(
                "Realtime event '%s' for %s exceeds NOTIFY limit (%d bytes) — dropped",
                event, room, len(raw),
            )
            return
        try:
            with self._engine.connect() as conn:
                conn.execute(
                    text("SELECT pg_notify(:channel, :payload)"),
                    {"channel": REALTIME_NOTIFY_CHANNEL, "payload": raw},
                )
                conn.commit()
        except Exception:
            logger.warning("Realtime publish of '%s' to %s failed", event, room, exc_info=True)

    def _dispatch(self, raw_payload: str) -> None:
        try:
            data = json.loads(raw_payload)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid realtime payload (not JSON): %s", raw_payload)
            return
        room = data.get("room")
        event = data.get("event")
        if not room or not event:
            logger.warning("Realtime payload missing room/event: %s", raw_payload)
            return
        self.local.deliver(room, event, data.get("data") or {})

    # -- listener lifecycle -------------------------------------------------
    @property
    def listener_healthy(self) -> bool:
        """Return True if the LISTEN thread is alive and connected."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """Return True if the listener exhausted reconnect attempts."""
        return self._listener_failed

    def stop_listener(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("Realtime LISTEN thread stopped")

    def start_listener(self) -> None:
        """Start a background thread that LISTENs on the realtime channel.

        Uses a raw psycopg2 connection + ``select()`` so no event loop is
        involved.  Reconnects with exponential backoff + jitter and gives up
        after ``max_reconnect_attempts`` consecutive failures.
        """
        import psycopg2

        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = 10

        def _listen_thread() -> None:
            # str(engine.url) masks the password; psycopg2 needs the real one.
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {REALTIME_NOTIFY_CHANNEL};")
                    logger.info("PG LISTEN started on channel '%s'", REALTIME_NOTIFY_CHANNEL)

                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            try:
                                self._dispatch(notify.payload or "")
                            except Exception:
                                logger.exception(
                                    "Error relaying realtime NOTIFY: %s", notify.payload,
                                )

                except Exception:
                    self._listener_healthy = False
                    attempt += 1

                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. "
                            "Cross-process realtime delivery disabled.",
                            max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Error closing LISTEN connection", exc_info=True)

        thread = threading.Thread(target=_listen_thread, daemon=True, name="pg-realtime-listener")
        self._listener_thread = thread
        thread.start()
        logger.info("Realtime LISTEN thread started")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
def create_hub(cfg: JmsmpConfig, engine: Engine) -> RealtimeHub:
    """Build the hub selected by ``realtime_backend`` in config.yaml."""
    if cfg.realtime_backend == "postgres":
        hub = PostgresHub(engine)
        hub.start_listener()
        return hub
    return InProcessHub()
