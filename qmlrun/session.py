"""Live handle on a launched QML application.

The device exposes the application's stdout and stderr as two plain TCP
streams.  :class:`SessionHandle` reads both, re-emits every chunk to the
registered callbacks and turns the first end-of-stream into a single
``end`` notification.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
# output kept for a stream nobody listens to yet; oldest chunks are dropped
MAX_PENDING_CHUNKS = 256

STREAM_EVENTS = ("stdout", "stderr")
EVENTS = STREAM_EVENTS + ("end",)

Stream = tuple[asyncio.StreamReader, asyncio.StreamWriter]


class SessionState(str, Enum):
    RUNNING = "running"
    ENDED = "ended"


class Closable(Protocol):
    async def close(self) -> None: ...


class SessionHandle:
    """The two output streams of a remote application run.

    ``running`` is ``True`` until either stream reaches end-of-file or the
    handle is closed, then stays ``False``.  Callbacks registered with
    :meth:`on` receive:

      - ``stdout`` / ``stderr``: the raw ``bytes`` chunk
      - ``end``: no arguments, fired exactly once
    """

    def __init__(
        self,
        stdout: Stream,
        stderr: Stream,
        server: Optional[Closable] = None,
    ) -> None:
        self._streams = {"stdout": stdout, "stderr": stderr}
        self._server = server
        self._callbacks: dict[str, list[Callable[..., Any]]] = {e: [] for e in EVENTS}
        self._pending: dict[str, deque[bytes]] = {
            e: deque(maxlen=MAX_PENDING_CHUNKS) for e in STREAM_EVENTS
        }
        self._state = SessionState.RUNNING
        self._ended = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._closed = False

    def start(self) -> None:
        """Start pumping both streams.  Called once the handle is wired up."""
        if self._tasks:
            return
        loop = asyncio.get_running_loop()
        for name in STREAM_EVENTS:
            self._tasks.append(loop.create_task(self._pump(name)))

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register a callback for ``stdout``, ``stderr`` or ``end``.

        Output read before the first callback for a stream was registered is
        replayed to it (at most the last ``MAX_PENDING_CHUNKS`` chunks); an ``end`` callback registered after the session
        ended is called right away.
        """
        if event not in self._callbacks:
            raise ValueError(f"Unknown session event: {event!r}")
        self._callbacks[event].append(callback)
        if event in self._pending:
            pending = self._pending[event]
            while pending:
                chunk = pending.popleft()
                self._call(event, callback, chunk)
        elif self._state is SessionState.ENDED:
            self._call(event, callback)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is SessionState.RUNNING

    @property
    def owns_server(self) -> bool:
        return self._server is not None

    async def wait_closed(self) -> None:
        """Wait until the remote application has ended."""
        await self._ended.wait()

    async def close(self) -> None:
        """Drop both stream connections and release the bundle server, if any."""
        if self._closed:
            return
        self._closed = True

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self._mark_ended()

        for _, writer in self._streams.values():
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

        if self._server is not None:
            server, self._server = self._server, None
            await server.close()
        logger.debug("Session closed")

    async def __aenter__(self) -> SessionHandle:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    # ── Internal ───────────────────────────────────────────────────

    async def _pump(self, name: str) -> None:
        reader, _ = self._streams[name]
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self._emit(name, chunk)
        except (ConnectionError, OSError) as exc:
            logger.warning("%s stream failed: %s", name, exc)
        logger.debug("%s stream ended", name)
        self._mark_ended()

    def _mark_ended(self) -> None:
        if self._state is SessionState.ENDED:
            return
        self._state = SessionState.ENDED
        self._ended.set()
        logger.info("Remote application ended")
        self._emit("end")

    def _emit(self, event: str, *args: Any) -> None:
        callbacks = self._callbacks[event]
        if not callbacks and event in self._pending:
            self._pending[event].extend(args)
            return
        for cb in callbacks:
            self._call(event, cb, *args)

    @staticmethod
    def _call(event: str, cb: Callable[..., Any], *args: Any) -> None:
        try:
            cb(*args)
        except Exception:
            logger.exception("Error in %s callback", event)
