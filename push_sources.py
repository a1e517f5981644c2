"""
Push-source clients for the gamma monitor.

A source delivers values published under named paths to subscribed handlers.
Transport threads never call handlers themselves: they append events to a
bounded queue, and ``poll()`` dispatches whatever is queued on the caller's
thread, in arrival order. The dashboard calls ``poll()`` once per rerun, so
every handler runs on the script thread, one event at a time.

Two transports are provided:
- MockPushSource: simulated detector, one reading per interval
- WebSocketPushSource: live backend over websocket-client
"""
from __future__ import annotations

import json
import logging
import random
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from websocket import WebSocketApp

import dashboard_config as cfg

LOGGER = logging.getLogger(__name__)

DATA_PATH = cfg.DATA_PATH
CONNECTED_PATH = cfg.CONNECTED_PATH

ValueHandler = Callable[[Any], None]
ErrorHandler = Callable[[str], None]

_VALUE = "value"
_ERROR = "error"


class PushSourceError(Exception):
    """Raised when a push source is misconfigured."""


class Subscription:
    """Handle returned by ``PushSource.subscribe``; cancel to stop delivery."""

    def __init__(self, source: "PushSource", path: str, on_value: ValueHandler,
                 on_error: Optional[ErrorHandler] = None):
        self._source = source
        self.path = path
        self.on_value = on_value
        self.on_error = on_error
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._source._remove(self)

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"Subscription(path={self.path!r}, {state})"


class PushSource:
    """In-memory push source; values are published by hand.

    Also the base class of the real transports, which publish from their own
    threads.
    """

    def __init__(self, queue_limit: int = cfg.WS_QUEUE_LIMIT):
        self._subs: Dict[str, List[Subscription]] = {}
        self._subs_lock = threading.Lock()
        self._events: Deque[Tuple[str, str, Any]] = deque(maxlen=queue_limit)

    # -- lifecycle -------------------------------------------------------- #

    def open(self) -> None:
        """Create the transport. No-op for the in-memory source."""

    def close(self) -> None:
        """Dispose of the transport. Safe to call more than once."""

    def __enter__(self) -> "PushSource":
        self.open()
        return self

    def __exit__(self, *_exc) -> None:
        self.close()

    # -- subscriptions ---------------------------------------------------- #

    def subscribe(self, path: str, on_value: ValueHandler,
                  on_error: Optional[ErrorHandler] = None) -> Subscription:
        sub = Subscription(self, path, on_value, on_error)
        with self._subs_lock:
            self._subs.setdefault(path, []).append(sub)
        LOGGER.debug("Subscribed to %s", path)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._subs_lock:
            subs = self._subs.get(sub.path, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.path, None)
        LOGGER.debug("Unsubscribed from %s", sub.path)

    def subscriber_count(self, path: Optional[str] = None) -> int:
        with self._subs_lock:
            if path is not None:
                return len(self._subs.get(path, []))
            return sum(len(subs) for subs in self._subs.values())

    # -- events ----------------------------------------------------------- #

    def publish(self, path: str, value: Any) -> None:
        """Queue a value (None meaning no data at ``path``). Thread-safe."""
        self._events.append((_VALUE, path, value))

    def publish_error(self, path: str, message: str) -> None:
        """Queue a transport error for ``path``. Thread-safe."""
        self._events.append((_ERROR, path, message))

    def pending(self) -> int:
        return len(self._events)

    def poll(self) -> int:
        """Dispatch queued events on the calling thread.

        Only events queued before the call are dispatched; anything a handler
        publishes waits for the next poll.
        """
        dispatched = 0
        for _ in range(len(self._events)):
            try:
                kind, path, payload = self._events.popleft()
            except IndexError:
                break
            with self._subs_lock:
                subs = list(self._subs.get(path, []))
            for sub in subs:
                # cancelled by an earlier handler in this same poll
                if not sub.active:
                    continue
                if kind == _VALUE:
                    sub.on_value(payload)
                elif sub.on_error is not None:
                    sub.on_error(payload)
            dispatched += 1
        return dispatched


# ----------------------------- Mock data generator ----------------------------- #

def mock_payload(rng: Optional[random.Random] = None) -> Dict[str, Any]:
    """Generate a detector payload in the ranges of a typical gamma source."""
    rng = rng or random
    return {
        "CPS": rng.randrange(50, 150),
        "CPM": rng.randrange(3000, 9000),
        "Dose_uSv": round(rng.random() * 3, 3),
        "Activity_Ci": round(rng.random() * 0.001, 6),
        "Activity_Bq": rng.randrange(500, 1500),
    }


class MockPushSource(PushSource):
    """Simulated detector publishing one reading every ``interval_s``."""

    def __init__(self, interval_s: float = cfg.UPDATE_INTERVAL_S,
                 data_path: str = DATA_PATH,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.monotonic,
                 queue_limit: int = cfg.WS_QUEUE_LIMIT):
        if interval_s <= 0:
            raise PushSourceError(f"interval_s must be positive, got {interval_s}")
        super().__init__(queue_limit=queue_limit)
        self.interval_s = interval_s
        self.data_path = data_path
        self._rng = rng or random.Random()
        self._clock = clock
        self._next_due: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self._next_due is not None

    def open(self) -> None:
        if self.is_open:
            return
        # first reading goes out on the first poll
        self._next_due = self._clock()
        self.publish(CONNECTED_PATH, True)
        LOGGER.info("Mock source started (interval %.1fs)", self.interval_s)

    def close(self) -> None:
        if not self.is_open:
            return
        self._next_due = None
        LOGGER.info("Mock source stopped")

    def poll(self) -> int:
        if self._next_due is not None:
            now = self._clock()
            if now >= self._next_due:
                self.publish(self.data_path, mock_payload(self._rng))
                self._next_due = now + self.interval_s
        return super().poll()


# ----------------------------- WebSocket client ----------------------------- #

class WebSocketPushSource(PushSource):
    """Live backend over a WebSocket.

    Each text frame is JSON, either an envelope ``{"path": ..., "data": ...}``
    or a bare payload for ``data_path``. Frames that are not JSON are passed
    through as text so the subscriber can report them. Reconnection happens
    inside the transport thread.
    """

    def __init__(self, url: str, data_path: str = DATA_PATH,
                 queue_limit: int = cfg.WS_QUEUE_LIMIT,
                 ping_interval: float = 20, ping_timeout: float = 10,
                 retry_delay_s: float = 1.0):
        if not url:
            raise PushSourceError("WebSocket URL is empty")
        if not url.startswith(("ws://", "wss://")):
            raise PushSourceError(f"Not a WebSocket URL: {url!r}")
        super().__init__(queue_limit=queue_limit)
        self.url = url
        self.data_path = data_path
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.retry_delay_s = retry_delay_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._ws: WebSocketApp | None = None
        self._ws_lock = threading.Lock()

    def open(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="ws-push-source", daemon=True)
        self._thread.start()
        LOGGER.info("Connecting to %s", self.url)

    def close(self) -> None:
        self._stop.set()
        with self._ws_lock:
            ws = self._ws
        if ws is not None:
            ws.close()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.retry_delay_s + 1.0)
        self._thread = None

    def _on_open(self, ws) -> None:
        if self._stop.is_set():
            # close() ran before run_forever got going
            ws.close()
            return
        LOGGER.info("WebSocket connected: %s", self.url)
        self.publish(CONNECTED_PATH, True)

    def _on_close(self, _ws, status_code=None, reason=None) -> None:
        LOGGER.info("WebSocket closed (%s %s)", status_code, reason or "")
        self.publish(CONNECTED_PATH, False)

    def _on_error(self, _ws, error) -> None:
        LOGGER.warning("WebSocket error: %s", error)
        self.publish_error(CONNECTED_PATH, f"transport error: {error}")

    def _on_message(self, _ws, message) -> None:
        try:
            data = json.loads(message)
        except ValueError:
            self.publish(self.data_path, message)
            return
        if isinstance(data, dict) and "path" in data:
            self.publish(str(data["path"]), data.get("data"))
        else:
            self.publish(self.data_path, data)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                app = WebSocketApp(
                    self.url,
                    on_open=self._on_open,
                    on_message=self._on_message,
                    on_error=self._on_error,
                    on_close=self._on_close,
                )
                with self._ws_lock:
                    # close() sets _stop before reading _ws under this lock
                    if self._stop.is_set():
                        break
                    self._ws = app
                app.run_forever(ping_interval=self.ping_interval,
                                ping_timeout=self.ping_timeout)
            except Exception as exc:
                LOGGER.warning("WebSocket run loop failed: %s", exc, exc_info=True)
                self.publish_error(CONNECTED_PATH, f"transport error: {exc}")
            finally:
                with self._ws_lock:
                    self._ws = None
            self._stop.wait(self.retry_delay_s)


def create_source(kind: str = cfg.DATA_SOURCE, **options: Any) -> PushSource:
    """Build the configured source: "Mock" or "WebSocket"."""
    if kind == "Mock":
        return MockPushSource(**options)
    if kind == "WebSocket":
        options.setdefault("url", cfg.WS_URL)
        return WebSocketPushSource(**options)
    raise PushSourceError(f"Unknown data source: {kind!r}")
