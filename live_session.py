"""
Live session controller for the gamma monitor.

LiveSession owns the subscriptions to a push source and all mutable session
state: the current reading, the rolling dose-rate window, connectivity,
last update and last error. The alert flag is derived from the reading inside
``snapshot()`` and is never stored separately.

Handlers run on whichever thread calls ``source.poll()``. The state is
still kept behind one lock because Streamlit serves each browser tab on its
own script thread.
"""
from __future__ import annotations

import enum
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Tuple

import pandas as pd

import dashboard_config as cfg
from push_sources import PushSource, Subscription
from readings import Reading, Sample, make_sample, normalize_bridge_payload, validate
from series_buffer import SeriesBuffer, samples_frame

LOGGER = logging.getLogger(__name__)

NO_DATA_ERROR = "no data available from sensor"
LOST_CONNECTION_ERROR = "lost connection"


class ConnectionStatus(str, enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Lifecycle(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SessionSettings:
    danger_threshold: float = cfg.DANGER_THRESHOLD_USVH
    max_points: int = cfg.MAX_CHART_POINTS
    data_path: str = cfg.DATA_PATH
    connected_path: str = cfg.CONNECTED_PATH
    stale_after_s: Optional[float] = cfg.STALE_AFTER_S

    def __post_init__(self):
        if self.max_points < 1:
            raise ValueError(f"max_points must be at least 1, got {self.max_points}")
        if self.stale_after_s is not None and self.stale_after_s <= 0:
            raise ValueError(f"stale_after_s must be positive, got {self.stale_after_s}")


def is_dangerous(dose_usv: float, threshold: float = cfg.DANGER_THRESHOLD_USVH) -> bool:
    return dose_usv > threshold


def status_label(alert: bool) -> Tuple[str, str]:
    """Banner text and color for the alert flag."""
    return ("DANGER", "red") if alert else ("SAFE", "green")


@dataclass(frozen=True)
class SessionState:
    """Read-only view of a session handed to the presentation layer."""

    reading: Reading
    samples: Tuple[Sample, ...]
    status: ConnectionStatus
    last_update: Optional[datetime]
    error: Optional[str]
    alert: bool
    stale_after_s: Optional[float] = None

    @property
    def status_text(self) -> str:
        return status_label(self.alert)[0]

    @property
    def status_color(self) -> str:
        return status_label(self.alert)[1]

    @property
    def connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    def frame(self) -> pd.DataFrame:
        """Chart rows for the samples in this snapshot."""
        return samples_frame(self.samples)

    def is_stale(self, now: datetime) -> bool:
        """True when no reading arrived within ``stale_after_s``.

        Always False when staleness is disabled or before the first reading.
        """
        if self.stale_after_s is None or self.last_update is None:
            return False
        return (now - self.last_update).total_seconds() > self.stale_after_s


class LiveSession:
    """Stateful core: subscribe, validate, buffer, and derive the alert."""

    def __init__(self, source: PushSource, settings: Optional[SessionSettings] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.source = source
        self.settings = settings or SessionSettings()
        self._clock = clock
        self._lock = threading.RLock()
        self._lifecycle = Lifecycle.IDLE
        self._data_sub: Optional[Subscription] = None
        self._conn_sub: Optional[Subscription] = None

        self._reading = Reading()
        self._buffer = SeriesBuffer(self.settings.max_points)
        self._status = ConnectionStatus.CONNECTING
        self._last_update: Optional[datetime] = None
        self._error: Optional[str] = None
        # set while _error came from the transport rather than the data path
        self._error_is_transport = False

    @property
    def lifecycle(self) -> Lifecycle:
        return self._lifecycle

    # ----------------------------- lifecycle ----------------------------- #

    def start(self) -> None:
        with self._lock:
            if self._lifecycle is not Lifecycle.IDLE:
                raise RuntimeError(f"session cannot start from {self._lifecycle.value} state")
            self._lifecycle = Lifecycle.RUNNING
            self._status = ConnectionStatus.CONNECTING
            try:
                self._data_sub = self.source.subscribe(
                    self.settings.data_path, self._on_data, self._on_transport_error)
                self._conn_sub = self.source.subscribe(
                    self.settings.connected_path, self._on_connected, self._on_transport_error)
            except Exception as exc:
                LOGGER.warning("Subscription to %s failed: %s", self.settings.data_path, exc,
                               exc_info=True)
                self._set_transport_error(f"subscription failed: {exc}")
        LOGGER.info("Session started on %s", self.settings.data_path)

    def stop(self) -> None:
        with self._lock:
            if self._lifecycle is Lifecycle.STOPPED:
                return
            self._lifecycle = Lifecycle.STOPPED
            subs, self._data_sub, self._conn_sub = (self._data_sub, self._conn_sub), None, None
        for sub in subs:
            if sub is not None:
                sub.cancel()
        LOGGER.info("Session stopped")

    def __enter__(self) -> "LiveSession":
        self.start()
        return self

    def __exit__(self, *_exc) -> None:
        self.stop()

    # ----------------------------- handlers ----------------------------- #

    def _on_connected(self, value: Any) -> None:
        with self._lock:
            if self._lifecycle is not Lifecycle.RUNNING:
                return
            if value is True:
                if self._status is not ConnectionStatus.CONNECTED:
                    LOGGER.info("Source connected")
                self._status = ConnectionStatus.CONNECTED
                if self._error_is_transport:
                    self._error = None
                    self._error_is_transport = False
                return
            if self._status is ConnectionStatus.DISCONNECTED and self._error_is_transport:
                # keep the transport's own message
                return
            LOGGER.warning("Source disconnected")
            self._set_transport_error(LOST_CONNECTION_ERROR)

    def _on_transport_error(self, message: str) -> None:
        with self._lock:
            if self._lifecycle is not Lifecycle.RUNNING:
                return
            LOGGER.warning("Transport error: %s", message)
            self._set_transport_error(message or LOST_CONNECTION_ERROR)

    def _set_transport_error(self, message: str) -> None:
        self._status = ConnectionStatus.DISCONNECTED
        self._error = message
        self._error_is_transport = True

    def _on_data(self, payload: Any) -> None:
        with self._lock:
            if self._lifecycle is not Lifecycle.RUNNING:
                return
            if payload is None:
                self._error = NO_DATA_ERROR
                self._error_is_transport = False
                return
            try:
                self._accept(payload)
            except Exception as exc:
                LOGGER.warning("Failed to process reading: %s", exc, exc_info=True)
                self._error = f"failed to process reading: {exc}"
                self._error_is_transport = False

    def _accept(self, payload: Any) -> None:
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8")
        if isinstance(payload, str):
            payload = json.loads(payload)
            if payload is None:
                self._error = NO_DATA_ERROR
                self._error_is_transport = False
                return
        reading = validate(normalize_bridge_payload(payload))
        now = self._clock()
        sample = make_sample(reading, now)
        threshold = self.settings.danger_threshold
        was_alert = is_dangerous(self._reading.dose_usv, threshold)
        # commit only after everything above succeeded
        self._reading = reading
        self._error = None
        self._error_is_transport = False
        self._last_update = now
        self._buffer.push(sample)
        alert = is_dangerous(reading.dose_usv, threshold)
        if alert and not was_alert:
            LOGGER.warning("Dose rate %.3f uSv/h above threshold %.2f", reading.dose_usv, threshold)
        elif was_alert and not alert:
            LOGGER.info("Dose rate back to %.3f uSv/h", reading.dose_usv)

    # ----------------------------- read surface ----------------------------- #

    def snapshot(self) -> SessionState:
        with self._lock:
            reading = self._reading
            return SessionState(
                reading=reading,
                samples=self._buffer.snapshot(),
                status=self._status,
                last_update=self._last_update,
                error=self._error,
                alert=is_dangerous(reading.dose_usv, self.settings.danger_threshold),
                stale_after_s=self.settings.stale_after_s,
            )
