"""Fixed-size rolling window of dose-rate samples for the chart."""
from __future__ import annotations

from collections import deque
from typing import Deque, Iterable, Tuple

import pandas as pd

import dashboard_config as cfg
from readings import Sample

FRAME_COLUMNS = ["timestamp", "time", "uSvph"]


class SeriesBuffer:
    """Last ``capacity`` samples in arrival order, oldest first."""

    def __init__(self, capacity: int = cfg.MAX_CHART_POINTS):
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self._samples: Deque[Sample] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen  # type: ignore[return-value]

    def push(self, sample: Sample) -> None:
        # deque(maxlen=...) drops from the left when full
        self._samples.append(sample)

    def snapshot(self) -> Tuple[Sample, ...]:
        return tuple(self._samples)

    def clear(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)

    def to_frame(self) -> pd.DataFrame:
        return samples_frame(self._samples)


def samples_frame(samples: Iterable[Sample]) -> pd.DataFrame:
    """Chart data: one row per sample, oldest first."""
    rows = [{"timestamp": s.timestamp, "time": s.label, "uSvph": s.value} for s in samples]
    return pd.DataFrame(rows, columns=FRAME_COLUMNS)
