"""Histogram metrics and timing constants used by the reconcilers."""

from __future__ import annotations

import math
import threading
from bisect import bisect_left
from collections.abc import Iterable, Mapping, Sequence
from datetime import timedelta
from itertools import accumulate
from typing import Optional, Union

DEFAULT_REQUEUE_DURATION = timedelta(seconds=10)

DEFAULT_BUCKETS = (1, 2, 3, 4, 5, 7, 10, 12, 15, 18, 20, 25, 30, 60, 120, 180, 300)

OPERATION_INSTALL = "install"
OPERATION_UNINSTALL = "uninstall"
STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"

Labels = Union[Sequence[str], Mapping[str, str], str]


class HistogramVec:
    """A family of histograms partitioned by label values."""

    def __init__(
        self,
        name: str,
        help_text: str,
        buckets: Iterable[float],
        label_names: Sequence[str],
    ) -> None:
        bounds = [float(bound) for bound in buckets]
        if any(low >= high for low, high in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be in strictly increasing order")
        if not bounds or bounds[-1] != math.inf:
            bounds.append(math.inf)
        self.name = name
        self.help_text = help_text
        self.buckets = tuple(bounds)
        self.label_names = tuple(label_names)
        self._counts: dict[tuple[str, ...], list[int]] = {}
        self._sums: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Labels) -> tuple[str, ...]:
        if isinstance(labels, str):
            labels = (labels,)
        if isinstance(labels, Mapping):
            if set(labels) != set(self.label_names):
                raise ValueError(
                    f"{self.name}: expected labels {list(self.label_names)}, got {sorted(labels)}"
                )
            return tuple(str(labels[name]) for name in self.label_names)
        values = tuple(str(value) for value in labels)
        if len(values) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(values)}"
            )
        return values

    def observe(self, labels: Labels, value: float) -> None:
        """Record one observation for the series with these labels."""
        key = self._key(labels)
        index = bisect_left(self.buckets, value)
        with self._lock:
            counts = self._counts.setdefault(key, [0] * len(self.buckets))
            counts[index] += 1
            self._sums[key] = self._sums.get(key, 0.0) + value

    def count(self, labels: Labels) -> int:
        """Number of observations recorded for these labels."""
        key = self._key(labels)
        with self._lock:
            return sum(self._counts.get(key, ()))

    def bucket_counts(self, labels: Labels) -> dict[float, int]:
        """Cumulative observation count for each bucket upper bound."""
        key = self._key(labels)
        with self._lock:
            counts = list(self._counts.get(key, [0] * len(self.buckets)))
        return dict(zip(self.buckets, accumulate(counts)))


INSTALLATION_HIST_VEC = HistogramVec(
    "blueprint_installation_histogram",
    "Histogram vector for Blueprint Installations.",
    DEFAULT_BUCKETS,
    ("name", "operation", "status"),
)

ADDON_HIST_VEC = HistogramVec(
    "blueprint_add_on_histogram",
    "Histogram vector for Blueprint Add Ons.",
    DEFAULT_BUCKETS,
    ("name", "status"),
)

MANIFEST_HIST_VEC = HistogramVec(
    "blueprint_manifest_histogram",
    "Histogram vector for Blueprint Manifests.",
    DEFAULT_BUCKETS,
    ("name", "status"),
)


def metric_status(error: Optional[BaseException]) -> str:
    """Metric status label for the outcome of an operation."""
    return STATUS_FAILURE if error is not None else STATUS_SUCCESS