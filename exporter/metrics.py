"""Per-run metrics: a thread-safe accumulator and the helper that fills and publishes it."""

from __future__ import annotations

import threading
from collections import Counter, defaultdict
from collections.abc import Mapping
from typing import Any

from exporter.logging_utils import get_logger

logger = get_logger(__name__)


class Metrics:
    """Counters and unique-value sets for one export run.

    Shared by the dispatcher thread and every worker thread of the run.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter()
        self._key_values: dict[str, set[str]] = defaultdict(set)

    def increment_counter(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def add_key_value(self, key: str, value: str) -> None:
        with self._lock:
            self._key_values[key].add(value)

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def key_values(self, key: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._key_values.get(key, ()))

    def counters(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(sorted(self._counters.items())),
                "unique_counts": {k: len(v) for k, v in sorted(self._key_values.items())},
            }


class MetricsHelper:
    """Captures per-record metrics and publishes them once at the end of a run."""

    def capture_metrics_for_record(self, metrics: Metrics, record: Mapping[str, Any]) -> None:
        study_id = record.get("studyId") or "unknown"
        metrics.increment_counter("numRecords")
        metrics.increment_counter(f"numRecords[{study_id}]")

        health_code = record.get("healthCode")
        if health_code:
            metrics.add_key_value("uniqueHealthCodes", health_code)
            metrics.add_key_value(f"uniqueHealthCodes[{study_id}]", health_code)

    def publish_metrics(self, metrics: Metrics) -> None:
        snapshot = metrics.to_dict()
        for name, value in snapshot["counters"].items():
            logger.info(f"{name}: {value}")
        for name, value in snapshot["unique_counts"].items():
            logger.info(f"{name}: {value}")
        logger.info("Export metrics published", extra=snapshot)
