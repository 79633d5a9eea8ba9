from __future__ import annotations

import collections
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

import pandas as pd

from ..failures import FailureReason
from ..lifecycle import LifecycleRun, Outcome
from ..report import format_run

RUN_COLUMNS = [
    "name",
    "outcome",
    "reason",
    "detail",
    "started_at",
    "finished_at",
    "duration_s",
    "create_status",
    "delete_status",
    "close_code",
    "bytes_sent",
    "bytes_received",
    "tunnel_duration_s",
]

POPULATION_COLUMNS = ["elapsed_s", "target", "active"]


@dataclass(frozen=True)
class AggregateResult:
    started: int = 0
    passed: int = 0
    failed: int = 0
    failures_by_reason: dict[str, int] = field(default_factory=dict)

    @property
    def finished(self) -> int:
        return self.passed + self.failed

    @property
    def in_flight(self) -> int:
        return self.started - self.finished

    @property
    def pass_rate(self) -> float:
        if self.finished == 0:
            return 0.0
        return self.passed / self.finished


class ResultCollector:
    """Folds finished lifecycle runs into aggregate counters and report rows."""

    def __init__(
        self,
        run_logger: Optional[logging.Logger] = None,
        keep_records: bool = True,
    ) -> None:
        self._run_logger = run_logger
        self._keep_records = keep_records

        self._lock = threading.Lock()
        self._started = 0
        self._passed = 0
        self._failed = 0
        self._reasons: collections.Counter[str] = collections.Counter()
        self._rows: list[dict[str, Any]] = []
        self._population: list[dict[str, Any]] = []

    def register_start(self) -> None:
        with self._lock:
            self._started += 1

    def record(self, run: LifecycleRun) -> None:
        row = _run_row(run) if self._keep_records else None
        with self._lock:
            if run.outcome is Outcome.PASSED:
                self._passed += 1
            else:
                self._failed += 1
                self._reasons[run.failure.kind if run.failure else "unknown"] += 1
            if row is not None:
                self._rows.append(row)

        if self._run_logger is not None:
            level = logging.INFO if run.outcome is Outcome.PASSED else logging.WARNING
            self._run_logger.log(level, format_run(run))

    def record_failure(self, name: str, reason: FailureReason) -> None:
        """Fold in an iteration that crashed before it could produce a run."""
        run = LifecycleRun(name=name)
        run.record_failure(reason)
        run.complete()
        self.record(run)

    def record_population(self, elapsed_s: float, target: int, active: int) -> None:
        with self._lock:
            self._population.append(
                {"elapsed_s": elapsed_s, "target": target, "active": active}
            )

    def snapshot(self) -> AggregateResult:
        with self._lock:
            return AggregateResult(
                started=self._started,
                passed=self._passed,
                failed=self._failed,
                failures_by_reason=dict(self._reasons),
            )

    def build_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = list(self._rows)
        if not rows:
            return pd.DataFrame(columns=RUN_COLUMNS)
        return pd.DataFrame(rows, columns=RUN_COLUMNS)

    def population_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = list(self._population)
        if not rows:
            return pd.DataFrame(columns=POPULATION_COLUMNS)
        return pd.DataFrame(rows, columns=POPULATION_COLUMNS)


def _run_row(run: LifecycleRun) -> dict[str, Any]:
    tunnel = run.tunnel
    return {
        "name": run.name,
        "outcome": run.outcome.value,
        "reason": run.failure.kind if run.failure else None,
        "detail": str(run.failure) if run.failure else None,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "duration_s": run.duration_s,
        "create_status": run.create_status,
        "delete_status": run.delete_status,
        "close_code": tunnel.close_code if tunnel else None,
        "bytes_sent": tunnel.bytes_sent if tunnel else None,
        "bytes_received": tunnel.bytes_received if tunnel else None,
        "tunnel_duration_s": tunnel.duration_s if tunnel else None,
    }


def summarize_durations(df: pd.DataFrame) -> dict[str, float]:
    durations = df["duration_s"].dropna().astype(float) if "duration_s" in df else pd.Series(dtype=float)
    if durations.empty:
        return {}
    return {
        "p50_s": float(durations.quantile(0.50)),
        "p95_s": float(durations.quantile(0.95)),
        "p99_s": float(durations.quantile(0.99)),
        "max_s": float(durations.max()),
    }
