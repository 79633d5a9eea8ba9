from __future__ import annotations

import datetime
import logging
import time
from pathlib import Path

from .lifecycle import LifecycleRun

RUN_LOGGER_NAME = "vmload.runs"
DEFAULT_RUN_LOG_PATH = Path("logs") / "vmload-runs.log"
RUN_LOG_FORMAT = "%(asctime)sZ %(levelname)-7s %(message)s"
RUN_LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def configure_run_logger(
    log_path: Path = DEFAULT_RUN_LOG_PATH,
    append: bool = False,
) -> logging.Logger:
    """Route per-lifecycle summaries to ``log_path``.

    Timestamps are UTC so that entries line up with the orchestrator's own
    logs. Passing ``append=True`` keeps the entries of earlier load tests.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(RUN_LOGGER_NAME)
    close_run_logger(logger)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    formatter = logging.Formatter(RUN_LOG_FORMAT, datefmt=RUN_LOG_DATEFMT)
    formatter.converter = time.gmtime
    handler = logging.FileHandler(log_path, mode="a" if append else "w", encoding="utf-8")
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


def close_run_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def _timestamp(ts: float) -> str:
    return datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc).isoformat()


def format_run(run: LifecycleRun) -> str:
    lines = [f"[{_timestamp(run.started_at)}] vm {run.name!r}"]
    lines.append(f"  outcome: {run.outcome.value}")
    if run.duration_s is not None:
        lines.append(f"  duration_s: {run.duration_s:.3f}")
    if run.failure is not None:
        lines.append(f"  reason: {run.failure.kind}")
        lines.append(f"  detail: {run.failure}")
    if run.create_status is not None:
        lines.append(f"  create_status: {run.create_status}")

    tunnel = run.tunnel
    if tunnel is not None:
        header_parts = [f"state={tunnel.state.value}"]
        if tunnel.close_code is not None:
            header_parts.append(f"close_code={tunnel.close_code}")
        header_parts.append(f"bytes={tunnel.bytes_received}/{tunnel.expected_bytes}")
        header_parts.append(f"duration_s={tunnel.duration_s:.3f}")
        lines.append(f"  tunnel: {' '.join(header_parts)}")
        if tunnel.sent_digest:
            lines.append(f"    sent_sha256: {tunnel.sent_digest}")
        if tunnel.received_digest and tunnel.received_digest != tunnel.sent_digest:
            lines.append(f"    received_sha256: {tunnel.received_digest}")
    elif run.failure is not None:
        lines.append("  tunnel: skipped")

    if run.delete_attempted:
        lines.append(f"  delete_status: {run.delete_status}")
    if run.delete_failure is not None and run.delete_failure is not run.failure:
        lines.append(f"  delete_error: {run.delete_failure}")

    return "\n".join(lines)


__all__ = [
    "DEFAULT_RUN_LOG_PATH",
    "RUN_LOGGER_NAME",
    "close_run_logger",
    "configure_run_logger",
    "format_run",
]
