from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Sequence

from ..control import DEFAULT_BASE_URL, ServiceAccount
from ..lifecycle import LifecycleConfig

DEFAULT_GRACEFUL_STOP_SECONDS = 30.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


@dataclass(frozen=True)
class RampStage:
    """Linear ramp towards ``target`` virtual users over ``duration_seconds``."""

    duration_seconds: float
    target: int

    def __post_init__(self) -> None:
        if self.duration_seconds < 0:
            raise ValueError("RampStage duration must be >= 0")
        if self.target < 0:
            raise ValueError("RampStage target must be >= 0")


@dataclass(frozen=True)
class RampProfile:
    """Time-ordered target population for the load test."""

    stages: tuple[RampStage, ...]
    start_population: int = 0

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValueError("RampProfile needs at least one stage")
        if self.start_population < 0:
            raise ValueError("RampProfile start_population must be >= 0")

    def __iter__(self) -> Iterator[RampStage]:
        return iter(self.stages)

    @property
    def total_duration_seconds(self) -> float:
        return sum(stage.duration_seconds for stage in self.stages)

    @property
    def peak_population(self) -> int:
        return max([self.start_population, *(stage.target for stage in self.stages)])

    def target_at(self, elapsed_seconds: float) -> int:
        if elapsed_seconds <= 0:
            return self.start_population
        previous = self.start_population
        offset = 0.0
        for stage in self.stages:
            stage_end = offset + stage.duration_seconds
            if elapsed_seconds < stage_end:
                fraction = (elapsed_seconds - offset) / stage.duration_seconds
                fraction = min(max(fraction, 0.0), 1.0)
                return int(previous + (stage.target - previous) * fraction)
            previous = stage.target
            offset = stage_end
        return previous


@dataclass(frozen=True)
class LoadTestSettings:
    """Everything the CLI resolved from flags and the environment."""

    profile: RampProfile
    lifecycle: LifecycleConfig
    base_url: str = DEFAULT_BASE_URL
    ws_base_url: Optional[str] = None
    service_account: Optional[ServiceAccount] = field(default=None, repr=False)
    tick_seconds: float = 1.0
    output_dir: Optional[Path] = None
    run_log_path: Optional[Path] = None
    run_log_append: bool = False
    graceful_stop_seconds: float = DEFAULT_GRACEFUL_STOP_SECONDS


def default_ramp_profile() -> RampProfile:
    return RampProfile(stages=(RampStage(duration_seconds=5 * 60, target=2_000),))


def parse_duration(value: str) -> float:
    """Parse ``"1h2m3s"``, ``"90s"``, ``"250ms"`` or bare seconds into seconds."""
    text = value.strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ValueError(f"negative duration {value!r}")
        return seconds

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        amount, unit = float(match.group(1)), match.group(2)
        total += amount * {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}[unit]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


def parse_stages(value: str) -> RampProfile:
    """Parse ``"30s:10,5m:2000,1m:0"`` into a ramp profile."""
    stages: list[RampStage] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        duration, sep, target = item.partition(":")
        if not sep:
            raise ValueError(f"stage {item!r} must look like <duration>:<target>")
        try:
            target_value = int(target.strip())
        except ValueError as exc:
            raise ValueError(f"stage {item!r} has a non-integer target") from exc
        stages.append(RampStage(duration_seconds=parse_duration(duration), target=target_value))
    return RampProfile(stages=tuple(stages))


def format_stages(stages: Sequence[RampStage]) -> str:
    return ", ".join(f"{stage.duration_seconds:g}s -> {stage.target}" for stage in stages)
