"""
Ramping load for the VM lifecycle harness.

This package holds the ramp profile and settings model, the scheduler that
keeps a time-varying population of virtual users busy with back-to-back
lifecycles, the collector that folds their outcomes into aggregate counts,
and the chart rendering used for the end-of-run report.
"""

from .collector import AggregateResult, ResultCollector
from .config import LoadTestSettings, RampProfile, RampStage, parse_stages
from .scheduler import RampScheduler

__all__ = [
    "AggregateResult",
    "LoadTestSettings",
    "RampProfile",
    "RampScheduler",
    "RampStage",
    "ResultCollector",
    "parse_stages",
]
