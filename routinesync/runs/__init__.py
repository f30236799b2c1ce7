"""Derived views over the execution log: runs and success summaries."""

from .reconstructor import (
    IDLE_GAP_MS,
    UNKNOWN_CHECKLIST,
    UNKNOWN_STEP,
    Interval,
    Row,
    Run,
    reconstruct_runs,
)
from .summary import StepSuccessSummary, summarize_success

__all__ = [
    "IDLE_GAP_MS",
    "UNKNOWN_CHECKLIST",
    "UNKNOWN_STEP",
    "Interval",
    "Row",
    "Run",
    "reconstruct_runs",
    "StepSuccessSummary",
    "summarize_success",
]
