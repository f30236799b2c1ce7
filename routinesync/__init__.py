"""Offline-first sync of checklists, steps and execution logs."""

from .config import Config, load_config
from .errors import ConfigError, MalformedRowError, MutationError, RoutineSyncError
from .models import Checklist, ExecutionLogEntry, LogKind, Step
from .mutations import LocalMutations, Mutation
from .session import RoutineSession

__version__ = "0.1.0"

__all__ = [
    "Config",
    "load_config",
    "ConfigError",
    "MalformedRowError",
    "MutationError",
    "RoutineSyncError",
    "Checklist",
    "ExecutionLogEntry",
    "LogKind",
    "Step",
    "LocalMutations",
    "Mutation",
    "RoutineSession",
]
