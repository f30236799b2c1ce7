"""Exceptions raised by routinesync.

Network failures are reported as SyncResult values, not exceptions; these
cover errors a caller has to fix.
"""


class RoutineSyncError(Exception):
    """Base class for routinesync errors."""


class ConfigError(RoutineSyncError):
    """Configuration file is missing required structure or unreadable."""


class MutationError(RoutineSyncError):
    """A local mutation references an entity that does not exist."""


class MalformedRowError(RoutineSyncError, ValueError):
    """A diff row cannot be turned into an entity."""
