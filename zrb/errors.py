"""Error taxonomy for zfs-replication-backups.

Every error carries a failure class. The process exit status is the worst
failure class observed across all datasets of a run.
"""
from __future__ import annotations

from enum import IntEnum


class FailureClass(IntEnum):
    OK = 0
    CONFIG = 1
    TRANSIENT = 2
    FATAL = 3


class ZrbError(Exception):
    """Base class for all errors raised by the replication engine."""
    failure_class = FailureClass.FATAL


class RetryableError(ZrbError):
    """The operation may succeed if attempted again."""
    failure_class = FailureClass.TRANSIENT


class ConfigError(ZrbError):
    failure_class = FailureClass.CONFIG


# --- snapshot store ---

class SnapshotError(ZrbError):
    pass


class SnapshotCreateError(SnapshotError):
    failure_class = FailureClass.TRANSIENT


class SnapshotPinned(SnapshotError):
    pass


class SnapshotInUse(SnapshotError):
    pass


class SnapshotDestroyError(SnapshotError):
    pass


class DatasetNotFound(ZrbError):
    pass


# --- endpoints ---

class EndpointUnreachable(RetryableError):
    pass


class EndpointProtocolError(ZrbError):
    pass


# --- planning ---

class DivergedHistory(ZrbError):
    pass


class NothingToTransfer(ZrbError):
    failure_class = FailureClass.TRANSIENT


class StalePlan(RetryableError):
    """The destination changed between resolution and execution."""


# --- transfer ---

class TransferError(ZrbError):
    job = None


class StreamInterrupted(TransferError, RetryableError):
    failure_class = FailureClass.TRANSIENT


class TransferCancelled(StreamInterrupted):
    pass


class ResumeTokenInvalid(TransferError):
    pass


class VerificationMismatch(TransferError):
    pass


class TransferFailed(TransferError):
    pass


def worst(classes) -> FailureClass:
    """Return the most severe failure class, OK for an empty iterable."""
    return max(classes, default=FailureClass.OK)
