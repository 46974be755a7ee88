"""Data models for zfs-replication-backups."""
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from zrb.retention import RetentionPolicy
    from zrb.retry import RetryPolicy


@dataclass(frozen=True, order=True)
class Snapshot:
    """A ZFS snapshot: pool/dataset@name."""
    dataset: str
    name: str  # just the snapshot name after '@'
    creation: int | None = field(default=None, compare=False)  # unix seconds

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.name}"

    @classmethod
    def parse(cls, full_name: str, creation: int | None = None) -> "Snapshot":
        dataset, _, name = full_name.partition("@")
        if not name:
            raise ValueError(f"Not a snapshot: {full_name!r}")
        return cls(dataset=dataset, name=name, creation=creation)


@dataclass(frozen=True)
class Dataset:
    name: str  # e.g. ipool/home/user
    retention: "RetentionPolicy | None" = None

    @property
    def pool(self) -> str:
        return self.name.split("/")[0]


@dataclass
class SourceConfig:
    pool: str


@dataclass
class RemoteEndpoint:
    """A destination: where received datasets live and how to reach it."""
    pool: str
    prefix: str = "BACKUP"
    host: str | None = None
    user: str | None = None
    port: int = 22
    name: str = ""
    retention: "RetentionPolicy | None" = None

    def __post_init__(self):
        if not self.name:
            self.name = self.host or "local"

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    def dataset_for(self, src_dataset: str) -> str:
        """Return the destination dataset path for a given source dataset.

        Example: ipool/home/user -> xeonpool/BACKUP/ipool/home/user
        """
        return f"{self.pool}/{self.prefix}/{src_dataset}"


@dataclass
class SnapshotSettings:
    prefix: str = "zrb"
    min_interval: int = 15 * 60  # seconds


@dataclass
class EncryptionSettings:
    key_file: str
    remote_key_file: str | None = None
    cipher: str = "aes-256-ctr"


@dataclass
class TransferSettings:
    compression: str | None = None
    encryption: EncryptionSettings | None = None
    raw: bool = False
    intermediates: bool = True
    resume_cache: str | None = None
    chunk_size: int = 128 * 1024


@dataclass
class JobConfig:
    source: SourceConfig
    destinations: list[RemoteEndpoint]
    datasets: list[Dataset]
    retention: "RetentionPolicy | None" = None  # default for source datasets
    snapshot: SnapshotSettings = field(default_factory=SnapshotSettings)
    transfer: TransferSettings = field(default_factory=TransferSettings)
    concurrency: int = 1
    retry: "RetryPolicy | None" = None

    def policy_for(self, dataset: Dataset) -> "RetentionPolicy | None":
        return dataset.retention if dataset.retention is not None else self.retention

    def select(self, names: list[str] | None) -> list[Dataset]:
        """Return the configured datasets restricted to `names` (all if empty)."""
        if not names:
            return list(self.datasets)
        by_name = {d.name: d for d in self.datasets}
        return [by_name[n] for n in names]


class TransferMode(Enum):
    NOOP = "noop"
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class TransferPlan:
    dataset: str
    target: Snapshot | None
    mode: TransferMode
    base: Snapshot | None = None

    @property
    def key(self) -> str:
        """Stable identity of the plan, used to key saved resume tokens."""
        base = self.base.name if self.base else ""
        target = self.target.name if self.target else ""
        return f"{self.mode.value}:{base}:{target}"

    def describe(self) -> str:
        if self.mode is TransferMode.NOOP:
            return "up to date"
        if self.mode is TransferMode.FULL:
            return f"full send of @{self.target.name}"
        return f"incremental @{self.base.name} -> @{self.target.name}"


class JobStatus(Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    STREAMING = "streaming"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed (retryable)"
    FAILED_FATAL = "failed (fatal)"

    @property
    def is_terminal(self) -> bool:
        return self in (
            JobStatus.COMPLETED, JobStatus.FAILED_RETRYABLE, JobStatus.FAILED_FATAL,
        )


_job_ids = itertools.count(1)


@dataclass
class TransferJob:
    """One attempt at executing a TransferPlan against one endpoint."""
    plan: TransferPlan
    endpoint: str
    dst_dataset: str
    id: int = field(default_factory=lambda: next(_job_ids))
    status: JobStatus = JobStatus.PENDING
    resume_token: str | None = None
    resumed: bool = False
    restarted: bool = False
    bytes_transferred: int = 0
    error: Exception | None = None

    def pins(self, source_location: str) -> list[tuple[str, str, str]]:
        """(location, dataset, snapshot name) triples this job protects."""
        plan = self.plan
        pins = []
        if plan.target is not None:
            pins.append((source_location, plan.dataset, plan.target.name))
        if plan.base is not None:
            pins.append((source_location, plan.dataset, plan.base.name))
            pins.append((self.endpoint, self.dst_dataset, plan.base.name))
        return pins
