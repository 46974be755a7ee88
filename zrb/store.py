"""Snapshot Store: what snapshots exist, and which of them are depended on.

Every code path that deletes a snapshot goes through `SnapshotStore.destroy`,
which checks pins under the same lock that `pin`/`unpin` take.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from zrb.errors import DatasetNotFound, SnapshotCreateError, SnapshotPinned
from zrb.models import Snapshot

if TYPE_CHECKING:
    from zrb.models import TransferJob
    from zrb.zfs import SnapshotPrimitive

SOURCE = "source"


class SnapshotNaming:
    """Names managed snapshots `<prefix>-YYYY-MM-DDTHHMMSSZ` (UTC).

    Lexical order of managed names equals creation order.
    """
    TIME_FORMAT = "%Y-%m-%dT%H%M%SZ"

    def __init__(self, prefix: str = "zrb"):
        self.prefix = prefix

    @property
    def pattern(self) -> str:
        """Regex (for re.fullmatch) matching managed snapshot names."""
        return f"{self.prefix}-" + r"\d{4}-\d{2}-\d{2}T\d{6}Z"

    def name_for(self, t: datetime) -> str:
        return f"{self.prefix}-{t.strftime(self.TIME_FORMAT)}"

    def parse(self, name: str) -> datetime | None:
        head = f"{self.prefix}-"
        if not name.startswith(head):
            return None
        try:
            t = datetime.strptime(name[len(head):], self.TIME_FORMAT)
        except ValueError:
            return None
        return t.replace(tzinfo=timezone.utc)

    def next_name(self, existing: list[Snapshot], now: datetime) -> str:
        """Name for a new snapshot, strictly greater than every managed name."""
        t = now.astimezone(timezone.utc).replace(microsecond=0)
        times = [self.parse(s.name) for s in existing]
        times = [x for x in times if x is not None]
        if times and t <= max(times):
            t = max(times) + timedelta(seconds=1)
        return self.name_for(t)


class SnapshotStore:
    def __init__(
        self,
        locations: dict[str, "SnapshotPrimitive"],
        naming: SnapshotNaming | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._locations = dict(locations)
        self.naming = naming or SnapshotNaming()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._run_locks: dict[str, threading.Lock] = {}
        self._pins: dict[tuple[str, str, str], set[int]] = {}
        self._confirmed: dict[tuple[str, str], dict[str, str]] = {}

    def now(self) -> datetime:
        return self._clock()

    def location(self, name: str) -> "SnapshotPrimitive":
        return self._locations[name]

    def _lock_for(self, location: str, dataset: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((location, dataset), threading.Lock())

    @contextmanager
    def run_lock(self, dataset: str):
        """Exclusive per-dataset lock held for a whole backup/prune run."""
        with self._guard:
            lock = self._run_locks.setdefault(dataset, threading.Lock())
        with lock:
            yield

    def list(self, dataset: str, location: str = SOURCE) -> list[Snapshot]:
        """Snapshots of dataset at location, newest last."""
        return self._locations[location].list_snapshots(dataset)

    def create(self, dataset: str) -> Snapshot:
        """Create a new managed snapshot of a source dataset."""
        primitive = self._locations[SOURCE]
        with self._lock_for(SOURCE, dataset):
            try:
                existing = primitive.list_snapshots(dataset)
            except DatasetNotFound as e:
                raise SnapshotCreateError(str(e)) from e
            name = self.naming.next_name(existing, self.now())
            return primitive.create_snapshot(dataset, name)

    def is_due(self, dataset: str, min_interval: int, snapshots: list[Snapshot] | None = None) -> bool:
        """True if the newest managed snapshot is at least min_interval old."""
        if snapshots is None:
            snapshots = self.list(dataset)
        times = [self.naming.parse(s.name) for s in snapshots]
        times = [t for t in times if t is not None]
        if not times:
            return True
        return (self.now() - max(times)).total_seconds() >= min_interval

    def destroy(self, dataset: str, location: str, snapshot: Snapshot) -> None:
        with self._lock_for(location, dataset):
            if self._pins.get((location, dataset, snapshot.name)):
                raise SnapshotPinned(
                    f"{snapshot.full_name} is in use by an active transfer"
                )
            self._locations[location].destroy_snapshot(snapshot)

    def is_pinned(self, location: str, dataset: str, name: str) -> bool:
        with self._lock_for(location, dataset):
            return bool(self._pins.get((location, dataset, name)))

    def pin(self, job: "TransferJob") -> None:
        for key in job.pins(SOURCE):
            location, dataset, _ = key
            with self._lock_for(location, dataset):
                self._pins.setdefault(key, set()).add(job.id)

    def unpin(self, job: "TransferJob") -> None:
        for key in job.pins(SOURCE):
            location, dataset, _ = key
            with self._lock_for(location, dataset):
                holders = self._pins.get(key)
                if holders is not None:
                    holders.discard(job.id)
                    if not holders:
                        del self._pins[key]

    def confirm_common(self, dataset: str, location: str, name: str, via: str) -> None:
        """Record `name` as the newest snapshot shared between location and `via`."""
        with self._lock_for(location, dataset):
            self._confirmed.setdefault((location, dataset), {})[via] = name

    def protected(self, dataset: str, location: str) -> set[str]:
        """Snapshots that must survive pruning to keep incrementals possible."""
        with self._lock_for(location, dataset):
            return set(self._confirmed.get((location, dataset), {}).values())

    def is_confirmed(self, dataset: str, location: str, via: str) -> bool:
        with self._lock_for(location, dataset):
            return via in self._confirmed.get((location, dataset), {})
