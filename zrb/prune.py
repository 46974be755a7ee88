"""Retention Pruner: delete expired snapshots that nothing depends on."""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from zrb import output
from zrb.errors import (
    EndpointUnreachable,
    SnapshotDestroyError,
    SnapshotInUse,
    SnapshotPinned,
)
from zrb.models import Snapshot

if TYPE_CHECKING:
    from zrb.retention import RetentionPolicy
    from zrb.store import SnapshotStore


class RetentionPruner:
    def __init__(self, store: "SnapshotStore", verbose: bool = False):
        self._store = store
        self.verbose = verbose

    def plan(
        self,
        dataset: str,
        location: str,
        policy: "RetentionPolicy",
        now: datetime | None = None,
    ) -> list[Snapshot]:
        """Return the snapshots prune() would delete, oldest first.

        The newest confirmed common snapshot with each peer is never
        returned, even when the policy would expire it.
        """
        snapshots = self._store.list(dataset, location)
        keep = policy.keep_set(snapshots, now or self._store.now())
        protected = self._store.protected(dataset, location)
        if self.verbose:
            output.say(
                f"{len(snapshots)} snapshot(s) at {location}, {len(keep)} kept by policy, "
                f"{len(protected - keep)} more protected as common base",
                dataset,
            )
        return [s for s in snapshots if s.name not in keep and s.name not in protected]

    def apply(
        self,
        dataset: str,
        location: str,
        to_delete: list[Snapshot],
        dry_run: bool = False,
    ) -> set[str]:
        deleted: set[str] = set()
        for snap in to_delete:
            if dry_run:
                output.say(f"  [dry-run] destroy {snap.full_name} ({location})")
                deleted.add(snap.name)
                continue
            if self.verbose:
                output.say(f"  [destroy] {snap.full_name} ({location})")
            try:
                self._store.destroy(dataset, location, snap)
            except (SnapshotPinned, SnapshotInUse, SnapshotDestroyError, EndpointUnreachable) as e:
                output.warn(f"skipping {snap.full_name}: {e}", dataset)
                continue
            deleted.add(snap.name)
        return deleted

    def prune(
        self,
        dataset: str,
        location: str,
        policy: "RetentionPolicy",
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> set[str]:
        """Delete expired snapshots at location; return the deleted names."""
        to_delete = self.plan(dataset, location, policy, now)
        deleted = self.apply(dataset, location, to_delete, dry_run)
        if to_delete:
            output.say(f"Pruned {len(deleted)} of {len(to_delete)} snapshot(s) at {location}", dataset)
        return deleted
