"""Remote State Resolver: what a destination already holds for a dataset."""
from __future__ import annotations

from typing import TYPE_CHECKING

from zrb.errors import DatasetNotFound

if TYPE_CHECKING:
    from zrb.models import RemoteEndpoint
    from zrb.store import SnapshotStore


class RemoteStateResolver:
    def __init__(self, store: "SnapshotStore"):
        self._store = store

    def resolve(self, dataset: str, endpoint: "RemoteEndpoint") -> list[str]:
        """Return the snapshot names the endpoint holds for dataset, oldest first.

        An absent destination dataset is an empty history, not an error.
        EndpointUnreachable and EndpointProtocolError propagate.
        """
        dst_dataset = endpoint.dataset_for(dataset)
        try:
            snapshots = self._store.list(dst_dataset, endpoint.name)
        except DatasetNotFound:
            return []
        return [s.name for s in snapshots]
