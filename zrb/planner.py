"""Transfer Planner: decide full, incremental or nothing."""
from __future__ import annotations

from zrb.errors import DivergedHistory, NothingToTransfer
from zrb.models import Snapshot, TransferMode, TransferPlan


def find_common(source_history: list[Snapshot], remote_history: list[str]) -> Snapshot | None:
    """Return the newest remote snapshot also present in source, or None.

    Names are opaque: only exact matches count.
    """
    by_name = {s.name: s for s in source_history}
    for name in reversed(remote_history):
        if name in by_name:
            return by_name[name]
    return None


def plan_transfer(
    dataset: str,
    source_history: list[Snapshot],
    remote_history: list[str],
) -> TransferPlan:
    if not source_history:
        raise NothingToTransfer(f"{dataset} has no snapshots to send")
    latest = source_history[-1]
    common = find_common(source_history, remote_history)

    if common is None:
        if remote_history:
            raise DivergedHistory(
                f"{dataset}: destination holds {len(remote_history)} snapshot(s) but none "
                f"in common with the source (newest remote: @{remote_history[-1]}); "
                "resolve manually"
            )
        return TransferPlan(dataset=dataset, target=latest, mode=TransferMode.FULL)

    if common.name == latest.name:
        return TransferPlan(dataset=dataset, target=latest, mode=TransferMode.NOOP, base=common)
    return TransferPlan(dataset=dataset, target=latest, mode=TransferMode.INCREMENTAL, base=common)


def behind_count(plan: TransferPlan, source_history: list[Snapshot]) -> int:
    """How many source snapshots the destination is missing."""
    if plan.mode is TransferMode.NOOP:
        return 0
    if plan.mode is TransferMode.FULL:
        return len(source_history)
    names = [s.name for s in source_history]
    return len(names) - names.index(plan.base.name) - 1
