"""Run orchestration: resolve -> plan -> execute -> prune, per dataset.

Datasets run in parallel on a bounded worker pool; within a dataset every
step is sequential under the store's per-dataset run lock. A failure is
recorded against its dataset and never stops the others.
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from zrb import output
from zrb.errors import (
    DatasetNotFound,
    FailureClass,
    NothingToTransfer,
    ZrbError,
    worst,
)
from zrb.models import TransferMode
from zrb.output import GREEN, RED, RESET, YELLOW
from zrb.planner import behind_count, plan_transfer
from zrb.prune import RetentionPruner
from zrb.resolver import RemoteStateResolver
from zrb.retry import RetryPolicy, run_with_retries
from zrb.store import SOURCE, SnapshotNaming, SnapshotStore
from zrb.transfer import PipelineExecutor, ResumeTokenCache
from zrb.transforms import TransformChain
from zrb.zfs import ZfsPrimitive

if TYPE_CHECKING:
    from zrb.executor import SessionPool
    from zrb.models import Dataset, JobConfig, RemoteEndpoint, Snapshot, TransferPlan
    from zrb.retention import RetentionPolicy


@dataclass
class DatasetResult:
    dataset: str
    failure: FailureClass = FailureClass.OK
    created: "Snapshot | None" = None
    sent: list[str] = field(default_factory=list)
    up_to_date: list[str] = field(default_factory=list)
    resolved: set[str] = field(default_factory=set)
    pruned: dict[str, set[str]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def record(self, error: Exception, where: str | None = None) -> None:
        failure = getattr(error, "failure_class", FailureClass.FATAL)
        self.failure = max(self.failure, failure)
        message = f"{where}: {error}" if where else str(error)
        self.errors.append(message)
        output.error(message, self.dataset)


@dataclass
class PruneStep:
    """Deletions planned at one location, applied after confirmation."""
    location: str
    dataset: str
    snapshots: list["Snapshot"]


def build_store(config: "JobConfig", pool: "SessionPool", verbose: bool = False) -> SnapshotStore:
    """Source is always local; each destination gets a pooled session."""
    settings = config.transfer
    locations = {
        SOURCE: ZfsPrimitive(pool.local, settings.raw, settings.intermediates, verbose),
    }
    for endpoint in config.destinations:
        locations[endpoint.name] = ZfsPrimitive(
            pool.get(endpoint), settings.raw, settings.intermediates, verbose,
        )
    return SnapshotStore(locations, SnapshotNaming(config.snapshot.prefix))


class Replicator:
    def __init__(
        self,
        config: "JobConfig",
        store: SnapshotStore,
        executor: PipelineExecutor | None = None,
        cancel: threading.Event | None = None,
        dry_run: bool = False,
        verbose: bool = False,
        sleep: Callable[[float], None] | None = None,
    ):
        self.config = config
        self.store = store
        self.cancel = cancel or threading.Event()
        self.dry_run = dry_run
        self.verbose = verbose
        self.sleep = sleep
        self.retry = config.retry or RetryPolicy()
        self.resolver = RemoteStateResolver(store)
        self.pruner = RetentionPruner(store, verbose)
        self.executor = executor or PipelineExecutor(
            store,
            chain=TransformChain.from_settings(config.transfer),
            token_cache=ResumeTokenCache(config.transfer.resume_cache),
            cancel=self.cancel,
            chunk_size=config.transfer.chunk_size,
        )

    # --- helpers ---

    def _with_retries(self, dataset: str, fn, *args):
        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            output.warn(
                f"{error}; retrying in {delay:g}s (attempt {attempt + 1}/{self.retry.max_attempts})",
                dataset,
            )
        return run_with_retries(
            self.retry, fn, *args,
            sleep=self.sleep, cancel=self.cancel, on_retry=on_retry,
        )

    def _reconcile(self, ds: "Dataset", endpoint: "RemoteEndpoint", result: DatasetResult) -> "TransferPlan":
        """Resolve the endpoint, plan, and record the confirmed common snapshot."""
        remote = self.resolver.resolve(ds.name, endpoint)
        result.resolved.add(endpoint.name)
        plan = plan_transfer(ds.name, self.store.list(ds.name), remote)
        if plan.base is not None:
            self.store.confirm_common(ds.name, SOURCE, plan.base.name, via=endpoint.name)
            self.store.confirm_common(
                endpoint.dataset_for(ds.name), endpoint.name, plan.base.name, via=SOURCE,
            )
        return plan

    def _maybe_snapshot(self, ds: "Dataset", result: DatasetResult) -> None:
        interval = self.config.snapshot.min_interval
        try:
            snapshots = self.store.list(ds.name)
        except DatasetNotFound:
            snapshots = None  # let create() report it
        if snapshots is not None and not self.store.is_due(ds.name, interval, snapshots):
            if self.verbose:
                output.say(f"newest snapshot is younger than {interval}s, not creating one", ds.name)
            return
        if self.dry_run:
            output.say("[dry-run] would create a new snapshot", ds.name)
            return
        result.created = self.store.create(ds.name)
        output.say(f"Created snapshot @{result.created.name}", ds.name)

    def _prune_steps(self, ds: "Dataset", result: DatasetResult) -> list[PruneStep]:
        """Plan deletions everywhere it is unambiguous to do so."""
        steps = []
        policy = self.config.policy_for(ds)
        if policy:
            unresolved = [e.name for e in self.config.destinations if e.name not in result.resolved]
            if unresolved:
                output.warn(
                    f"not pruning source: state of {', '.join(unresolved)} unknown", ds.name,
                )
            else:
                steps += self._plan_step(ds, SOURCE, ds.name, policy, result)
        for endpoint in self.config.destinations:
            dst_dataset = endpoint.dataset_for(ds.name)
            if not endpoint.retention:
                continue
            if not self.store.is_confirmed(dst_dataset, endpoint.name, SOURCE):
                if endpoint.name in result.resolved:
                    output.warn(f"not pruning {endpoint.name}: no common snapshot confirmed", ds.name)
                continue
            steps += self._plan_step(ds, endpoint.name, dst_dataset, endpoint.retention, result)
        return steps

    def _plan_step(
        self,
        ds: "Dataset",
        location: str,
        dataset: str,
        policy: "RetentionPolicy",
        result: DatasetResult,
    ) -> list[PruneStep]:
        try:
            snapshots = self.pruner.plan(dataset, location, policy)
        except DatasetNotFound:
            return []
        except ZrbError as e:
            result.record(e, f"pruning {location}")
            return []
        return [PruneStep(location, dataset, snapshots)] if snapshots else []

    def _apply_steps(self, ds: "Dataset", steps: list[PruneStep], result: DatasetResult) -> None:
        for step in steps:
            deleted = self.pruner.apply(step.dataset, step.location, step.snapshots, self.dry_run)
            result.pruned[step.location] = deleted
            verb = "Would prune" if self.dry_run else "Pruned"
            output.say(
                f"{verb} {len(deleted)} of {len(step.snapshots)} snapshot(s) at {step.location}",
                ds.name,
            )

    # --- per-dataset operations ---

    def backup_dataset(self, ds: "Dataset") -> DatasetResult:
        result = DatasetResult(ds.name)
        with self.store.run_lock(ds.name):
            try:
                self._maybe_snapshot(ds, result)
            except ZrbError as e:
                result.record(e)
                return result
            for endpoint in self.config.destinations:
                if self.cancel.is_set():
                    result.failure = max(result.failure, FailureClass.TRANSIENT)
                    output.warn("cancelled", ds.name)
                    return result
                try:
                    self._with_retries(ds.name, self._replicate, ds, endpoint, result)
                except NothingToTransfer as e:
                    if self.dry_run:
                        output.say(f"{endpoint.name}: [dry-run] nothing to send until a snapshot exists", ds.name)
                        continue
                    result.record(e, endpoint.name)
                except ZrbError as e:
                    result.record(e, endpoint.name)
            self._apply_steps(ds, self._prune_steps(ds, result), result)
        return result

    def _replicate(self, ds: "Dataset", endpoint: "RemoteEndpoint", result: DatasetResult) -> None:
        plan = self._reconcile(ds, endpoint, result)
        if plan.mode is TransferMode.NOOP:
            output.say(f"{endpoint.name}: {GREEN}Up to date{RESET}", ds.name)
            self.executor.execute(plan, endpoint)
            result.up_to_date.append(endpoint.name)
            return
        behind = behind_count(plan, self.store.list(ds.name))
        output.say(f"{endpoint.name}: {plan.describe()} ({behind} snapshot(s) behind)", ds.name)
        if self.dry_run:
            return
        self.executor.execute(plan, endpoint)
        result.sent.append(endpoint.name)

    def prune_plan(self, ds: "Dataset") -> tuple[DatasetResult, list[PruneStep]]:
        """Resolve every destination, then plan deletions (nothing is deleted)."""
        result = DatasetResult(ds.name)
        with self.store.run_lock(ds.name):
            for endpoint in self.config.destinations:
                try:
                    self._with_retries(ds.name, self._reconcile, ds, endpoint, result)
                except NothingToTransfer:
                    continue
                except ZrbError as e:
                    result.record(e, endpoint.name)
            steps = self._prune_steps(ds, result)
        return result, steps

    def prune_apply(self, ds: "Dataset", result: DatasetResult, steps: list[PruneStep]) -> DatasetResult:
        with self.store.run_lock(ds.name):
            self._apply_steps(ds, steps, result)
        return result

    def prune_dataset(self, ds: "Dataset") -> DatasetResult:
        result, steps = self.prune_plan(ds)
        return self.prune_apply(ds, result, steps)

    def snapshot_dataset(self, ds: "Dataset") -> DatasetResult:
        """Create a snapshot if one is due, then prune the source."""
        with self.store.run_lock(ds.name):
            snapped = DatasetResult(ds.name)
            try:
                self._maybe_snapshot(ds, snapped)
            except ZrbError as e:
                snapped.record(e)
                return snapped
        result, steps = self.prune_plan(ds)
        result.created = snapped.created
        return self.prune_apply(ds, result, [s for s in steps if s.location == SOURCE])

    def status_dataset(self, ds: "Dataset") -> DatasetResult:
        result = DatasetResult(ds.name)
        with self.store.run_lock(ds.name):
            for endpoint in self.config.destinations:
                try:
                    plan = self._reconcile(ds, endpoint, result)
                    line = self._describe_status(ds, endpoint, plan)
                except NothingToTransfer:
                    output.say(f"{endpoint.name}: source has no snapshots yet", ds.name)
                    continue
                except ZrbError as e:
                    result.record(e, endpoint.name)
                    continue
                output.say(f"{endpoint.name}: {line}", ds.name)
        return result

    def _describe_status(self, ds: "Dataset", endpoint: "RemoteEndpoint", plan: "TransferPlan") -> str:
        if plan.mode is TransferMode.NOOP:
            line = f"{GREEN}UP TO DATE{RESET} at @{plan.target.name}"
        elif plan.mode is TransferMode.FULL:
            line = f"{YELLOW}NO COMMON SNAPSHOT (needs full send of @{plan.target.name}){RESET}"
        else:
            behind = behind_count(plan, self.store.list(ds.name))
            line = f"{behind} snapshot(s) behind (common @{plan.base.name})"
        token = self.store.location(endpoint.name).get_resume_token(endpoint.dataset_for(ds.name))
        if token:
            line += f", {YELLOW}interrupted transfer pending resume{RESET}"
        return line

    # --- pool ---

    def run_all(self, datasets: list["Dataset"], fn: Callable[["Dataset"], DatasetResult]) -> list[DatasetResult]:
        def guarded(ds: "Dataset") -> DatasetResult:
            if self.cancel.is_set():
                return DatasetResult(ds.name, failure=FailureClass.TRANSIENT, errors=["cancelled"])
            try:
                return fn(ds)
            except Exception as e:  # keep sibling datasets running
                result = DatasetResult(ds.name)
                result.record(e)
                return result

        with ThreadPoolExecutor(max_workers=self.config.concurrency, thread_name_prefix="zrb") as pool:
            return list(pool.map(guarded, datasets))


def summarize(title: str, results: list[DatasetResult], dry_run: bool = False) -> int:
    """Print a run summary and return the process exit code."""
    print(f"\n{'='*60}")
    prefix = "[dry-run] " if dry_run else ""
    print(f"{prefix}{title} complete.")
    sent = sum(1 for r in results if r.sent)
    up_to_date = sum(1 for r in results if r.up_to_date and not r.sent and not r.errors)
    pruned = sum(len(names) for r in results for names in r.pruned.values())
    failed = [r for r in results if r.failure is not FailureClass.OK]
    parts = []
    if sent:
        parts.append(f"{sent} dataset(s) sent")
    if up_to_date:
        parts.append(f"{up_to_date} already up to date")
    if pruned:
        parts.append(f"{pruned} snapshot(s) pruned")
    if failed:
        parts.append(f"{RED}{len(failed)} error(s){RESET}")
    if parts:
        print(f"  {', '.join(parts)}")
    for r in failed:
        for message in r.errors:
            print(f"  {RED}{r.dataset}: {message}{RESET}")
    return int(worst(r.failure for r in results))
