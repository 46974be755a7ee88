"""CLI entry point for zfs-replication-backups.

Exit codes: 0 success, 1 configuration/usage error, 2 transient failure
(safe to rerun), 3 data-integrity or divergence failure (operator needed).
"""
from __future__ import annotations

import argparse
import signal
import sys
import threading

import yaml

from zrb.config import ConfigError, load_job
from zrb.errors import DatasetNotFound, FailureClass, ZrbError, worst
from zrb.executor import SessionPool
from zrb.store import SOURCE


def _confirm(prompt: str) -> bool:
    """Ask the user yes/no. Return True if yes."""
    try:
        answer = input(f"{prompt} [y/N] ").strip().lower()
    except (EOFError, KeyboardInterrupt):
        print()
        return False
    return answer in ("y", "yes")


def _load(args):
    """Return (config, datasets), or None after reporting a config error."""
    try:
        config = load_job(args.config)
        datasets = config.select(getattr(args, "datasets", None))
    except KeyError as e:
        print(f"Config error: dataset {e.args[0]!r} is not in {args.config}", file=sys.stderr)
        return None
    except (ConfigError, OSError, ValueError, yaml.YAMLError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return None
    return config, datasets


def _install_cancel_handler(cancel: threading.Event) -> None:
    """First SIGINT/SIGTERM stops cleanly at a resumable point; a second one aborts."""
    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        print("\nStopping: interrupting transfers at a resumable point...", file=sys.stderr)
        cancel.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def _replicator(config, pool, args, cancel=None):
    from zrb.backup import Replicator, build_store
    store = build_store(config, pool, verbose=args.verbose)
    return Replicator(
        config,
        store,
        cancel=cancel,
        dry_run=getattr(args, "dry_run", False),
        verbose=args.verbose,
    )


def cmd_backup(args) -> int:
    from zrb.backup import summarize
    loaded = _load(args)
    if loaded is None:
        return int(FailureClass.CONFIG)
    config, datasets = loaded

    cancel = threading.Event()
    _install_cancel_handler(cancel)
    with SessionPool() as pool:
        replicator = _replicator(config, pool, args, cancel)
        results = replicator.run_all(datasets, replicator.backup_dataset)
    return summarize("Backup", results, dry_run=args.dry_run)


def cmd_prune(args) -> int:
    """Plan deletions for every dataset, prompt once, then delete."""
    from zrb.backup import summarize
    loaded = _load(args)
    if loaded is None:
        return int(FailureClass.CONFIG)
    config, datasets = loaded

    with SessionPool() as pool:
        replicator = _replicator(config, pool, args)

        # --- Phase 1: Plan ---
        planned = {}

        def plan_one(ds):
            result, steps = replicator.prune_plan(ds)
            planned[ds.name] = steps
            return result

        results = replicator.run_all(datasets, plan_one)
        total = sum(len(s.snapshots) for steps in planned.values() for s in steps)
        if not total:
            print("\nNothing to prune.")
            return summarize("Prune", results, dry_run=args.dry_run)

        # --- Phase 2: Show plan and prompt ---
        label = "Would delete" if args.dry_run else "Will delete"
        print(f"\n{'='*60}")
        print(f"{label} {total} snapshot(s):\n")
        for ds in datasets:
            for step in planned.get(ds.name, []):
                print(f"  {step.dataset} ({step.location}): {len(step.snapshots)} snapshot(s)")
                for snap in step.snapshots:
                    print(f"    {snap.full_name}")

        if args.dry_run:
            return summarize("Prune", results, dry_run=True)
        if not args.no_confirm and not _confirm(f"\nDelete {total} snapshot(s)?"):
            print("Aborted by user.")
            return int(FailureClass.CONFIG)

        # --- Phase 3: Execute ---
        by_name = {r.dataset: r for r in results}
        results = replicator.run_all(
            datasets,
            lambda ds: replicator.prune_apply(ds, by_name[ds.name], planned.get(ds.name, [])),
        )
    return summarize("Prune", results)


def cmd_snapshot(args) -> int:
    """Create a snapshot where one is due and prune the source."""
    from zrb.backup import summarize
    loaded = _load(args)
    if loaded is None:
        return int(FailureClass.CONFIG)
    config, datasets = loaded

    with SessionPool() as pool:
        replicator = _replicator(config, pool, args)
        results = replicator.run_all(datasets, replicator.snapshot_dataset)
    return summarize("Snapshot", results, dry_run=args.dry_run)


def cmd_status(args) -> int:
    """Show sync state: how many snapshots behind each destination is."""
    loaded = _load(args)
    if loaded is None:
        return int(FailureClass.CONFIG)
    config, datasets = loaded

    with SessionPool() as pool:
        replicator = _replicator(config, pool, args)
        results = replicator.run_all(datasets, replicator.status_dataset)
    return int(worst(r.failure for r in results))


def cmd_list(args) -> int:
    """List datasets and snapshot counts on source and destinations."""
    loaded = _load(args)
    if loaded is None:
        return int(FailureClass.CONFIG)
    config, datasets = loaded

    with SessionPool() as pool:
        store = _replicator(config, pool, args).store
        header = f"{'Dataset':<45} {'Src snaps':>10}"
        for endpoint in config.destinations:
            header += f" {endpoint.name[:12]:>12}"
        print(header)
        print("-" * len(header))
        for ds in datasets:
            row = f"{ds.name:<45} {_count(store, ds.name, SOURCE):>10}"
            for endpoint in config.destinations:
                row += f" {_count(store, endpoint.dataset_for(ds.name), endpoint.name):>12}"
            print(row)
    return 0


def _count(store, dataset: str, location: str) -> str:
    try:
        return str(len(store.list(dataset, location)))
    except DatasetNotFound:
        return "missing"
    except ZrbError:
        return "error"


class _Parser(argparse.ArgumentParser):
    """Usage errors exit 1, like configuration errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(int(FailureClass.CONFIG), f"{self.prog}: error: {message}\n")


def main(argv=None) -> None:
    parser = _Parser(
        prog="zrb",
        description="ZFS replication backups: snapshot, send and prune datasets",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # Shared options
    def add_common(p, mutating=True):
        p.add_argument("config", help="Path to job YAML config file")
        p.add_argument("datasets", nargs="*", metavar="DATASET",
                       help="Restrict the run to these configured datasets")
        p.add_argument("--verbose", "-v", action="store_true",
                       help="Show every zfs command")
        if mutating:
            p.add_argument("--dry-run", "-n", action="store_true",
                           help="Show what would happen without making changes")

    p_backup = sub.add_parser("backup", help="Snapshot, send to destinations, then prune")
    add_common(p_backup)
    p_backup.set_defaults(func=cmd_backup)

    p_prune = sub.add_parser("prune", help="Delete expired snapshots per retention policy")
    add_common(p_prune)
    p_prune.add_argument("--no-confirm", action="store_true",
                         help="Skip confirmation prompts")
    p_prune.set_defaults(func=cmd_prune)

    p_snapshot = sub.add_parser("snapshot", help="Create a snapshot if due and prune the source")
    add_common(p_snapshot)
    p_snapshot.set_defaults(func=cmd_snapshot)

    p_status = sub.add_parser("status", help="Show sync state for each dataset")
    add_common(p_status, mutating=False)
    p_status.set_defaults(func=cmd_status)

    p_list = sub.add_parser("list", help="List datasets and snapshot counts")
    add_common(p_list, mutating=False)
    p_list.set_defaults(func=cmd_list)

    args = parser.parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
