"""Tests for zrb.backup module."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from zrb.backup import DatasetResult, Replicator, summarize
from zrb.errors import FailureClass
from zrb.models import Dataset, JobConfig, RemoteEndpoint, SourceConfig
from zrb.retention import KeepLast, RetentionPolicy
from zrb.retry import RetryPolicy
from zrb.store import SOURCE, SnapshotNaming, SnapshotStore
from zrb.transfer import PipelineExecutor
from tests.conftest import DST, SRC, FakeSnap

MANAGED = SnapshotNaming("zrb").pattern
OTHER = "ipool/other"
OTHER_DST = "xeonpool/BACKUP/ipool/other"


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def _make_config(datasets=None, retention=None, dst_retention=None, concurrency=1):
    return JobConfig(
        source=SourceConfig(pool="ipool"),
        destinations=[RemoteEndpoint(pool="xeonpool", prefix="BACKUP", name="nas", retention=dst_retention)],
        datasets=[Dataset(n) for n in (datasets or [SRC])],
        retention=retention,
        concurrency=concurrency,
        retry=RetryPolicy(max_attempts=3, delays=(0,)),
    )


def _setup(src, dst, config, clock=None, **kwargs):
    store = SnapshotStore({SOURCE: src, "nas": dst}, SnapshotNaming("zrb"), clock=clock or Clock())
    executor = PipelineExecutor(store, chunk_size=1024)
    kwargs.setdefault("sleep", lambda _: None)
    return Replicator(config, store, executor=executor, **kwargs)


def _backup(replicator):
    results = replicator.run_all(replicator.config.datasets, replicator.backup_dataset)
    return results, summarize("Backup", results, dry_run=replicator.dry_run)


def test_first_backup_sends_full(src, dst, capsys):
    src.add(SRC)
    results, rc = _backup(_setup(src, dst, _make_config()))
    assert rc == 0
    assert results[0].created.name == "zrb-2026-01-10T120000Z"
    assert results[0].sent == ["nas"]
    assert dst.names(DST) == ["zrb-2026-01-10T120000Z"]
    assert "full send of @zrb-2026-01-10T120000Z" in capsys.readouterr().out


def test_backup_up_to_date(src, dst, capsys):
    clock = Clock()
    src.add(SRC)
    replicator = _setup(src, dst, _make_config(), clock)
    _backup(replicator)
    clock.advance(minutes=5)
    capsys.readouterr()

    results, rc = _backup(replicator)

    assert rc == 0
    assert results[0].created is None
    assert results[0].up_to_date == ["nas"]
    assert "already up to date" in capsys.readouterr().out


def test_incremental_backup_then_prune(src, dst):
    src.add(SRC, "zrb-2026-01-09T000000Z", "zrb-2026-01-09T060000Z")
    dst.datasets[DST] = [FakeSnap(s.name, s.creation, s.guid) for s in src.datasets[SRC][:1]]
    config = _make_config(
        retention=RetentionPolicy([KeepLast(1, MANAGED)]),
        dst_retention=RetentionPolicy([KeepLast(2, MANAGED)]),
    )

    results, rc = _backup(_setup(src, dst, config))

    assert rc == 0
    assert dst.names(DST) == ["zrb-2026-01-09T060000Z", "zrb-2026-01-10T120000Z"]
    assert src.names(SRC) == ["zrb-2026-01-10T120000Z"]
    assert results[0].pruned == {
        SOURCE: {"zrb-2026-01-09T000000Z", "zrb-2026-01-09T060000Z"},
        "nas": {"zrb-2026-01-09T000000Z"},
    }


def test_unmanaged_snapshots_are_not_pruned(src, dst):
    src.add(SRC, "zfs-auto-snap_daily-2026-01-01-0000", "zrb-2026-01-09T000000Z")
    config = _make_config(retention=RetentionPolicy([KeepLast(1, MANAGED)]))
    _backup(_setup(src, dst, config))
    assert src.names(SRC) == ["zfs-auto-snap_daily-2026-01-01-0000", "zrb-2026-01-10T120000Z"]


def test_interrupted_transfer_resumes_on_retry(src, dst, world, capsys):
    src.add(SRC)
    dst.interrupt_after = 500

    results, rc = _backup(_setup(src, dst, _make_config()))

    assert rc == 0
    assert results[0].sent == ["nas"]
    assert dst.names(DST) == ["zrb-2026-01-10T120000Z"]
    assert src.sends[-1]["resume_token"] == "1:500"
    assert "retrying" in capsys.readouterr().err


def test_transient_endpoint_failure_is_retried(src, dst):
    src.add(SRC)
    dst.unreachable_calls = 2
    results, rc = _backup(_setup(src, dst, _make_config()))
    assert rc == 0
    assert results[0].sent == ["nas"]


def test_backoff_uses_the_injected_sleep(src, dst):
    src.add(SRC)
    dst.unreachable_calls = 1
    config = _make_config()
    config.retry = RetryPolicy(max_attempts=3, delays=(30,))
    slept = []

    results, rc = _backup(_setup(src, dst, config, sleep=slept.append))

    assert rc == 0
    assert slept == [30]
    assert results[0].sent == ["nas"]


def test_unreachable_destination_blocks_source_prune(src, dst):
    src.add(SRC, "zrb-2026-01-08T000000Z", "zrb-2026-01-09T000000Z")
    dst.unreachable = True
    config = _make_config(retention=RetentionPolicy([KeepLast(1, MANAGED)]))

    results, rc = _backup(_setup(src, dst, config))

    assert rc == int(FailureClass.TRANSIENT)
    assert results[0].failure is FailureClass.TRANSIENT
    assert src.names(SRC) == [
        "zrb-2026-01-08T000000Z", "zrb-2026-01-09T000000Z", "zrb-2026-01-10T120000Z",
    ]


def test_diverged_dataset_does_not_stop_siblings(src, dst, capsys):
    src.add(SRC)
    src.add(OTHER, "zrb-2026-01-01T000000Z")
    dst.add(OTHER_DST, "alien")
    config = _make_config(datasets=[SRC, OTHER], concurrency=2)

    results, rc = _backup(_setup(src, dst, config))

    assert rc == int(FailureClass.FATAL)
    by_name = {r.dataset: r for r in results}
    assert by_name[SRC].sent == ["nas"]
    assert by_name[OTHER].failure is FailureClass.FATAL
    assert dst.names(OTHER_DST) == ["alien"]
    assert "none in common" in capsys.readouterr().out


def test_dry_run_changes_nothing(src, dst, capsys):
    src.add(SRC, "zrb-2026-01-01T000000Z")
    replicator = _setup(src, dst, _make_config(), dry_run=True)

    results, rc = _backup(replicator)

    assert rc == 0
    assert src.names(SRC) == ["zrb-2026-01-01T000000Z"]
    assert dst.names(DST) == []
    out = capsys.readouterr().out
    assert "[dry-run] would create a new snapshot" in out
    assert "[dry-run] Backup complete." in out


def test_dry_run_on_empty_dataset(src, dst):
    src.add(SRC)
    results, rc = _backup(_setup(src, dst, _make_config(), dry_run=True))
    assert rc == 0
    assert src.names(SRC) == []


def test_snapshot_command_prunes_source_only(src, dst):
    src.add(SRC, "zrb-2026-01-08T000000Z", "zrb-2026-01-09T000000Z")
    dst.add(DST, "zrb-2026-01-08T000000Z", "zrb-2026-01-09T000000Z")
    policy = RetentionPolicy([KeepLast(1, MANAGED)])
    replicator = _setup(src, dst, _make_config(retention=policy, dst_retention=policy))

    result = replicator.snapshot_dataset(replicator.config.datasets[0])

    assert result.created.name == "zrb-2026-01-10T120000Z"
    # the common snapshot with nas stays until nas has caught up
    assert src.names(SRC) == ["zrb-2026-01-09T000000Z", "zrb-2026-01-10T120000Z"]
    assert dst.names(DST) == ["zrb-2026-01-08T000000Z", "zrb-2026-01-09T000000Z"]
    assert list(result.pruned) == [SOURCE]


def test_prune_dataset_never_creates(src, dst):
    src.add(SRC, "zrb-2026-01-08T000000Z", "zrb-2026-01-09T000000Z")
    dst.add(DST, "zrb-2026-01-08T000000Z", "zrb-2026-01-09T000000Z")
    policy = RetentionPolicy([KeepLast(1, MANAGED)])
    replicator = _setup(src, dst, _make_config(retention=policy, dst_retention=policy))

    result = replicator.prune_dataset(replicator.config.datasets[0])

    assert result.failure is FailureClass.OK
    assert src.names(SRC) == ["zrb-2026-01-09T000000Z"]
    assert dst.names(DST) == ["zrb-2026-01-09T000000Z"]


def test_status_reports_lag(src, dst, capsys):
    src.add(SRC, "s1", "s2", "s3")
    dst.add(DST, "s1")
    dst.partial[DST] = ("7", b"BEGIN 7\n")
    replicator = _setup(src, dst, _make_config())

    results = replicator.run_all(replicator.config.datasets, replicator.status_dataset)

    assert results[0].failure is FailureClass.OK
    out = capsys.readouterr().out
    assert "2 snapshot(s) behind (common @s1)" in out
    assert "interrupted transfer pending resume" in out


def test_cancelled_run_is_transient(src, dst):
    src.add(SRC)
    replicator = _setup(src, dst, _make_config())
    replicator.cancel.set()
    results, rc = _backup(replicator)
    assert rc == int(FailureClass.TRANSIENT)
    assert src.names(SRC) == []


def test_unexpected_exception_is_contained(src, dst):
    replicator = _setup(src, dst, _make_config(datasets=[SRC, OTHER], concurrency=2))

    def explode(ds):
        if ds.name == OTHER:
            raise RuntimeError("boom")
        return DatasetResult(ds.name)

    results = replicator.run_all(replicator.config.datasets, explode)
    assert [r.failure for r in results] == [FailureClass.OK, FailureClass.FATAL]


def test_summarize_exit_code_is_worst_failure(capsys):
    results = [
        DatasetResult("a", sent=["nas"]),
        DatasetResult("b", failure=FailureClass.TRANSIENT, errors=["nas: connection refused"]),
    ]
    assert summarize("Backup", results) == 2
    out = capsys.readouterr().out
    assert "1 dataset(s) sent" in out
    assert "b: nas: connection refused" in out
    assert summarize("Backup", []) == 0
