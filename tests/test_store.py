"""Tests for zrb.store module."""
from __future__ import annotations

import re
import threading
from datetime import datetime, timezone

import pytest

from zrb.errors import SnapshotCreateError, SnapshotPinned
from zrb.models import RemoteEndpoint, Snapshot, TransferJob, TransferMode, TransferPlan
from zrb.store import SOURCE, SnapshotNaming
from tests.conftest import DST, SRC, make_store

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


class TestNaming:
    def test_name_for(self):
        assert SnapshotNaming("zrb").name_for(NOW) == "zrb-2026-01-10T120000Z"

    def test_parse(self):
        naming = SnapshotNaming("zrb")
        assert naming.parse("zrb-2026-01-10T120000Z") == NOW
        assert naming.parse("zfs-auto-snap_daily-2026-01-10-1200") is None
        assert naming.parse("zrb-garbage") is None

    def test_next_name_is_strictly_increasing(self):
        naming = SnapshotNaming("zrb")
        existing = [Snapshot(SRC, "zrb-2026-01-10T120000Z")]
        assert naming.next_name(existing, NOW) == "zrb-2026-01-10T120001Z"

    def test_next_name_ignores_clock_skew(self):
        naming = SnapshotNaming("zrb")
        existing = [Snapshot(SRC, "zrb-2026-01-11T000000Z")]
        assert naming.next_name(existing, NOW) > existing[0].name

    def test_pattern_matches_managed_names_only(self):
        naming = SnapshotNaming("zrb")
        assert re.fullmatch(naming.pattern, "zrb-2026-01-10T120000Z")
        assert not re.fullmatch(naming.pattern, "zrb-manual")


class TestCreate:
    def test_create_uses_clock(self, src, dst):
        src.add(SRC)
        store = make_store(src, dst, now=NOW)
        snap = store.create(SRC)
        assert snap.name == "zrb-2026-01-10T120000Z"
        assert src.names(SRC) == ["zrb-2026-01-10T120000Z"]

    def test_two_creates_in_one_second(self, src, dst):
        src.add(SRC)
        store = make_store(src, dst, now=NOW)
        first, second = store.create(SRC), store.create(SRC)
        assert first.name < second.name

    def test_missing_dataset(self, store):
        with pytest.raises(SnapshotCreateError):
            store.create("ipool/nope")

    def test_is_due(self, src, dst):
        src.add(SRC, "zrb-2026-01-10T115000Z")
        store = make_store(src, dst, now=NOW)
        assert not store.is_due(SRC, 15 * 60)
        assert store.is_due(SRC, 10 * 60)

    def test_is_due_ignores_unmanaged(self, src, dst):
        src.add(SRC, "manual")
        assert make_store(src, dst, now=NOW).is_due(SRC, 15 * 60)


def _job(base="s1", target="s2") -> TransferJob:
    plan = TransferPlan(SRC, Snapshot(SRC, target), TransferMode.INCREMENTAL, base=Snapshot(SRC, base))
    endpoint = RemoteEndpoint(pool="xeonpool", name="nas")
    return TransferJob(plan=plan, endpoint="nas", dst_dataset=endpoint.dataset_for(SRC))


class TestPins:
    def test_pinned_snapshot_cannot_be_destroyed(self, store, src, dst):
        src.add(SRC, "s1", "s2")
        dst.add(DST, "s1")
        job = _job()
        store.pin(job)
        with pytest.raises(SnapshotPinned):
            store.destroy(SRC, SOURCE, Snapshot(SRC, "s1"))
        with pytest.raises(SnapshotPinned):
            store.destroy(DST, "nas", Snapshot(DST, "s1"))
        assert src.names(SRC) == ["s1", "s2"]

        store.unpin(job)
        store.destroy(SRC, SOURCE, Snapshot(SRC, "s1"))
        assert src.names(SRC) == ["s2"]

    def test_pins_are_counted_per_job(self, store):
        a, b = _job(), _job()
        store.pin(a)
        store.pin(b)
        store.unpin(a)
        assert store.is_pinned(SOURCE, SRC, "s1")
        store.unpin(b)
        assert not store.is_pinned(SOURCE, SRC, "s1")

    def test_destroy_waits_for_pin_lock(self, store, src):
        """A destroy racing a pin either runs first or sees the pin."""
        src.add(SRC, "s1", "s2")
        job = _job()
        outcome = []

        def destroy():
            try:
                store.destroy(SRC, SOURCE, Snapshot(SRC, "s1"))
                outcome.append("destroyed")
            except SnapshotPinned:
                outcome.append("pinned")

        with store._lock_for(SOURCE, SRC):
            t = threading.Thread(target=destroy)
            t.start()
            store._pins[(SOURCE, SRC, "s1")] = {job.id}
        t.join()
        assert outcome == ["pinned"]
        assert "s1" in src.names(SRC)


def test_confirmed_common_is_protected(store):
    store.confirm_common(SRC, SOURCE, "s1", via="nas")
    store.confirm_common(SRC, SOURCE, "s3", via="offsite")
    assert store.protected(SRC, SOURCE) == {"s1", "s3"}
    store.confirm_common(SRC, SOURCE, "s2", via="nas")
    assert store.protected(SRC, SOURCE) == {"s2", "s3"}
    assert store.is_confirmed(SRC, SOURCE, "nas")
    assert not store.is_confirmed(SRC, "nas", SOURCE)
