"""MockExecutor, an in-memory ZFS fake, and shared fixtures for testing."""
from __future__ import annotations

import io
import itertools
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from zrb.errors import (
    DatasetNotFound,
    DivergedHistory,
    EndpointUnreachable,
    ResumeTokenInvalid,
    SnapshotCreateError,
    SnapshotInUse,
    StreamInterrupted,
    VerificationMismatch,
)
from zrb.models import Snapshot
from zrb.store import SOURCE, SnapshotNaming, SnapshotStore


class MockExecutor:
    """
    Executor that returns pre-scripted responses for commands.

    responses: dict mapping tuple(cmd) -> stdout string (or an exception to raise)
    If the command isn't found, raises KeyError (to catch unexpected calls in tests).
    """

    def __init__(self, responses: dict | None = None, label: str = "mock", transport_rc: int | None = None):
        self.responses: dict = responses or {}
        self._label = label
        self._transport_rc = transport_rc
        self.calls: list[list[str]] = []  # record of all commands run
        self.pipelines: list[list[list[str]]] = []
        self.procs: list[MagicMock] = []

    @property
    def label(self) -> str:
        return self._label

    def run(self, cmd: list[str]) -> str:
        self.calls.append(cmd)
        key = tuple(cmd)
        if key not in self.responses:
            raise KeyError(f"MockExecutor: unexpected command: {cmd}")
        result = self.responses[key]
        if isinstance(result, Exception):
            raise result
        return result

    def _proc(self, stdout: bytes = b"") -> MagicMock:
        mock_proc = MagicMock(spec=subprocess.Popen)
        mock_proc.stdout = io.BytesIO(stdout)
        mock_proc.stdin = io.BytesIO()
        mock_proc.stderr = io.BytesIO(b"")
        mock_proc.returncode = 0
        mock_proc.wait.return_value = 0
        mock_proc.poll.return_value = 0
        self.procs.append(mock_proc)
        return mock_proc

    def popen(self, cmd: list[str], **_kwargs) -> subprocess.Popen:
        self.calls.append(cmd)
        return self._proc()

    def popen_pipeline(self, cmds: list[list[str]], **_kwargs) -> subprocess.Popen:
        self.pipelines.append(cmds)
        return self._proc()

    def is_transport_failure(self, returncode: int) -> bool:
        return self._transport_rc is not None and returncode == self._transport_rc


# ---------------------------------------------------------------------------
# In-memory snapshot primitive
# ---------------------------------------------------------------------------

T0 = 1_767_225_600  # 2026-01-01T00:00:00Z
PAYLOAD_SIZE = 4096


@dataclass
class FakeSnap:
    name: str
    creation: int
    guid: str


@dataclass
class FakeStream:
    dataset: str
    base: str | None
    snaps: list[FakeSnap]
    data: bytes


class FakeWorld:
    """Shared registry of send streams, so any location can receive them."""

    def __init__(self):
        self.streams: dict[str, FakeStream] = {}
        self._ids = itertools.count(1)
        self._guids = itertools.count(1000)

    def new_guid(self) -> str:
        return str(next(self._guids))

    def register(self, dataset: str, base: str | None, snaps: list[FakeSnap]) -> str:
        stream_id = str(next(self._ids))
        body = b"".join((s.guid.encode() + b".") * (PAYLOAD_SIZE // 5) for s in snaps)
        data = f"BEGIN {stream_id}\n".encode() + body
        self.streams[stream_id] = FakeStream(dataset, base, list(snaps), data)
        return stream_id


class FakeSendStream:
    def __init__(self, data: bytes, error: Exception | None = None):
        self._buf = io.BytesIO(data)
        self._error = error
        self.aborted = False

    def read(self, size: int) -> bytes:
        return self._buf.read(size)

    def close(self) -> None:
        if self._error is not None:
            raise self._error

    def abort(self) -> None:
        self.aborted = True


class FakeReceiveSink:
    def __init__(self, location: "FakeLocation", dataset: str, full: bool):
        self.location = location
        self.dataset = dataset
        self.full = full
        self.data = bytearray()
        self.broken = False
        self.limit = location.interrupt_after
        location.interrupt_after = None

    def write(self, data: bytes) -> None:
        if self.broken:
            raise BrokenPipeError("connection reset")
        if self.limit is not None and len(self.data) + len(data) > self.limit:
            self.data += data[: self.limit - len(self.data)]
            self.broken = True
            raise BrokenPipeError("connection reset")
        self.data += data
        if self.location.on_bytes is not None:
            self.location.on_bytes(len(self.data))

    def close(self) -> None:
        self._finish(raise_errors=True)

    def abort(self) -> None:
        self._finish(raise_errors=False)

    def _finish(self, raise_errors: bool) -> None:
        loc = self.location
        header, sep, rest = bytes(self.data).partition(b"\n")
        if not sep:
            if raise_errors:
                raise StreamInterrupted("incomplete stream")
            return
        kind, stream_id, *offset = header.decode().split()
        if kind == "BEGIN":
            if self.dataset in loc.partial:
                raise ResumeTokenInvalid(f"{self.dataset} contains partially-complete state")
            buffer = bytes(self.data)
        else:
            previous = loc.partial.get(self.dataset)
            if previous is None or previous[0] != stream_id or len(previous[1]) != int(offset[0]):
                raise ResumeTokenInvalid("cannot receive resume stream")
            buffer = previous[1] + rest
        stream = loc.world.streams[stream_id]
        if len(buffer) < len(stream.data):
            loc.partial[self.dataset] = (stream_id, buffer)
            if raise_errors:
                raise StreamInterrupted("incomplete stream. Partially received snapshot is saved")
            return
        if buffer != stream.data:
            raise VerificationMismatch("checksum mismatch")
        loc.partial.pop(self.dataset, None)
        copies = [FakeSnap(s.name, s.creation, s.guid) for s in stream.snaps]
        if stream.base is None:
            loc.datasets[self.dataset] = copies
        else:
            existing = loc.datasets.get(self.dataset) or []
            if not existing or existing[-1].name != stream.base:
                raise DivergedHistory("destination has been modified since most recent snapshot")
            existing.extend(copies)
        loc.received.append(buffer)


class FakeLocation:
    """SnapshotPrimitive over in-memory datasets."""

    def __init__(self, world: FakeWorld, label: str = "fake"):
        self.world = world
        self._label = label
        self.datasets: dict[str, list[FakeSnap]] = {}
        self.partial: dict[str, tuple[str, bytes]] = {}
        self.busy: set[str] = set()
        self.in_use: set[str] = set()
        self.unreachable = False
        self.unreachable_calls = 0  # fail this many calls, then recover
        self.interrupt_after: int | None = None
        self.on_bytes = None
        self.destroyed: list[str] = []
        self.received: list[bytes] = []
        self.filters: list[list[list[str]]] = []
        self.sends: list[dict] = []

    @property
    def label(self) -> str:
        return self._label

    def add(self, dataset: str, *names: str, start: int = T0, step: int = 3600) -> list[FakeSnap]:
        snaps = self.datasets.setdefault(dataset, [])
        for i, name in enumerate(names):
            snaps.append(FakeSnap(name, start + i * step, self.world.new_guid()))
        return snaps

    def names(self, dataset: str) -> list[str]:
        return [s.name for s in self.datasets.get(dataset, [])]

    def _check(self) -> None:
        if self.unreachable_calls:
            self.unreachable_calls -= 1
            raise EndpointUnreachable(f"{self.label}: connection refused")
        if self.unreachable:
            raise EndpointUnreachable(f"{self.label}: connection refused")

    def _find(self, snapshot: Snapshot) -> FakeSnap | None:
        for s in self.datasets.get(snapshot.dataset, []):
            if s.name == snapshot.name:
                return s
        return None

    def list_snapshots(self, dataset: str) -> list[Snapshot]:
        self._check()
        if dataset not in self.datasets:
            raise DatasetNotFound(f"{dataset} does not exist")
        return [Snapshot(dataset, s.name, creation=s.creation) for s in self.datasets[dataset]]

    def create_snapshot(self, dataset: str, name: str) -> Snapshot:
        self._check()
        if dataset not in self.datasets or dataset in self.busy:
            raise SnapshotCreateError(f"cannot snapshot {dataset}")
        now = int(datetime.strptime(name.split("-", 1)[1], SnapshotNaming.TIME_FORMAT)
                  .replace(tzinfo=timezone.utc).timestamp())
        self.datasets[dataset].append(FakeSnap(name, now, self.world.new_guid()))
        return Snapshot(dataset, name, creation=now)

    def destroy_snapshot(self, snapshot: Snapshot) -> None:
        self._check()
        if snapshot.full_name in self.in_use:
            raise SnapshotInUse(f"{snapshot.full_name}: dataset is busy")
        snaps = self.datasets.get(snapshot.dataset, [])
        self.datasets[snapshot.dataset] = [s for s in snaps if s.name != snapshot.name]
        self.destroyed.append(snapshot.full_name)

    def snapshot_guid(self, snapshot: Snapshot) -> str | None:
        found = self._find(snapshot)
        return found.guid if found else None

    def get_resume_token(self, dataset: str) -> str | None:
        self._check()
        partial = self.partial.get(dataset)
        return f"{partial[0]}:{len(partial[1])}" if partial else None

    def abort_partial_receive(self, dataset: str) -> None:
        self._check()
        self.partial.pop(dataset, None)

    def open_send_stream(self, target, base=None, resume_token=None, filters=None):
        self._check()
        self.sends.append({"target": target.name, "base": base.name if base else None,
                           "resume_token": resume_token, "filters": filters or []})
        if resume_token:
            stream_id, _, offset = resume_token.partition(":")
            stream = self.world.streams.get(stream_id)
            if stream is None:
                return FakeSendStream(b"", ResumeTokenInvalid("cannot resume send: unknown token"))
            data = f"RESUME {stream_id} {offset}\n".encode() + stream.data[int(offset):]
            return FakeSendStream(data)
        snaps = self.datasets[target.dataset]
        names = [s.name for s in snaps]
        end = names.index(target.name) + 1
        start = names.index(base.name) + 1 if base is not None else end - 1
        stream_id = self.world.register(target.dataset, base.name if base else None, snaps[start:end])
        return FakeSendStream(self.world.streams[stream_id].data)

    def open_receive_stream(self, dataset, full=False, filters=None):
        self._check()
        self.filters.append(filters or [])
        return FakeReceiveSink(self, dataset, full)


SRC = "ipool/home/user"
DST = "xeonpool/BACKUP/ipool/home/user"


@pytest.fixture
def world():
    return FakeWorld()


@pytest.fixture
def src(world):
    return FakeLocation(world, "local")


@pytest.fixture
def dst(world):
    return FakeLocation(world, "ssh://backup@nas:22")


def make_store(src: FakeLocation, dst: FakeLocation, now: datetime | None = None, name: str = "nas") -> SnapshotStore:
    now = now or datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
    return SnapshotStore({SOURCE: src, name: dst}, SnapshotNaming("zrb"), clock=lambda: now)


@pytest.fixture
def store(src, dst):
    return make_store(src, dst)
