"""ZFS snapshot primitive: the zfs CLI driven through an Executor.

The replication engine only talks to the `SnapshotPrimitive` protocol; this
module is the one place that knows zfs command lines and zfs error strings.
"""
from __future__ import annotations

import contextlib
import shlex
import subprocess
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from zrb import output
from zrb.errors import (
    DatasetNotFound,
    DivergedHistory,
    EndpointProtocolError,
    EndpointUnreachable,
    ResumeTokenInvalid,
    SnapshotCreateError,
    SnapshotDestroyError,
    SnapshotInUse,
    StreamInterrupted,
    TransferFailed,
    VerificationMismatch,
)
from zrb.executor import ExecutorError, TransportError
from zrb.models import Snapshot

if TYPE_CHECKING:
    from zrb.executor import Executor


@runtime_checkable
class SendStream(Protocol):
    def read(self, size: int) -> bytes:
        """Return up to `size` bytes, b"" at end of stream."""
        raise NotImplementedError

    def close(self) -> None:
        """Wait for the producer; raise a TransferError if it failed."""
        raise NotImplementedError

    def abort(self) -> None:
        """Stop producing immediately."""
        raise NotImplementedError


@runtime_checkable
class ReceiveSink(Protocol):
    def write(self, data: bytes) -> None:
        """Accept bytes; blocks while the consumer is stalled."""
        raise NotImplementedError

    def close(self) -> None:
        """Signal end of stream; raise a TransferError if the receive failed."""
        raise NotImplementedError

    def abort(self) -> None:
        """End the stream early, leaving resumable partial state behind."""
        raise NotImplementedError


@runtime_checkable
class SnapshotPrimitive(Protocol):
    @property
    def label(self) -> str:
        raise NotImplementedError

    def list_snapshots(self, dataset: str) -> list[Snapshot]:
        """Snapshots of `dataset`, oldest first. DatasetNotFound if missing."""
        raise NotImplementedError

    def create_snapshot(self, dataset: str, name: str) -> Snapshot:
        raise NotImplementedError

    def destroy_snapshot(self, snapshot: Snapshot) -> None:
        raise NotImplementedError

    def snapshot_guid(self, snapshot: Snapshot) -> str | None:
        raise NotImplementedError

    def open_send_stream(
        self,
        target: Snapshot,
        base: Snapshot | None = None,
        resume_token: str | None = None,
        filters: list[list[str]] | None = None,
    ) -> SendStream:
        raise NotImplementedError

    def open_receive_stream(
        self,
        dataset: str,
        full: bool = False,
        filters: list[list[str]] | None = None,
    ) -> ReceiveSink:
        raise NotImplementedError

    def get_resume_token(self, dataset: str) -> str | None:
        raise NotImplementedError

    def abort_partial_receive(self, dataset: str) -> None:
        raise NotImplementedError


def _remote_error(e: ExecutorError) -> Exception:
    if isinstance(e, TransportError):
        return EndpointUnreachable(str(e))
    return EndpointProtocolError(str(e))


def _is_missing(e: ExecutorError) -> bool:
    return "dataset does not exist" in e.stderr


def parse_snapshot_list(output_text: str, dataset: str) -> list[Snapshot]:
    """Parse `zfs list -H -p -o name,creation` output for one dataset."""
    results = []
    for line in output_text.splitlines():
        if not line.strip():
            continue
        name, _, creation = line.strip().partition("\t")
        # Only include snapshots directly on this dataset (not children)
        if "@" in name and name.split("@")[0] == dataset:
            results.append(Snapshot.parse(
                name, creation=int(creation) if creation.strip().isdigit() else None,
            ))
    return results


def send_command(
    target: Snapshot,
    base: Snapshot | None = None,
    resume_token: str | None = None,
    raw: bool = False,
    intermediates: bool = True,
) -> list[str]:
    """Build the zfs send command line.

    -c (--compressed) sends blocks in their on-disk compressed form; -w (raw)
    additionally keeps encrypted datasets encrypted on the wire and at rest.
    A resumed send takes only the token: zfs rebuilds everything else from it.
    """
    if resume_token:
        return ["zfs", "send", "-t", resume_token]
    cmd = ["zfs", "send", "-w" if raw else "-c"]
    if base is not None:
        cmd += ["-I" if intermediates else "-i", base.full_name]
    cmd.append(target.full_name)
    return cmd


def receive_command(dataset: str, full: bool = False) -> list[str]:
    """zfs recv -s keeps partial state on interruption so the send can resume."""
    cmd = ["zfs", "recv", "-s", "-u"]
    if full:
        cmd.append("-F")
    cmd.append(dataset)
    return cmd


def classify_receive_failure(cmd: list[str], returncode: int, stderr: str, transport: bool) -> Exception:
    """Map a failed `zfs recv` to the engine's error taxonomy."""
    message = f"{shlex.join(cmd)} exited {returncode}: {stderr.strip()}"
    if transport:
        return StreamInterrupted(f"connection lost: {message}")
    if "partially-complete state" in stderr or "cannot receive resume stream" in stderr:
        return ResumeTokenInvalid(message)
    if "Partially received snapshot is saved" in stderr or "incomplete stream" in stderr:
        return StreamInterrupted(message)
    if "destination has been modified" in stderr or "does not match incremental source" in stderr:
        return DivergedHistory(message)
    if "checksum mismatch" in stderr:
        return VerificationMismatch(message)
    return EndpointProtocolError(message)


def classify_send_failure(cmd: list[str], returncode: int, stderr: str) -> Exception:
    message = f"{shlex.join(cmd)} exited {returncode}: {stderr.strip()}"
    if "cannot resume send" in stderr:
        return ResumeTokenInvalid(message)
    if "Broken pipe" in stderr or returncode < 0:
        # receiver went away first; its own status carries the real cause
        return StreamInterrupted(message)
    return TransferFailed(message)


class ZfsSendStream:
    """`zfs send` followed by zero or more encode filters, chained with pipes."""

    def __init__(self, procs: list[subprocess.Popen], cmds: list[list[str]]):
        self._procs = procs
        self._cmds = cmds

    def read(self, size: int) -> bytes:
        return self._procs[-1].stdout.read(size)

    def close(self) -> None:
        self._procs[-1].stdout.close()
        failures = []
        for proc, cmd in zip(self._procs, self._cmds):
            rc = proc.wait()
            if rc != 0:
                stderr = proc.stderr.read().decode(errors="replace") if proc.stderr else ""
                failures.append(classify_send_failure(cmd, rc, stderr))
        if failures:
            raise failures[0]

    def abort(self) -> None:
        for proc in self._procs:
            if proc.poll() is None:
                proc.terminate()
        for proc in self._procs:
            proc.wait()


class ZfsReceiveSink:
    """Decode filters followed by `zfs recv`, run as one pipeline on the destination."""

    def __init__(self, proc: subprocess.Popen, cmd: list[str], executor: "Executor"):
        self._proc = proc
        self._cmd = cmd
        self._executor = executor

    def write(self, data: bytes) -> None:
        self._proc.stdin.write(data)

    def _finish(self) -> tuple[int, str]:
        with contextlib.suppress(BrokenPipeError):
            self._proc.stdin.close()
        rc = self._proc.wait()
        stderr = self._proc.stderr.read().decode(errors="replace") if self._proc.stderr else ""
        return rc, stderr

    def close(self) -> None:
        rc, stderr = self._finish()
        if rc != 0:
            raise classify_receive_failure(
                self._cmd, rc, stderr, self._executor.is_transport_failure(rc),
            )

    def abort(self) -> None:
        # an early EOF makes `zfs recv -s` save what it has so far
        self._finish()


class ZfsPrimitive:
    """SnapshotPrimitive for one location, backed by the zfs CLI."""

    def __init__(
        self,
        executor: "Executor",
        raw: bool = False,
        intermediates: bool = True,
        verbose: bool = False,
    ):
        self.executor = executor
        self.raw = raw
        self.intermediates = intermediates
        self.verbose = verbose

    @property
    def label(self) -> str:
        return self.executor.label

    def _run(self, cmd: list[str]) -> str:
        if self.verbose:
            output.say(f"  [{self.label}] {shlex.join(cmd)}")
        return self.executor.run(cmd)

    def list_snapshots(self, dataset: str) -> list[Snapshot]:
        """Return snapshots for a dataset, oldest first."""
        try:
            out = self._run([
                "zfs", "list", "-H", "-p", "-o", "name,creation", "-s", "createtxg",
                "-t", "snapshot", "-r", dataset,
            ])
        except ExecutorError as e:
            if _is_missing(e):
                raise DatasetNotFound(f"{dataset} does not exist on {self.label}") from e
            raise _remote_error(e) from e
        return parse_snapshot_list(out, dataset)

    def _get(self, prop: str, target: str) -> str | None:
        try:
            value = self._run(["zfs", "get", "-H", "-p", "-o", "value", prop, target]).strip()
        except ExecutorError as e:
            if _is_missing(e):
                return None
            raise _remote_error(e) from e
        return None if value in ("", "-") else value

    def create_snapshot(self, dataset: str, name: str) -> Snapshot:
        snapshot = Snapshot(dataset=dataset, name=name)
        try:
            self._run(["zfs", "snapshot", snapshot.full_name])
        except ExecutorError as e:
            raise SnapshotCreateError(f"cannot snapshot {dataset}: {e.stderr.strip()}") from e
        creation = self._get("creation", snapshot.full_name)
        return Snapshot(dataset, name, creation=int(creation) if creation else None)

    def destroy_snapshot(self, snapshot: Snapshot) -> None:
        try:
            self._run(["zfs", "destroy", snapshot.full_name])
        except TransportError as e:
            raise EndpointUnreachable(str(e)) from e
        except ExecutorError as e:
            if "dataset is busy" in e.stderr or "dependent clones" in e.stderr:
                raise SnapshotInUse(f"{snapshot.full_name}: {e.stderr.strip()}") from e
            raise SnapshotDestroyError(f"{snapshot.full_name}: {e.stderr.strip()}") from e

    def snapshot_guid(self, snapshot: Snapshot) -> str | None:
        return self._get("guid", snapshot.full_name)

    def get_resume_token(self, dataset: str) -> str | None:
        return self._get("receive_resume_token", dataset)

    def abort_partial_receive(self, dataset: str) -> None:
        try:
            self._run(["zfs", "recv", "-A", dataset])
        except ExecutorError as e:
            if "does not have any resumable receive state" in e.stderr:
                return
            raise _remote_error(e) from e

    def open_send_stream(
        self,
        target: Snapshot,
        base: Snapshot | None = None,
        resume_token: str | None = None,
        filters: list[list[str]] | None = None,
    ) -> ZfsSendStream:
        cmds = [send_command(target, base, resume_token, self.raw, self.intermediates)]
        cmds += filters or []
        if self.verbose:
            output.say(f"  [send] {' | '.join(shlex.join(c) for c in cmds)}")
        procs: list[subprocess.Popen] = []
        stdin = None
        try:
            for cmd in cmds:
                proc = self.executor.popen(
                    cmd, stdin=stdin, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                )
                if stdin is not None:
                    # Allow upstream to receive SIGPIPE if downstream dies
                    stdin.close()
                procs.append(proc)
                stdin = proc.stdout
        except OSError as e:
            for proc in procs:
                proc.kill()
                proc.wait()
            raise TransferFailed(f"cannot start {shlex.join(cmd)}: {e}") from e
        return ZfsSendStream(procs, cmds)

    def open_receive_stream(
        self,
        dataset: str,
        full: bool = False,
        filters: list[list[str]] | None = None,
    ) -> ZfsReceiveSink:
        recv_cmd = receive_command(dataset, full)
        cmds = list(filters or []) + [recv_cmd]
        if self.verbose:
            output.say(f"  [recv ({self.label})] {' | '.join(shlex.join(c) for c in cmds)}")
        try:
            proc = self.executor.popen_pipeline(
                cmds, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise StreamInterrupted(f"cannot start {shlex.join(recv_cmd)}: {e}") from e
        return ZfsReceiveSink(proc, recv_cmd, self.executor)
