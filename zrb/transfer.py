"""Pipeline Executor: run a TransferPlan as a resumable, verified stream.

Job states: PENDING -> RESOLVING -> STREAMING -> VERIFYING -> COMPLETED, or
FAILED_RETRYABLE (interrupted; a resume token is kept) / FAILED_FATAL.
"""
from __future__ import annotations

import json
import os
import queue
import tempfile
import threading
from typing import TYPE_CHECKING, Callable

from zrb import output
from zrb.errors import (
    DatasetNotFound,
    ResumeTokenInvalid,
    RetryableError,
    StalePlan,
    StreamInterrupted,
    TransferCancelled,
    VerificationMismatch,
    ZrbError,
)
from zrb.models import JobStatus, Snapshot, TransferJob, TransferMode
from zrb.store import SOURCE
from zrb.transforms import TransformChain

if TYPE_CHECKING:
    from zrb.models import RemoteEndpoint, TransferPlan
    from zrb.store import SnapshotStore
    from zrb.zfs import ReceiveSink, SendStream

_POLL = 0.1  # seconds between cancellation checks while waiting on the stream
_JOIN_TIMEOUT = 10.0


class ResumeTokenCache:
    """Resume tokens saved per (endpoint, dataset, plan), optionally on disk.

    Tokens are opaque strings; they are stored and compared, never parsed.
    """

    def __init__(self, path: str | None = None):
        self.path = path
        self._lock = threading.Lock()
        self._tokens: dict[str, str] = self._load()

    @staticmethod
    def key(endpoint: str, dataset: str, plan: "TransferPlan") -> str:
        return f"{endpoint}|{dataset}|{plan.key}"

    def _load(self) -> dict[str, str]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            output.warn(f"ignoring unreadable resume cache {self.path}: {e}")
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _save(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".zrb-resume-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._tokens, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise

    def get(self, endpoint: str, dataset: str, plan: "TransferPlan") -> str | None:
        with self._lock:
            return self._tokens.get(self.key(endpoint, dataset, plan))

    def put(self, endpoint: str, dataset: str, plan: "TransferPlan", token: str) -> None:
        with self._lock:
            self._tokens[self.key(endpoint, dataset, plan)] = token
            self._save()

    def discard(self, endpoint: str, dataset: str, plan: "TransferPlan") -> None:
        with self._lock:
            if self._tokens.pop(self.key(endpoint, dataset, plan), None) is not None:
                self._save()


class PipelineExecutor:
    def __init__(
        self,
        store: "SnapshotStore",
        chain: TransformChain | None = None,
        token_cache: ResumeTokenCache | None = None,
        cancel: threading.Event | None = None,
        chunk_size: int = 128 * 1024,
        max_buffered_chunks: int = 8,
        progress: Callable[[TransferJob, int], None] | None = None,
    ):
        self._store = store
        self.chain = chain or TransformChain()
        self.tokens = token_cache or ResumeTokenCache()
        self._cancel = cancel
        self.chunk_size = chunk_size
        self.max_buffered_chunks = max_buffered_chunks
        self._progress = progress
        self.history: list[TransferJob] = []

    def execute(self, plan: "TransferPlan", endpoint: "RemoteEndpoint") -> TransferJob:
        """Run plan against endpoint and return the completed job.

        On failure the job is marked FAILED_RETRYABLE or FAILED_FATAL and the
        error is raised with the job attached as `error.job`.
        """
        job = TransferJob(
            plan=plan,
            endpoint=endpoint.name,
            dst_dataset=endpoint.dataset_for(plan.dataset),
        )
        self.history.append(job)
        if plan.mode is TransferMode.NOOP:
            job.status = JobStatus.COMPLETED
            self._confirm(job)
            return job

        self._store.pin(job)
        try:
            self._resolve(job)
            try:
                self._stream(job)
            except ResumeTokenInvalid as e:
                if job.restarted:
                    raise
                output.warn(f"cannot resume ({e}); discarding partial state and restarting", plan.dataset)
                self._restart_clean(job)
                self._stream(job)
            self._verify(job)
        except RetryableError as e:
            self._fail(job, e, retryable=True)
            raise
        except ZrbError as e:
            self._fail(job, e, retryable=False)
            raise
        finally:
            self._store.unpin(job)

        job.status = JobStatus.COMPLETED
        self.tokens.discard(job.endpoint, plan.dataset, plan)
        self._confirm(job)
        return job

    # --- states ---

    def _resolve(self, job: TransferJob) -> None:
        job.status = JobStatus.RESOLVING
        plan = job.plan
        dst = self._store.location(job.endpoint)
        try:
            present = {s.name for s in self._store.list(job.dst_dataset, job.endpoint)}
        except DatasetNotFound:
            present = set()
        if plan.mode is TransferMode.INCREMENTAL and plan.base.name not in present:
            raise StalePlan(f"{job.dst_dataset} no longer holds base @{plan.base.name}")
        if plan.mode is TransferMode.FULL and present:
            raise StalePlan(f"{job.dst_dataset} gained snapshots since it was resolved")

        current = dst.get_resume_token(job.dst_dataset)
        cached = self.tokens.get(job.endpoint, plan.dataset, plan)
        # resume only a token saved for this plan
        if current and current != cached:
            output.warn("destination holds partial state from another transfer; discarding it", plan.dataset)
            dst.abort_partial_receive(job.dst_dataset)
            current = None
            if cached:
                self.tokens.discard(job.endpoint, plan.dataset, plan)
        elif cached and not current:
            output.warn("saved resume token is no longer valid at the destination; restarting", plan.dataset)
            self.tokens.discard(job.endpoint, plan.dataset, plan)
        job.resume_token = current
        job.resumed = bool(current)

    def _restart_clean(self, job: TransferJob) -> None:
        self._store.location(job.endpoint).abort_partial_receive(job.dst_dataset)
        self.tokens.discard(job.endpoint, job.plan.dataset, job.plan)
        job.resume_token = None
        job.resumed = False
        job.restarted = True

    def _stream(self, job: TransferJob) -> None:
        job.status = JobStatus.STREAMING
        plan = job.plan
        src = self._store.location(SOURCE)
        dst = self._store.location(job.endpoint)
        verb = "Resuming" if job.resumed else "Sending"
        output.say(f"{verb} {plan.describe()} to {dst.label}:{job.dst_dataset}", plan.dataset)

        send = src.open_send_stream(
            plan.target,
            base=plan.base if plan.mode is TransferMode.INCREMENTAL else None,
            resume_token=job.resume_token,
            filters=self.chain.encoders,
        )
        try:
            sink = dst.open_receive_stream(
                job.dst_dataset,
                full=plan.mode is TransferMode.FULL,
                filters=self.chain.decoders,
            )
        except BaseException:
            send.abort()
            raise

        try:
            finished = self._pump(job, send, sink)
        except (OSError, ValueError) as e:
            send.abort()
            sink.close()  # raises the receive side's account of the failure
            raise StreamInterrupted(f"stream broken: {e}") from e
        except BaseException:
            send.abort()
            sink.abort()
            raise
        if not finished:
            sink.abort()
            send.abort()
            raise TransferCancelled(f"transfer cancelled after {job.bytes_transferred} bytes")
        self._close(send, sink)

    @staticmethod
    def _close(send: "SendStream", sink: "ReceiveSink") -> None:
        recv_error = send_error = None
        try:
            sink.close()
        except ZrbError as e:
            recv_error = e
        try:
            send.close()
        except ZrbError as e:
            send_error = e
        # a sender killed by SIGPIPE only echoes the receiver's failure
        if send_error is not None and not isinstance(send_error, StreamInterrupted):
            raise send_error
        if recv_error is not None:
            raise recv_error
        if send_error is not None:
            raise send_error

    def _pump(self, job: TransferJob, send: "SendStream", sink: "ReceiveSink") -> bool:
        """Copy send -> sink through a bounded buffer.

        Returns False if cancelled. A stalled sink blocks the writer, the
        buffer fills, and the reader stops pulling from the sender.
        """
        chunks: queue.Queue = queue.Queue(maxsize=self.max_buffered_chunks)
        stop = threading.Event()

        def offer(item) -> bool:
            while not stop.is_set():
                try:
                    chunks.put(item, timeout=_POLL)
                    return True
                except queue.Full:
                    continue
            return False

        def produce() -> None:
            try:
                while not stop.is_set():
                    chunk = send.read(self.chunk_size)
                    if not offer(chunk) or not chunk:
                        return
            except (OSError, ValueError) as e:
                offer(e)

        reader = threading.Thread(target=produce, name=f"zrb-send-{job.id}", daemon=True)
        reader.start()
        drained = False
        try:
            while True:
                if self._cancel is not None and self._cancel.is_set():
                    return False
                try:
                    item = chunks.get(timeout=_POLL)
                except queue.Empty:
                    continue
                if isinstance(item, Exception):
                    raise item
                if not item:
                    drained = True
                    return True
                sink.write(item)
                job.bytes_transferred += len(item)
                if self._progress is not None:
                    self._progress(job, len(item))
        finally:
            stop.set()
            if not drained:
                send.abort()  # unblocks a read in progress
            reader.join(timeout=_JOIN_TIMEOUT)

    def _verify(self, job: TransferJob) -> None:
        job.status = JobStatus.VERIFYING
        target = job.plan.target
        received = Snapshot(job.dst_dataset, target.name)
        try:
            names = {s.name for s in self._store.list(job.dst_dataset, job.endpoint)}
        except DatasetNotFound:
            names = set()
        if target.name not in names:
            raise VerificationMismatch(f"{received.full_name} missing after transfer")
        src_guid = self._store.location(SOURCE).snapshot_guid(target)
        dst_guid = self._store.location(job.endpoint).snapshot_guid(received)
        if src_guid and dst_guid and src_guid != dst_guid:
            raise VerificationMismatch(
                f"{received.full_name} guid {dst_guid} does not match source guid {src_guid}"
            )
        output.say(f"Transfer of @{target.name} complete ({job.bytes_transferred} bytes)", job.plan.dataset)

    # --- outcomes ---

    def _fail(self, job: TransferJob, error: ZrbError, retryable: bool) -> None:
        job.error = error
        error.job = job
        plan = job.plan
        if not retryable:
            job.status = JobStatus.FAILED_FATAL
            self.tokens.discard(job.endpoint, plan.dataset, plan)
            return
        job.status = JobStatus.FAILED_RETRYABLE
        if not isinstance(error, StreamInterrupted):
            return
        try:
            job.resume_token = self._store.location(job.endpoint).get_resume_token(job.dst_dataset)
        except ZrbError as e:
            output.warn(f"cannot read resume token: {e}", plan.dataset)
            job.resume_token = None
        if job.resume_token:
            self.tokens.put(job.endpoint, plan.dataset, plan, job.resume_token)
        else:
            self.tokens.discard(job.endpoint, plan.dataset, plan)

    def _confirm(self, job: TransferJob) -> None:
        target = job.plan.target
        if target is None:
            return
        self._store.confirm_common(job.plan.dataset, SOURCE, target.name, via=job.endpoint)
        self._store.confirm_common(job.dst_dataset, job.endpoint, target.name, via=SOURCE)
