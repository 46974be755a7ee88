"""Executor protocol and implementations (local, SSH), plus a session pool."""
from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import threading
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from zrb.models import RemoteEndpoint

# ssh exits with 255 when the connection itself fails
SSH_CONNECTION_FAILED = 255


class ExecutorError(Exception):
    """Raised when a command exits with a non-zero status."""
    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command {shlex.join(cmd)!r} exited {returncode}: {stderr.strip()}"
        )


class TransportError(ExecutorError):
    """The remote-execution channel failed, not the remote command."""


def _pipeline_string(cmds: list[list[str]]) -> str:
    return " | ".join(shlex.join(cmd) for cmd in cmds)


@runtime_checkable
class Executor(Protocol):
    @property
    def label(self) -> str:
        """Short label for display (e.g. 'local', 'ssh://host')."""
        raise NotImplementedError

    def run(self, cmd: list[str]) -> str:
        """Run a command, return stdout. Raise ExecutorError on failure."""
        raise NotImplementedError

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        """Launch a command as a Popen object for piping."""
        raise NotImplementedError

    def popen_pipeline(self, cmds: list[list[str]], **kwargs) -> subprocess.Popen:
        """Launch `cmd1 | cmd2 | ...` as one process on the executor's host."""
        raise NotImplementedError

    def is_transport_failure(self, returncode: int) -> bool:
        """True if a non-zero exit came from the channel, not the command."""
        raise NotImplementedError


class LocalExecutor:
    """Run commands on the local machine."""

    @property
    def label(self) -> str:
        return "local"

    def run(self, cmd: list[str]) -> str:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise ExecutorError(cmd, 127, str(e)) from e
        if result.returncode != 0:
            raise ExecutorError(cmd, result.returncode, result.stderr)
        return result.stdout

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        return subprocess.Popen(cmd, text=False, **kwargs)

    def popen_pipeline(self, cmds: list[list[str]], **kwargs) -> subprocess.Popen:
        if len(cmds) == 1:
            return self.popen(cmds[0], **kwargs)
        return subprocess.Popen(["sh", "-c", _pipeline_string(cmds)], text=False, **kwargs)

    def is_transport_failure(self, returncode: int) -> bool:
        return False


class SSHExecutor:
    """Run commands on a remote host via SSH.

    When `control_path` is set, all commands share one multiplexed master
    connection (ControlMaster/ControlPersist) instead of a handshake each.
    """

    def __init__(
        self,
        host: str,
        user: str | None = None,
        port: int = 22,
        control_path: str | None = None,
        connect_timeout: int = 20,
    ):
        self.host = host
        self.user = user
        self.port = port
        self.control_path = control_path
        self.connect_timeout = connect_timeout

    @property
    def label(self) -> str:
        return f"ssh://{self.destination}:{self.port}"

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def _ssh_prefix(self) -> list[str]:
        prefix = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]
        if self.control_path:
            prefix += [
                "-o", "ControlMaster=auto",
                "-o", f"ControlPath={self.control_path}",
                "-o", "ControlPersist=60",
            ]
        return prefix + ["-p", str(self.port), self.destination]

    def run(self, cmd: list[str]) -> str:
        full_cmd = self._ssh_prefix() + [shlex.join(cmd)]
        try:
            result = subprocess.run(
                full_cmd,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise TransportError(full_cmd, SSH_CONNECTION_FAILED, str(e)) from e
        if result.returncode == SSH_CONNECTION_FAILED:
            raise TransportError(full_cmd, result.returncode, result.stderr)
        if result.returncode != 0:
            raise ExecutorError(full_cmd, result.returncode, result.stderr)
        return result.stdout

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        full_cmd = self._ssh_prefix() + [shlex.join(cmd)]
        return subprocess.Popen(full_cmd, text=False, **kwargs)

    def popen_pipeline(self, cmds: list[list[str]], **kwargs) -> subprocess.Popen:
        full_cmd = self._ssh_prefix() + [_pipeline_string(cmds)]
        return subprocess.Popen(full_cmd, text=False, **kwargs)

    def is_transport_failure(self, returncode: int) -> bool:
        return returncode == SSH_CONNECTION_FAILED

    def close(self) -> None:
        """Stop the shared master connection, if one was started."""
        if not self.control_path:
            return
        subprocess.run(
            ["ssh", "-o", f"ControlPath={self.control_path}", "-O", "exit",
             "-p", str(self.port), self.destination],
            capture_output=True,
            check=False,
        )


class SessionPool:
    """Hands out one executor per endpoint and reuses it for the whole run."""

    def __init__(self, multiplex: bool = True):
        self.multiplex = multiplex
        self._local = LocalExecutor()
        self._sessions: dict[tuple[str, str | None, int], SSHExecutor] = {}
        self._control_dir: str | None = None
        self._lock = threading.Lock()

    @property
    def local(self) -> LocalExecutor:
        return self._local

    def get(self, endpoint: "RemoteEndpoint") -> "Executor":
        if not endpoint.is_remote:
            return self._local
        key = (endpoint.host, endpoint.user, endpoint.port)
        with self._lock:
            if key not in self._sessions:
                self._sessions[key] = SSHExecutor(
                    host=endpoint.host,
                    user=endpoint.user,
                    port=endpoint.port,
                    control_path=self._control_path(),
                )
            return self._sessions[key]

    def _control_path(self) -> str | None:
        if not self.multiplex:
            return None
        if self._control_dir is None:
            self._control_dir = tempfile.mkdtemp(prefix="zrb-ssh-")
        return os.path.join(self._control_dir, f"cm-{len(self._sessions)}")

    def close(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()
        if self._control_dir is not None:
            try:
                os.rmdir(self._control_dir)
            except OSError:
                pass  # a master may still be exiting
            self._control_dir = None

    def __enter__(self) -> "SessionPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
