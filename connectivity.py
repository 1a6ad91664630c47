# connectivity.py
from __future__ import annotations

import base64
import logging
import shutil
import subprocess
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, List, Optional

from settings import COMMAND_TIMEOUT_S, PING_TIMEOUT_S, POWERSHELL_EXE, SSH_USER

if TYPE_CHECKING:
    from devices import Target

log = logging.getLogger(__name__)

SSH_OPTS = [
    "-o", "BatchMode=yes",
    "-o", "ConnectTimeout=10",
    "-o", "StrictHostKeyChecking=accept-new",
    "-o", "LogLevel=ERROR",
]


class ChannelError(ConnectionError): pass


class CommandError(RuntimeError): pass


# ---------------------- Reachability ----------------------
def ping_command(host: str, timeout_s: float = PING_TIMEOUT_S) -> List[str]:
    if sys.platform.startswith("win"):
        return ["ping", "-n", "1", "-w", str(int(timeout_s * 1000)), host]
    return ["ping", "-c", "1", "-W", str(max(1, int(timeout_s))), host]


def probe(target: "Target", timeout_s: float = PING_TIMEOUT_S) -> bool:
    """Single echo request; anything but a clean reply counts as unreachable."""
    if target.is_local:
        return True
    try:
        p = subprocess.run(ping_command(target.name, timeout_s), capture_output=True,
                           text=True, timeout=timeout_s + 5)
    except (OSError, subprocess.SubprocessError) as e:
        log.debug("ping %s failed: %s", target.name, e)
        return False
    return p.returncode == 0


# ---------------------- PowerShell encoding ----------------------
def encode_powershell(script: str) -> str:
    """Base64 UTF-16LE, the form -EncodedCommand expects."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def powershell_args(script: str, exe: str = "powershell") -> List[str]:
    return [exe, "-NoProfile", "-NonInteractive", "-EncodedCommand", encode_powershell(script)]


def find_powershell() -> str:
    exe = POWERSHELL_EXE or shutil.which("powershell") or shutil.which("pwsh")
    if not exe:
        raise CommandError("PowerShell not found on PATH (set ARC_POWERSHELL).")
    return exe


def _completed_output(p: subprocess.CompletedProcess, what: str) -> str:
    if p.returncode != 0:
        msg = (p.stderr or p.stdout or "").strip() or f"exit code {p.returncode}"
        raise CommandError(f"{what} failed: {msg}")
    return (p.stdout or "").strip()


# ---------------------- Remote channel ----------------------
class SshChannel:
    """
    Persistent OpenSSH connection (ControlMaster) to one host.

    open() establishes the master connection; run() multiplexes commands over it;
    close() tears it down and is safe to call more than once.
    """

    def __init__(self, host: str, user: Optional[str] = SSH_USER,
                 timeout_s: float = COMMAND_TIMEOUT_S, ssh: str = "ssh"):
        self.host = host
        self.user = user
        self.timeout_s = timeout_s
        self.ssh = ssh
        self._tmpdir: Optional[str] = None
        self.is_open = False

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    @property
    def control_path(self) -> str:
        if self._tmpdir is None:
            raise ChannelError(f"Channel to {self.host} is not open.")
        return str(Path(self._tmpdir) / "ctl")

    def _base(self) -> List[str]:
        return [self.ssh, *SSH_OPTS, "-S", self.control_path]

    def open(self) -> "SshChannel":
        self._tmpdir = tempfile.mkdtemp(prefix="arcssh-")
        cmd = [*self._base(), "-M", "-f", "-N", self.destination]
        log.debug("opening channel: %s", " ".join(cmd))
        try:
            p = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_s)
        except (OSError, subprocess.SubprocessError) as e:
            self._cleanup()
            raise ChannelError(f"Could not open remote session to {self.host}: {e}") from e
        if p.returncode != 0:
            self._cleanup()
            raise ChannelError(
                f"Could not open remote session to {self.host}: {(p.stderr or '').strip() or p.returncode}"
            )
        self.is_open = True
        return self

    def run(self, args: List[str]) -> subprocess.CompletedProcess:
        if not self.is_open:
            raise ChannelError(f"Channel to {self.host} is not open.")
        return subprocess.run([*self._base(), self.destination, *args],
                              capture_output=True, text=True, timeout=self.timeout_s)

    def close(self) -> None:
        if self.is_open:
            try:
                subprocess.run([*self._base(), "-O", "exit", self.destination],
                               capture_output=True, text=True, timeout=self.timeout_s)
            except (OSError, subprocess.SubprocessError) as e:
                log.debug("closing channel to %s: %s", self.host, e)
            self.is_open = False
        self._cleanup()

    def _cleanup(self) -> None:
        if self._tmpdir is not None:
            shutil.rmtree(self._tmpdir, ignore_errors=True)
            self._tmpdir = None


def open_channel(target: "Target") -> SshChannel:
    if target.is_local:
        raise ValueError("Local targets do not use a remote channel.")
    return SshChannel(target.name).open()


# ---------------------- Command executors ----------------------
class CommandExecutor:
    """Runs a PowerShell script in a target's context and returns its stdout."""

    def run(self, script: str) -> str:
        raise NotImplementedError


class LocalExecutor(CommandExecutor):
    def __init__(self, exe: Optional[str] = None, timeout_s: float = COMMAND_TIMEOUT_S):
        self.exe = exe
        self.timeout_s = timeout_s

    def run(self, script: str) -> str:
        exe = self.exe or find_powershell()
        p = subprocess.run(powershell_args(script, exe), capture_output=True,
                           text=True, timeout=self.timeout_s)
        return _completed_output(p, "Local command")


class RemoteExecutor(CommandExecutor):
    def __init__(self, channel: SshChannel, exe: str = "powershell"):
        self.channel = channel
        self.exe = exe

    def run(self, script: str) -> str:
        p = self.channel.run(powershell_args(script, self.exe))
        return _completed_output(p, f"Remote command on {self.channel.host}")


class Session:
    """What a target's checks run through: an executor, or the reason there is none."""

    def __init__(self, executor: Optional[CommandExecutor], error: Optional[str] = None):
        self.executor = executor
        self.error = error


@contextmanager
def session(target: "Target", channel_factory=open_channel) -> Iterator[Session]:
    """
    Scoped execution context for one target. A remote channel is opened once,
    shared by every check, and closed on exit whatever happened inside.
    """
    if target.is_local:
        yield Session(LocalExecutor())
        return
    try:
        channel = channel_factory(target)
    except ChannelError as e:
        log.debug("no channel for %s: %s", target.name, e)
        yield Session(None, str(e))
        return
    try:
        yield Session(RemoteExecutor(channel))
    finally:
        channel.close()
