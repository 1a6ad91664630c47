"""Tests for reachability probing, PowerShell encoding and the scoped session."""

from __future__ import annotations

import base64
import subprocess

import pytest

import connectivity
from connectivity import (
    ChannelError, CommandError, LocalExecutor, RemoteExecutor, SshChannel,
    encode_powershell, ping_command, powershell_args, probe, session,
)
from devices import Target


def _completed(rc=0, out="", err=""):
    return subprocess.CompletedProcess(args=[], returncode=rc, stdout=out, stderr=err)


class TestProbe:
    def test_reply_means_reachable(self, monkeypatch):
        seen = []
        monkeypatch.setattr(connectivity.subprocess, "run",
                            lambda cmd, **kw: seen.append(cmd) or _completed(0))
        assert probe(Target("SRV01")) is True
        assert seen[0][0] == "ping"
        assert "SRV01" in seen[0]

    def test_no_reply_means_unreachable(self, monkeypatch):
        monkeypatch.setattr(connectivity.subprocess, "run", lambda cmd, **kw: _completed(1))
        assert probe(Target("SRV01")) is False

    def test_probe_errors_mean_unreachable(self, monkeypatch):
        def boom(cmd, **kw):
            raise FileNotFoundError("ping")
        monkeypatch.setattr(connectivity.subprocess, "run", boom)
        assert probe(Target("SRV01")) is False

    def test_local_target_skips_ping(self, monkeypatch):
        def boom(cmd, **kw):
            raise AssertionError("ping should not run for localhost")
        monkeypatch.setattr(connectivity.subprocess, "run", boom)
        assert probe(Target("localhost")) is True

    def test_ping_command_single_echo(self, monkeypatch):
        monkeypatch.setattr(connectivity.sys, "platform", "linux")
        assert ping_command("SRV01", 2) == ["ping", "-c", "1", "-W", "2", "SRV01"]
        monkeypatch.setattr(connectivity.sys, "platform", "win32")
        assert ping_command("SRV01", 2) == ["ping", "-n", "1", "-w", "2000", "SRV01"]


class TestPowerShell:
    def test_encoded_command_is_utf16le_base64(self):
        encoded = encode_powershell("Get-Date")
        assert base64.b64decode(encoded).decode("utf-16-le") == "Get-Date"

    def test_args(self):
        args = powershell_args("Get-Date", "pwsh")
        assert args[:4] == ["pwsh", "-NoProfile", "-NonInteractive", "-EncodedCommand"]

    def test_local_executor_returns_stdout(self, monkeypatch):
        monkeypatch.setattr(connectivity.subprocess, "run", lambda cmd, **kw: _completed(0, "5.1\n"))
        assert LocalExecutor(exe="powershell").run("$PSVersionTable") == "5.1"

    def test_local_executor_raises_on_failure(self, monkeypatch):
        monkeypatch.setattr(connectivity.subprocess, "run",
                            lambda cmd, **kw: _completed(1, err="access denied"))
        with pytest.raises(CommandError, match="access denied"):
            LocalExecutor(exe="powershell").run("Get-Service")


class FakeChannel:
    def __init__(self, result=None):
        self.host = "SRV01"
        self.result = result or _completed(0, "Running\n")
        self.close_calls = 0
        self.commands = []

    def run(self, args):
        self.commands.append(args)
        return self.result

    def close(self):
        self.close_calls += 1


class TestSession:
    def test_remote_session_shares_one_channel_and_closes(self):
        channel = FakeChannel()
        with session(Target("SRV01"), channel_factory=lambda t: channel) as sess:
            assert isinstance(sess.executor, RemoteExecutor)
            assert sess.executor.run("Get-Service Sense") == "Running"
            assert sess.executor.run("Get-Service Sense") == "Running"
        assert len(channel.commands) == 2
        assert channel.close_calls == 1

    def test_channel_closed_on_exception(self):
        channel = FakeChannel()
        with pytest.raises(ValueError):
            with session(Target("SRV01"), channel_factory=lambda t: channel):
                raise ValueError("boom")
        assert channel.close_calls == 1

    def test_open_failure_yields_error_session(self):
        def refuse(target):
            raise ChannelError("Could not open remote session to SRV01: Connection refused")

        with session(Target("SRV01"), channel_factory=refuse) as sess:
            assert sess.executor is None
            assert "Connection refused" in sess.error

    def test_local_target_uses_local_executor(self):
        def never(target):
            raise AssertionError("no channel for local targets")

        with session(Target("localhost"), channel_factory=never) as sess:
            assert isinstance(sess.executor, LocalExecutor)


class TestSshChannel:
    def test_open_run_close(self, monkeypatch):
        calls = []
        monkeypatch.setattr(connectivity.subprocess, "run",
                            lambda cmd, **kw: calls.append(cmd) or _completed(0, "ok"))
        ch = SshChannel("SRV01", user="admin").open()
        assert "-M" in calls[0] and calls[0][-1] == "admin@SRV01"
        ch.run(["hostname"])
        assert calls[1][-2:] == ["admin@SRV01", "hostname"]
        ch.close()
        ch.close()
        assert [c for c in calls if "-O" in c] == [calls[2]]
        assert ch.is_open is False

    def test_open_failure_raises_channel_error(self, monkeypatch):
        monkeypatch.setattr(connectivity.subprocess, "run",
                            lambda cmd, **kw: _completed(255, err="Permission denied (publickey)"))
        with pytest.raises(ChannelError, match="Permission denied"):
            SshChannel("SRV01").open()

    def test_run_requires_open_channel(self):
        with pytest.raises(ChannelError):
            SshChannel("SRV01").run(["hostname"])
