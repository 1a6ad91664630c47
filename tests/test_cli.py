"""End-to-end CLI tests with the Azure and remote layers stubbed out."""

from __future__ import annotations

from contextlib import contextmanager

import pytest
from click.testing import CliRunner

import main
import runner
from azure_preflight import AzurePreflightError
from collector import OK, CheckResult
from connectivity import Session


@pytest.fixture()
def offline(monkeypatch):
    """No ping, no ssh: every device is reachable and every check passes."""
    calls = {"collect": []}

    @contextmanager
    def fake_session(target, channel_factory=None):
        yield Session(executor=object())

    def fake_collect(self, target, executor, channel_error=None):
        calls["collect"].append(target.name)
        return [CheckResult(target.name, f"Check {i}", OK, "fine") for i in range(8)]

    monkeypatch.setattr(runner.connectivity, "probe", lambda target: True)
    monkeypatch.setattr(runner.connectivity, "session", fake_session)
    monkeypatch.setattr(runner.FactCollector, "collect", fake_collect)
    return calls


class TestCheck:
    def test_missing_txt_creates_sample_and_stops(self, tmp_path, offline):
        devices = tmp_path / "devices.txt"
        result = CliRunner().invoke(main.cli, ["check", "--in", str(devices), "--yes", "--skip-login"],
                                    input="y\n")
        assert result.exit_code == 0, result.output
        assert len(devices.read_text(encoding="utf-8").splitlines()) == 5
        assert offline["collect"] == []

    def test_declined_consent(self, tmp_path, offline):
        result = CliRunner().invoke(main.cli, ["check", "--in", str(tmp_path / "x.txt")], input="n\n")
        assert result.exit_code == 0
        assert "Cancelled." in result.output

    def test_empty_devices_file(self, tmp_path, offline):
        devices = tmp_path / "devices.txt"
        devices.write_text("# nothing\n", encoding="utf-8")
        result = CliRunner().invoke(main.cli, ["check", "--in", str(devices), "--yes", "--skip-login"])
        assert result.exit_code == 2
        assert offline["collect"] == []

    def test_utf16_devices_file_is_checked(self, tmp_path, offline):
        devices = tmp_path / "devices.txt"
        devices.write_text("SRV01\r\n", encoding="utf-16")
        result = CliRunner().invoke(main.cli, ["check", "--in", str(devices), "--yes", "--skip-login",
                                               "--log-dir", str(tmp_path / "logs")])
        assert result.exit_code == 0, result.output
        assert offline["collect"] == ["SRV01"]

    def test_undecodable_devices_file_exits_cleanly(self, tmp_path, offline):
        devices = tmp_path / "devices.txt"
        devices.write_bytes(b"SRV\xe901\n")
        result = CliRunner().invoke(main.cli, ["check", "--in", str(devices), "--yes", "--skip-login"])
        assert result.exit_code == 2
        assert not isinstance(result.exception, UnicodeDecodeError)
        assert "Could not read" in result.output
        assert offline["collect"] == []

    def test_full_run_without_login(self, tmp_path, offline):
        devices = tmp_path / "devices.txt"
        devices.write_text("SRV01\nSRV02\n", encoding="utf-8")
        out_csv = tmp_path / "out" / "results.csv"
        result = CliRunner().invoke(main.cli, [
            "check", "--in", str(devices), "--yes", "--skip-login",
            "--log-dir", str(tmp_path / "logs"), "--export", str(out_csv),
        ])
        assert result.exit_code == 0, result.output
        assert offline["collect"] == ["SRV01", "SRV02"]
        assert "Overall: READY - LOGIN REQUIRED" in result.output
        assert (tmp_path / "logs" / "ArcPrereq_SRV02.log").exists()
        assert out_csv.exists()


class TestOtherCommands:
    def test_sample_refuses_overwrite(self, tmp_path):
        out = tmp_path / "devices.txt"
        runner_ = CliRunner()
        assert runner_.invoke(main.cli, ["sample", "--out", str(out)]).exit_code == 0
        assert runner_.invoke(main.cli, ["sample", "--out", str(out)]).exit_code == 2
        assert runner_.invoke(main.cli, ["sample", "--out", str(out), "--force"]).exit_code == 0

    def test_providers_reports_auth_failure(self, monkeypatch):
        def failing(**kwargs):
            raise AzurePreflightError("Azure CLI not found")

        monkeypatch.setattr(main, "authenticate", failing)
        result = CliRunner().invoke(main.cli, ["providers"])
        assert result.exit_code == 2
        assert "Azure CLI not found" in result.output

    def test_arc_ansible_dry_run(self, tmp_path):
        devices = tmp_path / "linux.txt"
        devices.write_text("lnx01\n", encoding="utf-8")
        work = tmp_path / "work"
        result = CliRunner().invoke(main.cli, [
            "arc-ansible", "--in", str(devices), "--resource-group", "rg-arc", "--location", "eastus",
            "--sp-id", "app-1", "--sp-secret", "pw", "--tenant-id", "tenant-1",
            "--subscription-id", "sub-1", "--work-dir", str(work), "--dry-run",
        ])
        assert result.exit_code == 0, result.output
        assert (work / "inventory.ini").read_text(encoding="utf-8").splitlines() == ["[arc_servers]", "lnx01"]
        assert (work / "arc_vars.json").exists()
        assert (work / "config_azurearc.yml").exists()
