"""Tests for the per-device fact collector and its classification rules."""

from __future__ import annotations

import pytest

from collector import (
    ARC_AGENT, AZ_MODULE, CHECK_NAMES, DEFENDER_SERVICE, ERROR, EXEC_POLICY, INFO,
    MDE_EXTENSION, NETWORK, OK, OS_VERSION, PS_VERSION, WARNING, FactCollector,
    classify_arc_agent, classify_az_module, classify_defender, classify_exec_policy,
    classify_mde_extension, classify_network, classify_os, classify_powershell,
)
from connectivity import CommandError, CommandExecutor
from devices import Target


class ScriptedExecutor(CommandExecutor):
    """Answers each check script by the first matching keyword."""

    def __init__(self, answers, fail_on=()):
        self.answers = answers
        self.fail_on = fail_on
        self.calls = []

    def run(self, script: str) -> str:
        self.calls.append(script)
        for key in self.fail_on:
            if key in script:
                raise CommandError(f"{key} blew up")
        for key, value in self.answers.items():
            if key in script:
                return value
        return ""


HEALTHY = {
    "PSVersion": "5.1.17763.1852",
    "Az.Accounts": "2.12.1",
    "azcmagent.exe": "True",
    "Test-NetConnection": "True",
    "Get-ExecutionPolicy": "RemoteSigned",
    "Get-Service": "Running",
    "AzureDefenderForServers": "True",
    "Win32_OperatingSystem": "Microsoft Windows Server 2019 Datacenter",
}


# ── classification rules ─────────────────────────────────────────

class TestClassifiers:
    @pytest.mark.parametrize("raw,outcome", [
        ("5.1.17763.1852", OK),
        ("7.4.1", OK),
        ("5.0.10586.117", WARNING),
        ("4.0", WARNING),
        ("garbage", WARNING),
    ])
    def test_powershell_version(self, raw, outcome):
        assert classify_powershell(raw)[0] == outcome

    def test_az_module_missing_is_warning(self):
        assert classify_az_module("")[0] == WARNING
        assert classify_az_module("2.12.1")[0] == OK

    def test_arc_agent_absent_is_info(self):
        assert classify_arc_agent("False")[0] == INFO
        assert classify_arc_agent("True")[0] == OK

    def test_network_failure_is_error(self):
        outcome, detail = classify_network("False", "gbl.his.arc.azure.com", 443)
        assert outcome == ERROR
        assert "gbl.his.arc.azure.com:443" in detail

    @pytest.mark.parametrize("policy,outcome", [
        ("Restricted", WARNING),
        ("AllSigned", WARNING),
        ("RemoteSigned", OK),
        ("Unrestricted", OK),
        ("Bypass", OK),
    ])
    def test_exec_policy(self, policy, outcome):
        assert classify_exec_policy(policy)[0] == outcome

    def test_defender_states(self):
        assert classify_defender("Running")[0] == OK
        assert classify_defender("Stopped")[0] == WARNING
        assert classify_defender("NotFound")[0] == WARNING

    def test_mde_extension_absent_is_info(self):
        assert classify_mde_extension("False")[0] == INFO

    def test_os_allow_list(self):
        allowed = ["Windows Server 2019", "Windows Server 2022"]
        assert classify_os("Microsoft Windows Server 2022 Standard", allowed)[0] == OK
        assert classify_os("Microsoft Windows Server 2008 R2 Enterprise", allowed)[0] == WARNING
        assert classify_os("", allowed)[0] == WARNING

    def test_os_uses_default_allow_list(self):
        assert classify_os("Microsoft Windows Server 2016 Datacenter")[0] == OK


# ── collector ─────────────────────────────────────────────────────

class TestFactCollector:
    def test_eight_results_in_fixed_order(self):
        target = Target("srv-a")
        results = FactCollector().collect(target, ScriptedExecutor(HEALTHY))
        assert [r.check for r in results] == CHECK_NAMES
        assert CHECK_NAMES == [PS_VERSION, AZ_MODULE, ARC_AGENT, NETWORK,
                               EXEC_POLICY, DEFENDER_SERVICE, MDE_EXTENSION, OS_VERSION]
        assert all(r.target == "srv-a" for r in results)
        assert all(r.outcome == OK for r in results)

    def test_one_failing_check_does_not_stop_the_rest(self):
        ex = ScriptedExecutor(HEALTHY, fail_on=("Get-ExecutionPolicy",))
        results = FactCollector().collect(Target("srv-a"), ex)
        assert len(results) == 8
        by_check = {r.check: r for r in results}
        assert by_check[EXEC_POLICY].outcome == ERROR
        assert "blew up" in by_check[EXEC_POLICY].detail
        assert by_check[OS_VERSION].outcome == OK
        assert len(ex.calls) == 8

    def test_no_executor_gives_eight_errors(self):
        results = FactCollector().collect(Target("srv-a"), None, "Permission denied (publickey)")
        assert len(results) == 8
        assert {r.outcome for r in results} == {ERROR}
        assert all("Permission denied" in r.detail for r in results)

    def test_os_label_is_cached_on_target(self):
        target = Target("srv-a")
        FactCollector().collect(target, ScriptedExecutor(HEALTHY))
        assert target.os_label == "Microsoft Windows Server 2019 Datacenter"

    def test_mixed_outcomes(self):
        answers = dict(HEALTHY, **{
            "azcmagent.exe": "False",
            "Test-NetConnection": "False",
            "Get-ExecutionPolicy": "Restricted",
        })
        results = FactCollector().collect(Target("srv-b"), ScriptedExecutor(answers))
        by_check = {r.check: r.outcome for r in results}
        assert by_check[ARC_AGENT] == INFO
        assert by_check[NETWORK] == ERROR
        assert by_check[EXEC_POLICY] == WARNING
