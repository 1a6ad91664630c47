# summary.py
from __future__ import annotations

import json
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from collector import (
    AZ_MODULE, ARC_AGENT, CONNECTIVITY_CHECK, DEFENDER_SERVICE, ERROR, EXEC_POLICY,
    INFO, MDE_EXTENSION, NETWORK, OK, OS_VERSION, PS_VERSION, WARNING, CheckResult,
)
from providers import pending

# ---------------------- Remediation hints ----------------------
REMEDIATION: Dict[str, str] = {
    CONNECTIVITY_CHECK: "Verify the server is powered on, resolvable in DNS and allows ICMP and SSH from this host.",
    PS_VERSION: "Install Windows Management Framework 5.1 or PowerShell 7.",
    AZ_MODULE: "Run 'Install-Module -Name Az -Scope AllUsers' on the server.",
    ARC_AGENT: "Install the Connected Machine agent from https://aka.ms/AzureConnectedMachineAgent.",
    NETWORK: "Allow outbound TCP 443 to the Azure Arc endpoints (proxy/firewall).",
    EXEC_POLICY: "Run 'Set-ExecutionPolicy RemoteSigned -Scope LocalMachine'.",
    DEFENDER_SERVICE: "Onboard the server to Microsoft Defender for Endpoint and start the Sense service.",
    MDE_EXTENSION: "Enable Defender for Servers so the MDE extension is deployed after onboarding.",
    OS_VERSION: "Upgrade to a supported Windows Server release (2012 R2 or later).",
}
GENERIC_REMEDIATION = "Review the check detail and the per-device log file."

# Warnings that show up in the cross-device rollup next to every error
HIGH_PRIORITY_WARNINGS = {PS_VERSION, EXEC_POLICY, OS_VERSION, NETWORK}

# ---------------------- Readiness verdicts ----------------------
NOT_READY = "NOT READY"
READY_WITH_WARNINGS = "READY WITH WARNINGS"
READY_LOGIN_REQUIRED = "READY - LOGIN REQUIRED"
READY_PROVIDERS_PENDING = "READY - PROVIDERS PENDING"
READY_PROVIDERS_UNCHECKED = "READY - PROVIDERS NOT CHECKED"
READY = "READY"


class ResultAggregator:
    """Per-target ordered results plus one flat list, in recording order."""

    def __init__(self):
        self.by_target: "OrderedDict[str, List[CheckResult]]" = OrderedDict()
        self.results: List[CheckResult] = []

    def record(self, result: CheckResult) -> None:
        self.by_target.setdefault(result.target, []).append(result)
        self.results.append(result)

    def counts(self) -> Dict[str, int]:
        out = {k: 0 for k in (OK, WARNING, ERROR, INFO)}
        for r in self.results:
            out[r.outcome] = out.get(r.outcome, 0) + 1
        return out


@dataclass
class RunSummary:
    ok: int = 0
    warnings: int = 0
    errors: int = 0
    info: int = 0
    targets: int = 0
    auth_success: bool = False
    providers_registered: Optional[bool] = None     # None -> not checked
    pending_providers: List[str] = field(default_factory=list)


def build_summary(aggregator: ResultAggregator, auth_success: bool,
                  provider_states: Optional[Dict[str, str]] = None) -> RunSummary:
    c = aggregator.counts()
    waiting = pending(provider_states) if provider_states is not None else []
    return RunSummary(
        ok=c[OK], warnings=c[WARNING], errors=c[ERROR], info=c[INFO],
        targets=len(aggregator.by_target),
        auth_success=auth_success,
        providers_registered=(None if provider_states is None or not auth_success else not waiting),
        pending_providers=waiting,
    )


def target_status(results: List[CheckResult]) -> str:
    outcomes = {r.outcome for r in results}
    if ERROR in outcomes:
        return ERROR
    if WARNING in outcomes:
        return WARNING
    return OK


def readiness_verdict(errors: int, warnings: int, auth_success: bool,
                      providers_registered: Optional[bool]) -> Tuple[str, List[str]]:
    """Returns (verdict, caveats). Errors always win; the caveats explain what else is open."""
    caveats: List[str] = []
    if not auth_success:
        caveats.append("Resource providers were not checked (Azure login required).")
    elif providers_registered is None:
        caveats.append("Resource providers were not checked (provider lookup failed or was skipped).")
    elif not providers_registered:
        caveats.append("Some resource providers are not registered yet.")

    if errors > 0:
        return NOT_READY, [f"{errors} error(s) must be resolved before onboarding.", *caveats]
    if warnings > 0:
        return READY_WITH_WARNINGS, [f"{warnings} warning(s) should be reviewed.", *caveats]
    if not auth_success:
        return READY_LOGIN_REQUIRED, caveats
    if providers_registered is None:
        return READY_PROVIDERS_UNCHECKED, caveats
    if not providers_registered:
        return READY_PROVIDERS_PENDING, caveats
    return READY, []


# ---------------------- Report ----------------------
def _results_frame(results: List[CheckResult]) -> pd.DataFrame:
    return pd.DataFrame(
        [{"Device": r.target, "Check": r.check, "Status": r.outcome, "Detail": r.detail} for r in results],
        columns=["Device", "Check", "Status", "Detail"],
    )


def _rule(title: str) -> List[str]:
    return ["", "=" * 70, title, "=" * 70]


def _provider_line(summary: RunSummary) -> str:
    if not summary.auth_success:
        return "Resource Providers: Not checked - login required."
    if summary.providers_registered is None:
        return "Resource Providers: Not checked."
    if summary.providers_registered:
        return "Resource Providers: All required providers registered."
    return "Resource Providers: Pending - " + ", ".join(summary.pending_providers)


def build_report(aggregator: ResultAggregator, summary: RunSummary) -> str:
    lines: List[str] = []

    # (a) every result
    lines += _rule("PREREQUISITE CHECK RESULTS")
    if aggregator.results:
        lines.append(_results_frame(aggregator.results).to_string(index=False))
    else:
        lines.append("(no results)")

    # (b) counts
    lines += _rule("SUMMARY")
    lines.append(f"Devices checked: {summary.targets}")
    lines.append(f"OK: {summary.ok} | Warning: {summary.warnings} | Error: {summary.errors} | Info: {summary.info}")

    # (c) one line per device
    lines += _rule("DEVICE STATUS")
    for name, results in aggregator.by_target.items():
        status = target_status(results)
        n_err = sum(1 for r in results if r.outcome == ERROR)
        n_warn = sum(1 for r in results if r.outcome == WARNING)
        marker = {ERROR: "❌", WARNING: "⚠️", OK: "✅"}[status]
        lines.append(f"{marker} {name}: {status} ({n_err} error(s), {n_warn} warning(s))")

    # (d) per-device breakdown with remediation
    flagged = [(n, rs) for n, rs in aggregator.by_target.items()
               if any(r.outcome in (ERROR, WARNING) for r in rs)]
    if flagged:
        lines += _rule("ISSUES BY DEVICE")
        for name, results in flagged:
            lines.append(f"{name}:")
            for level in (ERROR, WARNING):
                for r in results:
                    if r.outcome != level:
                        continue
                    lines.append(f"  [{level}] {r.check}: {r.detail}")
                    lines.append(f"      Fix: {REMEDIATION.get(r.check, GENERIC_REMEDIATION)}")

    # (e) cross-device rollup
    groups = rollup(aggregator)
    if groups:
        lines += _rule("COMMON ISSUES")
        for (level, check), devices in groups.items():
            lines.append(f"[{level}] {check} ({len(devices)} device(s)): {', '.join(devices)}")
            lines.append(f"      Fix: {REMEDIATION.get(check, GENERIC_REMEDIATION)}")

    # (f) providers + verdict
    verdict, caveats = readiness_verdict(summary.errors, summary.warnings,
                                         summary.auth_success, summary.providers_registered)
    lines += _rule("READINESS")
    lines.append(_provider_line(summary))
    lines.append(f"Overall: {verdict}")
    for c in caveats:
        lines.append(f"  - {c}")
    return "\n".join(lines)


def rollup(aggregator: ResultAggregator) -> "OrderedDict[Tuple[str, str], List[str]]":
    """(level, check) -> affected devices; all errors first, then high-priority warnings."""
    groups: "OrderedDict[Tuple[str, str], List[str]]" = OrderedDict()
    for level in (ERROR, WARNING):
        for r in aggregator.results:
            if r.outcome != level:
                continue
            if level == WARNING and r.check not in HIGH_PRIORITY_WARNINGS:
                continue
            devices = groups.setdefault((level, r.check), [])
            if r.target not in devices:
                devices.append(r.target)
    return groups


# ---------------------- Export ----------------------
def write_results_csv(aggregator: ResultAggregator, out_csv: Path,
                      summary: Optional[RunSummary] = None) -> Path:
    """
    Write every result to CSV (Device,Check,Status,Detail); with a summary,
    also write <name>.summary.json next to it.
    """
    out_csv = Path(out_csv)
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    _results_frame(aggregator.results).to_csv(out_csv, index=False, encoding="utf-8")
    if summary is not None:
        verdict, caveats = readiness_verdict(summary.errors, summary.warnings,
                                             summary.auth_success, summary.providers_registered)
        payload = {**asdict(summary), "verdict": verdict, "caveats": caveats}
        out_csv.with_suffix(".summary.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return out_csv
