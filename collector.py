# collector.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

from connectivity import CommandExecutor
from settings import ARC_ENDPOINT, ARC_ENDPOINT_PORT, supported_os

if TYPE_CHECKING:
    from devices import Target

# ---------------------- Outcomes & check names ----------------------
OK = "OK"
WARNING = "Warning"
ERROR = "Error"
INFO = "Info"
OUTCOMES = (OK, WARNING, ERROR, INFO)

CONNECTIVITY_CHECK = "Device Connectivity"

PS_VERSION = "PowerShell Version"
AZ_MODULE = "Az Module"
ARC_AGENT = "Arc Agent"
NETWORK = "Network Connectivity"
EXEC_POLICY = "Execution Policy"
DEFENDER_SERVICE = "Defender Service"
MDE_EXTENSION = "MDE Extension"
OS_VERSION = "OS Version"

MIN_POWERSHELL = (5, 1)
RESTRICTIVE_POLICIES = {"restricted", "allsigned"}
ARC_AGENT_PATH = r"$env:ProgramFiles\AzureConnectedMachineAgent\azcmagent.exe"
MDE_EXTENSION_PATH = r"C:\Packages\Plugins\Microsoft.Azure.AzureDefenderForServers.MDE.Windows"
DEFENDER_SERVICE_NAME = "Sense"


@dataclass(frozen=True)
class CheckResult:
    target: str
    check: str
    outcome: str        # OK | Warning | Error | Info
    detail: str


Classification = Tuple[str, str]


def _is_true(raw: str) -> bool:
    lines = raw.strip().splitlines()
    return bool(lines) and lines[-1].strip().lower() == "true"


# ---------------------- Per-check classification rules ----------------------
def classify_powershell(raw: str) -> Classification:
    m = re.search(r"(\d+)\.(\d+)", raw)
    if not m:
        return WARNING, f"Could not parse PowerShell version from '{raw.strip()}'"
    ver = (int(m.group(1)), int(m.group(2)))
    if ver >= MIN_POWERSHELL:
        return OK, f"PowerShell {raw.strip()}"
    return WARNING, f"PowerShell {raw.strip()} is older than {MIN_POWERSHELL[0]}.{MIN_POWERSHELL[1]}"


def classify_az_module(raw: str) -> Classification:
    if raw.strip():
        return OK, f"Az.Accounts {raw.strip()} available"
    return WARNING, "Az.Accounts module not installed"


def classify_arc_agent(raw: str) -> Classification:
    if _is_true(raw):
        return OK, "Connected Machine agent already installed"
    return INFO, "Connected Machine agent not installed (installed during onboarding)"


def classify_network(raw: str, endpoint: str = ARC_ENDPOINT, port: int = ARC_ENDPOINT_PORT) -> Classification:
    if _is_true(raw):
        return OK, f"{endpoint}:{port} reachable"
    return ERROR, f"{endpoint}:{port} not reachable"


def classify_exec_policy(raw: str) -> Classification:
    policy = raw.strip() or "Unknown"
    if policy.lower() in RESTRICTIVE_POLICIES:
        return WARNING, f"Execution policy is {policy}"
    return OK, f"Execution policy is {policy}"


def classify_defender(raw: str) -> Classification:
    status = raw.strip() or "NotFound"
    if status.lower() == "running":
        return OK, f"{DEFENDER_SERVICE_NAME} service running"
    if status.lower() == "notfound":
        return WARNING, f"{DEFENDER_SERVICE_NAME} service not installed"
    return WARNING, f"{DEFENDER_SERVICE_NAME} service is {status}"


def classify_mde_extension(raw: str) -> Classification:
    if _is_true(raw):
        return OK, "MDE extension present"
    return INFO, "MDE extension not installed"


def classify_os(raw: str, allowed: Optional[Sequence[str]] = None) -> Classification:
    caption = raw.strip()
    allowed = list(allowed) if allowed is not None else supported_os()
    if not caption:
        return WARNING, "Operating system could not be identified"
    if any(a.lower() in caption.lower() for a in allowed):
        return OK, caption
    return WARNING, f"{caption} is not a supported OS"


# ---------------------- Check table ----------------------
@dataclass(frozen=True)
class Check:
    name: str
    script: str
    classify: Callable[[str], Classification]


def default_checks(endpoint: str = ARC_ENDPOINT, port: int = ARC_ENDPOINT_PORT) -> List[Check]:
    return [
        Check(PS_VERSION, "$PSVersionTable.PSVersion.ToString()", classify_powershell),
        Check(
            AZ_MODULE,
            "$m = Get-Module -ListAvailable -Name Az.Accounts | Sort-Object Version -Descending | "
            "Select-Object -First 1; if ($m) { $m.Version.ToString() }",
            classify_az_module,
        ),
        Check(ARC_AGENT, f'Test-Path -Path "{ARC_AGENT_PATH}"', classify_arc_agent),
        Check(
            NETWORK,
            f"(Test-NetConnection -ComputerName '{endpoint}' -Port {port} "
            "-WarningAction SilentlyContinue).TcpTestSucceeded",
            lambda raw: classify_network(raw, endpoint, port),
        ),
        Check(EXEC_POLICY, "(Get-ExecutionPolicy).ToString()", classify_exec_policy),
        Check(
            DEFENDER_SERVICE,
            f"$s = Get-Service -Name {DEFENDER_SERVICE_NAME} -ErrorAction SilentlyContinue; "
            "if ($s) { $s.Status.ToString() } else { 'NotFound' }",
            classify_defender,
        ),
        Check(MDE_EXTENSION, f"Test-Path -LiteralPath '{MDE_EXTENSION_PATH}'", classify_mde_extension),
        Check(OS_VERSION, "(Get-CimInstance -ClassName Win32_OperatingSystem).Caption", classify_os),
    ]


CHECK_NAMES = [c.name for c in default_checks()]


def _error_text(e: BaseException) -> str:
    return str(e).strip() or type(e).__name__


class FactCollector:
    """Runs the fixed check list against one target; always one result per check."""

    def __init__(self, checks: Optional[List[Check]] = None):
        self.checks = checks if checks is not None else default_checks()

    def collect(self, target: "Target", executor: Optional[CommandExecutor],
                channel_error: Optional[str] = None) -> List[CheckResult]:
        results: List[CheckResult] = []
        for check in self.checks:
            if executor is None:
                reason = channel_error or "no remote session"
                results.append(CheckResult(target.name, check.name, ERROR,
                                           f"Remote session unavailable: {reason}"))
                continue
            try:
                raw = executor.run(check.script)
                outcome, detail = check.classify(raw)
            except Exception as e:
                outcome, detail = ERROR, _error_text(e)
            if check.name == OS_VERSION and outcome != ERROR and not target.os_label:
                target.os_label = raw.strip()
            results.append(CheckResult(target.name, check.name, outcome, detail or outcome))
        return results
