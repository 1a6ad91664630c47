# settings.py
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

# ---------------------- Built-in defaults (override via ENV) ----------------------
DEFAULT_INPUT_FILE = os.getenv("ARC_PREREQ_INPUT", "devices.txt")
LOG_DIR = os.getenv("ARC_PREREQ_LOG_DIR", "logs")
LOG_NAME_TEMPLATE = os.getenv("ARC_PREREQ_LOG_TEMPLATE", "ArcPrereq_{name}.log")

# Arc management endpoint every server must reach
ARC_ENDPOINT = os.getenv("ARC_ENDPOINT", "gbl.his.arc.azure.com")
ARC_ENDPOINT_PORT = int(os.getenv("ARC_ENDPOINT_PORT", "443"))

POLL_INTERVAL_S = float(os.getenv("ARC_POLL_INTERVAL_S", "10"))
REGISTRATION_TIMEOUT_S = float(os.getenv("ARC_REGISTRATION_TIMEOUT_S", "300"))
PING_TIMEOUT_S = float(os.getenv("ARC_PING_TIMEOUT_S", "2"))
COMMAND_TIMEOUT_S = float(os.getenv("ARC_COMMAND_TIMEOUT_S", "60"))

SSH_USER = os.getenv("ARC_SSH_USER") or None
POWERSHELL_EXE = os.getenv("ARC_POWERSHELL") or None  # None -> powershell/pwsh from PATH

ARM_BASE_URL = os.getenv("ARM_BASE_URL", "https://management.azure.com")
ARM_SCOPE = f"{ARM_BASE_URL}/.default"

_DEFAULT_PROVIDERS = [
    "Microsoft.HybridCompute",
    "Microsoft.GuestConfiguration",
    "Microsoft.HybridConnectivity",
    "Microsoft.AzureArcData",
]

_DEFAULT_SUPPORTED_OS = [
    "Windows Server 2012 R2",
    "Windows Server 2016",
    "Windows Server 2019",
    "Windows Server 2022",
    "Windows Server 2025",
]

OVERRIDE_FILE = Path(os.getenv("ARC_PREREQ_CONFIG", "config/arc_prereq.json"))


def _split_env(name: str) -> Optional[List[str]]:
    raw = os.getenv(name)
    if not raw:
        return None
    items = [x.strip() for x in raw.split(",") if x.strip()]
    return items or None


def _load_overrides(path: Path) -> Dict[str, List[str]]:
    """
    Optional JSON override file, e.g. config/arc_prereq.json
    {
      "providers": ["Microsoft.HybridCompute", "Microsoft.GuestConfiguration"],
      "supported_os": ["Windows Server 2019", "Windows Server 2022"]
    }
    Unreadable or malformed files are ignored.
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    if not isinstance(data, dict):
        return {}
    out: Dict[str, List[str]] = {}
    for key in ("providers", "supported_os"):
        val = data.get(key)
        if isinstance(val, list) and val:
            out[key] = [str(x).strip() for x in val if str(x).strip()]
    return out


def required_providers(override_path: Optional[Path] = None) -> List[str]:
    # Priority: JSON override -> ENV -> built-ins
    j = _load_overrides(override_path or OVERRIDE_FILE).get("providers")
    return list(j or _split_env("ARC_REQUIRED_PROVIDERS") or _DEFAULT_PROVIDERS)


def supported_os(override_path: Optional[Path] = None) -> List[str]:
    j = _load_overrides(override_path or OVERRIDE_FILE).get("supported_os")
    return list(j or _split_env("ARC_SUPPORTED_OS") or _DEFAULT_SUPPORTED_OS)
