# devices.py
from __future__ import annotations

import codecs
import datetime
import re
import socket
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Set

from settings import LOG_DIR, LOG_NAME_TEMPLATE

if TYPE_CHECKING:
    from collector import CheckResult

SAMPLE_TARGETS = ["SERVER01", "SERVER02", "SERVER03", "SERVER04", "SERVER05"]

_LOOPBACK_NAMES = {"localhost", "127.0.0.1", "::1", "."}


@lru_cache(maxsize=1)
def _local_names() -> Set[str]:
    names = set(_LOOPBACK_NAMES)
    try:
        host = socket.gethostname()
        names.add(host.lower())
        names.add(host.split(".")[0].lower())
        names.add(socket.getfqdn().lower())
    except OSError:
        pass
    return names


def is_local_name(name: str) -> bool:
    return name.strip().lower() in _local_names()


@dataclass
class Target:
    name: str
    reachable: Optional[bool] = None
    os_label: str = ""
    is_local: bool = field(init=False)

    def __post_init__(self):
        self.is_local = is_local_name(self.name)


# ---------------------- Input file ----------------------
def _read_text(path: Path) -> str:
    # Windows PowerShell 5.1 Out-File / '>' write UTF-16 with a BOM
    raw = Path(path).read_bytes()
    if raw.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return raw.decode("utf-16")
    return raw.decode("utf-8-sig")


def read_targets(path: Path) -> List[Target]:
    """
    One name per line; blank lines and '#' comments skipped; repeats dropped (first wins).
    UTF-8 (with or without BOM) and UTF-16 with BOM are accepted; anything else
    raises UnicodeDecodeError.
    """
    seen: Set[str] = set()
    out: List[Target] = []
    for line in _read_text(path).splitlines():
        name = line.split("#", 1)[0].strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        out.append(Target(name))
    return out


def write_sample_file(path: Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text("\n".join(SAMPLE_TARGETS) + "\n", encoding="utf-8")
    return p


# ---------------------- Per-target log ----------------------
def _safe_filename(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", name) or "unnamed"


class TargetLog:
    """Flat per-target log; each run replaces the previous content."""

    def __init__(self, target_name: str, log_dir: Path = Path(LOG_DIR),
                 template: str = LOG_NAME_TEMPLATE):
        self.target_name = target_name
        self.path = Path(log_dir) / template.format(name=_safe_filename(target_name))

    def start(self, when: Optional[datetime.datetime] = None) -> Path:
        when = when or datetime.datetime.now()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            f"Prerequisite check started for {self.target_name} at {when.isoformat(timespec='seconds')}\n",
            encoding="utf-8",
        )
        return self.path

    def write(self, result: "CheckResult") -> None:
        detail = " ".join(str(result.detail).split())
        with self.path.open("a", encoding="utf-8") as f:
            f.write(f"{result.check}\t{result.outcome}\t{detail}\n")
