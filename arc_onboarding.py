# arc_onboarding.py
from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from azure_preflight import AzurePreflightError, az_json, find_az
from devices import Target

log = logging.getLogger(__name__)

ONBOARDING_ROLE = "Azure Connected Machine Onboarding"
INVENTORY_GROUP = "arc_servers"

# Linux onboarding: install the Connected Machine agent when missing, then connect
# unless 'azcmagent check' says the machine is already connected.
PLAYBOOK = """\
---
- name: Onboard Linux servers to Azure Arc (public endpoint)
  hosts: all
  vars:
    azure:
      service_principal_id: ''
      service_principal_secret: ''
      resource_group: ''
      tenant_id: ''
      subscription_id: ''
      location: ''
  tasks:
    - name: Look for an installed agent
      stat:
        path: /usr/bin/azcmagent
        get_attributes: false
        get_checksum: false
      register: azcmagent_binary
      when: ansible_system == 'Linux'

    - name: Download the Connected Machine agent installer
      become: true
      get_url:
        url: https://aka.ms/azcmagent
        dest: ~/install_linux_azcmagent.sh
        mode: '0700'
      when: ansible_system == 'Linux' and not azcmagent_binary.stat.exists

    - name: Install the Connected Machine agent
      become: true
      shell: bash ~/install_linux_azcmagent.sh
      when: ansible_system == 'Linux' and not azcmagent_binary.stat.exists

    - name: Check Arc connection state
      become: true
      command:
        cmd: azcmagent check
      register: azcmagent_status
      ignore_errors: true
      changed_when: false
      failed_when: azcmagent_status.rc not in [0, 16]
      when: ansible_system == 'Linux'

    - name: Connect to Azure Arc
      become: true
      shell: >-
        azcmagent connect
        --service-principal-id "{{ azure.service_principal_id }}"
        --service-principal-secret "{{ azure.service_principal_secret }}"
        --resource-group "{{ azure.resource_group }}"
        --tenant-id "{{ azure.tenant_id }}"
        --location "{{ azure.location }}"
        --subscription-id "{{ azure.subscription_id }}"
      no_log: true
      when: ansible_system == 'Linux' and azcmagent_status.rc is defined and azcmagent_status.rc != 0
"""


class AnsibleNotFoundError(Exception): pass


class KeyExistsError(Exception): pass


@dataclass(frozen=True)
class ArcOnboardingSettings:
    service_principal_id: str
    service_principal_secret: str
    resource_group: str
    tenant_id: str
    subscription_id: str
    location: str

    def missing(self) -> List[str]:
        return [k for k, v in asdict(self).items() if not str(v or "").strip()]

    def to_extra_vars(self) -> Dict[str, Dict[str, str]]:
        return {"azure": asdict(self)}


# ---------------------- Ansible files ----------------------
def write_inventory(targets: Iterable[Target], path: Path, user: Optional[str] = None) -> Path:
    lines = [f"[{INVENTORY_GROUP}]"]
    for t in targets:
        lines.append(f"{t.name} ansible_user={user}" if user else t.name)
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return p


def write_extra_vars(settings: ArcOnboardingSettings, path: Path) -> Path:
    """JSON extra-vars holding the service principal secret; owner read/write only."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(p), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(settings.to_extra_vars(), f, indent=2)
    os.chmod(p, 0o600)
    return p


def write_playbook(path: Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(PLAYBOOK, encoding="utf-8")
    return p


def playbook_command(inventory: Path, extra_vars: Path, playbook: Path, ansible: str) -> List[str]:
    return [ansible, "-i", str(inventory), "-e", f"@{extra_vars}", str(playbook)]


def run_playbook(inventory: Path, extra_vars: Path, playbook: Path,
                 ansible: Optional[str] = None) -> int:
    ansible = ansible or shutil.which("ansible-playbook")
    if not ansible:
        raise AnsibleNotFoundError(
            "ansible-playbook not found. Install it with: pipx install --include-deps ansible"
        )
    cmd = playbook_command(inventory, extra_vars, playbook, ansible)
    log.debug("running %s", " ".join(cmd))
    # Output streams straight to the console.
    return subprocess.run(cmd).returncode


# ---------------------- Control node key ----------------------
def generate_control_node_key(key_path: Path, comment: str = "ControlNode",
                              ssh_config: Optional[Path] = None) -> Path:
    """
    Create an RSA key pair for the Ansible control node (no passphrase) and make
    ssh use it by default via an IdentityFile line in ~/.ssh/config.
    """
    key_path = Path(key_path).expanduser()
    if key_path.exists():
        raise KeyExistsError(f"{key_path} already exists; refusing to overwrite it.")
    keygen = shutil.which("ssh-keygen")
    if not keygen:
        raise FileNotFoundError("ssh-keygen not found on PATH.")
    key_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    p = subprocess.run([keygen, "-t", "rsa", "-b", "4096", "-C", comment, "-f", str(key_path), "-N", ""],
                       capture_output=True, text=True)
    if p.returncode != 0:
        raise RuntimeError(f"ssh-keygen failed: {(p.stderr or p.stdout).strip()}")

    cfg = Path(ssh_config).expanduser() if ssh_config else key_path.parent / "config"
    add_identity_file(cfg, key_path)
    return key_path


def add_identity_file(ssh_config: Path, key_path: Path) -> bool:
    """Append 'IdentityFile <key>' unless it is already there. True if the file changed."""
    line = f"IdentityFile {key_path}"
    existing = ssh_config.read_text(encoding="utf-8") if ssh_config.exists() else ""
    if any(l.strip() == line for l in existing.splitlines()):
        return False
    ssh_config.parent.mkdir(parents=True, exist_ok=True)
    with ssh_config.open("a", encoding="utf-8") as f:
        if existing and not existing.endswith("\n"):
            f.write("\n")
        f.write(line + "\n")
    return True


# ---------------------- Service principal ----------------------
def create_service_principal(name: str, subscription_id: str, resource_group: str,
                             az: Optional[str] = None) -> Tuple[str, str, str]:
    """Returns (app_id, password, tenant) of a principal allowed to onboard into resource_group."""
    az = az or find_az()
    scope = f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
    out = az_json(az, ["ad", "sp", "create-for-rbac", "--name", name,
                       "--role", ONBOARDING_ROLE, "--scopes", scope])
    if not isinstance(out, dict) or not out.get("appId"):
        raise AzurePreflightError("Service principal creation returned no appId.")
    return str(out["appId"]), str(out.get("password", "")), str(out.get("tenant", ""))
