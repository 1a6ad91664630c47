# azure_preflight.py
from __future__ import annotations

import json
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import AzureCliCredential

from settings import ARM_SCOPE

log = logging.getLogger(__name__)


class AzurePreflightError(Exception): pass


@dataclass(frozen=True)
class AccountContext:
    subscription_id: str
    subscription_name: str
    tenant_id: str
    user: str


def find_az() -> str:
    az = shutil.which("az") or shutil.which("az.cmd") or shutil.which("az.exe")
    if not az:
        raise AzurePreflightError("Azure CLI not found. Install https://aka.ms/azcli and run 'az login'.")
    return az


def run_az(az: str, args: List[str]) -> subprocess.CompletedProcess:
    log.debug("az %s", " ".join(args))
    return subprocess.run([az, *args], capture_output=True, text=True)


def az_json(az: str, args: List[str]) -> Any:
    """Run an az command with JSON output; raise AzurePreflightError on failure."""
    p = run_az(az, [*args, "-o", "json"])
    if p.returncode != 0:
        msg = (p.stderr or p.stdout or "").strip()
        raise AzurePreflightError(f"'az {' '.join(args)}' failed: {msg}")
    try:
        return json.loads(p.stdout or "null")
    except ValueError as e:
        raise AzurePreflightError(f"'az {' '.join(args)}' returned invalid JSON: {e}")


def current_account(az: str) -> Optional[Dict[str, Any]]:
    p = run_az(az, ["account", "show", "-o", "json"])
    if p.returncode != 0:
        return None
    try:
        return json.loads(p.stdout)
    except ValueError:
        return None


def login(az: str) -> None:
    # Let az print its device-code / browser instructions straight to the console.
    p = subprocess.run([az, "login", "-o", "none"])
    if p.returncode != 0:
        raise AzurePreflightError("Azure login failed. Run 'az login' manually and retry.")


def list_subscriptions(az: str) -> List[Dict[str, Any]]:
    subs = az_json(az, ["account", "list"]) or []
    return [s for s in subs if str(s.get("state", "Enabled")).lower() == "enabled"]


def set_subscription(az: str, subscription_id: str) -> None:
    p = run_az(az, ["account", "set", "--subscription", subscription_id])
    if p.returncode != 0:
        raise AzurePreflightError(
            f"Could not select subscription {subscription_id}: {(p.stderr or '').strip()}"
        )


def _to_context(acct: Dict[str, Any]) -> AccountContext:
    return AccountContext(
        subscription_id=str(acct.get("id", "")),
        subscription_name=str(acct.get("name", "")),
        tenant_id=str(acct.get("tenantId", "")),
        user=str((acct.get("user") or {}).get("name", "")),
    )


def authenticate(
    interactive: bool = True,
    confirm_login: Optional[Callable[[], bool]] = None,
    choose_subscription: Optional[Callable[[List[Dict[str, Any]]], Dict[str, Any]]] = None,
) -> AccountContext:
    """
    Make sure the Azure CLI is logged in and pointed at the subscription to use.

    - Reuses an existing 'az login' session when there is one.
    - Otherwise runs 'az login' (interactive only, after confirm_login()).
    - With more than one enabled subscription, choose_subscription() picks one.
    """
    az = find_az()
    acct = current_account(az)
    if acct is None:
        if not interactive:
            raise AzurePreflightError(
                "Azure CLI not logged in. Run 'az login' and 'az account set --subscription <SUBSCRIPTION>'."
            )
        if confirm_login is not None and not confirm_login():
            raise AzurePreflightError("Azure login declined.")
        login(az)
        acct = current_account(az)
        if acct is None:
            raise AzurePreflightError("Azure login did not produce an active account.")

    subs = list_subscriptions(az)
    if not subs:
        raise AzurePreflightError("No enabled subscriptions found for the signed-in account.")

    if choose_subscription is not None and len(subs) > 1:
        chosen = choose_subscription(subs)
        if str(chosen.get("id")) != str(acct.get("id")):
            set_subscription(az, str(chosen["id"]))
            acct = {**chosen, "user": chosen.get("user") or acct.get("user")}

    ctx = _to_context(acct)
    log.debug("using subscription %s (%s)", ctx.subscription_name, ctx.subscription_id)
    return ctx


class CliTokenProvider:
    """Bearer tokens for ARM from the az login session, cached until shortly before expiry."""

    def __init__(self, scope: str = ARM_SCOPE, credential: Any = None, skew_s: float = 120.0):
        self.scope = scope
        self.credential = credential or AzureCliCredential()
        self.skew_s = skew_s
        self._token: Optional[str] = None
        self._expires_on = 0.0

    def __call__(self) -> str:
        if self._token is None or time.time() >= self._expires_on - self.skew_s:
            try:
                tok = self.credential.get_token(self.scope)
            except ClientAuthenticationError as e:
                raise AzurePreflightError(f"Could not get an ARM token from the Azure CLI login: {e}") from e
            self._token, self._expires_on = tok.token, float(tok.expires_on)
        return self._token
