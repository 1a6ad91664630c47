# prompts.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from devices import write_sample_file

CONSENT_TEXT = (
    "This tool signs in to Azure, may register resource providers on the selected\n"
    "subscription and runs read-only PowerShell checks on every listed server."
)


def confirm_consent() -> bool:
    click.echo(CONSENT_TEXT)
    return click.confirm("Do you want to continue?", default=False)


def prompt_input_path(default: str) -> Tuple[Optional[Path], bool]:
    """
    Ask for the devices file until it exists. For a missing *.txt path, offer to
    write a sample file instead. Returns (path, created_sample); (None, False)
    when the user gives up.
    """
    while True:
        raw = click.prompt("Path to the devices file (one server name per line)",
                           type=str, default=default).strip().strip('"')
        p = Path(raw)
        if p.is_file():
            return p, False
        if p.suffix.lower() == ".txt" and not p.exists():
            if click.confirm(f"{p} does not exist. Create a sample file there?", default=True):
                write_sample_file(p)
                click.echo(f"Wrote sample devices file → {p}")
                click.echo("Edit it with your server names and run the check again.")
                return p, True
        else:
            click.echo(f"Not a readable .txt file: {p}")
        if not click.confirm("Try another path?", default=True):
            return None, False


def parse_selection(text: str, options: List[str]) -> Optional[List[str]]:
    """
    Parse '1,3' or 'Microsoft.HybridCompute, 2' against options.
    Indices are 1-based, names case-insensitive; repeats collapse.
    Returns None if any token is invalid or nothing was selected.
    """
    by_name = {o.lower(): o for o in options}
    picked: List[str] = []
    for token in (t.strip() for t in str(text or "").split(",")):
        if not token:
            continue
        if token.isdigit():
            idx = int(token)
            if not 1 <= idx <= len(options):
                return None
            choice = options[idx - 1]
        elif token.lower() in by_name:
            choice = by_name[token.lower()]
        else:
            return None
        if choice not in picked:
            picked.append(choice)
    return picked or None


def prompt_registration_choice(pending_names: List[str]) -> List[str]:
    """Register All / Select / Skip for the providers that are not registered."""
    click.echo("Resource providers not registered:")
    for i, name in enumerate(pending_names, 1):
        click.echo(f"  {i}. {name}")
    while True:
        choice = click.prompt("[A] Register all  [S] Select  [N] Skip", type=str,
                              default="A").strip().lower()
        if choice in {"a", "all"}:
            return list(pending_names)
        if choice in {"n", "skip", "no"}:
            return []
        if choice in {"s", "select"}:
            while True:
                raw = click.prompt("Providers to register (comma-separated numbers or names)", type=str)
                picked = parse_selection(raw, pending_names)
                if picked is not None:
                    return picked
                click.echo("Invalid selection, try again.")
        click.echo("Please answer A, S or N.")


def prompt_subscription(subscriptions: List[Dict[str, Any]]) -> Dict[str, Any]:
    click.echo("Available subscriptions:")
    for i, s in enumerate(subscriptions, 1):
        default_mark = " (current)" if s.get("isDefault") else ""
        click.echo(f"  {i}. {s.get('name', '')} [{s.get('id', '')}]{default_mark}")
    default_idx = next((i for i, s in enumerate(subscriptions, 1) if s.get("isDefault")), 1)
    while True:
        idx = click.prompt("Subscription number", type=int, default=default_idx)
        if 1 <= idx <= len(subscriptions):
            return subscriptions[idx - 1]
        click.echo(f"Choose a number between 1 and {len(subscriptions)}.")


def confirm_login() -> bool:
    return click.confirm("Azure CLI is not signed in. Run 'az login' now?", default=True)
