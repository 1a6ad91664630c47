from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

import click
import pandas as pd

from arc_onboarding import (
    AnsibleNotFoundError,
    ArcOnboardingSettings,
    KeyExistsError,
    create_service_principal,
    generate_control_node_key,
    run_playbook,
    write_extra_vars,
    write_inventory,
    write_playbook,
)
from azure_preflight import AccountContext, AzurePreflightError, CliTokenProvider, authenticate
from devices import read_targets, write_sample_file
from prompts import (
    confirm_consent,
    confirm_login,
    prompt_input_path,
    prompt_registration_choice,
    prompt_subscription,
)
from providers import REGISTERED, ArmProviderClient, ProviderRegistrar, pending
from runner import NoTargetsError, PrereqRun, RunContext
from settings import (
    DEFAULT_INPUT_FILE,
    LOG_DIR,
    POLL_INTERVAL_S,
    REGISTRATION_TIMEOUT_S,
    required_providers,
)
from summary import build_report, write_results_csv


# ---------------------- Output helpers (date/timestamped folders) ----------------------
def _now_date_time():
    import datetime as _dt
    d = _dt.datetime.now()
    return d.strftime("%Y-%m-%d"), d.strftime("%H%M%S")


def _new_run_dir(base: Path = Path("output")) -> Path:
    date_str, time_str = _now_date_time()
    p = base / date_str / time_str
    p.mkdir(parents=True, exist_ok=True)
    return p


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------- Azure wiring ----------------------
def _authenticate_interactive() -> AccountContext:
    return authenticate(interactive=True, confirm_login=confirm_login,
                        choose_subscription=prompt_subscription)


def _echo_progress(name: str, elapsed: float, state: str) -> None:
    click.echo(f"   {name}: {state} ({elapsed:.0f}s)")


def _registrar_factory(poll_interval: float, timeout: float,
                       progress: Optional[Callable[[str, float, str], None]] = None):
    def factory(account: AccountContext) -> ProviderRegistrar:
        client = ArmProviderClient(account.subscription_id, CliTokenProvider())
        return ProviderRegistrar(client, poll_interval=poll_interval, timeout=timeout, progress=progress)
    return factory


def _registration_chooser(mode: Optional[str]) -> Callable[[List[str]], List[str]]:
    mode = (mode or "").lower()
    if mode == "all":
        return lambda names: list(names)
    if mode == "skip":
        return lambda names: []
    return prompt_registration_choice


def _load_targets(path: Path):
    try:
        return read_targets(path)
    except (UnicodeDecodeError, OSError) as e:
        click.echo(f"ERROR: Could not read {path}: {e}", err=True)
        click.echo("Save the file as UTF-8 or UTF-16 text, one server name per line.", err=True)
        sys.exit(2)


def _resolve_input(in_path: Optional[str]) -> Optional[Path]:
    """
    Returns the devices file to use, or None when a sample file was written
    (or the user gave up) and the run should stop here.
    """
    if not in_path:
        path, created = prompt_input_path(DEFAULT_INPUT_FILE)
        return None if (path is None or created) else path

    p = Path(in_path)
    if p.is_file():
        return p
    if p.suffix.lower() == ".txt" and not p.exists():
        if click.confirm(f"{p} does not exist. Create a sample file there?", default=True):
            write_sample_file(p)
            click.echo(f"Wrote sample devices file → {p}")
            click.echo("Edit it with your server names and run the check again.")
            return None
    click.echo(f"ERROR: Input file not found: {p}", err=True)
    sys.exit(2)


# ---------------------- CLI root ----------------------
@click.group()
def cli():
    """Azure Arc onboarding toolkit CLI."""
    pass


# ---------------------- check ----------------------
@cli.command(name="check")
@click.option("--in", "in_path", default=None, help="Devices file, one server name per line (prompted if omitted).")
@click.option("--yes", "-y", is_flag=True, help="Skip the consent prompt.")
@click.option("--skip-login", is_flag=True, help="Do not sign in to Azure; resource providers are not checked.")
@click.option("--register", "register_mode", type=click.Choice(["all", "select", "skip"], case_sensitive=False),
              default=None, help="What to do with unregistered providers (prompted if omitted).")
@click.option("--log-dir", default=LOG_DIR, show_default=True, help="Folder for per-device log files.")
@click.option("--export", "export_path", default=None,
              help="Also write all results to this CSV (use '-' for output/<date>/<time>/results.csv).")
@click.option("--timeout", type=float, default=REGISTRATION_TIMEOUT_S, show_default=True,
              help="Max seconds to wait for provider registration.")
@click.option("--poll-interval", type=float, default=POLL_INTERVAL_S, show_default=True,
              help="Seconds between registration polls.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def check_cmd(in_path, yes, skip_login, register_mode, log_dir, export_path, timeout, poll_interval, verbose):
    """
    Run the Azure Arc prerequisite checks on every server in the devices file:
      - signs in once and checks/registers the required resource providers,
      - pings each server, opens one remote session and runs eight checks,
      - writes one log per server and prints a consolidated report.
    """
    _configure_logging(verbose)
    if not yes and not confirm_consent():
        click.echo("Cancelled.")
        return

    devices_file = _resolve_input(in_path)
    if devices_file is None:
        return

    targets = _load_targets(devices_file)
    if not targets:
        click.echo(f"ERROR: No server names found in {devices_file}.", err=True)
        sys.exit(2)
    click.echo(f"Loaded {len(targets)} device(s) from {devices_file}")

    ctx = RunContext()
    run = PrereqRun(
        ctx,
        authenticate=None if skip_login else _authenticate_interactive,
        registrar_factory=_registrar_factory(poll_interval, timeout),
        choose_providers=_registration_chooser(register_mode),
        log_dir=Path(log_dir),
    )
    try:
        summary = run.run(targets)
    except NoTargetsError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(2)

    click.echo(build_report(ctx.aggregator, summary))
    click.echo(f"\nPer-device logs → {Path(log_dir)}")

    if export_path:
        out = _new_run_dir() / "results.csv" if export_path == "-" else Path(export_path)
        write_results_csv(ctx.aggregator, out, summary)
        click.echo(f"Wrote results → {out}")


# ---------------------- providers ----------------------
@cli.command(name="providers")
def providers_cmd():
    """Show the registration state of the required resource providers."""
    try:
        account = _authenticate_interactive()
    except AzurePreflightError as e:
        click.echo(f"❌ Azure preflight failed: {e}", err=True)
        sys.exit(2)
    ctx = RunContext(auth_success=True, account=account)
    registrar = _registrar_factory(POLL_INTERVAL_S, REGISTRATION_TIMEOUT_S)(account)
    try:
        states = registrar.check_registrations(ctx, required_providers())
    except AzurePreflightError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(2)
    df = pd.DataFrame([{"Provider": k, "State": v} for k, v in states.items()], columns=["Provider", "State"])
    click.echo(f"Subscription: {account.subscription_name} ({account.subscription_id})")
    click.echo(df.to_string(index=False))
    waiting = pending(states)
    if waiting:
        click.echo(f"⚠️ Not registered: {', '.join(waiting)}. Run 'register-providers' to register them.")


# ---------------------- register-providers ----------------------
@cli.command(name="register-providers")
@click.option("--provider", "provider_names", multiple=True,
              help="Provider namespace to register (repeatable). Default: all required providers.")
@click.option("--timeout", type=float, default=REGISTRATION_TIMEOUT_S, show_default=True)
@click.option("--poll-interval", type=float, default=POLL_INTERVAL_S, show_default=True)
def register_providers_cmd(provider_names, timeout, poll_interval):
    """Register resource providers and wait (bounded) until they report Registered."""
    try:
        account = _authenticate_interactive()
    except AzurePreflightError as e:
        click.echo(f"❌ Azure preflight failed: {e}", err=True)
        sys.exit(2)
    names = list(provider_names) or required_providers()
    registrar = _registrar_factory(poll_interval, timeout, progress=_echo_progress)(account)

    try:
        if len(names) == 1:
            click.echo(f"Registering {names[0]} ...")
            states = {names[0]: registrar.register_one(names[0])}
        else:
            click.echo(f"Registering {len(names)} providers ...")
            states = registrar.register_parallel(names)
    except AzurePreflightError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(2)

    for name, st in states.items():
        marker = "✅" if st == REGISTERED else "⚠️"
        click.echo(f"{marker} {name}: {st}")
    if pending(states):
        click.echo("Registration is still in progress for some providers; check again later with 'providers'.")


# ---------------------- sample ----------------------
@cli.command(name="sample")
@click.option("--out", "out_path", default=DEFAULT_INPUT_FILE, show_default=True)
@click.option("--force", is_flag=True, help="Overwrite an existing file.")
def sample_cmd(out_path, force):
    """Write a devices file with five placeholder server names."""
    p = Path(out_path)
    if p.exists() and not force:
        click.echo(f"ERROR: {p} already exists (use --force to overwrite).", err=True)
        sys.exit(2)
    write_sample_file(p)
    click.echo(f"Wrote sample devices file → {p}")


# ---------------------- arc-ansible ----------------------
@cli.command(name="arc-ansible")
@click.option("--in", "in_path", required=True, help="Devices file with the Linux servers to onboard.")
@click.option("--user", default=None, help="SSH user Ansible connects as.")
@click.option("--resource-group", required=True, help="Resource group for the Arc machines.")
@click.option("--location", required=True, help="Azure region, e.g. eastus.")
@click.option("--sp-id", default=None, envvar="ARC_SP_ID", help="Service principal (app) id.")
@click.option("--sp-secret", default=None, envvar="ARC_SP_SECRET", help="Service principal secret.")
@click.option("--create-sp", "create_sp_name", default=None,
              help="Create a service principal with this name instead of passing --sp-id/--sp-secret.")
@click.option("--tenant-id", default=None, help="Defaults to the signed-in tenant.")
@click.option("--subscription-id", default=None, help="Defaults to the selected subscription.")
@click.option("--work-dir", default=None, help="Where to write inventory/vars/playbook (default: output/<date>/<time>).")
@click.option("--dry-run", is_flag=True, help="Write the Ansible files but do not run the playbook.")
def arc_ansible_cmd(in_path, user, resource_group, location, sp_id, sp_secret, create_sp_name,
                    tenant_id, subscription_id, work_dir, dry_run):
    """Onboard Linux servers to Azure Arc with Ansible."""
    p = Path(in_path)
    if not p.is_file():
        click.echo(f"ERROR: Input file not found: {p}", err=True)
        sys.exit(2)
    targets = _load_targets(p)
    if not targets:
        click.echo(f"ERROR: No server names found in {p}.", err=True)
        sys.exit(2)

    try:
        if not (tenant_id and subscription_id) or create_sp_name:
            account = _authenticate_interactive()
            tenant_id = tenant_id or account.tenant_id
            subscription_id = subscription_id or account.subscription_id
        if create_sp_name:
            sp_id, sp_secret, sp_tenant = create_service_principal(create_sp_name, subscription_id, resource_group)
            tenant_id = sp_tenant or tenant_id
            click.echo(f"✅ Created service principal {create_sp_name} ({sp_id})")
    except AzurePreflightError as e:
        click.echo(f"❌ Azure preflight failed: {e}", err=True)
        sys.exit(2)

    if not sp_id:
        sp_id = click.prompt("Service principal id", type=str).strip()
    if not sp_secret:
        sp_secret = click.prompt("Service principal secret", type=str, hide_input=True).strip()

    settings = ArcOnboardingSettings(
        service_principal_id=sp_id,
        service_principal_secret=sp_secret,
        resource_group=resource_group,
        tenant_id=tenant_id or "",
        subscription_id=subscription_id or "",
        location=location,
    )
    missing = settings.missing()
    if missing:
        click.echo(f"ERROR: Missing onboarding settings: {', '.join(missing)}", err=True)
        sys.exit(2)

    run_dir = Path(work_dir) if work_dir else _new_run_dir()
    inventory = write_inventory(targets, run_dir / "inventory.ini", user=user)
    extra_vars = write_extra_vars(settings, run_dir / "arc_vars.json")
    playbook = write_playbook(run_dir / "config_azurearc.yml")
    click.echo(f"Wrote inventory → {inventory}")
    click.echo(f"Wrote variables → {extra_vars}")
    click.echo(f"Wrote playbook  → {playbook}")
    if dry_run:
        click.echo("Dry run: playbook not executed.")
        return

    try:
        rc = run_playbook(inventory, extra_vars, playbook)
    except AnsibleNotFoundError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(2)
    if rc != 0:
        click.echo(f"❌ ansible-playbook exited with {rc}", err=True)
        sys.exit(rc)
    click.echo(f"✅ Onboarding playbook finished for {len(targets)} server(s).")


# ---------------------- generate-keys ----------------------
@cli.command(name="generate-keys")
@click.option("--key-path", default="~/.ssh/ControlNodeKey", show_default=True)
@click.option("--comment", default="ControlNode", show_default=True)
@click.option("--ssh-config", default="~/.ssh/config", show_default=True)
def generate_keys_cmd(key_path, comment, ssh_config):
    """Create the Ansible control node key pair and register it in the ssh config."""
    try:
        key = generate_control_node_key(Path(key_path), comment=comment, ssh_config=Path(ssh_config))
    except (KeyExistsError, FileNotFoundError, RuntimeError) as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(2)
    click.echo(f"Wrote key pair → {key} / {key}.pub")
    click.echo(f"Copy {key}.pub to each managed server's ~/.ssh/authorized_keys (ssh-copy-id -i {key}.pub <host>).")


# ---------------------- entry ----------------------
if __name__ == "__main__":
    cli()
