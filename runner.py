# runner.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import click

import connectivity
from azure_preflight import AccountContext, AzurePreflightError
from collector import CONNECTIVITY_CHECK, ERROR, CheckResult, FactCollector
from devices import Target, TargetLog
from providers import ProviderRegistrar, pending
from settings import LOG_DIR, required_providers
from summary import ResultAggregator, RunSummary, build_summary

log = logging.getLogger(__name__)


class NoTargetsError(ValueError): pass


@dataclass
class RunContext:
    """Everything one run accumulates; handed to each component instead of globals."""
    auth_success: bool = False
    account: Optional[AccountContext] = None
    providers_checked: bool = False
    provider_states: Dict[str, str] = field(default_factory=dict)
    aggregator: ResultAggregator = field(default_factory=ResultAggregator)

    def summary(self) -> RunSummary:
        states = self.provider_states if self.providers_checked else None
        return build_summary(self.aggregator, self.auth_success, states)


class PrereqRun:
    """
    Drives one prerequisite run:
      1. authenticate once (failure only disables provider checks),
      2. check + optionally register resource providers once,
      3. check every device in order, one at a time,
    and leaves the results in ctx.aggregator for the report.
    """

    def __init__(
        self,
        ctx: RunContext,
        authenticate: Optional[Callable[[], AccountContext]] = None,
        registrar_factory: Optional[Callable[[AccountContext], ProviderRegistrar]] = None,
        choose_providers: Optional[Callable[[List[str]], List[str]]] = None,
        collector: Optional[FactCollector] = None,
        probe: Optional[Callable[[Target], bool]] = None,
        session=None,
        providers: Optional[List[str]] = None,
        log_dir: Path = Path(LOG_DIR),
        echo: Callable[[str], None] = click.echo,
    ):
        self.ctx = ctx
        self.authenticate = authenticate
        self.registrar_factory = registrar_factory
        self.choose_providers = choose_providers or (lambda names: [])
        self.collector = collector or FactCollector()
        self.probe = probe or connectivity.probe
        self.session = session or connectivity.session
        self.providers = providers if providers is not None else required_providers()
        self.log_dir = Path(log_dir)
        self.echo = echo

    # ---------------------- once per run ----------------------
    def prepare(self) -> None:
        if self.authenticate is None:
            self.echo("⚠️ Azure login skipped; resource providers will not be checked.")
            return
        try:
            self.ctx.account = self.authenticate()
            self.ctx.auth_success = True
        except AzurePreflightError as e:
            self.ctx.auth_success = False
            self.echo(f"❌ Azure authentication failed: {e}")
            self.echo("   Resource provider checks skipped.")
            return
        self.echo(f"✅ Signed in; subscription {self.ctx.account.subscription_name} "
                  f"({self.ctx.account.subscription_id})")

        if self.registrar_factory is None:
            return
        try:
            self._prepare_providers()
        except AzurePreflightError as e:
            self.echo(f"❌ Resource provider check failed: {e}")

    def _prepare_providers(self) -> None:
        registrar = self.registrar_factory(self.ctx.account)
        states = registrar.check_registrations(self.ctx, self.providers)
        for name, st in states.items():
            self.echo(f"   {name}: {st}")
        todo = pending(states)
        if not todo:
            return
        chosen = [n for n in self.choose_providers(todo) if n in states]
        if not chosen:
            self.echo("⚠️ Provider registration skipped.")
            return
        self.echo(f"Registering {len(chosen)} provider(s): {', '.join(chosen)}")
        final = registrar.register_parallel(chosen)
        self.ctx.provider_states.update(final)
        for name in pending(final):
            self.echo(f"⚠️ {name} still {final[name]} (registration continues in the background)")

    # ---------------------- per device ----------------------
    def _open_log(self, target: Target) -> Optional[TargetLog]:
        tlog = TargetLog(target.name, self.log_dir)
        try:
            tlog.start()
        except OSError as e:
            self.echo(f"⚠️ Cannot write log for {target.name} ({tlog.path}): {e}")
            return None
        return tlog

    def _record(self, tlog: Optional[TargetLog], result: CheckResult) -> None:
        self.ctx.aggregator.record(result)
        if tlog is None:
            return
        try:
            tlog.write(result)
        except OSError as e:
            log.warning("log write failed for %s: %s", result.target, e)

    def check_target(self, target: Target) -> List[CheckResult]:
        tlog = self._open_log(target)
        target.reachable = self.probe(target)
        if not target.reachable:
            res = CheckResult(target.name, CONNECTIVITY_CHECK, ERROR, f"{target.name} is not reachable")
            self._record(tlog, res)
            return [res]

        with self.session(target) as sess:
            results = self.collector.collect(target, sess.executor, sess.error)
        for r in results:
            self._record(tlog, r)
        return results

    def run(self, targets: List[Target]) -> RunSummary:
        if not targets:
            raise NoTargetsError("No devices to check: the input list is empty.")
        self.prepare()
        for i, target in enumerate(targets, 1):
            self.echo(f"[{i}/{len(targets)}] Checking {target.name} ...")
            results = self.check_target(target)
            n_err = sum(1 for r in results if r.outcome == ERROR)
            log.debug("%s: %d result(s), %d error(s)", target.name, len(results), n_err)
        return self.ctx.summary()
