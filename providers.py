# providers.py
from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

import requests

from settings import ARM_BASE_URL, POLL_INTERVAL_S, REGISTRATION_TIMEOUT_S

if TYPE_CHECKING:
    from runner import RunContext

log = logging.getLogger(__name__)

PROVIDER_API_VERSION = "2021-04-01"

# ---------------------- Registration states ----------------------
NOT_REGISTERED = "NotRegistered"
REGISTERING = "Registering"
REGISTERED = "Registered"
NOT_FOUND = "NotFound"

_STATE_ALIASES = {
    "registered": REGISTERED,
    "registering": REGISTERING,
    "notregistered": NOT_REGISTERED,
    "unregistered": NOT_REGISTERED,
    "unregistering": NOT_REGISTERED,
    "notfound": NOT_FOUND,
}


class ArmRequestError(RuntimeError): pass


def normalize_state(raw: Optional[str]) -> str:
    key = str(raw or "").replace(" ", "").strip().lower()
    return _STATE_ALIASES.get(key, NOT_REGISTERED)


def pending(states: Dict[str, str]) -> List[str]:
    """Provider names whose last observed state is not Registered (input order)."""
    return [name for name, st in states.items() if st != REGISTERED]


# ---------------------- ARM client ----------------------
class ArmProviderClient:
    """Thin ARM REST wrapper for resource-provider registration."""

    def __init__(self, subscription_id: str, token_provider: Callable[[], str],
                 base_url: str = ARM_BASE_URL, timeout_s: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.subscription_id = subscription_id
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def _url(self, namespace: str, action: str = "") -> str:
        url = f"{self.base_url}/subscriptions/{self.subscription_id}/providers/{namespace}"
        if action:
            url += f"/{action}"
        return f"{url}?api-version={PROVIDER_API_VERSION}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token_provider()}", "Content-Type": "application/json"}

    def get_state(self, namespace: str) -> str:
        url = self._url(namespace)
        log.debug("GET %s", url)
        try:
            resp = self.session.get(url, headers=self._headers(), timeout=self.timeout_s)
        except requests.RequestException as e:
            raise ArmRequestError(f"{namespace}: {e}") from e
        if resp.status_code == 404:
            return NOT_FOUND
        if resp.status_code != 200:
            raise ArmRequestError(f"{namespace}: HTTP {resp.status_code} {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError as e:
            raise ArmRequestError(f"{namespace}: response is not JSON ({e})") from e
        if not isinstance(body, dict):
            raise ArmRequestError(f"{namespace}: unexpected response body")
        return normalize_state(body.get("registrationState"))

    def register(self, namespace: str) -> None:
        url = self._url(namespace, "register")
        log.debug("POST %s", url)
        try:
            resp = self.session.post(url, headers=self._headers(), timeout=self.timeout_s)
        except requests.RequestException as e:
            raise ArmRequestError(f"{namespace}: {e}") from e
        if resp.status_code not in (200, 202):
            raise ArmRequestError(f"{namespace}: register returned HTTP {resp.status_code} {resp.text[:200]}")


# ---------------------- Registrar ----------------------
def _default_progress(name: str, elapsed: float, state: str) -> None:
    log.info("%s: %s after %.0fs", name, state, elapsed)


class ProviderRegistrar:
    """
    Checks and registers resource providers against one subscription.

    Registration is fire-then-poll: every register request is sent back to back,
    then a single loop samples all pending providers each cycle, sleeping
    poll_interval between samples, until all are Registered or timeout elapses.
    A provider still Registering at the deadline is returned as such.
    """

    def __init__(self, client: ArmProviderClient,
                 poll_interval: float = POLL_INTERVAL_S,
                 timeout: float = REGISTRATION_TIMEOUT_S,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 progress: Optional[Callable[[str, float, str], None]] = None):
        self.client = client
        self.poll_interval = max(0.0, float(poll_interval))
        self.timeout = max(0.0, float(timeout))
        self.sleep = sleep
        self.clock = clock
        self.progress = progress or _default_progress

    @property
    def max_samples(self) -> int:
        if self.poll_interval <= 0:
            return 1
        return int(self.timeout // self.poll_interval) + 1

    def check_registrations(self, ctx: "RunContext", names: Iterable[str]) -> Dict[str, str]:
        if ctx.providers_checked:
            return ctx.provider_states
        if not ctx.auth_success:
            raise RuntimeError("Provider registration cannot be checked before authentication.")
        states: Dict[str, str] = {}
        for name in names:
            try:
                states[name] = self.client.get_state(name)
            except ArmRequestError as e:
                log.warning("could not read registration state: %s", e)
                states[name] = NOT_FOUND
        ctx.provider_states = states
        ctx.providers_checked = True
        return states

    def register_parallel(self, names: Iterable[str]) -> Dict[str, str]:
        names = list(dict.fromkeys(names))
        if not names:
            return {}
        states: Dict[str, str] = {}
        for name in names:
            try:
                self.client.register(name)
                states[name] = REGISTERING
            except ArmRequestError as e:
                log.warning("register request failed: %s", e)
                states[name] = NOT_REGISTERED
        return self._poll(states, report=False)

    def register_one(self, name: str) -> str:
        try:
            self.client.register(name)
        except ArmRequestError as e:
            log.warning("register request failed: %s", e)
            return NOT_REGISTERED
        return self._poll({name: REGISTERING}, report=True)[name]

    def _poll(self, states: Dict[str, str], report: bool) -> Dict[str, str]:
        start = self.clock()
        waiting = list(states)
        for sample in range(self.max_samples):
            for name in list(waiting):
                try:
                    states[name] = self.client.get_state(name)
                except ArmRequestError as e:
                    log.debug("poll failed: %s", e)
                    continue
                if states[name] == REGISTERED:
                    waiting.remove(name)
                if report:
                    self.progress(name, self.clock() - start, states[name])
            if not waiting:
                break
            if sample + 1 >= self.max_samples or self.clock() - start + self.poll_interval > self.timeout:
                break
            self.sleep(self.poll_interval)
        return states
