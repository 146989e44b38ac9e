from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from threading import Event, Thread, current_thread

from . import ports
from .catalog import Catalog, CatalogEvent, CatalogSnapshot, Version
from .errors import BisketError
from .events import log_event
from .instance import AppInstance, InstanceState
from .runtime import InstancePool
from .settings import settings

InstanceFactory = Callable[[Version, int], AppInstance]


class Action(str, Enum):
    NOOP = "NoOp"
    CREATE = "Create"
    DESTROY = "Destroy"


@dataclass(frozen=True)
class PlannedAction:
    version: str  # version key, e.g. "v1.1.0" or "preview/feat-x"
    desired: InstanceState
    current: InstanceState
    action: Action
    target: Version | None = None


def desired_running(snapshot: CatalogSnapshot, preview_enabled: bool) -> set[str]:
    keys = {snapshot.latest.key} if snapshot.latest else set()
    if preview_enabled:
        keys |= snapshot.preview_keys()
    return keys


def plan(
    snapshot: CatalogSnapshot,
    live: Mapping[str, InstanceState],
    preview_enabled: bool = False,
) -> list[PlannedAction]:
    """Diff catalog state against live instance states.

    Considers every standard version, every preview (when previews are
    enabled) and every live instance; one action per version key.
    """
    want = desired_running(snapshot, preview_enabled)

    order: list[str] = [v.key for v in snapshot.standard]
    if preview_enabled:
        order += [v.key for v in snapshot.previews]
    order += list(live)
    seen: set[str] = set()

    out: list[PlannedAction] = []
    for key in order:
        if key in seen:
            continue
        seen.add(key)
        desired = InstanceState.RUNNING if key in want else InstanceState.STOPPED
        current = live.get(key, InstanceState.STOPPED)

        action = Action.NOOP
        if desired is InstanceState.RUNNING:
            # Pulling counts as on its way; a Stopped entry is replaced.
            if current is InstanceState.STOPPED:
                action = Action.CREATE
        elif key in live:
            # Includes reaping entries that already stopped by themselves.
            action = Action.DESTROY

        target = snapshot.find(key) if action is Action.CREATE else None
        out.append(PlannedAction(version=key, desired=desired, current=current, action=action, target=target))
    return out


class Reconciler:
    """Continuously reconciles the catalog's desired versions with live instances."""

    def __init__(
        self,
        catalog: Catalog,
        pool: InstancePool,
        factory: InstanceFactory,
        preview_enabled: bool = False,
        allocate_port: Callable[[], int] = ports.acquire,
        poll_interval_s: float = settings.poll_interval_s,
    ):
        self.catalog = catalog
        self.pool = pool
        self.factory = factory
        self.preview_enabled = preview_enabled
        self.allocate_port = allocate_port
        self.poll_interval_s = poll_interval_s
        self._stop = Event()
        self._wake = Event()
        self._thr: Thread | None = None

    # Loop ---------------------------------------------------------------
    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="bisket-reconciler", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop the loop and wait (up to *timeout*) for an in-flight pass to finish."""
        self._stop.set()
        self._wake.set()
        thr = self._thr
        if thr is not None and thr.is_alive() and thr is not current_thread():
            thr.join(timeout)

    def wake(self, event: CatalogEvent | None = None) -> None:
        """Schedule a pass soon; used as a catalog subscriber."""
        self._wake.set()

    def _loop(self) -> None:
        log_event("INFO", "Reconciler started", app=self.catalog.app_name)
        while not self._stop.is_set():
            woken = self._wake.wait(timeout=max(1, self.poll_interval_s))
            if self._stop.is_set():
                break
            self._wake.clear()
            try:
                # Periodic passes re-read the tags; wake-ups already did.
                self.run_pass(refresh=not woken)
            except Exception as e:
                log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}", app=self.catalog.app_name)
        log_event("INFO", "Reconciler stopped", app=self.catalog.app_name)

    # Passes -------------------------------------------------------------
    def run_pass(self, refresh: bool = True) -> list[PlannedAction]:
        if refresh:
            self.catalog.refresh()
        actions = self.reconcile()
        self.apply(actions)
        return actions

    def reconcile(self) -> list[PlannedAction]:
        return plan(self.catalog.snapshot(), self.pool.states(), self.preview_enabled)

    def apply(self, actions: Iterable[PlannedAction]) -> None:
        """Creates first, then destroys, so a new version is up before the old one goes."""
        actions = list(actions)
        for a in actions:
            if a.action is not Action.CREATE:
                continue
            try:
                self._create(a)
            except BisketError as e:
                log_event("ERROR", f"Create skipped: {e}", app=self.catalog.app_name, version=a.version)
        for a in actions:
            if a.action is Action.DESTROY:
                self._destroy(a)

    def _create(self, a: PlannedAction) -> None:
        if a.target is None:
            raise BisketError(f"Version not in catalog: {a.version}")
        port = self.allocate_port()
        inst = self.factory(a.target, port)
        if not self.pool.claim(inst):
            log_event("INFO", "Create skipped: instance already live", app=inst.name, version=a.version)
            return
        try:
            inst.start()
        except BisketError:
            self.pool.remove(a.version, inst)
            raise
        log_event("INFO", f"Created instance on port {port}", app=inst.name, version=a.version)

    def _destroy(self, a: PlannedAction) -> None:
        inst = self.pool.remove(a.version)
        if inst is None:
            return
        inst.stop()
        log_event("INFO", "Destroyed instance", app=inst.name, version=a.version)
