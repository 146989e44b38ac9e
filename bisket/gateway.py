from __future__ import annotations

from threading import Lock

from .errors import NoBackendAvailable
from .instance import AppInstance, InstanceState
from .runtime import InstancePool


class Router:
    """Pick the instance that serves inbound traffic.

    Strategy:
      1) Reuse the last instance routed to, if it is still Running and pooled
      2) Otherwise the first Running instance in pool insertion order,
         standard versions ahead of previews

    State is re-checked on every call; a cached instance that has stopped is
    never returned.
    """

    def __init__(self, pool: InstancePool):
        self.pool = pool
        self._lock = Lock()
        self._last: AppInstance | None = None

    @staticmethod
    def _routable(inst: AppInstance | None) -> bool:
        return inst is not None and inst.state is InstanceState.RUNNING

    def select(self, version: str | None = None) -> AppInstance:
        if version:
            # A bare name means the release; a preview of the same name is the fallback.
            inst = self.pool.get(version) or self.pool.get(f"preview/{version}")
            if not self._routable(inst):
                raise NoBackendAvailable(f"No running instance for version '{version}'.")
            return inst  # type: ignore[return-value]

        with self._lock:
            cached = self._last
        if self._routable(cached) and self.pool.get(cached.version_key) is cached:  # type: ignore[union-attr]
            return cached  # type: ignore[return-value]

        candidates = self.pool.list_instances()
        ordered = [i for i in candidates if not i.is_preview] + [i for i in candidates if i.is_preview]
        for inst in ordered:
            if self._routable(inst):
                with self._lock:
                    self._last = inst
                return inst

        with self._lock:
            self._last = None
        raise NoBackendAvailable("No backend available.")

    def invalidate(self, inst: AppInstance | None = None) -> None:
        with self._lock:
            if inst is None or self._last is inst:
                self._last = None
