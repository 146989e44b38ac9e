from __future__ import annotations

from collections import OrderedDict
from threading import Lock

from .instance import AppInstance, InstanceState


class InstancePool:
    """Live instances keyed by version key, in insertion order.

    Mutated by the reconciler, read by the router and the admin API. Every
    operation is atomic on its own; callers get copies, never the mapping.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._instances: OrderedDict[str, AppInstance] = OrderedDict()

    def __len__(self) -> int:
        with self.lock:
            return len(self._instances)

    def __contains__(self, name: object) -> bool:
        with self.lock:
            return name in self._instances

    def get(self, name: str) -> AppInstance | None:
        with self.lock:
            return self._instances.get(name)

    def list_instances(self) -> list[AppInstance]:
        with self.lock:
            return list(self._instances.values())

    def states(self) -> dict[str, InstanceState]:
        with self.lock:
            items = list(self._instances.items())
        return {name: inst.state for name, inst in items}

    def claim(self, inst: AppInstance) -> bool:
        """Register *inst* under its version key.

        A Stopped entry for the same version is replaced (and moves to the end
        of the insertion order); any other existing entry wins and False is
        returned.
        """
        name = inst.version_key
        with self.lock:
            cur = self._instances.get(name)
            if cur is not None and cur.state is not InstanceState.STOPPED:
                return False
            self._instances.pop(name, None)
            self._instances[name] = inst
            return True

    def remove(self, name: str, inst: AppInstance | None = None) -> AppInstance | None:
        """Remove the entry for *name*; if *inst* is given only when it is that exact instance."""
        with self.lock:
            cur = self._instances.get(name)
            if cur is None or (inst is not None and cur is not inst):
                return None
            del self._instances[name]
            return cur

    def clear(self) -> list[AppInstance]:
        with self.lock:
            out = list(self._instances.values())
            self._instances.clear()
            return out
