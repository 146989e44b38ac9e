from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from bisket import events
from bisket.catalog import Catalog, Version
from bisket.errors import MaterializationFailed, NoBackendAvailable, SourceUnavailable
from bisket.instance import InstanceState
from bisket.reconciler import Reconciler
from bisket.runtime import InstancePool


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Isolated sqlite event journal per test."""
    monkeypatch.setattr(events, "DB_PATH", str(tmp_path / "events.db"))
    events.init_db()
    return events


class FakeSource:
    """In-memory version source."""

    def __init__(self, tags: list[str] | None = None):
        self.tags = list(tags or [])
        self.unavailable = False
        self.fail_tags: set[str] = set()
        self.materialized: list[str] = []

    def list_tags(self, repo_url: str) -> list[str]:
        if self.unavailable:
            raise SourceUnavailable("remote unreachable")
        return list(self.tags)

    def materialize(self, repo_url: str, tag: str, dest: Path) -> None:
        if tag in self.fail_tags:
            raise MaterializationFailed(f"Failed to clone {tag}")
        Path(dest).mkdir(parents=True, exist_ok=True)
        self.materialized.append(tag)


class StubInstance:
    """Process-free stand-in for AppInstance."""

    def __init__(self, version: Version, port: int, fail: Exception | None = None):
        self.name = "echo-app"
        self.version = version
        self.port = port
        self.fail = fail
        self.stopped = False
        self._state = InstanceState.PULLING

    @property
    def state(self) -> InstanceState:
        return self._state

    @property
    def version_name(self) -> str:
        return self.version.name

    @property
    def version_key(self) -> str:
        return self.version.key

    @property
    def is_preview(self) -> bool:
        return self.version.is_preview

    def start(self) -> None:
        if self.fail is not None:
            raise self.fail
        self._state = InstanceState.RUNNING

    def stop(self) -> None:
        self.stopped = True
        self._state = InstanceState.STOPPED

    def crash(self) -> None:
        self._state = InstanceState.STOPPED

    def describe(self) -> str:
        return f"{self.name}({self.version.key}):{self.port} [{self._state.value}]"

    def proxy_target(self) -> str:
        if self._state is not InstanceState.RUNNING:
            raise NoBackendAvailable(f"{self.describe()} is not running")
        return f"http://127.0.0.1:{self.port}"


@pytest.fixture
def fake_source():
    return FakeSource(["@v1.0.0", "@v1.1.0", "@preview/feat-x"])


@pytest.fixture
def stub_instance():
    return StubInstance


@pytest.fixture
def catalog(fake_source):
    return Catalog(fake_source, "https://example.com/acme/echo-app.git", app_name="echo-app")


@pytest.fixture
def make_reconciler(catalog):
    """Build a reconciler over stub instances; ``failures`` maps version name -> exception raised by start()."""

    def _make(preview_enabled: bool = True, failures: dict[str, Exception] | None = None):
        failures = failures or {}
        ports = itertools.count(9100)
        pool = InstancePool()
        created: list[StubInstance] = []

        def factory(version: Version, port: int) -> StubInstance:
            inst = StubInstance(version, port, fail=failures.get(version.name))
            created.append(inst)
            return inst

        rec = Reconciler(catalog, pool, factory, preview_enabled=preview_enabled, allocate_port=lambda: next(ports))
        rec.created = created  # type: ignore[attr-defined]
        return rec

    return _make
