from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable
from pathlib import Path

import uvicorn

from . import events, ports
from .admin import create_admin_app
from .catalog import Catalog, Version
from .config import Config
from .events import log_event
from .gateway import Router
from .instance import AppInstance
from .proxy import create_proxy_app
from .reconciler import PlannedAction, Reconciler
from .runtime import InstancePool
from .settings import settings
from .source import GitVersionSource, VersionSource

logger = logging.getLogger(__name__)

UVICORN_LEVELS = {"critical", "error", "warning", "info", "debug", "trace"}


class Controller:
    """Owns the catalog, the instance pool, the reconciler and both HTTP surfaces."""

    def __init__(
        self,
        config: Config,
        source: VersionSource | None = None,
        work_dir: str | Path | None = None,
        allocate_port: Callable[[], int] = ports.acquire,
        poll_interval_s: float = settings.poll_interval_s,
    ):
        self.config = config
        self.work_dir = Path(work_dir or settings.work_dir).resolve()
        self.source = source if source is not None else GitVersionSource(self.work_dir, api_key=config.api_key)
        self.catalog = Catalog(self.source, config.repo_url, app_name=config.app_name)
        self.pool = InstancePool()
        self.router = Router(self.pool)
        self.reconciler = Reconciler(
            self.catalog,
            self.pool,
            self._new_instance,
            preview_enabled=config.preview,
            allocate_port=allocate_port,
            poll_interval_s=poll_interval_s,
        )
        self.catalog.subscribe(self.reconciler.wake)

    def _new_instance(self, version: Version, port: int) -> AppInstance:
        return AppInstance(
            name=self.config.app_name,
            version=version,
            port=port,
            repo_url=self.config.repo_url,
            run_commands=self.config.run,
            source=self.source,
            work_dir=self.work_dir,
        )

    def refresh(self) -> list[PlannedAction]:
        """Re-read tags, then run one reconciliation pass."""
        return self.reconciler.run_pass(refresh=True)

    def start(self) -> None:
        events.init_db()
        log_event("INFO", f"Initializing repository: {self.config.repo_url}", app=self.config.app_name)
        self.reconciler.run_pass(refresh=True)
        self.reconciler.start()

    def shutdown(self) -> None:
        self.reconciler.stop()
        for inst in self.pool.clear():
            inst.stop()
        log_event("INFO", "Controller stopped", app=self.config.app_name)

    # Serving ------------------------------------------------------------
    def _bind(self, port: int) -> socket.socket:
        try:
            return socket.create_server((settings.bind_host, int(port)))
        except OSError as e:
            logger.critical("Cannot bind %s:%s: %s", settings.bind_host, port, e)
            raise SystemExit(1) from e

    def serve(self) -> None:
        proxy_sock = self._bind(self.config.port)
        admin_sock = self._bind(self.config.admin_port)
        self.start()
        logger.info("Proxy listening on port %s, admin on port %s", self.config.port, self.config.admin_port)
        try:
            asyncio.run(self._serve(proxy_sock, admin_sock))
        finally:
            self.shutdown()

    async def _serve(self, proxy_sock: socket.socket, admin_sock: socket.socket) -> None:
        level = settings.log_level.lower()
        if level not in UVICORN_LEVELS:
            level = "warning" if level == "warn" else "info"
        servers = [
            (uvicorn.Server(uvicorn.Config(create_proxy_app(self.router), log_level=level)), proxy_sock),
            (uvicorn.Server(uvicorn.Config(create_admin_app(self), log_level=level)), admin_sock),
        ]
        tasks = [asyncio.create_task(server.serve(sockets=[sock])) for server, sock in servers]
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        # One server exiting (signal or error) takes the other one down.
        for server, _ in servers:
            server.should_exit = True
        await asyncio.gather(*pending)
