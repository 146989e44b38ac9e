"""Supervised application instances.

One :class:`AppInstance` runs one version of the application: it materializes
the version's tree, then runs the configured commands one after another in a
background thread. State only moves forward: Pulling -> Running -> Stopped.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
from collections.abc import Sequence
from enum import Enum
from pathlib import Path
from threading import Event, Lock, Thread
from typing import IO
from urllib.parse import quote

from .catalog import Version
from .errors import BisketError, CommandFailed, MaterializationFailed, NoBackendAvailable
from .events import log_event, utc_now
from .ports import LOOPBACK
from .source import VersionSource

logger = logging.getLogger(__name__)
app_logger = logging.getLogger("bisket.app")

PORT_ENV = "BISKET_PORT"
VERSION_ENV = "BISKET_VERSION"


class InstanceState(str, Enum):
    PULLING = "Pulling"
    RUNNING = "Running"
    STOPPED = "Stopped"


def _pump(stream: IO[str], level: int, app: str, version: str) -> None:
    """Re-emit every line of a child's output stream as a log record."""
    try:
        for line in iter(stream.readline, ""):
            app_logger.log(level, "[%s/%s] %s", app, version, line.rstrip("\n"), extra={"app": app, "version": version})
    finally:
        stream.close()


class AppInstance:
    def __init__(
        self,
        name: str,
        version: Version,
        port: int,
        repo_url: str,
        run_commands: Sequence[str],
        source: VersionSource,
        work_dir: Path,
    ):
        self.name = name
        self.version = version
        self.port = int(port)
        self.repo_url = repo_url
        self.run_commands = list(run_commands)
        self.source = source
        self.work_dir = Path(work_dir)
        self.created_at = utc_now()

        self._lock = Lock()
        self._state = InstanceState.PULLING
        self._started = False
        self._stop_requested = False
        self._proc: subprocess.Popen[str] | None = None
        self._thread: Thread | None = None
        self._done = Event()
        self._result: BisketError | None = None

    def __repr__(self) -> str:
        return f"<AppInstance {self.describe()}>"

    @property
    def state(self) -> InstanceState:
        with self._lock:
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

    @property
    def checkout_dir(self) -> Path:
        # One flat directory per key; "/" in names is escaped.
        return self.work_dir / quote(self.version.key, safe="")

    def describe(self) -> str:
        return f"{self.name}({self.version.key}):{self.port} [{self.state.value}]"

    def _event(self, level: str, message: str) -> None:
        log_event(level, message, app=self.name, version=self.version.key)

    # ------------------------------------------------------------------
    def start(self) -> None:
        """Materialize the version and launch the command sequence.

        Blocks while the tree is cloned/pulled; raises MaterializationFailed
        if that fails (the instance then stays in Pulling and
        :meth:`wait` returns the error). The commands run
        on a background thread.
        """
        with self._lock:
            if self._started:
                raise BisketError(f"Instance {self.describe()} already started")
            self._started = True

        self._event("INFO", f"Pulling version: {self.version.tag}")
        try:
            self.source.materialize(self.repo_url, self.version.tag, self.checkout_dir)
        except MaterializationFailed as e:
            self._pull_failed(e)
            raise
        except OSError as e:
            err = MaterializationFailed(str(e))
            self._pull_failed(err)
            raise err from e

        with self._lock:
            stopped_while_pulling = self._state is InstanceState.STOPPED
            if not stopped_while_pulling:
                self._state = InstanceState.RUNNING
        if stopped_while_pulling:
            self._finish(None)
            return

        self._event("INFO", f"Running {self.name}/{self.version.name} on {self.port}")
        self._thread = Thread(target=self._supervise, name=f"bisket-{self.version.name}", daemon=True)
        self._thread.start()

    def _pull_failed(self, err: MaterializationFailed) -> None:
        self._event("ERROR", f"Error pulling version: {err}")
        with self._lock:
            self._result = err
        self._done.set()

    def _supervise(self) -> None:
        env = os.environ.copy()
        env[PORT_ENV] = str(self.port)
        env[VERSION_ENV] = self.version.name

        result: CommandFailed | None = None
        for line in self.run_commands:
            with self._lock:
                if self._stop_requested:
                    break
            app_logger.debug("[%s/%s] Running command: %s", self.name, self.version.name, line)
            try:
                proc = subprocess.Popen(
                    ["sh", "-c", line],
                    cwd=self.checkout_dir,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    start_new_session=True,
                )
            except OSError as e:
                result = CommandFailed(line, None, str(e))
                break

            with self._lock:
                self._proc = proc
                interrupt_now = self._stop_requested
            if interrupt_now:
                self._interrupt(proc)

            pumps = [
                Thread(target=_pump, args=(proc.stdout, logging.INFO, self.name, self.version.name), daemon=True),
                Thread(target=_pump, args=(proc.stderr, logging.ERROR, self.name, self.version.name), daemon=True),
            ]
            for t in pumps:
                t.start()
            rc = proc.wait()
            for t in pumps:
                t.join()

            with self._lock:
                self._proc = None
                stopped = self._stop_requested
            if stopped:
                break
            if rc != 0:
                result = CommandFailed(line, rc)
                break

        self._finish(result)

    def _finish(self, result: CommandFailed | None) -> None:
        with self._lock:
            self._state = InstanceState.STOPPED
            self._result = result
        if result is not None:
            self._event("ERROR", f"Error running command: {result}")
        else:
            self._event("INFO", "Server stopped")
        self._done.set()

    @staticmethod
    def _interrupt(proc: subprocess.Popen[str]) -> None:
        if proc.poll() is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGINT)
        except ProcessLookupError:
            return
        except OSError as e:
            logger.warning("Error stopping process %s: %s", proc.pid, e)

    def stop(self) -> None:
        """Interrupt the running command and mark the instance Stopped.

        Does not wait for the process to exit. Safe to call more than once and
        concurrently with the supervision thread finishing on its own.
        """
        with self._lock:
            if self._stop_requested:
                return
            self._stop_requested = True
            proc = self._proc
            was = self._state
            self._state = InstanceState.STOPPED
        if proc is not None:
            self._interrupt(proc)
        if was is not InstanceState.STOPPED:
            self._event("INFO", "Stop requested")
        if not self._started:
            self._done.set()

    def wait(self, timeout: float | None = None) -> BisketError | None:
        """Block until the instance is done; return the failure, if any.

        The failure is a CommandFailed from the run commands, or the
        MaterializationFailed that kept the instance from starting.
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"Instance {self.describe()} still running after {timeout}s")
        return self._result

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def proxy_target(self) -> str:
        """Base URL of the instance; only valid while Running."""
        if self.state is not InstanceState.RUNNING:
            raise NoBackendAvailable(f"Instance {self.describe()} is not running")
        return f"http://{LOOPBACK}:{self.port}"
