from __future__ import annotations


class BisketError(RuntimeError):
    """Base class for controller failures that are reported, not crashed on."""


class ConfigError(BisketError):
    pass


class SourceUnavailable(BisketError):
    """The version source (remote repository) could not be reached."""


class MaterializationFailed(BisketError):
    """Clone/pull failed and there is no usable local copy."""


class CommandFailed(BisketError):
    """A run command exited non-zero or could not be spawned."""

    def __init__(self, command: str, returncode: int | None, detail: str = ""):
        self.command = command
        self.returncode = returncode
        msg = f"Command {command!r} failed"
        if returncode is not None:
            msg += f" with exit code {returncode}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class PortExhausted(BisketError):
    pass


class NoBackendAvailable(BisketError):
    pass


class VersionNotFound(BisketError):
    pass
