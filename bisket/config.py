"""Application config (``bisket.yaml``)."""
from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

DEFAULT_CONFIG_FILE = "bisket.yaml"
DEFAULT_RUN_COMMAND = "go run dist/@$(uname -m)/server -p $BISKET_PORT"


class GithubConfig(BaseModel):
    repo_url: str = Field("https://github.com/apcandsons/echo-app", description="Repository to track")
    api_key: str = Field("", description="Optional token used for https clone/fetch")


class RepoConfig(BaseModel):
    github: GithubConfig = Field(default_factory=GithubConfig)


class Config(BaseModel):
    port: int = Field(8080, ge=1, le=65535, description="Proxy listener port")
    admin_port: int = Field(18080, ge=1, le=65535, description="Admin listener port")
    preview: bool = Field(False, description="Run @preview/ tags next to the latest version")
    run: list[str] = Field(default_factory=lambda: [DEFAULT_RUN_COMMAND], description="Ordered shell lines")
    repository: RepoConfig = Field(default_factory=RepoConfig)

    @classmethod
    def default(cls) -> "Config":
        return cls()

    @property
    def repo_url(self) -> str:
        return self.repository.github.repo_url

    @property
    def api_key(self) -> str:
        return self.repository.github.api_key

    @property
    def app_name(self) -> str:
        name = self.repo_url.rstrip("/").split("/")[-1]
        if name.endswith(".git"):
            name = name[: -len(".git")]
        return name or "app"


def load_config(path: str | Path = DEFAULT_CONFIG_FILE) -> Config:
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config from {p}: {e}") from e
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {p} must be a mapping.")
    try:
        cfg = Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {p}: {e}") from e
    if not cfg.run:
        raise ConfigError(f"Invalid config in {p}: 'run' must list at least one command.")
    if cfg.port == cfg.admin_port:
        raise ConfigError(f"Invalid config in {p}: 'port' and 'admin_port' must differ.")
    return cfg


def write_config(cfg: Config, path: str | Path = DEFAULT_CONFIG_FILE) -> Path:
    p = Path(path)
    with p.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(cfg.model_dump(), handle, sort_keys=False)
    return p
