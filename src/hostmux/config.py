"""Configuration loading and merging for hostmux."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .registry import RouteStore


DEFAULT_STATE_DIR = "~/.hostmux"
STATE_DIR_ENV = "HOSTMUX_STATE_DIR"


def _default_state_dir() -> str:
    return os.environ.get(STATE_DIR_ENV) or DEFAULT_STATE_DIR


@dataclass
class HostmuxConfig:
    # Directory holding routes.json, routes.lock and proxy.pid
    state_dir: str = field(default_factory=_default_state_dir)

    # Where the proxy listens
    proxy_host: str = "127.0.0.1"
    proxy_port: int = 80

    # Range handed out to apps started with `hostmux run`
    port_min: int = 4000
    port_max: int = 4999

    # Route lock retry budget
    lock_max_attempts: int = 20
    lock_retry_delay: float = 0.05

    # Backend socket timeout while forwarding (seconds)
    forward_timeout: float = 30.0

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    def route_store(self) -> RouteStore:
        return RouteStore(
            self.state_path,
            lock_max_attempts=self.lock_max_attempts,
            lock_retry_delay=self.lock_retry_delay,
        )


def load_config(path: str | Path) -> HostmuxConfig:
    """Load a HostmuxConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    valid_fields = {f.name for f in fields(HostmuxConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return HostmuxConfig(**filtered)


def merge_cli_args(config: HostmuxConfig, args) -> HostmuxConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(HostmuxConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def config_to_yaml(config: HostmuxConfig) -> str:
    """Serialize a HostmuxConfig to YAML."""
    data = {f.name: getattr(config, f.name) for f in fields(HostmuxConfig)}
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
