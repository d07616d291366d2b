# rap/config.py
"""
Server configuration.

Read from an optional YAML file, then overridden by environment variables:

    DOMAIN        federation hostname (required)
    RAP_USERNAME  local actor username
    ADDRESS       listen address
    PORT          listen port
    KEY_PATH      private key PEM file
    STATE_DIR     directory for durable state (unset: memory only)
    DEBUG         any of 1/true/yes/on enables debug logging

Example config.yaml:

    domain: ap.example.com
    username: relay
    key_path: /var/lib/rap/main-key.pem
    state_dir: /var/lib/rap/state
    delivery:
      base_delay: 30
      max_delay: 21600
      max_attempts: 10
    inbox:
      clock_skew: 43200
      dedup_retention: 604800
    resolver:
      cache_ttl: 3600
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .delivery import BackoffPolicy

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class DeliveryConfig:
    base_delay: float = 30.0
    max_delay: float = 6 * 60 * 60.0
    max_attempts: int = 10
    jitter: float = 0.1
    request_timeout: float = 10.0
    workers: int = 4
    poll_interval: float = 5.0
    prefer_shared_inbox: bool = False

    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            max_attempts=self.max_attempts,
            jitter=self.jitter,
        )


@dataclass
class InboxConfig:
    clock_skew: float = 12 * 60 * 60.0
    dedup_retention: float = 7 * 24 * 60 * 60.0
    dedup_capacity: int = 100_000


@dataclass
class ResolverConfig:
    cache_ttl: float = 60 * 60.0
    signed_fetch: bool = False


@dataclass
class Config:
    """Everything the server needs at startup."""
    domain: str
    username: str = "relay"
    display_name: Optional[str] = None
    address: str = "0.0.0.0"
    port: int = 3000
    key_path: Path = Path("main-key.pem")
    generate_key: bool = True
    state_dir: Optional[Path] = None
    debug: bool = False
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    inbox: InboxConfig = field(default_factory=InboxConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)

    @property
    def durable(self) -> bool:
        """Whether queue, cache and dedup state survive restarts."""
        return self.state_dir is not None


def _section(cls, data: Any, name: str):
    """Build a section dataclass, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {', '.join(sorted(unknown))}")
    return cls(**data)


def _from_dict(data: Dict[str, Any]) -> Config:
    sections = {
        "delivery": _section(DeliveryConfig, data.pop("delivery", None), "delivery"),
        "inbox": _section(InboxConfig, data.pop("inbox", None), "inbox"),
        "resolver": _section(ResolverConfig, data.pop("resolver", None), "resolver"),
    }
    known = {f.name for f in fields(Config)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    if not data.get("domain"):
        raise ValueError("No domain configured (set DOMAIN or 'domain' in the config file)")

    if data.get("key_path") is not None:
        data["key_path"] = Path(data["key_path"])
    if data.get("state_dir") is not None:
        data["state_dir"] = Path(data["state_dir"])
    if "port" in data:
        data["port"] = int(data["port"])
    if isinstance(data.get("debug"), str):
        data["debug"] = data["debug"].strip().lower() in _TRUE

    return Config(**data, **sections)


def load_config(path: Optional[Path | str] = None, env: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load configuration.

    Args:
        path: Optional YAML file
        env: Environment to read overrides from (defaults to os.environ)

    Returns:
        Config

    Raises:
        ValueError: no domain, unknown keys, or malformed file
    """
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}

    if path is not None:
        with open(path) as f:
            loaded = yaml.safe_load(f)
        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ValueError(f"Config file {path} must contain a mapping")
            data.update(loaded)

    overrides = {
        "DOMAIN": "domain",
        "RAP_USERNAME": "username",
        "ADDRESS": "address",
        "PORT": "port",
        "KEY_PATH": "key_path",
        "STATE_DIR": "state_dir",
        "DEBUG": "debug",
    }
    for var, key in overrides.items():
        value = env.get(var)
        if value:
            data[key] = value

    return _from_dict(data)
