"""Configuration for masters, workers and discovery.

Values come from a YAML file (optional) with environment variables
layered on top:

  - SUPERCLUSTER_DISCOVERY_PORT: UDP discovery port
  - SUPERCLUSTER_ANNOUNCE_INTERVAL_MS: announcement interval
  - SUPERCLUSTER_MASTER_PORT: master REST API port
  - SUPERCLUSTER_WORKER_PORT: worker REST API port
  - SUPERCLUSTER_STAGING_DIR: where file tasks are staged
  - SUPERCLUSTER_WORK_DIR: where repositories are cloned
  - SUPERCLUSTER_LOG_LEVEL: log level for the CLI
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "config/supercluster.yaml"

_TMP_ROOT = Path(tempfile.gettempdir()) / "supercluster"


class DiscoveryConfig(BaseModel):
    """UDP broadcast discovery settings.

    Attributes:
        port: UDP port every node listens and broadcasts on.
        broadcast_address: Destination of announcements.
        bind_address: Local address to listen on.
        announce_interval_ms: Milliseconds between announcements.
        timeout_multiplier: Missed intervals before a peer is unavailable.
    """

    port: int = Field(default=44200, gt=0, lt=65536)
    broadcast_address: str = "255.255.255.255"
    bind_address: str = "0.0.0.0"
    announce_interval_ms: int = Field(default=1000, ge=10)
    timeout_multiplier: float = Field(default=3.0, ge=1.0)

    @property
    def timeout_seconds(self) -> float:
        return self.announce_interval_ms * self.timeout_multiplier / 1000.0


class NodeConfig(BaseModel):
    """REST API settings common to both roles."""

    host: str = "0.0.0.0"
    rest_api_port: int = Field(gt=0, lt=65536)
    advertise_address: Optional[str] = None
    request_timeout: float = Field(default=30.0, gt=0)


class MasterConfig(NodeConfig):
    rest_api_port: int = Field(default=44402, gt=0, lt=65536)


class WorkerConfig(NodeConfig):
    """Worker settings.

    Attributes:
        staging_dir: Directory file tasks are written into.
        work_dir: Default parent directory for repository clones.
        git_base_url: Base URL repositories are cloned from.
        shutdown_timeout: Seconds :meth:`Worker.stop` waits for running
            tasks to reply before cancelling them.
    """

    rest_api_port: int = Field(default=44401, gt=0, lt=65536)
    staging_dir: str = str(_TMP_ROOT / "files")
    work_dir: str = str(_TMP_ROOT / "repos")
    git_base_url: str = "https://github.com"
    shutdown_timeout: float = Field(default=30.0, gt=0)


class ClusterConfig(BaseModel):
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    master: MasterConfig = Field(default_factory=MasterConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    log_level: str = "info"


def get_env_override(key: str, default: Any) -> Any:
    """Return the environment value for ``key`` or ``default``."""
    return os.getenv(key, default)


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    overrides = {
        ("discovery", "port"): "SUPERCLUSTER_DISCOVERY_PORT",
        ("discovery", "announce_interval_ms"): "SUPERCLUSTER_ANNOUNCE_INTERVAL_MS",
        ("master", "rest_api_port"): "SUPERCLUSTER_MASTER_PORT",
        ("worker", "rest_api_port"): "SUPERCLUSTER_WORKER_PORT",
        ("worker", "staging_dir"): "SUPERCLUSTER_STAGING_DIR",
        ("worker", "work_dir"): "SUPERCLUSTER_WORK_DIR",
    }
    for (section, key), env_name in overrides.items():
        value = get_env_override(env_name, None)
        if value is not None:
            raw.setdefault(section, {})[key] = value

    log_level = get_env_override("SUPERCLUSTER_LOG_LEVEL", None)
    if log_level is not None:
        raw["log_level"] = log_level
    return raw


def load_config(config_path: Optional[str] = None) -> ClusterConfig:
    """Load configuration from YAML plus environment overrides.

    Args:
        config_path: YAML file to read. Defaults to
            ``config/supercluster.yaml``; a missing file means defaults.

    Returns:
        The validated configuration.

    Raises:
        pydantic.ValidationError: If a value is out of range or mistyped.
    """
    config_file = Path(config_path or DEFAULT_CONFIG_PATH)
    raw: dict[str, Any] = {}
    if config_file.exists():
        with open(config_file) as f:
            raw = yaml.safe_load(f) or {}

    return ClusterConfig.model_validate(_apply_env_overrides(raw))
