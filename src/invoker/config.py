from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .store import DEFAULT_STATE_DIR

DEFAULT_CACHE_DIR = Path("~/.cache")


@dataclass(slots=True)
class PathsConfig:
    state_dir: Path = DEFAULT_STATE_DIR
    cache_dir: Path = DEFAULT_CACHE_DIR.expanduser()
    log: Path = (DEFAULT_CACHE_DIR / "invoker" / "invoker.log").expanduser()


@dataclass(slots=True)
class DockerConfig:
    image_tag: str = "hf-torch:latest"
    timeout_seconds: int = 30
    env_file: str = "nccl_config_env"


@dataclass(slots=True)
class NetworkConfig:
    public_ip_url: str = "https://api.ipify.org"
    public_ip_timeout_seconds: int = 5


@dataclass(slots=True)
class RemoteConfig:
    ssh_options: str = "-o BatchMode=yes -o ConnectTimeout=10"
    invoker_exec: str = "invoker"


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _positive_int(section: dict, key: str, name: str, default: int) -> int:
    try:
        value = int(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"`{name}.{key}` must be an integer") from exc
    if value < 1:
        raise ValueError(f"`{name}.{key}` must be >= 1")
    return value


def load_config(path: str | Path | None = None) -> AppConfig:
    if path is None:
        return AppConfig()

    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _section(raw, "paths")
    docker_raw = _section(raw, "docker")
    network_raw = _section(raw, "network")
    remote_raw = _section(raw, "remote")

    defaults = PathsConfig()

    def to_path(key: str, default: Path) -> Path:
        if key not in paths_raw:
            return default
        output = Path(str(paths_raw[key])).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(
        state_dir=to_path("state_dir", defaults.state_dir),
        cache_dir=to_path("cache_dir", defaults.cache_dir),
        log=to_path("log", defaults.log),
    )

    docker = DockerConfig(
        image_tag=str(docker_raw.get("image_tag", "hf-torch:latest")),
        timeout_seconds=_positive_int(docker_raw, "timeout_seconds", "docker", 30),
        env_file=str(docker_raw.get("env_file", "nccl_config_env")),
    )
    if not docker.image_tag:
        raise ValueError("`docker.image_tag` must not be empty")

    network = NetworkConfig(
        public_ip_url=str(network_raw.get("public_ip_url", "https://api.ipify.org")),
        public_ip_timeout_seconds=_positive_int(network_raw, "public_ip_timeout_seconds", "network", 5),
    )
    if not network.public_ip_url.startswith(("http://", "https://")):
        raise ValueError("`network.public_ip_url` must be an http(s) url")

    remote = RemoteConfig(
        ssh_options=str(remote_raw.get("ssh_options", "-o BatchMode=yes -o ConnectTimeout=10")),
        invoker_exec=str(remote_raw.get("invoker_exec", "invoker")),
    )

    return AppConfig(paths=paths, docker=docker, network=network, remote=remote)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.state_dir.mkdir(parents=True, exist_ok=True)
    config.paths.cache_dir.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
