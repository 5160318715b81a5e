from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import docker
from docker.errors import DockerException, NotFound
from docker.types import DeviceRequest, Ulimit
from requests.exceptions import RequestException

from .app_logging import log_with_fields
from .errors import ContainerNotFound, RuntimeQueryError

EXIT_CODE_RE = re.compile(r"Exited \((\d+)\)")
CAP_ADD = ["NET_ADMIN", "SYS_ADMIN", "SYS_PTRACE", "IPC_LOCK"]
OTHER_NVIDIA_DEVICES = [
    "/dev/nvidia-uvm",
    "/dev/nvidiactl",
    "/dev/nvidia-modeset",
    "/dev/nvidia-uvm-tools",
]
LD_BINDS = {
    "/var/lib/nvidia/lib64": "/usr/local/nvidia/lib64",
    "/var/lib/tcpx": "/usr/local/tcpx",
    "/run/tcpx": "/run/tcpx",
}
GUEST_ROOT_PATH = "/srv/"
GUEST_CACHE_PATH = "/home/nonroot/.cache/"
GUEST_ROOT_CACHE_PATH = "/root/.cache/"


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    state: str
    status: str


@dataclass
class ContainerSpec:
    name: str
    image: str
    command: str
    args: list[str]
    env: dict[str, str] = field(default_factory=dict)
    binds: list[str] = field(default_factory=list)
    devices: list[str] = field(default_factory=list)
    device_requests: list[DeviceRequest] = field(default_factory=list)
    cap_add: list[str] = field(default_factory=lambda: list(CAP_ADD))
    privileged: bool = True


def exit_code_from_status(status: str) -> int:
    match = EXIT_CODE_RE.search(status)
    if not match:
        return 0
    return int(match.group(1))


def is_cos(os_release: Path = Path("/etc/os-release")) -> bool:
    try:
        lines = os_release.read_text(encoding="utf-8").splitlines()
    except OSError:
        return False
    for line in lines:
        if line.startswith("ID="):
            return line.removeprefix("ID=").strip() == "cos"
    return False


def gpu_device_requests_and_mappings(dev_root: Path = Path("/dev")) -> tuple[list[DeviceRequest], list[str]]:
    """GPU passthrough for the container, empty when the host has no nvidia devices."""
    if not (dev_root / "nvidia0").exists():
        return [], []
    requests_out: list[DeviceRequest] = []
    # container-optimized os has no nvidia runtime hook; devices are mapped by hand
    if not is_cos():
        requests_out.append(DeviceRequest(count=-1, capabilities=[["gpu"]]))
    gpus = [str(dev_root / f"nvidia{index}") for index in range(32) if (dev_root / f"nvidia{index}").exists()]
    others = [path for path in OTHER_NVIDIA_DEVICES if Path(path).exists()]
    mappings = [f"{path}:{path}:rwm" for path in [*gpus, *others]]
    return requests_out, mappings


def volume_binds(host_root: Path, host_cache: Path) -> list[str]:
    binds = [
        f"{host_root}:{GUEST_ROOT_PATH}",
        f"{host_cache}:{GUEST_CACHE_PATH}",
        f"{host_cache}:{GUEST_ROOT_CACHE_PATH}",
    ]
    for host, guest in LD_BINDS.items():
        if Path(host).exists():
            binds.append(f"{host}:{guest}")
    return binds


class DockerRuntime:
    """Thin wrapper over the docker SDK with the primitives the invoker needs."""

    def __init__(self, logger: logging.Logger, timeout_seconds: int = 30) -> None:
        self.logger = logger
        self.timeout_seconds = timeout_seconds
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=self.timeout_seconds)
            except DockerException as exc:
                raise RuntimeQueryError(f"failed to create docker client: {exc}") from exc
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def list_by_name(self, name: str) -> list[ContainerRef]:
        try:
            containers = self.client.containers.list(all=True, filters={"name": name}, sparse=True)
        except (DockerException, RequestException) as exc:
            raise RuntimeQueryError(f"failed to list containers with name {name}: {exc}") from exc
        output: list[ContainerRef] = []
        for container in containers:
            # the name filter is a substring match, keep exact names only
            names = container.attrs.get("Names") or []
            if f"/{name}" not in names:
                continue
            output.append(
                ContainerRef(
                    id=container.id,
                    name=name,
                    state=str(container.attrs.get("State", "")),
                    status=str(container.attrs.get("Status", "")),
                )
            )
        return output

    def state_and_exit_code(self, name: str) -> tuple[str, int]:
        if not name:
            raise RuntimeQueryError("container name is empty")
        matches = self.list_by_name(name)
        log_with_fields(self.logger, logging.DEBUG, "containers_found", name=name, count=len(matches))
        if not matches:
            raise ContainerNotFound(name)
        ref = matches[0]
        return ref.state, exit_code_from_status(ref.status)

    def stop(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).stop(timeout=0)
        except NotFound:
            return
        except (DockerException, RequestException) as exc:
            raise RuntimeQueryError(f"failed to stop container {container_id}: {exc}") from exc

    def remove(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).remove(force=True)
        except NotFound:
            return
        except (DockerException, RequestException) as exc:
            raise RuntimeQueryError(f"failed to remove container {container_id}: {exc}") from exc

    def kill(self, name: str) -> None:
        for ref in self.list_by_name(name):
            if ref.state == "running":
                log_with_fields(self.logger, logging.INFO, "container_stopping", name=name, container_id=ref.id)
                try:
                    self.stop(ref.id)
                except RuntimeQueryError as exc:
                    # force removal below still takes it down
                    log_with_fields(
                        self.logger, logging.WARNING, "container_stop_failed", container_id=ref.id, error=str(exc)
                    )
            log_with_fields(self.logger, logging.INFO, "container_removing", name=name, container_id=ref.id)
            self.remove(ref.id)

    def build_image(self, context_dir: Path, tag: str, uid: int, gid: int) -> None:
        log_with_fields(self.logger, logging.INFO, "image_building", tag=tag, context=str(context_dir))
        try:
            _, build_logs = self.client.images.build(
                path=str(context_dir),
                tag=tag,
                buildargs={"UID": str(uid), "GID": str(gid)},
                rm=True,
                forcerm=True,
            )
        except (DockerException, RequestException) as exc:
            raise RuntimeQueryError(f"failed to build image {tag}: {exc}") from exc
        for chunk in build_logs:
            line = str(chunk.get("stream", "")).rstrip() if isinstance(chunk, dict) else ""
            if line:
                log_with_fields(self.logger, logging.DEBUG, "image_build_output", tag=tag, line=line)

    def create_and_start(self, spec: ContainerSpec) -> str:
        log_with_fields(self.logger, logging.INFO, "container_creating", name=spec.name, image=spec.image)
        try:
            container = self.client.containers.create(
                spec.image,
                name=spec.name,
                entrypoint=[spec.command, *spec.args],
                environment=spec.env,
                volumes=spec.binds,
                devices=spec.devices,
                device_requests=spec.device_requests,
                cap_add=spec.cap_add,
                privileged=spec.privileged,
                ipc_mode="host",
                pid_mode="host",
                network_mode="host",
                ulimits=[
                    Ulimit(name="memlock", soft=-1, hard=-1),
                    Ulimit(name="stack", soft=67108864, hard=67108864),
                ],
            )
            container.start()
        except (DockerException, RequestException) as exc:
            raise RuntimeQueryError(f"failed to create and start container {spec.name}: {exc}") from exc
        log_with_fields(self.logger, logging.INFO, "container_started", name=spec.name, container_id=container.id)
        return container.id
