from __future__ import annotations

import shlex
import subprocess
from collections.abc import Iterable

from .config import RemoteConfig
from .errors import InvokerError, StateStoreIO
from .models import Host, JobConfig, LocalPage
from .reconciler import decode_page


class RemoteError(InvokerError):
    pass


def build_run_argv(config: JobConfig) -> list[str]:
    argv = [
        "run",
        "--project-name",
        config.project_name,
        "--experiment-name",
        config.experiment_name,
        "--run-name",
        config.run_name,
        "--hosts",
        ",".join(config.hosts),
        "--nproc-per-node",
        str(config.nproc_per_node),
        "--port",
        str(config.port),
        "--max-repeats",
        str(config.max_repeats),
    ]
    if config.container_name is not None:
        argv += ["--container-name", config.container_name]
    if config.master_host is not None:
        argv += ["--master-host", config.master_host]
    if config.no_python is not None:
        argv += ["--no-python", config.no_python]
    if any(item.startswith("-") for item in config.rest):
        argv.append("--")
    argv += list(config.rest)
    return argv


class RemoteExecutor:
    def __init__(self, remote_config: RemoteConfig) -> None:
        self.remote_config = remote_config
        self.ssh_options = shlex.split(remote_config.ssh_options)

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(cmd, capture_output=True, text=True, check=False)

    def _ssh(self, host: Host, script: str) -> subprocess.CompletedProcess[str]:
        cmd = ["ssh", *self.ssh_options, host, "bash", "-lc", shlex.quote(script)]
        return self._run(cmd)

    def _require_ok(self, process: subprocess.CompletedProcess[str], context: str) -> None:
        if process.returncode != 0:
            stderr = process.stderr.strip()
            stdout = process.stdout.strip()
            output = stderr if stderr else stdout
            raise RemoteError(f"{context} failed: {output or 'exit code ' + str(process.returncode)}")

    def _invoker(self, argv: list[str]) -> str:
        return " ".join(shlex.quote(item) for item in [self.remote_config.invoker_exec, *argv])

    def fetch_page(self, host: Host, project_name: str | None = None) -> str:
        argv = ["state", "fetch", "--host", host]
        if project_name is not None:
            argv += ["--project-name", project_name]
        process = self._ssh(host, self._invoker(argv))
        self._require_ok(process, f"fetch state page from {host}")
        return process.stdout

    def relaunch(self, host: Host, config: JobConfig) -> None:
        process = self._ssh(host, self._invoker(build_run_argv(config)))
        self._require_ok(process, f"relaunch {config.key} on {host}")


class SshPageTransport:
    """Collects one page per host by running ``state fetch`` on it over ssh."""

    def __init__(self, executor: RemoteExecutor) -> None:
        self.executor = executor

    def receive_pages(self, hosts: Iterable[Host], project_name: str | None = None) -> list[LocalPage]:
        pages: list[LocalPage] = []
        for host in hosts:
            payload = self.executor.fetch_page(host, project_name)
            try:
                pages.append(decode_page(payload))
            except StateStoreIO as exc:
                raise RemoteError(f"bad state page from {host}: {exc}") from exc
        return pages
