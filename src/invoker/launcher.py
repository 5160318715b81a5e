from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from .app_logging import log_with_fields
from .config import AppConfig
from .docker_ops import ContainerSpec, gpu_device_requests_and_mappings, volume_binds
from .models import JobConfig
from .ranks import LOCALHOST, ensure_port_available, resolve_master_and_rank
from .reconciler import container_name_for
from .store import LocalStateStore
from .utils import load_env_file, trim_path_for_length

RUN_SCRIPT_NAME = "hf.py"
RUN_SCRIPT = """#!/usr/bin/env python
from higgsfield.internal.main import cli;
cli()
"""


class LaunchRuntime(Protocol):
    def kill(self, name: str) -> None: ...

    def build_image(self, context_dir: Path, tag: str, uid: int, gid: int) -> None: ...

    def create_and_start(self, spec: ContainerSpec) -> str: ...


def master_host_else_first(config: JobConfig) -> str:
    if config.master_host:
        return config.master_host
    return config.hosts[0]


def no_python_opt(config: JobConfig) -> list[str]:
    if config.no_python:
        return ["--no-python", config.no_python, "python"]
    return []


def build_launch_command(config: JobConfig, master: str, rank: int) -> tuple[str, list[str]]:
    args = [
        "--nnodes",
        str(len(config.hosts)),
        "--node_rank",
        str(rank),
        "--nproc_per_node",
        str(config.nproc_per_node),
    ]
    if master != LOCALHOST:
        args += ["--master_addr", master, "--master_port", str(config.port)]
    args += no_python_opt(config)
    args += [RUN_SCRIPT_NAME, "run"]
    args += [
        "--experiment_name",
        config.experiment_name,
        "--run_name",
        config.run_name,
        "--max_repeats",
        str(config.max_repeats),
    ]
    args += list(config.rest)
    return "torchrun", args


def make_default_directories(cache_dir: Path, project_name: str, experiment_name: str, run_name: str) -> Path:
    checkpoint_dir = cache_dir / "higgsfield" / project_name / "experiments" / experiment_name / run_name
    checkpoint_dir.mkdir(parents=True, exist_ok=True)
    return checkpoint_dir


class Launcher:
    def __init__(
        self,
        config: AppConfig,
        store: LocalStateStore,
        runtime: LaunchRuntime,
        addresses: Callable[[], list[str]],
        logger: logging.Logger,
        work_dir: Path | None = None,
        port_check: Callable[[int], None] = ensure_port_available,
    ) -> None:
        self.config = config
        self.store = store
        self.runtime = runtime
        self.addresses = addresses
        self.logger = logger
        self.work_dir = work_dir or Path.cwd()
        self.port_check = port_check

    def resolve(self, job: JobConfig) -> tuple[str, int]:
        if len(job.hosts) > 1:
            return resolve_master_and_rank(job.hosts, self.addresses(), job.master_host)
        return LOCALHOST, 0

    def record_desired_state(self, job: JobConfig) -> None:
        self.store.load()
        state = job.desired_state()
        self.store.set(job.key, state, job)
        self.store.flush()
        log_with_fields(self.logger, logging.INFO, "job_state_recorded", job=job.key.name, state=state.value)

    def run(self, job: JobConfig) -> str:
        job.validate()
        master, rank = self.resolve(job)
        # only the master binds the rendezvous port
        if rank == 0:
            self.port_check(job.port)

        checkpoint_dir = make_default_directories(
            self.config.paths.cache_dir, job.project_name, job.experiment_name, job.run_name
        )
        self.record_desired_state(job)

        name = container_name_for(job)
        log_with_fields(
            self.logger,
            logging.INFO,
            "training_info",
            experiment_name=job.experiment_name,
            run_name=job.run_name,
            container_name=name,
            checkpoint_path=trim_path_for_length(str(checkpoint_dir), 70),
            master=master,
            rank=rank,
        )

        command, args = build_launch_command(job, master, rank)
        (self.work_dir / RUN_SCRIPT_NAME).write_text(RUN_SCRIPT, encoding="utf-8")

        device_requests, devices = gpu_device_requests_and_mappings()
        spec = ContainerSpec(
            name=name,
            image=self.config.docker.image_tag,
            command=command,
            args=args,
            env=load_env_file(self.work_dir / self.config.docker.env_file),
            binds=volume_binds(self.work_dir, self.config.paths.cache_dir),
            devices=devices,
            device_requests=device_requests,
        )

        self.runtime.kill(name)
        self.runtime.build_image(self.work_dir, self.config.docker.image_tag, os.getuid(), os.getgid())
        return self.runtime.create_and_start(spec)
