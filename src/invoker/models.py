from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ConfigValidationError, ReconciliationConflict

RESTARTABLE_FLAG = "hf_action_restartable"
VARNAME_REGEX = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DesiredState(str, Enum):
    RUNNING = "running"
    STOPPABLE = "stoppable"


@dataclass(frozen=True, slots=True, order=True)
class JobKey:
    project_name: str
    experiment_name: str

    @property
    def name(self) -> str:
        return f"{self.project_name}-{self.experiment_name}"

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class JobConfig:
    project_name: str
    hosts: tuple[str, ...]
    nproc_per_node: int
    experiment_name: str
    port: int
    run_name: str
    max_repeats: int
    rest: tuple[str, ...] = ()
    container_name: str | None = None
    master_host: str | None = None
    no_python: str | None = None

    def __post_init__(self) -> None:
        # lists coming from json or argparse are frozen so equality stays structural
        object.__setattr__(self, "hosts", tuple(self.hosts))
        object.__setattr__(self, "rest", tuple(self.rest))

    @property
    def key(self) -> JobKey:
        return JobKey(self.project_name, self.experiment_name)

    def desired_state(self) -> DesiredState:
        for arg in self.rest:
            if arg == f"{RESTARTABLE_FLAG}={DesiredState.RUNNING.value}":
                return DesiredState.RUNNING
        return DesiredState.STOPPABLE

    def validate(self) -> None:
        problems: list[str] = []
        for label, value in [
            ("ProjectName", self.project_name),
            ("ExperimentName", self.experiment_name),
            ("RunName", self.run_name),
        ]:
            if not isinstance(value, str) or not VARNAME_REGEX.match(value):
                problems.append(f"{label} must be a variable-like name, got {value!r}")
        if not self.hosts:
            problems.append("Hosts must contain at least one host")
        elif any(not isinstance(host, str) or not host for host in self.hosts):
            problems.append("Hosts must be non-empty strings")
        if not isinstance(self.nproc_per_node, int) or self.nproc_per_node < 1:
            problems.append(f"NProcPerNode must be >= 1, got {self.nproc_per_node!r}")
        if not isinstance(self.port, int) or self.port < 1:
            problems.append(f"Port must be >= 1, got {self.port!r}")
        if not isinstance(self.max_repeats, int) or self.max_repeats < -1:
            problems.append(f"MaxRepeats must be >= -1, got {self.max_repeats!r}")
        if any(not isinstance(arg, str) for arg in self.rest):
            problems.append("Rest must contain only strings")
        if self.master_host:
            try:
                ipaddress.ip_address(self.master_host)
            except ValueError:
                problems.append(f"MasterHost must be an ip address, got {self.master_host!r}")
        if problems:
            raise ConfigValidationError(problems)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ProjectName": self.project_name,
            "Hosts": list(self.hosts),
            "NProcPerNode": self.nproc_per_node,
            "ExperimentName": self.experiment_name,
            "Port": self.port,
            "RunName": self.run_name,
            "MaxRepeats": self.max_repeats,
            "Rest": list(self.rest),
            "ContainerName": self.container_name,
            "MasterHost": self.master_host,
            "NoPython": self.no_python,
        }

    @classmethod
    def from_dict(cls, raw: object) -> JobConfig:
        if not isinstance(raw, dict):
            raise ConfigValidationError(["run args must be a mapping"])
        missing = [
            key
            for key in ["ProjectName", "Hosts", "NProcPerNode", "ExperimentName", "Port", "RunName", "MaxRepeats"]
            if key not in raw
        ]
        if missing:
            raise ConfigValidationError([f"missing `{key}`" for key in missing])
        hosts = raw["Hosts"]
        rest = raw.get("Rest") or []
        if not isinstance(hosts, list) or not isinstance(rest, list):
            raise ConfigValidationError(["`Hosts` and `Rest` must be lists"])
        return cls(
            project_name=raw["ProjectName"],
            hosts=tuple(hosts),
            nproc_per_node=raw["NProcPerNode"],
            experiment_name=raw["ExperimentName"],
            port=raw["Port"],
            run_name=raw["RunName"],
            max_repeats=raw["MaxRepeats"],
            rest=tuple(rest),
            container_name=raw.get("ContainerName"),
            master_host=raw.get("MasterHost"),
            no_python=raw.get("NoPython"),
        )


def configs_equal(left: JobConfig, right: JobConfig) -> bool:
    return left == right


@dataclass(frozen=True, slots=True)
class PersistedJobState:
    key: JobKey
    state: DesiredState
    config: JobConfig


@dataclass(frozen=True, slots=True)
class StateMatch:
    expected: DesiredState
    actual: int
    config: JobConfig

    def to_dict(self) -> dict[str, Any]:
        return {"Expected": self.expected.value, "Actual": self.actual, "RunArgs": self.config.to_dict()}

    @classmethod
    def from_dict(cls, raw: object) -> StateMatch:
        if not isinstance(raw, dict):
            raise ConfigValidationError(["state match must be a mapping"])
        try:
            expected = DesiredState(raw["Expected"])
            actual = int(raw["Actual"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigValidationError([f"bad state match: {exc}"]) from exc
        return cls(expected=expected, actual=actual, config=JobConfig.from_dict(raw.get("RunArgs")))


Host = str
LocalPage = dict[Host, dict[JobKey, StateMatch]]
RestartSet = dict[JobKey, JobConfig]


@dataclass(slots=True)
class ReconcileResult:
    restart: RestartSet = field(default_factory=dict)
    conflicts: dict[JobKey, ReconciliationConflict] = field(default_factory=dict)
    failed_hosts: dict[JobKey, list[Host]] = field(default_factory=dict)
