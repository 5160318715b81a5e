from __future__ import annotations

import json
import os
from pathlib import Path

from .errors import ConfigValidationError, NotFound, StateStoreIO
from .models import DesiredState, JobConfig, JobKey, PersistedJobState

DEFAULT_STATE_DIR = Path("/tmp/invoker-states")


def state_file_name(key: JobKey, state: DesiredState) -> str:
    return f"{key.project_name}.{key.experiment_name}.{state.value}"


def parse_state_file_name(name: str) -> tuple[JobKey, DesiredState] | None:
    parts = name.split(".")
    if len(parts) != 3:
        return None
    project_name, experiment_name, state = parts
    if not project_name or not experiment_name:
        return None
    try:
        desired = DesiredState(state)
    except ValueError:
        return None
    return JobKey(project_name, experiment_name), desired


def _encode_config(config: JobConfig) -> str:
    return json.dumps(config.to_dict(), sort_keys=True)


class LocalStateStore:
    """Per-host record of every job's desired state, one file per job.

    The state is carried in the file name (``project.experiment.state``) and
    the body holds the job's run args as json. Nothing reaches disk until
    ``flush``, which rewrites the whole directory. There is no locking; a
    single coordinating process per host is assumed.
    """

    def __init__(self, state_dir: Path = DEFAULT_STATE_DIR) -> None:
        self.state_dir = Path(state_dir)
        self.states: dict[JobKey, PersistedJobState] = {}
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateStoreIO(f"failed to create state directory {self.state_dir}: {exc}") from exc

    def __len__(self) -> int:
        return len(self.states)

    def __contains__(self, key: object) -> bool:
        return key in self.states

    def _state_files(self) -> list[tuple[Path, JobKey, DesiredState]]:
        try:
            children = sorted(self.state_dir.iterdir())
        except OSError as exc:
            raise StateStoreIO(f"failed to read state directory {self.state_dir}: {exc}") from exc
        output: list[tuple[Path, JobKey, DesiredState]] = []
        for path in children:
            if path.is_dir():
                continue
            parsed = parse_state_file_name(path.name)
            if parsed is None:
                continue
            output.append((path, *parsed))
        return output

    def load(self) -> None:
        loaded: dict[JobKey, PersistedJobState] = {}
        for path, key, state in self._state_files():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                config = JobConfig.from_dict(raw)
                config.validate()
            except (OSError, ValueError, ConfigValidationError) as exc:
                raise StateStoreIO(f"failed to decode run args from state file {path}: {exc}") from exc
            if config.key != key:
                raise StateStoreIO(f"state file {path} holds run args for {config.key}")
            if config.desired_state() != state:
                raise StateStoreIO(
                    f"state file {path} is marked {state.value} but its run args say {config.desired_state().value}"
                )
            loaded[key] = PersistedJobState(key=key, state=state, config=config)
        self.states = loaded

    def entries(self) -> list[PersistedJobState]:
        return [self.states[key] for key in sorted(self.states)]

    def get(self, key: JobKey) -> PersistedJobState:
        for state in self.states.values():
            if state.key == key:
                return state
        raise NotFound(f"state for project {key.project_name} experiment {key.experiment_name} not found")

    def set(self, key: JobKey, state: DesiredState, config: JobConfig) -> None:
        if config.key != key or config.desired_state() != state:
            raise ConfigValidationError([f"run args for {config.key} do not match {key} in state {state.value}"])
        self.states[key] = PersistedJobState(key=key, state=state, config=config)

    def _replace(self, name: str, body: str) -> None:
        target = self.state_dir / name
        # the temp name has extra dots so load never mistakes it for a state file
        temp = self.state_dir / f".{name}.tmp"
        try:
            temp.write_text(body, encoding="utf-8")
            os.replace(temp, target)
        except OSError as exc:
            temp.unlink(missing_ok=True)
            raise StateStoreIO(f"failed to write state file {target}: {exc}") from exc

    def flush(self) -> None:
        """Make the directory hold exactly the in-memory entries.

        Every body is written to a temp file and renamed over its final name
        before any stale file is removed, so a failed flush leaves each job
        with either its old or its new state file.
        """
        bodies = {state_file_name(entry.key, entry.state): _encode_config(entry.config) for entry in self.entries()}
        for name, body in bodies.items():
            self._replace(name, body)
        for path, _, _ in self._state_files():
            if path.name in bodies:
                continue
            try:
                path.unlink()
            except OSError as exc:
                raise StateStoreIO(f"failed to remove state file {path}: {exc}") from exc
