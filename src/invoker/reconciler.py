from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Protocol

from .app_logging import log_with_fields
from .errors import ConfigValidationError, ContainerNotFound, ReconciliationConflict, RuntimeQueryError, StateStoreIO
from .models import Host, JobConfig, JobKey, LocalPage, ReconcileResult, StateMatch, configs_equal
from .policy import needs_restart
from .store import LocalStateStore

NOT_FOUND_EXIT_CODE = 1


class ContainerRuntime(Protocol):
    def state_and_exit_code(self, name: str) -> tuple[str, int]: ...


def container_name_for(config: JobConfig) -> str:
    if config.container_name:
        return config.container_name
    return config.key.name


def encode_page(page: LocalPage) -> str:
    payload = {
        host: {key.name: match.to_dict() for key, match in sorted(jobs.items())}
        for host, jobs in page.items()
    }
    return json.dumps(payload, sort_keys=True)


def decode_page(text: str) -> LocalPage:
    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise StateStoreIO(f"failed to unmarshal page: {exc}") from exc
    if not isinstance(raw, dict):
        raise StateStoreIO("failed to unmarshal page: root must be a mapping")
    page: LocalPage = {}
    for host, jobs in raw.items():
        if not isinstance(jobs, dict):
            raise StateStoreIO(f"failed to unmarshal page: jobs of host {host} must be a mapping")
        page[host] = {}
        for name, raw_match in jobs.items():
            try:
                match = StateMatch.from_dict(raw_match)
                match.config.validate()
            except ConfigValidationError as exc:
                raise StateStoreIO(f"failed to unmarshal page entry {host}/{name}: {exc}") from exc
            page[host][match.config.key] = match
    return page


def merge_pages(pages: Iterable[LocalPage]) -> LocalPage:
    merged: LocalPage = {}
    for page in pages:
        for host, jobs in page.items():
            merged.setdefault(host, {}).update(jobs)
    return merged


def group_by_job(page: LocalPage) -> dict[JobKey, dict[Host, StateMatch]]:
    grouped: dict[JobKey, dict[Host, StateMatch]] = {}
    for host in sorted(page):
        for key, match in page[host].items():
            grouped.setdefault(key, {})[host] = match
    return grouped


def merge_and_decide(pages: Iterable[LocalPage], logger: logging.Logger) -> ReconcileResult:
    merged = merge_pages(pages)
    result = ReconcileResult()

    for key, by_host in sorted(group_by_job(merged).items()):
        if not by_host:
            continue
        reference_host = next(iter(by_host))
        reference = by_host[reference_host].config

        diverging = [host for host, match in by_host.items() if not configs_equal(reference, match.config)]
        if diverging:
            conflict = ReconciliationConflict(key.name, [reference_host, *diverging])
            result.conflicts[key] = conflict
            log_with_fields(
                logger,
                logging.ERROR,
                "reconcile_conflict",
                job=key.name,
                reference_host=reference_host,
                diverging_hosts=diverging,
            )
            continue

        failed = [host for host, match in by_host.items() if needs_restart(match.expected, match.actual)]
        if not failed:
            continue
        # a distributed job restarts as one unit, never per host
        result.restart[key] = reference
        result.failed_hosts[key] = failed
        log_with_fields(
            logger,
            logging.WARNING,
            "job_needs_restart",
            job=key.name,
            failed_hosts=failed,
        )
    return result


class StateReconciler:
    def __init__(
        self,
        store: LocalStateStore,
        runtime: ContainerRuntime,
        local_host: Host,
        logger: logging.Logger,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.local_host = local_host
        self.logger = logger

    def produce_local_page(self, project_name: str | None = None) -> LocalPage:
        self.store.load()
        observations: dict[JobKey, StateMatch] = {}
        for entry in self.store.entries():
            config = entry.config
            if project_name is not None and entry.key.project_name != project_name:
                continue
            if self.local_host not in config.hosts:
                continue

            name = container_name_for(config)
            try:
                _, exit_code = self.runtime.state_and_exit_code(name)
            except ContainerNotFound:
                # never created and crashed-then-removed look the same here
                exit_code = NOT_FOUND_EXIT_CODE
            except RuntimeQueryError as exc:
                raise StateStoreIO(f"failed to get container state and exit code for {entry.key}: {exc}") from exc

            match = StateMatch(expected=config.desired_state(), actual=exit_code, config=config)
            observations[entry.key] = match
            log_with_fields(
                self.logger,
                logging.INFO,
                "page_observation",
                host=self.local_host,
                job=entry.key.name,
                container=name,
                expected=match.expected.value,
                actual=exit_code,
            )
        return {self.local_host: observations}
