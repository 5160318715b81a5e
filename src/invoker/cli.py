from __future__ import annotations

import argparse
import dataclasses
import logging
import sys

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .docker_ops import DockerRuntime
from .errors import HostNotInList, InvokerError
from .launcher import Launcher
from .models import JobConfig
from .ranks import node_addresses, public_address
from .reconciler import StateReconciler, encode_page, merge_and_decide
from .remote import RemoteExecutor, SshPageTransport
from .store import LocalStateStore


def _host_list(value: str) -> list[str]:
    hosts = [item.strip() for item in value.split(",") if item.strip()]
    if not hosts:
        raise argparse.ArgumentTypeError("expected a comma separated list of hosts")
    return hosts


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="invoker", description="Multi-node training launcher")
    parser.add_argument("--config", default=None, help="Path to invoker YAML config")
    parser.add_argument("--verbose", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Launch this node's part of an experiment")
    run_parser.add_argument("--project-name", required=True)
    run_parser.add_argument("--experiment-name", required=True)
    run_parser.add_argument("--run-name", required=True)
    run_parser.add_argument("--hosts", required=True, type=_host_list, help="Comma separated host list")
    run_parser.add_argument("--nproc-per-node", required=True, type=int)
    run_parser.add_argument("--port", required=True, type=int, help="Master port")
    run_parser.add_argument("--max-repeats", type=int, default=-1)
    run_parser.add_argument("--container-name", default=None)
    run_parser.add_argument("--master-host", default=None)
    run_parser.add_argument("--no-python", default=None)
    run_parser.add_argument("rest", nargs="*", help="Arguments passed through to the experiment")

    state_parser = subparsers.add_parser("state", help="Inspect and reconcile experiment states")
    state_sub = state_parser.add_subparsers(dest="state_command", required=True)

    fetch = state_sub.add_parser("fetch", help="Print this host's state page as json")
    fetch.add_argument("--project-name", default=None)
    fetch.add_argument("--host", default=None, help="Address this host is listed under")

    restart = state_sub.add_parser("restart", help="Gather pages from hosts and relaunch failed experiments")
    restart.add_argument("--project-name", required=True)
    restart.add_argument("--hosts", required=True, type=_host_list, help="Comma separated host list")
    restart.add_argument("--invoker-exec", default=None, help="Invoker executable on remote hosts")
    restart.add_argument("--dry-run", action="store_true", help="Only report what would be restarted")

    state_sub.add_parser("show", help="List locally recorded experiment states")
    return parser


def job_config_from_args(args: argparse.Namespace) -> JobConfig:
    return JobConfig(
        project_name=args.project_name,
        hosts=tuple(args.hosts),
        nproc_per_node=args.nproc_per_node,
        experiment_name=args.experiment_name,
        port=args.port,
        run_name=args.run_name,
        max_repeats=args.max_repeats,
        rest=tuple(args.rest),
        container_name=args.container_name,
        master_host=args.master_host,
        no_python=args.no_python,
    )


def cmd_run(config: AppConfig, job: JobConfig, logger: logging.Logger) -> int:
    runtime = DockerRuntime(logger, timeout_seconds=config.docker.timeout_seconds)
    store = LocalStateStore(config.paths.state_dir)
    launcher = Launcher(
        config=config,
        store=store,
        runtime=runtime,
        addresses=lambda: node_addresses(
            config.network.public_ip_url, config.network.public_ip_timeout_seconds
        ),
        logger=logger,
    )
    try:
        container_id = launcher.run(job)
    finally:
        runtime.close()
    print(f"started {job.key.name} in container {container_id}")
    return 0


def cmd_state_fetch(config: AppConfig, logger: logging.Logger, host: str | None, project_name: str | None) -> int:
    local_host = host or public_address(config.network.public_ip_url, config.network.public_ip_timeout_seconds)
    runtime = DockerRuntime(logger, timeout_seconds=config.docker.timeout_seconds)
    try:
        reconciler = StateReconciler(LocalStateStore(config.paths.state_dir), runtime, local_host, logger)
        page = reconciler.produce_local_page(project_name)
    finally:
        runtime.close()
    print(encode_page(page))
    return 0


def cmd_state_restart(
    config: AppConfig,
    logger: logging.Logger,
    project_name: str,
    hosts: list[str],
    invoker_exec: str | None,
    dry_run: bool,
) -> int:
    remote_config = config.remote
    if invoker_exec:
        remote_config = dataclasses.replace(remote_config, invoker_exec=invoker_exec)
    executor = RemoteExecutor(remote_config)
    pages = SshPageTransport(executor).receive_pages(hosts, project_name)
    result = merge_and_decide(pages, logger)

    for key, job in sorted(result.restart.items()):
        print(f"failed hosts for experiment {key.name}: {', '.join(result.failed_hosts.get(key, []))}")
        if dry_run:
            continue
        for host in job.hosts:
            executor.relaunch(host, job)
            log_with_fields(logger, logging.INFO, "job_relaunched", job=key.name, host=host)

    for key, conflict in sorted(result.conflicts.items()):
        print(f"skipped {key.name}: {conflict}", file=sys.stderr)
    if not result.restart:
        print("nothing to restart")
    return 1 if result.conflicts else 0


def cmd_state_show(config: AppConfig) -> int:
    store = LocalStateStore(config.paths.state_dir)
    store.load()
    entries = store.entries()
    if not entries:
        print("(no experiment states recorded)")
    for entry in entries:
        print(f"  {entry.key.name:32} {entry.state.value:10} hosts={','.join(entry.config.hosts)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config)
        ensure_local_paths(config)
    except (OSError, ValueError) as exc:
        print(f"failed to load config: {exc}", file=sys.stderr)
        return 1
    logger = setup_logger(config.paths.log, verbose=args.verbose)

    try:
        if args.command == "run":
            return cmd_run(config, job_config_from_args(args), logger)
        if args.state_command == "fetch":
            return cmd_state_fetch(config, logger, args.host, args.project_name)
        if args.state_command == "restart":
            return cmd_state_restart(
                config, logger, args.project_name, args.hosts, args.invoker_exec, args.dry_run
            )
        if args.state_command == "show":
            return cmd_state_show(config)
    except HostNotInList as exc:
        log_with_fields(logger, logging.INFO, "host_not_in_list", hosts=exc.hosts, addresses=exc.addresses)
        return 0
    except KeyboardInterrupt:
        log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 1
    except InvokerError as exc:
        log_with_fields(logger, logging.ERROR, "command_failed", command=args.command, error=str(exc))
        return 1
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
