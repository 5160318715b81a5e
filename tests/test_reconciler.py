from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from invoker.errors import ContainerNotFound, RuntimeQueryError, StateStoreIO
from invoker.models import DesiredState, JobConfig, JobKey, ReconcileResult, StateMatch
from invoker.reconciler import StateReconciler, decode_page, encode_page, merge_and_decide, merge_pages
from invoker.store import LocalStateStore

HOSTS = ("10.0.0.1", "10.0.0.2")


def make_config(experiment: str = "exp", **overrides: object) -> JobConfig:
    config = JobConfig(
        project_name="proj",
        hosts=HOSTS,
        nproc_per_node=8,
        experiment_name=experiment,
        port=1234,
        run_name="main",
        max_repeats=-1,
        rest=("hf_action_restartable=running",),
    )
    return dataclasses.replace(config, **overrides)


class FakeRuntime:
    def __init__(self, exit_codes: dict[str, int | Exception]) -> None:
        self.exit_codes = exit_codes
        self.queried: list[str] = []

    def state_and_exit_code(self, name: str) -> tuple[str, int]:
        self.queried.append(name)
        if name not in self.exit_codes:
            raise ContainerNotFound(name)
        value = self.exit_codes[name]
        if isinstance(value, Exception):
            raise value
        return ("exited" if value else "running"), value


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_invoker")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def observation(actual: int, config: JobConfig | None = None) -> StateMatch:
    config = config or make_config()
    return StateMatch(expected=config.desired_state(), actual=actual, config=config)


class ProduceLocalPageTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.store = LocalStateStore(Path(self.temp_dir.name))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _record(self, config: JobConfig) -> None:
        self.store.set(config.key, config.desired_state(), config)
        self.store.flush()

    def test_observes_jobs_listing_this_host(self) -> None:
        self._record(make_config("exp"))
        self._record(make_config("elsewhere", hosts=("10.0.0.7",)))
        runtime = FakeRuntime({"proj-exp": 137})
        reconciler = StateReconciler(self.store, runtime, "10.0.0.1", quiet_logger())

        page = reconciler.produce_local_page()

        self.assertEqual(list(page), ["10.0.0.1"])
        self.assertEqual(page["10.0.0.1"], {JobKey("proj", "exp"): observation(137)})
        self.assertEqual(runtime.queried, ["proj-exp"])

    def test_missing_container_counts_as_failed(self) -> None:
        self._record(make_config())
        reconciler = StateReconciler(self.store, FakeRuntime({}), "10.0.0.2", quiet_logger())
        page = reconciler.produce_local_page()
        self.assertEqual(page["10.0.0.2"][JobKey("proj", "exp")].actual, 1)

    def test_custom_container_name_is_queried(self) -> None:
        self._record(make_config(container_name="trainer"))
        runtime = FakeRuntime({"trainer": 0})
        StateReconciler(self.store, runtime, "10.0.0.1", quiet_logger()).produce_local_page()
        self.assertEqual(runtime.queried, ["trainer"])

    def test_runtime_error_aborts_pass(self) -> None:
        self._record(make_config())
        runtime = FakeRuntime({"proj-exp": RuntimeQueryError("timed out")})
        reconciler = StateReconciler(self.store, runtime, "10.0.0.1", quiet_logger())
        with self.assertRaises(StateStoreIO):
            reconciler.produce_local_page()

    def test_project_filter(self) -> None:
        self._record(make_config())
        self._record(make_config(project_name="other"))
        reconciler = StateReconciler(self.store, FakeRuntime({}), "10.0.0.1", quiet_logger())
        page = reconciler.produce_local_page("other")
        self.assertEqual(list(page["10.0.0.1"]), [JobKey("other", "exp")])


class PageCodecTest(unittest.TestCase):
    def test_encode_decode(self) -> None:
        page = {"10.0.0.1": {JobKey("proj", "exp"): observation(255)}}
        text = encode_page(page)
        self.assertIn('"proj-exp"', text)
        self.assertEqual(decode_page(text), page)

    def test_malformed_payload(self) -> None:
        for payload in ["not json", "[]", '{"h": []}', '{"h": {"proj-exp": {"Expected": "running"}}}']:
            with self.subTest(payload=payload):
                with self.assertRaises(StateStoreIO):
                    decode_page(payload)

    def test_invalid_run_args_are_rejected(self) -> None:
        entry = observation(1).to_dict()
        entry["RunArgs"]["ProjectName"] = 5
        payload = json.dumps({"10.0.0.2": {"proj-exp": entry}})
        with self.assertRaises(StateStoreIO) as ctx:
            decode_page(payload)
        self.assertIn("ProjectName", str(ctx.exception))


class MergeAndDecideTest(unittest.TestCase):
    def decide(self, pages: list[dict[str, dict[JobKey, StateMatch]]]) -> ReconcileResult:
        return merge_and_decide(pages, quiet_logger())

    def test_merge_later_page_wins(self) -> None:
        key = JobKey("proj", "exp")
        merged = merge_pages(
            [
                {"10.0.0.1": {key: observation(1)}},
                {"10.0.0.1": {key: observation(0)}},
                {"10.0.0.2": {key: observation(137)}},
            ]
        )
        self.assertEqual(merged["10.0.0.1"][key].actual, 0)
        self.assertEqual(merged["10.0.0.2"][key].actual, 137)

    def test_one_crashed_host_restarts_whole_job(self) -> None:
        key = JobKey("proj", "exp")
        result = self.decide(
            [
                {"10.0.0.1": {key: observation(137)}},
                {"10.0.0.2": {key: observation(1)}},
            ]
        )
        self.assertEqual(result.restart, {key: make_config()})
        self.assertEqual(result.failed_hosts[key], ["10.0.0.2"])
        self.assertEqual(result.conflicts, {})

    def test_all_live_hosts_means_no_restart(self) -> None:
        key = JobKey("proj", "exp")
        result = self.decide(
            [
                {"10.0.0.1": {key: observation(137)}},
                {"10.0.0.2": {key: observation(137)}},
            ]
        )
        self.assertEqual(result.restart, {})

    def test_stoppable_job_is_never_restarted(self) -> None:
        config = make_config(rest=())
        key = config.key
        result = self.decide([{"10.0.0.1": {key: observation(1, config)}}])
        self.assertEqual(result.restart, {})

    def test_conflict_only_excludes_that_job(self) -> None:
        drifted = make_config(nproc_per_node=4)
        other = make_config("other")
        key = JobKey("proj", "exp")
        result = self.decide(
            [
                {"10.0.0.1": {key: observation(1), other.key: observation(1, other)}},
                {"10.0.0.2": {key: observation(1, drifted), other.key: observation(0, other)}},
            ]
        )
        self.assertIn(key, result.conflicts)
        self.assertNotIn(key, result.restart)
        self.assertEqual(result.restart, {other.key: other})
        self.assertEqual(result.conflicts[key].hosts, ["10.0.0.1", "10.0.0.2"])

    def test_empty_input(self) -> None:
        result = self.decide([])
        self.assertEqual(result.restart, {})
        self.assertEqual(result.conflicts, {})


if __name__ == "__main__":
    unittest.main()
