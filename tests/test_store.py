import json
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from invoker.errors import ConfigValidationError, NotFound, StateStoreIO
from invoker.models import DesiredState, JobConfig, JobKey
from invoker.store import LocalStateStore, parse_state_file_name


def make_config(experiment: str = "exp", rest: tuple[str, ...] = ("hf_action_restartable=running",)) -> JobConfig:
    return JobConfig(
        project_name="proj",
        hosts=("10.0.0.1", "10.0.0.2"),
        nproc_per_node=2,
        experiment_name=experiment,
        port=1234,
        run_name="main",
        max_repeats=-1,
        rest=rest,
    )


def snapshot(directory: Path) -> dict[str, bytes]:
    return {path.name: path.read_bytes() for path in directory.iterdir() if path.is_file()}


class FileNameGrammarTest(unittest.TestCase):
    def test_parse(self) -> None:
        self.assertEqual(
            parse_state_file_name("proj.exp.running"),
            (JobKey("proj", "exp"), DesiredState.RUNNING),
        )
        self.assertEqual(
            parse_state_file_name("proj.exp.stoppable"),
            (JobKey("proj", "exp"), DesiredState.STOPPABLE),
        )
        for name in ["proj.exp", "proj.exp.running.bak", "proj.exp.paused", "notes.txt", ".exp.running"]:
            with self.subTest(name=name):
                self.assertIsNone(parse_state_file_name(name))


class LocalStateStoreTest(unittest.TestCase):
    def test_round_trip(self) -> None:
        with TemporaryDirectory() as temp_dir:
            store = LocalStateStore(Path(temp_dir))
            config = make_config()
            store.set(config.key, config.desired_state(), config)
            store.flush()
            self.assertTrue((Path(temp_dir) / "proj.exp.running").exists())

            reloaded = LocalStateStore(Path(temp_dir))
            reloaded.load()
            entry = reloaded.get(JobKey("proj", "exp"))
            self.assertEqual(entry.key, config.key)
            self.assertEqual(entry.state, DesiredState.RUNNING)
            self.assertEqual(entry.config, config)

    def test_set_upserts(self) -> None:
        with TemporaryDirectory() as temp_dir:
            store = LocalStateStore(Path(temp_dir))
            running = make_config()
            stoppable = make_config(rest=())
            store.set(running.key, running.desired_state(), running)
            store.set(stoppable.key, stoppable.desired_state(), stoppable)
            self.assertEqual(len(store), 1)
            store.flush()
            self.assertEqual(sorted(snapshot(Path(temp_dir))), ["proj.exp.stoppable"])

    def test_get_missing_raises_not_found(self) -> None:
        with TemporaryDirectory() as temp_dir:
            store = LocalStateStore(Path(temp_dir))
            with self.assertRaises(NotFound):
                store.get(JobKey("proj", "nope"))
            with self.assertRaises(KeyError):
                store.get(JobKey("proj", "nope"))

    def test_unrecognized_names_are_skipped(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "proj.exp.paused").write_text("garbage", encoding="utf-8")
            (root / "readme.txt").write_text("garbage", encoding="utf-8")
            (root / "a.b.c.running").write_text("garbage", encoding="utf-8")
            (root / "proj.dir.running").mkdir()
            store = LocalStateStore(root)
            store.load()
            self.assertEqual(len(store), 0)

    def test_bad_body_fails_whole_load(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            store = LocalStateStore(root)
            config = make_config()
            store.set(config.key, config.desired_state(), config)
            store.flush()
            (root / "proj.broken.running").write_text("{not json", encoding="utf-8")
            with self.assertRaises(StateStoreIO) as ctx:
                LocalStateStore(root).load()
            self.assertIn("proj.broken.running", str(ctx.exception))

    def test_flush_is_idempotent_and_keeps_stray_files(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "notes.txt").write_text("keep me", encoding="utf-8")
            store = LocalStateStore(root)
            for experiment in ["b", "a"]:
                config = make_config(experiment=experiment)
                store.set(config.key, config.desired_state(), config)
            store.flush()
            first = snapshot(root)
            store.flush()
            self.assertEqual(snapshot(root), first)
            self.assertEqual(first["notes.txt"], b"keep me")
            self.assertEqual(sorted(first), ["notes.txt", "proj.a.running", "proj.b.running"])

    def test_flush_removes_entries_missing_in_memory(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "old.job.running").write_text("{}", encoding="utf-8")
            store = LocalStateStore(root)
            config = make_config()
            store.set(config.key, config.desired_state(), config)
            store.flush()
            self.assertEqual(sorted(snapshot(root)), ["proj.exp.running"])

    def test_failed_write_keeps_existing_state_files(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            store = LocalStateStore(root)
            for experiment in ["a", "c"]:
                config = make_config(experiment=experiment)
                store.set(config.key, config.desired_state(), config)
            store.flush()
            before = snapshot(root)

            (root / "proj.b.running").mkdir()
            blocked = make_config(experiment="b")
            store.set(blocked.key, blocked.desired_state(), blocked)
            with self.assertRaises(StateStoreIO):
                store.flush()

            self.assertEqual(snapshot(root), before)

    def test_invalid_run_args_fail_load(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            body = make_config().to_dict()
            body.update({"Hosts": [], "NProcPerNode": 0})
            (root / "proj.exp.running").write_text(json.dumps(body), encoding="utf-8")
            with self.assertRaises(StateStoreIO) as ctx:
                LocalStateStore(root).load()
            self.assertIn("NProcPerNode", str(ctx.exception))

    def test_name_must_agree_with_body(self) -> None:
        cases = {
            "proj.other.running": make_config(),
            "proj.exp.running": make_config(rest=()),
            "proj.exp.stoppable": make_config(),
        }
        for name, config in cases.items():
            with self.subTest(name=name), TemporaryDirectory() as temp_dir:
                root = Path(temp_dir)
                (root / name).write_text(json.dumps(config.to_dict()), encoding="utf-8")
                with self.assertRaises(StateStoreIO) as ctx:
                    LocalStateStore(root).load()
                self.assertIn(name, str(ctx.exception))

    def test_set_rejects_mismatched_key_or_state(self) -> None:
        with TemporaryDirectory() as temp_dir:
            store = LocalStateStore(Path(temp_dir))
            config = make_config()
            with self.assertRaises(ConfigValidationError):
                store.set(JobKey("proj", "other"), DesiredState.RUNNING, config)
            with self.assertRaises(ConfigValidationError):
                store.set(config.key, DesiredState.STOPPABLE, config)
            self.assertEqual(len(store), 0)


if __name__ == "__main__":
    unittest.main()
