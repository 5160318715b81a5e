from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from invoker.utils import load_env_file, trim_path_for_length


class UtilsTest(unittest.TestCase):
    def test_trim_path_for_length(self) -> None:
        self.assertEqual(trim_path_for_length("/tmp/a", 70), "/tmp/a")
        self.assertEqual(
            trim_path_for_length("/home/alice/.cache/higgsfield/proj", 20),
            "~/.cache/higgsfield/proj"[:20] + "...",
        )
        self.assertEqual(trim_path_for_length("/home/alice/x/y", 10), "~/x/y")

    def test_load_env_file(self) -> None:
        with TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "nccl_config_env"
            self.assertEqual(load_env_file(path), {})
            path.write_text("NCCL_DEBUG=INFO\nexport NCCL_SOCKET_IFNAME=eth0\n# comment\n", encoding="utf-8")
            self.assertEqual(load_env_file(path), {"NCCL_DEBUG": "INFO", "NCCL_SOCKET_IFNAME": "eth0"})


if __name__ == "__main__":
    unittest.main()
