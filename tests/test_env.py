import tempfile
import unittest
from pathlib import Path


class TestPrepareVmEnvVars(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.no_dt = Path(self._td.name) / "missing-compatible"

    def test_well_known_vars_and_overrides(self) -> None:
        from krun_launch.env import prepare_vm_env_vars

        host = {"PATH": "/usr/bin", "RUST_LOG": "debug", "HOME": "/home/u", "SECRET": "s"}
        env = prepare_vm_env_vars(
            [("HOME", None), ("EXTRA", "1"), ("PATH", "/opt/bin")],
            environ=host,
            compatible_path=self.no_dt,
        )
        self.assertEqual(env, {"PATH": "/opt/bin", "RUST_LOG": "debug", "HOME": "/home/u", "EXTRA": "1"})

    def test_missing_inherited_override_is_configuration_error(self) -> None:
        from krun_launch.env import prepare_vm_env_vars
        from krun_launch.errors import ConfigurationError

        with self.assertRaises(ConfigurationError) as cm:
            prepare_vm_env_vars([("NOPE", None)], environ={}, compatible_path=self.no_dt)
        self.assertIn("NOPE", str(cm.exception))

    def test_asahi_soc_sets_mesa_override(self) -> None:
        from krun_launch.env import prepare_vm_env_vars

        compatible = Path(self._td.name) / "compatible"
        compatible.write_bytes(b"apple,j314s\0apple,t6000\0apple,arm-platform\0")
        env = prepare_vm_env_vars([], environ={}, compatible_path=compatible)
        self.assertEqual(env, {"MESA_LOADER_DRIVER_OVERRIDE": "asahi"})

        # An explicit host value wins over detection.
        env = prepare_vm_env_vars(
            [], environ={"MESA_LOADER_DRIVER_OVERRIDE": "zink"}, compatible_path=compatible
        )
        self.assertEqual(env["MESA_LOADER_DRIVER_OVERRIDE"], "zink")

    def test_x11_display_is_forwarded_as_host_display(self) -> None:
        from krun_launch.env import prepare_vm_env_vars

        env = prepare_vm_env_vars(
            [],
            environ={"DISPLAY": ":0", "XAUTHORITY": "/run/user/1000/xauth"},
            compatible_path=self.no_dt,
        )
        self.assertEqual(env, {"HOST_DISPLAY": ":0", "XAUTHORITY": "/run/user/1000/xauth"})
        self.assertEqual(prepare_vm_env_vars([], environ={"XAUTHORITY": "x"}, compatible_path=self.no_dt), {})


class TestPrepareProcEnvVars(unittest.TestCase):
    def test_session_vars_are_dropped(self) -> None:
        from krun_launch.env import DROP_ENV_VARS, prepare_proc_env_vars

        host = {k: "x" for k in DROP_ENV_VARS}
        host.update({"PATH": "/usr/bin", "KEEP": "1"})
        env = prepare_proc_env_vars([("NEW", "2"), ("KEEP", None), ("DISPLAY", ":1")], environ=host)
        self.assertEqual(env, {"PATH": "/usr/bin", "KEEP": "1", "NEW": "2"})


class TestFindExec(unittest.TestCase):
    def test_find_in_path_and_fallback(self) -> None:
        import os

        from krun_launch.env import find_in_path, find_krun_exec

        with tempfile.TemporaryDirectory() as td:
            tool = Path(td) / "krun-guest"
            tool.write_text("#!/bin/sh\n", encoding="utf-8")
            os.chmod(tool, 0o755)
            self.assertEqual(find_in_path("krun-guest", environ={"PATH": td}), str(tool))
            self.assertEqual(find_krun_exec("krun-guest", environ={"PATH": td}), tool)

            empty = Path(td) / "empty"
            empty.mkdir()
            self.assertIsNone(find_in_path("krun-guest", environ={"PATH": str(empty)}))
            self.assertEqual(find_krun_exec("krun-guest", environ={"PATH": str(empty)}).name, "krun-guest")


if __name__ == "__main__":
    unittest.main()
