import argparse
import os
import tempfile
import unittest
from pathlib import Path

from common.config import ConfigError
from switcher.config import (
    DEFAULT_PROC_DIR,
    PROC_DIR_ENV,
    SD_LISTEN_FDS_START,
    build_config,
    parse_agents_dirs,
)
from switcher.main import build_parser

ENV = {"USER": "jdoe", "HOME": "/home/jdoe"}


def _args(*argv: str) -> argparse.Namespace:
    return build_parser().parse_args(list(argv))


class TestBuildConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = build_config(_args(), ENV)
        self.assertEqual(cfg.socket_path, Path("/tmp/ssh-agent.jdoe"))
        self.assertEqual(cfg.agents_dirs, (Path("/home/jdoe/.ssh/agent"), Path("/tmp")))
        self.assertEqual(cfg.proc_dir, DEFAULT_PROC_DIR)
        self.assertEqual(cfg.home, Path("/home/jdoe"))
        self.assertFalse(cfg.daemon)
        self.assertIsNone(cfg.log_file)
        self.assertIsNone(cfg.pid_file)
        self.assertEqual(cfg.log_level, "info")

    def test_flags(self) -> None:
        cfg = build_config(
            _args("--socket-path", "/run/x.sock", "--agents-dirs", "/a::/b", "--log-level", "debug"),
            ENV,
        )
        self.assertEqual(cfg.socket_path, Path("/run/x.sock"))
        self.assertEqual(cfg.agents_dirs, (Path("/a"), Path("/b")))
        self.assertEqual(cfg.log_level, "debug")

    def test_daemon_defaults_follow_xdg(self) -> None:
        env = dict(ENV, XDG_STATE_HOME="/state", XDG_RUNTIME_DIR="/run/user/1000")
        cfg = build_config(_args("--daemon"), env)
        self.assertTrue(cfg.daemon)
        self.assertEqual(cfg.log_file, Path("/state/ssh-agent-switcher.log"))
        self.assertEqual(cfg.pid_file, Path("/run/user/1000/ssh-agent-switcher.pid"))

    def test_pid_file_falls_back_to_state_dir(self) -> None:
        cfg = build_config(_args("--daemon"), ENV)
        self.assertEqual(cfg.pid_file, Path("/home/jdoe/.local/state/ssh-agent-switcher.pid"))

    def test_proc_dir_override(self) -> None:
        cfg = build_config(_args(), dict(ENV, **{PROC_DIR_ENV: "/fake/proc"}))
        self.assertEqual(cfg.proc_dir, Path("/fake/proc"))

    def test_missing_user(self) -> None:
        with self.assertRaises(ConfigError):
            build_config(_args(), {"HOME": "/home/jdoe"})

    def test_missing_user_ok_with_explicit_socket(self) -> None:
        cfg = build_config(_args("--socket-path", "/tmp/s"), {"HOME": "/home/jdoe"})
        self.assertEqual(cfg.socket_path, Path("/tmp/s"))

    def test_missing_home(self) -> None:
        with self.assertRaises(ConfigError):
            build_config(_args(), {"USER": "jdoe"})

    def test_yaml_file_then_flags(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "switcher.yaml"
            p.write_text(
                "socket_path: /tmp/from-yaml\n"
                "agents_dirs: [/x, /y]\n"
                "log_level: warning\n",
                encoding="utf-8",
            )
            cfg = build_config(_args("--config", str(p), "--log-level", "debug"), ENV)
        self.assertEqual(cfg.socket_path, Path("/tmp/from-yaml"))
        self.assertEqual(cfg.agents_dirs, (Path("/x"), Path("/y")))
        self.assertEqual(cfg.log_level, "debug")

    def test_yaml_unknown_keys(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "switcher.yaml"
            p.write_text("socketPath: /tmp/x\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                build_config(_args("--config", str(p)), ENV)

    def test_yaml_missing_file(self) -> None:
        with self.assertRaises(ConfigError):
            build_config(_args("--config", "/nonexistent/switcher.yaml"), ENV)

    def test_config_is_immutable(self) -> None:
        cfg = build_config(_args(), ENV)
        with self.assertRaises(AttributeError):
            cfg.socket_path = Path("/elsewhere")  # type: ignore[misc]

    def test_not_socket_activated_by_default(self) -> None:
        self.assertIsNone(build_config(_args(), ENV).listen_fd)

    def test_socket_activation_without_listen_pid(self) -> None:
        cfg = build_config(_args(), dict(ENV, LISTEN_FDS="1"))
        self.assertEqual(cfg.listen_fd, SD_LISTEN_FDS_START)

    def test_socket_activation_for_this_process(self) -> None:
        cfg = build_config(_args(), dict(ENV, LISTEN_FDS="1", LISTEN_PID=str(os.getpid())))
        self.assertEqual(cfg.listen_fd, SD_LISTEN_FDS_START)

    def test_socket_activation_for_another_process_is_ignored(self) -> None:
        cfg = build_config(_args(), dict(ENV, LISTEN_FDS="1", LISTEN_PID=str(os.getpid() + 1)))
        self.assertIsNone(cfg.listen_fd)

    def test_socket_activation_with_bad_count(self) -> None:
        with self.assertRaises(ConfigError):
            build_config(_args(), dict(ENV, LISTEN_FDS="many"))


class TestParseAgentsDirs(unittest.TestCase):
    def test_rejects_empty(self) -> None:
        with self.assertRaises(ConfigError):
            parse_agents_dirs("::")

    def test_rejects_wrong_type(self) -> None:
        with self.assertRaises(ConfigError):
            parse_agents_dirs(42)


if __name__ == "__main__":
    unittest.main()
