import subprocess
import unittest
from unittest import mock


def _completed(returncode: int = 0, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(args=["tmux"], returncode=returncode, stdout=stdout, stderr=stderr)


class TestTmuxDriver(unittest.TestCase):
    def test_capture_uses_history_and_joined_lines(self) -> None:
        from panebridge.runners.tmux import TmuxDriver

        with mock.patch("panebridge.runners.tmux.subprocess.run", return_value=_completed(stdout="hello\n")) as run:
            out = TmuxDriver(history_lines=500).capture_pane_from_window("bridge", "demo-codex")
        self.assertEqual(out, "hello\n")
        args = run.call_args[0][0]
        self.assertEqual(args[:4], ["tmux", "capture-pane", "-p", "-J"])
        self.assertIn("bridge:demo-codex.0", args)
        self.assertIn("-500", args)

    def test_missing_target_is_classified(self) -> None:
        from panebridge.kernel.errors import TerminalError, TerminalTargetMissing
        from panebridge.runners.tmux import TmuxDriver

        driver = TmuxDriver()
        with mock.patch(
            "panebridge.runners.tmux.subprocess.run", return_value=_completed(1, stderr="can't find window: w")
        ):
            with self.assertRaises(TerminalTargetMissing):
                driver.send_enter_to_window("s", "w")
        with mock.patch("panebridge.runners.tmux.subprocess.run", return_value=_completed(1, stderr="server exited")):
            with self.assertRaises(TerminalError) as cm:
                driver.send_enter_to_window("s", "w")
            self.assertNotIsInstance(cm.exception, TerminalTargetMissing)

    def test_single_line_text_is_typed_literally(self) -> None:
        from panebridge.runners.tmux import TmuxDriver

        calls = []

        def fake_run(args, **kwargs):
            calls.append(args)
            return _completed(stdout="0\n")

        with mock.patch("panebridge.runners.tmux.subprocess.run", side_effect=fake_run):
            TmuxDriver().send_keys_to_window("s", "w", "echo hi")
        self.assertEqual(calls[1], ["tmux", "send-keys", "-t", "s:w.0", "-l", "echo hi"])
        self.assertEqual(calls[2], ["tmux", "send-keys", "-t", "s:w.0", "Enter"])

    def test_pane_current_command(self) -> None:
        from panebridge.runners.tmux import TmuxDriver

        with mock.patch("panebridge.runners.tmux.subprocess.run", return_value=_completed(stdout="bash\n")):
            self.assertEqual(TmuxDriver().get_pane_current_command("s", "w"), "bash")


if __name__ == "__main__":
    unittest.main()
