import tempfile
import unittest
from pathlib import Path


class TestCapturePoller(unittest.IsolatedAsyncioTestCase):
    def _setup(self, instances=None, **overrides):
        from bridge_fakes import FakeClock, FakeMessaging, FakeTerminal, make_project, make_store
        from panebridge.daemon.capture import CapturePoller
        from panebridge.daemon.pending import PendingMessageTracker
        from panebridge.kernel.settings import BridgeSettings

        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.store = make_store(Path(td.name), make_project(instances=instances))
        self.messaging = FakeMessaging()
        self.terminal = FakeTerminal()
        self.clock = FakeClock()
        self.tracker = PendingMessageTracker(self.messaging, clock=self.clock)
        self.settings = BridgeSettings(**overrides)
        self.poller = CapturePoller(
            state=self.store,
            terminal=self.terminal,
            messaging=self.messaging,
            tracker=self.tracker,
            settings=self.settings,
            clock=self.clock,
        )

    def _codex(self, window: str = "demo-codex", channel: str = "ch-1", **kw):
        from panebridge.contracts.v1 import InstanceState

        return InstanceState(instance_id="codex", agent_type="codex", tmux_window=window, channel_id=channel, **kw)

    async def test_first_capture_is_baseline_then_deltas_are_sent(self) -> None:
        self._setup()
        self.terminal.queue("demo-opencode", "$ ready", "$ ready\nnew output line")

        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent, [])
        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent, [("ch-1", "new output line")])

    async def test_turn_completes_after_quiet_polls(self) -> None:
        self._setup()
        self.terminal.queue("demo-opencode", "$ ", "$ \nanswer")
        await self.poller.poll_once()
        await self.tracker.mark_pending("demo", "opencode", "ch-1", "m1", "opencode")

        await self.poller.poll_once()
        self.assertEqual(self.messaging.texts(), ["answer"])
        self.assertEqual(self.poller.get_instance_snapshot("demo", "opencode")["capturePhase"], "streaming")

        await self.poller.poll_once()
        self.assertEqual(self.tracker.get_pending_depth("demo", "opencode", "opencode"), 1)
        self.assertEqual(self.poller.get_instance_snapshot("demo", "opencode")["captureQuietPolls"], 1)

        await self.poller.poll_once()
        self.assertEqual(self.tracker.get_pending_depth("demo", "opencode", "opencode"), 0)
        self.assertEqual(self.messaging.reactions["m1"][-1], "✅")
        self.assertEqual(self.poller.get_instance_snapshot("demo", "opencode")["capturePhase"], "idle")

    async def test_codex_waits_longer_before_first_output(self) -> None:
        self._setup(instances=[self._codex()], capture_pending_initial_quiet_polls_codex=3)
        self.terminal.queue("demo-codex", "› ")
        await self.poller.poll_once()
        await self.tracker.mark_pending("demo", "codex", "ch-1", "m1", "codex")

        await self.poller.poll_once()
        await self.poller.poll_once()
        self.assertEqual(self.tracker.get_pending_depth("demo", "codex", "codex"), 1)
        await self.poller.poll_once()
        self.assertEqual(self.tracker.get_pending_depth("demo", "codex", "codex"), 0)

    async def test_prompt_echo_is_suppressed(self) -> None:
        self._setup()
        prompt = "please refactor the parser module"
        self.terminal.queue("demo-opencode", "$ ", f"$ \n{prompt}", f"$ \n{prompt}\nDone refactoring.")
        await self.poller.poll_once()
        await self.tracker.mark_pending("demo", "opencode", "ch-1", "m1", "opencode", prompt=prompt)

        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent, [])
        # The echo counts as activity, not as a quiet poll.
        self.assertEqual(self.poller.get_instance_snapshot("demo", "opencode")["captureQuietPolls"], 0)

        await self.poller.poll_once()
        self.assertEqual(self.messaging.texts(), ["Done refactoring."])

    async def test_persistent_echo_falls_back_to_raw_output(self) -> None:
        self._setup(capture_prompt_echo_max_polls=1)
        prompt = "please refactor the parser module"
        self.terminal.queue("demo-opencode", "$ ", f"$ \n{prompt}", f"$ \n{prompt}\n{prompt}")
        await self.poller.poll_once()
        await self.tracker.mark_pending("demo", "opencode", "ch-1", "m1", "opencode", prompt=prompt)

        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent, [])
        await self.poller.poll_once()
        self.assertEqual(self.messaging.texts(), [prompt])

    async def test_codex_final_only_buffers_until_completion(self) -> None:
        self._setup(
            instances=[self._codex()],
            capture_codex_final_only=True,
            capture_pending_initial_quiet_polls_codex=3,
        )
        self.terminal.queue("demo-codex", "› ", "› \nworking step 1", "› \nworking step 1\nworking step 2")
        await self.poller.poll_once()
        await self.tracker.mark_pending("demo", "codex", "ch-1", "m1", "codex")

        await self.poller.poll_once()
        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent, [])
        self.assertEqual(self.poller.get_instance_snapshot("demo", "codex")["captureBufferedChunks"], 2)

        await self.poller.poll_once()
        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent, [("ch-1", "working step 1\nworking step 2")])
        self.assertEqual(self.tracker.get_pending_depth("demo", "codex", "codex"), 0)

    async def test_output_follows_oldest_request_unless_queue_is_deep(self) -> None:
        self._setup()
        self.terminal.queue("demo-opencode", "$ ", "$ \nfirst", "$ \nfirst\nsecond")
        await self.poller.poll_once()
        await self.tracker.mark_pending("demo", "opencode", "thread-a", "m1", "opencode")

        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent[-1], ("thread-a", "first"))

        await self.tracker.mark_pending("demo", "opencode", "thread-b", "m2", "opencode")
        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent[-1], ("ch-1", "second"))

    async def test_failing_instance_does_not_block_others(self) -> None:
        from panebridge.contracts.v1 import InstanceState
        from panebridge.kernel.errors import TerminalError

        self._setup(
            instances=[
                InstanceState(instance_id="opencode", agent_type="opencode", tmux_window="w-good", channel_id="ch-1"),
                self._codex(window="w-bad", channel="ch-2"),
            ]
        )
        self.terminal.capture_errors["w-bad"] = TerminalError("boom")
        self.terminal.queue("w-good", "a", "a\nb")

        await self.poller.poll_once()
        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent, [("ch-1", "b")])

    async def test_event_hook_instances_are_not_polled(self) -> None:
        self._setup(instances=[self._codex(event_hook=True)])
        self.terminal.queue("demo-codex", "x", "x\ny")
        await self.poller.poll_once()
        await self.poller.poll_once()
        self.assertEqual(self.messaging.sent, [])
        self.assertEqual(self.poller.get_instance_snapshot("demo", "codex"), {})

    async def test_stale_pending_turn_is_flagged(self) -> None:
        self._setup(instances=[self._codex()], capture_stale_alert_ms=1000)
        self.terminal.queue("demo-codex", "› ")
        await self.poller.poll_once()
        await self.tracker.mark_pending("demo", "codex", "ch-1", "m1", "codex")

        await self.poller.poll_once()
        self.assertFalse(self.poller.get_instance_snapshot("demo", "codex")["captureStale"])
        self.clock.advance(2000)
        await self.poller.poll_once()
        self.assertTrue(self.poller.get_instance_snapshot("demo", "codex")["captureStale"])


class TestDeltaHelpers(unittest.TestCase):
    def test_extract_delta(self) -> None:
        from panebridge.daemon.capture import extract_delta

        self.assertEqual(extract_delta("a\nb", "a\nb\nc"), "\nc")
        self.assertEqual(extract_delta("a\nb\nc", "b\nc\nd"), "\nd")
        self.assertEqual(extract_delta("x\ny", "x\ny"), "")

    def test_codex_status_noise_is_dropped(self) -> None:
        from panebridge.daemon.capture import normalize_delta_for_agent

        delta = "real answer\n  ? for shortcuts   42% context left\nexport AGENT_PROJECT=demo"
        self.assertEqual(normalize_delta_for_agent("codex", delta, "", delta), "real answer")
        self.assertEqual(normalize_delta_for_agent("opencode", delta, "", delta), delta)

    def test_strip_prompt_echo_keeps_role_lines(self) -> None:
        from panebridge.daemon.capture import strip_prompt_echo

        prompt = "explain the build failure please"
        self.assertEqual(strip_prompt_echo(f"{prompt}\nIt failed because", [prompt]), "It failed because")
        self.assertEqual(strip_prompt_echo("assistant: hi", [prompt]), "assistant: hi")
        self.assertEqual(strip_prompt_echo("short", ["tiny"]), "short")


if __name__ == "__main__":
    unittest.main()
