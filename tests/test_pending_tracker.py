import unittest


class TestPendingMessageTracker(unittest.IsolatedAsyncioTestCase):
    def _tracker(self, platform: str = "discord"):
        from bridge_fakes import FakeClock, FakeMessaging
        from panebridge.daemon.pending import PendingMessageTracker

        messaging = FakeMessaging(platform)
        clock = FakeClock()
        return PendingMessageTracker(messaging, clock=clock, pending_alert_ms=45000), messaging, clock

    async def test_discord_reaction_lifecycle(self) -> None:
        tracker, messaging, _ = self._tracker()
        await tracker.mark_pending("p", "codex", "ch1", "msg1", "inst1", prompt="hello")
        await tracker.mark_route_resolved("p", "codex", "inst1", "memory")
        await tracker.mark_dispatching("p", "codex", "inst1")
        await tracker.mark_completed("p", "codex", "inst1")

        self.assertEqual(
            messaging.reaction_log,
            [
                ("add", "msg1", "📥"),
                ("add", "msg1", "🧠"),
                ("replace", "msg1", "🚀"),
                ("replace", "msg1", "⏳"),
                ("replace", "msg1", "✅"),
            ],
        )
        self.assertEqual(tracker.get_pending_depth("p", "codex", "inst1"), 0)

    async def test_output_routes_to_oldest_entry(self) -> None:
        tracker, _, _ = self._tracker()
        await tracker.mark_pending("p", "codex", "thread-a", "m1", "inst1")
        await tracker.mark_pending("p", "codex", "thread-b", "m2", "inst1")

        self.assertEqual(tracker.get_pending_channel("p", "codex", "inst1"), "thread-a")
        self.assertEqual(tracker.get_pending_depth("p", "codex", "inst1"), 2)
        await tracker.mark_completed("p", "codex", "inst1")
        self.assertEqual(tracker.get_pending_channel("p", "codex", "inst1"), "thread-b")
        self.assertEqual(tracker.get_pending_message_id("p", "codex", "inst1"), "m2")
        await tracker.mark_completed("p", "codex", "inst1")
        self.assertIsNone(tracker.get_pending_channel("p", "codex", "inst1"))

    async def test_lifecycle_updates_default_to_newest_entry(self) -> None:
        tracker, messaging, _ = self._tracker()
        await tracker.mark_pending("p", "opencode", "ch", "m1")
        await tracker.mark_pending("p", "opencode", "ch", "m2")
        await tracker.mark_dispatching("p", "opencode")

        self.assertEqual(messaging.reactions["m2"], ["⏳"])
        self.assertEqual(messaging.reactions["m1"], ["📥"])

    async def test_terminal_marks_are_idempotent(self) -> None:
        tracker, messaging, _ = self._tracker()
        await tracker.mark_pending("p", "opencode", "ch", "m1")
        await tracker.mark_completed("p", "opencode")
        count = len(messaging.reaction_log)

        await tracker.mark_completed("p", "opencode")
        await tracker.mark_error("p", "opencode")
        self.assertFalse(await tracker.mark_completed_by_message_id("p", "opencode", "m1"))
        self.assertEqual(len(messaging.reaction_log), count)

    async def test_complete_by_message_id(self) -> None:
        tracker, messaging, _ = self._tracker()
        await tracker.mark_pending("p", "codex", "ch", "m1", "c1")
        await tracker.mark_pending("p", "codex", "ch", "m2", "c1")

        self.assertTrue(await tracker.mark_error_by_message_id("p", "codex", "m2", "c1"))
        self.assertEqual(messaging.reactions["m2"], ["❌"])
        self.assertEqual(tracker.get_pending_message_id("p", "codex", "c1"), "m1")
        self.assertFalse(await tracker.mark_completed_by_message_id("p", "codex", "missing", "c1"))

    async def test_missing_message_id_is_a_noop(self) -> None:
        tracker, messaging, _ = self._tracker()
        await tracker.mark_pending("p", "codex", "ch", None, "c1")
        self.assertEqual(tracker.get_pending_depth("p", "codex", "c1"), 0)
        self.assertEqual(messaging.typing_started, [])

    async def test_slack_skips_hint_and_attachment_reactions(self) -> None:
        tracker, messaging, _ = self._tracker("slack")
        await tracker.mark_pending("p", "codex", "ch", "m1")
        await tracker.mark_route_resolved("p", "codex", hint="reply")
        await tracker.mark_has_attachments("p", "codex")
        await tracker.mark_dispatching("p", "codex")

        # received/routed/processing share one emoji, so nothing is replaced.
        self.assertEqual(messaging.reaction_log, [("add", "m1", "⏳")])

    async def test_typing_indicator_is_reference_counted(self) -> None:
        tracker, messaging, _ = self._tracker()
        await tracker.mark_pending("p", "a", "ch", "m1", "i1")
        await tracker.mark_pending("p", "b", "ch", "m2", "i2")
        self.assertEqual(messaging.typing_started, ["ch"])
        self.assertEqual(tracker.typing.refs("ch"), 2)

        await tracker.mark_completed("p", "a", "i1")
        self.assertEqual(messaging.typing_stopped, [])
        await tracker.mark_error("p", "b", "i2")
        self.assertEqual(messaging.typing_stopped, ["ch"])

    async def test_retry_moves_entry_to_head(self) -> None:
        tracker, messaging, _ = self._tracker()
        await tracker.mark_pending("p", "codex", "ch", "m1", "c1")
        await tracker.mark_pending("p", "codex", "ch", "m2", "c1")
        await tracker.mark_retry("p", "codex", "c1")

        self.assertEqual(tracker.get_pending_message_id("p", "codex", "c1"), "m2")
        self.assertEqual(messaging.reactions["m2"], ["⚠️"])
        self.assertEqual(tracker.get_runtime_snapshot("p", "codex", "c1")["lastTerminalStage"], "retry")
        # m2 released its typing reference; m1 still holds one.
        self.assertEqual(tracker.typing.refs("ch"), 1)

    async def test_reaction_failures_do_not_propagate(self) -> None:
        tracker, messaging, _ = self._tracker()
        messaging.fail_reactions = True
        await tracker.mark_pending("p", "codex", "ch", "m1")
        await tracker.mark_dispatching("p", "codex")
        await tracker.mark_completed("p", "codex")
        self.assertEqual(tracker.get_pending_depth("p", "codex"), 0)

    async def test_clear_pending_for_instance(self) -> None:
        tracker, messaging, _ = self._tracker()
        await tracker.mark_pending("p", "codex", "ch", "m1", "c1")
        await tracker.mark_pending("p", "codex", "ch", "m2", "c1")
        self.assertEqual(tracker.clear_pending_for_instance("p", "codex", "c1"), 2)
        self.assertEqual(tracker.get_pending_depth("p", "codex", "c1"), 0)
        self.assertEqual(messaging.typing_stopped, ["ch"])

    async def test_runtime_snapshot_and_stuck_alert(self) -> None:
        tracker, _, clock = self._tracker()
        await tracker.mark_pending("p", "codex", "ch", "m1", "c1", prompt="one  two\nthree")
        clock.advance(1000)
        await tracker.mark_dispatching("p", "codex", "c1")
        clock.advance(500)

        snap = tracker.get_runtime_snapshot("p", "codex", "c1")
        self.assertEqual(snap["pendingDepth"], 1)
        self.assertEqual(snap["oldestStage"], "processing")
        self.assertEqual(snap["oldestAgeMs"], 1500)
        self.assertEqual(tracker.get_pending_prompt_tail("p", "codex", "c1"), "one two three")

        self.assertEqual(tracker.check_stuck_entries(), [])
        clock.advance(45000)
        self.assertEqual(tracker.check_stuck_entries(), ["p:c1"])
        self.assertEqual(tracker.check_stuck_entries(), [])


if __name__ == "__main__":
    unittest.main()
