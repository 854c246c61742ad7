import asyncio
import json
import unittest


class TestLocalAgentEventHookClient(unittest.IsolatedAsyncioTestCase):
    def _client(self, responses, **kw):
        import httpx

        from bridge_fakes import FakeClock
        from panebridge.daemon.event_hook import LocalAgentEventHookClient

        self.requests = []
        script = list(responses)

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(json.loads(request.content))
            outcome = script.pop(0) if len(script) > 1 else script[0]
            if isinstance(outcome, Exception):
                raise outcome
            return httpx.Response(outcome, text="OK")

        self.clock = kw.pop("clock", FakeClock())
        opts = dict(enabled=True, retry_max=3, retry_base_ms=250, retry_max_delay_ms=5000, auto_drain=False)
        opts.update(kw)
        client = LocalAgentEventHookClient(transport=httpx.MockTransport(handler), clock=self.clock, **opts)
        self.addAsyncCleanup(client.aclose)
        return client

    async def test_retry_delay_is_exponential_and_capped(self) -> None:
        client = self._client([200])
        self.assertEqual(
            [client.compute_retry_delay_ms(a) for a in (1, 2, 3, 4, 5, 6)],
            [250, 500, 1000, 2000, 4000, 5000],
        )

    async def test_failed_outbox_entry_is_retried_after_backoff(self) -> None:
        client = self._client([500, 200])
        self.assertTrue(await client.emit_codex_start("demo", "codex", turn_id="t1"))
        start = self.clock.now

        await client.drain_outbox()
        self.assertEqual(len(self.requests), 1)
        self.assertEqual(len(client.outbox), 1)
        self.assertEqual(client.outbox[0].attempt, 1)
        self.assertEqual(client.outbox[0].due_at_ms, start + 250)

        # Not due yet: nothing is posted.
        await client.drain_outbox()
        self.assertEqual(len(self.requests), 1)

        self.clock.advance(250)
        await client.drain_outbox()
        self.assertEqual(len(self.requests), 2)
        self.assertEqual(len(client.outbox), 0)
        self.assertEqual(self.requests[0]["eventId"], self.requests[1]["eventId"])

    async def test_entry_dropped_after_retry_max(self) -> None:
        import httpx

        client = self._client([httpx.ConnectError("refused")], retry_max=2)
        await client.emit_codex_error("demo", "codex", "boom")

        await client.drain_outbox()
        self.clock.advance(250)
        await client.drain_outbox()
        self.clock.advance(500)
        await client.drain_outbox()

        # First attempt plus retry_max retries, then the entry is gone.
        self.assertEqual(len(self.requests), 3)
        self.assertEqual(len(client.outbox), 0)

    async def test_http_errors_count_as_attempts(self) -> None:
        client = self._client([503], retry_max=1)
        await client.emit_codex_start("demo", "codex")
        await client.drain_outbox()
        self.clock.advance(250)
        await client.drain_outbox()
        self.assertEqual(len(self.requests), 2)
        self.assertEqual(len(client.outbox), 0)

    async def test_sequence_and_event_ids(self) -> None:
        client = self._client([200])
        self.assertTrue(await client.emit_codex_progress("demo", "codex", text="step", turn_id="t1", progress_mode="thread"))
        self.assertTrue(await client.emit_codex_final("demo", "codex", text="done", turn_id="t1"))

        first, second = self.requests
        self.assertEqual(first["projectName"], "demo")
        self.assertEqual(first["agentType"], "codex")
        self.assertEqual(first["source"], "codex-poc")
        self.assertEqual(first["progressMode"], "thread")
        self.assertEqual((first["turnId"], first["seq"]), ("t1", 1))
        self.assertEqual(first["eventId"], "demo:codex:session.progress:t1:seq-1")
        self.assertEqual(second["seq"], 2)
        self.assertEqual(second["eventId"], "demo:codex:session.final:t1:seq-2")

    async def test_explicit_fields_are_kept(self) -> None:
        from panebridge.contracts.v1 import AgentEventPayload

        client = self._client([200])
        payload = AgentEventPayload(project_name="demo", type="session.final", turn_id="t", seq=7, event_id="custom")
        self.assertTrue(await client.post(payload))
        self.assertEqual((self.requests[0]["seq"], self.requests[0]["eventId"]), (7, "custom"))

    async def test_final_reports_failure(self) -> None:
        client = self._client([500])
        self.assertFalse(await client.emit_codex_final("demo", "codex", text="done"))
        self.assertEqual(len(client.outbox), 0)

    async def test_disabled_client_sends_nothing(self) -> None:
        client = self._client([200], enabled=False)
        self.assertFalse(await client.emit_codex_start("demo", "codex"))
        self.assertFalse(await client.emit_codex_final("demo", "codex", text="x"))
        self.assertEqual(len(client.outbox), 0)
        self.assertEqual(self.requests, [])

    async def test_outbox_drains_automatically(self) -> None:
        from panebridge.util.time import now_ms

        client = self._client([200], auto_drain=True, clock=now_ms)
        await client.emit_codex_start("demo", "codex", turn_id="t9")
        for _ in range(50):
            if not client.outbox and self.requests:
                break
            await asyncio.sleep(0.01)
        self.assertEqual(len(self.requests), 1)
        self.assertEqual(len(client.outbox), 0)


if __name__ == "__main__":
    unittest.main()
