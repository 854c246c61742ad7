import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock


class TestDaemonMain(unittest.TestCase):
    def test_invalid_settings_exit_code(self) -> None:
        from panebridge.daemon_main import main

        with tempfile.TemporaryDirectory() as td:
            env = {"PANEBRIDGE_HOME": td, "PANEBRIDGE_CAPTURE_POLL_MS": "1"}
            with mock.patch.dict(os.environ, env):
                self.assertEqual(main(["run"]), 2)
                self.assertEqual(main(["run", "--port", "70000"]), 2)

    def test_status_when_not_running(self) -> None:
        from panebridge.daemon_main import main

        with tempfile.TemporaryDirectory() as td:
            with mock.patch.dict(os.environ, {"PANEBRIDGE_HOME": td}):
                self.assertEqual(main(["status", "--port", "1"]), 1)


class TestBridgeRuntime(unittest.IsolatedAsyncioTestCase):
    async def test_requires_discord_token_without_client(self) -> None:
        from bridge_fakes import make_store
        from panebridge.daemon.runtime import BridgeRuntime
        from panebridge.kernel.errors import SettingsError
        from panebridge.kernel.settings import BridgeSettings

        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(SettingsError):
                BridgeRuntime(BridgeSettings(), state=make_store(Path(td)))

    async def test_wires_components_and_reloads(self) -> None:
        from bridge_fakes import FakeMessaging, FakeTerminal, make_project, make_store
        from panebridge.daemon.runtime import BridgeRuntime
        from panebridge.kernel.settings import BridgeSettings

        with tempfile.TemporaryDirectory() as td:
            store = make_store(Path(td))
            messaging = FakeMessaging()
            runtime = BridgeRuntime(BridgeSettings(), state=store, messaging=messaging, terminal=FakeTerminal())
            self.addAsyncCleanup(runtime.events.aclose)

            runtime.router.register()
            self.assertEqual(messaging.handler, runtime.router.handle_message)
            self.assertIs(runtime.router.events, runtime.events)

            # Another writer adds a project; reload makes it visible.
            make_store(Path(td), make_project("other"))
            self.assertIsNone(store.get_project("other"))
            runtime.reload_channel_mappings()
            self.assertIsNotNone(store.get_project("other"))


if __name__ == "__main__":
    unittest.main()
