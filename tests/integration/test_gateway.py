"""Integration tests for Gateway routing."""

import os
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from lspcli.daemon import protocol
from lspcli.daemon.autostart import DaemonUnavailableError
from lspcli.daemon.server import DaemonServer
from lspcli.gateway import VIA_DAEMON, VIA_DIRECT, Gateway

from helpers.servers import mock_profile


class GatewayTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = TemporaryDirectory()
        self.root = Path(self.tmpdir.name).resolve()
        self.source = self.root / "main.rs"
        self.source.write_text("fn main() {}\n", encoding="utf-8")

    async def asyncTearDown(self):
        self.tmpdir.cleanup()

    def symbol_params(self):
        return {"textDocument": {"uri": self.source.as_uri()}}


class TestDirectGateway(GatewayTestCase):
    """Tests for gateways running a one-shot session."""

    async def test_no_daemon_runs_direct(self):
        async with Gateway(self.root, mock_profile(), use_daemon=False) as gateway:
            self.assertEqual(gateway.via, VIA_DIRECT)
            result = await gateway.request(
                "textDocument/documentSymbol", self.symbol_params(), documents=[self.source]
            )
        self.assertEqual(result[0]["name"], "MockSymbol")

    async def test_fallback_when_daemon_unavailable(self):
        """Test that a missing daemon without autostart falls back to a direct session."""
        async with Gateway(self.root, mock_profile(), use_daemon=True, launcher=None, connect_timeout=0.2) as gateway:
            self.assertEqual(gateway.via, VIA_DIRECT)
            self.assertEqual(await gateway.request("mock/echo", {"x": 1}), {"x": 1})

    async def test_documents_opened_before_request(self):
        async with Gateway(self.root, mock_profile(), use_daemon=False) as gateway:
            await gateway.request("textDocument/hover", self.symbol_params(), documents=[self.source])
            did_open = await gateway.request("mock/getLastDidOpen")
        self.assertEqual(did_open["textDocument"]["uri"], self.source.as_uri())

    async def test_request_and_apply_direct(self):
        async with Gateway(self.root, mock_profile(), use_daemon=False) as gateway:
            result, applied = await gateway.request_and_apply(
                "workspace/executeCommand",
                {"command": "mock/applyEdit", "arguments": [{"uri": self.source.as_uri(), "newText": "C"}]},
            )
        self.assertEqual(result, {"applied": True})
        self.assertEqual(len(applied), 1)
        self.assertEqual(self.source.read_text(encoding="utf-8"), "Cfn main() {}\n")

    async def test_daemon_commands_need_daemon(self):
        async with Gateway(self.root, mock_profile(), use_daemon=False) as gateway:
            with self.assertRaises(DaemonUnavailableError):
                await gateway.daemon(protocol.DAEMON_STATUS)

    async def test_save_collects_diagnostics_direct(self):
        self.source.write_text("// TODO\n", encoding="utf-8")
        async with Gateway(self.root, mock_profile(), use_daemon=False) as gateway:
            diagnostics = await gateway.save_documents([self.source], wait=5.0)
            did_save = await gateway.request("mock/getLastDidSave")
        self.assertEqual(did_save["textDocument"]["uri"], self.source.as_uri())
        self.assertEqual(list(diagnostics), [self.source.as_uri()])
        self.assertEqual(diagnostics[self.source.as_uri()][0]["severity"], 2)

    async def test_save_without_wait_returns_nothing(self):
        async with Gateway(self.root, mock_profile(), use_daemon=False) as gateway:
            self.assertEqual(await gateway.save_documents([self.source]), {})


class TestDaemonGateway(GatewayTestCase):
    """Tests for gateways talking to a running daemon."""

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.daemon = DaemonServer(self.root, mock_profile())
        await self.daemon.start()

    async def asyncTearDown(self):
        await self.daemon.stop()
        await super().asyncTearDown()

    async def test_routes_through_daemon(self):
        async with Gateway(self.root, mock_profile(), launcher=None) as gateway:
            self.assertEqual(gateway.via, VIA_DAEMON)
            result = await gateway.request("textDocument/documentSymbol", self.symbol_params())
            status = await gateway.daemon(protocol.DAEMON_STATUS)
        self.assertEqual(result[0]["name"], "MockSymbol")
        self.assertEqual(status["pid"], os.getpid())

    async def test_session_outlives_invocations(self):
        """Test that consecutive gateways share one language server."""
        for _ in range(3):
            async with Gateway(self.root, mock_profile(), launcher=None) as gateway:
                count = await gateway.request("mock/getInitializeCount")
        self.assertEqual(count, 1)

    async def test_notify_through_daemon(self):
        async with Gateway(self.root, mock_profile(), launcher=None) as gateway:
            await gateway.notify("custom/event", {"a": 1})
            notifications = await gateway.request("mock/getNotifications")
        self.assertIn("custom/event", notifications)

    async def test_save_collects_diagnostics_through_daemon(self):
        """Test that only diagnostics published after the save are collected."""
        other = self.root / "other.rs"
        async with Gateway(self.root, mock_profile(), launcher=None) as gateway:
            await gateway.request(
                "mock/sendDiagnostics",
                {"uri": self.source.as_uri(), "diagnostics": [{"message": "stale"}]},
            )
            self.source.write_text("fn main() {} // TODO\n", encoding="utf-8")
            other.write_text("fn other() {}\n", encoding="utf-8")
            diagnostics = await gateway.save_documents([self.source, other], wait=5.0)
        self.assertEqual(diagnostics[other.as_uri()], [])
        self.assertEqual([d["message"] for d in diagnostics[self.source.as_uri()]], ["TODO left in code"])


if __name__ == "__main__":
    unittest.main()
