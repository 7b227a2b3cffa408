"""Integration tests for LanguageServerSession against the mock server."""

import asyncio
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from lspcli.lsp.jsonrpc import ConnectionClosedError, ResponseError
from lspcli.lsp.session import (
    LanguageServerSession,
    ServerCrashedError,
    ServerExitedError,
    ServerStartError,
    SessionNotReadyError,
    SessionState,
)
from lspcli.profiles import ServerProfile

from helpers.servers import mock_profile


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    """Base class providing a workspace with one source file."""

    sync = "incremental"

    async def asyncSetUp(self):
        self.tmpdir = TemporaryDirectory()
        self.root = Path(self.tmpdir.name).resolve()
        self.source = self.root / "main.rs"
        self.source.write_text("fn main() {}\n", encoding="utf-8")
        self.session = LanguageServerSession(self.root, mock_profile(sync=self.sync), request_timeout=10)
        await self.session.start()

    async def asyncTearDown(self):
        await self.session.shutdown()
        self.tmpdir.cleanup()

    async def server_text(self, path):
        return await self.session.request("mock/getDocumentText", {"uri": self.session.uri_for(path)})


class TestSessionLifecycle(SessionTestCase):
    """Tests for start and shutdown."""

    async def test_ready_after_start(self):
        self.assertEqual(self.session.state, SessionState.READY)
        self.assertEqual(self.session.server_info["name"], "mock-lsp")
        self.assertEqual(self.session.sync_kind.value, 2)

    async def test_start_is_idempotent(self):
        await self.session.start()
        self.assertEqual(await self.session.request("mock/getInitializeCount"), 1)

    async def test_shutdown_terminates(self):
        await self.session.shutdown()
        self.assertEqual(self.session.state, SessionState.TERMINATED)
        await self.session.shutdown()
        with self.assertRaises(SessionNotReadyError):
            await self.session.request("mock/echo")

    async def test_request_passthrough(self):
        self.assertEqual(await self.session.request("mock/echo", {"a": [1, 2]}), {"a": [1, 2]})

    async def test_error_response(self):
        with self.assertRaises(ResponseError) as ctx:
            await self.session.request("mock/fail")
        self.assertEqual(ctx.exception.code, -32603)

    async def test_unknown_method(self):
        with self.assertRaises(ResponseError) as ctx:
            await self.session.request("custom/unknown")
        self.assertEqual(ctx.exception.code, -32601)

    async def test_crash_reported_on_shutdown(self):
        """Test that a server that died mid-session makes shutdown raise."""
        with self.assertRaises(ConnectionClosedError):
            await self.session.request("mock/crash", {"code": 3})
        with self.assertRaises(ServerCrashedError):
            await self.session.shutdown()
        self.assertEqual(self.session.state, SessionState.TERMINATED)

    async def test_crash_visible_before_shutdown(self):
        """Test that a dead server stops the session being ready."""
        with self.assertRaises(ConnectionClosedError):
            await self.session.request("mock/crash", {"code": 3})
        self.assertFalse(self.session.is_ready)
        self.assertEqual(self.session.state, SessionState.TERMINATED)
        with self.assertRaises(SessionNotReadyError):
            await self.session.request("mock/echo")
        with self.assertRaises(ServerCrashedError):
            await self.session.shutdown()


class TestDocumentSync(SessionTestCase):
    """Tests for didOpen/didChange/didSave with incremental sync."""

    async def test_open_sends_did_open(self):
        document = await self.session.open_document(self.source)
        did_open = await self.session.request("mock/getLastDidOpen")
        self.assertEqual(did_open["textDocument"]["uri"], document.uri)
        self.assertEqual(did_open["textDocument"]["languageId"], "rust")
        self.assertEqual(did_open["textDocument"]["version"], 1)
        self.assertEqual(did_open["textDocument"]["text"], "fn main() {}\n")

    async def test_relative_path_resolved_against_root(self):
        document = await self.session.open_document("main.rs")
        self.assertEqual(document.uri, self.source.as_uri())

    async def test_reopen_unchanged_keeps_version(self):
        """Test that reopening an unchanged file sends nothing new."""
        await self.session.open_document(self.source)
        document = await self.session.open_document(self.source)
        self.assertEqual(document.version, 1)
        self.assertIsNone(await self.session.request("mock/getLastDidChange"))

    async def test_reopen_after_disk_change_resyncs(self):
        await self.session.open_document(self.source)
        self.source.write_text("fn main() { run(); }\n", encoding="utf-8")
        document = await self.session.open_document(self.source)
        self.assertEqual(document.version, 2)
        self.assertEqual(await self.server_text(self.source), "fn main() { run(); }\n")

    async def test_incremental_change_sends_range(self):
        await self.session.open_document(self.source)
        await self.session.change_document(self.source, "fn main() { 😀 }\nfn other() {}\n")
        did_change = await self.session.request("mock/getLastDidChange")
        self.assertEqual(did_change["textDocument"]["version"], 2)
        self.assertIn("range", did_change["contentChanges"][0])
        self.assertEqual(await self.server_text(self.source), "fn main() { 😀 }\nfn other() {}\n")

    async def test_incremental_change_covers_only_the_edit(self):
        """Test that replacing an emoji sends one change spanning its two UTF-16 units."""
        self.source.write_text("a😀b\n", encoding="utf-8")
        await self.session.open_document(self.source)
        await self.session.change_document(self.source, "aXb\n")
        did_change = await self.session.request("mock/getLastDidChange")
        self.assertEqual(
            did_change["contentChanges"],
            [
                {
                    "range": {"start": {"line": 0, "character": 1}, "end": {"line": 0, "character": 3}},
                    "text": "X",
                }
            ],
        )
        self.assertEqual(await self.server_text(self.source), "aXb\n")

    async def test_successive_changes_stay_in_sync(self):
        await self.session.open_document(self.source)
        texts = ["a😀b\n", "a😀😀b\nc\n", "\n\n", "fn main() {}\n"]
        for version, text in enumerate(texts, start=2):
            document = await self.session.change_document(self.source, text)
            self.assertEqual(document.version, version)
            self.assertEqual(await self.server_text(self.source), text)

    async def test_change_untracked_opens(self):
        document = await self.session.change_document(self.source)
        self.assertEqual(document.version, 1)
        self.assertIsNotNone(await self.session.request("mock/getLastDidOpen"))

    async def test_save_includes_text(self):
        await self.session.save_document(self.source)
        did_save = await self.session.request("mock/getLastDidSave")
        self.assertEqual(did_save["text"], "fn main() {}\n")

    async def test_close_document(self):
        await self.session.open_document(self.source)
        await self.session.close_document(self.source)
        self.assertIsNone(self.session.get_document(self.source))
        self.assertIsNone(await self.server_text(self.source))
        self.assertIn("textDocument/didClose", await self.session.request("mock/getNotifications"))


class TestFullSync(SessionTestCase):
    """Tests for servers that want the whole text on every change."""

    sync = "full"

    async def test_full_change_sends_whole_text(self):
        await self.session.open_document(self.source)
        await self.session.change_document(self.source, "fn changed() {}\n")
        did_change = await self.session.request("mock/getLastDidChange")
        self.assertEqual(did_change["contentChanges"], [{"text": "fn changed() {}\n"}])
        self.assertEqual(await self.server_text(self.source), "fn changed() {}\n")


class TestServerMessages(SessionTestCase):
    """Tests for notifications and requests initiated by the server."""

    async def test_diagnostics_notification(self):
        received = asyncio.Event()
        payloads = []

        def on_diagnostics(params):
            payloads.append(params)
            received.set()

        self.session.on_notification("textDocument/publishDiagnostics", on_diagnostics)
        uri = self.session.uri_for(self.source)
        await self.session.request("mock/sendDiagnostics", {"uri": uri, "diagnostics": [{"message": "m"}]})
        await asyncio.wait_for(received.wait(), 5)
        self.assertEqual(payloads[0]["uri"], uri)

    async def test_apply_edit_request_answered_while_handling(self):
        """Test that a scoped handler answers workspace/applyEdit from the server."""
        seen = []

        def handler(params):
            seen.append(params)
            return {"applied": True}

        uri = self.session.uri_for(self.source)
        async with self.session.handling("workspace/applyEdit", handler):
            result = await self.session.request(
                "workspace/executeCommand",
                {"command": "mock/applyEdit", "arguments": [{"uri": uri, "newText": "C"}]},
            )
        self.assertEqual(result, {"applied": True})
        self.assertEqual(list(seen[0]["edit"]["changes"]), [uri])


class TestStartFailures(unittest.IsolatedAsyncioTestCase):
    """Tests for servers that cannot be started."""

    async def test_exit_before_initialize_reports_code_and_stderr(self):
        with TemporaryDirectory() as tmpdir:
            session = LanguageServerSession(Path(tmpdir), mock_profile(exit_before_init=7))
            with self.assertRaises(ServerExitedError) as ctx:
                await session.start()
            self.assertEqual(ctx.exception.returncode, 7)
            self.assertIn("exiting before initialize", ctx.exception.stderr)
            self.assertEqual(session.state, SessionState.TERMINATED)

    async def test_missing_executable(self):
        with TemporaryDirectory() as tmpdir:
            profile = ServerProfile(name="missing", command="lsp-cli-no-such-binary")
            session = LanguageServerSession(Path(tmpdir), profile)
            with self.assertRaises(ServerStartError) as ctx:
                await session.start()
            self.assertIn("failed to spawn", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
