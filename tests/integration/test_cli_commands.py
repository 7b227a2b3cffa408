"""Integration tests for CLI commands against the mock server, without a daemon."""

import json
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from typer.testing import CliRunner

from lspcli.cli import app
from helpers.io import json_stdout, strip_ansi_codes
from helpers.servers import write_mock_config


class CliTestCase(unittest.TestCase):
    """
    Runs commands in a temporary workspace configured for the mock server.
    """

    def setUp(self):
        self.runner = CliRunner()
        self.env = {"NO_COLOR": "1"}  # Disable color output for consistent assertions
        self.tmpdir = TemporaryDirectory()
        self.root = Path(self.tmpdir.name).resolve()
        write_mock_config(self.root)
        self.source = self.root / "main.rs"
        self.source.write_text("fn main() {}\n", encoding="utf-8")

    def tearDown(self):
        self.tmpdir.cleanup()

    def invoke(self, *args, input=None):
        return self.runner.invoke(
            app,
            ["--no-daemon", "--root", str(self.root), "--server", "mock", *args],
            env=self.env,
            input=input,
        )

    def invoke_json(self, *args, input=None):
        result = self.invoke(*args, input=input)
        self.assertEqual(result.exit_code, 0, strip_ansi_codes(result.output))
        return json_stdout(result)

    def assertFails(self, result, text):
        self.assertEqual(result.exit_code, 1)
        self.assertIn(text, strip_ansi_codes(result.output))


class TestQueryCommands(CliTestCase):
    """Tests for read-only commands."""

    def test_ping(self):
        self.assertEqual(self.invoke_json("ping"), {"ok": True, "via": "direct"})

    def test_symbols(self):
        symbols = self.invoke_json("symbols", str(self.source))
        self.assertEqual(symbols[0]["name"], "MockSymbol")
        self.assertEqual(symbols[0]["location"]["uri"], self.source.as_uri())

    def test_symbols_pretty(self):
        result = self.invoke("--format", "pretty", "symbols", str(self.source))
        self.assertEqual(result.exit_code, 0)
        self.assertIn("MockSymbol [Function] 0:0", result.stdout)

    def test_definition(self):
        locations = self.invoke_json("definition", str(self.source), "0", "3")
        self.assertEqual(locations, [{"uri": self.source.as_uri(), "range": {
            "start": {"line": 0, "character": 0},
            "end": {"line": 0, "character": 1},
        }}])

    def test_references_pretty(self):
        result = self.invoke("--format", "pretty", "references", str(self.source), "0", "0")
        self.assertEqual(result.exit_code, 0)
        self.assertIn(f"{self.source}:0:0", result.stdout)

    def test_hover(self):
        hover = self.invoke_json("hover", str(self.source), "0", "0")
        self.assertEqual(hover["contents"]["value"], "mock hover")

    def test_negative_position_rejected(self):
        result = self.invoke("hover", str(self.source), "-1", "0")
        self.assertNotEqual(result.exit_code, 0)

    def test_missing_file(self):
        result = self.invoke("symbols", str(self.root / "missing.rs"))
        self.assertEqual(result.exit_code, 1)


class TestEditCommands(CliTestCase):
    """Tests for rename, format and apply-edits."""

    def test_rename_dry_run_leaves_file(self):
        edit = self.invoke_json("rename", str(self.source), "0", "3", "renamed")
        self.assertEqual(
            edit["changes"][self.source.as_uri()][0]["newText"],
            "renamed",
        )
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {}\n")

    def test_rename_apply(self):
        result = self.invoke_json("rename", str(self.source), "0", "3", "renamed", "--apply")
        self.assertEqual(result, {"applied": True, "editedFiles": [str(self.source)], "operations": []})
        self.assertEqual(self.source.read_text(encoding="utf-8"), "renamedfn main() {}\n")

    def test_rename_pretty_preview(self):
        result = self.invoke("--format", "pretty", "rename", str(self.source), "0", "3", "renamed")
        self.assertIn("(1 edits)", result.stdout)
        self.assertIn('[0:0 -> 0:0] "renamed"', result.stdout)

    def test_format_dry_run_and_apply(self):
        self.source.write_text("fn main() {}   \n", encoding="utf-8")
        edit = self.invoke_json("format", str(self.source))
        edits = edit["changes"][self.source.as_uri()]
        self.assertEqual(edits[0]["range"]["start"], {"line": 0, "character": 12})
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {}   \n")

        self.invoke_json("format", str(self.source), "--apply")
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {}\n")

    def test_format_without_changes(self):
        self.assertIsNone(self.invoke_json("format", str(self.source)))

    def test_apply_edits_from_stdin(self):
        edit = {
            "changes": {
                self.source.as_uri(): [
                    {"range": {"start": {"line": 0, "character": 3}, "end": {"line": 0, "character": 7}}, "newText": "start"}
                ]
            }
        }
        preview = self.invoke_json("apply-edits", input=json.dumps(edit))
        self.assertEqual(preview, edit)
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {}\n")

        result = self.invoke_json("apply-edits", "--apply", input=json.dumps({"edit": edit}))
        self.assertTrue(result["applied"])
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn start() {}\n")

    def test_apply_edits_resource_operations(self):
        created = self.root / "new.rs"
        edit = {
            "documentChanges": [
                {"kind": "create", "uri": created.as_uri()},
                {
                    "textDocument": {"uri": created.as_uri(), "version": None},
                    "edits": [{"range": {"start": {"line": 0, "character": 0}, "end": {"line": 0, "character": 0}}, "newText": "// new\n"}],
                },
            ]
        }
        result = self.invoke_json("apply-edits", "--apply", input=json.dumps(edit))
        self.assertEqual(result["operations"], [f"create {created}"])
        self.assertEqual(created.read_text(encoding="utf-8"), "// new\n")

    def test_apply_edits_from_file(self):
        edit_file = self.root / "edit.json"
        edit_file.write_text(json.dumps({"changes": {}}), encoding="utf-8")
        self.assertEqual(self.invoke_json("apply-edits", "--input", str(edit_file)), {"changes": {}})

    def test_apply_edits_invalid_json(self):
        self.assertFails(self.invoke("apply-edits", input="{nope"), "Invalid workspace edit JSON")

    def test_apply_edits_overlap_rejected(self):
        """Test that overlapping edits fail without touching the file."""
        span = {"start": {"line": 0, "character": 0}, "end": {"line": 0, "character": 5}}
        inner = {"start": {"line": 0, "character": 2}, "end": {"line": 0, "character": 4}}
        edit = {"changes": {self.source.as_uri(): [{"range": span, "newText": "a"}, {"range": inner, "newText": "b"}]}}
        result = self.invoke("apply-edits", "--apply", input=json.dumps(edit))
        self.assertEqual(result.exit_code, 1)
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {}\n")


class TestCodeActionCommands(CliTestCase):
    """Tests for listing, selecting and applying code actions."""

    def code_actions(self, *args):
        return ("code-actions", str(self.source), "0", "0", "0", "2", *args)

    def test_list(self):
        actions = self.invoke_json(*self.code_actions())
        self.assertEqual([a["title"] for a in actions], ["Mock edit action", "Mock command action"])
        self.assertEqual([a["index"] for a in actions], [0, 1])
        self.assertTrue(actions[0]["isPreferred"])

    def test_filter_by_kind(self):
        actions = self.invoke_json(*self.code_actions("--kind", "refactor"))
        self.assertEqual([a["index"] for a in actions], [1])

    def test_filter_by_title(self):
        actions = self.invoke_json(*self.code_actions("--title-regex", "command$"))
        self.assertEqual([a["title"] for a in actions], ["Mock command action"])

    def test_dry_run_of_selected(self):
        chosen = self.invoke_json(*self.code_actions("--first"))
        self.assertTrue(chosen["dryRun"])
        self.assertEqual(chosen["index"], 0)
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {}\n")

    def test_apply_via_edit(self):
        outcome = self.invoke_json(*self.code_actions("--preferred", "--apply"))
        self.assertEqual(outcome["via"], "edit")
        self.assertEqual(outcome["editedFiles"], [str(self.source)])
        self.assertEqual(self.source.read_text(encoding="utf-8"), "Efn main() {}\n")

    def test_apply_via_command(self):
        """Test that a command-only action runs and its pushed edit is applied."""
        outcome = self.invoke_json(*self.code_actions("--index", "1", "--apply"))
        self.assertEqual(outcome["via"], "command")
        self.assertEqual(outcome["commandResult"], {"applied": True})
        self.assertEqual(len(outcome["appliedEdits"]), 1)
        self.assertEqual(self.source.read_text(encoding="utf-8"), "Cfn main() {}\n")

    def test_apply_ambiguous(self):
        self.assertFails(self.invoke(*self.code_actions("--apply")), "2 code actions match")
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {}\n")

    def test_unknown_index(self):
        self.assertFails(self.invoke(*self.code_actions("--index", "7")), "No matching code action")

    def test_invalid_regex(self):
        self.assertFails(self.invoke(*self.code_actions("--title-regex", "(")), "Invalid --title-regex")


class TestRawCommands(CliTestCase):
    """Tests for arbitrary requests and notifications."""

    def test_request(self):
        self.assertEqual(self.invoke_json("request", "mock/echo", "--params", '{"a": [1]}'), {"a": [1]})

    def test_request_with_file_sync(self):
        did_open = self.invoke_json("request", "mock/getLastDidOpen", "--file", str(self.source))
        self.assertEqual(did_open["textDocument"]["text"], "fn main() {}\n")

    def test_request_with_apply(self):
        params = json.dumps({"command": "mock/applyEdit", "arguments": [{"uri": self.source.as_uri(), "newText": "R"}]})
        reply = self.invoke_json("request", "workspace/executeCommand", "--params", params, "--apply")
        self.assertEqual(reply["result"], {"applied": True})
        self.assertEqual(len(reply["appliedEdits"]), 1)
        self.assertEqual(self.source.read_text(encoding="utf-8"), "Rfn main() {}\n")

    def test_request_error(self):
        self.assertFails(self.invoke("request", "mock/fail"), "mock failure")

    def test_invalid_params(self):
        self.assertFails(self.invoke("request", "mock/echo", "--params", "{bad"), "Invalid --params JSON")

    def test_notify(self):
        self.assertEqual(self.invoke_json("notify", "custom/event", "--params", "{}"), {"notified": True})


class TestLanguageFeatureCommands(CliTestCase):
    """Tests for completion, signature help, highlights, prepare-rename and semantic tokens."""

    def test_completion(self):
        result = self.invoke_json("completion", str(self.source), "0", "3")
        self.assertEqual(result["isIncomplete"], False)
        self.assertEqual(result["items"][0]["label"], "mockCompletion")

    def test_completion_pretty(self):
        result = self.invoke("--format", "pretty", "completion", str(self.source), "0", "3")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("mockCompletion  fn()", result.stdout)

    def test_signature_help(self):
        result = self.invoke_json("signature-help", str(self.source), "0", "8")
        self.assertEqual(result["signatures"][0]["label"], "mock(a: i32, b: i32)")

        pretty = self.invoke("--format", "pretty", "signature-help", str(self.source), "0", "8")
        self.assertIn("> mock(a: i32, b: i32)", pretty.stdout)

    def test_document_highlight(self):
        self.source.write_text("fn main() {}\nmain();\n", encoding="utf-8")
        result = self.invoke_json("document-highlight", str(self.source), "0", "4")
        self.assertEqual(
            result,
            [
                {"range": {"start": {"line": 0, "character": 3}, "end": {"line": 0, "character": 7}}, "kind": 1},
                {"range": {"start": {"line": 1, "character": 0}, "end": {"line": 1, "character": 4}}, "kind": 1},
            ],
        )

    def test_document_highlight_nothing_at_position(self):
        self.assertEqual(self.invoke_json("document-highlight", str(self.source), "0", "9"), [])

    def test_prepare_rename(self):
        result = self.invoke_json("prepare-rename", str(self.source), "0", "5")
        self.assertEqual(
            result,
            {
                "range": {"start": {"line": 0, "character": 3}, "end": {"line": 0, "character": 7}},
                "placeholder": "main",
            },
        )

        pretty = self.invoke("--format", "pretty", "prepare-rename", str(self.source), "0", "5")
        self.assertIn("0:3-0:7 'main'", pretty.stdout)

    def test_prepare_rename_refused(self):
        result = self.invoke("--format", "pretty", "prepare-rename", str(self.source), "0", "9")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("Rename is not possible here", result.stdout)

    def test_semantic_tokens_full(self):
        result = self.invoke_json("semantic-tokens-full", str(self.source))
        self.assertEqual(result, {"resultId": "mock-full", "data": [0, 0, 2, 0, 0]})

    def test_semantic_tokens_range(self):
        result = self.invoke_json("semantic-tokens-range", str(self.source), "0", "0", "0", "12")
        self.assertEqual(result, {"resultId": "mock-range", "data": [0, 0, 3, 1, 0]})

    def test_semantic_tokens_delta(self):
        result = self.invoke_json("semantic-tokens-delta", str(self.source), "mock-full")
        self.assertEqual(result["resultId"], "mock-delta")
        self.assertEqual(result["edits"], [{"start": 0, "deleteCount": 0, "data": [0, 0, 2, 2, 0]}])

        pretty = self.invoke("--format", "pretty", "semantic-tokens-delta", str(self.source), "mock-full")
        self.assertIn("1 edit(s)", pretty.stdout)

    def test_semantic_tokens_delta_unknown_result(self):
        """Test that an unknown previous result id yields full tokens."""
        result = self.invoke_json("semantic-tokens-delta", str(self.source), "stale")
        self.assertEqual(result, {"resultId": "mock-full", "data": [0, 0, 2, 0, 0]})


class TestSaveAfterApply(CliTestCase):
    """Tests for saving applied edits and waiting for diagnostics."""

    def setUp(self):
        super().setUp()
        self.source.write_text("fn main() {} // TODO\n", encoding="utf-8")

    def test_rename_save_and_wait_for_diagnostics(self):
        result = self.invoke_json(
            "rename", str(self.source), "0", "3", "renamed",
            "--apply", "--save-after-apply", "--wait-diagnostics-ms", "5000",
        )
        self.assertTrue(result["applied"])
        self.assertEqual(result["saved"], [str(self.source)])
        diagnostics = result["diagnostics"][self.source.as_uri()]
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(diagnostics[0]["message"], "TODO left in code")
        # The diagnostic reflects the renamed text
        self.assertEqual(diagnostics[0]["range"]["start"], {"line": 0, "character": 23})
        self.assertEqual(self.source.read_text(encoding="utf-8"), "renamedfn main() {} // TODO\n")

    def test_format_save_without_wait(self):
        self.source.write_text("fn main() {}   \n", encoding="utf-8")
        result = self.invoke_json("format", str(self.source), "--apply", "--save-after-apply")
        self.assertEqual(result["saved"], [str(self.source)])
        self.assertNotIn("diagnostics", result)
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {}\n")

    def test_format_save_clean_file_reports_empty_diagnostics(self):
        self.source.write_text("fn main() {}   \n", encoding="utf-8")
        result = self.invoke_json(
            "format", str(self.source), "--apply", "--save-after-apply", "--wait-diagnostics-ms", "5000"
        )
        self.assertEqual(result["diagnostics"], {self.source.as_uri(): []})

    def test_nothing_to_save(self):
        result = self.invoke_json("format", str(self.source), "--apply", "--save-after-apply")
        self.assertEqual(result, {"applied": False})

    def test_pretty_summary(self):
        result = self.invoke(
            "--format", "pretty", "rename", str(self.source), "0", "3", "renamed",
            "--apply", "--save-after-apply", "--wait-diagnostics-ms", "5000",
        )
        self.assertEqual(result.exit_code, 0)
        self.assertIn("Saved 1 file(s)", result.stdout)
        self.assertIn(f"{self.source}:0:23 warning TODO left in code", result.stdout)

    def test_save_requires_apply(self):
        self.assertFails(
            self.invoke("rename", str(self.source), "0", "3", "renamed", "--save-after-apply"),
            "--save-after-apply requires --apply",
        )
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {} // TODO\n")

    def test_wait_requires_save(self):
        self.assertFails(
            self.invoke("format", str(self.source), "--apply", "--wait-diagnostics-ms", "100"),
            "--wait-diagnostics-ms requires --save-after-apply",
        )


class TestBatchCommand(CliTestCase):
    """Tests for running JSON-lines commands in one session."""

    def run_batch(self, *lines, args=()):
        result = self.invoke("batch", *args, input="\n".join(json.dumps(line) for line in lines) + "\n")
        replies = [json.loads(text) for text in strip_ansi_codes(result.stdout).splitlines()]
        return result, replies

    def test_mixed_commands(self):
        result, replies = self.run_batch(
            {"id": 1, "cmd": "references", "file": str(self.source), "line": 0, "col": 3},
            {"id": "h", "cmd": "hover", "file": str(self.source), "line": 0, "col": 3},
            {"id": 3, "cmd": "request", "method": "mock/echo", "params": {"x": 1}},
        )
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual([r["id"] for r in replies], [1, "h", 3])
        self.assertTrue(all(r["ok"] for r in replies))
        self.assertEqual(replies[0]["result"][0]["uri"], self.source.as_uri())
        self.assertEqual(replies[1]["result"]["contents"]["value"], "mock hover")
        self.assertEqual(replies[2]["result"], {"x": 1})

    def test_one_session_for_all_lines(self):
        _, replies = self.run_batch(
            {"id": 1, "cmd": "request", "method": "mock/getInitializeCount"},
            {"id": 2, "cmd": "request", "method": "mock/getInitializeCount"},
        )
        self.assertEqual([r["result"] for r in replies], [1, 1])

    def test_rename_applied_with_flag(self):
        _, replies = self.run_batch(
            {"id": "r", "cmd": "rename", "file": str(self.source), "line": 0, "col": 3, "newName": "x"},
            args=("--apply",),
        )
        self.assertEqual(replies, [{"id": "r", "ok": True, "applied": True, "editedFiles": [str(self.source)], "operations": []}])
        self.assertEqual(self.source.read_text(encoding="utf-8"), "xfn main() {}\n")

    def test_line_apply_overrides_flag(self):
        _, replies = self.run_batch(
            {"id": 1, "cmd": "rename", "file": str(self.source), "line": 0, "col": 3, "newName": "x", "apply": False},
            args=("--apply",),
        )
        self.assertIn("changes", replies[0]["result"])
        self.assertEqual(self.source.read_text(encoding="utf-8"), "fn main() {}\n")

    def test_failures_reported_per_line(self):
        """Test that a failing line gets an error reply and later lines still run."""
        result = self.invoke(
            "batch",
            input="{not json\n"
            + json.dumps({"id": 2, "cmd": "request", "method": "mock/fail"}) + "\n"
            + json.dumps({"id": 3, "cmd": "unknown"}) + "\n"
            + json.dumps({"id": 4, "cmd": "hover", "file": str(self.source), "line": -1, "col": 0}) + "\n"
            + json.dumps({"id": 5, "cmd": "request", "method": "mock/echo", "params": {"v": 7}}) + "\n",
        )
        self.assertEqual(result.exit_code, 1)
        replies = [json.loads(text) for text in strip_ansi_codes(result.stdout).splitlines()]
        self.assertEqual([r["id"] for r in replies], [None, 2, 3, 4, 5])
        self.assertEqual([r["ok"] for r in replies], [False, False, False, False, True])
        self.assertIn("invalid JSON", replies[0]["error"])
        self.assertIn("mock failure", replies[1]["error"])
        self.assertIn("unsupported batch cmd", replies[2]["error"])
        self.assertIn("line must be a non-negative integer", replies[3]["error"])
        self.assertEqual(replies[4]["result"], {"v": 7})
        self.assertIn("4 of 5 batch commands failed", strip_ansi_codes(result.output))

    def test_blank_lines_skipped(self):
        result = self.invoke("batch", input="\n\n" + json.dumps({"id": 1, "cmd": "request", "method": "mock/echo"}) + "\n\n")
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(len(strip_ansi_codes(result.stdout).splitlines()), 1)

    def test_save_after_apply_in_batch(self):
        self.source.write_text("fn main() {} // TODO\n", encoding="utf-8")
        _, replies = self.run_batch(
            {
                "id": 1,
                "cmd": "rename",
                "file": str(self.source),
                "line": 0,
                "col": 3,
                "newName": "y",
                "apply": True,
                "saveAfterApply": True,
                "waitDiagnosticsMs": 5000,
            },
        )
        self.assertEqual(replies[0]["saved"], [str(self.source)])
        self.assertEqual(len(replies[0]["diagnostics"][self.source.as_uri()]), 1)


if __name__ == "__main__":
    unittest.main()
