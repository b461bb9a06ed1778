import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import agent_main
from agent_core import AgentError, CancelToken, ChatCancelledError, ChatTimeoutError, Log, TransportError
from agent_history import HistoryJournal
from agent_llm import ProjectContext
from agent_main import (
    AgentOptions, AgentResult, calculate_dynamic_timeout, clean_final_response, compress_messages,
    format_agent_result, run_agent, scan_project,
)
from agent_parsing import ToolCall
from agent_stream import AgentChatResponse
from agent_tools import ActionLog
from agent_verify import ParsedError, VerifyResult

Log.set_silent(True)


def reply(content="", *calls):
    return AgentChatResponse(content, [ToolCall(tool, params, f"call_{i}")
                                       for i, (tool, params) in enumerate(calls)])


class ScriptedClient:
    """Stands in for LLMClient: returns (or raises) the queued items in order."""

    provider = "z.ai"
    protocol = "openai"

    def __init__(self, *items, plan=None):
        self.items = list(items)
        self.calls = []
        self.plan  = plan

    def chat(self, messages, system_prompt, on_chunk=None, cancel=None, timeout=None):
        self.calls.append({"messages": messages, "system": system_prompt, "timeout": timeout})
        if not self.items:
            raise AssertionError("unexpected chat call")
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def complete(self, prompt, system, **kwargs):
        if self.plan is None:
            raise AgentError("No API key configured")
        return self.plan

    def last_user_message(self, call_index=-1):
        return [m for m in self.calls[call_index]["messages"] if m["role"] == "user"][-1]["content"]


class AgentTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp    = tempfile.TemporaryDirectory()
        base         = Path(self._tmp.name).resolve()
        self.root    = base / "project"
        self.root.mkdir()
        self.journal = HistoryJournal(base / "history")
        self.ctx     = ProjectContext(root=str(self.root), name="demo", type="generic")
        self.labels  = []

    def tearDown(self):
        self._tmp.cleanup()

    def run_with(self, client, prompt="create hello.txt", **overrides) -> AgentResult:
        opts = dict(max_iterations=10, auto_verify=False, use_planning=False, client=client,
                    journal=self.journal,
                    on_iteration=lambda n, label: self.labels.append(label))
        opts.update(overrides)
        return run_agent(prompt, self.ctx, AgentOptions(**opts))


class TestCompletion(AgentTestCase):

    def test_creates_file_and_finishes(self):
        client = ScriptedClient(
            reply("Creating it.", ("write_file", {"path": "hello.txt", "content": "hi"})),
            reply("Done."),
            reply("The task is complete: hello.txt contains hi."),
        )
        result = self.run_with(client)

        self.assertTrue(result.success)
        self.assertEqual(result.iterations, 3)
        self.assertEqual((self.root / "hello.txt").read_text(), "hi")
        self.assertEqual([(a.type, a.target, a.result) for a in result.actions],
                         [("write", "hello.txt", "success")])
        self.assertEqual(result.final_response, "The task is complete: hello.txt contains hi.")

        self.assertIn("Tool write_file succeeded:\nCreated file: hello.txt", client.last_user_message(1))
        self.assertEqual(client.last_user_message(2), "Continue. Execute the tool calls now.")
        self.assertEqual(self.labels[:3], ["Iteration 1/10", "Iteration 2/10", "Iteration 3/10"])

        session = self.journal.get_session(result.session_id)
        self.assertIsNotNone(session)
        self.assertFalse(session.active)
        self.assertEqual(session.actions[0].type, "write")

    def test_early_text_is_reprompted(self):
        client = ScriptedClient(reply("All done, task complete."), reply("Still done."),
                                reply("Nothing left."))
        result = self.run_with(client)
        self.assertTrue(result.success)
        self.assertEqual(result.iterations, 3)
        self.assertEqual(len(client.calls), 3)

    def test_single_text_turn_after_tools_is_reprompted(self):
        client = ScriptedClient(
            reply("", ("list_files", {"path": "."})),
            reply("", ("list_files", {"path": "."})),
            reply("", ("list_files", {"path": "."})),
            reply("Let me look at the next file."),
            reply("Here is what I found."),
        )
        result = self.run_with(client)
        self.assertTrue(result.success)
        self.assertEqual(result.iterations, 5)
        self.assertEqual(result.final_response, "Here is what I found.")

    def test_native_iteration_one_reparses_text(self):
        text = '<tool_call>{"tool": "write_file", "parameters": {"path": "a.txt", "content": "x"}}</tool_call>'
        client = ScriptedClient(AgentChatResponse(text, [], used_native_tools=True),
                                reply("ok"), reply("Task complete."))
        result = self.run_with(client)
        self.assertTrue((self.root / "a.txt").exists())
        self.assertEqual(result.actions[0].type, "write")

    def test_system_prompt_includes_rules_and_history(self):
        (self.root / "CODEAGENT.md").write_text("Always use tabs.")
        client = ScriptedClient(reply("a"), reply("b"), reply("task complete"))
        self.run_with(client, chat_history=[{"role": "user", "content": "earlier question"}])
        system = client.calls[0]["system"]
        self.assertIn("Name: demo", system)
        self.assertIn("Always use tabs.", system)
        self.assertIn("earlier question", system)


class TestLimits(AgentTestCase):

    def test_duration_exceeded_before_first_call(self):
        client = ScriptedClient()
        result = self.run_with(client, max_duration=0)
        self.assertFalse(result.success)
        self.assertTrue(result.error.startswith("Exceeded maximum duration"))
        self.assertIn("time limit", result.final_response)
        self.assertEqual(client.calls, [])

    def test_iteration_limit_reports_partial_progress(self):
        client = ScriptedClient(*[reply("", ("write_file", {"path": f"f{i}.txt", "content": str(i)}))
                                  for i in range(3)])
        result = self.run_with(client, max_iterations=3)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Exceeded maximum of 3 iterations")
        self.assertIn("Agent reached the iteration limit (3 steps).", result.final_response)
        self.assertIn("  ✓ `f2.txt`", result.final_response)
        self.assertEqual(len(result.actions), 3)

    def test_reprompted_text_does_not_count_as_final_answer(self):
        client = ScriptedClient(reply("Let me look around first."),
                                reply("", ("list_files", {"path": "."})))
        result = self.run_with(client, max_iterations=2)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Exceeded maximum of 2 iterations")
        self.assertNotIn("Let me look around first.", result.final_response)
        self.assertIn("Agent reached the iteration limit (2 steps).", result.final_response)

    def test_cancelled_before_start(self):
        cancel = CancelToken()
        cancel.cancel()
        client = ScriptedClient()
        result = self.run_with(client, cancel=cancel)
        self.assertTrue(result.aborted)
        self.assertFalse(result.success)
        self.assertEqual(result.final_response, "Agent was stopped by user")

    def test_cancelled_during_chat(self):
        client = ScriptedClient(reply("", ("write_file", {"path": "x.txt", "content": "1"})),
                                ChatCancelledError("Request cancelled"))
        result = self.run_with(client)
        self.assertTrue(result.aborted)
        self.assertEqual(len(result.actions), 1)
        self.assertIsNotNone(self.journal.get_session(result.session_id))

    def test_unexpected_error_ends_run_and_seals_session(self):
        def boom(call):
            raise RuntimeError("callback exploded")

        client = ScriptedClient(reply("", ("write_file", {"path": "x.txt", "content": "1"})))
        result = self.run_with(client, on_tool_call=boom)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "callback exploded")


@mock.patch("agent_main._backoff")
class TestRetries(AgentTestCase):

    def test_transport_error_retried(self, backoff):
        client = ScriptedClient(TransportError(503, "overloaded"), reply("a"), reply("b"),
                                reply("task complete"))
        result = self.run_with(client)
        self.assertTrue(result.success)
        self.assertIn("API 5xx, retrying in 5s... (1/3)", self.labels)
        backoff.assert_called_once_with(5, None)

    def test_rate_limit_label(self, backoff):
        client = ScriptedClient(TransportError(429, "slow down"), reply("a"), reply("b"), reply("done"))
        self.run_with(client)
        self.assertIn("API 429, retrying in 5s... (1/3)", self.labels)

    def test_timeouts_grow_call_timeout_then_move_on(self, backoff):
        client = ScriptedClient(ChatTimeoutError("t"), ChatTimeoutError("t"), ChatTimeoutError("t"),
                                reply("a"), reply("b"), reply("task complete"))
        result = self.run_with(client)
        self.assertTrue(result.success)
        timeouts = [c["timeout"] for c in client.calls[:3]]
        self.assertEqual(timeouts, [120.0, 180.0, 240.0])
        self.assertIn("API timeout, retrying (3/3)...", self.labels)
        self.assertIn("The previous request timed out", client.last_user_message(3))

    def test_repeated_timeouts_end_run(self, backoff):
        client = ScriptedClient(*[ChatTimeoutError("t") for _ in range(9)])
        result = self.run_with(client)
        self.assertFalse(result.success)
        self.assertEqual(result.final_response, "Agent stopped due to repeated API timeouts")
        self.assertTrue(result.error.startswith("API timed out 9 times consecutively"))
        self.assertEqual(result.iterations, 3)

    def test_repeated_errors_end_run(self, backoff):
        client = ScriptedClient(*[TransportError(500, "down") for _ in range(27)])
        result = self.run_with(client, max_iterations=20)
        self.assertFalse(result.success)
        self.assertTrue(result.error.startswith("API failed after 3 retries"))
        self.assertIn("Check your API key", result.final_response)
        self.assertEqual(result.iterations, 9)


class TestLoopGuards(AgentTestCase):

    def test_duplicate_writes_warned(self):
        write = ("write_file", {"path": "a.txt", "content": "same"})
        client = ScriptedClient(reply("", write), reply("", write), reply("", write),
                                reply("Task complete."))
        self.run_with(client)
        self.assertIn("same content as previous write", client.last_user_message(2))
        warning = client.last_user_message(3)
        self.assertIn("[WARNING] You have written the same content to `a.txt` 3 times in a row", warning)

    def test_reads_cached_until_write(self):
        (self.root / "a.txt").write_text("v1")
        read = ("read_file", {"path": "a.txt"})
        client = ScriptedClient(
            reply("", read),
            reply("", read),
            reply("", ("write_file", {"path": "a.txt", "content": "v2"}), read),
            reply("Task complete."),
        )
        self.run_with(client)
        self.assertIn("Tool read_file succeeded:\nv1", client.last_user_message(1))
        self.assertIn("(cached — file unchanged since last read):\nv1", client.last_user_message(2))
        last = client.last_user_message(3)
        self.assertIn("Tool read_file succeeded:\nv2", last)
        self.assertNotIn("cached", last)

    def test_late_iterations_invite_summary(self):
        calls = [reply("", ("list_files", {"path": "."})) for _ in range(5)]
        client = ScriptedClient(*calls, reply("Task complete."))
        self.run_with(client)
        self.assertNotIn("provide a summary", client.last_user_message(1))
        self.assertIn("If this subtask is complete, provide a summary without tool calls.",
                      client.last_user_message(5))


class TestDryRun(AgentTestCase):

    @mock.patch("agent_main.run_all_verifications")
    def test_nothing_executed_or_verified(self, verify):
        client = ScriptedClient(reply("", ("write_file", {"path": "x.txt", "content": "1"})),
                                reply("a"), reply("Task complete."))
        seen = []
        result = self.run_with(client, dry_run=True, auto_verify=True,
                               on_tool_result=lambda r, c: seen.append(r.output))
        self.assertTrue(result.success)
        self.assertFalse((self.root / "x.txt").exists())
        self.assertEqual(seen, ["[DRY RUN] Would execute: write_file"])
        verify.assert_not_called()


@mock.patch("agent_main.run_all_verifications")
class TestVerification(AgentTestCase):

    def _base_turns(self):
        return [reply("", ("write_file", {"path": "src/app.ts", "content": "let x: number = 'a'"})),
                reply("writing"), reply("Task complete.")]

    def _failing(self, file="src/app.ts"):
        return [VerifyResult(False, "typecheck", "npx tsc --noEmit", "",
                             [ParsedError("Type 'string' is not assignable", "error", file, 1, 5, "TS2322")])]

    def _passing(self):
        return [VerifyResult(True, "typecheck", "npx tsc --noEmit", "")]

    def test_fix_loop_until_clean(self, verify):
        verify.side_effect = [self._failing(), self._passing()]
        fix = reply("", ("write_file", {"path": "src/app.ts", "content": "let x: number = 1"}))
        client = ScriptedClient(*self._base_turns(), fix)
        result = self.run_with(client, auto_verify=True)

        self.assertTrue(result.success)
        self.assertIn("✓ Verification passed: 1/1 checks", result.final_response)
        self.assertEqual((self.root / "src" / "app.ts").read_text(), "let x: number = 1")
        prompt = client.last_user_message(3)
        self.assertIn("- [src/app.ts:1:5] Type 'string' is not assignable (TS2322)", prompt)
        self.assertIn("Fix these errors. Read the affected files first", prompt)
        self.assertIn("Verification attempt 1/3", self.labels)

    def test_errors_in_untouched_files_ignored(self, verify):
        verify.return_value = self._failing(file="lib/legacy.ts")
        client = ScriptedClient(*self._base_turns())
        result = self.run_with(client, auto_verify=True)
        self.assertTrue(result.success)
        self.assertIn("✓ Verification passed", result.final_response)
        self.assertEqual(verify.call_count, 1)

    def test_attempts_exhausted(self, verify):
        verify.return_value = self._failing()
        client = ScriptedClient(*self._base_turns(), reply("I fixed it."), reply("Fixed again."))
        result = self.run_with(client, auto_verify=True, max_fix_attempts=3)

        self.assertTrue(result.success)
        self.assertIn("Verification still failing after 3 fix attempt(s)", result.final_response)
        self.assertIn("did NOT resolve these errors", client.last_user_message(4))
        self.assertEqual(verify.call_count, 3)

    def test_cancel_during_checks_aborts(self, verify):
        cancel = CancelToken()

        def checks(*args, **kwargs):
            cancel.cancel()
            return self._failing()

        verify.side_effect = checks
        client = ScriptedClient(*self._base_turns())
        result = self.run_with(client, auto_verify=True, cancel=cancel)

        self.assertFalse(result.success)
        self.assertTrue(result.aborted)
        self.assertEqual(result.final_response, "Agent was stopped by user")
        self.assertEqual(verify.call_count, 1)
        self.assertEqual(len(client.calls), 3)

    def test_cancel_during_fix_turn_aborts(self, verify):
        verify.return_value = self._failing()
        client = ScriptedClient(*self._base_turns(), ChatCancelledError("Request cancelled"))
        result = self.run_with(client, auto_verify=True)

        self.assertFalse(result.success)
        self.assertTrue(result.aborted)
        self.assertIsNotNone(self.journal.get_session(result.session_id))

    def test_skipped_without_changes(self, verify):
        client = ScriptedClient(reply("", ("read_file", {"path": "missing"})), reply("a"),
                                reply("Task complete."))
        self.run_with(client, auto_verify=True)
        verify.assert_not_called()


class TestPlanning(AgentTestCase):

    def test_plan_prepended_to_first_message(self):
        plan = json.dumps({"tasks": [{"id": 1, "description": "Create index.html"},
                                     {"id": 2, "description": "Create styles.css",
                                      "dependencies": [1]}]})
        client = ScriptedClient(reply("a"), reply("b"), reply("task complete"), plan=plan)
        plans = []
        self.run_with(client, prompt="build a landing page", use_planning=True,
                      on_task_plan=plans.append)

        self.assertEqual(len(plans), 1)
        self.assertEqual(plans[0].tasks[0].status, "in_progress")
        first = client.calls[0]["messages"][0]["content"]
        self.assertTrue(first.startswith("build a landing page\n\n## Task Breakdown"))
        self.assertIn("2. Create styles.css (after: 1)", first)
        self.assertEqual(self.labels[0], "Planning tasks...")

    def test_single_task_plan_not_shown(self):
        client = ScriptedClient(reply("a"), reply("b"), reply("task complete"))
        plans = []
        self.run_with(client, prompt="build a landing page", use_planning=True,
                      on_task_plan=plans.append)
        self.assertEqual(plans, [])
        self.assertEqual(client.calls[0]["messages"][0]["content"], "build a landing page")


class TestHelpers(unittest.TestCase):

    def test_dynamic_timeout(self):
        self.assertEqual(calculate_dynamic_timeout(1, 60), 120)
        self.assertEqual(calculate_dynamic_timeout(5, 200), 240)
        self.assertEqual(calculate_dynamic_timeout(10, 250), 300)

    def test_compress_messages(self):
        messages = [{"role": "user", "content": "task"}]
        messages += [{"role": "assistant" if i % 2 else "user", "content": "x" * 10_000}
                     for i in range(10)]
        actions = [ActionLog("write", "a.txt", "success"), ActionLog("command", "npm", "success"),
                   ActionLog("read", "b.txt", "success")]
        out = compress_messages(messages, actions)
        self.assertEqual(len(out), 8)
        self.assertEqual(out[0]["content"], "task")
        summary = out[1]["content"]
        self.assertTrue(summary.startswith("[Context compressed — summary of work so far]"))
        self.assertIn("Files written/edited (1): a.txt", summary)
        self.assertIn("Commands run: npm", summary)
        self.assertIn("Files read (1): b.txt", summary)
        self.assertEqual(out[2:], messages[-6:])

    def test_small_conversation_untouched(self):
        messages = [{"role": "user", "content": "hi"}]
        self.assertIs(compress_messages(messages, []), messages)

    def test_clean_final_response(self):
        text = ("<think>hmm</think>Done.\n<tool_call>{\"tool\": \"x\"}</tool_call>\n"
                "```json\n{\"tool\": \"y\"}\n```")
        self.assertEqual(clean_final_response(text), "Done.")

    def test_format_agent_result(self):
        result = AgentResult(True, 2, [ActionLog("write", "a.txt", "success"),
                                       ActionLog("command", "npm", "error")], "ok")
        self.assertEqual(format_agent_result(result),
                         "Agent completed in 2 iteration(s)\n\nActions performed:\n"
                         "  ✓ write: a.txt\n  ✗ command: npm")
        self.assertEqual(format_agent_result(AgentResult(False, 1, [], "", error="boom")),
                         "Agent failed: boom")
        self.assertEqual(format_agent_result(AgentResult(False, 1, [], "", aborted=True)),
                         "Agent was stopped by user")


class TestScanProject(unittest.TestCase):

    def test_typescript_project(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "package.json").write_text(json.dumps(
                {"name": "demo-app", "devDependencies": {"typescript": "^5.0.0"}}))
            (root / "src").mkdir()
            (root / "src" / "index.ts").write_text("")
            (root / "src" / "logo.png").write_bytes(b"")
            (root / "node_modules" / "dep").mkdir(parents=True)
            (root / "node_modules" / "dep" / "index.js").write_text("")

            ctx = scan_project(root)
            self.assertEqual(ctx.name, "demo-app")
            self.assertEqual(ctx.type, "TypeScript/Node.js")
            self.assertEqual(ctx.file_count, 2)
            self.assertEqual(ctx.key_files, ["package.json"])
            self.assertEqual(ctx.structure, "  package.json\n  src/\n    index.ts")
            self.assertEqual(ctx.summary, "demo-app is a TypeScript/Node.js project with 2 code files.")

    def test_plain_directory(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "notes.md").write_text("")
            ctx = scan_project(tmp)
            self.assertEqual(ctx.type, "generic")
            self.assertEqual(ctx.name, Path(tmp).resolve().name)

    def test_python_project(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "requirements.txt").write_text("requests\n")
            self.assertEqual(scan_project(tmp).type, "Python")


if __name__ == "__main__":
    unittest.main()
