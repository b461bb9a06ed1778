import json
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from agent_core import AgentError, CancelToken, ChatCancelledError, ChatTimeoutError, Log, TransportError
from agent_llm import (
    LLMClient, ProjectContext, SubTask, TaskPlan, format_chat_history_for_agent, format_task_plan,
    get_agent_system_prompt, get_fallback_system_prompt, get_next_task, load_project_rules,
    parse_task_plan, plan_tasks,
)

Log.set_silent(True)


def _response(status=200, body=None, text="", chunks=None):
    resp = mock.Mock(status_code=status, text=text)
    resp.json.return_value = body if body is not None else {}
    if chunks is not None:
        resp.iter_content.return_value = iter(chunks)
    return resp


def _openai_body(content="", tool_calls=None):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"choices": [{"message": message}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1}}


MESSAGES = [{"role": "user", "content": "create hello.txt"}]


@mock.patch("agent_llm.requests.post")
class TestChat(unittest.TestCase):

    def client(self, provider="z.ai", protocol="openai"):
        return LLMClient(provider=provider, protocol=protocol, model="test-model", api_key="sk-test")

    def test_native_tool_call(self, post):
        post.return_value = _response(body=_openai_body("", [
            {"id": "c1", "type": "function",
             "function": {"name": "write_file",
                          "arguments": json.dumps({"path": "hello.txt", "content": "hi"})}}]))
        resp = self.client().chat(MESSAGES, "SYSTEM")
        self.assertTrue(resp.used_native_tools)
        self.assertEqual(resp.tool_calls[0].parameters, {"path": "hello.txt", "content": "hi"})

        url     = post.call_args[0][0]
        payload = post.call_args[1]["json"]
        headers = post.call_args[1]["headers"]
        self.assertTrue(url.endswith("/chat/completions"))
        self.assertEqual(payload["messages"][0], {"role": "system", "content": "SYSTEM"})
        self.assertEqual(payload["tool_choice"], "auto")
        self.assertIn("write_file", [t["function"]["name"] for t in payload["tools"]])
        self.assertEqual(headers["Authorization"], "Bearer sk-test")

    def test_rejected_tools_fall_back_to_text(self, post):
        text_reply = ('<tool_call>{"tool": "write_file", "parameters": '
                      '{"path": "hello.txt", "content": "hi"}}</tool_call>')
        post.side_effect = [
            _response(400, text='{"error": "tools are not supported by this model"}'),
            _response(body=_openai_body(text_reply)),
        ]
        resp = self.client().chat(MESSAGES, "SYSTEM")

        self.assertFalse(resp.used_native_tools)
        self.assertEqual([(c.tool, c.parameters) for c in resp.tool_calls],
                         [("write_file", {"path": "hello.txt", "content": "hi"})])
        self.assertEqual(post.call_count, 2)
        retry = post.call_args_list[1][1]["json"]
        self.assertNotIn("tools", retry)
        self.assertIn("## Available Tools", retry["messages"][0]["content"])

    def test_fallback_uses_remaining_time(self, post):
        def _slow_reject(*args, **kwargs):
            if post.call_count == 1:
                time.sleep(0.1)
                return _response(400, text="tools unsupported")
            return _response(body=_openai_body("ok"))

        post.side_effect = _slow_reject
        resp = self.client().chat(MESSAGES, "SYSTEM", timeout=5)
        self.assertEqual(resp.content, "ok")
        first, second = (c[1]["timeout"] for c in post.call_args_list)
        self.assertEqual(first, 5)
        self.assertGreater(second, 0)
        self.assertLessEqual(second, 4.9)

    def test_other_errors_raise(self, post):
        post.return_value = _response(503, text="overloaded")
        with self.assertRaises(TransportError) as ctx:
            self.client().chat(MESSAGES, "SYSTEM")
        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(post.call_count, 1)

    def test_provider_without_native_tools(self, post):
        post.return_value = _response(body={"content": [{"type": "text", "text": "Done."}]})
        resp = self.client("minimax", "anthropic").chat(MESSAGES, "SYSTEM")
        self.assertFalse(resp.used_native_tools)
        self.assertEqual(resp.content, "Done.")

        url     = post.call_args[0][0]
        payload = post.call_args[1]["json"]
        self.assertTrue(url.endswith("/v1/messages"))
        self.assertEqual(post.call_args[1]["headers"]["x-api-key"], "sk-test")
        self.assertEqual([m["role"] for m in payload["messages"]], ["user", "assistant", "user"])
        self.assertNotIn("tools", payload)

    def test_streaming(self, post):
        events = [{"choices": [{"delta": {"content": "Hel"}}]},
                  {"choices": [{"delta": {"content": "lo"}}]}]
        body = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"
        post.return_value = _response(chunks=[body.encode()[:17], body.encode()[17:]])
        seen = []
        resp = self.client().chat(MESSAGES, "SYSTEM", on_chunk=seen.append)
        self.assertEqual(resp.content, "Hello")
        self.assertEqual(seen, ["Hel", "lo"])
        self.assertTrue(post.call_args[1]["stream"])

    def test_transport_timeout(self, post):
        post.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(ChatTimeoutError):
            self.client().chat(MESSAGES, "SYSTEM", timeout=5)

    def test_connection_error(self, post):
        post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(AgentError) as ctx:
            self.client().chat(MESSAGES, "SYSTEM")
        self.assertIn("Connection error", str(ctx.exception))

    def test_cancel_while_waiting(self, post):
        release = threading.Event()

        def _slow(*args, **kwargs):
            release.wait(2)
            return _response(body=_openai_body("late"))

        post.side_effect = _slow
        cancel = CancelToken()
        threading.Timer(0.05, cancel.cancel).start()
        try:
            with self.assertRaises(ChatCancelledError):
                self.client().chat(MESSAGES, "SYSTEM", cancel=cancel, timeout=5)
        finally:
            release.set()

    def test_deadline_while_waiting(self, post):
        release = threading.Event()

        def _slow(*args, **kwargs):
            release.wait(2)
            return _response(body=_openai_body("late"))

        post.side_effect = _slow
        try:
            with self.assertRaises(ChatTimeoutError) as ctx:
                self.client().chat(MESSAGES, "SYSTEM", timeout=0.2)
            self.assertIn("200ms", str(ctx.exception))
        finally:
            release.set()

    def test_complete_anthropic(self, post):
        post.return_value = _response(body={"content": [{"type": "text", "text": "plan"}]})
        text = self.client("z.ai", "anthropic").complete("prompt", "system")
        self.assertEqual(text, "plan")
        self.assertTrue(post.call_args[0][0].endswith("/v1/messages"))
        self.assertEqual(post.call_args[1]["json"]["system"], "system")

    def test_complete_requires_key(self, post):
        client = LLMClient(provider="z.ai", protocol="openai", model="m", api_key="")
        with self.assertRaises(AgentError):
            client.complete("prompt", "system")
        post.assert_not_called()


class TestUnsupportedProtocol(unittest.TestCase):

    def test_lmstudio_has_no_anthropic(self):
        client = LLMClient(provider="lmstudio", protocol="anthropic", model="m", api_key="")
        with self.assertRaises(AgentError):
            client.chat(MESSAGES, "SYSTEM")


class TestPrompts(unittest.TestCase):

    def test_system_prompts(self):
        ctx = ProjectContext(root="/work/app", name="app", type="Python", structure="src/")
        prompt = get_agent_system_prompt(ctx)
        self.assertIn("Name: app", prompt)
        self.assertIn("## Project Structure\nsrc/", prompt)
        self.assertNotIn("## Available Tools", prompt)
        self.assertIn("## Available Tools", get_fallback_system_prompt(ctx))

    def test_project_rules(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(load_project_rules(tmp), "")
            (Path(tmp) / "CODEAGENT.md").write_text("Use tabs.")
            self.assertIn("Use tabs.", load_project_rules(tmp))
            (Path(tmp) / ".codeagent").mkdir()
            (Path(tmp) / ".codeagent" / "rules.md").write_text("Use spaces.")
            self.assertIn("Use spaces.", load_project_rules(tmp))

    def test_chat_history_filtering(self):
        history = [
            {"role": "user", "content": "old question"},
            {"role": "assistant", "content": "[AGENT] Agent completed in 3 iterations"},
            {"role": "assistant", "content": "old answer"},
            {"role": "user", "content": "new question"},
        ]
        out = format_chat_history_for_agent(history)
        self.assertIn("**User:** old question", out)
        self.assertIn("**Assistant:** old answer", out)
        self.assertNotIn("[AGENT]", out)
        self.assertEqual(format_chat_history_for_agent([]), "")

    def test_chat_history_budget_keeps_newest(self):
        history = [{"role": "user", "content": "a" * 100},
                   {"role": "user", "content": "b" * 100}]
        out = format_chat_history_for_agent(history, max_chars=150)
        self.assertIn("b" * 100, out)
        self.assertNotIn("a" * 100, out)

    def test_oversized_single_message_truncated(self):
        out = format_chat_history_for_agent([{"role": "user", "content": "x" * 500}], max_chars=200)
        self.assertIn("[truncated]", out)
        self.assertNotIn("x" * 150, out)


class TestPlanner(unittest.TestCase):

    CTX = ProjectContext(root="/p", name="shop", type="TypeScript/Node.js")

    def test_parse_fenced_plan(self):
        content = ('```json\n{"tasks": [{"id": 1, "description": "Create model"}, '
                   '{"id": 2, "description": "Add routes", "dependencies": [1]}]}\n```')
        plan = parse_task_plan("build shop", content)
        self.assertEqual([t.description for t in plan.tasks], ["Create model", "Add routes"])
        self.assertEqual(plan.tasks[1].dependencies, [1])
        self.assertEqual(plan.estimated_iterations, 6)

    def test_plan_tasks_uses_client(self):
        client = mock.Mock()
        client.complete.return_value = json.dumps({"tasks": [{"id": 1, "description": "only"}]})
        plan = plan_tasks("do it", self.CTX, client)
        self.assertEqual(len(plan.tasks), 1)
        self.assertIn("shop", client.complete.call_args[0][0])

    def test_plan_tasks_falls_back_on_error(self):
        client = mock.Mock()
        client.complete.side_effect = AgentError("No API key configured")
        plan = plan_tasks("build a blog", self.CTX, client)
        self.assertEqual([(t.id, t.description) for t in plan.tasks], [(1, "build a blog")])
        self.assertEqual(plan.estimated_iterations, 10)

    def test_plan_tasks_falls_back_on_bad_json(self):
        client = mock.Mock()
        client.complete.return_value = "Sure! Here is my plan: step one..."
        self.assertEqual(len(plan_tasks("x", self.CTX, client).tasks), 1)

    def test_next_task_respects_dependencies(self):
        tasks = [SubTask(1, "a", status="in_progress"), SubTask(2, "b", dependencies=[1]),
                 SubTask(3, "c")]
        self.assertEqual(get_next_task(tasks).id, 3)
        tasks[0].status = "completed"
        self.assertEqual(get_next_task(tasks).id, 2)

    def test_format_task_plan(self):
        plan = TaskPlan("p", [SubTask(1, "a", status="completed"), SubTask(2, "b", dependencies=[1])], 6)
        text = format_task_plan(plan)
        self.assertIn("✓ 1. a", text)
        self.assertIn("⏸ 2. b (after: 1)", text)
        self.assertIn("Estimated iterations: ~6", text)


if __name__ == "__main__":
    unittest.main()
