import json
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from agent_core import Log
from agent_parsing import (
    ToolCall, extract_partial_tool_params, has_text_tool_call, normalize_tool_name,
    parse_anthropic_tool_calls, parse_openai_tool_calls, parse_tool_calls, validate_tool_call,
)

Log.set_silent(True)


def _openai_call(name, arguments, call_id="call_1"):
    return {"id": call_id, "type": "function",
            "function": {"name": name, "arguments": arguments}}


class TestNormalize(unittest.TestCase):

    def test_aliases(self):
        self.assertEqual(normalize_tool_name("ReadFile"), "read_file")
        self.assertEqual(normalize_tool_name("execute-command"), "execute_command")
        self.assertEqual(normalize_tool_name(" write_file "), "write_file")

    def test_unknown_name_lowercased(self):
        self.assertEqual(normalize_tool_name("MyTool"), "mytool")

    def test_validate_missing_required(self):
        err = validate_tool_call(ToolCall("write_file", {"content": "x"}))
        self.assertIn("path", err)
        self.assertIsNone(validate_tool_call(ToolCall("write_file", {"path": "a", "content": ""})))
        self.assertIsNotNone(validate_tool_call(ToolCall("read_file", {"path": ""})))

    def test_validate_unknown_tool_passes(self):
        self.assertIsNone(validate_tool_call(ToolCall("not_a_tool", {})))


class TestOpenAIToolCalls(unittest.TestCase):

    def test_well_formed(self):
        calls = parse_openai_tool_calls([
            _openai_call("read_file", json.dumps({"path": "src/a.py"})),
            _openai_call("executeCommand", json.dumps({"command": "npm", "args": ["test"]}), "c2"),
        ])
        self.assertEqual([c.tool for c in calls], ["read_file", "execute_command"])
        self.assertEqual(calls[0].parameters, {"path": "src/a.py"})
        self.assertEqual(calls[1].id, "c2")

    def test_truncated_write_recovered_with_marker(self):
        raw = '{"path": "index.html", "content": "<html>\\n<body>hello'
        calls = parse_openai_tool_calls([_openai_call("write_file", raw)])
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0].parameters["path"], "index.html")
        self.assertTrue(calls[0].parameters["content"].startswith("<html>\n<body>hello"))
        self.assertIn("Content may be truncated", calls[0].parameters["content"])

    def test_unrecoverable_call_dropped(self):
        calls = parse_openai_tool_calls([
            _openai_call("write_file", '{"content": "no path here'),
            _openai_call("read_file", json.dumps({"path": "ok.txt"})),
        ])
        self.assertEqual([c.tool for c in calls], ["read_file"])

    def test_missing_required_dropped(self):
        self.assertEqual(parse_openai_tool_calls([_openai_call("edit_file", '{"path": "a"}')]), [])

    def test_not_a_list(self):
        self.assertEqual(parse_openai_tool_calls(None), [])


class TestPartialParams(unittest.TestCase):

    def test_write_without_content(self):
        params = extract_partial_tool_params("write_file", '{"path": "a.txt", "cont')
        self.assertEqual(params["path"], "a.txt")
        self.assertIn("truncated by API", params["content"])

    def test_complete_looking_content_not_marked(self):
        params = extract_partial_tool_params("write_file", '{"path": "a.js", "content": "x = 1;')
        self.assertEqual(params["content"], "x = 1;")

    def test_execute_command_args(self):
        params = extract_partial_tool_params(
            "execute_command", '{"command": "npm", "args": ["run", "build"], "extra": ')
        self.assertEqual(params, {"command": "npm", "args": ["run", "build"]})

    def test_edit_requires_all_fields(self):
        self.assertIsNone(extract_partial_tool_params("edit_file", '{"path": "a", "old_text": "x"'))

    def test_unknown_tool(self):
        self.assertIsNone(extract_partial_tool_params("fetch_url", '{"url": "http://x'))


class TestAnthropicToolCalls(unittest.TestCase):

    def test_tool_use_blocks(self):
        calls = parse_anthropic_tool_calls([
            {"type": "text", "text": "Reading"},
            {"type": "tool_use", "id": "tu_1", "name": "list_files", "input": {"path": "."}},
            {"type": "tool_use", "id": "tu_2", "name": "read_file", "input": {}},
        ])
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0].tool, "list_files")
        self.assertEqual(calls[0].id, "tu_1")


class TestTextToolCalls(unittest.TestCase):

    def test_delimited(self):
        text = ('Let me read it.\n<tool_call>{"tool": "read_file", '
                '"parameters": {"path": "README.md"}}</tool_call>')
        calls = parse_tool_calls(text)
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0].tool, "read_file")
        self.assertEqual(calls[0].parameters, {"path": "README.md"})

    def test_delimited_with_trailing_comma_and_newlines(self):
        text = '<toolcall>{"tool": "list_files",\n "parameters": {"path": "src",},}</toolcall>'
        calls = parse_tool_calls(text)
        self.assertEqual([(c.tool, c.parameters) for c in calls], [("list_files", {"path": "src"})])

    def test_malformed_name_prefix(self):
        text = '<toolcall>read_file {"path": "main.py"}'
        calls = parse_tool_calls(text)
        self.assertEqual([(c.tool, c.parameters) for c in calls], [("read_file", {"path": "main.py"})])

    def test_fenced_block(self):
        text = 'Here:\n```json\n{"tool": "create_directory", "parameters": {"path": "lib"}}\n```\n'
        calls = parse_tool_calls(text)
        self.assertEqual(calls[0].tool, "create_directory")

    def test_arg_tags(self):
        text = ("Tool write_file <arg_key>path</arg_key><arg_value>a.txt</arg_value>"
                "<arg_key>content</arg_key><arg_value>hi</arg_value>")
        calls = parse_tool_calls(text)
        self.assertEqual(calls[0].parameters, {"path": "a.txt", "content": "hi"})

    def test_inline_json(self):
        text = 'I will run {"tool": "execute_command", "parameters": {"command": "ls"}} now'
        calls = parse_tool_calls(text)
        self.assertEqual(calls[0].tool, "execute_command")
        self.assertEqual(calls[0].parameters, {"command": "ls"})

    def test_duplicates_removed(self):
        one = '<tool_call>{"tool": "read_file", "parameters": {"path": "a"}}</tool_call>'
        self.assertEqual(len(parse_tool_calls(one + "\n" + one)), 1)

    def test_first_strategy_wins(self):
        text = ('<tool_call>{"tool": "read_file", "parameters": {"path": "a"}}</tool_call>\n'
                '```json\n{"tool": "read_file", "parameters": {"path": "b"}}\n```')
        calls = parse_tool_calls(text)
        self.assertEqual([c.parameters["path"] for c in calls], ["a"])

    def test_invalid_calls_dropped(self):
        self.assertEqual(parse_tool_calls('<tool_call>{"tool": "read_file", "parameters": {}}</tool_call>'), [])

    def test_plain_text(self):
        self.assertEqual(parse_tool_calls("All done, the task is complete."), [])
        self.assertFalse(has_text_tool_call(""))


if __name__ == "__main__":
    unittest.main()
