#!/usr/bin/env python3
"""
agent_parsing.py — Tool-call recovery for CodeAgent.

Turns raw model output into a list of ToolCall objects:
  - native OpenAI tool_calls (JSON arguments, possibly truncated mid-stream)
  - native Anthropic tool_use blocks
  - free text, via a prioritised list of text strategies (first hit wins)

Every call passes through normalize_tool_name() and validate_tool_call()
before it leaves this module, so known tools always carry their required
parameters. Unrecoverable calls are dropped, never defaulted.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from agent_catalog import AGENT_TOOLS, required_params
from agent_core import Log


# =============================================================================
# TOOL CALL
# =============================================================================

@dataclass
class ToolCall:
    tool:       str
    parameters: Dict[str, Any] = field(default_factory=dict)
    id:         Optional[str]  = None

    def key(self) -> str:
        return f"{self.tool}:{json.dumps(self.parameters, sort_keys=True, default=str)}"

    def to_dict(self) -> Dict[str, Any]:
        d = {"tool": self.tool, "parameters": self.parameters}
        if self.id:
            d["id"] = self.id
        return d


_TOOL_NAME_ALIASES = {
    "executecommand":  "execute_command",
    "readfile":        "read_file",
    "writefile":       "write_file",
    "editfile":        "edit_file",
    "deletefile":      "delete_file",
    "listfiles":       "list_files",
    "searchcode":      "search_code",
    "createdirectory": "create_directory",
    "findfiles":       "find_files",
    "fetchurl":        "fetch_url",
}


def normalize_tool_name(name: str) -> str:
    lower = (name or "").strip().lower().replace("-", "_")
    return _TOOL_NAME_ALIASES.get(lower, lower)


def validate_tool_call(call: ToolCall) -> Optional[str]:
    """Return an error string when a known tool lacks required parameters."""
    if call.tool not in AGENT_TOOLS:
        return None
    if not isinstance(call.parameters, dict):
        return "Parameters must be an object"
    missing = [p for p in required_params(call.tool)
               if call.parameters.get(p) is None or
               (p == "path" and not call.parameters.get(p))]
    if missing:
        return f"Missing required parameters: {missing}"
    return None


def _accept(call: ToolCall, source: str) -> bool:
    if not call.tool:
        return False
    err = validate_tool_call(call)
    if err:
        Log.debug(f"Dropping {source} call to {call.tool}: {err}")
        return False
    return True


# =============================================================================
# PARTIAL JSON RECOVERY
# =============================================================================

_PATH_RE      = re.compile(r'"path"\s*:\s*"([^"]+)"')
_CONTENT_RE   = re.compile(r'"content"\s*:\s*"([\s\S]*?)(?:(?<!\\)"|$)')
_OLD_TEXT_RE  = re.compile(r'"old_text"\s*:\s*"([\s\S]*?)(?:(?<!\\)"|$)')
_NEW_TEXT_RE  = re.compile(r'"new_text"\s*:\s*"([\s\S]*?)(?:(?<!\\)"|$)')
_COMMAND_RE   = re.compile(r'"command"\s*:\s*"([^"]+)"')
_ARGS_RE      = re.compile(r'"args"\s*:\s*\[([\s\S]*?)\]')
_QUOTED_RE    = re.compile(r'"([^"]*)"')

_TRUNCATED_MARK = "\n<!-- Content may be truncated -->\n"
_MISSING_MARK   = "<!-- Content was truncated by API -->\n"


def _unescape(s: str) -> str:
    return (s.replace("\\n", "\n").replace("\\t", "\t").replace("\\r", "\r")
             .replace('\\"', '"').replace("\\\\", "\\"))


def extract_partial_tool_params(tool: str, raw_args: str) -> Optional[Dict[str, Any]]:
    """Recover what we can from an argument string that failed strict JSON."""
    if tool == "write_file":
        path = _PATH_RE.search(raw_args)
        if not path:
            return None
        content = _CONTENT_RE.search(raw_args)
        if not content:
            return {"path": path.group(1), "content": _MISSING_MARK}
        text = _unescape(content.group(1))
        if not text.endswith(("\n", "}", ";", ">")):
            text += _TRUNCATED_MARK
        return {"path": path.group(1), "content": text}

    if tool in ("read_file", "list_files", "create_directory", "delete_file"):
        path = _PATH_RE.search(raw_args)
        return {"path": path.group(1)} if path else None

    if tool == "edit_file":
        path     = _PATH_RE.search(raw_args)
        old_text = _OLD_TEXT_RE.search(raw_args)
        new_text = _NEW_TEXT_RE.search(raw_args)
        if path and old_text and new_text:
            return {"path":     path.group(1),
                    "old_text": _unescape(old_text.group(1)),
                    "new_text": _unescape(new_text.group(1))}
        return None

    if tool == "execute_command":
        command = _COMMAND_RE.search(raw_args)
        if not command:
            return None
        args: List[str] = []
        args_m = _ARGS_RE.search(raw_args)
        if args_m:
            args = _QUOTED_RE.findall(args_m.group(1))
        return {"command": command.group(1), "args": args}

    return None


# =============================================================================
# NATIVE PROTOCOLS
# =============================================================================

def parse_openai_tool_calls(tool_calls: Optional[List[Dict[str, Any]]]) -> List[ToolCall]:
    if not isinstance(tool_calls, list):
        return []
    parsed: List[ToolCall] = []
    for tc in tool_calls:
        if not isinstance(tc, dict):
            continue
        fn   = tc.get("function") or {}
        tool = normalize_tool_name(fn.get("name") or "")
        if not tool:
            continue
        raw_args = fn.get("arguments") or "{}"
        if isinstance(raw_args, dict):
            params = raw_args
        else:
            try:
                params = json.loads(raw_args)
            except json.JSONDecodeError:
                Log.debug(f"Partial arguments for {tool}: {raw_args[:200]!r}")
                params = extract_partial_tool_params(tool, raw_args)
                if params is None:
                    Log.debug(f"Could not recover arguments, skipping {tool}")
                    continue
        if not isinstance(params, dict):
            continue
        call = ToolCall(tool, params, tc.get("id"))
        if _accept(call, "openai"):
            parsed.append(call)
    return parsed


def parse_anthropic_tool_calls(content: Optional[List[Dict[str, Any]]]) -> List[ToolCall]:
    if not isinstance(content, list):
        return []
    parsed: List[ToolCall] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            continue
        call = ToolCall(normalize_tool_name(block.get("name") or ""),
                        block.get("input") or {}, block.get("id"))
        if _accept(call, "anthropic"):
            parsed.append(call)
    return parsed


# =============================================================================
# TEXT FALLBACK
# =============================================================================

_LOOSE_PARAM_RE = re.compile(r'"(\w+)"\s*:\s*"([^"]*)"')
_LOOSE_BOOL_RE  = re.compile(r'"(\w+)"\s*:\s*(true|false)', re.IGNORECASE)
_TOOL_KEY_RE    = re.compile(r'"tool"\s*:\s*"([^"]+)"', re.IGNORECASE)


def _try_parse_tool_call(text: str) -> Optional[ToolCall]:
    cleaned = re.sub(r"[\r\n]+", " ", text)
    cleaned = re.sub(r",\s*}", "}", cleaned)
    cleaned = re.sub(r",\s*]", "]", cleaned).strip()
    try:
        obj = json.loads(cleaned)
    except json.JSONDecodeError:
        obj = None
    if isinstance(obj, dict):
        if isinstance(obj.get("tool"), str) and obj["tool"]:
            params = obj.get("parameters")
            return ToolCall(normalize_tool_name(obj["tool"]),
                            params if isinstance(params, dict) else {},
                            obj.get("id"))
        return None

    tool_m = _TOOL_KEY_RE.search(text)
    if not tool_m:
        return None
    params: Dict[str, Any] = {}
    for key, val in _LOOSE_PARAM_RE.findall(text):
        if key != "tool":
            params[key] = val
    for key, val in _LOOSE_BOOL_RE.findall(text):
        params[key] = val.lower() == "true"
    if not params:
        return None
    return ToolCall(normalize_tool_name(tool_m.group(1)), params)


def _try_extract_params(text: str) -> Optional[Dict[str, Any]]:
    params: Dict[str, Any] = {}

    args_m = _ARGS_RE.search(text)
    if args_m:
        try:
            params["args"] = json.loads(f"[{args_m.group(1)}]")
        except json.JSONDecodeError:
            params["args"] = _QUOTED_RE.findall(args_m.group(1))

    for key in ("command", "path", "pattern"):
        m = re.search(rf'"{key}"\s*:\s*"([^"]*)"', text)
        if m:
            params[key] = m.group(1)

    for key in ("content", "old_text", "new_text"):
        m = re.search(rf'"{key}"\s*:\s*"([\s\S]*?)(?<!\\)"', text)
        if m:
            params[key] = _unescape(m.group(1))

    rec = re.search(r'"recursive"\s*:\s*(true|false)', text, re.IGNORECASE)
    if rec:
        params["recursive"] = rec.group(1).lower() == "true"

    return params or None


_DELIMITED_RE = re.compile(r"<tool_?call>\s*([\s\S]*?)\s*</tool_?call>", re.IGNORECASE)
_MALFORMED_RE = re.compile(r'<toolcall>(\w+)[\s,]*(?:"parameters"\s*:\s*)?(\{[\s\S]*?\})',
                           re.IGNORECASE)
_LOOSE_RE     = re.compile(r"""<toolcall>(\w+)[,\s]+["']?parameters["']?\s*:\s*(\{[\s\S]*?\})(?:</toolcall>|<|$)""",
                           re.IGNORECASE)
_FENCED_RE    = re.compile(r"```(?:tool|json)?\s*\n?([\s\S]*?)\n?```")
_ARG_TAG_RE   = re.compile(r"Tool\s+(\w+)((?:\s*<arg_key>[\s\S]*?</arg_key>\s*<arg_value>[\s\S]*?</arg_value>)+)",
                           re.IGNORECASE)
_ARG_PAIR_RE  = re.compile(r"<arg_key>([\s\S]*?)</arg_key>\s*<arg_value>([\s\S]*?)</arg_value>",
                           re.IGNORECASE)
_INLINE_RE    = re.compile(r'\{[^{}]*"tool"\s*:\s*"[^"]+"\s*,\s*"parameters"\s*:\s*\{[^{}]*\}[^{}]*\}')


def _from_delimited(text: str) -> List[ToolCall]:
    return [c for c in (_try_parse_tool_call(m.group(1).strip())
                        for m in _DELIMITED_RE.finditer(text)) if c]


def _from_malformed(text: str) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for m in _MALFORMED_RE.finditer(text):
        tool = normalize_tool_name(m.group(1))
        try:
            obj    = json.loads(m.group(2))
            params = obj.get("parameters", obj) if isinstance(obj, dict) else None
        except json.JSONDecodeError:
            params = _try_extract_params(m.group(2))
        if isinstance(params, dict) and params:
            calls.append(ToolCall(tool, params))
    for m in _LOOSE_RE.finditer(text):
        tool = normalize_tool_name(m.group(1))
        if any(c.tool == tool for c in calls):
            continue
        params = _try_extract_params(m.group(2))
        if params:
            calls.append(ToolCall(tool, params))
    return calls


def _from_fenced(text: str) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for m in _FENCED_RE.finditer(text):
        body = m.group(1).strip()
        if '"tool"' in body or '"parameters"' in body:
            call = _try_parse_tool_call(body)
            if call:
                calls.append(call)
    return calls


def _from_arg_tags(text: str) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for m in _ARG_TAG_RE.finditer(text):
        params = {k.strip(): v.strip() for k, v in _ARG_PAIR_RE.findall(m.group(2))}
        if params:
            calls.append(ToolCall(normalize_tool_name(m.group(1)), params))
    return calls


def _from_inline_json(text: str) -> List[ToolCall]:
    return [c for c in (_try_parse_tool_call(m.group(0))
                        for m in _INLINE_RE.finditer(text)) if c]


TEXT_STRATEGIES: List[Callable[[str], List[ToolCall]]] = [
    _from_delimited,
    _from_malformed,
    _from_fenced,
    _from_arg_tags,
    _from_inline_json,
]


def parse_tool_calls(text: str) -> List[ToolCall]:
    """Parse text-format tool calls. The first strategy that yields a call wins."""
    if not text:
        return []
    for strategy in TEXT_STRATEGIES:
        seen:  set            = set()
        calls: List[ToolCall] = []
        for call in strategy(text):
            if not _accept(call, "text"):
                continue
            key = call.key()
            if key in seen:
                continue
            seen.add(key)
            calls.append(call)
        if calls:
            return calls
    return []


def has_text_tool_call(text: str) -> bool:
    return bool(parse_tool_calls(text))
