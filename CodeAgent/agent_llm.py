#!/usr/bin/env python3
"""
agent_llm.py — LLM chat client, system prompts and the task planner.

LLMClient.chat() sends one agent turn using the provider's native
tool-calling contract (OpenAI `tools` or Anthropic `tools`). When the
provider has no native tools for the active protocol, or the backend
rejects the tools parameter, the same turn is re-issued through
chat_fallback(), which embeds the text tool definitions in the prompt and
recovers calls from the reply text.

Every HTTP request runs on a worker thread; the caller waits in short
slices so the run's CancelToken and the call deadline are both honoured.
A deadline trip raises ChatTimeoutError, a cancel raises ChatCancelledError,
which lets the orchestrator tell "took too long" from "stopped by user".

Dependency graph (no cycles):
    agent_core ← agent_catalog ← agent_parsing ← agent_stream ← agent_llm
"""

import json
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from agent_catalog import format_tool_definitions, get_anthropic_tools, get_openai_tools
from agent_core import (
    PROVIDERS, AgentError, CancelToken, ChatCancelledError, ChatTimeoutError, Config, Log,
    TransportError, get_effective_max_tokens, get_provider_protocol,
    supports_native_tools, usage_tracker,
)
from agent_parsing import parse_tool_calls
from agent_stream import (
    AgentChatResponse, iter_stream_chunks, parse_anthropic_body, parse_openai_body,
    read_anthropic_tool_stream, read_openai_tool_stream, read_plain_stream,
)

ChunkCallback = Callable[[str], None]

_POLL_INTERVAL      = 0.1
_ANTHROPIC_VERSION  = "2023-06-01"
_MIN_MAX_TOKENS     = 16384
_FALLBACK_ACK       = "Understood. I will use the tools as specified."


# =============================================================================
# PROJECT CONTEXT
# =============================================================================

@dataclass
class ProjectContext:
    root:       str
    name:       str       = ""
    type:       str       = "unknown"
    structure:  str       = ""
    key_files:  List[str] = field(default_factory=list)
    file_count: int       = 0
    summary:    str       = ""


# =============================================================================
# SYSTEM PROMPTS
# =============================================================================

_RULES_CANDIDATES = (
    Path(".codeagent") / "rules.md",
    Path("CODEAGENT.md"),
)


def load_project_rules(project_root) -> str:
    """Return the project's rules section, or "" when none is defined."""
    for rel in _RULES_CANDIDATES:
        path = Path(project_root) / rel
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            Log.debug(f"Failed to read project rules from {path}: {e}")
            continue
        if content:
            Log.debug(f"Loaded project rules from {path}")
            return ("\n\n## Project Rules\nThe following rules are defined by the project "
                    f"owner. You MUST follow these rules:\n\n{content}")
    return ""


_AGENT_STATUS_PREFIXES = ("[AGENT]", "[DRY RUN]", "Agent completed", "Agent failed", "Agent stopped")


def format_chat_history_for_agent(history: Optional[List[Dict[str, str]]],
                                  max_chars: int = 16000) -> str:
    """Keep the newest chat messages that fit in *max_chars*.

    Agent status lines echoed into the chat are dropped first. A single
    message larger than the whole budget is cut and kept only when nothing
    newer was selected.
    """
    if not history:
        return ""
    filtered = [m for m in history
                if not (m.get("content") or "").lstrip().startswith(_AGENT_STATUS_PREFIXES)]
    if not filtered:
        return ""

    selected: List[Dict[str, str]] = []
    total = 0
    for msg in reversed(filtered):
        label   = "User" if msg.get("role") == "user" else "Assistant"
        content = msg.get("content") or ""
        entry   = f"{label}: {content}"
        if total + len(entry) > max_chars and selected:
            break
        if len(entry) > max_chars:
            selected.insert(0, {"role": msg.get("role", ""),
                                "content": content[:max_chars - 100] + "\n[truncated]"})
            break
        selected.insert(0, msg)
        total += len(entry)

    lines = "\n\n".join(
        f"**{'User' if m.get('role') == 'user' else 'Assistant'}:** {m.get('content', '')}"
        for m in selected)
    return ("\n\n## Prior Conversation Context\nThe following is the recent chat history from "
            "this session. Use it as background context to understand the user's intent, but "
            f"focus on completing the current task.\n\n{lines}")


AGENT_SYSTEM_PROMPT = """You are an AI coding agent with FULL autonomous access to this project.

## Your Capabilities
- Read, write, edit, and delete files and directories
- Create directories with create_directory tool
- Execute shell commands (npm, git, build tools, etc.)
- Search code in the project
- List directory contents

## IMPORTANT: Follow User Instructions Exactly
- Do EXACTLY what the user asks
- If user says "create a website" -> create ALL necessary files (HTML, CSS, JS, images, etc.)
- If user says "create folder X" -> use create_directory tool to create folder X
- If user says "delete file X" -> use delete_file tool to delete file X
- The user may write in any language - understand their request and execute it
- Tool names and parameters must ALWAYS be in English (e.g., "create_directory", not "kreiraj_direktorij")
- KEEP WORKING until the ENTIRE task is finished - do NOT stop after creating just directories or partial files
- Only stop when you have created ALL files needed for a complete, working solution

## Rules
1. Always read files before editing them to understand the current content
2. Use edit_file for modifications to existing files (preserves other content)
3. Use write_file only for creating new files or complete overwrites
4. Use create_directory to create new folders/directories
5. Use list_files to see directory contents
6. Use search_code to find files or search patterns
7. NEVER use execute_command for: ls, find, cat, grep, mkdir, rm, cp, mv, touch
8. Use execute_command ONLY for: npm, git, composer, pip, cargo (build/package managers)
9. When the task is complete, respond with a summary WITHOUT any tool calls
10. CRITICAL: If the task is NOT complete, you MUST call a tool — never respond with only text mid-task. Do not "think out loud" or describe what you are about to do without calling a tool. Act immediately.

## Project Information
Name: {name}
Type: {type}
Root: {root}
{structure}"""


def get_agent_system_prompt(ctx: ProjectContext) -> str:
    structure = f"\n## Project Structure\n{ctx.structure}" if ctx.structure else ""
    return AGENT_SYSTEM_PROMPT.format(
        name=ctx.name or "Unknown",
        type=ctx.type or "unknown",
        root=ctx.root or str(Path.cwd()),
        structure=structure,
    )


def get_fallback_system_prompt(ctx: ProjectContext) -> str:
    return get_agent_system_prompt(ctx) + "\n\n" + format_tool_definitions()


# =============================================================================
# LLM CLIENT
# =============================================================================

class LLMClient:
    """One provider/protocol/model binding. Defaults come from Config."""

    _HEADERS: Dict[str, str] = {"Content-Type": "application/json"}

    def __init__(self, provider: Optional[str] = None, protocol: Optional[str] = None,
                 model: Optional[str] = None, api_key: Optional[str] = None):
        self.provider = provider or Config.PROVIDER
        if protocol:
            self.protocol = protocol
        elif provider and not Config.PROTOCOL:
            self.protocol = (PROVIDERS.get(provider) or {}).get("default_protocol", "openai")
        else:
            self.protocol = Config.protocol()
        self.model   = model if model is not None else Config.model()
        self.api_key = api_key if api_key is not None else Config.get_api_key(self.provider)

    # ── request plumbing ─────────────────────────────────────────────────────

    def _endpoint(self) -> Dict[str, Any]:
        entry = get_provider_protocol(self.provider, self.protocol)
        if not entry or not entry.get("base_url"):
            raise AgentError(f"Provider {self.provider} does not support {self.protocol} protocol")
        return entry

    def _headers(self, auth_header: str) -> Dict[str, str]:
        headers = dict(self._HEADERS)
        if auth_header == "Bearer":
            headers["Authorization"] = f"Bearer {self.api_key}"
        else:
            headers["x-api-key"] = self.api_key
        if self.protocol == "anthropic":
            headers["anthropic-version"] = _ANTHROPIC_VERSION
        return headers

    def _max_tokens(self) -> int:
        return get_effective_max_tokens(self.provider, max(Config.MAX_TOKENS, _MIN_MAX_TOKENS))

    def _url(self, base_url: str) -> str:
        if self.protocol == "openai":
            return f"{base_url}/chat/completions"
        return f"{base_url}/v1/messages"

    def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str],
              stream: bool, timeout: float, cancel: Optional[CancelToken]):
        """POST on a worker thread; wait in slices for cancel or the deadline."""
        box: Dict[str, Any] = {}
        done = threading.Event()

        def _worker():
            try:
                resp = requests.post(url, json=payload, headers=headers,
                                     stream=stream, timeout=timeout)
                box["resp"] = resp
                if box.get("abandoned"):
                    resp.close()
            except Exception as e:
                box["error"] = e
            finally:
                done.set()

        threading.Thread(target=_worker, daemon=True).start()
        deadline = time.monotonic() + timeout
        while not done.wait(_POLL_INTERVAL):
            if cancel is not None and cancel.cancelled:
                box["abandoned"] = True
                raise ChatCancelledError("Request cancelled")
            if time.monotonic() >= deadline:
                box["abandoned"] = True
                raise ChatTimeoutError(f"API request timed out after {int(timeout * 1000)}ms")

        err = box.get("error")
        if isinstance(err, requests.Timeout):
            raise ChatTimeoutError(f"API request timed out after {int(timeout * 1000)}ms")
        if isinstance(err, requests.ConnectionError):
            raise AgentError(f"Connection error: {err}")
        if isinstance(err, requests.RequestException):
            raise AgentError(f"Request failed: {err}")
        if err is not None:
            raise err
        if cancel is not None and cancel.cancelled:
            box["resp"].close()
            raise ChatCancelledError("Request cancelled")
        return box["resp"]

    @staticmethod
    def _is_ok(resp) -> bool:
        return 200 <= resp.status_code < 300

    @staticmethod
    def _json(resp) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise AgentError(f"Invalid JSON response from API: {e}")
        if not isinstance(data, dict):
            raise AgentError("Invalid JSON response from API: expected an object")
        return data

    def _record_usage(self, usage: Optional[Dict[str, int]]):
        if usage:
            usage_tracker.record(usage, self.model, self.provider)

    # ── native tool-calling turn ─────────────────────────────────────────────

    def chat(self, messages: List[Dict[str, Any]], system_prompt: str,
             on_chunk: Optional[ChunkCallback] = None,
             cancel: Optional[CancelToken] = None,
             timeout: Optional[float] = None) -> AgentChatResponse:
        """Send one agent turn with native tools.

        Streams when *on_chunk* is given. Falls back to the text protocol
        when the provider lacks native tools here or the backend rejects them.
        """
        entry = self._endpoint()
        if not supports_native_tools(self.provider, self.protocol):
            return self.chat_fallback(messages, system_prompt, on_chunk, cancel, timeout)

        timeout  = timeout or Config.API_TIMEOUT
        deadline = time.monotonic() + timeout
        stream   = on_chunk is not None

        if self.protocol == "openai":
            payload = {
                "model":       self.model,
                "messages":    [{"role": "system", "content": system_prompt}, *messages],
                "tools":       get_openai_tools(),
                "tool_choice": "auto",
                "stream":      stream,
                "temperature": Config.TEMPERATURE,
                "max_tokens":  self._max_tokens(),
            }
        else:
            payload = {
                "model":       self.model,
                "system":      system_prompt,
                "messages":    list(messages),
                "tools":       get_anthropic_tools(),
                "stream":      stream,
                "temperature": Config.TEMPERATURE,
                "max_tokens":  self._max_tokens(),
            }

        resp = self._post(self._url(entry["base_url"]), payload, self._headers(entry["auth_header"]),
                          stream, timeout, cancel)

        if not self._is_ok(resp):
            text = resp.text or ""
            resp.close()
            if "tools" in text or "function" in text or resp.status_code == 400:
                Log.debug(f"Native tools rejected ({resp.status_code}); retrying with text tools")
                # The fallback shares this turn's deadline.
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ChatTimeoutError(f"API request timed out after {int(timeout * 1000)}ms")
                return self.chat_fallback(messages, system_prompt, on_chunk, cancel, remaining)
            raise TransportError(resp.status_code, text)

        if stream:
            chunks = iter_stream_chunks(resp, cancel, deadline,
                                        f" after {int(timeout * 1000)}ms")
            if self.protocol == "openai":
                result = read_openai_tool_stream(chunks, on_chunk)
            else:
                result = read_anthropic_tool_stream(chunks, on_chunk)
        else:
            data = self._json(resp)
            result = parse_openai_body(data) if self.protocol == "openai" else parse_anthropic_body(data)

        Log.debug(f"Parsed tool calls: {len(result.tool_calls)} {[c.tool for c in result.tool_calls]}")
        self._record_usage(result.usage)
        return result

    # ── text-tool fallback turn ──────────────────────────────────────────────

    def chat_fallback(self, messages: List[Dict[str, Any]], system_prompt: str,
                      on_chunk: Optional[ChunkCallback] = None,
                      cancel: Optional[CancelToken] = None,
                      timeout: Optional[float] = None) -> AgentChatResponse:
        """Send one turn with the tools described in the prompt text."""
        entry    = self._endpoint()
        timeout  = timeout or Config.API_TIMEOUT
        deadline = time.monotonic() + timeout
        stream   = on_chunk is not None

        prompt = (system_prompt if "## Available Tools" in system_prompt
                  else system_prompt + "\n\n" + format_tool_definitions())

        if self.protocol == "openai":
            payload = {
                "model":       self.model,
                "messages":    [{"role": "system", "content": prompt}, *messages],
                "stream":      stream,
                "temperature": Config.TEMPERATURE,
                "max_tokens":  self._max_tokens(),
            }
        else:
            payload = {
                "model":    self.model,
                "messages": [
                    {"role": "user",      "content": prompt},
                    {"role": "assistant", "content": _FALLBACK_ACK},
                    *messages,
                ],
                "stream":      stream,
                "temperature": Config.TEMPERATURE,
                "max_tokens":  self._max_tokens(),
            }

        resp = self._post(self._url(entry["base_url"]), payload, self._headers(entry["auth_header"]),
                          stream, timeout, cancel)
        if not self._is_ok(resp):
            text = resp.text or ""
            resp.close()
            raise TransportError(resp.status_code, text)

        if stream:
            chunks  = iter_stream_chunks(resp, cancel, deadline, f" after {int(timeout * 1000)}ms")
            content = read_plain_stream(chunks, self.protocol, on_chunk)
            usage   = None
        else:
            data = self._json(resp)
            if self.protocol == "openai":
                parsed = parse_openai_body(data)
            else:
                parsed = parse_anthropic_body(data)
            content, usage = parsed.content, parsed.usage

        self._record_usage(usage)
        return AgentChatResponse(content, parse_tool_calls(content), used_native_tools=False,
                                 usage=usage)

    # ── plain completion (planner) ───────────────────────────────────────────

    def complete(self, prompt: str, system: str, max_tokens: int = 2048,
                 temperature: float = 0.3, timeout: Optional[float] = None,
                 cancel: Optional[CancelToken] = None) -> str:
        """Single non-streamed, tool-less completion. Returns the reply text."""
        if not self.api_key:
            raise AgentError("No API key configured")
        entry   = self._endpoint()
        timeout = timeout or Config.API_TIMEOUT
        if self.protocol == "anthropic":
            payload = {"model": self.model, "max_tokens": max_tokens, "system": system,
                       "temperature": temperature,
                       "messages": [{"role": "user", "content": prompt}]}
        else:
            payload = {"model": self.model, "temperature": temperature, "max_tokens": max_tokens,
                       "messages": [{"role": "system", "content": system},
                                    {"role": "user", "content": prompt}]}
        resp = self._post(self._url(entry["base_url"]), payload, self._headers(entry["auth_header"]),
                          False, timeout, cancel)
        if not self._is_ok(resp):
            raise TransportError(resp.status_code, resp.text or "")
        data = self._json(resp)
        if self.protocol == "anthropic":
            blocks = data.get("content") or [{}]
            return (blocks[0] or {}).get("text") or ""
        return (((data.get("choices") or [{}])[0] or {}).get("message") or {}).get("content") or ""


# =============================================================================
# TASK PLANNER
# =============================================================================

@dataclass
class SubTask:
    id:           int
    description:  str
    status:       str       = "pending"   # pending | in_progress | completed | failed
    dependencies: List[int] = field(default_factory=list)


@dataclass
class TaskPlan:
    original_prompt:      str
    tasks:                List[SubTask]
    estimated_iterations: int


PLANNER_SYSTEM = "You are a task planning assistant. Respond with JSON only."

PLANNER_PROMPT = """You are a task planning expert. Break down user requests into clear, sequential subtasks.

RULES:
1. Create 3-10 subtasks maximum (keep it focused)
2. Each subtask should be specific and achievable in 2-5 tool calls
3. Order tasks logically - one file/component per task
4. Use simple, clear descriptions
5. For websites: separate HTML, CSS, JS into different tasks
6. Respond ONLY with a JSON object, no other text

Example for "create a website":
{{
  "tasks": [
    {{"id": 1, "description": "Create directory structure", "dependencies": []}},
    {{"id": 2, "description": "Create index.html with page structure", "dependencies": [1]}},
    {{"id": 3, "description": "Create styles.css with layout and design", "dependencies": [1]}},
    {{"id": 4, "description": "Create script.js with interactive features", "dependencies": [1]}},
    {{"id": 5, "description": "Add content and finalize all pages", "dependencies": [2, 3, 4]}}
  ]
}}

Project Context:
- Name: {name}
- Type: {type}

User Request: {prompt}

Break this down into subtasks. Each task = one file or one logical unit. Respond with JSON only."""

_FENCE_RE = re.compile(r"```(?:json)?\n?")


def _single_task_plan(prompt: str) -> TaskPlan:
    return TaskPlan(prompt, [SubTask(1, prompt)], 10)


def parse_task_plan(prompt: str, content: str) -> TaskPlan:
    """Turn the planner's JSON reply into a TaskPlan. Raises on bad input."""
    text = content.strip()
    if text.startswith("```"):
        text = _FENCE_RE.sub("", text)
    parsed = json.loads(text)
    tasks = []
    for idx, t in enumerate(parsed["tasks"]):
        tasks.append(SubTask(
            id           = int(t.get("id") or idx + 1),
            description  = str(t["description"]),
            dependencies = [int(d) for d in (t.get("dependencies") or [])],
        ))
    if not tasks:
        raise ValueError("planner returned no tasks")
    return TaskPlan(prompt, tasks, len(tasks) * 3)


def plan_tasks(prompt: str, ctx: ProjectContext, client: Optional[LLMClient] = None,
               cancel: Optional[CancelToken] = None) -> TaskPlan:
    """Ask the model for a subtask breakdown; one task covering *prompt* on any failure."""
    client = client or LLMClient()
    text   = PLANNER_PROMPT.format(name=ctx.name, type=ctx.type, prompt=prompt)
    try:
        content = client.complete(text, PLANNER_SYSTEM, max_tokens=2048, temperature=0.3,
                                  cancel=cancel)
        return parse_task_plan(prompt, content)
    except Exception as e:
        Log.debug(f"Task planning failed, using a single task: {e}")
        return _single_task_plan(prompt)


def can_start_task(task: SubTask, all_tasks: List[SubTask]) -> bool:
    if not task.dependencies:
        return True
    by_id = {t.id: t for t in all_tasks}
    return all(by_id.get(d) is not None and by_id[d].status == "completed"
               for d in task.dependencies)


def get_next_task(tasks: List[SubTask]) -> Optional[SubTask]:
    for t in tasks:
        if t.status == "pending" and can_start_task(t, tasks):
            return t
    return None


_STATUS_ICONS = {"completed": "✓", "in_progress": "⏳", "failed": "✗"}


def format_task_plan(plan: TaskPlan) -> str:
    lines = ["Task Plan:", ""]
    for t in plan.tasks:
        icon = _STATUS_ICONS.get(t.status, "⏸")
        deps = f" (after: {', '.join(str(d) for d in t.dependencies)})" if t.dependencies else ""
        lines.append(f"{icon} {t.id}. {t.description}{deps}")
    lines.append("")
    lines.append(f"Estimated iterations: ~{plan.estimated_iterations}")
    return "\n".join(lines)
