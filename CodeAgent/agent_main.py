#!/usr/bin/env python3
"""
agent_main.py — Agent loop and CLI entrypoint for CodeAgent.

Contains: run_agent(), the project scanner that builds the ProjectContext,
context compression, result formatting and the argparse CLI.

Usage:
  codeagent "task description"               # run in the current directory
  codeagent --project ./app "add a README"   # run in another project
  codeagent --dry-run "refactor utils"       # show what would be executed
  codeagent --verify "fix the build"         # run build/test checks afterwards
  codeagent --history                        # list recent sessions
  codeagent --undo | --undo-all              # revert the latest session
  codeagent --show SESSION_ID                # show one session

Run lifecycle:
  start session → (plan) → iterate: chat → execute tools → feed results
  → (verify → fix)* → end session

The session is sealed and persisted in a finally block, so every exit path
(completion, limit, error, cancellation) leaves an undoable record.
"""

import argparse
import json
import os
import re
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from agent_core import (
    VERSION, CancelToken, ChatCancelledError, ChatTimeoutError, Colors, Config, Log,
    colored, strip_thinking, supports_native_tools, truncate_output,
    usage_tracker,
)
from agent_history import ActionSession, HistoryJournal, format_session
from agent_llm import (
    LLMClient, ProjectContext, TaskPlan, format_chat_history_for_agent, format_task_plan,
    get_agent_system_prompt, get_fallback_system_prompt, load_project_rules, plan_tasks,
)
from agent_parsing import ToolCall, normalize_tool_name, parse_tool_calls
from agent_tools import ActionLog, ToolResult, create_action_log, execute_tool, format_tool_result
from agent_verify import (
    VerifyOptions, VerifyResult, format_errors_for_agent, format_verify_results,
    get_verification_summary, has_verification_errors, run_all_verifications,
)


# =============================================================================
# OPTIONS & RESULT
# =============================================================================

@dataclass
class AgentOptions:
    max_iterations:   Optional[int]   = None   # default Config.AGENT_MAX_ITERATIONS
    max_duration:     Optional[float] = None   # seconds; default Config.AGENT_MAX_DURATION minutes
    dry_run:          bool            = False
    auto_verify:      Optional[bool]  = None
    max_fix_attempts: Optional[int]   = None
    use_planning:     Optional[bool]  = None
    chat_history:     Optional[List[Dict[str, str]]] = None
    cancel:           Optional[CancelToken]    = None
    client:           Optional[LLMClient]      = None
    journal:          Optional[HistoryJournal] = None

    on_chunk:        Optional[Callable[[str], None]] = None
    on_tool_call:    Optional[Callable[[ToolCall], None]] = None
    on_tool_result:  Optional[Callable[[ToolResult, ToolCall], None]] = None
    on_iteration:    Optional[Callable[[int, str], None]] = None
    on_thinking:     Optional[Callable[[str], None]] = None
    on_verification: Optional[Callable[[List[VerifyResult]], None]] = None
    on_task_plan:    Optional[Callable[[TaskPlan], None]] = None


@dataclass
class AgentResult:
    success:        bool
    iterations:     int
    actions:        List[ActionLog]
    final_response: str
    error:          Optional[str] = None
    aborted:        bool          = False
    session_id:     Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "success":        self.success,
            "iterations":     self.iterations,
            "actions":        [a.to_dict() for a in self.actions],
            "final_response": self.final_response,
        }
        if self.error is not None:
            d["error"] = self.error
        if self.aborted:
            d["aborted"] = True
        if self.session_id:
            d["session_id"] = self.session_id
        return d


# =============================================================================
# LOOP HELPERS
# =============================================================================

CONTEXT_COMPRESS_THRESHOLD = 80_000
RECENT_MESSAGES_TO_KEEP    = 6

MAX_CHAT_RETRIES           = 3
MAX_CONSECUTIVE_FAILURES   = 9

_MIN_CALL_TIMEOUT = 120.0
_MAX_CALL_TIMEOUT = 300.0

PLANNING_KEYWORDS = ("create", "build", "implement", "add", "setup", "generate", "make", "develop")

COMPLETION_PHRASES = (
    "task is complete", "task complete", "task has been completed", "completed the task",
    "all done", "i have completed", "i've completed", "successfully completed",
    "everything is in place", "finished the task", "work is complete", "is now complete",
)

_WRITE_TOOLS = ("write_file", "edit_file")

_NOISE_PATTERNS = [
    re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE),
    re.compile(r"<tool_call>[\s\S]*?</tool_call>", re.IGNORECASE),
    re.compile(r"<arg_key>[\s\S]*?</arg_value>", re.IGNORECASE),
    re.compile(r"Tool parameters:[\s\S]*?(?=\n\n|$)", re.IGNORECASE),
    re.compile(r"\{'path'[\s\S]*?\}"),
    re.compile(r"```(?:json|tool_call)?\s*\{[\s\S]*?\}\s*```"),
]


def calculate_dynamic_timeout(iteration: int, base_timeout: float) -> float:
    """Per-call timeout in seconds: grows with the iteration, clamped to 120–300s."""
    multiplier = 1.0
    if iteration > 3:
        multiplier = 1.2
    if iteration > 8:
        multiplier = 1.5
    return min(max(base_timeout * multiplier, _MIN_CALL_TIMEOUT), _MAX_CALL_TIMEOUT)


def compress_messages(messages: List[Dict[str, Any]],
                      actions: List[ActionLog]) -> List[Dict[str, Any]]:
    """Replace the middle of a long conversation with a summary of the action log.

    Keeps the first message (the task) and the last RECENT_MESSAGES_TO_KEEP
    verbatim. Returns *messages* itself when no compression is needed.
    """
    total = sum(len(str(m.get("content") or "")) for m in messages)
    if total < CONTEXT_COMPRESS_THRESHOLD:
        return messages
    if len(messages) <= RECENT_MESSAGES_TO_KEEP + 1:
        return messages

    writes   = [a.target for a in actions if a.type in ("write", "edit")]
    deletes  = [a.target for a in actions if a.type == "delete"]
    commands = [a.target for a in actions if a.type == "command"]
    reads    = [a.target for a in actions if a.type == "read"]

    lines = ["[Context compressed — summary of work so far]"]
    if writes:
        lines.append(f"Files written/edited ({len(writes)}): {', '.join(writes)}")
    if deletes:
        lines.append(f"Files deleted: {', '.join(deletes)}")
    if commands:
        lines.append(f"Commands run: {', '.join(commands)}")
    if reads:
        lines.append(f"Files read ({len(reads)}): {', '.join(reads[-10:])}")
    lines.append("[End of summary — continuing from current state]")

    Log.debug(f"Context compressed: {total} chars → first + summary + last {RECENT_MESSAGES_TO_KEEP}")
    return [messages[0], {"role": "user", "content": "\n".join(lines)},
            *messages[-RECENT_MESSAGES_TO_KEEP:]]


def clean_final_response(content: str) -> str:
    """Drop thinking blocks and tool-call debris from a closing message."""
    for pattern in _NOISE_PATTERNS:
        content = pattern.sub("", content)
    return content.strip()


def has_completion_phrase(text: str) -> bool:
    lower = text.lower()
    return any(p in lower for p in COMPLETION_PHRASES)


def should_plan(prompt: str, use_planning: bool) -> bool:
    if not use_planning:
        return False
    lower = prompt.lower()
    return len(prompt.split(" ")) > 3 or any(kw in lower for kw in PLANNING_KEYWORDS)


def _partial_progress(header: str, actions: List[ActionLog], tail: str) -> str:
    files = list(dict.fromkeys(a.target for a in actions if a.type in ("write", "edit")))
    lines = [header]
    if files:
        lines.append("\n**Partial progress — files written/edited:**")
        lines.extend(f"  ✓ `{f}`" for f in files)
        lines.append(tail)
    return "\n".join(lines)


def _backoff(seconds: float, cancel: Optional[CancelToken]):
    if cancel is not None:
        cancel.wait(seconds)
    else:
        time.sleep(seconds)


def _error_code(err: Exception) -> str:
    status = getattr(err, "status", None)
    msg    = str(err)
    if status == 429 or "429" in msg:
        return "429"
    if (isinstance(status, int) and status >= 500) or any(c in msg for c in ("500", "502", "503", "529")):
        return "5xx"
    return "error"


def _uses_native_tools(client) -> bool:
    return supports_native_tools(getattr(client, "provider", Config.PROVIDER),
                                 getattr(client, "protocol", Config.protocol()))


def _tool_results_message(results: List[str], iteration: int) -> str:
    body = "\n\n".join(results)
    if iteration <= 4:
        tail = ("Continue with the task. Keep calling tools until every part of the task "
                "is done; do not stop to summarise yet.")
    else:
        tail = "Continue with the task. If this subtask is complete, provide a summary without tool calls."
    return f"Tool results:\n\n{body}\n\n{tail}"


# =============================================================================
# AGENT LOOP
# =============================================================================

def run_agent(prompt: str, ctx: ProjectContext,
              options: Optional[AgentOptions] = None) -> AgentResult:
    """Drive one task to completion, a limit, an error or cancellation."""
    opts           = options or AgentOptions()
    max_iterations = opts.max_iterations or Config.AGENT_MAX_ITERATIONS
    max_duration   = (opts.max_duration if opts.max_duration is not None
                      else Config.AGENT_MAX_DURATION * 60)
    auto_verify    = Config.AGENT_AUTO_VERIFY if opts.auto_verify is None else opts.auto_verify
    max_fix        = (opts.max_fix_attempts if opts.max_fix_attempts is not None
                      else Config.AGENT_MAX_FIX_ATTEMPTS)
    use_planning   = Config.AGENT_USE_PLANNING if opts.use_planning is None else opts.use_planning
    cancel         = opts.cancel
    client         = opts.client or LLMClient()
    journal        = opts.journal or HistoryJournal()
    root           = Path(ctx.root or os.getcwd())

    start_time = time.monotonic()
    actions:  List[ActionLog]      = []
    messages: List[Dict[str, Any]] = []
    session:  ActionSession        = journal.start_session(prompt, root)

    def notify_iteration(n: int, label: str):
        if opts.on_iteration:
            opts.on_iteration(n, label)

    def finish(success: bool, final: str, error: Optional[str] = None,
               aborted: bool = False) -> AgentResult:
        return AgentResult(success, iteration, actions, final, error, aborted, session.id)

    def run_tool(call: ToolCall) -> ToolResult:
        if opts.on_tool_call:
            opts.on_tool_call(call)
        if opts.dry_run:
            result = ToolResult(True, f"[DRY RUN] Would execute: {call.tool}", call.tool,
                                call.parameters)
        else:
            result = execute_tool(call, root, session, cancel)
        if opts.on_tool_result:
            opts.on_tool_result(result, call)
        actions.append(create_action_log(call, result))
        return result

    iteration      = 0
    final_response = ""

    try:
        # ── planning ──────────────────────────────────────────────────────────
        plan: Optional[TaskPlan] = None
        if should_plan(prompt, use_planning):
            notify_iteration(0, "Planning tasks...")
            plan = plan_tasks(prompt, ctx, client, cancel)
            if len(plan.tasks) > 1:
                if opts.on_task_plan:
                    opts.on_task_plan(plan)
                plan.tasks[0].status = "in_progress"
            else:
                plan = None

        # ── system prompt ─────────────────────────────────────────────────────
        if _uses_native_tools(client):
            system_prompt = get_agent_system_prompt(ctx)
        else:
            system_prompt = get_fallback_system_prompt(ctx)
        system_prompt += load_project_rules(root)
        system_prompt += format_chat_history_for_agent(opts.chat_history)

        first = prompt
        if plan is not None:
            first = (f"{prompt}\n\n## Task Breakdown\nI've broken this down into subtasks. "
                     f"Complete them in order:\n\n{format_task_plan(plan)}\n\nStart with task 1.")
        messages.append({"role": "user", "content": first})

        consecutive_failures = 0
        no_tool_streak       = 0
        accepted             = False
        last_write_by_path: Dict[str, str] = {}
        duplicate_writes     = 0
        read_cache: Dict[str, str] = {}

        # ── main loop ─────────────────────────────────────────────────────────
        while iteration < max_iterations:
            if time.monotonic() - start_time >= max_duration:
                minutes = round(max_duration / 60)
                return finish(False,
                              _partial_progress(f"Agent reached the time limit ({minutes} min).",
                                                actions,
                                                "\nYou can continue by running the agent again."),
                              error=f"Exceeded maximum duration of {minutes} min")
            if cancel is not None and cancel.cancelled:
                Log.debug(f"Agent aborted at iteration {iteration}")
                return finish(False, "Agent was stopped by user", aborted=True)

            iteration += 1
            notify_iteration(iteration, f"Iteration {iteration}/{max_iterations}")

            compressed = compress_messages(messages, actions)
            if compressed is not messages:
                messages = compressed
                notify_iteration(iteration, "Context compressed to save memory — continuing "
                                            f"with last {len(messages)} messages")

            call_timeout = calculate_dynamic_timeout(iteration, Config.API_TIMEOUT)

            # ── chat with retries ─────────────────────────────────────────────
            response = None
            retries  = 0
            while True:
                try:
                    response = client.chat(list(messages), system_prompt, opts.on_chunk, cancel,
                                           call_timeout * (1 + retries * 0.5))
                    consecutive_failures = 0
                    break
                except ChatCancelledError:
                    return finish(False, "Agent was stopped by user", aborted=True)
                except ChatTimeoutError:
                    retries += 1
                    consecutive_failures += 1
                    notify_iteration(iteration, f"API timeout, retrying ({retries}/{MAX_CHAT_RETRIES})...")
                    if retries >= MAX_CHAT_RETRIES:
                        if consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                            return finish(
                                False, "Agent stopped due to repeated API timeouts",
                                error=(f"API timed out {consecutive_failures} times consecutively. "
                                       "Try increasing the timeout in settings or simplifying the task."))
                        messages.append({"role": "user", "content":
                                         "The previous request timed out. Please continue with the "
                                         "task, using simpler responses if needed."})
                        break
                    _backoff(1.0 * retries, cancel)
                except Exception as e:
                    retries += 1
                    code = _error_code(e)
                    wait = min(5 * retries, 30)
                    Log.debug(f"{code} (retry {retries}/{MAX_CHAT_RETRIES}): {e}")
                    notify_iteration(iteration, f"API {code}, retrying in {wait}s... "
                                                f"({retries}/{MAX_CHAT_RETRIES})")
                    if retries >= MAX_CHAT_RETRIES:
                        consecutive_failures += 1
                        if consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                            final = (f"Agent made progress ({len(actions)} actions) but API errors "
                                     "prevented completion. You can continue by running the agent again."
                                     if actions else
                                     "Agent could not complete the task due to repeated API errors. "
                                     "Check your API key and network connection.")
                            return finish(False, final,
                                          error=f"API failed after {MAX_CHAT_RETRIES} retries: {e}")
                        messages.append({"role": "user", "content":
                                         "The previous request failed. Please continue with the task."})
                        break
                    _backoff(wait, cancel)
                if cancel is not None and cancel.cancelled:
                    return finish(False, "Agent was stopped by user", aborted=True)

            if response is None:
                continue

            content    = response.content or ""
            tool_calls = list(response.tool_calls)
            if response.used_native_tools and not tool_calls and iteration == 1:
                tool_calls = parse_tool_calls(content)

            _, thinking = strip_thinking(content)
            if thinking and opts.on_thinking:
                opts.on_thinking(thinking)

            # ── no tool calls: accept or re-prompt ────────────────────────────
            if not tool_calls:
                closing = clean_final_response(content)
                no_tool_streak += 1
                accepted = iteration >= 3 and (has_completion_phrase(closing)
                                               or no_tool_streak >= 2)
                if accepted:
                    final_response = closing
                    Log.debug(f"Agent finished at iteration {iteration}")
                    break
                messages.append({"role": "assistant", "content": content})
                messages.append({"role": "user", "content": "Continue. Execute the tool calls now."})
                continue
            no_tool_streak = 0

            # ── execute tool calls ────────────────────────────────────────────
            messages.append({"role": "assistant", "content": content})
            results: List[str] = []

            for call in tool_calls:
                result = run_tool(call)
                tool   = normalize_tool_name(call.tool)
                path   = str(call.parameters.get("path") or "")

                if tool in _WRITE_TOOLS:
                    key = json.dumps(call.parameters, sort_keys=True, default=str)[:500]
                    if last_write_by_path.get(path) == key:
                        duplicate_writes += 1
                        if duplicate_writes >= 2:
                            results.append(
                                f"[WARNING] You have written the same content to `{path}` "
                                f"{duplicate_writes + 1} times in a row. You are stuck in a loop. "
                                "Stop and think differently — read the file to check its current "
                                "state, then try a completely different approach.")
                            duplicate_writes = 0
                        else:
                            results.append(f"Tool {tool} succeeded (note: same content as previous "
                                           f"write to this file):\n{result.output}")
                    else:
                        duplicate_writes = 0
                        last_write_by_path[path] = key
                        results.append(format_tool_result(result))
                elif tool == "read_file" and result.success:
                    if path in read_cache:
                        results.append("Tool read_file succeeded (cached — file unchanged since "
                                       f"last read):\n{read_cache[path]}")
                    else:
                        read_cache[path] = truncate_output(
                            result.output, Config.TOOL_RESULT_MAX,
                            " — use search_code or read specific sections if you need more")
                        results.append(f"Tool read_file succeeded:\n{read_cache[path]}")
                else:
                    results.append(format_tool_result(result))

                if tool in _WRITE_TOOLS and result.success:
                    read_cache.pop(path, None)
                elif tool in ("execute_command", "delete_file") and result.success:
                    read_cache.clear()

            messages.append({"role": "user", "content": _tool_results_message(results, iteration)})

        # ── iteration ceiling ─────────────────────────────────────────────────
        if not accepted:
            return finish(False,
                          _partial_progress(f"Agent reached the iteration limit ({max_iterations} steps).",
                                            actions,
                                            "\nThe task may be incomplete. You can continue by "
                                            "running the agent again."),
                          error=f"Exceeded maximum of {max_iterations} iterations")

        # ── verify / fix ──────────────────────────────────────────────────────
        has_changes = any(a.type in ("write", "edit", "delete") for a in actions)
        if auto_verify and not opts.dry_run and has_changes:
            try:
                final_response, iteration = _verify_and_fix(
                    final_response, iteration, max_iterations, max_fix, messages, system_prompt,
                    client, root, actions, opts, run_tool)
            except ChatCancelledError:
                return finish(False, "Agent was stopped by user", aborted=True)

        return finish(True, final_response)

    except Exception as e:
        Log.debug(f"Agent run failed: {type(e).__name__}: {e}")
        return finish(False, "", error=str(e) or type(e).__name__)
    finally:
        journal.end_session(session)


def _filter_to_touched(results: List[VerifyResult], actions: List[ActionLog]):
    touched = {a.target for a in actions if a.type in ("write", "edit")}
    for r in results:
        r.errors = [e for e in r.errors
                    if not e.file or e.file in touched
                    or any(e.file.endswith(f) or f.endswith(e.file) for f in touched)]
        if not any(e.severity == "error" for e in r.errors):
            r.success = True


def _verify_and_fix(final_response: str, iteration: int, max_iterations: int, max_fix: int,
                    messages: List[Dict[str, Any]], system_prompt: str, client, root: Path,
                    actions: List[ActionLog], opts: AgentOptions,
                    run_tool: Callable[[ToolCall], ToolResult]) -> Tuple[str, int]:
    """Run checks, feed failures back, repeat.

    Failing checks never fail the run. Raises ChatCancelledError when the
    token is cancelled between steps or during a fix turn.
    """
    cancel        = opts.cancel
    attempt       = 0
    previous_sig  = ""
    verify_opts   = VerifyOptions(run_build=True, run_test=True, run_typecheck=True, run_lint=False)

    while attempt < max_fix:
        if cancel is not None and cancel.cancelled:
            raise ChatCancelledError("Request cancelled")
        if opts.on_iteration:
            opts.on_iteration(iteration, f"Verification attempt {attempt + 1}/{max_fix}")

        results = run_all_verifications(root, verify_opts, cancel)
        if cancel is not None and cancel.cancelled:
            raise ChatCancelledError("Request cancelled")
        if opts.on_verification:
            opts.on_verification(results)
        _filter_to_touched(results, actions)

        if not has_verification_errors(results):
            summary = get_verification_summary(results)
            if summary["total"]:
                final_response += f"\n\n✓ Verification passed: {summary['passed']}/{summary['total']} checks"
            break

        attempt += 1
        error_message = format_errors_for_agent(results)

        if attempt >= max_fix:
            final_response += (f"\n\n✗ Verification still failing after {attempt} fix attempt(s). "
                               "The file changes were kept.\n\n" + format_verify_results(results))
            break

        signature   = error_message[:200]
        repeating   = previous_sig != "" and signature == previous_sig
        previous_sig = signature

        if repeating:
            fix_prompt = (f"{error_message}\n\nYour previous fix attempt did NOT resolve these errors — "
                          "they are still the same. You MUST try a completely different approach:\n"
                          "- Re-read the affected files to understand the current state\n"
                          "- Consider whether the root cause is different from what you assumed\n"
                          "- Try an alternative implementation strategy\n"
                          "- If it's a missing dependency, install it with execute_command")
        elif attempt == 1:
            fix_prompt = (f"{error_message}\n\nFix these errors. Read the affected files first to "
                          "understand the current state before making changes.")
        else:
            fix_prompt = (f"{error_message}\n\nAttempt {attempt}/{max_fix}: Your previous fix was "
                          "partially successful but errors remain. Re-read ALL affected files and take "
                          "a fresh look — consider whether there are related issues you missed.")

        messages.append({"role": "assistant", "content": final_response})
        messages.append({"role": "user", "content": fix_prompt})

        iteration += 1
        if iteration >= max_iterations:
            break

        try:
            response = client.chat(list(messages), system_prompt, opts.on_chunk, cancel,
                                   calculate_dynamic_timeout(iteration, Config.API_TIMEOUT))
        except ChatCancelledError:
            raise
        except Exception as e:
            Log.debug(f"Fix attempt {attempt} chat failed: {e}")
            break

        if not response.tool_calls:
            final_response = clean_final_response(response.content or "")
            continue

        messages.append({"role": "assistant", "content": response.content or ""})
        fix_results = [format_tool_result(run_tool(call)) for call in response.tool_calls]
        messages.append({"role": "user", "content":
                         f"Fix results:\n\n{chr(10).join(fix_results)}\n\n"
                         "Continue fixing if needed. Re-running verification..."})

    return final_response, iteration


def format_agent_result(result: AgentResult) -> str:
    if result.success:
        lines = [f"Agent completed in {result.iterations} iteration(s)"]
    elif result.aborted:
        lines = ["Agent was stopped by user"]
    else:
        lines = [f"Agent failed: {result.error}"]
    if result.actions:
        lines.append("")
        lines.append("Actions performed:")
        for a in result.actions:
            lines.append(f"  {'✓' if a.result == 'success' else '✗'} {a.type}: {a.target}")
    return "\n".join(lines)


# =============================================================================
# PROJECT SCAN
# =============================================================================

IGNORE_DIRS = frozenset({
    "node_modules", ".git", "dist", "build", ".next", "coverage", ".cache",
    ".vscode", ".idea", "__pycache__", "venv", ".env",
})

CODE_EXTENSIONS = frozenset({
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".py", ".rb", ".go", ".rs", ".java", ".kt",
    ".c", ".cpp", ".h", ".hpp", ".cs",
    ".php", ".swift", ".vue", ".svelte",
    ".css", ".scss", ".less", ".sass",
    ".html", ".htm", ".xml", ".yaml", ".yml",
    ".json", ".md", ".txt", ".sh", ".bash",
})

KEY_FILES = (
    "package.json", "tsconfig.json", "README.md", "readme.md", ".env.example",
    "Cargo.toml", "go.mod", "requirements.txt", "Gemfile", "pom.xml",
    "build.gradle", "Makefile", "docker-compose.yml", "Dockerfile",
)

PROJECT_MARKERS = ("package.json", "Cargo.toml", "go.mod", "requirements.txt", "pom.xml", ".git")


def is_project_directory(path) -> bool:
    return any((Path(path) / m).exists() for m in PROJECT_MARKERS)


def get_project_type(path) -> str:
    d = Path(path)
    if (d / "package.json").exists():
        try:
            pkg = json.loads((d / "package.json").read_text(encoding="utf-8"))
        except (OSError, ValueError):
            pkg = {}
        deps = {**(pkg.get("dependencies") or {}), **(pkg.get("devDependencies") or {})} \
            if isinstance(pkg, dict) else {}
        if "typescript" in deps or (d / "tsconfig.json").exists():
            return "TypeScript/Node.js"
        return "JavaScript/Node.js"
    if (d / "Cargo.toml").exists():
        return "Rust"
    if (d / "go.mod").exists():
        return "Go"
    if any((d / f).exists() for f in ("requirements.txt", "setup.py", "pyproject.toml")):
        return "Python"
    if (d / "Gemfile").exists():
        return "Ruby"
    if (d / "pom.xml").exists() or (d / "build.gradle").exists():
        return "Java"
    return "Unknown"


def scan_directory(root: Path, max_depth: int = 3) -> List[Tuple[str, bool]]:
    """(relative posix path, is_dir) for directories and code/key files."""
    entries: List[Tuple[str, bool]] = []

    def _walk(d: Path, depth: int):
        if depth >= max_depth:
            return
        try:
            children = sorted(os.listdir(d))
        except OSError:
            return
        for name in children:
            if name in IGNORE_DIRS:
                continue
            full = d / name
            rel  = full.relative_to(root).as_posix()
            try:
                if full.is_dir():
                    entries.append((rel, True))
                    _walk(full, depth + 1)
                elif full.suffix.lower() in CODE_EXTENSIONS or name in KEY_FILES:
                    entries.append((rel, False))
            except OSError:
                continue

    _walk(root, 0)
    return entries


def generate_tree_structure(entries: List[Tuple[str, bool]], max_lines: int = 25) -> str:
    dirs: List[str] = []
    files_by_dir: Dict[str, List[str]] = {}
    for rel, is_dir in entries:
        if is_dir:
            dirs.append(rel)
        else:
            parent, _, name = rel.rpartition("/")
            files_by_dir.setdefault(parent, []).append(name)

    lines: List[str] = []
    for d in ["", *sorted(dirs)]:
        if len(lines) >= max_lines:
            lines.append("... (truncated)")
            break
        indent = "  " * len(d.split("/")) if d else ""
        if d:
            lines.append(f"{indent}{d.rsplit('/', 1)[-1]}/")
        files = files_by_dir.get(d, [])
        for f in files[:10]:
            if len(lines) >= max_lines:
                break
            lines.append(f"{indent}  {f}")
        if len(files) > 10:
            lines.append(f"{indent}  ... (+{len(files) - 10} more)")
    return "\n".join(lines)


def scan_project(path) -> ProjectContext:
    root = Path(path).resolve()
    name = root.name
    pkg  = root / "package.json"
    if pkg.exists():
        try:
            data = json.loads(pkg.read_text(encoding="utf-8"))
            if isinstance(data, dict) and data.get("name"):
                name = str(data["name"])
        except (OSError, ValueError) as e:
            Log.debug(f"Could not read package.json: {e}")

    ptype   = get_project_type(root) if is_project_directory(root) else "generic"
    entries = scan_directory(root)
    files   = [rel for rel, is_dir in entries if not is_dir]
    key     = [f for f in KEY_FILES if (root / f).is_file()][:5]
    return ProjectContext(
        root       = str(root),
        name       = name,
        type       = ptype,
        structure  = generate_tree_structure(entries),
        key_files  = key,
        file_count = len(files),
        summary    = f"{name} is a {ptype} project with {len(files)} code files.",
    )


# =============================================================================
# CLI ENTRYPOINT
# =============================================================================

_EXIT_CODES: Dict[str, int] = {
    "completed":      0,
    "failed":         1,
    "max_iterations": 2,
    "aborted":        130,
}


def _result_status(result: AgentResult) -> str:
    if result.success:
        return "completed"
    if result.aborted:
        return "aborted"
    if result.error and result.error.startswith("Exceeded maximum of"):
        return "max_iterations"
    return "failed"


def _print_sessions(journal: HistoryJournal) -> int:
    sessions = journal.recent_sessions(20)
    if not sessions:
        print("No sessions found.")
        return 0
    print(colored("\nRecent Sessions:", Colors.CYAN, bold=True))
    print(colored("─" * 80, Colors.CYAN))
    for s in sessions:
        print(format_session(s))
        print()
    return 0


def _undo_latest(journal: HistoryJournal, undo_all: bool) -> int:
    sessions = journal.recent_sessions(1)
    if not sessions:
        Log.warning("No sessions to undo")
        return 1
    session = sessions[0]
    if undo_all:
        res = session.undo_all()
        for msg in res["results"]:
            (Log.success if res["success"] else Log.info)(msg)
    else:
        res = session.undo_last()
        (Log.success if res["success"] else Log.error)(res["message"])
    journal.save(session)
    return 0 if res["success"] else 1


def _make_callbacks(verbose_tools: bool) -> Dict[str, Callable]:
    def on_chunk(text: str):
        sys.stdout.write(text)
        sys.stdout.flush()

    def on_iteration(n: int, label: str):
        Log.info(label)

    def on_tool_call(call: ToolCall):
        preview = call.parameters.get("path") or call.parameters.get("command") \
            or call.parameters.get("pattern") or call.parameters.get("url") or ""
        Log.tool(call.tool, str(preview)[:80])

    def on_tool_result(result: ToolResult, call: ToolCall):
        if result.success:
            Log.success(call.tool)
        else:
            Log.error(f"{call.tool}: {(result.error or '')[:200]}")

    def on_task_plan(plan: TaskPlan):
        Log.plan("\n" + format_task_plan(plan))

    def on_verification(results: List[VerifyResult]):
        if results:
            print(format_verify_results(results))

    return {
        "on_chunk":        on_chunk if verbose_tools else None,
        "on_iteration":    on_iteration,
        "on_tool_call":    on_tool_call,
        "on_tool_result":  on_tool_result,
        "on_task_plan":    on_task_plan,
        "on_verification": on_verification,
    }


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="codeagent",
        description=f"CodeAgent v{VERSION} — autonomous coding agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "CONFIGURATION:\n"
            "  Provider, model and limits come from environment variables or a\n"
            "  .env file (CODEAGENT_PROVIDER, CODEAGENT_MODEL, ZAI_API_KEY, ...).\n\n"
            "PROJECT RULES:\n"
            "  Put project-specific instructions in .codeagent/rules.md or CODEAGENT.md.\n\n"
            "SANDBOX:\n"
            "  File tools are confined to the project directory. Shell commands run\n"
            "  without a shell, from an allow list, with a hard timeout.\n"
        ),
    )
    parser.add_argument("task",             nargs="?", help="Task to execute")
    parser.add_argument("--project",        default=".", help="Project directory (default: cwd)")
    parser.add_argument("--dry-run",        action="store_true",
                        help="Report tool calls without executing them")
    parser.add_argument("--verify",         action="store_true",
                        help="Run build/test checks afterwards and let the agent fix failures")
    parser.add_argument("--plan",           action="store_true",
                        help="Break the task into subtasks first")
    parser.add_argument("--max-iterations", type=int, default=None, metavar="N",
                        help=f"Iteration ceiling (default {Config.AGENT_MAX_ITERATIONS})")
    parser.add_argument("--no-stream",      action="store_true",
                        help="Wait for whole responses instead of streaming")
    parser.add_argument("--history",        action="store_true", help="List recent sessions")
    parser.add_argument("--show",           metavar="SESSION_ID", help="Show one session")
    parser.add_argument("--undo",           action="store_true",
                        help="Undo the last action of the latest session")
    parser.add_argument("--undo-all",       action="store_true",
                        help="Undo every action of the latest session")
    parser.add_argument("--clear-history",  action="store_true", help="Delete all saved sessions")
    parser.add_argument("--version",        action="version", version=f"v{VERSION}")
    args = parser.parse_args()

    journal = HistoryJournal()

    if args.history:
        return _print_sessions(journal)
    if args.show:
        session = journal.get_session(args.show)
        if session is None:
            Log.error(f"Session not found: {args.show}")
            return 1
        print(format_session(session))
        return 0
    if args.undo or args.undo_all:
        return _undo_latest(journal, args.undo_all)
    if args.clear_history:
        Log.success(f"Removed {journal.clear_history()} session file(s)")
        return 0

    if not args.task:
        parser.print_help()
        return 1

    try:
        Config.validate()
    except ValueError as e:
        print(colored(f"Config error: {e}", Colors.RED))
        return 1
    if not Config.get_api_key():
        Log.warning(f"No API key set for provider {Config.PROVIDER}")

    project = Path(args.project).resolve()
    if not project.is_dir():
        Log.error(f"Project directory not found: {project}")
        return 1

    ctx = scan_project(project)
    Log.info(f"Project  : {ctx.summary}")
    Log.info(f"Provider : {Config.PROVIDER} ({Config.protocol()}) model={Config.model() or '-'}")

    cancel = CancelToken()

    def _on_sigint(signum, frame):
        if cancel.cancelled:
            raise KeyboardInterrupt
        Log.warning("Stopping… (press Ctrl-C again to force)")
        cancel.cancel()

    previous_handler = signal.signal(signal.SIGINT, _on_sigint)
    try:
        options = AgentOptions(
            max_iterations = args.max_iterations,
            dry_run        = args.dry_run,
            auto_verify    = True if args.verify else None,
            use_planning   = True if args.plan else None,
            cancel         = cancel,
            journal        = journal,
            **_make_callbacks(not args.no_stream),
        )
        result = run_agent(args.task, ctx, options)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print()
    if result.final_response:
        print(result.final_response)
        print()
    colour = Colors.GREEN if result.success else (Colors.YELLOW if result.aborted else Colors.RED)
    print(colored(format_agent_result(result), colour))

    totals = usage_tracker.totals()
    if totals["requests"]:
        Log.info(f"Tokens: {totals['prompt_tokens']} in / {totals['completion_tokens']} out "
                 f"over {totals['requests']} request(s)")
    if result.session_id and result.actions and not args.dry_run:
        Log.info(f"Session {result.session_id} — undo with: codeagent --undo")
    return _EXIT_CODES.get(_result_status(result), 1)


if __name__ == "__main__":
    sys.exit(main())
