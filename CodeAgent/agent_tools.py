#!/usr/bin/env python3
"""
agent_tools.py — Tool executor for CodeAgent.

execute_tool() is the only entry point the orchestrator uses. It:
  - normalises the tool name and checks required parameters
  - dispatches through TOOL_HANDLERS (one handler per catalog tool)
  - wraps every outcome, including exceptions, into a ToolResult

Every path goes through Safety.validate_path() before any filesystem access,
and every mutating handler asks the run's ActionSession to snapshot the
target first so the change can be undone.
"""

import json
import re
import shlex
import shutil
from dataclasses import dataclass, field
from html import unescape as _html_unescape
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import requests

from agent_catalog import (
    AGENT_TOOLS, get_minimax_mcp_config, get_zai_mcp_config,
)
from agent_core import (
    CancelToken, Config, IgnoreRules, Log, Safety, VERSION, now_ms, truncate_output,
)
from agent_history import ActionSession, _read_text, _write_text
from agent_parsing import ToolCall, normalize_tool_name, validate_tool_call
from sandboxed_shell import execute_command as _run_command


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ToolResult:
    success:    bool
    output:     str
    tool:       str
    parameters: Dict[str, Any] = field(default_factory=dict)
    error:      Optional[str]  = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"success": self.success, "output": self.output,
             "tool": self.tool, "parameters": self.parameters}
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class ActionLog:
    type:      str
    target:    str
    result:    str
    details:   Optional[str] = None
    timestamp: int           = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "target": self.target, "result": self.result,
                "details": self.details, "timestamp": self.timestamp}


@dataclass
class ToolContext:
    root:    Path
    session: Optional[ActionSession] = None
    cancel:  Optional[CancelToken]   = None


def _ok(output: str) -> Dict[str, Any]:
    return {"success": True, "output": output}


def _fail(error: str, output: str = "") -> Dict[str, Any]:
    return {"success": False, "output": output, "error": error}


def _as_bool(val: Any) -> bool:
    if isinstance(val, str):
        return val.strip().lower() in ("true", "1", "yes")
    return bool(val)


def _as_args(val: Any) -> List[str]:
    if val is None or val == "":
        return []
    if isinstance(val, str):
        try:
            return shlex.split(val)
        except ValueError:
            return val.split()
    if isinstance(val, (list, tuple)):
        return [str(a) for a in val]
    return [str(val)]


# =============================================================================
# TOOL HANDLERS: FILE OPERATIONS
# =============================================================================

def tool_read_file(ctx: ToolContext, path: str) -> Dict[str, Any]:
    ok, err, fp = Safety.validate_path(ctx.root, path)
    if not ok:
        return _fail(err)
    if not fp.exists():
        return _fail(f"File not found: {path}")
    if fp.is_dir():
        return _fail(f"Path is a directory, not a file: {path}")
    size = fp.stat().st_size
    if size > Config.MAX_READ_BYTES:
        return _fail(f"File too large ({size} bytes). Max: 100KB")
    return _ok(fp.read_text(encoding="utf-8", errors="replace"))


def tool_write_file(ctx: ToolContext, path: str, content: Optional[str] = None) -> Dict[str, Any]:
    if content is None:
        content = "<!-- Content was not provided -->\n"
    elif not isinstance(content, str):
        content = json.dumps(content, indent=2)
    ok, err, fp = Safety.validate_path(ctx.root, path)
    if not ok:
        return _fail(err)
    if fp.is_dir():
        return _fail(f"Path is a directory, not a file: {path}")
    if ctx.session:
        ctx.session.record_write(fp)
    existed = fp.exists()
    fp.parent.mkdir(parents=True, exist_ok=True)
    _write_text(fp, content)
    return _ok(f"{'Updated' if existed else 'Created'} file: {path}")


def _count_matches(content: str, text: str) -> int:
    """Occurrences of *text*, overlapping ones included."""
    return sum(1 for _ in re.finditer(f"(?={re.escape(text)})", content))


def tool_edit_file(ctx: ToolContext, path: str, old_text: str, new_text: str) -> Dict[str, Any]:
    ok, err, fp = Safety.validate_path(ctx.root, path)
    if not ok:
        return _fail(err)
    if not fp.is_file():
        return _fail(f"File not found: {path}")
    if not old_text:
        return _fail("old_text must not be empty")
    content = _read_text(fp)
    count   = _count_matches(content, old_text)
    if count == 0:
        return _fail("Text not found in file. Make sure old_text matches exactly.")
    if count > 1:
        return _fail(f"old_text matches {count} locations in the file. Provide more surrounding "
                     "context to make it unique (only 1 match allowed).")
    if ctx.session:
        ctx.session.record_edit(fp)
    _write_text(fp, content.replace(old_text, str(new_text), 1))
    return _ok(f"Edited file: {path}")


def tool_delete_file(ctx: ToolContext, path: str) -> Dict[str, Any]:
    ok, err, fp = Safety.validate_path(ctx.root, path)
    if not ok:
        return _fail(err)
    if fp == Path(ctx.root).resolve():
        return _fail("Cannot delete the project root")
    if not fp.exists():
        return _fail(f"Path not found: {path}")
    if ctx.session:
        ctx.session.record_delete(fp)
    if fp.is_dir() and not fp.is_symlink():
        shutil.rmtree(fp)
        return _ok(f"Deleted directory: {path}")
    fp.unlink()
    return _ok(f"Deleted file: {path}")


def _list_directory(dirpath: Path, rules: IgnoreRules, recursive: bool,
                    prefix: str = "") -> List[str]:
    out: List[str] = []
    for entry in sorted(dirpath.iterdir(), key=lambda p: p.name):
        if rules.is_ignored(entry):
            continue
        if entry.is_dir():
            out.append(f"{prefix}{entry.name}/")
            if recursive:
                out.extend(_list_directory(entry, rules, True, prefix + "  "))
        else:
            out.append(f"{prefix}{entry.name}")
    return out


def tool_list_files(ctx: ToolContext, path: str = ".", recursive: Any = False) -> Dict[str, Any]:
    ok, err, fp = Safety.validate_path(ctx.root, path or ".")
    if not ok:
        return _fail(err)
    if not fp.exists():
        return _fail(f"Directory not found: {path}")
    if not fp.is_dir():
        return _fail(f"Path is not a directory: {path}")
    entries = _list_directory(fp, IgnoreRules.load(ctx.root), _as_bool(recursive))
    return _ok("\n".join(entries) if entries else "(empty directory)")


def tool_create_directory(ctx: ToolContext, path: str) -> Dict[str, Any]:
    ok, err, fp = Safety.validate_path(ctx.root, path)
    if not ok:
        return _fail(err)
    if fp.exists():
        if fp.is_dir():
            return _ok(f"Directory already exists: {path}")
        return _fail(f"Path exists but is a file: {path}")
    if ctx.session:
        ctx.session.record_mkdir(fp)
    fp.mkdir(parents=True, exist_ok=True)
    return _ok(f"Created directory: {path}")


# =============================================================================
# TOOL HANDLERS: SHELL & SEARCH
# =============================================================================

def tool_execute_command(ctx: ToolContext, command: str, args: Any = None) -> Dict[str, Any]:
    argv = _as_args(args)
    command = str(command).strip()
    if " " in command and not argv:
        command, *argv = _as_args(command)
    if ctx.session:
        ctx.session.record_command(command, argv)
    res = _run_command(command, argv, ctx.root, ctx.root,
                       timeout=Config.COMMAND_TIMEOUT, cancel=ctx.cancel)
    if res.success:
        return _ok(res.stdout or "(no output)")
    return _fail(res.stderr or f"Command exited with code {res.exit_code}", res.stdout)


_SEARCH_EXTENSIONS = (
    "ts", "tsx", "js", "jsx", "json", "md", "css", "html", "py", "go", "rs", "rb", "kt",
    "kts", "swift", "php", "java", "cs", "c", "cpp", "h", "hpp", "vue", "svelte", "yaml",
    "yml", "toml", "sh", "sql", "xml", "scss", "less",
)
_SKIP_DIRS = ("node_modules", ".git", ".codeagent", "dist", "build", ".next")


def tool_search_code(ctx: ToolContext, pattern: str, path: str = ".") -> Dict[str, Any]:
    ok, err, fp = Safety.validate_path(ctx.root, path or ".")
    if not ok:
        return _fail(err)
    args = ["-rn"]
    args += [f"--include=*.{ext}" for ext in _SEARCH_EXTENSIONS]
    args += [f"--exclude-dir={d}" for d in _SKIP_DIRS]
    args += ["-e", str(pattern), str(fp)]
    res = _run_command("grep", args, ctx.root, ctx.root, timeout=30, cancel=ctx.cancel)
    if res.exit_code == 0:
        root  = str(Path(ctx.root).resolve())
        lines = [l.replace(root + "/", "", 1) for l in res.stdout.split("\n")[:50]]
        return _ok("\n".join(lines).strip() or "No matches found")
    if res.exit_code == 1:
        return _ok("No matches found")
    return _fail(res.stderr or "Search failed")


def tool_find_files(ctx: ToolContext, pattern: str, path: str = ".") -> Dict[str, Any]:
    ok, err, fp = Safety.validate_path(ctx.root, path or ".")
    if not ok:
        return _fail(err)
    prune: List[str] = ["("]
    for i, d in enumerate(_SKIP_DIRS):
        prune += (["-o"] if i else []) + ["-name", d]
    args = [str(fp), *prune, ")", "-prune", "-o"]
    if "/" in pattern:
        args += ["-path", f"*/{pattern}", "-print"]
    else:
        args += ["-name", pattern, "-print"]
    res = _run_command("find", args, ctx.root, ctx.root, timeout=15, cancel=ctx.cancel)
    if res.exit_code == 0 or res.stdout:
        root  = Path(ctx.root).resolve()
        found = []
        for line in filter(None, res.stdout.split("\n")):
            try:
                found.append(str(Path(line).relative_to(root)))
            except ValueError:
                found.append(line)
        found = found[:100]
        if not found:
            return _ok(f'No files matching "{pattern}"')
        return _ok(f"Found {len(found)} file(s):\n" + "\n".join(found))
    return _fail(res.stderr or "Find failed")


# =============================================================================
# TOOL HANDLERS: NETWORK
# =============================================================================

def _valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _cut(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "\n\n... (truncated)"


def html_to_text(html: str) -> str:
    """Reduce an HTML page to markdown-flavoured plain text."""
    text = html
    for tag in ("script", "style", "noscript", "svg"):
        text = re.sub(rf"<{tag}[^>]*>[\s\S]*?</{tag}>", "", text, flags=re.I)
    text = re.sub(r"<!--[\s\S]*?-->", "", text)

    for tag in ("main", "article", "body"):
        m = re.search(rf"<{tag}[^>]*>([\s\S]*?)</{tag}>", text, re.I)
        if m and m.group(1).strip():
            text = m.group(1)
            break

    subs = [
        (r"<h1[^>]*>([\s\S]*?)</h1>",                  "\n\n# \\1\n\n"),
        (r"<h2[^>]*>([\s\S]*?)</h2>",                  "\n\n## \\1\n\n"),
        (r"<h3[^>]*>([\s\S]*?)</h3>",                  "\n\n### \\1\n\n"),
        (r"<h[4-6][^>]*>([\s\S]*?)</h[4-6]>",          "\n\n#### \\1\n\n"),
        (r'<a[^>]+href="([^"]*)"[^>]*>([\s\S]*?)</a>', "[\\2](\\1)"),
        (r"<pre[^>]*><code[^>]*>([\s\S]*?)</code></pre>", "\n```\n\\1\n```\n"),
        (r"<pre[^>]*>([\s\S]*?)</pre>",                "\n```\n\\1\n```\n"),
        (r"<code[^>]*>([\s\S]*?)</code>",              "`\\1`"),
        (r"<li[^>]*>([\s\S]*?)</li>",                  "\n- \\1"),
        (r"</?[uo]l[^>]*>",                            "\n"),
        (r"</p>",                                      "\n\n"),
        (r"<br\s*/?>",                                 "\n"),
        (r"</div>",                                    "\n"),
        (r"</tr>",                                     "\n"),
        (r"</t[hd]>",                                  "\t"),
        (r"<hr[^>]*>",                                 "\n---\n"),
        (r"</blockquote>",                             "\n"),
        (r"<blockquote[^>]*>",                         "\n> "),
        (r"<(strong|b)\b[^>]*>([\s\S]*?)</\1>",        "**\\2**"),
        (r"<(em|i)\b[^>]*>([\s\S]*?)</\1>",            "*\\2*"),
        (r"<[^>]+>",                                   ""),
    ]
    for pattern, repl in subs:
        text = re.sub(pattern, repl, text, flags=re.I)

    text = _html_unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def tool_fetch_url(ctx: ToolContext, url: str) -> Dict[str, Any]:
    if not _valid_url(url):
        return _fail("Invalid URL format")
    try:
        resp = requests.get(url, timeout=Config.FETCH_TIMEOUT, stream=True,
                            headers={"User-Agent": f"CodeAgent/{VERSION}"})
    except requests.Timeout:
        return _fail(f"Request timed out after {Config.FETCH_TIMEOUT}s")
    except requests.RequestException as e:
        return _fail(f"Failed to fetch URL: {e}")
    try:
        if resp.status_code >= 400:
            return _fail(f"HTTP {resp.status_code} fetching {url}")
        raw = b""
        for chunk in resp.iter_content(chunk_size=16384):
            raw += chunk
            if len(raw) >= Config.FETCH_MAX_BYTES:
                raw = raw[:Config.FETCH_MAX_BYTES]
                break
        content = raw.decode(resp.encoding or "utf-8", errors="replace")
    finally:
        resp.close()
    if "<html" in content or "<!DOCTYPE" in content:
        content = html_to_text(content)
    return _ok(_cut(content, Config.FETCH_MAX_CHARS))


# =============================================================================
# TOOL HANDLERS: MCP INTEGRATIONS
# =============================================================================

def call_zai_mcp(endpoint: str, tool_name: str, args: Dict[str, Any], api_key: str) -> str:
    """JSON-RPC 2.0 tools/call against a Z.AI MCP endpoint."""
    resp = requests.post(
        endpoint,
        json={"jsonrpc": "2.0", "id": str(now_ms()), "method": "tools/call",
              "params": {"name": tool_name, "arguments": args}},
        headers={"Content-Type": "application/json", "Accept": "application/json",
                 "Authorization": f"Bearer {api_key}"},
        timeout=60,
    )
    if not resp.ok:
        raise RuntimeError(f"MCP error {resp.status_code}: {resp.text or resp.reason}")
    data = resp.json()
    if data.get("error"):
        err = data["error"]
        raise RuntimeError(err.get("message") if isinstance(err, dict) else str(err))
    result = data.get("result")
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        return "\n".join(c.get("text", "") for c in result["content"] if isinstance(c, dict))
    return result if isinstance(result, str) else json.dumps(result)


def call_minimax_api(host: str, path: str, body: Dict[str, Any], api_key: str) -> str:
    resp = requests.post(
        f"{host}{path}", json=body, timeout=60,
        headers={"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"},
    )
    if not resp.ok:
        raise RuntimeError(f"MiniMax API error {resp.status_code}: {resp.text or resp.reason}")
    data = resp.json()
    if isinstance(data.get("content"), list):
        return "\n".join(c.get("text", "") for c in data["content"] if isinstance(c, dict))
    return json.dumps(data)


def _zai_or_fail(tool: str):
    cfg = get_zai_mcp_config()
    if cfg is None:
        return None, _fail(f"{tool} requires a Z.AI API key. Set ZAI_API_KEY to enable it.")
    return cfg, None


def _minimax_or_fail(tool: str):
    cfg = get_minimax_mcp_config()
    if cfg is None:
        return None, _fail(f"{tool} requires a MiniMax API key. Set MINIMAX_API_KEY to enable it.")
    return cfg, None


def tool_web_search(ctx: ToolContext, query: str, domain_filter: str = "",
                    recency: str = "") -> Dict[str, Any]:
    cfg, err = _zai_or_fail("web_search")
    if err:
        return err
    args: Dict[str, Any] = {"search_query": query}
    if domain_filter:
        args["search_domain_filter"] = domain_filter
    if recency:
        args["search_recency_filter"] = recency
    out = call_zai_mcp(cfg["endpoints"]["web_search"], "webSearchPrime", args, cfg["api_key"])
    return _ok(_cut(out, Config.MCP_MAX_CHARS))


def tool_web_read(ctx: ToolContext, url: str, format: str = "") -> Dict[str, Any]:
    cfg, err = _zai_or_fail("web_read")
    if err:
        return err
    if not _valid_url(url):
        return _fail("Invalid URL format")
    args: Dict[str, Any] = {"url": url}
    if format:
        args["return_format"] = format
    out = call_zai_mcp(cfg["endpoints"]["web_reader"], "webReader", args, cfg["api_key"])
    return _ok(_cut(out, Config.MCP_MAX_CHARS))


def tool_github_read(ctx: ToolContext, repo: str, action: str, query: str = "",
                     path: str = "") -> Dict[str, Any]:
    cfg, err = _zai_or_fail("github_read")
    if err:
        return err
    if "/" not in repo:
        return _fail("Invalid repo format. Use owner/repo (e.g. facebook/react)")
    args: Dict[str, Any] = {"repo_name": repo}
    if action == "search":
        if not query:
            return _fail("Missing required parameter: query (for action=search)")
        mcp_tool, args["query"] = "search_doc", query
    elif action == "tree":
        mcp_tool = "get_repo_structure"
        if path:
            args["dir_path"] = path
    elif action == "read_file":
        if not path:
            return _fail("Missing required parameter: path (for action=read_file)")
        mcp_tool, args["file_path"] = "read_file", path
    else:
        return _fail("Invalid action. Must be: search, tree, or read_file")
    out = call_zai_mcp(cfg["endpoints"]["zread"], mcp_tool, args, cfg["api_key"])
    return _ok(_cut(out, Config.MCP_MAX_CHARS))


def tool_minimax_web_search(ctx: ToolContext, query: str) -> Dict[str, Any]:
    cfg, err = _minimax_or_fail("minimax_web_search")
    if err:
        return err
    out = call_minimax_api(cfg["host"], "/v1/coding_plan/search", {"q": query}, cfg["api_key"])
    return _ok(_cut(out, Config.MCP_MAX_CHARS))


def tool_minimax_understand_image(ctx: ToolContext, prompt: str, image_url: str) -> Dict[str, Any]:
    cfg, err = _minimax_or_fail("minimax_understand_image")
    if err:
        return err
    out = call_minimax_api(cfg["host"], "/v1/coding_plan/vlm",
                           {"prompt": prompt, "image_url": image_url}, cfg["api_key"])
    return _ok(_cut(out, Config.MCP_MAX_CHARS))


# =============================================================================
# TOOL REGISTRY & DISPATCH
# =============================================================================

TOOL_HANDLERS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "read_file":                tool_read_file,
    "write_file":               tool_write_file,
    "edit_file":                tool_edit_file,
    "delete_file":              tool_delete_file,
    "list_files":               tool_list_files,
    "create_directory":         tool_create_directory,
    "execute_command":          tool_execute_command,
    "search_code":              tool_search_code,
    "find_files":               tool_find_files,
    "fetch_url":                tool_fetch_url,
    "web_search":               tool_web_search,
    "web_read":                 tool_web_read,
    "github_read":              tool_github_read,
    "minimax_web_search":       tool_minimax_web_search,
    "minimax_understand_image": tool_minimax_understand_image,
}


def execute_tool(call: ToolCall, root: Path,
                 session: Optional[ActionSession] = None,
                 cancel: Optional[CancelToken] = None) -> ToolResult:
    """Run one tool call. Always returns a ToolResult; never raises."""
    tool   = normalize_tool_name(call.tool)
    params = call.parameters if isinstance(call.parameters, dict) else {}
    Log.debug(f"Executing tool: {tool} {params.get('path') or params.get('command') or ''}")

    handler = TOOL_HANDLERS.get(tool)
    if handler is None:
        return ToolResult(False, "", tool, params, f"Unknown tool: {tool}")

    err = validate_tool_call(ToolCall(tool, params))
    if err:
        return ToolResult(False, "", tool, params, err)

    declared = AGENT_TOOLS[tool]["parameters"]
    kwargs   = {k: v for k, v in params.items() if k in declared and v is not None}
    try:
        res = handler(ToolContext(Path(root), session, cancel), **kwargs)
    except Exception as e:
        Log.debug(f"{tool} raised {type(e).__name__}: {e}")
        return ToolResult(False, "", tool, params, str(e) or type(e).__name__)
    return ToolResult(bool(res.get("success")), res.get("output", "") or "", tool, params,
                      None if res.get("success") else (res.get("error") or "Unknown error"))


_ACTION_TYPES = {
    "read_file":        "read",
    "write_file":       "write",
    "edit_file":        "edit",
    "delete_file":      "delete",
    "execute_command":  "command",
    "search_code":      "search",
    "find_files":       "search",
    "list_files":       "list",
    "create_directory": "mkdir",
    "fetch_url":        "fetch",
    "web_search":       "fetch",
    "web_read":         "fetch",
    "github_read":      "fetch",
    "minimax_web_search":       "fetch",
    "minimax_understand_image": "fetch",
}


def create_action_log(call: ToolCall, result: ToolResult) -> ActionLog:
    tool   = normalize_tool_name(call.tool)
    params = call.parameters if isinstance(call.parameters, dict) else {}
    target = next((str(params[k]) for k in ("path", "command", "pattern", "url", "query", "repo")
                   if params.get(k)), "unknown")
    if result.success:
        if tool == "write_file" and params.get("content"):
            details = str(params["content"])
        elif tool == "edit_file" and params.get("new_text"):
            details = str(params["new_text"])
        elif tool == "execute_command":
            details = result.output[:1000]
        else:
            details = result.output[:500]
    else:
        details = result.error
    return ActionLog(type=_ACTION_TYPES.get(tool, "command"), target=target,
                     result="success" if result.success else "error", details=details)


def format_tool_result(result: ToolResult, max_chars: Optional[int] = None) -> str:
    """Render a result the way it is fed back to the model."""
    limit = max_chars or Config.TOOL_RESULT_MAX
    note  = " — use search_code or read specific sections if you need more"
    if result.success:
        return f"Tool {result.tool} succeeded:\n{truncate_output(result.output, limit, note)}"
    body = result.error or "Unknown error"
    if result.output:
        body += f"\n{result.output}"
    return f"Tool {result.tool} failed:\n{truncate_output(body, limit, note)}"
