#!/usr/bin/env python3
"""
agent_core.py — Foundation layer for CodeAgent.

Holds everything the other agent_* modules share:
  - .env loader and the env-driven Config class (plus the provider registry)
  - coloured Log output
  - small text utilities (truncate_output, strip_thinking, _atomic_write)
  - the error classes used across module seams
  - CancelToken, the single cooperative cancellation handle of a run
  - UsageTracker, which collects token usage reported by the chat client
  - Safety: project-root sandboxing for paths and shell commands

Nothing in here talks to the LLM or touches project files.
"""
import json
import os
import platform
import re
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

try:
    import colorama
    colorama.init()
except ImportError:
    pass

VERSION = "1.4.0"

_IS_WINDOWS = platform.system() == "Windows"


# =============================================================================
# .ENV FILE LOADER
# Loaded before Config so env-var defaults pick up the values.
# Searches: <script dir>/.env, then cwd/.env. Does NOT override existing vars.
# =============================================================================

def _load_dotenv():
    """Load key=value pairs from a .env file into os.environ.

    Checks (in order):
      1. Directory containing this script
      2. Current working directory
    Existing environment variables are never overridden.
    """
    candidates = [
        Path(__file__).parent / ".env",
        Path.cwd() / ".env",
    ]
    for env_file in candidates:
        if not env_file.exists():
            continue
        try:
            for raw in env_file.read_text(encoding="utf-8").splitlines():
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, _, val = line.partition("=")
                key = key.strip()
                val = val.strip()
                if len(val) >= 2 and val[0] in ('"', "'") and val[-1] == val[0]:
                    val = val[1:-1]
                if key and key not in os.environ:
                    os.environ[key] = val
        except OSError as e:
            print(f"[!] Could not read {env_file}: {e}")
        break


_load_dotenv()


# =============================================================================
# PROVIDERS
# Endpoint, auth scheme and native tool-calling support per wire protocol.
# =============================================================================

PROVIDERS: Dict[str, Dict[str, Any]] = {
    "z.ai": {
        "name":        "Z.AI (ZhipuAI)",
        "env_key":     "ZAI_API_KEY",
        "protocols": {
            "openai":    {"base_url":    "https://api.z.ai/api/coding/paas/v4",
                          "auth_header": "Bearer",
                          "native_tools": True},
            "anthropic": {"base_url":    "https://api.z.ai/api/anthropic",
                          "auth_header": "x-api-key",
                          "native_tools": True},
        },
        "default_protocol": "openai",
        "default_model":    "glm-4.7",
        "max_output_tokens": 32768,
        "mcp_endpoints": {
            "web_search": "https://api.z.ai/api/mcp/web_search_prime/mcp",
            "web_reader": "https://api.z.ai/api/mcp/web_reader/mcp",
            "zread":      "https://api.z.ai/api/mcp/zread/mcp",
        },
    },
    "minimax": {
        "name":        "MiniMax",
        "env_key":     "MINIMAX_API_KEY",
        "protocols": {
            "openai":    {"base_url":    "https://api.minimax.io/v1",
                          "auth_header": "Bearer",
                          "native_tools": True},
            # MiniMax's anthropic endpoint accepts tools but mangles them.
            "anthropic": {"base_url":    "https://api.minimax.io/anthropic",
                          "auth_header": "x-api-key",
                          "native_tools": False},
        },
        "default_protocol": "anthropic",
        "default_model":    "MiniMax-M2.1",
        "max_output_tokens": 40960,
        "rest_host":         "https://api.minimax.io",
    },
    "lmstudio": {
        "name":        "LM Studio (local)",
        "env_key":     "LMSTUDIO_API_KEY",
        "protocols": {
            "openai": {"base_url":    os.getenv("LMSTUDIO_URL", "http://localhost:1234/v1"),
                       "auth_header": "Bearer",
                       "native_tools": True},
        },
        "default_protocol": "openai",
        "default_model":    "",
        "max_output_tokens": 16384,
    },
}


def get_provider_protocol(provider_id: str, protocol: str) -> Optional[Dict[str, Any]]:
    return (PROVIDERS.get(provider_id) or {}).get("protocols", {}).get(protocol)


def supports_native_tools(provider_id: str, protocol: str) -> bool:
    entry = get_provider_protocol(provider_id, protocol)
    return bool(entry and entry.get("native_tools", True))


def get_effective_max_tokens(provider_id: str, requested: int) -> int:
    cap = (PROVIDERS.get(provider_id) or {}).get("max_output_tokens")
    return min(requested, cap) if cap else requested


# =============================================================================
# CONFIGURATION
# =============================================================================

def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Central config; every value is overridable via environment variable."""

    # LLM
    PROVIDER    = os.getenv("CODEAGENT_PROVIDER",  "z.ai")
    PROTOCOL    = os.getenv("CODEAGENT_PROTOCOL",  "")
    MODEL       = os.getenv("CODEAGENT_MODEL",     "")
    TEMPERATURE = float(os.getenv("CODEAGENT_TEMPERATURE", "0.7"))
    MAX_TOKENS  = int(os.getenv("CODEAGENT_MAX_TOKENS",    "8192"))
    API_TIMEOUT = float(os.getenv("CODEAGENT_API_TIMEOUT", "60"))

    # Agent limits
    AGENT_MAX_ITERATIONS   = int(os.getenv("AGENT_MAX_ITERATIONS",   "100"))
    AGENT_MAX_DURATION     = float(os.getenv("AGENT_MAX_DURATION",   "20"))   # minutes
    AGENT_AUTO_VERIFY      = _env_bool("AGENT_AUTO_VERIFY",          "false")
    AGENT_MAX_FIX_ATTEMPTS = int(os.getenv("AGENT_MAX_FIX_ATTEMPTS", "3"))
    AGENT_USE_PLANNING     = _env_bool("AGENT_USE_PLANNING",         "false")

    # Tool limits
    MAX_READ_BYTES      = 100_000
    TOOL_RESULT_MAX     = 8_000
    COMMAND_TIMEOUT     = 120
    FETCH_TIMEOUT       = 30
    FETCH_MAX_BYTES     = 1_000_000
    FETCH_MAX_CHARS     = 10_000
    MCP_MAX_CHARS       = 15_000

    # State
    HOME  = os.getenv("CODEAGENT_HOME", str(Path.home() / ".codeagent"))
    DEBUG = os.getenv("CODEAGENT_DEBUG", "") == "1"

    @classmethod
    def protocol(cls) -> str:
        if cls.PROTOCOL:
            return cls.PROTOCOL
        return (PROVIDERS.get(cls.PROVIDER) or {}).get("default_protocol", "openai")

    @classmethod
    def model(cls) -> str:
        if cls.MODEL:
            return cls.MODEL
        return (PROVIDERS.get(cls.PROVIDER) or {}).get("default_model", "")

    @classmethod
    def history_dir(cls) -> Path:
        return Path(cls.HOME) / "history"

    @staticmethod
    def get_api_key(provider_id: Optional[str] = None) -> str:
        provider = PROVIDERS.get(provider_id or Config.PROVIDER)
        if not provider:
            return ""
        return os.getenv(provider["env_key"], "").strip()

    @classmethod
    def validate(cls):
        if cls.PROVIDER not in PROVIDERS:
            raise ValueError(f"Unknown provider: {cls.PROVIDER}")
        if cls.protocol() not in ("openai", "anthropic"):
            raise ValueError(f"Invalid protocol: {cls.protocol()}")
        if not get_provider_protocol(cls.PROVIDER, cls.protocol()):
            raise ValueError(f"Provider {cls.PROVIDER} does not support {cls.protocol()} protocol")
        if cls.AGENT_MAX_ITERATIONS < 1:
            raise ValueError("AGENT_MAX_ITERATIONS must be >= 1")


# =============================================================================
# COLORS & LOGGING
# =============================================================================

class Colors:
    RESET   = "\033[0m"
    BOLD    = "\033[1m"
    RED     = "\033[38;5;196m"
    GREEN   = "\033[38;5;114m"
    YELLOW  = "\033[38;5;214m"
    BLUE    = "\033[38;5;111m"
    MAGENTA = "\033[38;5;176m"
    CYAN    = "\033[38;5;80m"
    GRAY    = "\033[38;5;250m"


def colored(text: str, color: str, bold: bool = False) -> str:
    return f"{Colors.BOLD if bold else ''}{color}{text}{Colors.RESET}"


_log_local = threading.local()


class Log:
    """Coloured logger. Call Log.set_silent(True) when a caller renders its own output.
    Silent state is per-thread."""

    @classmethod
    def set_silent(cls, silent: bool):
        _log_local.silent = silent

    @staticmethod
    def _is_silent() -> bool:
        return getattr(_log_local, "silent", False)

    @staticmethod
    def _print(prefix: str, msg: str, color: str):
        if not Log._is_silent():
            print(colored(f"{prefix} {msg}", color))

    @staticmethod
    def info(msg: str):    Log._print("[INFO]", msg, Colors.CYAN)
    @staticmethod
    def success(msg: str): Log._print("[✓]",    msg, Colors.GREEN)
    @staticmethod
    def warning(msg: str): Log._print("[!]",    msg, Colors.YELLOW)
    @staticmethod
    def error(msg: str):   Log._print("[✗]",    msg, Colors.RED)
    @staticmethod
    def tool(name: str, args: str):
        if not Log._is_silent():
            print(colored(f"[→] {name}({args})", Colors.MAGENTA))
    @staticmethod
    def plan(msg: str): Log._print("[📋]", msg, Colors.BLUE)

    @staticmethod
    def debug(msg: str):
        if Config.DEBUG:
            sys.stderr.write(colored(f"[DEBUG] {msg}", Colors.GRAY) + "\n")


# =============================================================================
# UTILITIES
# =============================================================================

def truncate_output(text: str, max_length: int, note: str = "") -> str:
    """Keep the head of *text*; append a marker saying how much was dropped."""
    if len(text) <= max_length:
        return text
    dropped = len(text) - max_length
    return f"{text[:max_length]}\n[... {dropped} chars truncated{note}]"


_THINK_RE = re.compile(r'<think>(.*?)</think>', re.DOTALL | re.IGNORECASE)


def strip_thinking(content: str) -> Tuple[str, str]:
    """Remove <think>…</think> blocks. Returns (clean_content, thinking_text)."""
    if '<think>' not in content.lower():
        return content, ''
    parts = _THINK_RE.findall(content)
    return _THINK_RE.sub('', content).strip(), '\n'.join(parts)


def _atomic_write(path: Path, data: Dict[str, Any]):
    """Write JSON atomically via a .tmp sibling."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
    os.replace(str(tmp), str(path))


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# ERRORS
# =============================================================================

class AgentError(Exception):
    """Base class for errors that cross agent module boundaries."""


class TransportError(AgentError):
    """Non-success HTTP status from the LLM backend."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body   = body
        super().__init__(f"API error: {status} - {body[:500]}")


class ChatTimeoutError(AgentError, TimeoutError):
    """The chat request ran past its timeout (not a user cancellation)."""


class ChatCancelledError(AgentError):
    """The run's CancelToken fired while a chat request was in flight."""


# =============================================================================
# CANCELLATION
# =============================================================================

class CancelToken:
    """Cooperative cancellation shared by one agent run.

    Callbacks registered with add_callback() fire once, on the thread that
    calls cancel(); the chat client uses them to close in-flight responses.
    """

    def __init__(self):
        self._event     = threading.Event()
        self._lock      = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception as e:
                Log.debug(f"Cancel callback failed: {e}")

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def add_callback(self, cb: Callable[[], None]) -> Callable[[], None]:
        """Register *cb*; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                registered = True
            else:
                registered = False
        if not registered:
            cb()

        def _remove():
            with self._lock:
                if cb in self._callbacks:
                    self._callbacks.remove(cb)
        return _remove


# =============================================================================
# TOKEN USAGE
# =============================================================================

class UsageTracker:
    """Accumulates token usage per (provider, model)."""

    def __init__(self):
        self._lock   = threading.Lock()
        self.records: List[Dict[str, Any]] = []

    def record(self, usage: Dict[str, int], model: str, provider: str):
        entry = {
            "prompt_tokens":     int(usage.get("prompt_tokens", 0) or 0),
            "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
            "model":             model,
            "provider":          provider,
            "timestamp":         now_ms(),
        }
        with self._lock:
            self.records.append(entry)
        Log.debug(f"Usage: {entry['prompt_tokens']} in / {entry['completion_tokens']} out ({model})")

    def totals(self) -> Dict[str, int]:
        with self._lock:
            return {
                "prompt_tokens":     sum(r["prompt_tokens"] for r in self.records),
                "completion_tokens": sum(r["completion_tokens"] for r in self.records),
                "requests":          len(self.records),
            }

    def reset(self):
        with self._lock:
            self.records.clear()


usage_tracker = UsageTracker()


# =============================================================================
# SAFETY
# =============================================================================

class Safety:
    # Never executed, whatever the arguments.
    BLOCKED_COMMANDS = frozenset({
        "sudo", "su", "chmod", "chown", "mkfs", "fdisk", "dd", "mount",
        "umount", "systemctl", "service", "shutdown", "reboot", "init",
        "kill", "killall", "pkill",
    })

    ALLOWED_COMMANDS = frozenset({
        # package managers
        "npm", "npx", "yarn", "pnpm", "bun", "pip", "pip3", "poetry", "pipenv",
        "cargo", "rustup", "go", "composer", "gem", "bundle", "brew",
        # build tools
        "make", "cmake", "gradle", "mvn", "tsc", "esbuild", "vite", "webpack", "rollup",
        # vcs
        "git",
        # file operations
        "ls", "cat", "head", "tail", "grep", "find", "wc",
        "mkdir", "touch", "cp", "mv", "rm", "rmdir",
        # runtimes
        "node", "deno", "python", "python3", "php", "phpunit", "artisan",
        # testing / linting
        "jest", "vitest", "pytest", "mocha", "eslint", "prettier", "black", "rustfmt",
        # misc
        "echo", "pwd", "which", "env", "date", "sleep", "curl", "wget",
        "tar", "unzip", "zip", "http", "https",
    })

    BLOCKED_PATTERNS = [
        re.compile(r"rm\s+(-[rf]+\s+)*/(?!\w)"),
        re.compile(r"rm\s+(-[rf]+\s+)*~"),
        re.compile(r">\s*/etc/"),
        re.compile(r">\s*/usr/"),
        re.compile(r">\s*/var/"),
        re.compile(r">\s*/bin/"),
        re.compile(r">\s*/sbin/"),
        re.compile(r"curl.*\|\s*(ba)?sh"),
        re.compile(r"wget.*\|\s*(ba)?sh"),
        re.compile(r"eval\s+"),
        re.compile(r"`.*`"),
        re.compile(r"\$\(.*\)"),
    ]

    @staticmethod
    def validate_path(root: Path, path: str) -> Tuple[bool, str, Path]:
        """Resolve *path* against the project root.

        Returns (ok, error, resolved). Absolute paths are accepted only when
        they already lie under the root; anything resolving outside the root
        is rejected. Nothing is read or written here.
        """
        try:
            root_resolved = Path(root).resolve()
            rel = path or "."
            p   = Path(rel).expanduser() if rel.startswith("~") else Path(rel)
            if p.is_absolute():
                abs_resolved = p.resolve()
                try:
                    rel = str(abs_resolved.relative_to(root_resolved)) or "."
                except ValueError:
                    return (False,
                            f"Absolute path '{path}' not allowed. Use relative paths.",
                            abs_resolved)
            resolved = (root_resolved / rel).resolve()
            try:
                resolved.relative_to(root_resolved)
            except ValueError:
                return False, f"Path '{path}' is outside project directory", resolved
            return True, "", resolved
        except (OSError, ValueError, RuntimeError) as e:
            return False, f"Invalid path: {e}", Path(root)

    @staticmethod
    def validate_command(command: str, args: List[str],
                         root: Optional[Path] = None) -> Tuple[bool, str]:
        if command in Safety.BLOCKED_COMMANDS:
            return False, f"Command '{command}' is not allowed for security reasons"
        if command not in Safety.ALLOWED_COMMANDS:
            return False, f"Command '{command}' is not in the allowed list"

        full = f"{command} {' '.join(args)}"
        for pattern in Safety.BLOCKED_PATTERNS:
            if pattern.search(full):
                return False, f"Command contains blocked pattern: {pattern.pattern}"

        if root is not None:
            root_resolved = Path(root).resolve()
            for arg in args:
                if arg.startswith("-"):
                    continue
                if "/" in arg or "\\" in arg:
                    candidate = Path(arg)
                    target = (candidate if candidate.is_absolute()
                              else root_resolved / candidate).resolve()
                    try:
                        target.relative_to(root_resolved)
                    except ValueError:
                        return False, f"Path '{arg}' is outside project directory"

        if command == "rm":
            recursive = any(a.startswith("-") and "r" in a for a in args)
            force     = any(a.startswith("-") and "f" in a for a in args)
            if recursive and force and not [a for a in args if not a.startswith("-")]:
                return False, "rm -rf without specific paths is not allowed"
        return True, ""


# =============================================================================
# IGNORE RULES  (.gitignore subset used by list_files)
# =============================================================================

BUILTIN_IGNORES = (
    "node_modules", ".git", ".codeagent", "dist", "build", ".next",
    "__pycache__", ".venv", "venv", ".tox", ".mypy_cache", "coverage",
    ".cache", ".turbo", ".parcel-cache", "target", "out", ".output",
)


def _glob_to_regex(pattern: str, anchored: bool) -> "re.Pattern":
    out = ""
    i   = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "*":
            if pattern[i + 1:i + 2] == "*":
                if pattern[i + 2:i + 3] == "/":
                    out += "(?:.*/)?"
                    i += 3
                    continue
                out += ".*"
                i += 2
                continue
            out += "[^/]*"
        elif c == "?":
            out += "[^/]"
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end != -1:
                out += pattern[i:end + 1]
                i = end + 1
                continue
            out += re.escape(c)
        else:
            out += re.escape(c)
        i += 1
    if anchored:
        return re.compile(f"^{out}(/|$)")
    return re.compile(f"(^|/){out}(/|$)")


class IgnoreRules:
    """Builtin ignores plus the project's .gitignore. Last matching pattern wins."""

    def __init__(self, root: Path, patterns: List[Tuple["re.Pattern", bool]]):
        self.root     = Path(root).resolve()
        self.patterns = patterns

    @classmethod
    def load(cls, root: Path) -> "IgnoreRules":
        patterns = [(re.compile(f"(^|/){re.escape(d)}(/|$)"), False) for d in BUILTIN_IGNORES]
        gitignore = Path(root) / ".gitignore"
        if gitignore.is_file():
            try:
                patterns.extend(cls.parse(gitignore.read_text(encoding="utf-8")))
            except (OSError, UnicodeDecodeError) as e:
                Log.debug(f"Could not read .gitignore: {e}")
        return cls(root, patterns)

    @staticmethod
    def parse(content: str) -> List[Tuple["re.Pattern", bool]]:
        patterns = []
        for line in content.split("\n"):
            line = line.rstrip()
            if not line or line.startswith("#"):
                continue
            negated = line.startswith("!")
            if negated:
                line = line[1:]
            anchored = line.startswith("/")
            if anchored:
                line = line[1:]
            if line.endswith("/"):
                line = line[:-1]
            if not line:
                continue
            try:
                patterns.append((_glob_to_regex(line, anchored), negated))
            except re.error:
                Log.debug(f"Skipping unparsable .gitignore line: {line}")
        return patterns

    def is_ignored(self, path) -> bool:
        p = Path(path)
        if p.is_absolute():
            try:
                p = p.resolve().relative_to(self.root)
            except ValueError:
                pass
        rel = p.as_posix()
        if rel in ("", "."):
            return False
        ignored = False
        for regex, negated in self.patterns:
            if regex.search(rel):
                ignored = not negated
        return ignored
