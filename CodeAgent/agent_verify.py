#!/usr/bin/env python3
"""
agent_verify.py — Post-run verification (typecheck, lint, build, test).

detect_project_scripts() looks at the project's manifest files to decide
which checks exist; each runner executes through the same sandboxed shell
the agent's execute_command tool uses, and parse_errors() turns the tool
output into ParsedError records the fix loop can feed back to the model.
"""
import json
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent_core import CancelToken, Log
from sandboxed_shell import execute_command

DEFAULT_VERIFY_TIMEOUT    = 120   # seconds
DEFAULT_TYPECHECK_TIMEOUT = 60


@dataclass
class ParsedError:
    message:  str
    severity: str           = "error"   # error | warning
    file:     Optional[str] = None
    line:     Optional[int] = None
    column:   Optional[int] = None
    code:     Optional[str] = None


@dataclass
class VerifyResult:
    success:  bool
    type:     str                 # build | test | lint | typecheck
    command:  str
    output:   str
    errors:   List[ParsedError] = field(default_factory=list)
    duration: float             = 0.0   # seconds


@dataclass
class VerifyOptions:
    run_build:     bool  = True
    run_test:      bool  = True
    run_lint:      bool  = False
    run_typecheck: bool  = True
    timeout:       float = DEFAULT_VERIFY_TIMEOUT


# =============================================================================
# DETECTION
# =============================================================================

def _load_json(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        Log.debug(f"Could not parse {path.name}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _first_script(scripts: Dict[str, Any], *names: str) -> Optional[str]:
    for name in names:
        if scripts.get(name):
            return name
    return None


def detect_project_scripts(project_root) -> Dict[str, Optional[str]]:
    """Return {"build", "test", "lint", "typecheck", "package_manager"}.

    Values are either a package.json script name or a `__marker__` naming a
    built-in runner (pytest, go, cargo, composer, phpunit, artisan, tsc).
    Later ecosystems override earlier ones, so a Go module inside a Node
    repo verifies with go.
    """
    root = Path(project_root)
    result: Dict[str, Optional[str]] = {
        "build": None, "test": None, "lint": None, "typecheck": None,
        "package_manager": "npm",
    }

    if (root / "bun.lockb").exists():
        result["package_manager"] = "bun"
    elif (root / "pnpm-lock.yaml").exists():
        result["package_manager"] = "pnpm"
    elif (root / "yarn.lock").exists():
        result["package_manager"] = "yarn"

    if (root / "package.json").exists():
        scripts = _load_json(root / "package.json").get("scripts") or {}
        if isinstance(scripts, dict):
            result["build"] = _first_script(scripts, "build", "compile")
            result["test"]  = _first_script(scripts, "test", "spec")
            result["lint"]  = _first_script(scripts, "lint", "eslint")
            result["typecheck"] = _first_script(scripts, "typecheck", "type-check", "tsc")
        if not result["typecheck"] and (root / "tsconfig.json").exists():
            result["typecheck"] = "__tsc_direct__"

    if (root / "requirements.txt").exists() or (root / "pyproject.toml").exists():
        if (root / "pytest.ini").exists() or (root / "tests").exists():
            result["test"] = "__pytest__"

    if (root / "go.mod").exists():
        result["build"] = "__go_build__"
        result["test"]  = "__go_test__"

    if (root / "Cargo.toml").exists():
        result["build"] = "__cargo_build__"
        result["test"]  = "__cargo_test__"

    if (root / "composer.json").exists():
        scripts = _load_json(root / "composer.json").get("scripts") or {}
        if not isinstance(scripts, dict):
            scripts = {}
        if scripts.get("test"):
            result["test"] = "__composer_test__"
        elif (root / "phpunit.xml").exists() or (root / "phpunit.xml.dist").exists():
            result["test"] = "__phpunit__"
        if scripts.get("build"):
            result["build"] = "__composer_build__"
        result["typecheck"] = "__php_lint__"

    if (root / "artisan").exists():
        result["test"] = "__artisan_test__"

    return result


# =============================================================================
# ERROR PARSING
# =============================================================================

_TSC_RE      = re.compile(r"^(.+?)\((\d+),(\d+)\):\s*(error|warning)\s+(TS\d+):\s*(.+)$")
_ESLINT_RE   = re.compile(r"^(.+?):(\d+):(\d+):\s*(error|warning)\s+(.+)$")
_JEST_RE     = re.compile(r"^\s*FAIL\s+(.+)$")
_GENERIC_RE  = re.compile(r"^(.+?):(\d+):\s*(.+error.+)$", re.IGNORECASE)
_GO_RE       = re.compile(r"^(.+\.go):(\d+):(\d+):\s*(.+)$")
_RUST_RE     = re.compile(r"^\s*-->\s*(.+?):(\d+):(\d+)$")
_PHP_RE      = re.compile(r"PHP\s+(Parse error|Fatal error|Warning):\s*(.+?)\s+in\s+(.+?)\s+on line\s+(\d+)",
                          re.IGNORECASE)
_PHPUNIT_RE  = re.compile(r"^\d+\)\s+(.+)::(.+)$")


def parse_errors(output: str, check_type: str = "") -> List[ParsedError]:
    """Recognise compiler/linter/test-runner error lines; one pattern per line."""
    errors: List[ParsedError] = []
    for line in output.split("\n"):
        m = _TSC_RE.match(line)
        if m:
            errors.append(ParsedError(m.group(6), m.group(4), m.group(1),
                                      int(m.group(2)), int(m.group(3)), m.group(5)))
            continue
        m = _ESLINT_RE.match(line)
        if m:
            errors.append(ParsedError(m.group(5), m.group(4), m.group(1),
                                      int(m.group(2)), int(m.group(3))))
            continue
        m = _JEST_RE.match(line)
        if m:
            errors.append(ParsedError("Test file failed", "error", m.group(1)))
            continue
        m = _GENERIC_RE.match(line)
        if m:
            errors.append(ParsedError(m.group(3), "error", m.group(1), int(m.group(2))))
            continue
        m = _GO_RE.match(line)
        if m:
            errors.append(ParsedError(m.group(4), "error", m.group(1),
                                      int(m.group(2)), int(m.group(3))))
            continue
        m = _RUST_RE.match(line)
        if m:
            errors.append(ParsedError("Rust compilation error", "error", m.group(1),
                                      int(m.group(2)), int(m.group(3))))
            continue
        m = _PHP_RE.search(line)
        if m:
            severity = "warning" if "warning" in m.group(1).lower() else "error"
            errors.append(ParsedError(m.group(2), severity, m.group(3), int(m.group(4))))
            continue
        m = _PHPUNIT_RE.match(line)
        if m:
            errors.append(ParsedError(f"Test failed: {m.group(1)}::{m.group(2)}"))
    return errors


# =============================================================================
# RUNNERS
# =============================================================================

def _run_check(check_type: str, command: str, args: List[str], root: Path,
               timeout: float, cancel: Optional[CancelToken] = None) -> VerifyResult:
    start  = time.monotonic()
    res    = execute_command(command, args, root, root, timeout=timeout, cancel=cancel)
    elapsed = time.monotonic() - start
    output = f"{res.stdout}\n{res.stderr}"
    errors = parse_errors(output, check_type)

    # A failure with nothing parseable may predate the agent's changes,
    # so it is reported as a warning.
    if not res.success and not errors:
        if "timed out" in res.stderr:
            reason = (f"Command timed out after {round(elapsed)}s. "
                      "This build tool may be too slow for verification.")
        elif "not in the allowed list" in res.stderr or "not allowed" in res.stderr:
            reason = f"Command '{command}' is not allowed by the command allow list."
        else:
            reason = res.stderr.strip() or res.stdout.strip() or "Command failed with no output"
        errors.append(ParsedError(reason, "warning"))

    return VerifyResult(res.success, check_type, f"{command} {' '.join(args)}".strip(),
                        output.strip(), errors, elapsed)


def _missing_node_modules(check_type: str, pm: str, script: str) -> VerifyResult:
    msg = "node_modules not found. Run npm install first."
    return VerifyResult(False, check_type, f"{pm} run {script}", msg, [ParsedError(msg)], 0.0)


def run_build_verification(project_root, timeout: float = DEFAULT_VERIFY_TIMEOUT,
                           cancel: Optional[CancelToken] = None) -> Optional[VerifyResult]:
    root    = Path(project_root)
    scripts = detect_project_scripts(root)
    build   = scripts["build"]
    if not build:
        return None
    if build == "__go_build__":
        command, args = "go", ["build", "./..."]
    elif build == "__cargo_build__":
        command, args = "cargo", ["build"]
    elif build == "__composer_build__":
        command, args = "composer", ["run", "build"]
    else:
        if not (root / "node_modules").exists():
            return _missing_node_modules("build", scripts["package_manager"], build)
        command, args = scripts["package_manager"], ["run", build]
    return _run_check("build", command, args, root, timeout, cancel)


_TEST_RUNNERS = {
    "__pytest__":        ("pytest",   ["-v"]),
    "__go_test__":       ("go",       ["test", "./..."]),
    "__cargo_test__":    ("cargo",    ["test"]),
    "__phpunit__":       ("phpunit",  []),
    "__composer_test__": ("composer", ["run", "test"]),
    "__artisan_test__":  ("php",      ["artisan", "test"]),
}


def run_test_verification(project_root, timeout: float = DEFAULT_VERIFY_TIMEOUT,
                          cancel: Optional[CancelToken] = None) -> Optional[VerifyResult]:
    root    = Path(project_root)
    scripts = detect_project_scripts(root)
    test    = scripts["test"]
    if not test:
        return None
    if test in _TEST_RUNNERS:
        command, args = _TEST_RUNNERS[test]
        args = list(args)
    else:
        if not (root / "node_modules").exists():
            return _missing_node_modules("test", scripts["package_manager"], test)
        command, args = scripts["package_manager"], ["run", test]
    return _run_check("test", command, args, root, timeout, cancel)


def run_typecheck_verification(project_root, timeout: float = DEFAULT_TYPECHECK_TIMEOUT,
                               cancel: Optional[CancelToken] = None) -> Optional[VerifyResult]:
    root    = Path(project_root)
    scripts = detect_project_scripts(root)
    check   = scripts["typecheck"]
    if not check:
        return None
    if check == "__tsc_direct__":
        # npx resolves node_modules/.bin/tsc first when it is installed locally
        command, args = "npx", ["tsc", "--noEmit"]
    elif check == "__php_lint__":
        command, args = "find", [".", "-name", "*.php", "-not", "-path", "./vendor/*",
                                 "-exec", "php", "-l", "{}", ";"]
    else:
        command, args = scripts["package_manager"], ["run", check]
    return _run_check("typecheck", command, args, root, timeout, cancel)


def run_lint_verification(project_root, timeout: float = DEFAULT_TYPECHECK_TIMEOUT,
                          cancel: Optional[CancelToken] = None) -> Optional[VerifyResult]:
    root    = Path(project_root)
    scripts = detect_project_scripts(root)
    if not scripts["lint"]:
        return None
    return _run_check("lint", scripts["package_manager"], ["run", scripts["lint"]],
                      root, timeout, cancel)


def run_all_verifications(project_root, options: Optional[VerifyOptions] = None,
                          cancel: Optional[CancelToken] = None) -> List[VerifyResult]:
    """Typecheck and lint side by side, then build, then tests."""
    opts    = options or VerifyOptions()
    results: List[VerifyResult] = []

    parallel = []
    if opts.run_typecheck:
        parallel.append(run_typecheck_verification)
    if opts.run_lint:
        parallel.append(run_lint_verification)
    if parallel:
        with ThreadPoolExecutor(max_workers=len(parallel)) as pool:
            futures = [pool.submit(fn, project_root, opts.timeout, cancel) for fn in parallel]
            for fut in futures:
                r = fut.result()
                if r:
                    results.append(r)

    if opts.run_build:
        r = run_build_verification(project_root, opts.timeout, cancel)
        if r:
            results.append(r)

    if opts.run_test:
        r = run_test_verification(project_root, opts.timeout, cancel)
        if r:
            results.append(r)

    return results


# =============================================================================
# FORMATTING
# =============================================================================

def format_verify_results(results: List[VerifyResult]) -> str:
    lines: List[str] = []
    for r in results:
        lines.append(f"{'✓' if r.success else '✗'} {r.type}: {r.command} ({r.duration:.1f}s)")
        if not r.success and r.errors:
            n_err  = sum(1 for e in r.errors if e.severity == "error")
            n_warn = sum(1 for e in r.errors if e.severity == "warning")
            lines.append(f"  {n_err} error(s), {n_warn} warning(s)")
            for e in r.errors[:5]:
                loc = f"{e.file}:{e.line or '?'}" if e.file else ""
                lines.append(f"  - {loc}: {e.message}")
            if len(r.errors) > 5:
                lines.append(f"  ... and {len(r.errors) - 5} more")
    return "\n".join(lines)


def format_errors_for_agent(results: List[VerifyResult]) -> str:
    """Markdown error report fed back to the model as a fix request."""
    failed = [r for r in results if not r.success]
    if not failed:
        return ""
    lines = ["## Verification Errors - Please Fix:", ""]
    for r in failed:
        lines.append(f"### {r.type.upper()} Failed")
        lines.append(f"Command: {r.command}")
        lines.append("")
        if r.errors:
            lines.append("Errors:")
            for e in r.errors:
                if e.file:
                    loc = e.file + (f":{e.line}" if e.line else "") + (f":{e.column}" if e.column else "")
                else:
                    loc = "unknown"
                code = f" ({e.code})" if e.code else ""
                lines.append(f"- [{loc}] {e.message}{code}")
        else:
            lines.append("Output:")
            lines.append("```")
            lines.append(r.output[:2000])
            if len(r.output) > 2000:
                lines.append("... (truncated)")
            lines.append("```")
        lines.append("")
    lines.append("Please fix these errors and try again.")
    return "\n".join(lines)


def has_verification_errors(results: List[VerifyResult]) -> bool:
    return any(not r.success for r in results)


def get_verification_summary(results: List[VerifyResult]) -> Dict[str, int]:
    return {
        "passed": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
        "total":  len(results),
        "errors": sum(1 for r in results for e in r.errors if e.severity == "error"),
    }
