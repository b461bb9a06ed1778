#!/usr/bin/env python3
"""
agent_catalog.py — Tool catalog for CodeAgent.

One static registry (AGENT_TOOLS) and three read-only renderings of it:
  - format_tool_definitions()  text block for prompts without native tools
  - get_openai_tools()         OpenAI function-calling schema
  - get_anthropic_tools()      Anthropic tool-use schema

Credential-gated tools (MCP_TOOLS) drop out of all three when the matching
provider key is not configured.
"""
from typing import Any, Dict, List, Optional

from agent_core import Config, PROVIDERS


# =============================================================================
# TOOL DEFINITIONS
# =============================================================================

_PATH_DESC = "Path to the file relative to project root"

AGENT_TOOLS: Dict[str, Dict[str, Any]] = {
    "read_file": {
        "description": "Read the contents of a file. Use this to examine existing code.",
        "parameters": {
            "path": {"type": "string", "description": _PATH_DESC, "required": True},
        },
    },
    "write_file": {
        "description": "Create a new file or completely overwrite an existing file with new content.",
        "parameters": {
            "path":    {"type": "string", "description": _PATH_DESC, "required": True},
            "content": {"type": "string", "description": "The complete content to write to the file",
                        "required": True},
        },
    },
    "edit_file": {
        "description": ("Edit an existing file by replacing specific text. The old_text must "
                        "match exactly one location in the file."),
        "parameters": {
            "path":     {"type": "string", "description": _PATH_DESC, "required": True},
            "old_text": {"type": "string", "description": "The exact text to find and replace",
                         "required": True},
            "new_text": {"type": "string", "description": "The new text to replace with",
                         "required": True},
        },
    },
    "delete_file": {
        "description": "Delete a file or directory from the project. For directories, deletes recursively.",
        "parameters": {
            "path": {"type": "string",
                     "description": "Path to the file or directory relative to project root",
                     "required": True},
        },
    },
    "list_files": {
        "description": "List files and directories in a path. Use to explore project structure.",
        "parameters": {
            "path":      {"type": "string",
                          "description": 'Path to directory relative to project root (use "." for root)',
                          "required": True},
            "recursive": {"type": "boolean",
                          "description": "Whether to list recursively (default: false)",
                          "required": False},
        },
    },
    "create_directory": {
        "description": "Create a new directory (folder). Creates parent directories if needed.",
        "parameters": {
            "path": {"type": "string",
                     "description": "Path to the directory to create, relative to project root",
                     "required": True},
        },
    },
    "execute_command": {
        "description": "Execute a shell command. Use for npm, git, build tools, tests, etc.",
        "parameters": {
            "command": {"type": "string", "description": "The command to run (e.g., npm, git, node)",
                        "required": True},
            "args":    {"type": "array",
                        "description": 'Command arguments as array (e.g., ["install", "lodash"])',
                        "required": False},
        },
    },
    "search_code": {
        "description": "Search for a text pattern in the codebase. Returns matching files and lines.",
        "parameters": {
            "pattern": {"type": "string", "description": "Text or regex pattern to search for",
                        "required": True},
            "path":    {"type": "string", "description": "Path to search in (default: entire project)",
                        "required": False},
        },
    },
    "find_files": {
        "description": "Find files by name or glob pattern (e.g. *.test.ts, src/**/config.py).",
        "parameters": {
            "pattern": {"type": "string", "description": "File name or glob pattern to match",
                        "required": True},
            "path":    {"type": "string", "description": "Directory to search in (default: entire project)",
                        "required": False},
        },
    },
    "fetch_url": {
        "description": "Fetch content from a URL (documentation, APIs, web pages). Returns text content.",
        "parameters": {
            "url": {"type": "string", "description": "The URL to fetch content from", "required": True},
        },
    },

    # ── Z.AI MCP ──────────────────────────────────────────────────────────────
    "web_search": {
        "description": "Search the web for up-to-date information. Returns titles, URLs and summaries.",
        "parameters": {
            "query":         {"type": "string", "description": "Search query", "required": True},
            "domain_filter": {"type": "string", "description": "Limit results to this domain",
                              "required": False},
            "recency":       {"type": "string",
                              "description": "oneDay, oneWeek, oneMonth, oneYear or noLimit",
                              "required": False},
        },
    },
    "web_read": {
        "description": "Read a web page and return its main content as markdown or text.",
        "parameters": {
            "url":    {"type": "string", "description": "The URL to read", "required": True},
            "format": {"type": "string", "description": "markdown (default) or text", "required": False},
        },
    },
    "github_read": {
        "description": "Read a public GitHub repository: search its docs, show its tree, or read a file.",
        "parameters": {
            "repo":   {"type": "string", "description": "Repository as owner/repo", "required": True},
            "action": {"type": "string", "description": "search, tree or read_file", "required": True},
            "query":  {"type": "string", "description": "Search query (action=search)", "required": False},
            "path":   {"type": "string", "description": "Directory (tree) or file path (read_file)",
                       "required": False},
        },
    },

    # ── MiniMax ───────────────────────────────────────────────────────────────
    "minimax_web_search": {
        "description": "Search the web using MiniMax. Returns relevant results for the query.",
        "parameters": {
            "query": {"type": "string", "description": "Search query", "required": True},
        },
    },
    "minimax_understand_image": {
        "description": "Describe or analyse an image from a URL.",
        "parameters": {
            "prompt":    {"type": "string", "description": "What to ask about the image", "required": True},
            "image_url": {"type": "string", "description": "Public URL of the image", "required": True},
        },
    },
}

ZAI_MCP_TOOLS     = ("web_search", "web_read", "github_read")
MINIMAX_MCP_TOOLS = ("minimax_web_search", "minimax_understand_image")
MCP_TOOLS         = ZAI_MCP_TOOLS + MINIMAX_MCP_TOOLS

ZAI_PROVIDER_IDS     = ("z.ai",)
MINIMAX_PROVIDER_IDS = ("minimax",)


# =============================================================================
# MCP ACCESS
# =============================================================================

def get_zai_mcp_config() -> Optional[Dict[str, Any]]:
    """Active provider first, then any Z.AI provider with a key."""
    candidates = [Config.PROVIDER] if Config.PROVIDER in ZAI_PROVIDER_IDS else []
    candidates += [p for p in ZAI_PROVIDER_IDS if p not in candidates]
    for pid in candidates:
        key       = Config.get_api_key(pid)
        endpoints = PROVIDERS.get(pid, {}).get("mcp_endpoints")
        if key and endpoints:
            return {"provider": pid, "api_key": key, "endpoints": endpoints}
    return None


def get_minimax_mcp_config() -> Optional[Dict[str, Any]]:
    candidates = [Config.PROVIDER] if Config.PROVIDER in MINIMAX_PROVIDER_IDS else []
    candidates += [p for p in MINIMAX_PROVIDER_IDS if p not in candidates]
    for pid in candidates:
        key  = Config.get_api_key(pid)
        host = PROVIDERS.get(pid, {}).get("rest_host")
        if key and host:
            return {"provider": pid, "api_key": key, "host": host}
    return None


def get_available_tools() -> Dict[str, Dict[str, Any]]:
    zai     = get_zai_mcp_config() is not None
    minimax = get_minimax_mcp_config() is not None
    out = {}
    for name, tool in AGENT_TOOLS.items():
        if name in ZAI_MCP_TOOLS and not zai:
            continue
        if name in MINIMAX_MCP_TOOLS and not minimax:
            continue
        out[name] = tool
    return out


# =============================================================================
# RENDERINGS
# =============================================================================

TEXT_CALL_FORMAT = """## Tool Call Format
To use a tool, reply with one block per call:

<tool_call>
{"tool": "tool_name", "parameters": {"param1": "value1"}}
</tool_call>

You may emit several tool_call blocks in one reply. They run in order."""


def format_tool_definitions() -> str:
    lines = ["## Available Tools", ""]
    for name, tool in get_available_tools().items():
        lines.append(f"### {name}")
        lines.append(tool["description"])
        lines.append("Parameters:")
        for param, info in tool["parameters"].items():
            req = "(required)" if info.get("required") else "(optional)"
            lines.append(f"  - {param}: {info['type']} {req} - {info['description']}")
        lines.append("")
    lines.append(TEXT_CALL_FORMAT)
    return "\n".join(lines)


def _json_schema(params: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    required:   List[str]      = []
    for param, info in params.items():
        prop = {"type": info["type"], "description": info["description"]}
        if info["type"] == "array":
            prop["items"] = {"type": "string"}
        properties[param] = prop
        if info.get("required"):
            required.append(param)
    return {"type": "object", "properties": properties, "required": required}


def get_openai_tools() -> List[Dict[str, Any]]:
    return [
        {"type": "function", "function": {
            "name":        name,
            "description": tool["description"],
            "parameters":  _json_schema(tool["parameters"]),
        }}
        for name, tool in get_available_tools().items()
    ]


def get_anthropic_tools() -> List[Dict[str, Any]]:
    return [
        {"name":         name,
         "description":  tool["description"],
         "input_schema": _json_schema(tool["parameters"])}
        for name, tool in get_available_tools().items()
    ]


def required_params(tool: str) -> List[str]:
    spec = AGENT_TOOLS.get(tool)
    if not spec:
        return []
    return [p for p, info in spec["parameters"].items() if info.get("required")]
