#!/usr/bin/env python3
"""
agent_stream.py — Server-sent-event readers for CodeAgent.

A streamed chat response reaches us as arbitrary byte chunks. The pipeline is:

    iter_stream_chunks(resp)  reader thread -> queue -> consumer, which polls
                              the CancelToken and the call deadline between reads
    SSELineDecoder            incremental UTF-8 decode, split on newlines,
                              keep the trailing partial line for the next chunk
    read_*_stream()           fold the `data:` payloads into an AgentChatResponse

Because decoding and line splitting are incremental, the result does not
depend on where the transport happened to split the bytes. A line that fails
to parse is skipped; it never aborts the stream.
"""
import codecs
import json
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from agent_core import CancelToken, ChatCancelledError, ChatTimeoutError, Log
from agent_parsing import (
    ToolCall, parse_anthropic_tool_calls, parse_openai_tool_calls, parse_tool_calls,
)

ChunkCallback = Callable[[str], None]


@dataclass
class AgentChatResponse:
    content:           str
    tool_calls:        List[ToolCall]           = field(default_factory=list)
    used_native_tools: bool                     = True
    usage:             Optional[Dict[str, int]] = None


# =============================================================================
# TRANSPORT CHANNEL
# =============================================================================

_EOF = object()


def iter_stream_chunks(resp, cancel: Optional[CancelToken] = None,
                       deadline: Optional[float] = None,
                       timeout_label: str = "",
                       poll: float = 0.1) -> Iterator[bytes]:
    """Yield raw byte chunks from a streamed requests.Response.

    A daemon thread pumps resp.iter_content() into a queue; this generator
    waits on the queue in short slices so cancellation and the overall call
    deadline are honoured even while the server is silent. Raises
    ChatCancelledError or ChatTimeoutError, closing the response first.
    """
    q: "queue.Queue[Any]" = queue.Queue()

    def _pump():
        try:
            for chunk in resp.iter_content(chunk_size=None):
                if chunk:
                    q.put(chunk)
        except Exception as e:
            q.put(e)
        finally:
            q.put(_EOF)

    threading.Thread(target=_pump, daemon=True).start()

    try:
        while True:
            if cancel is not None and cancel.cancelled:
                raise ChatCancelledError("Request cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                raise ChatTimeoutError(f"API request timed out{timeout_label}")
            try:
                item = q.get(timeout=poll)
            except queue.Empty:
                continue
            if item is _EOF:
                return
            if isinstance(item, Exception):
                if cancel is not None and cancel.cancelled:
                    raise ChatCancelledError("Request cancelled")
                raise item
            yield item
    finally:
        try:
            resp.close()
        except Exception as e:
            Log.debug(f"Closing stream failed: {e}")


# =============================================================================
# SSE DECODING
# =============================================================================

class SSELineDecoder:
    """Bytes in, complete lines out. The last partial line is carried over."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer  = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [l.rstrip("\r") for l in lines]

    def flush(self) -> List[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer.rstrip("\r"), ""
        return [rest] if rest else []


def iter_sse_data(chunks: Iterable[bytes]) -> Iterator[str]:
    """Yield the payload of every `data:` line, skipping the [DONE] sentinel."""
    decoder = SSELineDecoder()

    def _payloads(lines):
        for line in lines:
            if not line.startswith("data:"):
                continue
            data = line[5:]
            if data.startswith(" "):
                data = data[1:]
            if data.strip() == "[DONE]":
                continue
            yield data

    for chunk in chunks:
        yield from _payloads(decoder.feed(chunk))
    yield from _payloads(decoder.flush())


def iter_sse_events(chunks: Iterable[bytes]) -> Iterator[Dict[str, Any]]:
    for data in iter_sse_data(chunks):
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            Log.debug(f"Skipping malformed SSE line: {data[:120]!r}")
            continue
        if isinstance(event, dict):
            yield event


def _emit(on_chunk: Optional[ChunkCallback], text: str):
    if on_chunk and text:
        on_chunk(text)


# =============================================================================
# READERS
# =============================================================================

# One structurally odd event is skipped; the rest of the stream still counts.
_EVENT_ERRORS = (AttributeError, KeyError, TypeError, ValueError)


def _skip_event(event: Dict[str, Any], err: Exception):
    Log.debug(f"Skipping malformed SSE event ({type(err).__name__}: {err}): {str(event)[:120]}")


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def read_plain_stream(chunks: Iterable[bytes], protocol: str,
                      on_chunk: Optional[ChunkCallback] = None) -> str:
    """Text-only reader used by the fallback protocol."""
    parts: List[str] = []
    for event in iter_sse_events(chunks):
        try:
            if protocol == "openai":
                choices = event.get("choices") or [{}]
                text    = _as_dict(_as_dict(choices[0]).get("delta")).get("content")
            elif event.get("type") == "content_block_delta":
                text = _as_dict(event.get("delta")).get("text")
            else:
                text = None
        except _EVENT_ERRORS as e:
            _skip_event(event, e)
            continue
        if isinstance(text, str) and text:
            parts.append(text)
            _emit(on_chunk, text)
    return "".join(parts)


def _reinterpret_text(content: str, calls: List[ToolCall],
                      usage: Optional[Dict[str, int]]) -> AgentChatResponse:
    if not calls and content:
        text_calls = parse_tool_calls(content)
        if text_calls:
            return AgentChatResponse(content, text_calls, used_native_tools=False, usage=usage)
    return AgentChatResponse(content, calls, used_native_tools=True, usage=usage)


def _token_count(value: Any, default: int = 0) -> int:
    try:
        return int(value or default)
    except (TypeError, ValueError):
        return default


def extract_openai_usage(event: Dict[str, Any]) -> Optional[Dict[str, int]]:
    usage = event.get("usage")
    if not isinstance(usage, dict):
        return None
    return {"prompt_tokens":     _token_count(usage.get("prompt_tokens")),
            "completion_tokens": _token_count(usage.get("completion_tokens"))}


def _fold_openai_tool_deltas(delta: Dict[str, Any], calls: Dict[int, Dict[str, str]]):
    tool_calls = delta.get("tool_calls") or []
    if not isinstance(tool_calls, list):
        return
    for tc in tool_calls:
        if not isinstance(tc, dict):
            continue
        idx   = tc.get("index", 0) or 0
        entry = calls.setdefault(int(idx), {"id": "", "name": "", "arguments": ""})
        fn    = _as_dict(tc.get("function"))
        if isinstance(tc.get("id"), str) and tc["id"]:
            entry["id"] = tc["id"]
        if isinstance(fn.get("name"), str) and fn["name"]:
            entry["name"] = fn["name"]
        if isinstance(fn.get("arguments"), str):
            entry["arguments"] += fn["arguments"]


def read_openai_tool_stream(chunks: Iterable[bytes],
                            on_chunk: Optional[ChunkCallback] = None) -> AgentChatResponse:
    content = ""
    usage:  Optional[Dict[str, int]] = None
    calls:  Dict[int, Dict[str, str]] = {}

    for event in iter_sse_events(chunks):
        try:
            usage   = extract_openai_usage(event) or usage
            choices = event.get("choices") or []
            if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                continue
            delta = _as_dict(choices[0].get("delta"))

            text = delta.get("content")
            if isinstance(text, str) and text:
                content += text
                _emit(on_chunk, text)

            _fold_openai_tool_deltas(delta, calls)
        except _EVENT_ERRORS as e:
            _skip_event(event, e)

    raw = [{"id": c["id"], "type": "function",
            "function": {"name": c["name"], "arguments": c["arguments"]}}
           for _, c in sorted(calls.items())]
    parsed = parse_openai_tool_calls(raw)
    Log.debug(f"Stream parsed tool calls: {[c.tool for c in parsed]}")
    return _reinterpret_text(content, parsed, usage)


def read_anthropic_tool_stream(chunks: Iterable[bytes],
                               on_chunk: Optional[ChunkCallback] = None) -> AgentChatResponse:
    content     = ""
    blocks:     List[Dict[str, Any]] = []
    block_type  = ""
    tool_id     = tool_name = tool_input = ""
    in_tokens   = out_tokens = 0
    saw_usage   = False

    for event in iter_sse_events(chunks):
        etype = event.get("type")
        try:
            if etype == "message_start":
                u = _as_dict(_as_dict(event.get("message")).get("usage"))
                if u:
                    saw_usage  = True
                    in_tokens  = _token_count(u.get("input_tokens"), in_tokens)
                    out_tokens = _token_count(u.get("output_tokens"), out_tokens)
            elif etype == "message_delta":
                u = _as_dict(event.get("usage"))
                if u:
                    saw_usage  = True
                    out_tokens = _token_count(u.get("output_tokens"), out_tokens)
                    in_tokens  = _token_count(u.get("input_tokens"), in_tokens)

            elif etype == "content_block_start":
                block = _as_dict(event.get("content_block"))
                if block.get("type") == "tool_use":
                    block_type = "tool_use"
                    tool_id    = str(block.get("id") or "")
                    tool_name  = str(block.get("name") or "")
                    tool_input = ""
                else:
                    block_type = str(block.get("type") or "")

            elif etype == "content_block_delta":
                delta = _as_dict(event.get("delta"))
                if block_type == "tool_use" and isinstance(delta.get("partial_json"), str):
                    tool_input += delta["partial_json"]
                elif isinstance(delta.get("text"), str) and delta["text"]:
                    content += delta["text"]
                    _emit(on_chunk, delta["text"])

            elif etype == "content_block_stop":
                if block_type == "tool_use":
                    blocks.append({"type": "tool_use", "id": tool_id, "name": tool_name,
                                   "raw_input": tool_input})
                block_type = ""
        except _EVENT_ERRORS as e:
            _skip_event(event, e)

    usage = ({"prompt_tokens": in_tokens, "completion_tokens": out_tokens}
             if saw_usage else None)

    # Tool input goes through the same recovery path as OpenAI arguments.
    raw = [{"id": b["id"], "type": "function",
            "function": {"name": b["name"], "arguments": b["raw_input"] or "{}"}}
           for b in blocks]
    return _reinterpret_text(content, parse_openai_tool_calls(raw), usage)


# =============================================================================
# NON-STREAMING BODIES
# =============================================================================

def parse_openai_body(data: Dict[str, Any]) -> AgentChatResponse:
    message = ((data.get("choices") or [{}])[0] or {}).get("message") or {}
    content = message.get("content") or ""
    calls   = parse_openai_tool_calls(message.get("tool_calls") or [])
    return _reinterpret_text(content, calls, extract_openai_usage(data))


def parse_anthropic_body(data: Dict[str, Any]) -> AgentChatResponse:
    blocks  = data.get("content") or []
    content = "".join(b.get("text", "") for b in blocks
                      if isinstance(b, dict) and b.get("type") == "text")
    u       = data.get("usage") or {}
    usage   = ({"prompt_tokens":     _token_count(u.get("input_tokens")),
                "completion_tokens": _token_count(u.get("output_tokens"))} if u else None)
    return _reinterpret_text(content, parse_anthropic_tool_calls(blocks), usage)
