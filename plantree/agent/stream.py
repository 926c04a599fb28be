"""Rendering of agent stream output.

Agents run with a streaming JSON output format emit one JSON object per line.
Recognized event shapes are condensed into short human-readable lines; any
other line passes through unchanged. Rendering is presentational only - the
supervisor's control flow never depends on it.

Event shapes (``type`` field):
    system     {"type": "system", "subtype": "init", "model": "..."}
    user       {"type": "user", "message": {"content": [{"text": "..."}]}}
    thinking   {"type": "thinking", "subtype": "delta"|"completed", "text": "..."}
    assistant  {"type": "assistant", "message": {...}, "timestamp_ms"?, "model_call_id"?}
    tool_call  {"type": "tool_call", "subtype": "started", "tool_call": {"<name>": {"args": {}}}}
    result     {"type": "result", "is_error": false, "result": "..."}
"""

import json
from typing import Any

ASSISTANT_OPEN = "----- assistant -----"
ASSISTANT_CLOSE = "---------------------"


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "…"


def extract_message_text(event: dict[str, Any]) -> str:
    """Concatenate text parts of ``event["message"]["content"]``."""
    message = event.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if not isinstance(content, list):
        return ""
    return "".join(
        item["text"]
        for item in content
        if isinstance(item, dict) and isinstance(item.get("text"), str)
    )


def summarize_tool_call(event: dict[str, Any]) -> str:
    tool_call = event.get("tool_call")
    if not isinstance(tool_call, dict) or not tool_call:
        return "tool invocation"
    tool_name, payload = next(iter(tool_call.items()))
    suffix = ""
    if isinstance(payload, dict):
        args = payload.get("args")
        if isinstance(args, dict) and isinstance(args.get("path"), str):
            suffix = f" path={truncate_text(args['path'], 120)}"
    return f"{tool_name}{suffix}"


def parse_event(line: str) -> dict[str, Any] | None:
    """Return the JSON event on this line, or None if it is not one."""
    try:
        value = json.loads(line)
    except (ValueError, RecursionError):
        return None
    if not isinstance(value, dict) or not isinstance(value.get("type"), str):
        return None
    return value


class StreamRenderer:
    """Stateful line renderer for one agent session.

    Thinking and assistant text arrive as deltas; they are buffered and
    emitted as one block when the event stream marks them complete (or on
    flush()).
    """

    def __init__(self) -> None:
        self._thinking: list[str] = []
        self._assistant: list[str] = []
        self.result_status: str | None = None  # "success" / "error" from result events

    def render_line(self, line: str) -> list[str]:
        stripped = line.strip()
        event = parse_event(stripped) if stripped else None
        if event is None:
            return [line]

        handler = getattr(self, f"_render_{event['type']}", None)
        if handler is None:
            return [f"[event:{event['type']}]"]
        return handler(event)

    def flush(self) -> list[str]:
        out = []
        thinking = "".join(self._thinking).strip()
        if thinking:
            out.append(f"[thinking] {truncate_text(thinking, 240)}")
        assistant = "".join(self._assistant).strip()
        if assistant:
            out.extend([ASSISTANT_OPEN, assistant, ASSISTANT_CLOSE])
        self._thinking.clear()
        self._assistant.clear()
        return out

    def _render_system(self, event: dict[str, Any]) -> list[str]:
        subtype = event.get("subtype") or ""
        model = event.get("model") or ""
        if subtype == "init" and model:
            return [f"[system:init] model={model}"]
        return [f"[system:{subtype}]"]

    def _render_user(self, event: dict[str, Any]) -> list[str]:
        text = extract_message_text(event).strip()
        if not text:
            return ["[user]"]
        return [f"> prompt: {truncate_text(text, 220)}"]

    def _render_thinking(self, event: dict[str, Any]) -> list[str]:
        subtype = event.get("subtype") or ""
        if subtype == "delta":
            if isinstance(event.get("text"), str):
                self._thinking.append(event["text"])
            return []
        if subtype == "completed":
            text = "".join(self._thinking).strip()
            self._thinking.clear()
            if not text:
                return ["[thinking] completed"]
            return [f"[thinking] {truncate_text(text, 240)}"]
        return [f"[thinking:{subtype}]"]

    def _render_assistant(self, event: dict[str, Any]) -> list[str]:
        text = extract_message_text(event).strip()
        if not text:
            return []

        is_final = "model_call_id" in event
        if "timestamp_ms" in event and not is_final:
            # Partial output delta
            self._assistant.append(text)
            return []

        buffered = "".join(self._assistant).strip()
        rendered = text if is_final or not buffered else buffered
        self._assistant.clear()
        return [ASSISTANT_OPEN, rendered, ASSISTANT_CLOSE]

    def _render_tool_call(self, event: dict[str, Any]) -> list[str]:
        subtype = event.get("subtype") or "unknown"
        return [f"[tool:{subtype}] {summarize_tool_call(event)}"]

    def _render_result(self, event: dict[str, Any]) -> list[str]:
        status = "error" if event.get("is_error") is True else "success"
        self.result_status = status
        result = event.get("result")
        if isinstance(result, str) and result:
            return [f"[result:{status}] {truncate_text(result, 240)}"]
        return [f"[result:{status}]"]
