"""Tests for agent stream rendering."""

import json

from plantree.agent.stream import ASSISTANT_CLOSE, ASSISTANT_OPEN, StreamRenderer, truncate_text


def line(**event) -> str:
    return json.dumps(event)


class TestStreamRenderer:
    """Tests for JSON event condensation."""

    def test_plain_text_passthrough(self):
        assert StreamRenderer().render_line("compiling foo.c  ") == ["compiling foo.c  "]

    def test_blank_lines_passthrough(self):
        assert StreamRenderer().render_line("") == [""]
        assert StreamRenderer().render_line("   ") == ["   "]

    def test_deeply_nested_json_passthrough(self):
        """Input the JSON decoder cannot handle is shown as raw text."""
        raw = "[" * 200000
        assert StreamRenderer().render_line(raw) == [raw]

    def test_json_without_type_passthrough(self):
        raw = '{"hello": "world"}'
        assert StreamRenderer().render_line(raw) == [raw]

    def test_system_init(self):
        rendered = StreamRenderer().render_line(line(type="system", subtype="init", model="m-1"))
        assert rendered == ["[system:init] model=m-1"]

    def test_user_prompt_truncated(self):
        event = line(type="user", message={"content": [{"text": "x" * 500}]})
        (rendered,) = StreamRenderer().render_line(event)
        assert rendered.startswith("> prompt: ")
        assert rendered.endswith("…")

    def test_thinking_buffered_until_completed(self):
        renderer = StreamRenderer()
        assert renderer.render_line(line(type="thinking", subtype="delta", text="Let me ")) == []
        assert renderer.render_line(line(type="thinking", subtype="delta", text="look")) == []
        assert renderer.render_line(line(type="thinking", subtype="completed")) == [
            "[thinking] Let me look"
        ]

    def test_assistant_deltas_then_final(self):
        """Partial assistant output is buffered; the final message is printed once."""
        renderer = StreamRenderer()
        partial = {"type": "assistant", "timestamp_ms": 1, "message": {"content": [{"text": "Hel"}]}}
        assert renderer.render_line(json.dumps(partial)) == []

        final = line(type="assistant", model_call_id="c1", message={"content": [{"text": "Hello"}]})
        assert renderer.render_line(final) == [ASSISTANT_OPEN, "Hello", ASSISTANT_CLOSE]
        assert renderer.flush() == []

    def test_flush_emits_buffered_assistant(self):
        renderer = StreamRenderer()
        partial = {"type": "assistant", "timestamp_ms": 1, "message": {"content": [{"text": "Hi"}]}}
        renderer.render_line(json.dumps(partial))
        assert renderer.flush() == [ASSISTANT_OPEN, "Hi", ASSISTANT_CLOSE]

    def test_tool_call_summary(self):
        event = line(
            type="tool_call",
            subtype="started",
            tool_call={"readToolCall": {"args": {"path": "src/main.py"}}},
        )
        assert StreamRenderer().render_line(event) == ["[tool:started] readToolCall path=src/main.py"]

    def test_result_records_status(self):
        renderer = StreamRenderer()
        rendered = renderer.render_line(line(type="result", is_error=True, result="boom"))
        assert rendered == ["[result:error] boom"]
        assert renderer.result_status == "error"

    def test_unknown_event_type(self):
        assert StreamRenderer().render_line(line(type="telemetry")) == ["[event:telemetry]"]


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    assert truncate_text("abcdef", 3) == "abc…"
