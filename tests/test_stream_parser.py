"""Tests for line splitting, display helpers and per-vendor normalizers."""

import json
import logging

import pytest

from reviewpipe.util.stream_parser import (
    LineSplitter,
    PiDeltaCoalescer,
    StreamEvent,
    StreamParser,
    extract_tool_detail,
    normalize_claude_line,
    normalize_cursor_agent_line,
    normalize_pi_line,
    strip_path_prefix,
    truncate_snippet,
)


def _line(obj) -> str:
    return json.dumps(obj)


class TestTruncateSnippet:
    """Test cases for truncate_snippet."""

    def test_collapses_whitespace(self):
        assert truncate_snippet("  hello\n\n\tworld  ") == "hello world"

    def test_empty_and_none(self):
        assert truncate_snippet("") == ""
        assert truncate_snippet(None) == ""
        assert truncate_snippet("   \n ") == ""

    def test_exact_length_is_not_cut(self):
        text = "a" * 200
        assert truncate_snippet(text) == text

    def test_long_text_cut_with_single_ellipsis(self):
        result = truncate_snippet("b" * 250)
        assert result == "b" * 200 + "…"
        assert len(result) == 201

    def test_custom_max_len(self):
        assert truncate_snippet("abcdef", max_len=3) == "abc…"

    def test_idempotent_on_short_input(self):
        once = truncate_snippet("  some   short\ntext ")
        assert truncate_snippet(once) == once


class TestStripPathPrefix:
    """Test cases for strip_path_prefix."""

    def test_strips_prefix_on_segment_boundary(self):
        assert strip_path_prefix("/tmp/work/src/a.py", "/tmp/work") == "src/a.py"

    def test_trailing_separator_on_prefix(self):
        assert strip_path_prefix("/tmp/work/src/a.py", "/tmp/work/") == "src/a.py"

    def test_sibling_directory_is_untouched(self):
        assert strip_path_prefix("/tmp/worker/a.py", "/tmp/work") == "/tmp/worker/a.py"

    def test_path_equal_to_prefix(self):
        assert strip_path_prefix("/tmp/work", "/tmp/work") == ""

    def test_missing_prefix_returns_path(self):
        assert strip_path_prefix("/tmp/work/a.py", None) == "/tmp/work/a.py"
        assert strip_path_prefix("/tmp/work/a.py", "") == "/tmp/work/a.py"

    def test_none_path(self):
        assert strip_path_prefix(None, "/tmp/work") == ""


class TestExtractToolDetail:
    """Test cases for extract_tool_detail."""

    def test_command_preferred_over_paths(self):
        detail = extract_tool_detail({"command": "git diff", "file_path": "/x/a.py", "path": "/x"})
        assert detail == "git diff"

    def test_file_path_preferred_over_path(self):
        assert extract_tool_detail({"file_path": "/x/a.py", "path": "/x"}, cwd="/x") == "a.py"

    def test_path_only(self):
        assert extract_tool_detail({"path": "/repo/lib"}, cwd="/repo") == "lib"

    def test_json_string_input_is_decoded(self):
        assert extract_tool_detail('{"command": "ls -la"}') == "ls -la"

    def test_unusable_input(self):
        assert extract_tool_detail("not json") == ""
        assert extract_tool_detail(None) == ""
        assert extract_tool_detail({"pattern": "foo"}) == ""


class TestLineSplitter:
    """Test cases for LineSplitter."""

    def _collect(self):
        lines = []
        return lines, LineSplitter(lines.append)

    def test_splits_complete_lines_and_buffers_partial(self):
        lines, splitter = self._collect()
        splitter.feed("one\ntw")
        assert lines == ["one"]
        splitter.feed("o\nthree")
        assert lines == ["one", "two"]
        splitter.flush()
        assert lines == ["one", "two", "three"]

    def test_chunk_boundaries_do_not_matter(self):
        payload = '{"a":1}\n{"b":"x y"}\n\n{"c":[1,2]}\n'
        whole, splitter = self._collect()
        splitter.feed(payload)
        splitter.flush()

        for size in (1, 2, 3, 7):
            pieces, chunked = self._collect()
            for start in range(0, len(payload), size):
                chunked.feed(payload[start : start + size])
            chunked.flush()
            assert pieces == whole

    def test_blank_lines_are_delivered(self):
        lines, splitter = self._collect()
        splitter.feed("a\n\nb\n")
        assert lines == ["a", "", "b"]

    def test_flush_is_idempotent(self):
        lines, splitter = self._collect()
        splitter.feed("tail without newline")
        splitter.flush()
        splitter.flush()
        assert lines == ["tail without newline"]

    def test_flush_with_empty_buffer_does_nothing(self):
        lines, splitter = self._collect()
        splitter.feed("done\n")
        splitter.flush()
        assert lines == ["done"]

    def test_multibyte_character_split_across_byte_chunks(self):
        lines, splitter = self._collect()
        data = "café ✓\n".encode("utf-8")
        for index in range(len(data)):
            splitter.feed(data[index : index + 1])
        assert lines == ["café ✓"]

    def test_handler_exception_is_isolated(self, caplog):
        seen = []

        def handler(line):
            if line == "bad":
                raise RuntimeError("boom")
            seen.append(line)

        splitter = LineSplitter(handler)
        with caplog.at_level(logging.WARNING):
            splitter.feed("first\nbad\nlast\n")
            splitter.feed("later\n")
        assert seen == ["first", "last", "later"]
        assert "handler failed" in caplog.text


class TestStreamParser:
    """Test cases for StreamParser."""

    def test_emits_events_in_order(self):
        events = []
        parser = StreamParser(normalize_pi_line, events.append, cwd="/repo")
        parser.feed(_line({"type": "tool_execution_start", "toolName": "read", "args": {"path": "/repo/a.py"}}) + "\n")
        parser.feed('not json\n\n')
        parser.feed(_line({"type": "message_update", "assistantMessageEvent": {"type": "text_delta", "delta": "hi"}}))
        parser.flush()
        assert [(e.type, e.text) for e in events] == [("tool_use", "read: a.py"), ("assistant_text", "hi")]

    def test_sink_failure_does_not_stop_stream(self):
        received = []

        def sink(event):
            received.append(event)
            if len(received) == 1:
                raise ValueError("display went away")

        parser = StreamParser(normalize_pi_line, sink)
        delta = {"type": "message_update", "assistantMessageEvent": {"type": "text_delta", "delta": "x"}}
        parser.feed(_line(delta) + "\n" + _line(delta) + "\n")
        assert len(received) == 2


class TestNormalizeClaude:
    """Test cases for the Claude Code stream-json normalizer."""

    def test_text_delta(self):
        event = normalize_claude_line(
            _line({"type": "stream_event", "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Looking"}}})
        )
        assert isinstance(event, StreamEvent)
        assert event.type == "assistant_text"
        assert event.text == "Looking"
        assert event.timestamp > 0

    def test_text_block_wins_over_tool_use(self):
        line = _line(
            {
                "type": "assistant",
                "message": {
                    "role": "assistant",
                    "content": [
                        {"type": "tool_use", "name": "Read", "input": {"file_path": "/w/a.py"}},
                        {"type": "text", "text": "Reading the file"},
                    ],
                },
            }
        )
        event = normalize_claude_line(line)
        assert event.type == "assistant_text"
        assert event.text == "Reading the file"

    def test_tool_use_with_cwd(self):
        line = _line(
            {
                "type": "assistant",
                "message": {
                    "role": "assistant",
                    "content": [{"type": "tool_use", "name": "Read", "input": {"file_path": "/tmp/worktree-abc/src/index.js"}}],
                },
            }
        )
        event = normalize_claude_line(line, cwd="/tmp/worktree-abc")
        assert event.type == "tool_use"
        assert "src/index.js" in event.text
        assert "/tmp/worktree-abc" not in event.text

    def test_tool_use_without_name(self):
        line = _line({"type": "assistant", "message": {"content": [{"type": "tool_use", "input": {}}]}})
        assert normalize_claude_line(line).text == "unknown"

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "not json",
            "[1, 2]",
            _line({"type": "system", "subtype": "init"}),
            _line({"type": "user", "message": {"role": "user", "content": [{"type": "tool_result"}]}}),
            _line({"type": "result", "result": "{}"}),
            _line({"type": "assistant", "message": {"role": "assistant", "content": [{"type": "thinking", "thinking": "hm"}]}}),
            _line({"type": "assistant", "message": {"role": "user", "content": [{"type": "text", "text": "x"}]}}),
            _line({"type": "stream_event", "event": {"delta": {"type": "input_json_delta", "partial_json": "{"}}}),
        ],
    )
    def test_ignored_lines(self, line):
        assert normalize_claude_line(line) is None


class TestNormalizeCursorAgent:
    """Test cases for the Cursor Agent stream-json normalizer."""

    def test_assistant_text(self):
        line = _line({"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": "Checking\nfiles"}]}})
        assert normalize_cursor_agent_line(line).text == "Checking files"

    def test_shell_tool_call(self):
        line = _line(
            {
                "type": "tool_call",
                "subtype": "started",
                "tool_call": {"shellToolCall": {"args": {"command": "git diff HEAD~1"}}},
            }
        )
        event = normalize_cursor_agent_line(line)
        assert event.type == "tool_use"
        assert event.text == "shell: git diff HEAD~1"

    def test_read_tool_call_strips_cwd(self):
        line = _line(
            {
                "type": "tool_call",
                "subtype": "started",
                "tool_call": {"readToolCall": {"args": {"path": "/repo/src/app.ts"}}},
            }
        )
        assert normalize_cursor_agent_line(line, cwd="/repo").text == "read: src/app.ts"

    def test_function_tool_call(self):
        line = _line(
            {
                "type": "tool_call",
                "subtype": "started",
                "tool_call": {"function": {"name": "grep", "arguments": '{"path": "/repo/lib"}'}},
            }
        )
        assert normalize_cursor_agent_line(line, cwd="/repo").text == "grep: lib"

    def test_unknown_tool_call_shape(self):
        line = _line({"type": "tool_call", "subtype": "started", "tool_call": {}})
        assert normalize_cursor_agent_line(line).text == "unknown"

    def test_completed_tool_call_ignored(self):
        line = _line(
            {"type": "tool_call", "subtype": "completed", "tool_call": {"shellToolCall": {"args": {"command": "ls"}}}}
        )
        assert normalize_cursor_agent_line(line) is None

    def test_result_and_system_ignored(self):
        assert normalize_cursor_agent_line(_line({"type": "system", "subtype": "init"})) is None
        assert normalize_cursor_agent_line(_line({"type": "result", "result": "done"})) is None


class TestNormalizePi:
    """Test cases for the Pi JSON-mode normalizer."""

    def test_text_delta(self):
        line = _line({"type": "message_update", "assistantMessageEvent": {"type": "text_delta", "delta": "abc"}})
        assert normalize_pi_line(line).text == "abc"

    def test_thinking_delta_ignored(self):
        line = _line({"type": "message_update", "assistantMessageEvent": {"type": "thinking_delta", "delta": "hmm"}})
        assert normalize_pi_line(line) is None

    def test_message_end_block_content(self):
        line = _line(
            {"type": "message_end", "message": {"role": "assistant", "content": [{"type": "text", "text": "All done"}]}}
        )
        assert normalize_pi_line(line).text == "All done"

    def test_message_end_string_content(self):
        line = _line({"type": "message_end", "message": {"role": "assistant", "content": "Plain"}})
        assert normalize_pi_line(line).text == "Plain"

    def test_message_end_requires_assistant_role(self):
        assert normalize_pi_line(_line({"type": "message_end", "message": {"role": "user", "content": "x"}})) is None
        assert normalize_pi_line(_line({"type": "message_end", "message": {"content": "x"}})) is None

    def test_tool_execution_start(self):
        line = _line({"type": "tool_execution_start", "toolName": "bash", "args": {"command": "ls src"}})
        assert normalize_pi_line(line).text == "bash: ls src"

    def test_tool_execution_end_ignored(self):
        line = _line({"type": "tool_execution_end", "toolName": "bash", "result": {}})
        assert normalize_pi_line(line) is None

    def test_task_completion_summary(self):
        line = _line(
            {"type": "tool_execution_end", "toolName": "task", "isError": False, "result": "\nFound 3 bugs\nDetails..."}
        )
        event = normalize_pi_line(line)
        assert event.type == "tool_use"
        assert event.text == "task ✓: Found 3 bugs"

    def test_task_failure_with_content_blocks(self):
        result = {"content": [{"type": "text", "text": "Sub-agent crashed\ntrace"}]}
        line = _line({"type": "tool_execution_end", "toolName": "task", "isError": True, "result": result})
        assert normalize_pi_line(line).text == "task ✗: Sub-agent crashed"

    def test_task_completion_without_result(self):
        line = _line({"type": "tool_execution_end", "toolName": "task"})
        assert normalize_pi_line(line).text == "task ✓"

    def test_session_and_turn_events_ignored(self):
        for event_type in ("session", "agent_start", "turn_start", "turn_end", "agent_end"):
            assert normalize_pi_line(_line({"type": event_type})) is None


class TestPiDeltaCoalescer:
    """Test cases for PiDeltaCoalescer."""

    def _delta(self, text):
        return _line({"type": "message_update", "assistantMessageEvent": {"type": "text_delta", "delta": text}})

    def test_buffers_until_threshold(self):
        normalize = PiDeltaCoalescer(min_chars=10)
        assert normalize(self._delta("12345")) is None
        event = normalize(self._delta("67890"))
        assert event.text == "1234567890"
        assert normalize(self._delta("x")) is None

    def test_other_event_resets_buffer(self):
        normalize = PiDeltaCoalescer(min_chars=10)
        normalize(self._delta("12345"))
        tool = normalize(_line({"type": "tool_execution_start", "toolName": "ls", "args": {}}))
        assert tool.text == "ls"
        assert normalize(self._delta("abcde")) is None
        assert normalize(self._delta("fghij")).text == "abcdefghij"

    def test_thinking_update_keeps_buffer(self):
        normalize = PiDeltaCoalescer(min_chars=10)
        assert normalize(self._delta("12345")) is None
        thinking = _line({"type": "message_update", "assistantMessageEvent": {"type": "thinking_delta", "delta": "hmm"}})
        assert normalize(thinking) is None
        assert normalize(self._delta("67890")).text == "1234567890"

    def test_task_completion_passes_through(self):
        normalize = PiDeltaCoalescer(min_chars=10)
        normalize(self._delta("12345"))
        line = _line({"type": "tool_execution_end", "toolName": "task", "result": "done"})
        assert normalize(line).text == "task ✓: done"
        assert normalize(self._delta("abcde")) is None
