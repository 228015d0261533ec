"""Tests for companion/codec.py — line framing and frame (de)serialization."""

import dataclasses

import orjson
import pytest

from companion.codec import FrameDecoder, _check_field, decode_frame, encode_frame
from companion.errors import MalformedFrame
from companion.frames import (
    FRAME_TYPES,
    AssistantDelta,
    Control,
    KeepAlive,
    PermissionDecision,
    PermissionRequestFrame,
    ProcessExit,
    SessionReady,
    ToolResult,
    TurnComplete,
    UserMessage,
)

_SAMPLES = {
    "str": "x",
    "bool": True,
    "int": 1,
    "float": 1.5,
    "list[str]": ["x"],
    "dict[str, Any]": {"x": 1},
    "list[dict[str, Any]]": [{"x": 1}],
}


class TestDecodeFrame:
    def test_assistant_delta(self):
        frame = decode_frame(b'{"type":"assistant_delta","message_id":"m1","text":"Hel"}')
        assert frame == AssistantDelta(message_id="m1", text="Hel")

    def test_session_ready_without_fields(self):
        assert decode_frame(b'{"type":"session_ready"}') == SessionReady()

    def test_unknown_fields_are_ignored(self):
        frame = decode_frame(b'{"type":"process_exit","code":1,"signal":"TERM"}')
        assert frame == ProcessExit(code=1)

    def test_null_optional_field_uses_default(self):
        frame = decode_frame(b'{"type":"tool_result","tool_use_id":"t1","content":null}')
        assert frame == ToolResult(tool_use_id="t1", content="")

    def test_permission_request_input(self):
        line = b'{"type":"permission_request","request_id":"r1","tool_use_id":"t1","tool_name":"Bash","input":{"command":"ls"}}'
        frame = decode_frame(line)
        assert isinstance(frame, PermissionRequestFrame)
        assert frame.input == {"command": "ls"}

    def test_accepts_str(self):
        assert decode_frame('{"type":"keep_alive"}') == KeepAlive()

    @pytest.mark.parametrize(
        "line, reason",
        [
            (b"not json", "invalid JSON"),
            (b"[1, 2]", "not a JSON object"),
            (b'{"text":"x"}', "unrecognized frame type"),
            (b'{"type":"bogus"}', "unrecognized frame type"),
            (b'{"type":"assistant_delta","text":"x"}', "assistant_delta"),
            (b'{"type":"assistant_delta","message_id":5,"text":"x"}', "must be a string"),
            (b'{"type":"session_ready","tools":5}', "session_ready.tools must be a list"),
            (b'{"type":"session_ready","tools":["Bash",1]}', "must be a list of strings"),
            (b'{"type":"session_ready","session_id":7}', "session_ready.session_id must be a string"),
            (
                b'{"type":"permission_request","request_id":"r","tool_use_id":"t","tool_name":"Bash","input":"x"}',
                "permission_request.input must be an object",
            ),
            (b'{"type":"turn_complete","cost":"0.1"}', "turn_complete.cost must be a number"),
            (b'{"type":"turn_complete","cost":true}', "turn_complete.cost must be a number"),
            (b'{"type":"turn_complete","num_turns":1.5}', "turn_complete.num_turns must be an integer"),
            (b'{"type":"turn_complete","is_error":"yes"}', "turn_complete.is_error must be a boolean"),
            (b'{"type":"task_update","tasks":3}', "task_update.tasks must be a list"),
            (b'{"type":"task_update","tasks":["x"]}', "task_update.tasks must be a list of objects"),
            (b'{"type":"process_exit","code":"1"}', "process_exit.code must be an integer"),
        ],
    )
    def test_malformed(self, line, reason):
        with pytest.raises(MalformedFrame) as exc:
            decode_frame(line)
        assert reason in exc.value.reason
        assert exc.value.line == line

    def test_every_frame_field_annotation_is_checked(self):
        for cls in FRAME_TYPES.values():
            for f in dataclasses.fields(cls):
                sample = None if f.type == "Any" else _SAMPLES[f.type.removesuffix(" | None")]
                assert _check_field(f.type, sample) is None, f"{cls.__name__}.{f.name}"

    def test_typed_fields_accepted(self):
        line = (
            b'{"type":"turn_complete","cost":1,"num_turns":2,"is_error":false,"errors":["e"]}'
        )
        assert decode_frame(line) == TurnComplete(cost=1, num_turns=2, is_error=False, errors=["e"])

    def test_malformed_is_value_error(self):
        with pytest.raises(ValueError):
            decode_frame(b"{")


class TestEncodeFrame:
    def test_one_line_per_frame(self):
        data = encode_frame(UserMessage(text="line one\nline two"))
        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1
        assert orjson.loads(data) == {"type": "user_message", "text": "line one\nline two", "attachments": []}

    def test_none_fields_omitted(self):
        data = encode_frame(Control(mode="plan"))
        assert orjson.loads(data) == {"type": "control", "mode": "plan"}

    def test_permission_decision_allow(self):
        data = encode_frame(PermissionDecision(request_id="r1", decision="allow", updated_input={"a": 1}))
        assert orjson.loads(data) == {
            "type": "permission_decision",
            "request_id": "r1",
            "decision": "allow",
            "updated_input": {"a": 1},
        }

    def test_non_frame_rejected(self):
        with pytest.raises(TypeError):
            encode_frame({"type": "interrupt"})

    def test_decode_of_encoded_outbound(self):
        frame = UserMessage(text="hi", attachments=[{"path": "a.png"}])
        assert decode_frame(encode_frame(frame).rstrip(b"\n")) == frame


class TestFrameDecoder:
    STREAM = (
        b'{"type":"session_ready","session_id":"s1"}\n'
        b'{"type":"assistant_delta","message_id":"m1","text":"Hel"}\n'
        b'{"type":"assistant_delta","message_id":"m1","text":"lo \\u00e9"}\n'
        b'{"type":"message_end","message_id":"m1"}\n'
    )

    def test_whole_stream(self):
        frames = FrameDecoder().feed(self.STREAM)
        assert [type(f).__name__ for f in frames] == [
            "SessionReady",
            "AssistantDelta",
            "AssistantDelta",
            "MessageEnd",
        ]

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 16, 64])
    def test_chunking_invariance(self, chunk_size):
        expected = FrameDecoder().feed(self.STREAM)
        decoder = FrameDecoder()
        frames = []
        for i in range(0, len(self.STREAM), chunk_size):
            frames.extend(decoder.feed(self.STREAM[i:i + chunk_size]))
        assert frames == expected
        assert decoder.buffered == 0

    def test_partial_line_is_buffered(self):
        decoder = FrameDecoder()
        assert decoder.feed(b'{"type":"keep_') == []
        assert decoder.buffered > 0
        assert decoder.feed(b'alive"}\n') == [KeepAlive()]

    def test_malformed_line_does_not_stop_stream(self):
        decoder = FrameDecoder()
        items = decoder.feed(b'{"type":"keep_alive"}\ngarbage\n{"type":"process_exit","code":0}\n')
        assert items[0] == KeepAlive()
        assert isinstance(items[1], MalformedFrame)
        assert items[2] == ProcessExit(code=0)

    def test_blank_lines_skipped(self):
        assert FrameDecoder().feed(b'\n  \n{"type":"keep_alive"}\r\n') == [KeepAlive()]

    def test_oversized_line_resyncs(self):
        decoder = FrameDecoder(max_line_bytes=32)
        items = decoder.feed(b'{"type":"assistant_delta","text":"' + b"x" * 100)
        assert len(items) == 1
        assert isinstance(items[0], MalformedFrame)
        assert items[0].reason == "line too long"
        items = decoder.feed(b'xxxx"}\n{"type":"keep_alive"}\n')
        assert items == [KeepAlive()]

    def test_flush_decodes_trailing_line(self):
        decoder = FrameDecoder()
        assert decoder.feed(b'{"type":"process_exit","code":2}') == []
        assert decoder.flush() == [ProcessExit(code=2)]
        assert decoder.buffered == 0

    def test_reset(self):
        decoder = FrameDecoder()
        decoder.feed(b'{"type":"assis')
        decoder.reset()
        assert decoder.buffered == 0
        assert decoder.feed(b'{"type":"keep_alive"}\n') == [KeepAlive()]
