import json

import pytest

from mcp_stdio_tools.errors import FrameTooLargeError
from mcp_stdio_tools.transport import FrameDecoder

MESSAGES = [
    {"jsonrpc": "2.0", "id": 1, "result": {"tools": []}},
    {"jsonrpc": "2.0", "method": "notify", "params": {"text": "héllo wörld ✓ 🚀"}},
    {"jsonrpc": "2.0", "id": 2, "result": {"content": [{"type": "text", "text": "a\nb"}]}},
]


def _stream():
    return "".join(json.dumps(m, ensure_ascii=False) + "\n" for m in MESSAGES).encode("utf-8")


def _decode_all(chunks, decoder=None):
    decoder = decoder or FrameDecoder()
    frames = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
    return [json.loads(f) for f in frames]


def test_whole_stream_yields_every_message():
    assert _decode_all([_stream()]) == MESSAGES


def test_every_split_point_yields_same_frames():
    data = _stream()
    for split in range(len(data) + 1):
        assert _decode_all([data[:split], data[split:]]) == MESSAGES, f"split at {split}"


def test_byte_at_a_time():
    data = _stream()
    assert _decode_all([data[i:i + 1] for i in range(len(data))]) == MESSAGES


def test_multibyte_character_split_across_chunks():
    data = (json.dumps({"text": "€"}, ensure_ascii=False) + "\n").encode("utf-8")
    euro = data.index("€".encode("utf-8"))
    decoder = FrameDecoder()
    assert decoder.feed(data[:euro + 1]) == []
    frames = decoder.feed(data[euro + 1:])
    assert [json.loads(f) for f in frames] == [{"text": "€"}]


def test_document_spanning_lines_is_reassembled():
    decoder = FrameDecoder()
    assert decoder.feed('{"jsonrpc": "2.0",\n') == []
    assert decoder.feed(' "id": 7,\n') == []
    frames = decoder.feed(' "result": {}}\n{"id": 8}\n')
    assert [json.loads(f) for f in frames] == [
        {"jsonrpc": "2.0", "id": 7, "result": {}},
        {"id": 8},
    ]
    assert decoder.buffered == ""


def test_raw_newline_inside_string_value():
    data = (
        b'{"jsonrpc": "2.0", "id": 1, "result": {"text": "line1\nline2"}}\n'
        b'{"jsonrpc": "2.0", "id": 2, "result": {}}\n'
    )
    decoder = FrameDecoder()
    frames = [json.loads(f, strict=False) for f in decoder.feed(data)]
    assert frames == [
        {"jsonrpc": "2.0", "id": 1, "result": {"text": "line1\nline2"}},
        {"jsonrpc": "2.0", "id": 2, "result": {}},
    ]
    assert decoder.buffered == ""


def test_raw_newline_split_across_chunks():
    decoder = FrameDecoder()
    assert decoder.feed(b'{"text": "first\n') == []
    frames = decoder.feed(b'second"}\n')
    assert [json.loads(f, strict=False) for f in frames] == [{"text": "first\nsecond"}]


def test_blank_lines_are_skipped():
    frames = FrameDecoder().feed('\n\r\n{"id": 1}\n\n   \n{"id": 2}\r\n')
    assert [json.loads(f) for f in frames] == [{"id": 1}, {"id": 2}]


def test_incomplete_tail_stays_buffered():
    decoder = FrameDecoder()
    assert decoder.feed('{"id": 1}\n{"id": ') == ['{"id": 1}']
    assert decoder.buffered == '{"id": '
    assert decoder.feed('2}\n') == ['{"id": 2}']


def test_overflow_discards_buffer_and_recovers():
    decoder = FrameDecoder(max_frame_size=32)
    with pytest.raises(FrameTooLargeError):
        decoder.feed("not json at all\n" * 4)
    assert decoder.buffered == ""
    assert decoder.feed('{"id": 3}\n') == ['{"id": 3}']


def test_overflow_keeps_frames_completed_before_it():
    decoder = FrameDecoder(max_frame_size=16)
    with pytest.raises(FrameTooLargeError) as excinfo:
        decoder.feed('{"id": 1}\n' + "x" * 40)
    assert excinfo.value.frames == ['{"id": 1}']


def test_reset_clears_pending_text():
    decoder = FrameDecoder()
    decoder.feed('{"partial": ')
    decoder.reset()
    assert decoder.buffered == ""
    assert decoder.feed('{"id": 9}\n') == ['{"id": 9}']
