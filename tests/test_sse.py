from __future__ import annotations

from sse_starlette.sse import ServerSentEvent

from mcp_engine.utils.sse import SSEDecoder, SSEFrame, decode_sse_frames


def _wire(event: ServerSentEvent) -> str:
    return event.encode().decode("utf-8")


def test_decoder_reads_library_frames() -> None:
    frames = decode_sse_frames(_wire(ServerSentEvent(data="line one\nline two", event="endpoint")))
    assert frames == [SSEFrame(data="line one\nline two", event="endpoint")]


def test_decoder_joins_data_lines_and_keeps_event() -> None:
    frames = decode_sse_frames("event: endpoint\ndata: /messages/abc\n\ndata: a\ndata: b\n\n")
    assert frames == [
        SSEFrame(data="/messages/abc", event="endpoint"),
        SSEFrame(data="a\nb"),
    ]


def test_decoder_handles_split_chunks_crlf_and_comments() -> None:
    decoder = SSEDecoder()
    assert decoder.feed(_wire(ServerSentEvent(comment="ping"))) == []
    assert decoder.feed("data: {\"id\"") == []
    assert decoder.feed(":1}\r\n") == []
    assert decoder.feed("\r\n") == [SSEFrame(data='{"id":1}')]


def test_event_id_is_kept() -> None:
    frames = decode_sse_frames(_wire(ServerSentEvent(data="x", id="7")))
    assert frames == [SSEFrame(data="x", id="7")]


def test_library_encoding_preserves_payload() -> None:
    payload = '{"jsonrpc":"2.0","method":"notifications/log","params":{"message":"a\\nb"}}'
    assert decode_sse_frames(_wire(ServerSentEvent(data=payload)))[0].data == payload


def test_unterminated_frame_is_not_emitted() -> None:
    assert decode_sse_frames("data: partial\n") == []
