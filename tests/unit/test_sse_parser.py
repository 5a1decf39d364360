import json

import pytest

from brand_chat.streaming.sse import (
    DONE_FRAME,
    SseEventParser,
    encode_comment,
    encode_data,
    iter_events,
)

STREAM = (
    b": keep-alive 1700000000000\n\n"
    b"event: thread.run\n"
    b'data: {"object": "thread.run", "id": "run_1", "status": "queued"}\n\n'
    + 'data: {"object": "thread.message.delta", "delta": {"content": [{"type": "text", "text": {"value": "Kiralık daire, Beşiktaş"}}]}}\n\n'.encode(
        "utf-8"
    )
    + b'data: {"object": "thread.run", "id": "run_1", "status": "completed"}\r\n\r\n'
    b"data: [DONE]\n\n"
    b'data: {"object": "after-done"}\n\n'
)


def _parse_in_chunks(data: bytes, boundaries: list[int]) -> list[dict]:
    parser = SseEventParser()
    events: list[dict] = []
    start = 0
    for end in boundaries + [len(data)]:
        events.extend(parser.feed(data[start:end]))
        start = end
    events.extend(parser.flush())
    return events


def test_parser_extracts_data_records_and_stops_at_done() -> None:
    events = _parse_in_chunks(STREAM, [])

    assert [event["object"] for event in events] == [
        "thread.run",
        "thread.message.delta",
        "thread.run",
    ]
    assert events[1]["delta"]["content"][0]["text"]["value"] == "Kiralık daire, Beşiktaş"
    assert events[2]["status"] == "completed"


def test_any_single_split_point_yields_identical_events() -> None:
    expected = _parse_in_chunks(STREAM, [])

    for split in range(1, len(STREAM)):
        assert _parse_in_chunks(STREAM, [split]) == expected, f"split at byte {split}"


def test_byte_at_a_time_feed_matches_whole_stream() -> None:
    expected = _parse_in_chunks(STREAM, [])

    assert _parse_in_chunks(STREAM, list(range(1, len(STREAM)))) == expected


def test_malformed_record_is_reported_and_skipped() -> None:
    seen: list[str] = []
    parser = SseEventParser(on_malformed=lambda data, exc: seen.append(data))

    events = parser.feed(b'data: {"object": "ok"}\ndata: {broken\ndata: [1, 2]\n')

    assert events == [{"object": "ok"}]
    assert parser.malformed_count == 2
    assert seen == ["{broken", "[1, 2]"]


def test_trailing_record_without_newline_is_parsed_on_flush() -> None:
    parser = SseEventParser()

    assert parser.feed(b'data: {"object": "tail"}') == []
    assert parser.flush() == [{"object": "tail"}]


@pytest.mark.asyncio
async def test_iter_events_over_async_chunks() -> None:
    async def chunks():
        for i in range(0, len(STREAM), 7):
            yield STREAM[i : i + 7]

    events = [event async for event in iter_events(chunks())]

    assert len(events) == 3
    assert events[0]["id"] == "run_1"


def test_client_frame_encoding() -> None:
    frame = encode_data({"message": "Talebiniz alındı"})

    assert frame.startswith(b"data: ")
    assert frame.endswith(b"\n\n")
    assert json.loads(frame[6:].decode("utf-8")) == {"message": "Talebiniz alındı"}
    assert encode_comment("keep-alive 1") == b": keep-alive 1\n\n"
    assert DONE_FRAME == b"data: [DONE]\n\n"
