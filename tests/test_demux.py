"""Tests for the stream demultiplexer state machine."""

import base64

from shellwire.models.events import (
    ChunkRejected,
    FileReceived,
    FrameKind,
    ResponseComplete,
    ScreenshotReceived,
    TextLine,
    TransferAborted,
    TransferProgress,
    TransferStarted,
)
from shellwire.protocol.codec import encode_chunk
from shellwire.protocol.demux import DemuxState, Phase, StreamDemultiplexer, process_line
from shellwire.protocol.framing import FrameWriter


def _feed_all(demux, lines):
    events = []
    for line in lines:
        events.extend(demux.feed(line))
    return events


def _of_type(events, cls):
    return [e for e in events if isinstance(e, cls)]


def test_text_lines_and_end_marker():
    demux = StreamDemultiplexer()
    events = _feed_all(demux, ["  indented output\r\n", "second\n", "---END---\n"])
    assert events == [
        TextLine(text="  indented output"),
        TextLine(text="second"),
        ResponseComplete(),
    ]
    assert demux.idle


def test_escaped_marker_text_is_unescaped():
    demux = StreamDemultiplexer()
    events = _feed_all(demux, ["\\---END---\n", "---END---\n"])
    assert events == [TextLine(text="---END---"), ResponseComplete()]


def test_single_file_scenario():
    """FILE_TRANSFER_START:a.bin:6 + one chunk + end yields a 6-byte file."""
    payload = base64.b64encode(b"abcdef").decode()
    demux = StreamDemultiplexer()
    events = _feed_all(demux, [
        "FILE_TRANSFER_START:a.bin:6\n",
        f"CHUNK:1:8:{payload}\n",
        "FILE_TRANSFER_END\n",
    ])
    started = _of_type(events, TransferStarted)
    assert started == [TransferStarted(kind=FrameKind.FILE, size=6, name="a.bin")]
    received = _of_type(events, FileReceived)
    assert len(received) == 1
    artifact = received[0].artifact
    assert artifact.name == "a.bin"
    assert artifact.data == b"abcdef"
    assert not artifact.size_mismatch
    assert demux.idle


def test_state_value_drives_machine():
    """The machine runs on a plain state value, no socket required."""
    state = DemuxState()
    process_line(state, "FILE_TRANSFER_START:x.txt:3")
    assert state.phase is Phase.RECEIVING_FILE
    assert state.buffer.name == "x.txt"
    process_line(state, "FILE_TRANSFER_END")
    assert state.phase is Phase.IDLE
    assert state.buffer is None


def test_bad_chunk_is_counted_and_skipped():
    """A malformed chunk neither aborts the frame nor touches earlier bytes."""
    state = DemuxState()
    process_line(state, "FILE_TRANSFER_START:f.bin:6")
    process_line(state, encode_chunk(1, b"abc"))
    before = bytes(state.buffer.data)

    truncated = encode_chunk(2, b"def").rstrip("\n")[:-1]
    events = process_line(state, truncated)

    assert _of_type(events, ChunkRejected)[0].seq == 2
    assert bytes(state.buffer.data) == before
    assert state.buffer.decode_errors == 1
    assert state.phase is Phase.RECEIVING_FILE


def test_reassembled_length_is_sum_of_good_segments():
    segments = [b"a" * 10, b"b" * 7, b"c" * 1, b"d" * 30]
    lines = ["FILE_TRANSFER_START:mix.bin:48"]
    for seq, segment in enumerate(segments, start=1):
        line = encode_chunk(seq, segment)
        if seq == 2:
            line = "CHUNK:2:12:@@@@@@@@@@@@"
        lines.append(line)
    lines.append("FILE_TRANSFER_END")

    events = _feed_all(StreamDemultiplexer(), lines)
    artifact = _of_type(events, FileReceived)[0].artifact
    assert len(artifact.data) == 10 + 1 + 30
    assert artifact.decode_errors == 1
    assert artifact.chunks == 3
    assert artifact.size_mismatch


def test_legacy_chunks_and_blank_lines():
    demux = StreamDemultiplexer()
    events = _feed_all(demux, [
        "FILE_TRANSFER_START:old.txt:5",
        base64.b64encode(b"he").decode(),
        "",
        "   ",
        base64.b64encode(b"llo").decode(),
        "FILE_TRANSFER_END",
    ])
    assert _of_type(events, FileReceived)[0].artifact.data == b"hello"
    assert not _of_type(events, ChunkRejected)


def test_start_marker_mid_transfer_is_body():
    """Only an idle demultiplexer recognizes start markers."""
    demux = StreamDemultiplexer()
    _feed_all(demux, ["FILE_TRANSFER_START:a.bin:3"])
    events = demux.feed("SCREENSHOT_START:10")
    assert _of_type(events, ChunkRejected)
    assert demux.phase is Phase.RECEIVING_FILE


def test_end_of_response_inside_file_is_a_bad_chunk():
    demux = StreamDemultiplexer()
    _feed_all(demux, ["FILE_TRANSFER_START:a.bin:3"])
    events = demux.feed("---END---")
    assert _of_type(events, ChunkRejected)
    assert not _of_type(events, ResponseComplete)


def test_progress_reported_on_percent_change():
    demux = StreamDemultiplexer()
    lines = ["FILE_TRANSFER_START:p.bin:4"]
    lines += [encode_chunk(i, b"x") for i in range(1, 5)]
    events = _feed_all(demux, lines)
    percents = [e.percent for e in _of_type(events, TransferProgress)]
    assert percents == [25, 50, 75, 100]


def test_progress_is_coarse():
    """Many tiny chunks do not produce one report each."""
    demux = StreamDemultiplexer(progress_interval=50)
    lines = ["FILE_TRANSFER_START:p.bin:100000"]
    lines += [encode_chunk(i, b"x") for i in range(1, 201)]
    events = _feed_all(demux, lines)
    progress = _of_type(events, TransferProgress)
    assert [e.chunks for e in progress] == [50, 100, 150, 200]
    assert all(e.percent == 0 for e in progress)


def test_progress_without_declared_size():
    demux = StreamDemultiplexer(progress_interval=2)
    lines = ["FILE_TRANSFER_START:u.bin:0"]
    lines += [encode_chunk(i, b"zz") for i in range(1, 5)]
    progress = _of_type(_feed_all(demux, lines), TransferProgress)
    assert [e.chunks for e in progress] == [2, 4]
    assert all(e.percent is None for e in progress)


def test_screenshot_frame_accumulates_raw_lines():
    encoded = base64.b64encode(b"\x89PNG fake image bytes").decode()
    demux = StreamDemultiplexer()
    events = _feed_all(demux, [
        "SCREENSHOT_START:21",
        encoded[:10],
        encoded[10:] + "\r",
        "SCREENSHOT_END",
        "---END---",
    ])
    shots = _of_type(events, ScreenshotReceived)
    assert len(shots) == 1
    assert shots[0].artifact.encoded == encoded
    assert shots[0].artifact.declared_size == 21
    assert isinstance(events[-1], ResponseComplete)
    assert demux.idle


def test_invalid_start_size_is_text():
    events = StreamDemultiplexer().feed("SCREENSHOT_START:lots")
    assert events == [TextLine(text="SCREENSHOT_START:lots")]


def test_abort_discards_live_buffer():
    demux = StreamDemultiplexer()
    _feed_all(demux, ["FILE_TRANSFER_START:a.bin:6", encode_chunk(1, b"abc")])
    events = demux.abort("no data for 30s")
    assert events == [TransferAborted(kind=FrameKind.FILE, reason="no data for 30s", received=3)]
    assert demux.idle
    assert demux.abort("again") == []


def test_error_notice_then_resync():
    """An agent-side read failure leaves the frame open until a forced resync."""
    demux = StreamDemultiplexer()
    _feed_all(demux, [
        "FILE_TRANSFER_START:a.bin:6",
        encode_chunk(1, b"abc"),
        "ERROR:Failed to read file: device error",
    ])
    assert demux.phase is Phase.RECEIVING_FILE
    assert demux.state.buffer.decode_errors == 1
    demux.abort("stalled")
    assert demux.feed("next output") == [TextLine(text="next output")]


def test_indented_marker_text_survives_verbatim():
    """Marker-like output keeps its indentation after escaping."""
    sink = []

    class Sink:
        def write_line(self, line):
            sink.append(line)

    FrameWriter(Sink()).write_text("  ---END---\n  normal\n")
    events = _feed_all(StreamDemultiplexer(), sink)
    assert events == [
        TextLine(text="  ---END---"),
        TextLine(text="  normal"),
        ResponseComplete(),
    ]
