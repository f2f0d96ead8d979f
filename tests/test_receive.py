import io
import queue
import struct
import time

import pytest

from audiostream.range_set import Range, RangeSet
from audiostream.receive import (
    AudioFileFetch,
    PartialFileData,
    ResponseTime,
    audio_file_fetch,
    build_range_request,
    receive_data,
    request_range,
)
from audiostream.shared import (
    MAXIMUM_ASSUMED_PING_TIME,
    MINIMUM_DOWNLOAD_SIZE,
    AudioFileShared,
    DownloadStrategy,
    StreamLoaderCommand,
)

FILE_ID = bytes(range(20))


class FakeChannel:
    def __init__(self):
        self.chunks = []

    def _data(self):
        yield from self.chunks

    def split(self):
        return iter(()), self._data()


class FakeChannelManager:
    def __init__(self, rate=0):
        self.channels = []
        self.rate = rate

    def allocate(self):
        channel = FakeChannel()
        self.channels.append(channel)
        return len(self.channels) - 1, channel

    def get_download_rate_estimate(self):
        return self.rate


class FakeSession:
    def __init__(self, content=b"", run_spawned=True, rate=0):
        self.content = content
        self.run_spawned = run_spawned
        self.manager = FakeChannelManager(rate)
        self.packets = []
        self.pending = []

    def channel(self):
        return self.manager

    def send_packet(self, command, payload):
        self.packets.append((command, payload))
        if command == 0x8:
            (channel_id,) = struct.unpack(">H", payload[:2])
            start, end = struct.unpack(">II", payload[-8:])
            self.manager.channels[channel_id].chunks = [self.content[start * 4 : end * 4]]

    def spawn(self, job):
        if self.run_spawned:
            job()
        else:
            self.pending.append(job)


def drain(q):
    items = []
    while not q.empty():
        items.append(q.get_nowait())
    return items


def _failing_chunks():
    yield b"ab"
    raise OSError("channel failed")


def test_build_range_request_layout():
    payload = build_range_request(5, FILE_ID, 0, 16)
    expected = (
        b"\x00\x05\x00\x01\x00\x00"
        + b"\x00\x00\x00\x00"
        + b"\x00\x00\x9c\x40"
        + b"\x00\x02\x00\x00"
        + FILE_ID
        + (0).to_bytes(4, "big")
        + (4).to_bytes(4, "big")
    )
    assert payload == expected


@pytest.mark.parametrize("offset,length", [(2, 16), (0, 6)])
def test_build_range_request_rejects_unaligned(offset, length):
    with pytest.raises(ValueError):
        build_range_request(0, FILE_ID, offset, length)


def test_request_range_sends_packet_and_returns_channel():
    session = FakeSession(content=bytes(range(32)))
    channel = request_range(session, FILE_ID, 8, 8)
    command, payload = session.packets[0]
    assert command == 0x8
    assert payload == build_range_request(0, FILE_ID, 8, 8)
    _, data = channel.split()
    assert b"".join(data) == bytes(range(8, 16))


def test_request_range_rejects_unaligned_before_sending():
    session = FakeSession()
    with pytest.raises(ValueError):
        request_range(session, FILE_ID, 1, 4)
    assert session.packets == []


def test_receive_data_forwards_chunks():
    shared = AudioFileShared(FILE_ID, 100, 1000)
    q = queue.Queue()
    receive_data(shared, q, [b"ab", b"cd"], 8, 4, time.monotonic())
    items = drain(q)
    assert isinstance(items[0], ResponseTime)
    assert items[1:] == [PartialFileData(8, b"ab"), PartialFileData(10, b"cd")]
    assert shared.number_of_open_requests == 0


def test_receive_data_caps_response_time():
    shared = AudioFileShared(FILE_ID, 100, 1000)
    q = queue.Queue()
    receive_data(shared, q, [b"abcd"], 0, 4, time.monotonic() - 10)
    assert drain(q)[0] == ResponseTime(MAXIMUM_ASSUMED_PING_TIME)


def test_receive_data_short_response_unrequests_missing_part():
    shared = AudioFileShared(FILE_ID, 100, 1000)
    shared.download_status.requested.add_range(Range(0, 8))
    q = queue.Queue()
    receive_data(shared, q, [b"abcd"], 0, 8, time.monotonic())
    assert shared.download_status.requested == RangeSet([Range(0, 4)])


def test_receive_data_channel_error_unrequests_missing_part():
    shared = AudioFileShared(FILE_ID, 100, 1000)
    shared.download_status.requested.add_range(Range(0, 8))
    q = queue.Queue()
    receive_data(shared, q, _failing_chunks(), 0, 8, time.monotonic())
    assert shared.download_status.requested == RangeSet([Range(0, 2)])
    assert shared.number_of_open_requests == 0


def make_fetch(file_size, session=None, output=None):
    shared = AudioFileShared(FILE_ID, file_size, 1000)
    completed = []
    fetch = AudioFileFetch(
        session or FakeSession(run_spawned=False),
        shared,
        output if output is not None else io.BytesIO(bytes(file_size)),
        queue.Queue(),
        completed.append,
    )
    return fetch, shared, completed


def test_ping_time_is_median_of_recent_responses():
    fetch, shared, _ = make_fetch(100)
    assert fetch.handle_file_data(ResponseTime(0.1))
    assert shared.ping_time_ms == 100
    fetch.handle_file_data(ResponseTime(0.3))
    assert shared.ping_time_ms == 200
    fetch.handle_file_data(ResponseTime(0.05))
    assert shared.ping_time_ms == 100


def test_handle_file_data_writes_and_completes():
    fetch, shared, completed = make_fetch(8)
    assert fetch.handle_file_data(PartialFileData(4, b"wxyz")) is True
    assert shared.download_status.downloaded == RangeSet([Range(4, 4)])
    assert completed == []
    assert fetch.handle_file_data(PartialFileData(0, b"abcd")) is False
    assert len(completed) == 1
    assert completed[0].tell() == 0
    assert completed[0].read() == b"abcdwxyz"


def test_handle_file_data_rejects_unknown_items():
    fetch, _, _ = make_fetch(8)
    with pytest.raises(TypeError):
        fetch.handle_file_data("junk")


def test_finish_twice_raises():
    fetch, _, completed = make_fetch(8)
    fetch.finish()
    with pytest.raises(RuntimeError):
        fetch.finish()
    assert len(completed) == 1


def test_download_range_aligns_and_expands():
    fetch, shared, _ = make_fetch(100_000)
    fetch.download_range(5, 10)
    requested = list(shared.download_status.requested)
    assert len(requested) == 1
    range_ = requested[0]
    assert range_.start % 4 == 0 and range_.length % 4 == 0
    assert range_.start <= 5 and range_.end() >= 15
    assert range_.length >= MINIMUM_DOWNLOAD_SIZE


def test_download_range_clips_to_file_size():
    fetch, shared, _ = make_fetch(100)
    fetch.download_range(0, 10)
    assert shared.download_status.requested == RangeSet([Range(0, 100)])


def test_download_range_past_end_does_nothing():
    session = FakeSession(run_spawned=False)
    fetch, shared, _ = make_fetch(100, session=session)
    fetch.download_range(100, 10)
    assert shared.download_status.requested.is_empty()
    assert session.packets == []


def test_download_range_skips_known_data():
    session = FakeSession(run_spawned=False)
    fetch, shared, _ = make_fetch(100, session=session)
    shared.download_status.downloaded.add_range(Range(0, 40))
    shared.download_status.requested.add_range(Range(60, 40))
    fetch.download_range(0, 100)
    assert len(session.packets) == 1
    assert shared.download_status.requested == RangeSet([Range(40, 60)])


def test_stream_loader_commands_switch_strategy_and_close():
    fetch, shared, _ = make_fetch(100)
    assert fetch.handle_stream_loader_command(StreamLoaderCommand.stream_mode())
    assert shared.download_strategy is DownloadStrategy.STREAMING
    assert fetch.handle_stream_loader_command(StreamLoaderCommand.random_access_mode())
    assert shared.download_strategy is DownloadStrategy.RANDOM_ACCESS
    assert fetch.handle_stream_loader_command(StreamLoaderCommand.close()) is False


def test_prefetch_in_streaming_mode():
    session = FakeSession(run_spawned=False)
    shared = AudioFileShared(FILE_ID, 200_000, 10_000)
    fetch = AudioFileFetch(session, shared, io.BytesIO(), queue.Queue(), lambda f: None)
    shared.download_strategy = DownloadStrategy.STREAMING
    shared.ping_time_ms = 1000
    fetch.prefetch_if_streaming()
    assert shared.download_status.requested == RangeSet([Range(0, 40_000)])


def test_no_prefetch_in_random_access_mode():
    session = FakeSession(run_spawned=False)
    shared = AudioFileShared(FILE_ID, 200_000, 10_000)
    fetch = AudioFileFetch(session, shared, io.BytesIO(), queue.Queue(), lambda f: None)
    shared.ping_time_ms = 1000
    fetch.prefetch_if_streaming()
    assert shared.download_status.requested.is_empty()
    assert session.packets == []


def test_audio_file_fetch_downloads_whole_file():
    content = bytes(range(64))
    session = FakeSession(content=content)
    shared = AudioFileShared(FILE_ID, len(content), 1000)
    _, data = request_range(session, FILE_ID, 0, len(content)).split()
    completed = []
    audio_file_fetch(
        session, shared, data, time.monotonic(), len(content),
        io.BytesIO(bytes(len(content))), queue.Queue(), completed.append,
    )
    assert len(completed) == 1
    assert completed[0].getvalue() == content
    assert shared.download_status.downloaded == RangeSet([Range(0, len(content))])


def test_audio_file_fetch_serves_fetch_commands():
    content = bytes(i % 251 for i in range(40_000))
    session = FakeSession(content=content)
    shared = AudioFileShared(FILE_ID, len(content), 1000)
    initial = MINIMUM_DOWNLOAD_SIZE
    _, data = request_range(session, FILE_ID, 0, initial).split()
    commands = queue.Queue()
    commands.put(StreamLoaderCommand.fetch(Range(initial, len(content) - initial)))
    completed = []
    audio_file_fetch(
        session, shared, data, time.monotonic(), initial,
        io.BytesIO(bytes(len(content))), commands, completed.append,
    )
    assert len(completed) == 1
    assert completed[0].getvalue() == content


def test_audio_file_fetch_stops_on_close():
    session = FakeSession()
    shared = AudioFileShared(FILE_ID, 64, 1000)
    commands = queue.Queue()
    commands.put(StreamLoaderCommand.close())
    completed = []
    audio_file_fetch(
        session, shared, iter(()), time.monotonic(), 16,
        io.BytesIO(bytes(64)), commands, completed.append,
    )
    assert completed == []
    assert shared.download_status.requested.is_empty()
    assert shared.number_of_open_requests == 0