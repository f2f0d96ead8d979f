import pytest

from audiostream.range_set import Range
from audiostream.shared import (
    READ_AHEAD_DURING_PLAYBACK,
    READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS,
    AudioFileShared,
    CommandKind,
    DownloadStrategy,
    StreamLoaderCommand,
)

FILE_ID = b"\x00" * 20


def test_fetch_command_carries_range():
    command = StreamLoaderCommand.fetch(Range(4, 8))
    assert command.kind is CommandKind.FETCH
    assert command.range_ == Range(4, 8)


def test_fetch_command_requires_range():
    with pytest.raises(TypeError):
        StreamLoaderCommand.fetch((4, 8))


@pytest.mark.parametrize(
    "factory, kind",
    [
        (StreamLoaderCommand.random_access_mode, CommandKind.RANDOM_ACCESS_MODE),
        (StreamLoaderCommand.stream_mode, CommandKind.STREAM_MODE),
        (StreamLoaderCommand.close, CommandKind.CLOSE),
    ],
)
def test_mode_commands_have_no_range(factory, kind):
    command = factory()
    assert command.kind is kind
    assert command.range_ is None


def test_initial_shared_state():
    shared = AudioFileShared(FILE_ID, 1000, 200)
    assert shared.file_size == 1000
    assert shared.download_strategy is DownloadStrategy.RANDOM_ACCESS
    assert shared.download_status.requested.is_empty()
    assert shared.download_status.downloaded.is_empty()
    assert shared.number_of_open_requests == 0
    assert shared.ping_time_ms == 0
    assert shared.read_position == 0


def test_download_status_is_not_shared_between_files():
    first = AudioFileShared(FILE_ID, 100, 10)
    second = AudioFileShared(FILE_ID, 100, 10)
    first.download_status.downloaded.add_range(Range(0, 10))
    assert second.download_status.downloaded.is_empty()


def test_negative_file_size_is_rejected():
    with pytest.raises(ValueError):
        AudioFileShared(FILE_ID, -1, 10)


def test_random_access_requests_exact_length():
    shared = AudioFileShared(FILE_ID, 10**6, 1000)
    assert shared.read_ahead_length(123, 0) == 123


def test_streaming_reads_ahead_by_playback_time():
    rate = 1000
    shared = AudioFileShared(FILE_ID, 10**6, rate)
    shared.download_strategy = DownloadStrategy.STREAMING
    result = shared.read_ahead_length(100, 0)
    assert result == 100 + int(READ_AHEAD_DURING_PLAYBACK * rate)


def test_streaming_reads_ahead_by_roundtrips_when_ping_is_high():
    rate = 1000
    shared = AudioFileShared(FILE_ID, 10**6, rate)
    shared.download_strategy = DownloadStrategy.STREAMING
    shared.ping_time_ms = 2000
    result = shared.read_ahead_length(100, 0)
    assert result == 100 + int(READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS * 2.0 * rate)
    assert result > 100 + int(READ_AHEAD_DURING_PLAYBACK * rate)


def test_streaming_read_ahead_is_capped_at_file_end():
    shared = AudioFileShared(FILE_ID, 5000, 1000)
    shared.download_strategy = DownloadStrategy.STREAMING
    assert shared.read_ahead_length(100, 4000) == 5000 - 4000