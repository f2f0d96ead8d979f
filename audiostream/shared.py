"""State shared between a streaming audio file and its background loader."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field

from .range_set import Range, RangeSet

#: Smallest block requested from the server in one request, in bytes.
MINIMUM_DOWNLOAD_SIZE = 1024 * 16

#: Amount of data requested when a file is first opened, in bytes.
INITIAL_DOWNLOAD_SIZE = 1024 * 16

#: Ping time assumed before one has been measured, in seconds.
INITIAL_PING_TIME_ESTIMATE = 0.5

#: Measured ping times are capped at this value, in seconds.
MAXIMUM_ASSUMED_PING_TIME = 1.5

#: Seconds of audio that must be present before playback starts.
READ_AHEAD_BEFORE_PLAYBACK = 1.0

#: Same as READ_AHEAD_BEFORE_PLAYBACK, as a multiple of the ping time.
READ_AHEAD_BEFORE_PLAYBACK_ROUNDTRIPS = 2.0

#: Seconds of audio requested ahead of the read position while playing.
READ_AHEAD_DURING_PLAYBACK = 5.0

#: Same as READ_AHEAD_DURING_PLAYBACK, as a multiple of the ping time.
READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS = 10.0

#: Prefetch while pending bytes < factor * ping time * nominal data rate.
PREFETCH_THRESHOLD_FACTOR = 4.0

#: Prefetch while pending bytes < factor * ping time * measured download rate.
FAST_PREFETCH_THRESHOLD_FACTOR = 1.5

#: Prefetch requests are only sent while fewer than this many are open.
MAX_PREFETCH_REQUESTS = 4

#: How long to wait for download progress before checking again, in seconds.
DOWNLOAD_TIMEOUT = 1.0


class DownloadStrategy(enum.Enum):
    RANDOM_ACCESS = "random_access"
    STREAMING = "streaming"


class CommandKind(enum.Enum):
    FETCH = "fetch"
    RANDOM_ACCESS_MODE = "random_access_mode"
    STREAM_MODE = "stream_mode"
    CLOSE = "close"


@dataclass(frozen=True)
class StreamLoaderCommand:
    """A request sent to the background loader of a streaming file."""

    kind: CommandKind
    range_: Range | None = None

    @classmethod
    def fetch(cls, range_: Range) -> StreamLoaderCommand:
        if not isinstance(range_, Range):
            raise TypeError("a fetch command needs a Range")
        return cls(CommandKind.FETCH, range_)

    @classmethod
    def random_access_mode(cls) -> StreamLoaderCommand:
        return cls(CommandKind.RANDOM_ACCESS_MODE)

    @classmethod
    def stream_mode(cls) -> StreamLoaderCommand:
        return cls(CommandKind.STREAM_MODE)

    @classmethod
    def close(cls) -> StreamLoaderCommand:
        return cls(CommandKind.CLOSE)


@dataclass
class DownloadStatus:
    """Ranges that have been requested from and received from the server."""

    requested: RangeSet = field(default_factory=RangeSet)
    downloaded: RangeSet = field(default_factory=RangeSet)


class AudioFileShared:
    """Download state of one file.

    ``condition`` guards ``download_status`` and ``number_of_open_requests``
    and is notified whenever downloaded data arrives or a request fails.
    """

    def __init__(self, file_id, file_size: int, stream_data_rate: int) -> None:
        if file_size < 0:
            raise ValueError("file size must be non-negative")
        if stream_data_rate < 0:
            raise ValueError("stream data rate must be non-negative")
        self.file_id = file_id
        self.file_size = file_size
        self.stream_data_rate = stream_data_rate
        self.condition = threading.Condition()
        self.download_status = DownloadStatus()
        # Random access until someone asks for streaming.
        self.download_strategy = DownloadStrategy.RANDOM_ACCESS
        self.number_of_open_requests = 0
        self.ping_time_ms = 0
        self.read_position = 0

    def read_ahead_length(self, length: int, offset: int) -> int:
        """Return how many bytes to request for a read of ``length`` at ``offset``."""
        if self.download_strategy is DownloadStrategy.RANDOM_ACCESS:
            return length
        ping_time_seconds = self.ping_time_ms / 1000.0
        read_ahead = max(
            int(READ_AHEAD_DURING_PLAYBACK * self.stream_data_rate),
            int(READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS * ping_time_seconds * self.stream_data_rate),
        )
        return min(length + read_ahead, self.file_size - offset)