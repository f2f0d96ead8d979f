"""Audio files that are read from the cache or streamed from the server."""

from __future__ import annotations

import functools
import io
import logging
import os
import queue
import struct
import tempfile
import time
from typing import Any, BinaryIO, Callable, Iterable

from .range_set import Range, RangeSet
from .receive import audio_file_fetch, request_range
from .shared import (
    DOWNLOAD_TIMEOUT,
    INITIAL_DOWNLOAD_SIZE,
    INITIAL_PING_TIME_ESTIMATE,
    READ_AHEAD_DURING_PLAYBACK,
    READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS,
    AudioFileShared,
    DownloadStrategy,
    StreamLoaderCommand,
)

logger = logging.getLogger(__name__)

_FILE_SIZE_HEADER = 0x3
_FILE_SIZE = struct.Struct(">I")


def initial_download_length(bytes_per_second: int, play_from_beginning: bool) -> int:
    """Return the 4-byte aligned length of the first request for a file."""
    length = INITIAL_DOWNLOAD_SIZE
    if play_from_beginning:
        length += max(
            int(READ_AHEAD_DURING_PLAYBACK * bytes_per_second),
            int(INITIAL_PING_TIME_ESTIMATE * READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS * bytes_per_second),
        )
    if length % 4:
        length += 4 - length % 4
    return length


class StreamLoaderController:
    """Lets a reader steer the background loader of a file.

    For a cached file there is no loader: ``command_queue`` and ``shared``
    are ``None`` and every range counts as available.
    """

    def __init__(
        self,
        file_size: int,
        command_queue: queue.Queue | None = None,
        shared: AudioFileShared | None = None,
    ) -> None:
        self.file_size = file_size
        self.command_queue = command_queue
        self.shared = shared

    def __len__(self) -> int:
        return self.file_size

    def is_empty(self) -> bool:
        return self.file_size == 0

    def range_available(self, range_: Range) -> bool:
        if self.shared is None:
            return range_.length <= self.file_size - range_.start
        with self.shared.condition:
            downloaded = self.shared.download_status.downloaded
            return range_.length <= downloaded.contained_length_from_value(range_.start)

    def range_to_end_available(self) -> bool:
        if self.shared is None:
            return True
        read_position = min(self.shared.read_position, self.file_size)
        return self.range_available(Range(read_position, self.file_size - read_position))

    def ping_time(self) -> float:
        """Return the estimated ping time to the server in seconds."""
        if self.shared is None:
            return 0.0
        return self.shared.ping_time_ms / 1000.0

    def _send(self, command: StreamLoaderCommand) -> None:
        if self.command_queue is not None:
            self.command_queue.put(command)

    def fetch(self, range_: Range) -> None:
        """Ask the loader to download ``range_``."""
        self._send(StreamLoaderCommand.fetch(range_))

    def fetch_blocking(self, range_: Range) -> None:
        """Ask the loader to download ``range_`` and wait until it has arrived."""
        if range_.start >= self.file_size:
            range_ = Range(range_.start, 0)
        elif range_.end() > self.file_size:
            range_ = Range(range_.start, self.file_size - range_.start)

        self.fetch(range_)

        if self.shared is None:
            return
        shared = self.shared
        with shared.condition:
            status = shared.download_status
            while range_.length > status.downloaded.contained_length_from_value(range_.start):
                shared.condition.wait(DOWNLOAD_TIMEOUT)
                pending = status.downloaded.union(status.requested)
                if range_.length > pending.contained_length_from_value(range_.start):
                    # Neither downloaded nor requested, e.g. after a network error.
                    self.fetch(range_)

    def fetch_next(self, length: int) -> None:
        if self.shared is not None:
            self.fetch(Range(self.shared.read_position, length))

    def fetch_next_blocking(self, length: int) -> None:
        if self.shared is not None:
            self.fetch_blocking(Range(self.shared.read_position, length))

    def set_random_access_mode(self) -> None:
        self._send(StreamLoaderCommand.random_access_mode())

    def set_stream_mode(self) -> None:
        self._send(StreamLoaderCommand.stream_mode())

    def close(self) -> None:
        """Stop loading any more data for this file."""
        self._send(StreamLoaderCommand.close())


def _remove_quietly(path: str) -> bool:
    try:
        os.unlink(path)
    except FileNotFoundError:
        return True
    except OSError:
        return False
    return True


class AudioFileStreaming:
    """A file being downloaded in the background; reads wait for their data."""

    def __init__(
        self,
        read_file: BinaryIO,
        command_queue: queue.Queue,
        shared: AudioFileShared,
        temp_path: str | None = None,
    ) -> None:
        self._read_file = read_file
        self.position = 0
        self.command_queue = command_queue
        self.shared = shared
        self._temp_path = temp_path

    @classmethod
    def open(
        cls,
        session,
        initial_data: Iterable[bytes],
        initial_data_length: int,
        initial_request_sent_time: float,
        headers: Iterable[tuple[int, bytes]],
        file_id,
        on_complete: Callable[[BinaryIO], Any],
        streaming_data_rate: int,
    ) -> AudioFileStreaming:
        """Wait for the file size header, then start the background loader."""
        for header_id, data in headers:
            if header_id == _FILE_SIZE_HEADER:
                break
        else:
            raise ValueError("the server sent no file size header")
        size = _FILE_SIZE.unpack_from(bytes(data))[0] * 4

        shared = AudioFileShared(file_id, size, streaming_data_rate)

        write_file = tempfile.NamedTemporaryFile(mode="w+b", buffering=0, delete=False)
        write_file.truncate(size)
        write_file.seek(0)
        read_file = open(write_file.name, "rb", buffering=0)
        temp_path = None if _remove_quietly(write_file.name) else write_file.name

        command_queue: queue.Queue = queue.Queue()
        session.spawn(
            functools.partial(
                audio_file_fetch,
                session,
                shared,
                initial_data,
                initial_request_sent_time,
                initial_data_length,
                write_file,
                command_queue,
                on_complete,
            )
        )
        return cls(read_file, command_queue, shared, temp_path)

    def _read_once(self, size: int) -> bytes:
        shared = self.shared
        offset = self.position
        if offset >= shared.file_size:
            return b""

        length = min(size, shared.file_size - offset)
        length_to_request = shared.read_ahead_length(length, offset)
        ranges_to_request = RangeSet([Range(offset, length_to_request)])

        with shared.condition:
            status = shared.download_status
            ranges_to_request.subtract_range_set(status.downloaded)
            ranges_to_request.subtract_range_set(status.requested)
            for range_ in ranges_to_request:
                self.command_queue.put(StreamLoaderCommand.fetch(range_))

            if length == 0:
                return b""

            message_printed = False
            while offset not in status.downloaded:
                if shared.download_strategy is DownloadStrategy.STREAMING and not message_printed:
                    logger.debug(
                        "Stream waiting for download of file position %d. "
                        "Downloaded ranges: %s. Pending ranges: %s",
                        offset,
                        status.downloaded,
                        status.requested.minus(status.downloaded),
                    )
                    message_printed = True
                shared.condition.wait(DOWNLOAD_TIMEOUT)
            available_length = status.downloaded.contained_length_from_value(offset)

        self._read_file.seek(offset)
        data = self._read_file.read(min(length, available_length)) or b""

        if message_printed:
            logger.debug(
                "Read at position %d completed. %d bytes returned, %d bytes were requested.",
                offset,
                len(data),
                size,
            )

        self.position = offset + len(data)
        shared.read_position = self.position
        return data

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` contiguous bytes; a negative size reads to the end."""
        if size is not None and size >= 0:
            return self._read_once(size)
        parts = []
        while True:
            chunk = self._read_once(max(self.shared.file_size - self.position, 0))
            if not chunk:
                return b"".join(parts)
            parts.append(chunk)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self.position = self._read_file.seek(offset, whence)
        self.shared.read_position = self.position
        return self.position

    def tell(self) -> int:
        return self.position

    def close(self) -> None:
        self._read_file.close()
        if self._temp_path is not None and _remove_quietly(self._temp_path):
            self._temp_path = None


class AudioFile:
    """An audio file read either from the cache or streamed from the server."""

    def __init__(self, source) -> None:
        self._source = source

    @classmethod
    def open(cls, session, file_id, bytes_per_second: int, play_from_beginning: bool) -> AudioFile:
        cache = session.cache()
        if cache is not None:
            cached = cache.file(file_id)
            if cached is not None:
                logger.debug("File %s already in cache", file_id)
                return cls(cached)

        logger.debug("Downloading file %s", file_id)
        initial_data_length = initial_download_length(bytes_per_second, play_from_beginning)
        headers, data = request_range(session, file_id, 0, initial_data_length).split()

        def on_complete(file: BinaryIO) -> None:
            complete_cache = session.cache()
            if complete_cache is not None:
                logger.debug("File %s complete, saving to cache", file_id)
                complete_cache.save_file(file_id, file)
            else:
                logger.debug("File %s complete", file_id)

        streaming = AudioFileStreaming.open(
            session,
            data,
            initial_data_length,
            time.monotonic(),
            headers,
            file_id,
            on_complete,
            bytes_per_second,
        )
        return cls(streaming)

    def get_stream_loader_controller(self) -> StreamLoaderController:
        source = self._source
        if isinstance(source, AudioFileStreaming):
            return StreamLoaderController(source.shared.file_size, source.command_queue, source.shared)
        try:
            size = os.fstat(source.fileno()).st_size
        except (AttributeError, OSError, io.UnsupportedOperation):
            position = source.tell()
            size = source.seek(0, io.SEEK_END)
            source.seek(position)
        return StreamLoaderController(size)

    def is_cached(self) -> bool:
        return not isinstance(self._source, AudioFileStreaming)

    def read(self, size: int = -1) -> bytes:
        return self._source.read(size)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        return self._source.seek(offset, whence)

    def tell(self) -> int:
        return self._source.tell()

    def close(self) -> None:
        if isinstance(self._source, AudioFileStreaming):
            self.get_stream_loader_controller().close()
        self._source.close()

    def __enter__(self) -> AudioFile:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()