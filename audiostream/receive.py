"""Background loading of a streaming audio file from the server.

The loader talks to a *session* object that provides:

* ``session.channel().allocate()`` returning ``(channel_id, channel)``, where
  ``channel.split()`` returns ``(headers, data)`` and ``data`` is an iterable
  of received byte chunks that raises if the channel fails;
* ``session.channel().get_download_rate_estimate()`` returning bytes/second;
* ``session.send_packet(command, payload)`` to send a packet;
* ``session.spawn(job)`` to run a zero-argument callable in the background.
"""

from __future__ import annotations

import functools
import logging
import queue
import struct
import time
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Iterable

from .range_set import Range, RangeSet
from .shared import (
    FAST_PREFETCH_THRESHOLD_FACTOR,
    MAX_PREFETCH_REQUESTS,
    MAXIMUM_ASSUMED_PING_TIME,
    MINIMUM_DOWNLOAD_SIZE,
    PREFETCH_THRESHOLD_FACTOR,
    AudioFileShared,
    CommandKind,
    DownloadStrategy,
    StreamLoaderCommand,
)

logger = logging.getLogger(__name__)

_STREAM_CHUNK_COMMAND = 0x8
_REQUEST_HEADER = struct.Struct(">HBBHIII")
_REQUEST_RANGE = struct.Struct(">II")


@dataclass(frozen=True)
class ResponseTime:
    """Time in seconds between sending a request and its first data."""

    duration: float


@dataclass(frozen=True)
class PartialFileData:
    """A chunk of file content received at ``offset``."""

    offset: int
    data: bytes


def _check_alignment(offset: int, length: int) -> None:
    if offset % 4 != 0:
        raise ValueError("Range request start positions must be aligned by 4 bytes.")
    if length % 4 != 0:
        raise ValueError("Range request range lengths must be aligned by 4 bytes.")


def build_range_request(channel_id: int, file_id, offset: int, length: int) -> bytes:
    """Return the payload of a request for ``length`` bytes at ``offset``."""
    _check_alignment(offset, length)
    start = offset // 4
    end = (offset + length) // 4
    header = _REQUEST_HEADER.pack(channel_id, 0, 1, 0x0000, 0x00000000, 0x00009C40, 0x00020000)
    return header + bytes(file_id) + _REQUEST_RANGE.pack(start, end)


def request_range(session, file_id, offset: int, length: int):
    """Send a range request on a fresh channel and return that channel."""
    _check_alignment(offset, length)
    channel_id, channel = session.channel().allocate()
    session.send_packet(_STREAM_CHUNK_COMMAND, build_range_request(channel_id, file_id, offset, length))
    return channel


def receive_data(
    shared: AudioFileShared,
    file_data_queue: queue.Queue,
    data_chunks: Iterable[bytes],
    initial_data_offset: int,
    initial_request_length: int,
    request_sent_time: float,
) -> None:
    """Forward the chunks of one request to ``file_data_queue``.

    ``request_sent_time`` is a ``time.monotonic()`` value. Whatever part of
    the request never arrives is dropped from the requested ranges again.
    """
    data_offset = initial_data_offset
    request_length = initial_request_length

    with shared.condition:
        old_number_of_requests = shared.number_of_open_requests
        shared.number_of_open_requests += 1
    measure_ping_time = old_number_of_requests == 0

    failed = False
    chunks = iter(data_chunks)
    while True:
        try:
            chunk = next(chunks)
        except StopIteration:
            break
        except Exception:  # the channel reports its failure by raising
            failed = True
            break

        if measure_ping_time:
            duration = min(time.monotonic() - request_sent_time, MAXIMUM_ASSUMED_PING_TIME)
            file_data_queue.put(ResponseTime(duration))
            measure_ping_time = False

        data = bytes(chunk)
        file_data_queue.put(PartialFileData(data_offset, data))
        data_offset += len(data)
        if request_length < len(data):
            logger.warning(
                "Data receiver for range %d (+%d) received more data from server than requested.",
                initial_data_offset,
                initial_request_length,
            )
            request_length = 0
        else:
            request_length -= len(data)

        if request_length == 0:
            break

    with shared.condition:
        if request_length > 0:
            shared.download_status.requested.subtract_range(Range(data_offset, request_length))
            shared.condition.notify_all()
        shared.number_of_open_requests -= 1

    if failed:
        logger.warning(
            "Error from channel for data receiver for range %d (+%d).",
            initial_data_offset,
            initial_request_length,
        )
    elif request_length > 0:
        logger.warning(
            "Data receiver for range %d (+%d) received less data from server than requested.",
            initial_data_offset,
            initial_request_length,
        )


class AudioFileFetch:
    """Writes received data to the output file and issues new requests."""

    def __init__(
        self,
        session,
        shared: AudioFileShared,
        output: BinaryIO,
        file_data_queue: queue.Queue,
        on_complete: Callable[[BinaryIO], Any],
    ) -> None:
        self.session = session
        self.shared = shared
        self.output: BinaryIO | None = output
        self.file_data_queue = file_data_queue
        self.on_complete: Callable[[BinaryIO], Any] | None = on_complete
        self.network_response_times: list[float] = []

    def download_range(self, offset: int, length: int) -> None:
        """Request the parts of the given range that are neither downloaded nor requested."""
        file_size = self.shared.file_size
        length = max(length, MINIMUM_DOWNLOAD_SIZE)

        if offset >= file_size or length == 0:
            return
        if offset + length > file_size:
            length = file_size - offset

        # Align to 4 bytes as the protocol demands.
        misalignment = offset % 4
        if misalignment:
            length += misalignment
            offset -= misalignment
        if length % 4:
            length += 4 - length % 4

        ranges_to_request = RangeSet([Range(offset, length)])

        with self.shared.condition:
            status = self.shared.download_status
            ranges_to_request.subtract_range_set(status.downloaded)
            ranges_to_request.subtract_range_set(status.requested)

            for range_ in ranges_to_request:
                channel = request_range(self.session, self.shared.file_id, range_.start, range_.length)
                _headers, data = channel.split()
                status.requested.add_range(range_)
                self.session.spawn(
                    functools.partial(
                        receive_data,
                        self.shared,
                        self.file_data_queue,
                        data,
                        range_.start,
                        range_.length,
                        time.monotonic(),
                    )
                )

    def pre_fetch_more_data(self, byte_count: int, max_requests_to_send: int) -> None:
        """Request up to ``byte_count`` missing bytes in at most the given number of requests."""
        bytes_to_go = byte_count
        requests_to_go = max_requests_to_send
        file_size = self.shared.file_size

        while bytes_to_go > 0 and requests_to_go > 0:
            missing_data = RangeSet([Range(0, file_size)])
            with self.shared.condition:
                missing_data.subtract_range_set(self.shared.download_status.downloaded)
                missing_data.subtract_range_set(self.shared.download_status.requested)

            # Prefer data after the current read position.
            read_position = min(self.shared.read_position, file_size)
            tail_end = RangeSet([Range(read_position, file_size - read_position)])
            tail_end = tail_end.intersection(missing_data)

            if not tail_end.is_empty():
                range_ = tail_end[0]
            elif not missing_data.is_empty():
                range_ = missing_data[0]
            else:
                return

            length = min(range_.length, bytes_to_go)
            self.download_range(range_.start, length)
            requests_to_go -= 1
            bytes_to_go -= length

    def handle_file_data(self, data) -> bool:
        """Process one received item; return False once the file is complete."""
        if isinstance(data, ResponseTime):
            # Keep at most three response times and take their median.
            while len(self.network_response_times) >= 3:
                self.network_response_times.pop(0)
            self.network_response_times.append(data.duration)

            times = sorted(self.network_response_times)
            if len(times) == 2:
                ping_time = (times[0] + times[1]) / 2
            else:
                ping_time = times[len(times) // 2]

            self.shared.ping_time_ms = round(ping_time * 1_000_000) // 1000
            return True

        if isinstance(data, PartialFileData):
            if self.output is None:
                raise RuntimeError("the output file has already been handed over")
            self.output.seek(data.offset)
            self.output.write(data.data)

            with self.shared.condition:
                downloaded = self.shared.download_status.downloaded
                downloaded.add_range(Range(data.offset, len(data.data)))
                self.shared.condition.notify_all()
                full = downloaded.contained_length_from_value(0) >= self.shared.file_size

            if full:
                self.finish()
                return False
            return True

        raise TypeError(f"unexpected file data: {data!r}")

    def handle_stream_loader_command(self, command: StreamLoaderCommand) -> bool:
        """Carry out a loader command; return False if loading should stop."""
        if command.kind is CommandKind.FETCH:
            self.download_range(command.range_.start, command.range_.length)
        elif command.kind is CommandKind.RANDOM_ACCESS_MODE:
            with self.shared.condition:
                self.shared.download_strategy = DownloadStrategy.RANDOM_ACCESS
        elif command.kind is CommandKind.STREAM_MODE:
            with self.shared.condition:
                self.shared.download_strategy = DownloadStrategy.STREAMING
        elif command.kind is CommandKind.CLOSE:
            return False
        return True

    def finish(self) -> None:
        """Rewind the complete output file and hand it to the completion callback."""
        if self.output is None or self.on_complete is None:
            raise RuntimeError("the download has already been finished")
        output, on_complete = self.output, self.on_complete
        self.output = None
        self.on_complete = None
        output.seek(0)
        on_complete(output)

    def prefetch_if_streaming(self) -> None:
        """In streaming mode, keep enough data pending to cover the ping time."""
        if self.shared.download_strategy is not DownloadStrategy.STREAMING:
            return

        with self.shared.condition:
            number_of_open_requests = self.shared.number_of_open_requests
        if number_of_open_requests >= MAX_PREFETCH_REQUESTS:
            return
        max_requests_to_send = MAX_PREFETCH_REQUESTS - number_of_open_requests

        with self.shared.condition:
            status = self.shared.download_status
            bytes_pending = len(status.requested.minus(status.downloaded))

        ping_time_seconds = self.shared.ping_time_ms / 1000.0
        download_rate = self.session.channel().get_download_rate_estimate()

        desired_pending_bytes = max(
            int(PREFETCH_THRESHOLD_FACTOR * ping_time_seconds * self.shared.stream_data_rate),
            int(FAST_PREFETCH_THRESHOLD_FACTOR * ping_time_seconds * download_rate),
        )

        if bytes_pending < desired_pending_bytes:
            self.pre_fetch_more_data(desired_pending_bytes - bytes_pending, max_requests_to_send)


def audio_file_fetch(
    session,
    shared: AudioFileShared,
    initial_data: Iterable[bytes],
    initial_request_sent_time: float,
    initial_data_length: int,
    output: BinaryIO,
    command_queue: queue.Queue,
    on_complete: Callable[[BinaryIO], Any],
) -> None:
    """Run the loader until the file is complete, closed, or ``None`` is queued.

    Received data is delivered through ``command_queue`` alongside the
    loader commands, so a single queue drives the loop.
    """
    with shared.condition:
        shared.download_status.requested.add_range(Range(0, initial_data_length))

    session.spawn(
        functools.partial(
            receive_data,
            shared,
            command_queue,
            initial_data,
            0,
            initial_data_length,
            initial_request_sent_time,
        )
    )

    fetch = AudioFileFetch(session, shared, output, command_queue, on_complete)

    while True:
        item = command_queue.get()
        if item is None:
            break
        if isinstance(item, StreamLoaderCommand):
            keep_going = fetch.handle_stream_loader_command(item)
        else:
            keep_going = fetch.handle_file_data(item)
        if not keep_going:
            break
        fetch.prefetch_if_streaming()