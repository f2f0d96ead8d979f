# audiostream

Building blocks for playing audio files that are downloaded in byte ranges
while they are being read, and for decrypting such files on the fly.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `audiostream.range_set`

`Range(start, length)` is a frozen half-open interval of offsets; `end()`
returns `start + length`. `RangeSet` is a sorted set of disjoint ranges in
which overlapping or touching ranges are merged:

- `add_range`, `add_range_set`, `subtract_range`, `subtract_range_set`
  change the set in place;
- `union`, `minus`, `intersection` and `copy` return new sets;
- `len(s)` is the number of offsets covered, `value in s` tests one offset,
  `s[i]` and iteration give the ranges in order;
- `contained_length_from_value(value)` tells how many consecutive offsets
  from `value` on are in the set, and `contains_range_set(other)` whether
  every range of `other` is covered.

```python
from audiostream.range_set import Range, RangeSet

downloaded = RangeSet()
downloaded.add_range(Range(0, 100))
downloaded.add_range(Range(200, 50))

print(downloaded)                                   # ([0, 99][200, 249])
print(50 in downloaded)                             # True
print(downloaded.contained_length_from_value(20))   # 80

missing = RangeSet([Range(0, 300)]).minus(downloaded)
print(missing)                                      # ([100, 199][250, 299])
```

### `audiostream.decrypt`

`AudioDecrypt(key, reader)` is a readable `io.RawIOBase` stream that
decrypts the bytes of `reader` with AES-128 in counter mode, using a fixed
initial counter. The key must be 16 bytes; anything else raises
`ValueError`. Seeking seeks the underlying reader and moves the key stream to
the new position, so random access works whenever the reader can seek.

```python
import io
from audiostream.decrypt import AudioDecrypt

audio_key = bytes(16)               # the file's 16-byte audio key
encrypted = io.BytesIO(b"...")      # the encrypted file contents

with AudioDecrypt(audio_key, encrypted) as stream:
    stream.seek(4096)
    chunk = stream.read(1024)
```

### `audiostream.shared`

State shared between a reader and the background loader of one file:
`AudioFileShared` (file id, size, nominal data rate, a `threading.Condition`,
the `DownloadStatus` of requested and downloaded ranges, the current
`DownloadStrategy`, open request count, ping time and read position), and the
`StreamLoaderCommand` messages (`fetch`, `random_access_mode`, `stream_mode`,
`close`). The tuning constants (minimum and initial download sizes,
read-ahead times, prefetch factors, download timeout) live here too.

### `audiostream.receive`

The download side:

- `build_range_request(channel_id, file_id, offset, length)` builds the
  request payload; offset and length must be multiples of 4, otherwise
  `ValueError` is raised.
- `request_range(session, file_id, offset, length)` allocates a channel,
  sends the request as packet `0x8` and returns the channel.
- `receive_data(...)` moves the chunks of one request into a queue as
  `ResponseTime` and `PartialFileData` items, and drops whatever never
  arrived from the requested ranges again.
- `AudioFileFetch` writes received data to the output file, requests missing
  ranges (at least 16 KiB, aligned to 4 bytes), keeps a median of the last
  three response times as the ping time, and in streaming mode prefetches
  ahead of the read position.
- `audio_file_fetch(...)` runs that loader from a single queue until the file
  is complete, a `close` command arrives, or `None` is queued. A complete file
  is rewound and handed to the completion callback.

### `audiostream.fetch`

The reading side:

- `AudioFile.open(session, file_id, bytes_per_second, play_from_beginning)`
  returns the cached file if the session's cache has it, otherwise sends the
  first range request (see `initial_download_length`) and starts streaming.
  `AudioFile` offers `read`, `seek`, `tell`, `close`, `is_cached()`,
  `get_stream_loader_controller()` and works as a context manager.
- `AudioFileStreaming` reads from a temporary file and blocks each read until
  the bytes at the read position have been downloaded, asking the loader for
  the missing ranges (plus read-ahead in streaming mode).
- `StreamLoaderController` lets a player check `range_available`,
  `range_to_end_available` and `ping_time()` (seconds), request ranges with
  `fetch` / `fetch_next`, wait for them with `fetch_blocking` /
  `fetch_next_blocking`, switch with `set_random_access_mode` /
  `set_stream_mode`, and `close` the loader. For a cached file every range
  counts as available and commands are ignored.

## What the package does not do

The package contains no network connection, no session, no channel
management and no cache. The caller supplies a session object that provides:

- `channel().allocate()` returning `(channel_id, channel)`, where
  `channel.split()` returns `(headers, data)`: `headers` an iterable of
  `(header_id, bytes)` pairs including header `0x3` with the file size in
  4-byte words, and `data` an iterable of byte chunks that raises on failure;
- `channel().get_download_rate_estimate()` in bytes per second;
- `send_packet(command, payload)`;
- `spawn(job)` to run a zero-argument callable in the background, for
  example on a thread;
- `cache()` returning `None` or an object with `file(file_id)` (an open file
  or `None`) and `save_file(file_id, file)`.

The file id must be convertible with `bytes()`. There is no command-line
program.