"""Ogg/Opus container helpers.

Lightweight structural parsing, enough to validate a voice note before it is
handed to the provider and to read its duration without decoding audio.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator

OGG_CAPTURE_PATTERN = b"OggS"
OPUS_HEAD_MARKER = b"OpusHead"
OPUS_GRANULE_RATE = 48_000  # Opus granule positions always count 48 kHz samples

_PAGE_HEADER = struct.Struct("<4sBBqIIIB")  # 27 bytes
_NO_GRANULE = -1
_SNIFF_LIMIT = 64 * 1024
_MIN_SNIFF_SIZE = 64


class OggParseError(ValueError):
    """Buffer is not a well-formed Ogg stream."""


@dataclass
class OggPage:
    header_type: int
    granule_position: int
    serial: int
    sequence: int
    body: bytes

    @property
    def is_bos(self) -> bool:
        return bool(self.header_type & 0x02)


@dataclass
class OpusStreamInfo:
    channels: int
    input_sample_rate: int
    pre_skip: int
    duration: float | None


def is_likely_ogg_opus(data: bytes) -> bool:
    """True if ``data`` starts with ``OggS`` and carries ``OpusHead`` early on.

    Heuristic only: the capture pattern must sit at offset 0 and the Opus
    identification header must appear within the first 64 KiB. Buffers under
    64 bytes are never accepted.
    """
    if not data or len(data) < _MIN_SNIFF_SIZE:
        return False
    if data[:4] != OGG_CAPTURE_PATTERN:
        return False
    return OPUS_HEAD_MARKER in data[:_SNIFF_LIMIT]


def iter_pages(data: bytes) -> Iterator[OggPage]:
    """Yield the pages of an Ogg stream.

    Raises:
        OggParseError: Missing capture pattern or truncated page.
    """
    offset = 0
    size = len(data)
    while offset < size:
        if size - offset < _PAGE_HEADER.size:
            raise OggParseError(f"truncated page header at offset {offset}")
        capture, version, header_type, granule, serial, sequence, _crc, segments = _PAGE_HEADER.unpack_from(
            data, offset
        )
        if capture != OGG_CAPTURE_PATTERN:
            raise OggParseError(f"missing capture pattern at offset {offset}")
        if version != 0:
            raise OggParseError(f"unsupported Ogg version {version}")
        table_start = offset + _PAGE_HEADER.size
        table_end = table_start + segments
        if table_end > size:
            raise OggParseError("truncated segment table")
        body_len = sum(data[table_start:table_end])
        body_end = table_end + body_len
        if body_end > size:
            raise OggParseError("truncated page body")
        yield OggPage(header_type, granule, serial, sequence, data[table_end:body_end])
        offset = body_end


def read_opus_info(data: bytes) -> OpusStreamInfo:
    """Read channel count, input rate and duration of the first Opus stream.

    Duration is ``(last granule - pre_skip) / 48000`` and is None when no
    page carries a granule position.

    Raises:
        OggParseError: Not an Ogg stream or no Opus identification header.
    """
    serial: int | None = None
    head: bytes | None = None
    last_granule = _NO_GRANULE
    for page in iter_pages(data):
        if serial is None:
            if page.is_bos and page.body.startswith(OPUS_HEAD_MARKER):
                serial = page.serial
                head = page.body
            continue
        if page.serial == serial and page.granule_position != _NO_GRANULE:
            last_granule = page.granule_position

    if head is None or len(head) < 19:
        raise OggParseError("no Opus identification header")

    channels = head[9]
    pre_skip, input_rate = struct.unpack_from("<HI", head, 10)
    duration = None
    if last_granule != _NO_GRANULE:
        duration = max(0, last_granule - pre_skip) / OPUS_GRANULE_RATE
    return OpusStreamInfo(
        channels=channels,
        input_sample_rate=input_rate,
        pre_skip=pre_skip,
        duration=duration,
    )
