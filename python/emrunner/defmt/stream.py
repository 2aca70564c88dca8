"""Incremental stream decoders for the two defmt wire encodings."""

from __future__ import annotations

from typing import Protocol

from . import rzcobs
from .errors import Malformed, UnexpectedEof
from .table import Encoding, Frame, Table


class StreamDecoder(Protocol):
    def received(self, data: bytes) -> None:
        """Append freshly read bytes to the internal buffer."""

    def decode(self) -> Frame:
        """Decode the next frame or raise :class:`UnexpectedEof` / :class:`Malformed`."""


class RawStreamDecoder:
    """Frames are concatenated without separators; corruption cannot be skipped."""

    def __init__(self, table: Table) -> None:
        self.table = table
        self._buffer = bytearray()

    def received(self, data: bytes) -> None:
        self._buffer.extend(data)

    def decode(self) -> Frame:
        frame, consumed = self.table.decode(bytes(self._buffer))
        del self._buffer[:consumed]
        return frame


class RzcobsStreamDecoder:
    """Frames are rzCOBS encoded and terminated by ``0x00``."""

    def __init__(self, table: Table) -> None:
        self.table = table
        self._buffer = bytearray()

    def received(self, data: bytes) -> None:
        self._buffer.extend(data)

    def decode(self) -> Frame:
        end = self._buffer.find(0)
        if end < 0:
            raise UnexpectedEof()
        encoded = bytes(self._buffer[:end])
        # drop the frame (and its separator) up front so a bad frame is skipped
        del self._buffer[: end + 1]
        try:
            payload = rzcobs.decode(encoded)
        except rzcobs.RzcobsError as exc:
            raise Malformed() from exc
        try:
            frame, _ = self.table.decode(payload)
        except UnexpectedEof as exc:
            raise Malformed() from exc
        return frame


def new_stream_decoder(table: Table) -> StreamDecoder:
    if table.encoding is Encoding.RZCOBS:
        return RzcobsStreamDecoder(table)
    return RawStreamDecoder(table)
