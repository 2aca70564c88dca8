"""Reverse zero-compressing COBS (rzCOBS) codec used by defmt's ``rzcobs`` encoding.

Encoded frames never contain a ``0x00`` byte, so the stream uses ``0x00`` as
the frame separator.  Frames are decoded back to front:

* ``0x01..0x7f`` -- a group of 7 bytes; each set bit (bit 6 first) stands for a
  zero byte, every clear bit consumes one literal byte.
* ``0x80..0xfe`` -- ``(x & 0x7f) + 7`` literal bytes followed by one zero.
* ``0xff`` -- 134 literal bytes with no trailing zero.

The encoder pads the last short group with zero bits, so decoded payloads may
carry trailing zeros; frame decoding consumes exactly the bytes it needs.
"""

from __future__ import annotations


class RzcobsError(ValueError):
    """Raised when a frame is not valid rzCOBS."""


def decode(data: bytes) -> bytes:
    out = bytearray()
    it = reversed(data)

    def take() -> int:
        try:
            return next(it)
        except StopIteration:
            raise RzcobsError("truncated rzcobs group") from None

    for x in it:
        if x == 0:
            raise RzcobsError("zero byte inside rzcobs frame")
        if x < 0x80:
            for i in range(7):
                if x & (1 << (6 - i)):
                    out.append(0)
                else:
                    out.append(take())
        elif x < 0xFF:
            out.append(0)
            for _ in range((x & 0x7F) + 7):
                out.append(take())
        else:
            for _ in range(134):
                out.append(take())
    out.reverse()
    return bytes(out)


def encode(data: bytes) -> bytes:
    """Encode ``data`` (without the trailing frame separator)."""
    out = bytearray()
    run = 0
    zeros = 0
    for byte in data:
        if byte == 0 and run >= 7:
            out.append(0x80 | (run - 7))
            run = 0
            zeros = 0
            continue
        if byte == 0:
            zeros |= 1 << run
        else:
            out.append(byte)
        run += 1
        if run == 7 and zeros:
            out.append(zeros)
            run = 0
            zeros = 0
        elif run == 134:
            out.append(0xFF)
            run = 0
            zeros = 0
    if run:
        if run < 7:
            out.append(zeros | (0x7F & (0x7F << run)))
        else:
            out.append(0x80 | (run - 7))
    return bytes(out)
