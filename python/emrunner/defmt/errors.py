"""defmt decoding errors."""

from __future__ import annotations

from ..errors import RunnerError


class DefmtError(RunnerError):
    """Fatal problem while loading the format table or reading log frames."""


class MissingFormatTable(DefmtError):
    pass


class MalformedFrame(DefmtError):
    pass


class DecodeError(Exception):
    """Flow-control signal raised by the stream decoders."""


class UnexpectedEof(DecodeError):
    """More bytes are needed before the next frame can be decoded."""


class Malformed(DecodeError):
    """The buffered bytes do not form a valid frame."""
