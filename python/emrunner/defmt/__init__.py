"""Host-side decoder for the defmt logging framework."""

from .errors import DecodeError, DefmtError, Malformed, MalformedFrame, MissingFormatTable, UnexpectedEof  # noqa: F401
from .format import FormatValue, Parameter, ParamType, parse  # noqa: F401
from .stream import RawStreamDecoder, RzcobsStreamDecoder, StreamDecoder, new_stream_decoder  # noqa: F401
from .table import Encoding, Frame, Location, Locations, Table, TableEntry  # noqa: F401

__all__ = [
    "DecodeError",
    "DefmtError",
    "Encoding",
    "FormatValue",
    "Frame",
    "Location",
    "Locations",
    "Malformed",
    "MalformedFrame",
    "MissingFormatTable",
    "ParamType",
    "Parameter",
    "RawStreamDecoder",
    "RzcobsStreamDecoder",
    "StreamDecoder",
    "Table",
    "TableEntry",
    "UnexpectedEof",
    "new_stream_decoder",
    "parse",
]
