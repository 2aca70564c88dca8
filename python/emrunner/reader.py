"""Read the RTT byte stream and turn it into located, timestamped log frames."""

from __future__ import annotations

import logging
import socket
import time
from pathlib import Path
from typing import Callable, List, Optional

from .cancel import CancelToken
from .defmt import Frame, Locations, Malformed, MalformedFrame, MissingFormatTable, Table, UnexpectedEof, new_stream_decoder
from .defmt.errors import DefmtError
from .defmt.stream import StreamDecoder
from .frames import FrameLocation, LogFrame, create_module_path
from .transport import TransportError

logger = logging.getLogger(__name__)

READ_BUFFER_SIZE = 1024
_I64_MAX = 2**63 - 1

FrameCallback = Callable[[LogFrame], None]


class FrameDecoder:
    """Turns raw decoder frames into :class:`LogFrame` records."""

    def __init__(
        self,
        table: Table,
        locations: Optional[Locations] = None,
        *,
        root: Optional[Path] = None,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        self.table = table
        self.locations = locations
        self.root = Path(root) if root is not None else None
        self._clock = clock

    @classmethod
    def from_binary(cls, binary: Path | str, *, root: Optional[Path] = None) -> "FrameDecoder":
        path = Path(binary)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise DefmtError(f"Could not read binary '{path}'. Cause: {exc}") from exc
        table = Table.parse(data)
        if table is None:
            raise MissingFormatTable(f".defmt data not found in '{path}'")
        locations: Optional[Locations] = table.get_locations(data)
        if any(index not in locations for index in table.log_indices()):
            logger.warning("(BUG) location info is incomplete; it will be omitted from the output")
            locations = None
        return cls(table, locations, root=root)

    def new_stream(self) -> StreamDecoder:
        return new_stream_decoder(self.table)

    def location_info(self, frame: Frame) -> FrameLocation:
        if not self.locations:
            return FrameLocation()
        loc = self.locations.get(frame.index)
        if loc is None:
            return FrameLocation()
        path = loc.file
        if self.root is not None:
            try:
                path = path.relative_to(self.root)
            except ValueError:
                pass
        return FrameLocation(
            file=path.as_posix(),
            line=loc.line,
            module_path=create_module_path(loc.module),
        )

    def to_log_frame(self, frame: Frame) -> LogFrame:
        return LogFrame(
            text=frame.display_message(),
            host_timestamp=min(self._clock(), _I64_MAX),
            level=frame.level,
            location=self.location_info(frame),
            target_timestamp=frame.display_timestamp() or "",
        )


def read_frames(
    source: socket.socket,
    decoder: FrameDecoder,
    cancel: CancelToken,
    *,
    on_frame: Optional[FrameCallback] = None,
) -> List[LogFrame]:
    """Decode frames from ``source`` until cancelled or the peer closes.

    Read timeouts only mean that nothing arrived yet.  A malformed frame is
    skipped if the table's encoding can recover from it and aborts the read
    otherwise.
    """
    stream = decoder.new_stream()
    frames: List[LogFrame] = []
    while not cancel.cancelled:
        try:
            chunk = source.recv(READ_BUFFER_SIZE)
        except socket.timeout:
            continue
        except (ConnectionResetError, ConnectionAbortedError) as exc:
            logger.debug("rtt stream reset: %s", exc)
            break
        except OSError as exc:
            raise TransportError(f"TCP error: {exc}") from exc
        if not chunk:
            logger.debug("rtt stream closed by peer")
            break
        stream.received(chunk)
        while True:
            try:
                frame = stream.decode()
            except UnexpectedEof:
                break
            except Malformed:
                if not decoder.table.encoding.can_recover:
                    raise MalformedFrame("Received a malformed frame.") from None
                logger.warning("Malformed defmt frame skipped!")
                continue
            log_frame = decoder.to_log_frame(frame)
            frames.append(log_frame)
            if on_frame is not None:
                on_frame(log_frame)
    return frames
