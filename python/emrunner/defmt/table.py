"""defmt format table: interned strings loaded from the firmware ELF.

Every ``defmt`` log statement, ``Format`` impl and interned string is
represented by a symbol in the ``.defmt`` section.  The symbol name is a JSON
object (``{"package": ..., "tag": "defmt_info", "data": "x={=u8}", ...}``) and
the symbol value is the index that the target writes on the wire.  Two marker
symbols (``_defmt_version_ = N`` and ``_defmt_encoding_ = raw|rzcobs``)
describe the wire format.
"""

from __future__ import annotations

import enum
import io
import json
import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from elftools.common.exceptions import DWARFError, ELFError
from elftools.dwarf.dwarf_expr import DWARFExprParser
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

from ..frames import Level
from .errors import DefmtError, Malformed, UnexpectedEof
from .format import FLOAT_SIZES, INT_SIZES, Fragment, FormatValue, ParamType, Parameter, parse

logger = logging.getLogger(__name__)

LOG_TAGS = frozenset(
    {"defmt_trace", "defmt_debug", "defmt_info", "defmt_warn", "defmt_error", "defmt_println"}
)
TIMESTAMP_TAG = "defmt_timestamp"
STR_TAG = "defmt_str"
SUPPORTED_VERSIONS = frozenset({"3", "4"})
_VERSION_PREFIX = "_defmt_version_ = "
_ENCODING_PREFIX = "_defmt_encoding_ = "
_MAX_NESTING = 64


class Encoding(enum.Enum):
    RAW = "raw"
    RZCOBS = "rzcobs"

    @property
    def can_recover(self) -> bool:
        """Only framed encodings can resynchronise after corrupt data."""
        return self is Encoding.RZCOBS


@dataclass(frozen=True)
class TableEntry:
    tag: str
    string: str

    @property
    def level(self) -> Optional[Level]:
        return Level.from_tag(self.tag)


@dataclass(frozen=True)
class Location:
    file: Path
    line: int
    module: str


Locations = Dict[int, Location]


@dataclass
class Frame:
    """A log statement decoded from the wire, before host-side enrichment."""

    index: int
    entry: TableEntry
    message: FormatValue
    timestamp: Optional[FormatValue] = None

    @property
    def level(self) -> Optional[Level]:
        return self.entry.level

    def display_message(self) -> str:
        return self.message.render()

    def display_timestamp(self) -> Optional[str]:
        if self.timestamp is None:
            return None
        return self.timestamp.render()


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def take(self, count: int) -> bytes:
        end = self.pos + count
        if end > len(self.data):
            raise UnexpectedEof()
        chunk = self.data[self.pos : end]
        self.pos = end
        return chunk

    def uint(self, size: int) -> int:
        return int.from_bytes(self.take(size), "little")

    def sint(self, size: int) -> int:
        return int.from_bytes(self.take(size), "little", signed=True)


class Table:
    def __init__(
        self,
        entries: Dict[int, TableEntry],
        *,
        timestamp: Optional[TableEntry] = None,
        encoding: Encoding = Encoding.RZCOBS,
        version: Optional[str] = None,
    ) -> None:
        self._entries = dict(entries)
        self.timestamp = timestamp
        self.encoding = encoding
        self.version = version
        self._fragments: Dict[str, List[Fragment]] = {}

    # ------------------------------------------------------------------ loading

    @classmethod
    def parse(cls, elf_data: bytes) -> Optional["Table"]:
        """Build the table from raw ELF bytes; ``None`` if there is no ``.defmt`` section."""
        try:
            elf = ELFFile(io.BytesIO(elf_data))
            return cls._from_elf(elf)
        except ELFError as exc:
            raise DefmtError(f"Could not parse binary for defmt data. Cause: {exc}") from exc

    @classmethod
    def _from_elf(cls, elf: ELFFile) -> Optional["Table"]:
        if elf.get_section_by_name(".defmt") is None:
            return None
        defmt_index = elf.get_section_index(".defmt")
        entries: Dict[int, TableEntry] = {}
        timestamp: Optional[TableEntry] = None
        version: Optional[str] = None
        encoding: Optional[Encoding] = None
        for section in elf.iter_sections():
            if not isinstance(section, SymbolTableSection):
                continue
            for symbol in section.iter_symbols():
                name = symbol.name
                if name.startswith(_VERSION_PREFIX):
                    version = name[len(_VERSION_PREFIX):].strip()
                    continue
                if name.startswith(_ENCODING_PREFIX):
                    raw = name[len(_ENCODING_PREFIX):].strip()
                    try:
                        encoding = Encoding(raw)
                    except ValueError as exc:
                        raise DefmtError(f"Unknown defmt encoding '{raw}'") from exc
                    continue
                if symbol["st_shndx"] != defmt_index:
                    continue
                entry = _entry_from_symbol_name(name)
                if entry is None:
                    continue
                if entry.tag == TIMESTAMP_TAG:
                    timestamp = entry
                else:
                    entries[symbol["st_value"]] = entry
        if version is not None and version not in SUPPORTED_VERSIONS:
            logger.warning("defmt wire format version %s is not known to this decoder", version)
        if encoding is None:
            logger.warning("binary does not declare a defmt encoding; assuming raw")
            encoding = Encoding.RAW
        return cls(entries, timestamp=timestamp, encoding=encoding, version=version)

    # ------------------------------------------------------------------ lookups

    def log_indices(self) -> List[int]:
        return [index for index, entry in self._entries.items() if entry.tag in LOG_TAGS]

    def get(self, index: int) -> Optional[TableEntry]:
        return self._entries.get(index)

    def get_locations(self, elf_data: bytes) -> Locations:
        """Map table indices to source locations using the binary's DWARF info."""
        try:
            elf = ELFFile(io.BytesIO(elf_data))
            if not elf.has_dwarf_info():
                return {}
            return _collect_locations(elf, set(self._entries))
        except ELFError as exc:
            raise DefmtError(f"Could not read DWARF location info. Cause: {exc}") from exc

    # ------------------------------------------------------------------ decoding

    def decode(self, data: bytes) -> Tuple[Frame, int]:
        """Decode one frame from the start of ``data``.

        Returns the frame and the number of bytes consumed.  Raises
        :class:`UnexpectedEof` if ``data`` ends mid-frame and
        :class:`Malformed` if it cannot be a valid frame.
        """
        reader = _Reader(data)
        index = reader.uint(2)
        entry = self._entries.get(index)
        if entry is None or entry.tag not in LOG_TAGS:
            raise Malformed()
        timestamp = None
        if self.timestamp is not None:
            fragments = self._parsed(self.timestamp.string)
            timestamp = FormatValue(fragments, self._decode_args(reader, fragments, 0))
        fragments = self._parsed(entry.string)
        message = FormatValue(fragments, self._decode_args(reader, fragments, 0))
        return Frame(index=index, entry=entry, message=message, timestamp=timestamp), reader.pos

    def _parsed(self, format_string: str) -> List[Fragment]:
        fragments = self._fragments.get(format_string)
        if fragments is None:
            try:
                fragments = parse(format_string)
            except ValueError as exc:
                logger.debug("unparsable defmt format string %r: %s", format_string, exc)
                raise Malformed() from exc
            self._fragments[format_string] = fragments
        return fragments

    def _decode_args(self, reader: _Reader, fragments: List[Fragment], depth: int) -> Dict[int, Any]:
        groups: Dict[int, List[Parameter]] = {}
        for fragment in fragments:
            if isinstance(fragment, Parameter):
                groups.setdefault(fragment.index, []).append(fragment)
        args: Dict[int, Any] = {}
        for index in sorted(groups):
            params = groups[index]
            bitfields = [param for param in params if param.ty.kind == "bitfield"]
            if bitfields:
                if len(bitfields) != len(params):
                    raise Malformed()
                low = min(param.ty.bits[0] for param in bitfields)  # type: ignore[index]
                high = max(param.ty.bits[1] for param in bitfields)  # type: ignore[index]
                low_byte = low // 8
                high_byte = (high - 1) // 8
                raw = reader.uint(high_byte - low_byte + 1)
                args[index] = raw << (low_byte * 8)
                continue
            ty = params[0].ty
            if any(param.ty != ty for param in params[1:]):
                raise Malformed()
            args[index] = self._decode_value(reader, ty, depth)
        return args

    def _decode_value(self, reader: _Reader, ty: ParamType, depth: int) -> Any:
        kind = ty.kind
        if kind in INT_SIZES:
            size, signed = INT_SIZES[kind]
            return reader.sint(size) if signed else reader.uint(size)
        if kind in FLOAT_SIZES:
            size = FLOAT_SIZES[kind]
            return struct.unpack("<f" if size == 4 else "<d", reader.take(size))[0]
        if kind == "bool":
            raw = reader.uint(1)
            if raw > 1:
                raise Malformed()
            return bool(raw)
        if kind == "char":
            try:
                return chr(reader.uint(4))
            except ValueError as exc:
                raise Malformed() from exc
        if kind in ("str", "display", "debug"):
            return _utf8(reader.take(reader.uint(4)))
        if kind == "istr":
            entry = self._entries.get(reader.uint(2))
            if entry is None or entry.tag != STR_TAG:
                raise Malformed()
            return entry.string
        if kind == "u8_slice":
            return reader.take(reader.uint(4))
        if kind == "u8_array":
            return reader.take(ty.length or 0)
        if kind == "format":
            return self._decode_format(reader, reader.uint(2), depth)
        if kind == "format_slice":
            return [self._decode_format(reader, reader.uint(2), depth) for _ in range(reader.uint(4))]
        if kind == "format_array":
            return [self._decode_format(reader, reader.uint(2), depth) for _ in range(ty.length or 0)]
        if kind == "format_sequence":
            items = []
            while True:
                index = reader.uint(2)
                if index == 0:
                    return items
                items.append(self._decode_format(reader, index, depth))
        raise Malformed()

    def _decode_format(self, reader: _Reader, index: int, depth: int) -> FormatValue:
        if depth >= _MAX_NESTING:
            raise Malformed()
        entry = self._entries.get(index)
        if entry is None:
            raise Malformed()
        fragments = self._parsed(entry.string)
        return FormatValue(fragments, self._decode_args(reader, fragments, depth + 1))


def _utf8(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise Malformed() from exc


def _entry_from_symbol_name(name: str) -> Optional[TableEntry]:
    if not name.startswith("{"):
        return None
    try:
        payload = json.loads(name)
    except json.JSONDecodeError:
        logger.debug("ignoring non-JSON defmt symbol %r", name)
        return None
    tag = payload.get("tag")
    data = payload.get("data")
    if not isinstance(tag, str) or not isinstance(data, str):
        return None
    return TableEntry(tag=tag, string=data)


# ---------------------------------------------------------------------- DWARF


def _attr_str(die, name: str) -> Optional[str]:
    attr = die.attributes.get(name)
    if attr is None:
        return None
    value = attr.value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _variable_address(die, expr_parser: DWARFExprParser) -> Optional[int]:
    attr = die.attributes.get("DW_AT_location")
    if attr is None or not isinstance(attr.value, (list, bytes)):
        return None
    try:
        ops = expr_parser.parse_expr(attr.value)
    except (DWARFError, KeyError, ValueError):
        return None
    if len(ops) == 1 and ops[0].op_name == "DW_OP_addr":
        return ops[0].args[0]
    return None


def _decl_file(die, lineprog, comp_dir: Optional[str]) -> Optional[Path]:
    attr = die.attributes.get("DW_AT_decl_file")
    if attr is None or lineprog is None:
        return None
    header = lineprog.header
    version = header["version"]
    file_entries = header["file_entry"]
    index = attr.value if version >= 5 else attr.value - 1
    if index < 0 or index >= len(file_entries):
        return None
    entry = file_entries[index]
    name = entry.name.decode("utf-8", errors="replace")
    directories = header["include_directory"]
    dir_index = entry.dir_index if version >= 5 else entry.dir_index - 1
    if 0 <= dir_index < len(directories):
        directory = directories[dir_index].decode("utf-8", errors="replace")
    else:
        directory = comp_dir or ""
    if directory and not Path(directory).is_absolute() and comp_dir:
        directory = str(Path(comp_dir) / directory)
    return Path(directory) / name


def _collect_locations(elf: ELFFile, indices: set) -> Locations:
    dwarf = elf.get_dwarf_info()
    locations: Locations = {}
    for cu in dwarf.iter_CUs():
        top = cu.get_top_DIE()
        lineprog = dwarf.line_program_for_CU(cu)
        expr_parser = DWARFExprParser(cu.structs)
        comp_dir = _attr_str(top, "DW_AT_comp_dir")
        stack: List[Tuple[Any, List[str]]] = [(top, [])]
        while stack:
            die, namespace = stack.pop()
            for child in die.iter_children():
                if child.tag == "DW_TAG_namespace":
                    stack.append((child, namespace + [_attr_str(child, "DW_AT_name") or ""]))
                elif child.tag == "DW_TAG_variable":
                    address = _variable_address(child, expr_parser)
                    if address not in indices:
                        continue
                    line = child.attributes.get("DW_AT_decl_line")
                    file = _decl_file(child, lineprog, comp_dir)
                    if line is None or file is None:
                        continue
                    locations[address] = Location(file=file, line=int(line.value), module="::".join(namespace))
    return locations
