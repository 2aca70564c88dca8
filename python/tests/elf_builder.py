"""Tiny ELF32 writer used to build firmware-like fixtures for the tests.

Only what the runner reads is emitted: a ``.defmt`` section, a symbol table,
the string tables and, on request, a minimal DWARF v4 or v5 unit placing
each defmt variable at a source line inside a namespace chain.  No program
headers.
"""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

SHN_ABS = 0xFFF1
SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
STB_GLOBAL_OBJECT = (1 << 4) | 1
EM_ARM = 40

DEFMT_SECTION = 1

# DWARF constants
DW_TAG_compile_unit = 0x11
DW_TAG_namespace = 0x39
DW_TAG_variable = 0x34
DW_AT_location = 0x02
DW_AT_name = 0x03
DW_AT_stmt_list = 0x10
DW_AT_comp_dir = 0x1B
DW_AT_decl_file = 0x3A
DW_AT_decl_line = 0x3B
DW_FORM_string = 0x08
DW_FORM_udata = 0x0F
DW_FORM_sec_offset = 0x17
DW_FORM_exprloc = 0x18
DW_OP_addr = 0x03
DW_LNCT_path = 0x1
DW_LNCT_directory_index = 0x2
DW_UT_compile = 0x01
ABBREV_CU, ABBREV_NAMESPACE, ABBREV_VARIABLE = 1, 2, 3


@dataclass
class ElfSymbol:
    name: str
    value: int
    size: int = 0
    shndx: int = SHN_ABS


@dataclass
class DebugVariable:
    """A defmt static at ``index`` declared at ``file``/``line`` inside ``namespace``.

    ``file`` is the raw ``DW_AT_decl_file`` value: 1-based for DWARF 4,
    0-based for DWARF 5.
    """

    index: int
    namespace: Tuple[str, ...]
    line: int
    file: int = 1


class _StringTable:
    def __init__(self) -> None:
        self.data = bytearray(b"\x00")
        self._offsets: Dict[str, int] = {"": 0}

    def add(self, text: str) -> int:
        if text not in self._offsets:
            self._offsets[text] = len(self.data)
            self.data += text.encode("utf-8") + b"\x00"
        return self._offsets[text]


def _uleb(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _cstr(text: str) -> bytes:
    return text.encode("utf-8") + b"\x00"


def _debug_abbrev() -> bytes:
    def abbrev(code: int, tag: int, children: bool, attrs: Sequence[Tuple[int, int]]) -> bytes:
        body = _uleb(code) + _uleb(tag) + bytes([1 if children else 0])
        for name, form in attrs:
            body += _uleb(name) + _uleb(form)
        return body + b"\x00\x00"

    return (
        abbrev(
            ABBREV_CU,
            DW_TAG_compile_unit,
            True,
            [(DW_AT_name, DW_FORM_string), (DW_AT_comp_dir, DW_FORM_string), (DW_AT_stmt_list, DW_FORM_sec_offset)],
        )
        + abbrev(ABBREV_NAMESPACE, DW_TAG_namespace, True, [(DW_AT_name, DW_FORM_string)])
        + abbrev(
            ABBREV_VARIABLE,
            DW_TAG_variable,
            False,
            [
                (DW_AT_name, DW_FORM_string),
                (DW_AT_decl_file, DW_FORM_udata),
                (DW_AT_decl_line, DW_FORM_udata),
                (DW_AT_location, DW_FORM_exprloc),
            ],
        )
        + b"\x00"
    )


def _debug_info(variables: Iterable[DebugVariable], version: int, comp_dir: str) -> bytes:
    dies = _uleb(ABBREV_CU) + _cstr("app") + _cstr(comp_dir) + struct.pack("<I", 0)
    for var in variables:
        for name in var.namespace:
            dies += _uleb(ABBREV_NAMESPACE) + _cstr(name)
        location = bytes([DW_OP_addr]) + struct.pack("<I", var.index)
        dies += _uleb(ABBREV_VARIABLE) + _cstr(f"DEFMT_LOG_STATEMENT_{var.index}")
        dies += _uleb(var.file) + _uleb(var.line) + _uleb(len(location)) + location
        dies += b"\x00" * len(var.namespace)
    dies += b"\x00"
    if version >= 5:
        header = struct.pack("<HBBI", version, DW_UT_compile, 4, 0)
    else:
        header = struct.pack("<HIB", version, 0, 4)
    body = header + dies
    return struct.pack("<I", len(body)) + body


def _debug_line(version: int, directories: Sequence[str], files: Sequence[Tuple[str, int]]) -> bytes:
    # min_inst_length, max_ops, default_is_stmt, line_base, line_range, opcode_base
    params = struct.pack("<BBBbBB", 1, 1, 1, -5, 14, 13) + bytes([0, 1, 1, 1, 1, 0, 0, 0, 1, 0, 0, 1])
    if version >= 5:
        tables = bytes([1]) + _uleb(DW_LNCT_path) + _uleb(DW_FORM_string)
        tables += _uleb(len(directories)) + b"".join(_cstr(d) for d in directories)
        tables += bytes([2]) + _uleb(DW_LNCT_path) + _uleb(DW_FORM_string)
        tables += _uleb(DW_LNCT_directory_index) + _uleb(DW_FORM_udata)
        tables += _uleb(len(files)) + b"".join(_cstr(name) + _uleb(d) for name, d in files)
        prefix = struct.pack("<HBB", version, 4, 0)
    else:
        tables = b"".join(_cstr(d) for d in directories) + b"\x00"
        tables += b"".join(_cstr(name) + _uleb(d) + b"\x00\x00" for name, d in files) + b"\x00"
        prefix = struct.pack("<H", version)
    header = params + tables
    program = b"\x00\x01\x01"  # DW_LNE_end_sequence
    body = prefix + struct.pack("<I", len(header)) + header + program
    return struct.pack("<I", len(body)) + body


def dwarf_sections(
    variables: Iterable[DebugVariable],
    *,
    version: int = 4,
    comp_dir: str = "/work",
    directories: Sequence[str] = ("src",),
    files: Sequence[Tuple[str, int]] = (("lib.rs", 1),),
) -> List[Tuple[str, bytes]]:
    """``.debug_*`` sections for one compile unit.

    ``directories`` and ``files`` (name, directory index) are written to the
    line program header as-is, so their numbering follows ``version``.
    """
    return [
        (".debug_abbrev", _debug_abbrev()),
        (".debug_info", _debug_info(variables, version, comp_dir)),
        (".debug_line", _debug_line(version, directories, files)),
    ]


def build_elf(
    symbols: Iterable[ElfSymbol],
    *,
    with_defmt: bool = True,
    extra_sections: Sequence[Tuple[str, bytes]] = (),
) -> bytes:
    """Return the bytes of a little-endian ARM ELF32 carrying ``symbols``."""
    shstr = _StringTable()
    strtab = _StringTable()

    symtab = bytearray(struct.pack("<IIIBBH", 0, 0, 0, 0, 0, 0))
    for sym in symbols:
        symtab += struct.pack("<IIIBBH", strtab.add(sym.name), sym.value, sym.size, STB_GLOBAL_OBJECT, 0, sym.shndx)

    names: List[str] = [".defmt"] if with_defmt else [".data"]
    names += [".symtab", ".strtab", ".shstrtab"]
    names += [name for name, _ in extra_sections]
    name_offsets = [shstr.add(name) for name in names]

    body = bytearray()
    offset = 52
    symtab_off = offset + len(body)
    body += symtab
    strtab_off = offset + len(body)
    body += strtab.data
    shstr_off = offset + len(body)
    body += shstr.data
    extra_offsets = []
    for _, data in extra_sections:
        extra_offsets.append(offset + len(body))
        body += data
    while (offset + len(body)) % 4:
        body += b"\x00"
    shoff = offset + len(body)

    sections = [
        struct.pack("<IIIIIIIIII", 0, 0, 0, 0, 0, 0, 0, 0, 0, 0),
        struct.pack("<IIIIIIIIII", name_offsets[0], SHT_PROGBITS, 0, 0, symtab_off, 0, 0, 0, 1, 0),
        struct.pack("<IIIIIIIIII", name_offsets[1], SHT_SYMTAB, 0, 0, symtab_off, len(symtab), 3, 1, 4, 16),
        struct.pack("<IIIIIIIIII", name_offsets[2], SHT_STRTAB, 0, 0, strtab_off, len(strtab.data), 0, 0, 1, 0),
        struct.pack("<IIIIIIIIII", name_offsets[3], SHT_STRTAB, 0, 0, shstr_off, len(shstr.data), 0, 0, 1, 0),
    ]
    for n, (_, data) in enumerate(extra_sections):
        sections.append(
            struct.pack("<IIIIIIIIII", name_offsets[4 + n], SHT_PROGBITS, 0, 0, extra_offsets[n], len(data), 0, 0, 1, 0)
        )

    ident = b"\x7fELF" + bytes([1, 1, 1, 0]) + bytes(8)
    header = ident + struct.pack(
        "<HHIIIIIHHHHHH",
        2,  # ET_EXEC
        EM_ARM,
        1,
        0,
        0,
        shoff,
        0x05000000,
        52,
        32,
        0,
        40,
        len(sections),
        4,
    )
    return bytes(header + body + b"".join(sections))


def defmt_symbol_name(tag: str, data: str, *, crate: str = "app", disambiguator: int = 1) -> str:
    return json.dumps(
        {
            "package": crate,
            "tag": tag,
            "data": data,
            "disambiguator": str(disambiguator),
            "crate_name": crate,
        }
    )


def defmt_elf(
    entries: Dict[int, Tuple[str, str]],
    *,
    encoding: Optional[str] = "rzcobs",
    version: str = "4",
    timestamp: Optional[str] = None,
    rtt: Optional[Tuple[int, int]] = (0x20000000, 0x30),
    dwarf: Sequence[Tuple[str, bytes]] = (),
) -> bytes:
    """ELF with a defmt table ``{index: (tag, format string)}``."""
    symbols = [ElfSymbol(f"_defmt_version_ = {version}", 1)]
    if encoding is not None:
        symbols.append(ElfSymbol(f"_defmt_encoding_ = {encoding}", 1))
    for n, (index, (tag, data)) in enumerate(sorted(entries.items())):
        symbols.append(ElfSymbol(defmt_symbol_name(tag, data, disambiguator=n), index, shndx=DEFMT_SECTION))
    if timestamp is not None:
        symbols.append(ElfSymbol(defmt_symbol_name("defmt_timestamp", timestamp), 0xFFFF, shndx=DEFMT_SECTION))
    if rtt is not None:
        symbols.append(ElfSymbol("_SEGGER_RTT", rtt[0], rtt[1]))
    return build_elf(symbols, extra_sections=dwarf)


def frame(index: int, *payload: bytes) -> bytes:
    """Raw (unframed) defmt frame bytes for ``index`` followed by ``payload``."""
    return struct.pack("<H", index) + b"".join(payload)
