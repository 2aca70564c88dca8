"""ELF symbol lookup for the RTT control block."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

from .errors import RunnerError

RTT_BLOCK_SYMBOL = "_SEGGER_RTT"


class SymbolError(RunnerError):
    """Base class for symbol lookup failures."""


class SymbolNotFound(SymbolError):
    pass


class ElfReadError(SymbolError):
    pass


class ElfParseError(SymbolError):
    pass


@dataclass(frozen=True)
class Symbol:
    address: int
    size: int


def find_symbol(binary: Path | str, name: str = RTT_BLOCK_SYMBOL) -> Symbol:
    """Return address and size of the first symbol called ``name``."""
    path = Path(binary)
    try:
        stream = path.open("rb")
    except OSError as exc:
        raise ElfReadError(f"Could not read binary file '{path}'. Cause: {exc}") from exc
    with stream:
        try:
            elf = ELFFile(stream)
            for section in elf.iter_sections():
                if not isinstance(section, SymbolTableSection):
                    continue
                for symbol in section.iter_symbols():
                    if symbol.name == name:
                        return Symbol(address=symbol["st_value"], size=symbol["st_size"])
        except ELFError as exc:
            raise ElfParseError(f"Could not parse binary file '{path}'. Cause: {exc}") from exc
        except OSError as exc:
            raise ElfReadError(f"Could not read binary file '{path}'. Cause: {exc}") from exc
    raise SymbolNotFound(f"No {name} symbol in binary '{path}'!")
