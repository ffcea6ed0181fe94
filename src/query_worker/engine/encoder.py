"""Deterministic ``Resultado``/``Fila`` document encoding of tabular results.

The document shape is a compatibility contract with the consumers of completed
jobs::

    <Resultado><Fila><Col1>value</Col1><Col2>value</Col2></Fila>...</Resultado>

- no XML declaration and no whitespace between elements;
- one ``Fila`` per row, one child per non-null cell in column order;
- NULL cells are omitted entirely;
- column names are escaped into valid element names (``_xHHHH_`` sequences),
  blank names become ``Valor_Sin_Alias``;
- every value is written as text, no type information survives.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time
from xml.etree import ElementTree

from query_worker.engine.errors import ResultEncodingError
from query_worker.engine.models import Cell, TabularResult

ROOT_ELEMENT = "Resultado"
ROW_ELEMENT = "Fila"
BLANK_COLUMN_NAME = "Valor_Sin_Alias"

_NAME_START_RANGES: tuple[tuple[int, int], ...] = (
    (ord("A"), ord("Z")),
    (ord("_"), ord("_")),
    (ord("a"), ord("z")),
    (0xC0, 0xD6),
    (0xD8, 0xF6),
    (0xF8, 0x2FF),
    (0x370, 0x37D),
    (0x37F, 0x1FFF),
    (0x200C, 0x200D),
    (0x2070, 0x218F),
    (0x2C00, 0x2FEF),
    (0x3001, 0xD7FF),
    (0xF900, 0xFDCF),
    (0xFDF0, 0xFFFD),
    (0x10000, 0xEFFFF),
)
_NAME_EXTRA_RANGES: tuple[tuple[int, int], ...] = (
    (ord("-"), ord("-")),
    (ord("."), ord(".")),
    (ord("0"), ord("9")),
    (0xB7, 0xB7),
    (0x300, 0x36F),
    (0x203F, 0x2040),
)
_XML_CHAR_RANGES: tuple[tuple[int, int], ...] = (
    (0x9, 0xA),
    (0xD, 0xD),
    (0x20, 0xD7FF),
    (0xE000, 0xFFFD),
    (0x10000, 0x10FFFF),
)

_ESCAPE_LOOKALIKE = re.compile(r"_[Xx][0-9A-Fa-f]{4}")
_DECODE_SEQUENCE = re.compile(r"_x([0-9A-F]{8}|[0-9A-F]{4})_")


def encode_result(result: TabularResult) -> str:
    """Encode all rows of *result* into the result document.

    A row without cells and a result without rows are written as
    self-closing elements; a cell always gets a start and an end tag, so an
    empty string stays distinguishable from an omitted NULL.
    """

    if result.is_empty:
        return f"<{ROOT_ELEMENT} />"
    rows = "".join(_encode_row(row) for row in result.rows)
    return f"<{ROOT_ELEMENT}>{rows}</{ROOT_ELEMENT}>"


def _encode_row(row: tuple[Cell, ...]) -> str:
    cells: list[str] = []
    for cell in row:
        if cell.value is None:
            continue
        _ensure_xml_text(cell.value, column=cell.name)
        element = ElementTree.Element(element_name_for(cell.name))
        element.text = cell.value
        cells.append(
            ElementTree.tostring(element, encoding="unicode", short_empty_elements=False),
        )
    if not cells:
        return f"<{ROW_ELEMENT} />"
    return f"<{ROW_ELEMENT}>{''.join(cells)}</{ROW_ELEMENT}>"


def element_name_for(column_name: str) -> str:
    """Element tag used for a column: encoded name or the blank-name placeholder."""

    if not column_name.strip():
        return BLANK_COLUMN_NAME
    return encode_name(column_name)


def encode_name(name: str) -> str:
    """Escape characters that are not allowed in an XML element name.

    Invalid characters become ``_xHHHH_`` (``_xHHHHHHHH_`` above the BMP).
    An underscore that would otherwise start such a sequence is escaped as
    ``_x005F_`` so that :func:`decode_name` restores the exact input.
    """

    if not name:
        return name

    literal_starts = {match.start() for match in _ESCAPE_LOOKALIKE.finditer(name)}
    parts: list[str] = []
    for position, char in enumerate(name):
        if position in literal_starts:
            parts.append(_escape_char(char))
            continue
        valid = _is_name_start_char(char) if position == 0 else _is_name_char(char)
        parts.append(char if valid else _escape_char(char))
    return "".join(parts)


def decode_name(name: str) -> str:
    """Reverse :func:`encode_name`."""

    return _DECODE_SEQUENCE.sub(lambda match: chr(int(match.group(1), 16)), name)


def stringify_value(value: object) -> str | None:
    """Reduce a backend value to its textual cell form (``None`` stays NULL)."""

    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bytes | bytearray | memoryview):
        return bytes(value).hex().upper()
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    return str(value)


def _escape_char(char: str) -> str:
    code_point = ord(char)
    if code_point > 0xFFFF:
        return f"_x{code_point:08X}_"
    return f"_x{code_point:04X}_"


def _is_name_start_char(char: str) -> bool:
    return _in_ranges(ord(char), _NAME_START_RANGES)


def _is_name_char(char: str) -> bool:
    code_point = ord(char)
    return _in_ranges(code_point, _NAME_START_RANGES) or _in_ranges(
        code_point,
        _NAME_EXTRA_RANGES,
    )


def _in_ranges(code_point: int, ranges: tuple[tuple[int, int], ...]) -> bool:
    return any(low <= code_point <= high for low, high in ranges)


def _ensure_xml_text(value: str, *, column: str) -> None:
    for char in value:
        if not _in_ranges(ord(char), _XML_CHAR_RANGES):
            raise ResultEncodingError(
                f"Column {column!r} contains a character not allowed in XML: "
                f"0x{ord(char):04X}",
            )
