from __future__ import annotations

from datetime import UTC, date, datetime, time
from decimal import Decimal

import allure
import pytest
from defusedxml import ElementTree

from query_worker.engine.encoder import (
    BLANK_COLUMN_NAME,
    decode_name,
    element_name_for,
    encode_name,
    encode_result,
    stringify_value,
)
from query_worker.engine.errors import ResultEncodingError, UserQueryError
from query_worker.engine.models import Cell, TabularResult

pytestmark = [
    allure.epic("Result Document"),
    allure.feature("Resultado/Fila Encoding"),
]


def test_single_cell_document_matches_contract() -> None:
    result = TabularResult.from_rows(["X"], [("1",)])

    assert encode_result(result) == "<Resultado><Fila><X>1</X></Fila></Resultado>"


def test_rows_and_columns_keep_their_order() -> None:
    result = TabularResult.from_rows(
        ["id", "name"],
        [("2", "beta"), ("1", "alpha")],
    )

    assert encode_result(result) == (
        "<Resultado>"
        "<Fila><id>2</id><name>beta</name></Fila>"
        "<Fila><id>1</id><name>alpha</name></Fila>"
        "</Resultado>"
    )


def test_null_cells_are_omitted_entirely() -> None:
    result = TabularResult.from_rows(
        ["a", "b", "c"],
        [("1", None, "3"), (None, None, None)],
    )

    document = encode_result(result)

    assert document == "<Resultado><Fila><a>1</a><c>3</c></Fila><Fila /></Resultado>"
    rows = list(ElementTree.fromstring(document))
    assert [child.tag for child in rows[0]] == ["a", "c"]
    assert list(rows[1]) == []


def test_empty_string_is_not_null() -> None:
    result = TabularResult.from_rows(["note"], [("",)])

    document = encode_result(result)
    rows = list(ElementTree.fromstring(document))

    assert document == "<Resultado><Fila><note></note></Fila></Resultado>"
    assert len(list(rows[0])) == 1


def test_empty_string_cell_keeps_end_tag_next_to_null_cells() -> None:
    result = TabularResult.from_rows(
        ["X", "Y", "Z"],
        [("", None, "1"), (None, None, None)],
    )

    assert encode_result(result) == (
        "<Resultado><Fila><X></X><Z>1</Z></Fila><Fila /></Resultado>"
    )


def test_values_are_text_escaped() -> None:
    result = TabularResult.from_rows(["expr"], [("a < b && c > d",)])

    document = encode_result(result)

    assert "<expr>a &lt; b &amp;&amp; c &gt; d</expr>" in document
    assert ElementTree.fromstring(document)[0][0].text == "a < b && c > d"


def test_zero_rows_encode_to_empty_root() -> None:
    assert encode_result(TabularResult()) == "<Resultado />"


def test_encoding_is_deterministic() -> None:
    result = TabularResult.from_rows(
        ["Order Id", "", "total"],
        [("10", "x", "99.5"), ("11", None, "0")],
    )

    assert encode_result(result) == encode_result(result)


def test_no_declaration_and_no_whitespace_between_elements() -> None:
    result = TabularResult.from_rows(["a", "b"], [("1", "2"), ("3", "4")])

    document = encode_result(result)

    assert not document.startswith("<?xml")
    assert ">\n" not in document
    assert "> <" not in document


@pytest.mark.parametrize("name", ["", " ", "   ", "\t"])
def test_blank_column_names_use_placeholder(name: str) -> None:
    assert element_name_for(name) == BLANK_COLUMN_NAME

    result = TabularResult(rows=((Cell(name=name, value="7"),),))
    assert encode_result(result) == (
        "<Resultado><Fila><Valor_Sin_Alias>7</Valor_Sin_Alias></Fila></Resultado>"
    )


def test_invalid_name_characters_are_escaped() -> None:
    assert encode_name("Order Id") == "Order_x0020_Id"
    assert encode_name("1st") == "_x0031_st"
    assert encode_name("a:b") == "a_x003A_b"
    assert encode_name("COUNT(*)") == "COUNT_x0028__x002A__x0029_"


def test_valid_names_are_unchanged() -> None:
    for name in ("X", "total_amount", "_private", "naïve", "a-b.c", "ÉTAT"):
        assert encode_name(name) == name


def test_underscore_starting_escape_lookalike_is_escaped() -> None:
    assert encode_name("_x0041_") == "_x005F_x0041_"
    assert decode_name("_x005F_x0041_") == "_x0041_"


@pytest.mark.parametrize(
    "name",
    [
        "Order Id",
        "1st place",
        "a:b",
        "_x0041_",
        "_x0041 ",
        "x_x0020_y z",
        "price ($)",
        "total #",
        "tab\there",
        "__xFFFF",
    ],
)
def test_encoded_names_decode_back(name: str) -> None:
    encoded = encode_name(name)

    assert decode_name(encoded) == name
    ElementTree.fromstring(f"<{encoded}>v</{encoded}>")


def test_encoded_tag_is_reversible_in_document() -> None:
    result = TabularResult.from_rows(["Unit Price ($)"], [("3.50",)])

    cell = ElementTree.fromstring(encode_result(result))[0][0]

    assert decode_name(cell.tag) == "Unit Price ($)"
    assert cell.text == "3.50"


def test_control_characters_raise_user_query_error() -> None:
    result = TabularResult.from_rows(["raw"], [("bell\x07",)])

    with pytest.raises(ResultEncodingError, match="raw") as raised:
        encode_result(result)
    assert isinstance(raised.value, UserQueryError)


def test_stringify_value_mapping() -> None:
    assert stringify_value(None) is None
    assert stringify_value("text") == "text"
    assert stringify_value(1) == "1"
    assert stringify_value(2.5) == "2.5"
    assert stringify_value(Decimal("10.20")) == "10.20"
    assert stringify_value(True) == "True"
    assert stringify_value(b"\x01\xab") == "01AB"
    assert stringify_value(memoryview(b"\xff")) == "FF"
    assert stringify_value(date(2026, 10, 17)) == "2026-10-17"
    assert stringify_value(time(8, 30)) == "08:30:00"
    assert (
        stringify_value(datetime(2026, 10, 17, 8, 30, tzinfo=UTC))
        == "2026-10-17T08:30:00+00:00"
    )
