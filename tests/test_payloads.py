"""
Tests for typed print payloads
"""

import pytest

from printdispatch.errors import ValidationError
from printdispatch.models import PrinterConfig, PrinterKind
from printdispatch.payloads import (
    EpsonPayload, EscPosPayload, QrItem, TextItem, decode_payload, encode_payload, fill_connection
)


def test_decode_dispatches_on_driver():
    payload = decode_payload({
        "driver": "epson",
        "items": [
            {"kind": "text", "content": "Order #12", "style": {"bold": True, "align": "center"}},
            {"kind": "qr", "content": "https://example.com/o/12"},
            {"kind": "cut"},
        ],
    })

    assert isinstance(payload, EpsonPayload)
    assert isinstance(payload.items[0], TextItem)
    assert payload.items[0].style.bold
    assert isinstance(payload.items[1], QrItem)
    assert payload.options.cut


def test_decode_accepts_json_text():
    payload = decode_payload('{"driver": "escpos", "items": [{"kind": "feed", "lines": 3}]}')
    assert isinstance(payload, EscPosPayload)
    assert payload.items[0].lines == 3


@pytest.mark.parametrize("raw", [
    {"driver": "laser", "items": [{"kind": "text", "content": "x"}]},
    {"driver": "escpos", "items": []},
    {"driver": "escpos", "items": [{"kind": "hologram"}]},
    {"driver": "escpos", "items": [{"kind": "barcode", "content": "1", "symbology": "QR"}]},
    "not json",
])
def test_invalid_payloads_raise(raw):
    with pytest.raises(ValidationError):
        decode_payload(raw)


def test_encode_is_canonical_json():
    text = encode_payload({"driver": "imin", "items": [{"kind": "text", "content": "hi"}]})
    assert decode_payload(text) == decode_payload(text)
    assert '"driver":"imin"' in text


def test_fill_connection_from_printer_record():
    payload = decode_payload({"driver": "epson", "items": [{"kind": "cut"}]})
    printer = PrinterConfig(
        printer_id="P1", name="Bar", kind=PrinterKind.EPSON,
        connection_params={"address": "192.168.1.20", "port": 9101},
    )

    filled = fill_connection(payload, printer)

    assert filled.connection.address == "192.168.1.20"
    assert filled.connection.port == 9101


def test_fill_connection_keeps_explicit_connection():
    payload = decode_payload({
        "driver": "epson",
        "items": [{"kind": "cut"}],
        "connection": {"address": "10.0.0.1"},
    })
    printer = PrinterConfig(printer_id="P1", name="Bar", kind=PrinterKind.EPSON,
                            connection_params={"address": "192.168.1.20"})

    assert fill_connection(payload, printer).connection.address == "10.0.0.1"


def test_fill_connection_ignores_other_kind():
    payload = decode_payload({"driver": "escpos", "items": [{"kind": "cut"}]})
    printer = PrinterConfig(printer_id="P1", name="Bar", kind=PrinterKind.EPSON,
                            connection_params={"address": "192.168.1.20"})

    assert fill_connection(payload, printer) is payload
