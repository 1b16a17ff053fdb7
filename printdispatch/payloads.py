"""
Typed print payloads

A payload is validated once at submission, stored as canonical JSON and decoded
back into the same tagged union by executors. The dispatcher never looks inside.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from printdispatch.errors import ValidationError

# ==================== Print items ====================

class TextStyle(BaseModel):
    align: Literal["left", "center", "right"] = "left"
    bold: bool = False
    underline: bool = False
    invert: bool = False
    width: int = Field(default=1, ge=1, le=8)
    height: int = Field(default=1, ge=1, le=8)


class TextItem(BaseModel):
    kind: Literal["text"]
    content: str
    style: TextStyle = Field(default_factory=TextStyle)


class QrItem(BaseModel):
    kind: Literal["qr"]
    content: str = Field(min_length=1)
    size: int = Field(default=6, ge=1, le=16)
    ec: int = Field(default=1, ge=0, le=3)  # error correction level
    align: Literal["left", "center", "right"] = "center"


class BarcodeItem(BaseModel):
    kind: Literal["barcode"]
    content: str = Field(min_length=1)
    symbology: Literal[
        "CODE128", "CODE39", "CODE93", "EAN13", "EAN8",
        "UPC_A", "UPCE", "ITF", "CODABAR"
    ] = "CODE128"
    height: int = Field(default=80, ge=1, le=255)
    width: int = Field(default=2, ge=1, le=6)
    text: Literal["top", "bottom", "none", "all"] = "bottom"


class ImageItem(BaseModel):
    kind: Literal["image"]
    data: str = Field(min_length=1)  # base64
    threshold: int = Field(default=128, ge=0, le=255)
    max_width: Optional[int] = Field(default=None, gt=0)


class FeedItem(BaseModel):
    kind: Literal["feed"]
    lines: int = Field(default=1, ge=1, le=255)


class CutItem(BaseModel):
    kind: Literal["cut"]
    partial: bool = False


PrintItem = Annotated[
    Union[TextItem, QrItem, BarcodeItem, ImageItem, FeedItem, CutItem],
    Field(discriminator="kind")
]


class PrintOptions(BaseModel):
    cut: bool = True
    smart_text: bool = True
    copies: int = Field(default=1, ge=1, le=100)

# ==================== Connection parameters ====================

class EscPosConnection(BaseModel):
    type: Literal["tcp", "usb", "bluetooth", "serial"] = "tcp"
    target: Optional[str] = None
    baud_rate: Optional[int] = None
    timeout: float = 5.0


class XPrinterConnection(BaseModel):
    connect_type: Literal["net", "usb", "bluetooth", "serial"] = "net"
    address: Optional[str] = None
    retry_count: int = 0
    retry_delay: float = 0.0


class EpsonConnection(BaseModel):
    series: Optional[str] = None
    lang: Optional[str] = None
    connect_type: Literal["TCP", "BT", "USB"] = "TCP"
    address: Optional[str] = None
    port: int = 9100


class IminConnection(BaseModel):
    address: Optional[str] = None
    port: Optional[int] = None
    printer_type: Literal["SPI", "USB", "BLUETOOTH"] = "SPI"

# ==================== Payloads ====================

class _BasePayload(BaseModel):
    items: List[PrintItem] = Field(min_length=1)
    options: PrintOptions = Field(default_factory=PrintOptions)


class EscPosPayload(_BasePayload):
    driver: Literal["escpos"]
    connection: EscPosConnection = Field(default_factory=EscPosConnection)


class XPrinterPayload(_BasePayload):
    driver: Literal["xprinter"]
    connection: XPrinterConnection = Field(default_factory=XPrinterConnection)


class EpsonPayload(_BasePayload):
    driver: Literal["epson"]
    connection: EpsonConnection = Field(default_factory=EpsonConnection)


class IminPayload(_BasePayload):
    driver: Literal["imin"]
    connection: IminConnection = Field(default_factory=IminConnection)


PrintPayload = Annotated[
    Union[EscPosPayload, XPrinterPayload, EpsonPayload, IminPayload],
    Field(discriminator="driver")
]

_payload_adapter = TypeAdapter(PrintPayload)


def decode_payload(raw):
    """Parse a payload from JSON text, bytes, dict or an existing model"""
    if isinstance(raw, BaseModel):
        return raw
    try:
        if isinstance(raw, (str, bytes)):
            return _payload_adapter.validate_json(raw)
        return _payload_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid print payload: {e}") from e


def encode_payload(payload) -> str:
    """Canonical JSON form stored in print_jobs.payload"""
    return decode_payload(payload).model_dump_json()


def fill_connection(payload, printer):
    """
    Fill connection parameters from the printer record when the producer did not
    pass any. Returns the payload unchanged when there is nothing to fill.
    """
    if printer is None or "connection" in payload.model_fields_set:
        return payload
    if printer.kind.value != payload.driver:
        return payload

    connection_model = type(payload).model_fields["connection"].annotation
    connection = connection_model.model_validate(printer.connection_params or {})
    return payload.model_copy(update={"connection": connection})
