"""
Payload Codec

Converts between the text an operator types (hexadecimal digits or
literal single-byte text) and the bytes placed on the wire.

Hex input:
    "48 65 6C 6C 6F"  ->  b"Hello"   (whitespace between pairs is dropped)

Ascii input:
    "Hello"           ->  b"Hello"   (each character must fit in one byte)
"""

import re
import string
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidAscii, InvalidHex

_WHITESPACE = re.compile(r"\s+")
_HEX_DIGITS = set(string.hexdigits)


class PayloadEncoding(Enum):
    """Textual form a payload was authored in"""
    HEX = "hex"
    ASCII = "ascii"

    @classmethod
    def parse(cls, value: Any) -> "PayloadEncoding":
        """Accept an enum member or its name/value in any case"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        raise ValueError(f"unknown payload encoding: {value!r}")


@dataclass(frozen=True)
class Payload:
    """
    Bytes plus the form they were authored in

    Attributes:
        data: Raw bytes sent or received
        encoding: Hex or Ascii
        text: Operator text as typed (None for bytes off the wire)
    """
    data: bytes
    encoding: PayloadEncoding = PayloadEncoding.HEX
    text: Optional[str] = None

    def __len__(self) -> int:
        return len(self.data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encoding": self.encoding.value,
            "data": decode(self),
            "length": len(self.data),
        }


def normalize_hex(text: str) -> str:
    """Strip whitespace from hex text, keeping the digits' case"""
    return _WHITESPACE.sub("", text)


def encode(text: str, form: PayloadEncoding) -> Payload:
    """
    Encode operator text into a payload

    Args:
        text: Text as typed
        form: PayloadEncoding.HEX or PayloadEncoding.ASCII

    Returns:
        Payload carrying the bytes and the original text

    Raises:
        InvalidHex: odd digit count or non-hex characters
        InvalidAscii: a character outside the single-byte range
    """
    form = PayloadEncoding.parse(form)

    if form == PayloadEncoding.HEX:
        digits = normalize_hex(text)
        bad = [c for c in digits if c not in _HEX_DIGITS]
        if bad:
            raise InvalidHex(text, f"non-hex character {bad[0]!r}")
        if len(digits) % 2:
            raise InvalidHex(text, f"odd number of hex digits ({len(digits)})")
        return Payload(data=bytes.fromhex(digits), encoding=form, text=text)

    try:
        data = text.encode("latin-1")
    except UnicodeEncodeError as e:
        raise InvalidAscii(
            text, f"character {text[e.start]!r} at offset {e.start} does not fit in one byte"
        ) from e
    return Payload(data=data, encoding=form, text=text)


def decode(payload: Payload) -> str:
    """Render a payload back to text in its recorded form"""
    if payload.encoding == PayloadEncoding.HEX:
        if payload.text is not None:
            return normalize_hex(payload.text)
        return payload.data.hex()

    if payload.text is not None:
        return payload.text
    return payload.data.decode("latin-1")


def payload_from_bytes(data: bytes, form: PayloadEncoding = PayloadEncoding.HEX) -> Payload:
    """Wrap bytes that did not come from operator text (e.g. received data)"""
    return Payload(data=bytes(data), encoding=PayloadEncoding.parse(form))
