import re
from typing import Optional, Union

from .exceptions import InvalidOption

_HEX_PATTERN = re.compile(r"^[0-9A-Fa-f]+$")


def to_signed(value: int, size: int = 8) -> int:
    """Convert an unsigned integer to signed."""
    nbits = size * 8
    if value >= (1 << (nbits - 1)):
        return value - (1 << nbits)
    return value


def read_c_string(data: Union[bytes, memoryview], offset: int, limit: int) -> Optional[bytes]:
    """Read a NUL terminated string, return None if no terminator is found
    within `limit` bytes."""
    end = min(len(data), offset + limit)

    for pos in range(offset, end):
        if data[pos] == 0:
            return bytes(data[offset:pos])

    return None


def parse_hex_address(value: Union[int, str]) -> int:
    """Parse an address given as an integer or a hexadecimal string.

    The string may carry a `0x` prefix, must contain hexadecimal digits only,
    fit in 64 bits and must not be zero.
    """
    if isinstance(value, bool):
        raise InvalidOption(f"Invalid address: {value!r}")

    if isinstance(value, int):
        address = value

    elif isinstance(value, str):
        text = value.strip()
        if text[:2].lower() == "0x":
            text = text[2:]

        if not _HEX_PATTERN.match(text) or len(text) > 16:
            raise InvalidOption(f"Invalid address: {value!r}")

        address = int(text, 16)

    else:
        raise InvalidOption(f"Invalid address: {value!r}")

    if address <= 0 or address > 0xFFFFFFFFFFFFFFFF:
        raise InvalidOption(f"Invalid address: {value!r}")

    return address
