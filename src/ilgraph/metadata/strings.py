from typing import Optional

from ilgraph.const import INVALID_INDEX
from ilgraph.exceptions import MalformedMetadata


class StringTable:
    """NUL terminated UTF-8 strings referenced by offset.

    The table keeps a reference to the metadata blob and its bounds only,
    strings are decoded on demand.

    Args:
        data: The whole metadata blob.
        start: Offset of the string table in the blob.
        size: Size of the string table.
    """

    def __init__(self, data: bytes, start: int, size: int):
        self._data = data
        self._start = start
        self._size = size

    @property
    def size(self) -> int:
        return self._size

    def _find_end(self, offset: int) -> Optional[int]:
        if offset < 0 or offset >= self._size:
            return None

        end = self._data.find(b"\x00", self._start + offset, self._start + self._size)
        return None if end < 0 else end

    def contains(self, offset: int) -> bool:
        """Check that a string starts at `offset` and is terminated inside
        the table."""
        return offset == INVALID_INDEX or self._find_end(offset) is not None

    def get(self, offset: int) -> str:
        if offset == INVALID_INDEX:
            return ""

        end = self._find_end(offset)
        if end is None:
            raise MalformedMetadata(
                "String offset outside of the string table or unterminated",
                table="strings",
                offset=offset,
            )

        return self._data[self._start + offset : end].decode("utf-8", errors="replace")
