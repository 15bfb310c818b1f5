from bisect import bisect_right
from typing import List, Optional

from .loader import Segment


class AddressTranslator:
    """Map between file offsets and virtual addresses of an image.

    Lookups are binary searches over the segment table captured at
    construction. Both directions return None for unmapped values, including
    virtual addresses that fall in the zero-fill tail of a segment.

    Args:
        segments: Non-overlapping segments of the image.
    """

    def __init__(self, segments: List[Segment]):
        self._by_address = sorted(segments, key=lambda s: s.virtual_address)
        self._address_starts = [s.virtual_address for s in self._by_address]

        self._by_offset = sorted(
            (s for s in segments if s.file_size), key=lambda s: s.file_offset
        )
        self._offset_starts = [s.file_offset for s in self._by_offset]

    @property
    def segments(self) -> List[Segment]:
        return self._by_address

    def segment_for(self, address: int) -> Optional[Segment]:
        """Find the segment containing a virtual address."""
        pos = bisect_right(self._address_starts, address) - 1
        if pos < 0:
            return None

        segment = self._by_address[pos]
        if not segment.contains(address):
            return None

        return segment

    def is_executable(self, address: int) -> bool:
        segment = self.segment_for(address)
        return bool(segment and segment.is_executable)

    def virtual_to_file_offset(self, address: int) -> Optional[int]:
        segment = self.segment_for(address)
        if not segment:
            return None

        delta = address - segment.virtual_address
        if delta >= segment.file_size:
            return None

        return segment.file_offset + delta

    def file_offset_to_virtual(self, offset: int) -> Optional[int]:
        # File ranges of segments may overlap (e.g. shared headers), the
        # candidates are checked from the highest start downwards.
        pos = bisect_right(self._offset_starts, offset) - 1

        while pos >= 0:
            segment = self._by_offset[pos]
            delta = offset - segment.file_offset

            if delta < segment.file_size:
                return segment.virtual_address + delta

            pos -= 1

        return None
