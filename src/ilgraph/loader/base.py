import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Flag
from typing import List, Optional, Tuple

from ilgraph.exceptions import MalformedLayout, TruncatedImage
from ilgraph.log import get_logger


class Permission(Flag):
    NONE = 0
    READ = 1
    WRITE = 2
    EXECUTE = 4


@dataclass
class Segment:
    name: str

    file_offset: int
    file_size: int

    virtual_address: int
    virtual_size: int

    permissions: Permission = Permission.NONE

    @property
    def start(self) -> int:
        return self.virtual_address

    @property
    def end(self) -> int:
        return self.virtual_address + self.virtual_size

    @property
    def is_executable(self) -> bool:
        return bool(self.permissions & Permission.EXECUTE)

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end


class BinaryImage:
    """Unified addressable view of an executable image.

    Segments are sorted by virtual address and never overlap. The raw buffer
    is shared read-only by every component of a session.
    """

    def __init__(
        self,
        data: bytes,
        format_name: str,
        machine: str,
        pointer_size: int,
        image_base: int,
        segments: List[Segment],
        is_dumped: bool = False,
    ):
        self._data = data
        self._format_name = format_name
        self._machine = machine
        self._pointer_size = pointer_size
        self._image_base = image_base
        self._segments = segments
        self._is_dumped = is_dumped

    @property
    def data(self) -> bytes:
        return self._data

    @property
    def format_name(self) -> str:
        return self._format_name

    @property
    def machine(self) -> str:
        return self._machine

    @property
    def pointer_size(self) -> int:
        return self._pointer_size

    @property
    def is_64bit(self) -> bool:
        return self._pointer_size == 8

    @property
    def image_base(self) -> int:
        return self._image_base

    @property
    def segments(self) -> List[Segment]:
        return self._segments

    @property
    def is_dumped(self) -> bool:
        return self._is_dumped

    @property
    def executable_segments(self) -> List[Segment]:
        return [segment for segment in self._segments if segment.is_executable]

    @property
    def data_segments(self) -> List[Segment]:
        return [
            segment
            for segment in self._segments
            if not segment.is_executable and segment.file_size
        ]

    def __repr__(self) -> str:
        return (
            f"BinaryImage(format={self._format_name}, machine={self._machine}, "
            f"segments={len(self._segments)})"
        )


class BaseLoader(ABC):
    """Executable image loader.

    Headers are parsed by pyelftools and lief. The offsets and lengths they
    report are untrusted, `_check_layout` bounds every segment against the
    buffer before a `BinaryImage` is built.

    Args:
        data: Raw bytes of the image.
        dump_base: Treat the image as a memory dump taken at this address.
        logger: The logger to print log.
    """

    format_name: str = ""

    def __init__(
        self,
        data: bytes,
        dump_base: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.data = data
        self.dump_base = dump_base
        self.logger = logger or get_logger(__name__)

    def _require(self, offset: int, size: int, what: str):
        """Check that `size` bytes at `offset` lie inside the buffer."""
        if offset < 0 or size < 0 or offset + size > len(self.data):
            raise TruncatedImage(
                f"{what} exceeds the image buffer ({len(self.data)} bytes)",
                table=what,
                offset=offset,
            )

    def _rebase_for_dump(self, segments: List[Segment], image_base: int) -> List[Segment]:
        """Map segments of a memory dump: the file is the memory image itself."""
        assert self.dump_base is not None

        dumped = []

        for segment in segments:
            rva = segment.virtual_address - image_base

            dumped.append(
                Segment(
                    name=segment.name,
                    file_offset=rva,
                    file_size=segment.virtual_size,
                    virtual_address=self.dump_base + rva,
                    virtual_size=segment.virtual_size,
                    permissions=segment.permissions,
                )
            )

        return dumped

    def _check_layout(self, segments: List[Segment]):
        """Check file bounds and virtual address ordering of segments."""
        previous: Optional[Segment] = None

        for index, segment in enumerate(segments):
            if segment.file_size:
                self._require(segment.file_offset, segment.file_size, segment.name)

            if segment.end > 0xFFFFFFFFFFFFFFFF:
                raise MalformedLayout(
                    f"Segment '{segment.name}' exceeds the address space",
                    table="segments",
                    index=index,
                    offset=segment.virtual_address,
                )

            if previous and segment.start < previous.end:
                problem = (
                    "non-monotonic" if segment.start < previous.start else "overlapping"
                )
                raise MalformedLayout(
                    f"Segment '{segment.name}' is {problem} with '{previous.name}'",
                    table="segments",
                    index=index,
                    offset=segment.virtual_address,
                )

            previous = segment

    @abstractmethod
    def _parse(self) -> Tuple[str, int, int, List[Segment]]:
        """Parse headers, return machine, pointer size, image base and the
        segments in declaration order."""
        pass

    def load(self) -> BinaryImage:
        """Load the image."""
        machine, pointer_size, image_base, segments = self._parse()

        segments = [segment for segment in segments if segment.virtual_size]

        if self.dump_base is not None:
            segments = self._rebase_for_dump(segments, image_base)
            image_base = self.dump_base

        self._check_layout(segments)

        self.logger.debug(
            f"Loaded {self.format_name} image: machine={machine}, "
            f"segments={len(segments)}, base={hex(image_base)}"
        )

        return BinaryImage(
            data=self.data,
            format_name=self.format_name,
            machine=machine,
            pointer_size=pointer_size,
            image_base=image_base,
            segments=segments,
            is_dumped=self.dump_base is not None,
        )
