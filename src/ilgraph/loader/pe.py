import io
from typing import List, Tuple

import lief

from ilgraph import const
from ilgraph.exceptions import UnsupportedFormat

from .base import BaseLoader, Permission, Segment

IMAGE_DOS_HEADER_SIZE = 0x40

IMAGE_NT_OPTIONAL_HDR32_MAGIC = 0x10B
IMAGE_NT_OPTIONAL_HDR64_MAGIC = 0x20B

IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

_MACHINES = {
    0x014C: const.MACHINE_X86,
    0x8664: const.MACHINE_X86_64,
    0x01C0: const.MACHINE_ARM,
    0x01C4: const.MACHINE_ARM,
    0xAA64: const.MACHINE_ARM64,
}


class PELoader(BaseLoader):
    """The PE file loader."""

    format_name = const.FORMAT_PE

    @staticmethod
    def _get_permissions(characteristics: int) -> Permission:
        permissions = Permission.NONE

        if characteristics & IMAGE_SCN_MEM_READ:
            permissions |= Permission.READ
        if characteristics & IMAGE_SCN_MEM_WRITE:
            permissions |= Permission.WRITE
        if characteristics & (IMAGE_SCN_MEM_EXECUTE | IMAGE_SCN_CNT_CODE):
            permissions |= Permission.EXECUTE

        return permissions

    def _parse(self) -> Tuple[str, int, int, List[Segment]]:
        self._require(0, IMAGE_DOS_HEADER_SIZE, "DOS header")

        binary = lief.PE.parse(io.BytesIO(self.data))  # type: ignore

        if binary is None:
            raise UnsupportedFormat("Failed to parse PE image", table="PE header")

        magic = int(binary.optional_header.magic)

        if magic == IMAGE_NT_OPTIONAL_HDR32_MAGIC:
            pointer_size = 4
        elif magic == IMAGE_NT_OPTIONAL_HDR64_MAGIC:
            pointer_size = 8
        else:
            raise UnsupportedFormat(
                f"Unknown optional header magic {hex(magic)}", table="optional header"
            )

        image_base = binary.optional_header.imagebase

        segments = []

        for section in binary.sections:
            virtual_size = section.virtual_size or section.sizeof_raw_data

            segments.append(
                Segment(
                    name=str(section.name),
                    file_offset=section.pointerto_raw_data,
                    file_size=min(section.sizeof_raw_data, virtual_size),
                    virtual_address=image_base + section.virtual_address,
                    virtual_size=virtual_size,
                    permissions=self._get_permissions(section.characteristics),
                )
            )

        machine = _MACHINES.get(int(binary.header.machine), const.MACHINE_UNKNOWN)

        return machine, pointer_size, image_base, segments
