import io
from typing import List, Tuple

import lief

from ilgraph import const
from ilgraph.exceptions import UnsupportedFormat

from .base import BaseLoader, Permission, Segment

MH_MAGIC = 0xFEEDFACE
MH_MAGIC_64 = 0xFEEDFACF
FAT_MAGIC = 0xCAFEBABE

# Java class files share the fat magic, real fat binaries hold few slices.
MAX_FAT_ARCHS = 0x20

MACH_HEADER_SIZE = 28
MACH_HEADER_64_SIZE = 32

VM_PROT_READ = 0x1
VM_PROT_WRITE = 0x2
VM_PROT_EXECUTE = 0x4

CPU_TYPE_X86 = 7
CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_ARM = 12
CPU_TYPE_ARM64 = 0x0100000C

_MACHINES = {
    CPU_TYPE_X86: const.MACHINE_X86,
    CPU_TYPE_X86_64: const.MACHINE_X86_64,
    CPU_TYPE_ARM: const.MACHINE_ARM,
    CPU_TYPE_ARM64: const.MACHINE_ARM64,
}


class MachoLoader(BaseLoader):
    """The Mach-O file loader."""

    format_name = const.FORMAT_MACHO

    @staticmethod
    def _get_permissions(prot: int) -> Permission:
        permissions = Permission.NONE

        if prot & VM_PROT_READ:
            permissions |= Permission.READ
        if prot & VM_PROT_WRITE:
            permissions |= Permission.WRITE
        if prot & VM_PROT_EXECUTE:
            permissions |= Permission.EXECUTE

        return permissions

    def _check_headers(self):
        """Check the fixed size headers before handing the buffer to lief."""
        self._require(0, 8, "Mach-O header")

        if int.from_bytes(self.data[:4], byteorder="big") == FAT_MAGIC:
            nfat_arch = int.from_bytes(self.data[4:8], byteorder="big")

            if not nfat_arch or nfat_arch > MAX_FAT_ARCHS:
                raise UnsupportedFormat("Invalid number of fat slices", table="fat header")

        elif int.from_bytes(self.data[:4], byteorder="little") == MH_MAGIC_64:
            self._require(0, MACH_HEADER_64_SIZE, "Mach-O header")

        else:
            self._require(0, MACH_HEADER_SIZE, "Mach-O header")

    def _select_slice(self, fat_binary: lief.MachO.FatBinary) -> lief.MachO.Binary:
        """Select a slice of a universal binary, prefer ARM64 and then any
        64-bit slice."""
        binaries = list(fat_binary)

        if not binaries:
            raise UnsupportedFormat("No slice in universal binary", table="fat header")

        selected = next(
            (b for b in binaries if int(b.header.cpu_type) == CPU_TYPE_ARM64), None
        )

        if selected is None:
            selected = next((b for b in binaries if b.header.is_64bit), binaries[0])

        if len(binaries) > 1:
            self.logger.info(
                f"Select slice of cputype {hex(int(selected.header.cpu_type))} "
                f"from universal binary."
            )

        return selected

    def _parse(self) -> Tuple[str, int, int, List[Segment]]:
        self._check_headers()

        fat_binary = lief.MachO.parse(io.BytesIO(self.data))  # type: ignore

        if fat_binary is None:
            raise UnsupportedFormat("Failed to parse Mach-O image", table="Mach-O header")

        binary = self._select_slice(fat_binary)
        slice_offset = binary.fat_offset

        self._require(slice_offset, 4, "fat slice")

        segments = []
        image_base = None

        for segment in binary.segments:
            name = str(segment.name)

            if name == "__PAGEZERO" or not segment.virtual_size:
                continue

            if image_base is None and segment.file_offset == 0 and segment.file_size:
                image_base = segment.virtual_address

            segments.append(
                Segment(
                    name=name,
                    file_offset=slice_offset + segment.file_offset,
                    file_size=min(segment.file_size, segment.virtual_size),
                    virtual_address=segment.virtual_address,
                    virtual_size=segment.virtual_size,
                    permissions=self._get_permissions(segment.init_protection),
                )
            )

        cpu_type = int(binary.header.cpu_type)
        machine = _MACHINES.get(cpu_type, const.MACHINE_UNKNOWN)
        pointer_size = 8 if binary.header.is_64bit else 4

        return machine, pointer_size, image_base or 0, segments
