import io
from typing import List, Tuple

from elftools.common.exceptions import ELFError, ELFParseError
from elftools.elf.constants import P_FLAGS
from elftools.elf.elffile import ELFFile

from ilgraph import const
from ilgraph.exceptions import MalformedLayout, TruncatedImage, UnsupportedFormat

from .base import BaseLoader, Permission, Segment

ELF_MAGIC = b"\x7fELF"

_MACHINES = {
    "EM_386": const.MACHINE_X86,
    "EM_X86_64": const.MACHINE_X86_64,
    "EM_ARM": const.MACHINE_ARM,
    "EM_AARCH64": const.MACHINE_ARM64,
}


class ELFLoader(BaseLoader):
    """The ELF file loader."""

    format_name = const.FORMAT_ELF

    @staticmethod
    def _get_permissions(p_flags: int) -> Permission:
        permissions = Permission.NONE

        if p_flags & P_FLAGS.PF_R:
            permissions |= Permission.READ
        if p_flags & P_FLAGS.PF_W:
            permissions |= Permission.WRITE
        if p_flags & P_FLAGS.PF_X:
            permissions |= Permission.EXECUTE

        return permissions

    def _open(self) -> ELFFile:
        try:
            elffile = ELFFile(io.BytesIO(self.data))
        except ELFParseError as e:
            raise TruncatedImage(f"Failed to read ELF header: {e}", table="ELF header") from e
        except ELFError as e:
            raise UnsupportedFormat(f"Invalid ELF header: {e}", table="e_ident") from e

        if not elffile.little_endian:
            raise UnsupportedFormat("Only little-endian ELF is supported", table="e_ident")

        phnum = elffile["e_phnum"]
        phentsize = elffile["e_phentsize"]

        if phnum and phentsize != elffile.structs.Elf_Phdr.sizeof():
            raise MalformedLayout(
                f"Unexpected program header size {phentsize}",
                table="program headers",
                offset=elffile["e_phoff"],
            )

        self._require(elffile["e_phoff"], phnum * phentsize, "program headers")

        return elffile

    def _parse(self) -> Tuple[str, int, int, List[Segment]]:
        elffile = self._open()

        segments = []
        image_base = None

        try:
            load_segments = list(elffile.iter_segments(type="PT_LOAD"))
        except ELFError as e:
            raise MalformedLayout(
                f"Failed to read program headers: {e}", table="program headers"
            ) from e

        for index, segment in enumerate(load_segments):
            header = segment.header

            if header.p_filesz > header.p_memsz:
                raise MalformedLayout(
                    "Segment file size exceeds its memory size",
                    table="program headers",
                    index=index,
                    offset=header.p_vaddr,
                )

            if image_base is None:
                image_base = max(header.p_vaddr - header.p_offset, 0)

            segments.append(
                Segment(
                    name=f"LOAD{len(segments)}",
                    file_offset=header.p_offset,
                    file_size=header.p_filesz,
                    virtual_address=header.p_vaddr,
                    virtual_size=header.p_memsz,
                    permissions=self._get_permissions(header.p_flags),
                )
            )

        machine = _MACHINES.get(elffile["e_machine"], const.MACHINE_UNKNOWN)
        pointer_size = elffile.elfclass // 8

        return machine, pointer_size, image_base or 0, segments
