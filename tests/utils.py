import ctypes
import struct
from typing import Dict, List, Optional, Sequence, Tuple

from ilgraph import const
from ilgraph.const import METADATA_SANITY
from ilgraph.metadata import get_layout
from ilgraph.metadata import layouts as tables

PF_X = 0x1
PF_W = 0x2
PF_R = 0x4

EM_ARM = 40
EM_AARCH64 = 183

SHT_STRTAB = 3
SHT_DYNSYM = 11

STB_GLOBAL = 1
STT_OBJECT = 1

IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_ARM = 12
CPU_TYPE_ARM64 = 0x0100000C


def round_up(x: int, n: int) -> int:
    return (x + n - 1) // n * n


class Elf32Header(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("e_ident", ctypes.c_uint8 * 16),
        ("e_type", ctypes.c_uint16),
        ("e_machine", ctypes.c_uint16),
        ("e_version", ctypes.c_uint32),
        ("e_entry", ctypes.c_uint32),
        ("e_phoff", ctypes.c_uint32),
        ("e_shoff", ctypes.c_uint32),
        ("e_flags", ctypes.c_uint32),
        ("e_ehsize", ctypes.c_uint16),
        ("e_phentsize", ctypes.c_uint16),
        ("e_phnum", ctypes.c_uint16),
        ("e_shentsize", ctypes.c_uint16),
        ("e_shnum", ctypes.c_uint16),
        ("e_shstrndx", ctypes.c_uint16),
    ]


class Elf64Header(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("e_ident", ctypes.c_uint8 * 16),
        ("e_type", ctypes.c_uint16),
        ("e_machine", ctypes.c_uint16),
        ("e_version", ctypes.c_uint32),
        ("e_entry", ctypes.c_uint64),
        ("e_phoff", ctypes.c_uint64),
        ("e_shoff", ctypes.c_uint64),
        ("e_flags", ctypes.c_uint32),
        ("e_ehsize", ctypes.c_uint16),
        ("e_phentsize", ctypes.c_uint16),
        ("e_phnum", ctypes.c_uint16),
        ("e_shentsize", ctypes.c_uint16),
        ("e_shnum", ctypes.c_uint16),
        ("e_shstrndx", ctypes.c_uint16),
    ]


class Elf32ProgramHeader(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("p_type", ctypes.c_uint32),
        ("p_offset", ctypes.c_uint32),
        ("p_vaddr", ctypes.c_uint32),
        ("p_paddr", ctypes.c_uint32),
        ("p_filesz", ctypes.c_uint32),
        ("p_memsz", ctypes.c_uint32),
        ("p_flags", ctypes.c_uint32),
        ("p_align", ctypes.c_uint32),
    ]


class Elf64ProgramHeader(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("p_type", ctypes.c_uint32),
        ("p_flags", ctypes.c_uint32),
        ("p_offset", ctypes.c_uint64),
        ("p_vaddr", ctypes.c_uint64),
        ("p_paddr", ctypes.c_uint64),
        ("p_filesz", ctypes.c_uint64),
        ("p_memsz", ctypes.c_uint64),
        ("p_align", ctypes.c_uint64),
    ]


class Elf32SectionHeader(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("sh_name", ctypes.c_uint32),
        ("sh_type", ctypes.c_uint32),
        ("sh_flags", ctypes.c_uint32),
        ("sh_addr", ctypes.c_uint32),
        ("sh_offset", ctypes.c_uint32),
        ("sh_size", ctypes.c_uint32),
        ("sh_link", ctypes.c_uint32),
        ("sh_info", ctypes.c_uint32),
        ("sh_addralign", ctypes.c_uint32),
        ("sh_entsize", ctypes.c_uint32),
    ]


class Elf64SectionHeader(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("sh_name", ctypes.c_uint32),
        ("sh_type", ctypes.c_uint32),
        ("sh_flags", ctypes.c_uint64),
        ("sh_addr", ctypes.c_uint64),
        ("sh_offset", ctypes.c_uint64),
        ("sh_size", ctypes.c_uint64),
        ("sh_link", ctypes.c_uint32),
        ("sh_info", ctypes.c_uint32),
        ("sh_addralign", ctypes.c_uint64),
        ("sh_entsize", ctypes.c_uint64),
    ]


class Elf32Symbol(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("st_name", ctypes.c_uint32),
        ("st_value", ctypes.c_uint32),
        ("st_size", ctypes.c_uint32),
        ("st_info", ctypes.c_uint8),
        ("st_other", ctypes.c_uint8),
        ("st_shndx", ctypes.c_uint16),
    ]


class Elf64Symbol(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("st_name", ctypes.c_uint32),
        ("st_info", ctypes.c_uint8),
        ("st_other", ctypes.c_uint8),
        ("st_shndx", ctypes.c_uint16),
        ("st_value", ctypes.c_uint64),
        ("st_size", ctypes.c_uint64),
    ]


class ImageDosHeader(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("e_magic", ctypes.c_uint16),
        ("e_reserved", ctypes.c_uint8 * 58),
        ("e_lfanew", ctypes.c_uint32),
    ]


class ImageFileHeader(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("Machine", ctypes.c_uint16),
        ("NumberOfSections", ctypes.c_uint16),
        ("TimeDateStamp", ctypes.c_uint32),
        ("PointerToSymbolTable", ctypes.c_uint32),
        ("NumberOfSymbols", ctypes.c_uint32),
        ("SizeOfOptionalHeader", ctypes.c_uint16),
        ("Characteristics", ctypes.c_uint16),
    ]


class ImageOptionalHeader64(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("Magic", ctypes.c_uint16),
        ("MajorLinkerVersion", ctypes.c_uint8),
        ("MinorLinkerVersion", ctypes.c_uint8),
        ("SizeOfCode", ctypes.c_uint32),
        ("SizeOfInitializedData", ctypes.c_uint32),
        ("SizeOfUninitializedData", ctypes.c_uint32),
        ("AddressOfEntryPoint", ctypes.c_uint32),
        ("BaseOfCode", ctypes.c_uint32),
        ("ImageBase", ctypes.c_uint64),
        ("SectionAlignment", ctypes.c_uint32),
        ("FileAlignment", ctypes.c_uint32),
        ("MajorOperatingSystemVersion", ctypes.c_uint16),
        ("MinorOperatingSystemVersion", ctypes.c_uint16),
        ("MajorImageVersion", ctypes.c_uint16),
        ("MinorImageVersion", ctypes.c_uint16),
        ("MajorSubsystemVersion", ctypes.c_uint16),
        ("MinorSubsystemVersion", ctypes.c_uint16),
        ("Win32VersionValue", ctypes.c_uint32),
        ("SizeOfImage", ctypes.c_uint32),
        ("SizeOfHeaders", ctypes.c_uint32),
        ("CheckSum", ctypes.c_uint32),
        ("Subsystem", ctypes.c_uint16),
        ("DllCharacteristics", ctypes.c_uint16),
        ("SizeOfStackReserve", ctypes.c_uint64),
        ("SizeOfStackCommit", ctypes.c_uint64),
        ("SizeOfHeapReserve", ctypes.c_uint64),
        ("SizeOfHeapCommit", ctypes.c_uint64),
        ("LoaderFlags", ctypes.c_uint32),
        ("NumberOfRvaAndSizes", ctypes.c_uint32),
        ("DataDirectory", ctypes.c_uint32 * 32),
    ]


class ImageSectionHeader(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("Name", ctypes.c_char * 8),
        ("VirtualSize", ctypes.c_uint32),
        ("VirtualAddress", ctypes.c_uint32),
        ("SizeOfRawData", ctypes.c_uint32),
        ("PointerToRawData", ctypes.c_uint32),
        ("PointerToRelocations", ctypes.c_uint32),
        ("PointerToLinenumbers", ctypes.c_uint32),
        ("NumberOfRelocations", ctypes.c_uint16),
        ("NumberOfLinenumbers", ctypes.c_uint16),
        ("Characteristics", ctypes.c_uint32),
    ]


class MachHeader64(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("magic", ctypes.c_uint32),
        ("cputype", ctypes.c_uint32),
        ("cpusubtype", ctypes.c_uint32),
        ("filetype", ctypes.c_uint32),
        ("ncmds", ctypes.c_uint32),
        ("sizeofcmds", ctypes.c_uint32),
        ("flags", ctypes.c_uint32),
        ("reserved", ctypes.c_uint32),
    ]


class SegmentCommand64(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("cmd", ctypes.c_uint32),
        ("cmdsize", ctypes.c_uint32),
        ("segname", ctypes.c_char * 16),
        ("vmaddr", ctypes.c_uint64),
        ("vmsize", ctypes.c_uint64),
        ("fileoff", ctypes.c_uint64),
        ("filesize", ctypes.c_uint64),
        ("maxprot", ctypes.c_int32),
        ("initprot", ctypes.c_int32),
        ("nsects", ctypes.c_uint32),
        ("flags", ctypes.c_uint32),
    ]


class FatHeader(ctypes.BigEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("magic", ctypes.c_uint32),
        ("nfat_arch", ctypes.c_uint32),
    ]


class FatArch(ctypes.BigEndianStructure):
    _pack_ = 1
    _fields_ = [
        ("cputype", ctypes.c_uint32),
        ("cpusubtype", ctypes.c_uint32),
        ("offset", ctypes.c_uint32),
        ("size", ctypes.c_uint32),
        ("align", ctypes.c_uint32),
    ]


ElfSegment = Tuple[int, bytes, int, int]


def _build_symbol_sections(
    offset: int, symbols: Dict[str, int], is_64bit: bool
) -> Tuple[bytes, bytes, int]:
    """Build `.dynstr`, `.dynsym` and `.shstrtab` at file offset `offset`.

    Return the section data, the section header table and the index of
    `.shstrtab`.
    """
    shdr_class = Elf64SectionHeader if is_64bit else Elf32SectionHeader
    sym_class = Elf64Symbol if is_64bit else Elf32Symbol

    dynstr = bytearray(b"\x00")
    entries = [sym_class()]

    for name, value in symbols.items():
        entries.append(
            sym_class(
                st_name=len(dynstr),
                st_info=(STB_GLOBAL << 4) | STT_OBJECT,
                st_shndx=1,
                st_value=value,
                st_size=8,
            )
        )
        dynstr += name.encode() + b"\x00"

    dynsym = b"".join(bytes(entry) for entry in entries)
    shstrtab = b"\x00.dynstr\x00.dynsym\x00.shstrtab\x00"

    dynstr_offset = offset
    dynsym_offset = round_up(dynstr_offset + len(dynstr), 8)
    shstrtab_offset = dynsym_offset + len(dynsym)

    data = bytearray(dynstr)
    data += bytes(dynsym_offset - dynstr_offset - len(dynstr))
    data += dynsym + shstrtab

    section_headers = [
        shdr_class(),
        shdr_class(
            sh_name=1, sh_type=SHT_STRTAB, sh_offset=dynstr_offset, sh_size=len(dynstr)
        ),
        shdr_class(
            sh_name=9,
            sh_type=SHT_DYNSYM,
            sh_offset=dynsym_offset,
            sh_size=len(dynsym),
            sh_link=1,
            sh_info=1,
            sh_entsize=ctypes.sizeof(sym_class),
        ),
        shdr_class(
            sh_name=17, sh_type=SHT_STRTAB, sh_offset=shstrtab_offset, sh_size=len(shstrtab)
        ),
    ]

    return bytes(data), b"".join(bytes(header) for header in section_headers), 3


def build_elf(
    segments: Sequence[ElfSegment],
    machine: int = EM_AARCH64,
    is_64bit: bool = True,
    symbols: Optional[Dict[str, int]] = None,
) -> bytes:
    """Build an ELF image from `(vaddr, data, memsz, flags)` tuples.

    Given `symbols`, a `.dynsym` table holding them is appended after the
    segment data.
    """
    header_class = Elf64Header if is_64bit else Elf32Header
    phdr_class = Elf64ProgramHeader if is_64bit else Elf32ProgramHeader
    shdr_class = Elf64SectionHeader if is_64bit else Elf32SectionHeader

    phoff = ctypes.sizeof(header_class)
    data_offset = round_up(phoff + len(segments) * ctypes.sizeof(phdr_class), 0x10)

    program_headers = []
    body = bytearray()

    for vaddr, content, memsz, flags in segments:
        program_headers.append(
            phdr_class(
                p_type=1,
                p_flags=flags,
                p_offset=data_offset + len(body),
                p_vaddr=vaddr,
                p_paddr=vaddr,
                p_filesz=len(content),
                p_memsz=memsz,
                p_align=0x10,
            )
        )
        body += content
        body += bytes(round_up(len(content), 0x10) - len(content))

    shoff = shnum = shstrndx = 0

    if symbols is not None:
        section_data, section_headers, shstrndx = _build_symbol_sections(
            data_offset + len(body), symbols, is_64bit
        )
        body += section_data
        body += bytes(round_up(len(body), 0x10) - len(body))

        shoff = data_offset + len(body)
        shnum = len(section_headers) // ctypes.sizeof(shdr_class)
        body += section_headers

    ident = b"\x7fELF" + bytes([2 if is_64bit else 1, 1, 1]) + bytes(9)

    header = header_class(
        e_ident=(ctypes.c_uint8 * 16)(*ident),
        e_type=3,
        e_machine=machine,
        e_version=1,
        e_phoff=phoff,
        e_shoff=shoff,
        e_ehsize=ctypes.sizeof(header_class),
        e_phentsize=ctypes.sizeof(phdr_class),
        e_phnum=len(segments),
        e_shentsize=ctypes.sizeof(shdr_class),
        e_shnum=shnum,
        e_shstrndx=shstrndx,
    )

    headers = bytes(header) + b"".join(bytes(phdr) for phdr in program_headers)

    return headers + bytes(data_offset - len(headers)) + bytes(body)


def build_pe(
    sections: Sequence[Tuple[str, int, bytes, int, int]],
    image_base: int = 0x140000000,
    machine: int = 0x8664,
) -> bytes:
    """Build a PE32+ image from `(name, rva, data, vsize, characteristics)`
    tuples."""
    headers_size = (
        ctypes.sizeof(ImageDosHeader)
        + 4
        + ctypes.sizeof(ImageFileHeader)
        + ctypes.sizeof(ImageOptionalHeader64)
        + len(sections) * ctypes.sizeof(ImageSectionHeader)
    )
    raw_offset = round_up(headers_size, 0x200)

    section_headers = []
    body = bytearray()
    image_size = 0x1000

    for name, rva, content, vsize, characteristics in sections:
        raw_size = round_up(len(content), 0x200)
        section_headers.append(
            ImageSectionHeader(
                Name=name.encode(),
                VirtualSize=vsize,
                VirtualAddress=rva,
                SizeOfRawData=raw_size,
                PointerToRawData=raw_offset + len(body) if raw_size else 0,
                Characteristics=characteristics,
            )
        )
        body += content + bytes(raw_size - len(content))
        image_size = max(image_size, round_up(rva + vsize, 0x1000))

    optional_header = ImageOptionalHeader64(
        Magic=0x20B,
        ImageBase=image_base,
        SectionAlignment=0x1000,
        FileAlignment=0x200,
        MajorOperatingSystemVersion=6,
        MajorSubsystemVersion=6,
        SizeOfImage=image_size,
        SizeOfHeaders=raw_offset,
        Subsystem=3,
        NumberOfRvaAndSizes=16,
    )

    headers = (
        bytes(ImageDosHeader(e_magic=0x5A4D, e_lfanew=ctypes.sizeof(ImageDosHeader)))
        + b"PE\x00\x00"
        + bytes(
            ImageFileHeader(
                Machine=machine,
                NumberOfSections=len(sections),
                SizeOfOptionalHeader=ctypes.sizeof(ImageOptionalHeader64),
                Characteristics=0x22,
            )
        )
        + bytes(optional_header)
        + b"".join(bytes(section) for section in section_headers)
    )

    return headers + bytes(raw_offset - len(headers)) + bytes(body)


def build_macho(
    segments: Sequence[Tuple[str, int, Optional[bytes], int, int]],
    cputype: int = CPU_TYPE_ARM64,
) -> bytes:
    """Build a 64-bit Mach-O image from `(name, vmaddr, data, vmsize,
    initprot)` tuples.

    Data of segments is laid out from file offset 0 in 0x1000 steps, the
    headers are written over the start of the first one. Segments without
    data are zero-fill.
    """
    commands = []
    body = bytearray()

    for name, vmaddr, content, vmsize, initprot in segments:
        fileoff = len(body) if content else 0
        filesize = len(content) if content else 0

        commands.append(
            SegmentCommand64(
                cmd=0x19,
                cmdsize=ctypes.sizeof(SegmentCommand64),
                segname=name.encode(),
                vmaddr=vmaddr,
                vmsize=vmsize,
                fileoff=fileoff,
                filesize=filesize,
                maxprot=7,
                initprot=initprot,
            )
        )

        if content:
            body += content + bytes(round_up(len(content), 0x1000) - len(content))

    header = MachHeader64(
        magic=0xFEEDFACF,
        cputype=cputype,
        filetype=2,
        ncmds=len(commands),
        sizeofcmds=len(commands) * ctypes.sizeof(SegmentCommand64),
    )
    headers = bytes(header) + b"".join(bytes(command) for command in commands)

    assert len(body) >= len(headers)

    return headers + bytes(body[len(headers) :])


def build_fat(slices: Sequence[Tuple[int, bytes]]) -> bytes:
    """Build a universal binary from `(cputype, data)` tuples."""
    offset = 0x1000
    archs = []
    body = bytearray()

    for cputype, content in slices:
        archs.append(
            FatArch(
                cputype=cputype,
                offset=offset + len(body),
                size=len(content),
                align=12,
            )
        )
        body += content + bytes(round_up(len(content), 0x1000) - len(content))

    headers = bytes(FatHeader(magic=0xCAFEBABE, nfat_arch=len(archs))) + b"".join(
        bytes(arch) for arch in archs
    )

    return headers + bytes(offset - len(headers)) + bytes(body)


class DataSegment:
    """Lay out runtime structures in a data segment at a fixed address."""

    def __init__(self, address: int, pointer_size: int = 8):
        self.address = address
        self.pointer_size = pointer_size
        self.data = bytearray()

    def tell(self) -> int:
        return self.address + len(self.data)

    def align(self, n: int = 8):
        self.data += bytes(round_up(len(self.data), n) - len(self.data))

    def put_bytes(self, data: bytes) -> int:
        self.align()
        address = self.tell()
        self.data += data
        return address

    def put_string(self, value: str) -> int:
        return self.put_bytes(value.encode() + b"\x00")

    def put_pointers(self, values: Sequence[int]) -> int:
        fmt = "<Q" if self.pointer_size == 8 else "<I"
        return self.put_bytes(b"".join(struct.pack(fmt, v) for v in values))

    def put_i32(self, values: Sequence[int]) -> int:
        return self.put_bytes(struct.pack(f"<{len(values)}i", *values))

    def put_struct(self, names: Sequence[str], values: Dict[str, int]) -> int:
        return self.put_pointers([values.get(name, 0) for name in names])


def put_code_registration(
    segment: DataSegment,
    version: float,
    modules: Dict[str, Sequence[int]],
    generic_method_pointers: Sequence[int] = (),
) -> int:
    """Write code generation modules and the code registration, return its
    address."""
    layout = get_layout(version)
    assert layout is not None

    module_addresses = []

    for name, pointers in modules.items():
        name_address = segment.put_string(name)
        pointers_address = segment.put_pointers(pointers) if pointers else 0

        module_addresses.append(
            segment.put_struct(
                layout.code_gen_module_fields,
                {
                    "module_name": name_address,
                    "method_pointer_count": len(pointers),
                    "method_pointers": pointers_address,
                },
            )
        )

    modules_address = segment.put_pointers(module_addresses)
    generic_address = (
        segment.put_pointers(generic_method_pointers) if generic_method_pointers else 0
    )

    return segment.put_struct(
        layout.code_registration_fields,
        {
            "generic_method_pointers_count": len(generic_method_pointers),
            "generic_method_pointers": generic_address,
            "code_gen_modules_count": len(module_addresses),
            "code_gen_modules": modules_address,
        },
    )


def put_metadata_registration(
    segment: DataSegment,
    version: float,
    field_offsets: Sequence[Optional[Sequence[int]]],
    generic_method_table: Sequence[Tuple[int, int]] = (),
) -> int:
    """Write the metadata registration, return its address.

    `field_offsets` holds the offsets of the fields of each type, None for
    types without an offset array. Entries of `generic_method_table` are
    `(method_spec, pointer_slot)` pairs.
    """
    layout = get_layout(version)
    assert layout is not None
    assert layout.generic_method_entry is not None

    arrays = [segment.put_i32(offsets) if offsets else 0 for offsets in field_offsets]
    offsets_address = segment.put_pointers(arrays) if arrays else 0

    entries = b"".join(
        bytes(layout.generic_method_entry(generic_method_index=spec, method_index=slot))
        for spec, slot in generic_method_table
    )
    table_address = segment.put_bytes(entries) if entries else 0

    sizes_address = segment.put_pointers([0] * len(field_offsets)) if field_offsets else 0

    return segment.put_struct(
        layout.metadata_registration_fields,
        {
            "generic_method_table_count": len(generic_method_table),
            "generic_method_table": table_address,
            "field_offsets_count": len(field_offsets),
            "field_offsets": offsets_address,
            "type_definitions_sizes_count": len(field_offsets),
            "type_definitions_sizes": sizes_address,
        },
    )


_TYPE_DEFAULTS = {
    "byval_type_index": -1,
    "declaring_type_index": -1,
    "parent_index": -1,
    "element_type_index": -1,
    "generic_container_index": -1,
}

_RANGES = {
    tables.FIELDS: ("field_start", "field_count"),
    tables.METHODS: ("method_start", "method_count"),
    tables.PROPERTIES: ("property_start", "property_count"),
    tables.NESTED_TYPES: ("nested_types_start", "nested_type_count"),
    tables.INTERFACES: ("interfaces_start", "interfaces_count"),
}


class MetadataBuilder:
    """Build a metadata blob table by table.

    Members are appended to the ranges of their declaring type, so the
    members of a type must be added before those of the next type.
    """

    def __init__(self, version: float = 24.2):
        layout = get_layout(version)
        assert layout is not None

        self.version = version
        self.layout = layout

        self.records: Dict[str, List[dict]] = {
            table: [] for table in layout.header_tables if not layout.is_blob(table)
        }
        self.blobs: Dict[str, bytearray] = {
            table: bytearray() for table in layout.header_tables if layout.is_blob(table)
        }

        self._strings: Dict[str, int] = {}
        self.method_addresses: Dict[int, int] = {}

    def string(self, value: str) -> int:
        if value not in self._strings:
            blob = self.blobs[tables.STRINGS]
            self._strings[value] = len(blob)
            blob += value.encode() + b"\x00"
        return self._strings[value]

    def add(self, table: str, **values) -> int:
        self.records[table].append(values)
        return len(self.records[table]) - 1

    def _append_member(self, table: str, owner: int, **values) -> int:
        type_record = self.records[tables.TYPE_DEFINITIONS][owner]
        start_name, count_name = _RANGES[table]
        size = len(self.records[table])

        if not type_record.get(count_name):
            type_record[start_name] = size
            type_record[count_name] = 0

        assert type_record[start_name] + type_record[count_name] == size

        type_record[count_name] += 1
        return self.add(table, **values)

    def add_type(
        self,
        name: str,
        namespace: str = "",
        parent: int = -1,
        declaring: int = -1,
        flags: int = 0,
        bitfield: int = 0,
        generic_container: int = -1,
    ) -> int:
        index = len(self.records[tables.TYPE_DEFINITIONS])
        values = dict(_TYPE_DEFAULTS)
        values.update(
            name_index=self.string(name),
            namespace_index=self.string(namespace),
            parent_index=parent,
            declaring_type_index=declaring,
            generic_container_index=generic_container,
            flags=flags,
            bitfield=bitfield,
            token=0x02000000 | (index + 1),
        )
        return self.add(tables.TYPE_DEFINITIONS, **values)

    def set_type(self, type_index: int, **values):
        self.records[tables.TYPE_DEFINITIONS][type_index].update(values)

    def type_ref(
        self, kind: int, data: int = -1, byref: bool = False, rank: int = 0, attrs: int = 0
    ) -> int:
        return self.add(
            tables.TYPE_REFERENCES,
            data=data,
            attrs=attrs,
            kind=kind,
            flags=int(byref) | (rank << 2),
        )

    def add_method(
        self,
        type_index: int,
        name: str,
        return_type: int,
        rid: Optional[int] = None,
        flags: int = 0,
        parameters: Sequence[Tuple[str, int]] = (),
        generic_container: int = -1,
    ) -> int:
        index = len(self.records[tables.METHODS])
        parameter_start = len(self.records[tables.PARAMETERS])

        for parameter_name, parameter_type in parameters:
            self.add(
                tables.PARAMETERS,
                name_index=self.string(parameter_name),
                type_index=parameter_type,
            )

        return self._append_member(
            tables.METHODS,
            type_index,
            name_index=self.string(name),
            declaring_type=type_index,
            return_type=return_type,
            parameter_start=parameter_start,
            parameter_count=len(parameters),
            generic_container_index=generic_container,
            flags=flags,
            token=0x06000000 | (rid if rid is not None else index + 1),
        )

    def add_field(self, type_index: int, name: str, field_type: int) -> int:
        index = len(self.records[tables.FIELDS])
        return self._append_member(
            tables.FIELDS,
            type_index,
            name_index=self.string(name),
            type_index=field_type,
            token=0x04000000 | (index + 1),
        )

    def add_property(self, type_index: int, name: str, get: int = -1, set: int = -1) -> int:
        return self._append_member(
            tables.PROPERTIES,
            type_index,
            name_index=self.string(name),
            get=get,
            set=set,
        )

    def add_nested_type(self, type_index: int, nested: int) -> int:
        return self._append_member(tables.NESTED_TYPES, type_index, value=nested)

    def add_interface(self, type_index: int, interface_ref: int) -> int:
        return self._append_member(tables.INTERFACES, type_index, value=interface_ref)

    def add_image(self, name: str, type_start: int, type_count: int) -> int:
        return self.add(
            tables.IMAGES,
            name_index=self.string(name),
            type_start=type_start,
            type_count=type_count,
            token=1,
        )

    def add_generic_container(
        self, owner: int, parameters: Sequence[str], is_method: bool = False
    ) -> int:
        container = len(self.records[tables.GENERIC_CONTAINERS])
        start = len(self.records[tables.GENERIC_PARAMETERS])

        for num, name in enumerate(parameters):
            self.add(
                tables.GENERIC_PARAMETERS,
                owner_index=container,
                name_index=self.string(name),
                num=num,
            )

        return self.add(
            tables.GENERIC_CONTAINERS,
            owner_index=owner,
            type_argc=len(parameters),
            is_method=int(is_method),
            generic_parameter_start=start,
        )

    def add_generic_inst(self, arguments: Sequence[int]) -> int:
        start = len(self.records[tables.GENERIC_ARGUMENTS])
        for argument in arguments:
            self.add(tables.GENERIC_ARGUMENTS, value=argument)
        return self.add(tables.GENERIC_INSTS, argc=len(arguments), arg_start=start)

    def add_generic_class(self, type_index: int, arguments: Sequence[int]) -> int:
        return self.add(
            tables.GENERIC_CLASSES,
            type_definition_index=type_index,
            class_inst_index=self.add_generic_inst(arguments),
        )

    def add_method_spec(
        self, method_index: int, method_arguments: Sequence[int] = (), class_inst: int = -1
    ) -> int:
        return self.add(
            tables.METHOD_SPECS,
            method_definition_index=method_index,
            class_inst_index=class_inst,
            method_inst_index=(
                self.add_generic_inst(method_arguments) if method_arguments else -1
            ),
        )

    def add_default_value(self, field_index: int, type_ref: int, data: bytes) -> int:
        blob = self.blobs[tables.DEFAULT_VALUE_DATA]
        data_index = len(blob)
        blob += data
        return self.add(
            tables.FIELD_DEFAULT_VALUES,
            field_index=field_index,
            type_index=type_ref,
            data_index=data_index,
        )

    def add_string_literal(self, value: str) -> int:
        blob = self.blobs[tables.STRING_LITERAL_DATA]
        encoded = value.encode()
        data_index = len(blob)
        blob += encoded
        return self.add(tables.STRING_LITERALS, length=len(encoded), data_index=data_index)

    def set_method_address(self, method_index: int, address: int):
        self.method_addresses[method_index] = address

    def _table_bytes(self, table: str) -> bytes:
        if self.layout.is_blob(table):
            return bytes(self.blobs[table])

        if table == tables.METHOD_ADDRESSES and self.method_addresses:
            count = len(self.records[tables.METHODS])
            return b"".join(
                struct.pack("<Q", self.method_addresses.get(i, 0)) for i in range(count)
            )

        record_class = self.layout.records[table]
        return b"".join(bytes(record_class(**values)) for values in self.records[table])

    def build(self) -> bytes:
        header_tables = self.layout.header_tables
        offset = self.layout.header_size

        pairs = []
        body = bytearray()

        for table in header_tables:
            data = self._table_bytes(table)
            pairs += [offset + len(body), len(data)]
            body += data
            body += bytes(round_up(len(body), 4) - len(body))

        version = int(self.version)
        header = struct.pack(f"<Ii{len(pairs)}I", METADATA_SANITY, version, *pairs)

        return header + bytes(body)


TEXT_ADDRESS = 0x1000
DATA_ADDRESS = 0x3000

SAMPLE_MODULES = {
    "mscorlib.dll": [0x1010],
    "Assembly-CSharp.dll": [0x1100, 0x1200, 0x1300, 0x1400],
}

# Offsets of the fields of each sample type
SAMPLE_FIELD_OFFSETS = [None, [0x10, 0x18, 0x0, 0x20, 0x28], None, [0x10]]

SAMPLE_GENERIC_METHOD_POINTERS = [0x1600]


def build_sample_metadata(
    version: float = 24.2, direct_addresses: Optional[Dict[int, int]] = None
) -> Tuple[bytes, Dict[str, int]]:
    """Build a small program: `System.Object`, `Game.Player` with a nested
    `Inventory` and the generic `Game.List<T>`, in two modules.

    Return the metadata blob and the indices of its entries.
    """
    builder = MetadataBuilder(version)

    r_void = builder.type_ref(const.TYPE_VOID)
    r_int = builder.type_ref(const.TYPE_I4)
    r_string = builder.type_ref(const.TYPE_STRING)
    r_int_field = builder.type_ref(const.TYPE_I4, attrs=0x1)
    r_int_constant = builder.type_ref(const.TYPE_I4, attrs=0x8051)

    obj = builder.add_type("Object", "System", flags=0x1)
    player = builder.add_type("Player", "Game", parent=obj, flags=0x101)
    inventory = builder.add_type("Inventory", "", parent=obj, declaring=player, flags=0x2)
    generic_list = builder.add_type("List`1", "Game", parent=obj, flags=0x1)

    container = builder.add_generic_container(generic_list, ["T"])
    builder.set_type(generic_list, generic_container_index=container)

    r_t = builder.type_ref(const.TYPE_VAR, 0)
    r_t_array = builder.type_ref(const.TYPE_SZARRAY, r_t)

    list_of_int = builder.add_generic_class(generic_list, [r_int])
    r_list_int = builder.type_ref(const.TYPE_GENERICINST, list_of_int)
    r_list_int_again = builder.type_ref(
        const.TYPE_GENERICINST, builder.add_generic_class(generic_list, [r_int])
    )

    to_string = builder.add_method(obj, "ToString", r_string, rid=1, flags=0x40)
    get_health = builder.add_method(player, "get_Health", r_int, rid=3)
    ctor = builder.add_method(player, ".ctor", r_void, rid=1)
    take_damage = builder.add_method(
        player, "TakeDamage", r_void, rid=2, parameters=[("amount", r_int)]
    )
    add = builder.add_method(generic_list, "Add", r_void, rid=4, parameters=[("item", r_t)])

    health = builder.add_field(player, "health", r_int_field)
    name = builder.add_field(player, "name", r_string)
    max_health = builder.add_field(player, "MaxHealth", r_int_constant)
    scores = builder.add_field(player, "scores", r_list_int)
    history = builder.add_field(player, "history", r_list_int_again)
    items = builder.add_field(generic_list, "items", r_t_array)

    builder.add_default_value(max_health, r_int, struct.pack("<i", 100))
    health_property = builder.add_property(player, "Health", get=0)
    builder.add_nested_type(player, inventory)

    class_inst = builder.records[tables.GENERIC_CLASSES][list_of_int]["class_inst_index"]
    add_of_int = builder.add_method_spec(add, class_inst=class_inst)

    builder.add_image("mscorlib.dll", obj, 1)
    builder.add_image("Assembly-CSharp.dll", player, 3)

    hello = builder.add_string_literal("Hello")

    for method_index, address in (direct_addresses or {}).items():
        builder.set_method_address(method_index, address)

    indices = dict(
        r_void=r_void,
        r_int=r_int,
        r_string=r_string,
        r_t=r_t,
        r_t_array=r_t_array,
        r_list_int=r_list_int,
        r_list_int_again=r_list_int_again,
        object=obj,
        player=player,
        inventory=inventory,
        list=generic_list,
        to_string=to_string,
        get_health=get_health,
        ctor=ctor,
        take_damage=take_damage,
        add=add,
        health=health,
        name=name,
        max_health=max_health,
        scores=scores,
        history=history,
        items=items,
        health_property=health_property,
        add_of_int=add_of_int,
        hello=hello,
    )

    return builder.build(), indices


def build_sample_image(
    version: float = 24.2,
    modules: Optional[Dict[str, Sequence[int]]] = None,
    is_64bit: bool = True,
    machine: int = EM_AARCH64,
    generic_method_table: Sequence[Tuple[int, int]] = ((0, 0),),
    export_symbols: bool = False,
) -> Tuple[bytes, int, int]:
    """Build an ELF image holding the registrations of the sample program.

    Return the image and the addresses of the code and metadata
    registrations. With `export_symbols` both addresses are exported in
    `.dynsym`.
    """
    segment = DataSegment(DATA_ADDRESS, pointer_size=8 if is_64bit else 4)

    code_registration = put_code_registration(
        segment,
        version,
        SAMPLE_MODULES if modules is None else modules,
        SAMPLE_GENERIC_METHOD_POINTERS,
    )
    metadata_registration = put_metadata_registration(
        segment, version, SAMPLE_FIELD_OFFSETS, generic_method_table=generic_method_table
    )

    image = build_elf(
        [
            (TEXT_ADDRESS, bytes(0x1000), 0x1000, PF_R | PF_X),
            (DATA_ADDRESS, bytes(segment.data), round_up(len(segment.data), 0x1000), PF_R | PF_W),
        ],
        machine=machine,
        is_64bit=is_64bit,
        symbols=(
            {
                const.CODE_REGISTRATION_SYMBOL: code_registration,
                const.METADATA_REGISTRATION_SYMBOL: metadata_registration,
            }
            if export_symbols
            else None
        ),
    )

    return image, code_registration, metadata_registration
