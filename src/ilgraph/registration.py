import ctypes
import io
import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import lief
from elftools.common.exceptions import ELFError
from elftools.construct.core import ConstructError
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

from .const import (
    CODE_REGISTRATION_SYMBOL,
    FORMAT_ELF,
    FORMAT_MACHO,
    FORMAT_PE,
    MAX_C_STRING_LENGTH,
    METADATA_REGISTRATION_SYMBOL,
)
from .exceptions import AddressOutOfBounds, RegistrationNotFound, ResolutionError
from .graph import TypeGraph
from .loader import BinaryImage
from .log import get_logger
from .metadata import MetadataLayout
from .translator import AddressTranslator
from .utils import read_c_string

# Raised by pyelftools and lief on malformed symbol tables
SYMBOL_ERRORS = (ELFError, ConstructError, ArithmeticError, RuntimeError, ValueError)


class ImageReader:
    """Read typed values at virtual addresses of an image.

    Reads must lie in the file-backed part of a single segment, otherwise
    `AddressOutOfBounds` is raised.
    """

    def __init__(self, image: BinaryImage, translator: AddressTranslator):
        self.image = image
        self.translator = translator

        self._pointer_format = "<Q" if image.is_64bit else "<I"

    def _file_range(self, address: int, size: int, what: str) -> Tuple[int, int]:
        segment = self.translator.segment_for(address)
        offset = self.translator.virtual_to_file_offset(address)

        if (
            segment is None
            or offset is None
            or size < 0
            or address + size > segment.virtual_address + segment.file_size
        ):
            raise AddressOutOfBounds(
                f"Read of {size} bytes for {what} at {hex(address)} is outside "
                f"the mapped data",
                table=what,
                offset=address,
            )

        return offset, segment.file_offset + segment.file_size

    def read_bytes(self, address: int, size: int, what: str = "data") -> bytes:
        start, _ = self._file_range(address, size, what)
        return self.image.data[start : start + size]

    def read_pointer(self, address: int, what: str = "pointer") -> int:
        return self.read_pointers(address, 1, what)[0]

    def read_pointers(self, address: int, count: int, what: str = "pointers") -> Tuple[int, ...]:
        if not count:
            return ()

        size = self.image.pointer_size
        data = self.read_bytes(address, count * size, what)

        return tuple(
            struct.unpack_from(self._pointer_format, data, i * size)[0]
            for i in range(count)
        )

    def read_i32_array(
        self, address: int, count: int, what: str = "int32 array"
    ) -> Tuple[int, ...]:
        if not count:
            return ()

        return struct.unpack(f"<{count}i", self.read_bytes(address, count * 4, what))

    def read_c_string(self, address: int, what: str = "string") -> Optional[str]:
        start, end = self._file_range(address, 0, what)
        value = read_c_string(self.image.data, start, min(MAX_C_STRING_LENGTH, end - start))

        if value is None:
            return None

        return value.decode("utf-8", errors="replace")

    def find_pointer(self, value: int) -> List[int]:
        """Find aligned slots of non-executable segments holding `value`."""
        return self._find(value.to_bytes(self.image.pointer_size, "little"), aligned=True)

    def find_bytes(self, needle: bytes) -> List[int]:
        """Find all occurrences of `needle` in file-backed segments."""
        return self._find(needle, aligned=False)

    def _find(self, needle: bytes, aligned: bool) -> List[int]:
        data = self.image.data
        step = self.image.pointer_size
        results = []

        for segment in self.translator.segments:
            if not segment.file_size or (aligned and segment.is_executable):
                continue

            start = segment.file_offset
            end = start + segment.file_size
            pos = data.find(needle, start, end)

            while pos != -1:
                if not aligned or (pos - start) % step == 0:
                    results.append(segment.virtual_address + pos - start)
                pos = data.find(needle, pos + 1, end)

        return results


@dataclass
class CodeGenModule:
    address: int
    name: str
    method_pointers: Tuple[int, ...]


@dataclass
class CodeRegistration:
    address: int
    fields: Dict[str, int] = field(repr=False)
    modules: Dict[str, CodeGenModule] = field(repr=False)
    generic_method_pointers: Tuple[int, ...] = field(repr=False)


@dataclass
class MetadataRegistration:
    address: int
    fields: Dict[str, int] = field(repr=False)
    generic_method_table: Sequence[ctypes.Structure] = field(repr=False)

    # Address of the field offset array of each type, 0 when absent
    field_offsets: Tuple[int, ...] = field(repr=False)


@dataclass
class Registrations:
    code: Optional[CodeRegistration] = None
    metadata: Optional[MetadataRegistration] = None
    issues: List[ResolutionError] = field(default_factory=list)


class RegistrationLocator:
    """Locate and read the runtime registration structures of an image.

    Addresses are taken from explicit overrides first, then from exported
    symbols, then from a scan of the data segments.

    Args:
        image: The loaded image.
        translator: Address translator of the image.
        layout: Layout of the metadata version.
        graph: The type graph, used to validate scan candidates.
        code_registration: Address of the code registration.
        metadata_registration: Address of the metadata registration.
        symbol_search: Look up exported registration symbols.
        logger: The logger to print log.
    """

    def __init__(
        self,
        image: BinaryImage,
        translator: AddressTranslator,
        layout: MetadataLayout,
        graph: TypeGraph,
        code_registration: Optional[int] = None,
        metadata_registration: Optional[int] = None,
        symbol_search: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.image = image
        self.translator = translator
        self.layout = layout
        self.graph = graph
        self.code_registration = code_registration
        self.metadata_registration = metadata_registration
        self.symbol_search = symbol_search
        self.logger = logger or get_logger(__name__)

        self.reader = ImageReader(image, translator)

    def _elf_symbols(self) -> Dict[str, int]:
        symbols = {}
        elffile = ELFFile(io.BytesIO(self.image.data))

        sections = [
            section
            for section in elffile.iter_sections()
            if isinstance(section, SymbolTableSection)
        ]

        for section in sections:
            for symbol in section.iter_symbols():
                if symbol.entry["st_shndx"] == "SHN_UNDEF":
                    continue
                symbols.setdefault(symbol.name, symbol.entry["st_value"])

        for segment in elffile.iter_segments(type="PT_DYNAMIC"):
            for symbol in segment.iter_symbols():
                if symbol.entry["st_shndx"] == "SHN_UNDEF":
                    continue
                symbols.setdefault(symbol.name, symbol.entry["st_value"])

        return symbols

    def _lief_symbols(self) -> Dict[str, int]:
        symbols: Dict[str, int] = {}
        binary = lief.parse(io.BytesIO(self.image.data))  # type: ignore

        if binary is None:
            return symbols

        if self.image.format_name == FORMAT_PE:
            for function in binary.exported_functions:
                symbols.setdefault(function.name, self.image.image_base + function.address)

        elif self.image.format_name == FORMAT_MACHO:
            for symbol in binary.symbols:
                name = symbol.name[1:] if symbol.name.startswith("_") else symbol.name
                if symbol.value:
                    symbols.setdefault(name, symbol.value)

        return symbols

    def _find_symbols(self) -> Dict[str, int]:
        """Get exported addresses of the registration structures."""
        if not self.symbol_search or self.image.is_dumped:
            return {}

        try:
            if self.image.format_name == FORMAT_ELF:
                symbols = self._elf_symbols()
            else:
                symbols = self._lief_symbols()
        except SYMBOL_ERRORS as e:
            self.logger.warning(f"Failed to read symbols: {e!r}")
            return {}

        return {
            name: symbols[name]
            for name in (CODE_REGISTRATION_SYMBOL, METADATA_REGISTRATION_SYMBOL)
            if name in symbols
        }

    def _is_code_gen_module(self, address: int, names: Set[str]) -> bool:
        name_slot = self.layout.code_gen_module_fields.index("module_name")

        try:
            name_address = self.reader.read_pointer(address + name_slot * self.image.pointer_size)
            name = self.reader.read_c_string(name_address)
        except AddressOutOfBounds:
            return False

        return name in names

    def _module_array_start(self, slot: int, names: Set[str], count: int) -> int:
        """Walk back from a slot of the module array to its first entry."""
        size = self.image.pointer_size
        start = slot

        for _ in range(count - 1):
            try:
                previous = self.reader.read_pointer(start - size)
            except AddressOutOfBounds:
                break

            if not self._is_code_gen_module(previous, names):
                break

            start -= size

        return start

    def _scan_code_registration(self) -> Optional[int]:
        """Find the code registration through the name of a module.

        The name string is referenced by a code generation module, which is
        referenced by the module array of the code registration.
        """
        fields = self.layout.code_registration_fields
        count_slot = fields.index("code_gen_modules_count")
        array_slot = fields.index("code_gen_modules")
        module_count = len(self.graph.modules)
        names = {module.name for module in self.graph.modules}
        size = self.image.pointer_size

        array_addresses: List[int] = []

        for module in self.graph.modules:
            for string_address in self.reader.find_bytes(module.name.encode("utf-8") + b"\x00"):
                for module_address in self.reader.find_pointer(string_address):
                    for slot in self.reader.find_pointer(module_address):
                        array_address = self._module_array_start(slot, names, module_count)

                        if array_address not in array_addresses:
                            array_addresses.append(array_address)

        for array_address in array_addresses:
            for location in self.reader.find_pointer(array_address):
                address = location - array_slot * size

                try:
                    count = self.reader.read_pointer(address + count_slot * size)
                except AddressOutOfBounds:
                    continue

                if count == module_count:
                    return address

        return None

    def _scan_metadata_registration(self) -> Optional[int]:
        """Find the metadata registration by its counts of types."""
        fields = self.layout.metadata_registration_fields
        offsets_slot = fields.index("field_offsets_count")
        type_count = len(self.graph.types)
        size = self.image.pointer_size

        if not type_count:
            return None

        for location in self.reader.find_pointer(type_count):
            address = location - offsets_slot * size

            try:
                values = dict(zip(fields, self.reader.read_pointers(address, len(fields))))
            except AddressOutOfBounds:
                continue

            if values["type_definitions_sizes_count"] != type_count:
                continue

            if self.translator.segment_for(values["field_offsets"]) is None:
                continue

            return address

        return None

    def _read_code_registration(
        self, address: int, issues: List[ResolutionError]
    ) -> CodeRegistration:
        names = self.layout.code_registration_fields
        fields = dict(
            zip(names, self.reader.read_pointers(address, len(names), "code_registration"))
        )

        module_names = self.layout.code_gen_module_fields
        modules = {}

        module_addresses = self.reader.read_pointers(
            fields["code_gen_modules"], fields["code_gen_modules_count"], "code_gen_modules"
        )

        for index, module_address in enumerate(module_addresses):
            try:
                values = dict(
                    zip(
                        module_names,
                        self.reader.read_pointers(
                            module_address, len(module_names), "code_gen_module"
                        ),
                    )
                )
                name = self.reader.read_c_string(values["module_name"], "module_name")
                pointers = self.reader.read_pointers(
                    values["method_pointers"], values["method_pointer_count"], "method_pointers"
                )
            except AddressOutOfBounds as e:
                issues.append(
                    AddressOutOfBounds(
                        e.message, table="code_gen_modules", index=index, offset=e.offset
                    )
                )
                continue

            if name is None:
                issues.append(
                    AddressOutOfBounds(
                        "Name of code generation module is not terminated",
                        table="code_gen_modules",
                        index=index,
                        offset=values["module_name"],
                    )
                )
                continue

            modules[name] = CodeGenModule(
                address=module_address, name=name, method_pointers=pointers
            )

        generic_method_pointers = self.reader.read_pointers(
            fields["generic_method_pointers"],
            fields["generic_method_pointers_count"],
            "generic_method_pointers",
        )

        return CodeRegistration(
            address=address,
            fields=fields,
            modules=modules,
            generic_method_pointers=generic_method_pointers,
        )

    def _read_metadata_registration(self, address: int) -> MetadataRegistration:
        names = self.layout.metadata_registration_fields
        fields = dict(
            zip(names, self.reader.read_pointers(address, len(names), "metadata_registration"))
        )

        entry_class = self.layout.generic_method_entry
        assert entry_class is not None

        count = fields["generic_method_table_count"]
        generic_method_table: Sequence[ctypes.Structure] = ()

        if count:
            data = self.reader.read_bytes(
                fields["generic_method_table"],
                count * ctypes.sizeof(entry_class),
                "generic_method_table",
            )
            generic_method_table = (entry_class * count).from_buffer_copy(data)

        field_offsets = self.reader.read_pointers(
            fields["field_offsets"], fields["field_offsets_count"], "field_offsets"
        )

        return MetadataRegistration(
            address=address,
            fields=fields,
            generic_method_table=generic_method_table,
            field_offsets=field_offsets,
        )

    def locate(self) -> Registrations:
        registrations = Registrations()
        symbols = self._find_symbols()

        code_address = (
            self.code_registration
            or symbols.get(CODE_REGISTRATION_SYMBOL)
            or self._scan_code_registration()
        )

        if code_address is None:
            registrations.issues.append(
                RegistrationNotFound("Code registration not found", table="code_registration")
            )
        else:
            try:
                registrations.code = self._read_code_registration(
                    code_address, registrations.issues
                )
            except AddressOutOfBounds as e:
                registrations.issues.append(
                    RegistrationNotFound(
                        f"Unreadable code registration: {e.message}",
                        table="code_registration",
                        offset=code_address,
                    )
                )

        metadata_address = (
            self.metadata_registration
            or symbols.get(METADATA_REGISTRATION_SYMBOL)
            or self._scan_metadata_registration()
        )

        if metadata_address is None:
            registrations.issues.append(
                RegistrationNotFound(
                    "Metadata registration not found", table="metadata_registration"
                )
            )
        else:
            try:
                registrations.metadata = self._read_metadata_registration(metadata_address)
            except AddressOutOfBounds as e:
                registrations.issues.append(
                    RegistrationNotFound(
                        f"Unreadable metadata registration: {e.message}",
                        table="metadata_registration",
                        offset=metadata_address,
                    )
                )

        if registrations.code:
            self.logger.info(
                f"Code registration at {hex(registrations.code.address)}: "
                f"{len(registrations.code.modules)} modules."
            )

        if registrations.metadata:
            self.logger.info(
                f"Metadata registration at {hex(registrations.metadata.address)}."
            )

        return registrations
