import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Type

from .const import ADDRESS_SENTINELS, DEFAULT_MAX_WORKERS, MACHINE_ARM
from .exceptions import (
    AddressOutOfBounds,
    AddressResolutionAmbiguous,
    RegistrationNotFound,
    ResolutionError,
)
from .graph import TypeGraph
from .loader import BinaryImage
from .log import get_logger
from .registration import ImageReader, Registrations
from .translator import AddressTranslator
from .types import ModuleDefinition

Addresses = Dict[int, int]


@dataclass
class ResolutionReport:
    """Outcome of address resolution.

    Issues are exception instances in the order they were found. They are
    never raised.
    """

    issues: List[ResolutionError] = field(default_factory=list)

    direct_methods: int = 0
    heuristic_methods: int = 0
    generic_methods: int = 0
    field_offsets: int = 0

    @property
    def resolved_methods(self) -> int:
        return self.direct_methods + self.heuristic_methods

    @property
    def ok(self) -> bool:
        return not self.issues

    def issues_of(self, kind: Type[ResolutionError]) -> List[ResolutionError]:
        return [issue for issue in self.issues if isinstance(issue, kind)]


class AddressResolver:
    """Attach native addresses to methods and offsets to fields.

    A method takes its address from the metadata method address table when
    the entry is present, otherwise from the method pointers of the code
    generation module with the same name as its module, aligned positionally
    with the methods of the module ordered by token. Every address must lie
    in an executable segment.

    Failures are collected in the report and leave the affected entries
    unresolved. Resolving again gives the same result.

    Args:
        graph: The type graph to attach results to.
        image: The loaded image.
        translator: Address translator of the image.
        registrations: Registration structures read from the image.
        max_workers: Size of the worker pool for modules.
        logger: The logger to print log.
    """

    def __init__(
        self,
        graph: TypeGraph,
        image: BinaryImage,
        translator: AddressTranslator,
        registrations: Registrations,
        max_workers: int = DEFAULT_MAX_WORKERS,
        logger: Optional[logging.Logger] = None,
    ):
        self.graph = graph
        self.image = image
        self.translator = translator
        self.registrations = registrations
        self.max_workers = max_workers
        self.logger = logger or get_logger(__name__)

        self.reader = ImageReader(image, translator)

    def _normalize(self, address: int) -> int:
        # Thumb functions have the lowest bit set
        if self.image.machine == MACHINE_ARM:
            return address & ~1
        return address

    def _check_executable(self, address: int, table: str, index: int) -> Optional[ResolutionError]:
        if self.translator.is_executable(address):
            return None

        return AddressOutOfBounds(
            f"Address {hex(address)} is outside of executable segments",
            table=table,
            index=index,
            offset=address,
        )

    def _resolve_direct(self) -> Tuple[Addresses, List[ResolutionError]]:
        addresses: Addresses = {}
        issues: List[ResolutionError] = []

        for index, entry in enumerate(self.graph.method_address_table):
            if index >= len(self.graph.methods) or entry in ADDRESS_SENTINELS:
                continue

            address = self._normalize(entry)
            issue = self._check_executable(address, "method_addresses", index)

            if issue:
                issues.append(issue)
            else:
                addresses[index] = address

        return addresses, issues

    def _resolve_module(
        self, module: ModuleDefinition, resolved: Addresses
    ) -> Tuple[Addresses, List[ResolutionError]]:
        """Align the methods of a module with its method pointers."""
        addresses: Addresses = {}
        issues: List[ResolutionError] = []

        methods = self.graph.module_methods(module.index)
        if not methods or all(index in resolved for index in methods):
            return addresses, issues

        code = self.registrations.code
        code_gen_module = code.modules.get(module.name) if code else None

        if code_gen_module is None:
            issues.append(
                RegistrationNotFound(
                    f"No code generation module for '{module.name}'",
                    table="code_gen_modules",
                    index=module.index,
                )
            )
            return addresses, issues

        pointers = code_gen_module.method_pointers

        if len(pointers) != len(methods):
            issues.append(
                AddressResolutionAmbiguous(
                    f"Module '{module.name}' has {len(methods)} methods but "
                    f"{len(pointers)} method pointers",
                    table="images",
                    index=module.index,
                    offset=code_gen_module.address,
                )
            )
            return addresses, issues

        for method_index, pointer in zip(methods, pointers):
            if method_index in resolved or not pointer:
                continue

            address = self._normalize(pointer)
            issue = self._check_executable(address, "methods", method_index)

            if issue:
                issues.append(issue)
            else:
                addresses[method_index] = address

        return addresses, issues

    def _resolve_generic_methods(self) -> Tuple[Addresses, List[ResolutionError]]:
        addresses: Addresses = {}
        issues: List[ResolutionError] = []

        code = self.registrations.code
        metadata = self.registrations.metadata

        if not code or not metadata:
            return addresses, issues

        pointers = code.generic_method_pointers

        for index, entry in enumerate(metadata.generic_method_table):
            instantiation = self.graph.method_instantiation(entry.generic_method_index)

            if instantiation is None or not 0 <= entry.method_index < len(pointers):
                issues.append(
                    AddressResolutionAmbiguous(
                        f"Generic method entry references method spec "
                        f"{entry.generic_method_index} and pointer {entry.method_index}",
                        table="generic_method_table",
                        index=index,
                    )
                )
                continue

            pointer = pointers[entry.method_index]
            if not pointer or instantiation.index in addresses:
                continue

            address = self._normalize(pointer)
            issue = self._check_executable(address, "generic_method_table", index)

            if issue:
                issues.append(issue)
            else:
                addresses[instantiation.index] = address

        return addresses, issues

    def _resolve_field_offsets(self) -> Tuple[Addresses, List[ResolutionError]]:
        offsets: Addresses = {}
        issues: List[ResolutionError] = []

        metadata = self.registrations.metadata
        if not metadata:
            return offsets, issues

        for type_def in self.graph.types:
            # Layout of generic definitions depends on the type arguments
            if type_def.is_generic or not type_def.fields:
                continue

            if type_def.index >= len(metadata.field_offsets):
                continue

            pointer = metadata.field_offsets[type_def.index]
            if not pointer:
                continue

            try:
                values = self.reader.read_i32_array(pointer, len(type_def.fields), "field_offsets")
            except AddressOutOfBounds as e:
                issues.append(
                    AddressOutOfBounds(
                        e.message, table="field_offsets", index=type_def.index, offset=pointer
                    )
                )
                continue

            offsets.update(zip(type_def.fields, values))

        return offsets, issues

    def resolve(self) -> ResolutionReport:
        report = ResolutionReport()
        report.issues.extend(self.registrations.issues)

        direct, issues = self._resolve_direct()
        report.issues.extend(issues)

        heuristic: Addresses = {}

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="ilgraph-module"
        ) as executor:
            futures = [
                executor.submit(self._resolve_module, module, direct)
                for module in self.graph.modules
            ]

        for future in futures:
            addresses, issues = future.result()
            heuristic.update(addresses)
            report.issues.extend(issues)

        generic, issues = self._resolve_generic_methods()
        report.issues.extend(issues)

        offsets, issues = self._resolve_field_offsets()
        report.issues.extend(issues)

        for method in self.graph.methods:
            method.address = direct.get(method.index, heuristic.get(method.index))

        for instantiation in self.graph.instantiations:
            instantiation.address = generic.get(instantiation.index)

        for field_def in self.graph.fields:
            field_def.offset = offsets.get(field_def.index)

        report.direct_methods = len(direct)
        report.heuristic_methods = len(heuristic)
        report.generic_methods = len(generic)
        report.field_offsets = len(offsets)

        for issue in report.issues:
            self.logger.warning(f"{type(issue).__name__}: {issue}")

        self.logger.info(
            f"Resolved {report.resolved_methods}/{len(self.graph.methods)} methods "
            f"({report.direct_methods} direct), {report.generic_methods} generic "
            f"methods, {report.field_offsets} field offsets."
        )

        return report
