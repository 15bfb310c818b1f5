import logging
import struct
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple

from . import const
from .const import INVALID_INDEX
from .exceptions import CyclicTypeNesting, DanglingTypeReference, MalformedMetadata
from .log import get_logger
from .metadata import Metadata
from .metadata import layouts as tables
from .types import (
    FieldDefinition,
    GenericInstantiation,
    GenericParameter,
    MethodDefinition,
    ModuleDefinition,
    Parameter,
    PropertyDefinition,
    TypeDefinition,
    TypeReference,
)
from .utils import to_signed

_CONSTANT_FORMATS = {
    const.TYPE_BOOLEAN: "<?",
    const.TYPE_CHAR: "<H",
    const.TYPE_I1: "<b",
    const.TYPE_U1: "<B",
    const.TYPE_I2: "<h",
    const.TYPE_U2: "<H",
    const.TYPE_I4: "<i",
    const.TYPE_U4: "<I",
    const.TYPE_I8: "<q",
    const.TYPE_U8: "<Q",
    const.TYPE_R4: "<f",
    const.TYPE_R8: "<d",
}

_ELEMENT_KINDS = (const.TYPE_SZARRAY, const.TYPE_ARRAY, const.TYPE_PTR)

InstantiationKey = Tuple[bool, int, Tuple[int, ...], Tuple[int, ...]]


class TypeGraph:
    """Linked model of the types, methods and fields of a metadata blob.

    Every relation is an index into one of the flat lists of the graph.
    Type references are interned, so equal references share one id, and so
    do equal generic instantiations. The graph is not modified after
    construction, except for the addresses and field offsets attached by the
    address resolver.
    """

    def __init__(
        self,
        version: float,
        modules: List[ModuleDefinition],
        types: List[TypeDefinition],
        methods: List[MethodDefinition],
        fields: List[FieldDefinition],
        properties: List[PropertyDefinition],
        generic_parameters: List[GenericParameter],
        type_references: List[TypeReference],
        instantiations: List[GenericInstantiation],
        method_specs: List[int],
        string_literals: List[str],
        method_address_table: Tuple[int, ...],
    ):
        self.version = version

        self.modules = modules
        self.types = types
        self.methods = methods
        self.fields = fields
        self.properties = properties
        self.generic_parameters = generic_parameters
        self.type_references = type_references
        self.instantiations = instantiations
        self.method_specs = method_specs
        self.string_literals = string_literals

        # Entries of the metadata method address table, by method index
        self.method_address_table = method_address_table

        self._types_by_name: Dict[Tuple[str, str], int] = {}
        for type_def in types:
            self._types_by_name.setdefault((type_def.namespace, type_def.name), type_def.index)

        self._module_methods: Dict[int, List[int]] = defaultdict(list)
        for module in modules:
            indices = [
                method_index
                for type_index in module.type_indices
                for method_index in types[type_index].methods
            ]
            self._module_methods[module.index] = sorted(
                indices, key=lambda i: methods[i].rid
            )

    def lookup_type_by_name(self, namespace: str, name: str) -> Optional[TypeDefinition]:
        index = self._types_by_name.get((namespace, name))
        return None if index is None else self.types[index]

    def module_methods(self, module_index: int) -> List[int]:
        """Methods of a module in the order of their token row numbers."""
        return self._module_methods[module_index]

    def method_instantiation(self, spec_index: int) -> Optional[GenericInstantiation]:
        if not 0 <= spec_index < len(self.method_specs):
            return None
        return self.instantiations[self.method_specs[spec_index]]

    def _definition_name(self, type_index: int) -> str:
        return self.types[type_index].name.split("`")[0]

    def type_name(self, ref_id: int) -> str:
        """Readable name of a type reference."""
        ref = self.type_references[ref_id]
        suffixes = []

        while ref.kind in _ELEMENT_KINDS:
            if ref.kind == const.TYPE_SZARRAY:
                suffix = "[]"
            elif ref.kind == const.TYPE_ARRAY:
                suffix = f"[{',' * (max(ref.rank, 1) - 1)}]"
            else:
                suffix = "*"

            suffixes.append(f"{suffix}&" if ref.byref else suffix)
            ref = self.type_references[ref.data]

        kind = ref.kind

        if kind in const.PRIMITIVE_TYPE_NAMES:
            name = const.PRIMITIVE_TYPE_NAMES[kind]
        elif kind in (const.TYPE_CLASS, const.TYPE_VALUETYPE):
            name = self._definition_name(ref.data)
        elif kind in (const.TYPE_VAR, const.TYPE_MVAR):
            name = self.generic_parameters[ref.data].name
        elif kind == const.TYPE_GENERICINST:
            instantiation = self.instantiations[ref.data]
            arguments = ", ".join(self.type_name(a) for a in instantiation.arguments)
            name = f"{self._definition_name(instantiation.definition)}<{arguments}>"
        else:
            name = f"<{hex(kind)}>"

        if ref.byref:
            name = f"{name}&"

        return name + "".join(reversed(suffixes))

    def method_name(self, method_index: int) -> str:
        method = self.methods[method_index]
        return f"{self.types[method.declaring_type].full_name}$${method.name}"

    def __repr__(self) -> str:
        return (
            f"TypeGraph(version={self.version}, types={len(self.types)}, "
            f"methods={len(self.methods)}, fields={len(self.fields)}, "
            f"instantiations={len(self.instantiations)})"
        )


class TypeGraphBuilder:
    """Build a `TypeGraph` from raw metadata tables.

    Every index read from a record is checked against its target table and
    reported as `DanglingTypeReference` with the table, record and field
    that holds it. Enclosing and base type chains must terminate.

    Args:
        metadata: Tables produced by the metadata reader.
        logger: The logger to print log.
    """

    def __init__(self, metadata: Metadata, logger: Optional[logging.Logger] = None):
        self.metadata = metadata
        self.logger = logger or get_logger(__name__)

        self._type_records = metadata.table(tables.TYPE_DEFINITIONS)
        self._ref_records = metadata.table(tables.TYPE_REFERENCES)

        self._type_references: List[TypeReference] = []
        self._reference_ids: Dict[TypeReference, int] = {}
        self._resolved_refs: Dict[int, int] = {}
        self._resolving: Set[int] = set()

        self._instantiations: List[GenericInstantiation] = []
        self._instantiation_ids: Dict[InstantiationKey, int] = {}
        self._resolved_insts: Dict[int, Tuple[int, ...]] = {}

        # Owners of field and method ranges
        self._field_owners: Dict[int, int] = {}

    def _dangling(self, message: str, table: str, index: int, offset: Optional[int] = None):
        return DanglingTypeReference(message, table=table, index=index, offset=offset)

    def _check_index(
        self, value: int, target: str, table: str, index: int, field_name: str
    ) -> int:
        size = len(self.metadata.table(target))

        if not 0 <= value < size:
            raise self._dangling(
                f"Field '{field_name}' references {target}[{value}] "
                f"outside of {size} records",
                table=table,
                index=index,
                offset=value,
            )

        return value

    def _check_optional_index(
        self, value: int, target: str, table: str, index: int, field_name: str
    ) -> Optional[int]:
        if value == INVALID_INDEX:
            return None
        return self._check_index(value, target, table, index, field_name)

    def _check_range(
        self, start: int, count: int, target: str, table: str, index: int, field_name: str
    ) -> range:
        if not count:
            return range(0)

        size = len(self.metadata.table(target))

        if start < 0 or start + count > size:
            raise self._dangling(
                f"Range '{field_name}' [{start}, {start + count}) exceeds "
                f"{target} of {size} records",
                table=table,
                index=index,
                offset=start,
            )

        return range(start, start + count)

    def _intern_reference(self, ref: TypeReference) -> int:
        ref_id = self._reference_ids.get(ref)

        if ref_id is None:
            ref_id = len(self._type_references)
            self._type_references.append(ref)
            self._reference_ids[ref] = ref_id

        return ref_id

    def _intern_instantiation(
        self,
        definition: int,
        arguments: Tuple[int, ...],
        is_method: bool = False,
        class_arguments: Tuple[int, ...] = (),
    ) -> int:
        key = (is_method, definition, class_arguments, arguments)
        inst_id = self._instantiation_ids.get(key)

        if inst_id is None:
            inst_id = len(self._instantiations)
            self._instantiations.append(
                GenericInstantiation(
                    index=inst_id,
                    definition=definition,
                    arguments=arguments,
                    is_method=is_method,
                    class_arguments=class_arguments,
                )
            )
            self._instantiation_ids[key] = inst_id

        return inst_id

    def _resolve_generic_inst(self, inst_index: int, table: str, index: int) -> Tuple[int, ...]:
        if inst_index == INVALID_INDEX:
            return ()

        if inst_index in self._resolved_insts:
            return self._resolved_insts[inst_index]

        self._check_index(inst_index, tables.GENERIC_INSTS, table, index, "inst_index")
        record = self.metadata.table(tables.GENERIC_INSTS)[inst_index]

        argument_range = self._check_range(
            record.arg_start,
            record.argc,
            tables.GENERIC_ARGUMENTS,
            tables.GENERIC_INSTS,
            inst_index,
            "arguments",
        )
        arguments = self.metadata.table(tables.GENERIC_ARGUMENTS)

        resolved = tuple(
            self._resolve_reference(
                arguments[i].value, tables.GENERIC_ARGUMENTS, i, "value"
            )
            for i in argument_range
        )
        self._resolved_insts[inst_index] = resolved

        return resolved

    def _resolve_generic_class(self, class_index: int, ref_index: int) -> int:
        self._check_index(
            class_index, tables.GENERIC_CLASSES, tables.TYPE_REFERENCES, ref_index, "data"
        )
        record = self.metadata.table(tables.GENERIC_CLASSES)[class_index]

        definition = self._check_index(
            record.type_definition_index,
            tables.TYPE_DEFINITIONS,
            tables.GENERIC_CLASSES,
            class_index,
            "type_definition_index",
        )
        arguments = self._resolve_generic_inst(
            record.class_inst_index, tables.GENERIC_CLASSES, class_index
        )

        return self._intern_instantiation(definition, arguments)

    def _resolve_reference(self, raw_index: int, table: str, index: int, field_name: str) -> int:
        """Resolve a raw type reference into an interned reference id.

        Chains of element types are followed in a loop, only generic
        arguments nest.
        """
        if raw_index in self._resolved_refs:
            return self._resolved_refs[raw_index]

        self._check_index(raw_index, tables.TYPE_REFERENCES, table, index, field_name)

        chain: List[int] = []
        visited: Set[int] = set()
        current = raw_index

        while current not in self._resolved_refs:
            if current in self._resolving or current in visited:
                raise self._dangling(
                    "Type reference refers to itself",
                    table=tables.TYPE_REFERENCES,
                    index=current,
                )

            record = self._ref_records[current]

            if record.kind not in _ELEMENT_KINDS:
                break

            chain.append(current)
            visited.add(current)
            current = self._check_index(
                record.data, tables.TYPE_REFERENCES, tables.TYPE_REFERENCES, current, "data"
            )

        if current in self._resolved_refs:
            ref_id = self._resolved_refs[current]
        else:
            ref_id = self._resolve_leaf_reference(current)

        for element_index in reversed(chain):
            record = self._ref_records[element_index]
            ref_id = self._intern_reference(
                TypeReference(
                    kind=record.kind,
                    data=ref_id,
                    byref=bool(record.flags & 0x1),
                    rank=record.flags >> 2,
                )
            )
            self._resolved_refs[element_index] = ref_id

        return ref_id

    def _resolve_leaf_reference(self, raw_index: int) -> int:
        if len(self._resolving) > const.MAX_GENERIC_NESTING:
            raise self._dangling(
                f"Type reference nests more than {const.MAX_GENERIC_NESTING} "
                f"generic instances",
                table=tables.TYPE_REFERENCES,
                index=raw_index,
            )

        self._resolving.add(raw_index)

        try:
            record = self._ref_records[raw_index]
            kind = record.kind

            if kind in (const.TYPE_CLASS, const.TYPE_VALUETYPE):
                data = self._check_index(
                    record.data, tables.TYPE_DEFINITIONS, tables.TYPE_REFERENCES, raw_index, "data"
                )
            elif kind in (const.TYPE_VAR, const.TYPE_MVAR):
                data = self._check_index(
                    record.data,
                    tables.GENERIC_PARAMETERS,
                    tables.TYPE_REFERENCES,
                    raw_index,
                    "data",
                )
            elif kind == const.TYPE_GENERICINST:
                data = self._resolve_generic_class(record.data, raw_index)
            else:
                data = INVALID_INDEX
        finally:
            self._resolving.discard(raw_index)

        ref_id = self._intern_reference(
            TypeReference(
                kind=kind,
                data=data,
                byref=bool(record.flags & 0x1),
                rank=record.flags >> 2,
            )
        )
        self._resolved_refs[raw_index] = ref_id

        return ref_id

    def _generic_parameter_range(
        self, container_index: int, table: str, index: int
    ) -> Tuple[int, ...]:
        if container_index == INVALID_INDEX:
            return ()

        self._check_index(
            container_index, tables.GENERIC_CONTAINERS, table, index, "generic_container_index"
        )
        container = self.metadata.table(tables.GENERIC_CONTAINERS)[container_index]

        return tuple(
            self._check_range(
                container.generic_parameter_start,
                container.type_argc,
                tables.GENERIC_PARAMETERS,
                tables.GENERIC_CONTAINERS,
                container_index,
                "generic_parameter_start",
            )
        )

    def _build_modules(self, types: List[TypeDefinition]) -> List[ModuleDefinition]:
        modules = []

        for index, record in enumerate(self.metadata.table(tables.IMAGES)):
            type_range = self._check_range(
                record.type_start,
                record.type_count,
                tables.TYPE_DEFINITIONS,
                tables.IMAGES,
                index,
                "type_start",
            )

            modules.append(
                ModuleDefinition(
                    index=index,
                    name=self.metadata.get_string(record.name_index),
                    type_start=type_range.start,
                    type_count=len(type_range),
                    token=record.token,
                )
            )

            for type_index in type_range:
                if types[type_index].module is None:
                    types[type_index].module = index

        return modules

    def _build_types(self) -> List[TypeDefinition]:
        types = []
        table = tables.TYPE_DEFINITIONS
        nested_records = self.metadata.table(tables.NESTED_TYPES)
        interface_records = self.metadata.table(tables.INTERFACES)

        for index, record in enumerate(self._type_records):
            base = self._check_optional_index(
                record.parent_index, table, table, index, "parent_index"
            )
            enclosing = self._check_optional_index(
                record.declaring_type_index, table, table, index, "declaring_type_index"
            )

            field_range = self._check_range(
                record.field_start, record.field_count, tables.FIELDS, table, index, "field_start"
            )
            method_range = self._check_range(
                record.method_start,
                record.method_count,
                tables.METHODS,
                table,
                index,
                "method_start",
            )
            property_range = self._check_range(
                record.property_start,
                record.property_count,
                tables.PROPERTIES,
                table,
                index,
                "property_start",
            )
            nested_range = self._check_range(
                record.nested_types_start,
                record.nested_type_count,
                tables.NESTED_TYPES,
                table,
                index,
                "nested_types_start",
            )
            interface_range = self._check_range(
                record.interfaces_start,
                record.interfaces_count,
                tables.INTERFACES,
                table,
                index,
                "interfaces_start",
            )

            for field_index in field_range:
                self._field_owners.setdefault(field_index, index)

            types.append(
                TypeDefinition(
                    index=index,
                    name=self.metadata.get_string(record.name_index),
                    namespace=self.metadata.get_string(record.namespace_index),
                    module=None,
                    base=base,
                    enclosing=enclosing,
                    fields=tuple(field_range),
                    methods=tuple(method_range),
                    properties=tuple(property_range),
                    nested_types=tuple(
                        self._check_index(
                            nested_records[i].value, table, tables.NESTED_TYPES, i, "value"
                        )
                        for i in nested_range
                    ),
                    interfaces=tuple(
                        self._resolve_reference(
                            interface_records[i].value, tables.INTERFACES, i, "value"
                        )
                        for i in interface_range
                    ),
                    generic_parameters=self._generic_parameter_range(
                        record.generic_container_index, table, index
                    ),
                    flags=record.flags,
                    bitfield=record.bitfield,
                    token=record.token,
                )
            )

        return types

    @staticmethod
    def _check_chains(types: List[TypeDefinition], attr: str, relation: str):
        """Check that following `attr` from any type terminates."""
        done: Set[int] = set()

        for start in range(len(types)):
            path: List[int] = []
            on_path: Set[int] = set()
            current: Optional[int] = start

            while current is not None and current not in done:
                if current in on_path:
                    raise CyclicTypeNesting(
                        f"Type '{types[current].full_name}' {relation} itself",
                        table=tables.TYPE_DEFINITIONS,
                        index=current,
                    )

                on_path.add(current)
                path.append(current)
                current = getattr(types[current], attr)

            done.update(path)

    def _build_generic_parameters(self) -> List[GenericParameter]:
        parameters = []
        containers = self.metadata.table(tables.GENERIC_CONTAINERS)
        constraints = self.metadata.table(tables.GENERIC_PARAMETER_CONSTRAINTS)

        for index, record in enumerate(self.metadata.table(tables.GENERIC_PARAMETERS)):
            self._check_index(
                record.owner_index,
                tables.GENERIC_CONTAINERS,
                tables.GENERIC_PARAMETERS,
                index,
                "owner_index",
            )
            container = containers[record.owner_index]
            is_method = bool(container.is_method)

            self._check_index(
                container.owner_index,
                tables.METHODS if is_method else tables.TYPE_DEFINITIONS,
                tables.GENERIC_CONTAINERS,
                record.owner_index,
                "owner_index",
            )

            constraint_range = self._check_range(
                record.constraints_start,
                record.constraints_count,
                tables.GENERIC_PARAMETER_CONSTRAINTS,
                tables.GENERIC_PARAMETERS,
                index,
                "constraints_start",
            )

            parameters.append(
                GenericParameter(
                    index=index,
                    name=self.metadata.get_string(record.name_index),
                    owner=container.owner_index,
                    is_method_owner=is_method,
                    position=record.num,
                    flags=record.flags,
                    constraints=tuple(
                        self._resolve_reference(
                            constraints[i].value, tables.GENERIC_PARAMETER_CONSTRAINTS, i, "value"
                        )
                        for i in constraint_range
                    ),
                )
            )

        return parameters

    def _build_methods(self) -> List[MethodDefinition]:
        methods = []
        table = tables.METHODS
        parameter_records = self.metadata.table(tables.PARAMETERS)

        for index, record in enumerate(self.metadata.table(table)):
            declaring_type = self._check_index(
                record.declaring_type, tables.TYPE_DEFINITIONS, table, index, "declaring_type"
            )
            parameter_range = self._check_range(
                record.parameter_start,
                record.parameter_count,
                tables.PARAMETERS,
                table,
                index,
                "parameter_start",
            )

            parameters = tuple(
                Parameter(
                    name=self.metadata.get_string(parameter_records[i].name_index),
                    type=self._resolve_reference(
                        parameter_records[i].type_index, tables.PARAMETERS, i, "type_index"
                    ),
                    token=parameter_records[i].token,
                )
                for i in parameter_range
            )

            methods.append(
                MethodDefinition(
                    index=index,
                    name=self.metadata.get_string(record.name_index),
                    declaring_type=declaring_type,
                    return_type=self._resolve_reference(
                        record.return_type, table, index, "return_type"
                    ),
                    parameters=parameters,
                    generic_parameters=self._generic_parameter_range(
                        record.generic_container_index, table, index
                    ),
                    flags=record.flags,
                    iflags=record.iflags,
                    slot=record.slot,
                    token=record.token,
                )
            )

        return methods

    def _read_compressed_uint32(self, blob: memoryview, pos: int, index: int) -> Tuple[int, int]:
        self._require_blob(blob, pos, 1, index)
        first = blob[pos]

        if first & 0x80 == 0:
            return first, pos + 1

        if first & 0xC0 == 0x80:
            self._require_blob(blob, pos, 2, index)
            return ((first & 0x3F) << 8) | blob[pos + 1], pos + 2

        if first & 0xE0 == 0xC0:
            self._require_blob(blob, pos, 4, index)
            value = int.from_bytes(bytes(blob[pos + 1 : pos + 4]), byteorder="big")
            return ((first & 0x1F) << 24) | value, pos + 4

        if first == 0xF0:
            self._require_blob(blob, pos, 5, index)
            return struct.unpack_from("<I", blob, pos + 1)[0], pos + 5

        if first == 0xFE:
            return 0xFFFFFFFE, pos + 1

        if first == 0xFF:
            return 0xFFFFFFFF, pos + 1

        raise MalformedMetadata(
            f"Invalid compressed integer prefix {hex(first)}",
            table=tables.FIELD_DEFAULT_VALUES,
            index=index,
            offset=pos,
        )

    @staticmethod
    def _require_blob(blob: memoryview, pos: int, size: int, index: int):
        if pos < 0 or pos + size > len(blob):
            raise MalformedMetadata(
                "Default value exceeds the default value data table",
                table=tables.FIELD_DEFAULT_VALUES,
                index=index,
                offset=pos,
            )

    def _decode_constant(self, kind: int, data_index: int, index: int) -> Any:
        if data_index == INVALID_INDEX:
            return None

        blob = self.metadata.blob(tables.DEFAULT_VALUE_DATA)

        if kind in _CONSTANT_FORMATS:
            fmt = _CONSTANT_FORMATS[kind]
            self._require_blob(blob, data_index, struct.calcsize(fmt), index)
            value = struct.unpack_from(fmt, blob, data_index)[0]
            return chr(value) if kind == const.TYPE_CHAR else value

        if kind == const.TYPE_STRING:
            if self.metadata.version >= 29:
                length, pos = self._read_compressed_uint32(blob, data_index, index)
                length = to_signed(length, 4)
            else:
                self._require_blob(blob, data_index, 4, index)
                length = struct.unpack_from("<i", blob, data_index)[0]
                pos = data_index + 4

            if length == -1:
                return None
            if length < 0:
                raise MalformedMetadata(
                    f"Negative string constant length {length}",
                    table=tables.FIELD_DEFAULT_VALUES,
                    index=index,
                    offset=data_index,
                )

            self._require_blob(blob, pos, length, index)
            return bytes(blob[pos : pos + length]).decode("utf-8", errors="replace")

        return None

    def _build_fields(self) -> List[FieldDefinition]:
        fields = []
        table = tables.FIELDS

        for index, record in enumerate(self.metadata.table(table)):
            type_id = self._resolve_reference(record.type_index, table, index, "type_index")

            fields.append(
                FieldDefinition(
                    index=index,
                    name=self.metadata.get_string(record.name_index),
                    declaring_type=self._field_owners.get(index, INVALID_INDEX),
                    type=type_id,
                    attrs=self._ref_records[record.type_index].attrs,
                    token=record.token,
                )
            )

        table = tables.FIELD_DEFAULT_VALUES

        for index, record in enumerate(self.metadata.table(table)):
            field_index = self._check_index(
                record.field_index, tables.FIELDS, table, index, "field_index"
            )
            self._check_index(
                record.type_index, tables.TYPE_REFERENCES, table, index, "type_index"
            )

            field = fields[field_index]
            field.has_default = True
            field.default_value = self._decode_constant(
                self._ref_records[record.type_index].kind, record.data_index, index
            )

        return fields

    def _build_properties(self, types: List[TypeDefinition]) -> List[PropertyDefinition]:
        records = self.metadata.table(tables.PROPERTIES)
        properties: List[Optional[PropertyDefinition]] = [None] * len(records)

        def accessor(
            type_def: TypeDefinition, relative: int, index: int, name: str
        ) -> Optional[int]:
            if relative == INVALID_INDEX:
                return None
            if not 0 <= relative < len(type_def.methods):
                raise self._dangling(
                    f"Accessor '{name}' is outside the methods of '{type_def.full_name}'",
                    table=tables.PROPERTIES,
                    index=index,
                    offset=relative,
                )
            return type_def.methods[relative]

        for type_def in types:
            for index in type_def.properties:
                if properties[index] is not None:
                    continue

                record = records[index]
                properties[index] = PropertyDefinition(
                    index=index,
                    name=self.metadata.get_string(record.name_index),
                    declaring_type=type_def.index,
                    getter=accessor(type_def, record.get, index, "get"),
                    setter=accessor(type_def, record.set, index, "set"),
                    attrs=record.attrs,
                    token=record.token,
                )

        for index, record in enumerate(records):
            if properties[index] is None:
                properties[index] = PropertyDefinition(
                    index=index,
                    name=self.metadata.get_string(record.name_index),
                    declaring_type=INVALID_INDEX,
                    getter=None,
                    setter=None,
                    attrs=record.attrs,
                    token=record.token,
                )

        return properties  # type: ignore[return-value]

    def _build_method_specs(self) -> List[int]:
        specs = []
        table = tables.METHOD_SPECS

        for index, record in enumerate(self.metadata.table(table)):
            method_index = self._check_index(
                record.method_definition_index,
                tables.METHODS,
                table,
                index,
                "method_definition_index",
            )
            class_arguments = self._resolve_generic_inst(record.class_inst_index, table, index)
            method_arguments = self._resolve_generic_inst(record.method_inst_index, table, index)

            specs.append(
                self._intern_instantiation(
                    method_index,
                    method_arguments,
                    is_method=True,
                    class_arguments=class_arguments,
                )
            )

        return specs

    def _build_string_literals(self) -> List[str]:
        data = self.metadata.blob(tables.STRING_LITERAL_DATA)

        return [
            bytes(data[record.data_index : record.data_index + record.length]).decode(
                "utf-8", errors="replace"
            )
            for record in self.metadata.table(tables.STRING_LITERALS)
        ]

    def build(self) -> TypeGraph:
        types = self._build_types()

        self._check_chains(types, "enclosing", "is nested in")
        self._check_chains(types, "base", "derives from")

        modules = self._build_modules(types)
        generic_parameters = self._build_generic_parameters()
        methods = self._build_methods()
        fields = self._build_fields()
        properties = self._build_properties(types)
        method_specs = self._build_method_specs()

        graph = TypeGraph(
            version=self.metadata.version,
            modules=modules,
            types=types,
            methods=methods,
            fields=fields,
            properties=properties,
            generic_parameters=generic_parameters,
            type_references=self._type_references,
            instantiations=self._instantiations,
            method_specs=method_specs,
            string_literals=self._build_string_literals(),
            method_address_table=tuple(
                entry.address for entry in self.metadata.table(tables.METHOD_ADDRESSES)
            ),
        )

        self.logger.info(f"Built {graph!r}.")

        return graph
