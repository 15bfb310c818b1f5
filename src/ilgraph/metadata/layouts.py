"""Version dependent layouts of metadata tables and registration structures.

A `MetadataLayout` is selected once when the header is parsed and describes
everything that differs between metadata versions: the order of tables in
the header, the ctypes record structure of each table and the field lists of
the runtime registration structures stored in the image. Tables without a
record structure are raw blobs.
"""

import ctypes
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Type

from ilgraph.const import SUPPORTED_VERSIONS

i32 = ctypes.c_int32
u8 = ctypes.c_uint8
i16 = ctypes.c_int16
u16 = ctypes.c_uint16
u32 = ctypes.c_uint32
u64 = ctypes.c_uint64

FieldList = List[Tuple[str, type]]

# Blob tables
STRINGS = "strings"
STRING_LITERAL_DATA = "string_literal_data"
DEFAULT_VALUE_DATA = "field_and_parameter_default_value_data"
RGCTX_ENTRIES = "rgctx_entries"
ATTRIBUTE_DATA = "attribute_data"
ATTRIBUTE_DATA_RANGES = "attribute_data_ranges"

# Record tables
STRING_LITERALS = "string_literals"
PROPERTIES = "properties"
METHODS = "methods"
FIELD_DEFAULT_VALUES = "field_default_values"
PARAMETERS = "parameters"
FIELDS = "fields"
GENERIC_PARAMETERS = "generic_parameters"
GENERIC_PARAMETER_CONSTRAINTS = "generic_parameter_constraints"
GENERIC_CONTAINERS = "generic_containers"
NESTED_TYPES = "nested_types"
INTERFACES = "interfaces"
TYPE_DEFINITIONS = "type_definitions"
IMAGES = "images"
TYPE_REFERENCES = "type_references"
GENERIC_CLASSES = "generic_classes"
GENERIC_INSTS = "generic_insts"
GENERIC_ARGUMENTS = "generic_arguments"
METHOD_SPECS = "method_specs"
METHOD_ADDRESSES = "method_addresses"

# Record fields holding offsets into the string table
STRING_FIELDS: Dict[str, Tuple[str, ...]] = {
    TYPE_DEFINITIONS: ("name_index", "namespace_index"),
    METHODS: ("name_index",),
    PARAMETERS: ("name_index",),
    FIELDS: ("name_index",),
    PROPERTIES: ("name_index",),
    GENERIC_PARAMETERS: ("name_index",),
    IMAGES: ("name_index",),
}


def _record(name: str, fields: FieldList) -> Type[ctypes.Structure]:
    return type(name, (ctypes.LittleEndianStructure,), {"_pack_": 1, "_fields_": fields})


def _index_record(name: str) -> Type[ctypes.Structure]:
    return _record(name, [("value", i32)])


def _type_definition_fields(version: float) -> FieldList:
    fields: FieldList = [
        ("name_index", i32),
        ("namespace_index", i32),
    ]
    if version < 24.1:
        fields.append(("custom_attribute_index", i32))
    fields += [
        ("byval_type_index", i32),
        ("declaring_type_index", i32),
        ("parent_index", i32),
        ("element_type_index", i32),
    ]
    if version < 24.2:
        fields += [("rgctx_start_index", i32), ("rgctx_count", i32)]
    fields += [
        ("generic_container_index", i32),
        ("flags", u32),
        ("field_start", i32),
        ("method_start", i32),
        ("event_start", i32),
        ("property_start", i32),
        ("nested_types_start", i32),
        ("interfaces_start", i32),
        ("vtable_start", i32),
        ("interface_offsets_start", i32),
        ("method_count", u16),
        ("property_count", u16),
        ("field_count", u16),
        ("event_count", u16),
        ("nested_type_count", u16),
        ("vtable_count", u16),
        ("interfaces_count", u16),
        ("interface_offsets_count", u16),
        ("bitfield", u32),
        ("token", u32),
    ]
    return fields


def _method_fields(version: float) -> FieldList:
    fields: FieldList = [
        ("name_index", i32),
        ("declaring_type", i32),
        ("return_type", i32),
        ("parameter_start", i32),
    ]
    if version < 24.1:
        fields.append(("custom_attribute_index", i32))
    fields.append(("generic_container_index", i32))
    if version < 24.2:
        fields += [
            ("method_index", i32),
            ("invoker_index", i32),
            ("delegate_wrapper_index", i32),
            ("rgctx_start_index", i32),
            ("rgctx_count", i32),
        ]
    fields.append(("token", u32))
    if version >= 31:
        fields.append(("return_parameter_token", u32))
    fields += [
        ("flags", u16),
        ("iflags", u16),
        ("slot", u16),
        ("parameter_count", u16),
    ]
    return fields


def _image_fields(version: float) -> FieldList:
    fields: FieldList = [
        ("name_index", i32),
        ("assembly_index", i32),
        ("type_start", i32),
        ("type_count", u32),
        ("exported_type_start", i32),
        ("exported_type_count", u32),
        ("entry_point_index", i32),
        ("token", u32),
    ]
    if version >= 24.1:
        fields += [("custom_attribute_start", i32), ("custom_attribute_count", u32)]
    return fields


def _property_fields(version: float) -> FieldList:
    fields: FieldList = [
        ("name_index", i32),
        ("get", i32),
        ("set", i32),
        ("attrs", u32),
    ]
    if version < 24.1:
        fields.append(("custom_attribute_index", i32))
    fields.append(("token", u32))
    return fields


def _header_tables(version: float) -> Tuple[str, ...]:
    tables = [
        STRING_LITERALS,
        STRING_LITERAL_DATA,
        STRINGS,
        PROPERTIES,
        METHODS,
        FIELD_DEFAULT_VALUES,
        DEFAULT_VALUE_DATA,
        PARAMETERS,
        FIELDS,
        GENERIC_PARAMETERS,
        GENERIC_PARAMETER_CONSTRAINTS,
        GENERIC_CONTAINERS,
        NESTED_TYPES,
        INTERFACES,
        TYPE_DEFINITIONS,
    ]
    if version < 24.2:
        tables.append(RGCTX_ENTRIES)
    tables += [
        IMAGES,
        TYPE_REFERENCES,
        GENERIC_CLASSES,
        GENERIC_INSTS,
        GENERIC_ARGUMENTS,
        METHOD_SPECS,
        METHOD_ADDRESSES,
    ]
    if version >= 29:
        tables += [ATTRIBUTE_DATA, ATTRIBUTE_DATA_RANGES]
    return tuple(tables)


def _code_registration_fields(version: float) -> Tuple[str, ...]:
    fields = [
        "reverse_pinvoke_wrapper_count",
        "reverse_pinvoke_wrappers",
        "generic_method_pointers_count",
        "generic_method_pointers",
        "invoker_pointers_count",
        "invoker_pointers",
    ]
    if version < 27:
        fields += ["custom_attribute_count", "custom_attribute_generators"]
    if version >= 24.2:
        if version >= 29:
            fields += [
                "unresolved_virtual_call_count",
                "unresolved_virtual_call_pointers",
                "unresolved_instance_call_pointers",
                "unresolved_static_call_pointers",
            ]
        else:
            fields += [
                "unresolved_virtual_call_count",
                "unresolved_virtual_call_pointers",
            ]
        fields += [
            "interop_data_count",
            "interop_data",
            "windows_runtime_factory_count",
            "windows_runtime_factory_table",
        ]
    fields += ["code_gen_modules_count", "code_gen_modules"]
    return tuple(fields)


def _code_gen_module_fields(version: float) -> Tuple[str, ...]:
    fields = ["module_name", "method_pointer_count", "method_pointers"]
    if version >= 31:
        fields += ["adjustor_thunk_count", "adjustor_thunks"]
    fields += [
        "invoker_indices",
        "reverse_pinvoke_wrapper_count",
        "reverse_pinvoke_wrapper_indices",
        "rgctx_ranges_count",
        "rgctx_ranges",
        "rgctxs_count",
        "rgctxs",
        "debugger_metadata",
    ]
    if version >= 27:
        if version < 29:
            fields.append("custom_attribute_cache_generator")
        fields += [
            "module_initializer",
            "static_constructor_type_indices",
            "metadata_registration",
            "code_registration",
        ]
    return tuple(fields)


def _metadata_registration_fields(version: float) -> Tuple[str, ...]:
    fields = [
        "generic_method_table_count",
        "generic_method_table",
        "field_offsets_count",
        "field_offsets",
        "type_definitions_sizes_count",
        "type_definitions_sizes",
    ]
    if version < 27:
        fields += ["metadata_usages_count", "metadata_usages"]
    return tuple(fields)


def _generic_method_entry_fields(version: float) -> FieldList:
    fields: FieldList = [
        ("generic_method_index", i32),
        ("method_index", i32),
        ("invoker_index", i32),
    ]
    if version >= 27:
        fields.append(("adjustor_thunk_index", i32))
    return fields


@dataclass
class MetadataLayout:
    """Everything that differs between metadata versions."""

    version: float
    header_tables: Tuple[str, ...]
    records: Dict[str, Type[ctypes.Structure]] = field(repr=False)

    code_registration_fields: Tuple[str, ...] = field(repr=False, default=())
    code_gen_module_fields: Tuple[str, ...] = field(repr=False, default=())
    metadata_registration_fields: Tuple[str, ...] = field(repr=False, default=())
    generic_method_entry: Optional[Type[ctypes.Structure]] = field(
        repr=False, default=None
    )

    @property
    def major(self) -> int:
        return int(self.version)

    @property
    def header_size(self) -> int:
        return 8 + 8 * len(self.header_tables)

    def is_blob(self, table: str) -> bool:
        return table not in self.records

    def record_size(self, table: str) -> int:
        return ctypes.sizeof(self.records[table])


def build_layout(version: float) -> MetadataLayout:
    tag = str(version).replace(".", "_")

    def record(table: str, fields: FieldList) -> Type[ctypes.Structure]:
        return _record(f"{table}_v{tag}", fields)

    parameter_fields: FieldList = [("name_index", i32), ("token", u32)]
    field_fields: FieldList = [("name_index", i32), ("type_index", i32)]
    if version < 24.1:
        parameter_fields.append(("custom_attribute_index", i32))
        field_fields.append(("custom_attribute_index", i32))
    parameter_fields.append(("type_index", i32))
    field_fields.append(("token", u32))

    records = {
        STRING_LITERALS: record(
            STRING_LITERALS, [("length", u32), ("data_index", i32)]
        ),
        PROPERTIES: record(PROPERTIES, _property_fields(version)),
        METHODS: record(METHODS, _method_fields(version)),
        FIELD_DEFAULT_VALUES: record(
            FIELD_DEFAULT_VALUES,
            [("field_index", i32), ("type_index", i32), ("data_index", i32)],
        ),
        PARAMETERS: record(PARAMETERS, parameter_fields),
        FIELDS: record(FIELDS, field_fields),
        GENERIC_PARAMETERS: record(
            GENERIC_PARAMETERS,
            [
                ("owner_index", i32),
                ("name_index", i32),
                ("constraints_start", i16),
                ("constraints_count", i16),
                ("num", u16),
                ("flags", u16),
            ],
        ),
        GENERIC_PARAMETER_CONSTRAINTS: _index_record(
            f"{GENERIC_PARAMETER_CONSTRAINTS}_v{tag}"
        ),
        GENERIC_CONTAINERS: record(
            GENERIC_CONTAINERS,
            [
                ("owner_index", i32),
                ("type_argc", i32),
                ("is_method", i32),
                ("generic_parameter_start", i32),
            ],
        ),
        NESTED_TYPES: _index_record(f"{NESTED_TYPES}_v{tag}"),
        INTERFACES: _index_record(f"{INTERFACES}_v{tag}"),
        TYPE_DEFINITIONS: record(TYPE_DEFINITIONS, _type_definition_fields(version)),
        IMAGES: record(IMAGES, _image_fields(version)),
        # `data` is selected by `kind`: a type definition, a generic class, a
        # generic parameter or the element type reference. `attrs` holds the
        # attributes of the member using the reference, bit 0 of `flags` is
        # byref and bits 2-7 hold the rank of multi-dimensional arrays.
        TYPE_REFERENCES: record(
            TYPE_REFERENCES,
            [("data", i32), ("attrs", u16), ("kind", u8), ("flags", u8)],
        ),
        GENERIC_CLASSES: record(
            GENERIC_CLASSES,
            [("type_definition_index", i32), ("class_inst_index", i32)],
        ),
        GENERIC_INSTS: record(GENERIC_INSTS, [("argc", u32), ("arg_start", i32)]),
        GENERIC_ARGUMENTS: _index_record(f"{GENERIC_ARGUMENTS}_v{tag}"),
        METHOD_SPECS: record(
            METHOD_SPECS,
            [
                ("method_definition_index", i32),
                ("class_inst_index", i32),
                ("method_inst_index", i32),
            ],
        ),
        METHOD_ADDRESSES: record(METHOD_ADDRESSES, [("address", u64)]),
    }

    return MetadataLayout(
        version=version,
        header_tables=_header_tables(version),
        records=records,
        code_registration_fields=_code_registration_fields(version),
        code_gen_module_fields=_code_gen_module_fields(version),
        metadata_registration_fields=_metadata_registration_fields(version),
        generic_method_entry=record(
            "generic_method_entry", _generic_method_entry_fields(version)
        ),
    )


LAYOUTS: Dict[float, MetadataLayout] = {
    version: build_layout(version) for version in SUPPORTED_VERSIONS
}


def get_layout(version: float) -> Optional[MetadataLayout]:
    return LAYOUTS.get(version)


def candidate_layouts(major: int) -> Sequence[MetadataLayout]:
    """Layouts sharing a major version, lowest first."""
    return [layout for version, layout in sorted(LAYOUTS.items()) if int(version) == major]
