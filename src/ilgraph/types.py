from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

from . import const


@dataclass
class ModuleDefinition:
    index: int
    name: str
    type_start: int
    type_count: int
    token: int = 0

    @property
    def type_indices(self) -> range:
        return range(self.type_start, self.type_start + self.type_count)


@dataclass
class TypeDefinition:
    index: int
    name: str
    namespace: str

    module: Optional[int]
    base: Optional[int]
    enclosing: Optional[int]

    fields: Tuple[int, ...] = ()
    methods: Tuple[int, ...] = ()
    properties: Tuple[int, ...] = ()
    nested_types: Tuple[int, ...] = ()
    interfaces: Tuple[int, ...] = ()
    generic_parameters: Tuple[int, ...] = ()

    flags: int = 0
    bitfield: int = 0
    token: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    @property
    def is_interface(self) -> bool:
        return bool(self.flags & const.TYPE_ATTRIBUTE_INTERFACE)

    @property
    def is_abstract(self) -> bool:
        return bool(self.flags & const.TYPE_ATTRIBUTE_ABSTRACT)

    @property
    def is_sealed(self) -> bool:
        return bool(self.flags & const.TYPE_ATTRIBUTE_SEALED)

    @property
    def is_value_type(self) -> bool:
        return bool(self.bitfield & const.TYPE_BIT_VALUETYPE)

    @property
    def is_enum(self) -> bool:
        return bool(self.bitfield & const.TYPE_BIT_ENUMTYPE)

    @property
    def visibility(self) -> str:
        return const.TYPE_VISIBILITY_NAMES[self.flags & const.TYPE_ATTRIBUTE_VISIBILITY_MASK]

    @property
    def generic_parameter_count(self) -> int:
        return len(self.generic_parameters)

    @property
    def is_generic(self) -> bool:
        return bool(self.generic_parameters)


@dataclass
class Parameter:
    name: str
    type: int
    token: int = 0


@dataclass
class MethodDefinition:
    index: int
    name: str
    declaring_type: int
    return_type: int
    parameters: Tuple[Parameter, ...] = ()
    generic_parameters: Tuple[int, ...] = ()

    flags: int = 0
    iflags: int = 0
    slot: int = 0
    token: int = 0

    # Attached by the address resolver
    address: Optional[int] = None

    @property
    def rid(self) -> int:
        """Row number of the method token."""
        return self.token & 0x00FFFFFF

    @property
    def is_static(self) -> bool:
        return bool(self.flags & const.METHOD_ATTRIBUTE_STATIC)

    @property
    def is_virtual(self) -> bool:
        return bool(self.flags & const.METHOD_ATTRIBUTE_VIRTUAL)

    @property
    def is_abstract(self) -> bool:
        return bool(self.flags & const.METHOD_ATTRIBUTE_ABSTRACT)

    @property
    def generic_parameter_count(self) -> int:
        return len(self.generic_parameters)


@dataclass
class FieldDefinition:
    index: int
    name: str
    declaring_type: int
    type: int

    attrs: int = 0
    token: int = 0

    has_default: bool = False
    default_value: Any = None

    # Attached by the address resolver
    offset: Optional[int] = None

    @property
    def is_static(self) -> bool:
        return bool(self.attrs & const.FIELD_ATTRIBUTE_STATIC)

    @property
    def is_literal(self) -> bool:
        return bool(self.attrs & const.FIELD_ATTRIBUTE_LITERAL)


@dataclass
class PropertyDefinition:
    index: int
    name: str
    declaring_type: int
    getter: Optional[int]
    setter: Optional[int]
    attrs: int = 0
    token: int = 0


@dataclass
class GenericParameter:
    index: int
    name: str
    owner: int
    is_method_owner: bool
    position: int
    flags: int = 0
    constraints: Tuple[int, ...] = ()


@dataclass(frozen=True)
class TypeReference:
    """Interned reference to a type.

    `data` is selected by `kind`: a type definition index for classes and
    value types, a generic parameter index for type variables, a generic
    instantiation index for generic instances and the id of the element type
    reference for arrays and pointers. Unused for primitives.
    """

    kind: int
    data: int = -1
    byref: bool = False
    rank: int = 0

    @property
    def is_primitive(self) -> bool:
        return self.kind in const.PRIMITIVE_TYPE_NAMES


@dataclass
class GenericInstantiation:
    """A generic type or method bound to concrete type arguments.

    For a method instantiation `definition` is the method index,
    `class_arguments` the arguments of its declaring type and `arguments` the
    method's own arguments.
    """

    index: int
    definition: int
    arguments: Tuple[int, ...]
    is_method: bool = False
    class_arguments: Tuple[int, ...] = ()

    # Attached by the address resolver for method instantiations
    address: Optional[int] = field(default=None, compare=False)
