# Metadata blob sanity value
METADATA_SANITY = 0xFAB11BAF

# Supported metadata version tags
SUPPORTED_VERSIONS = (24.0, 24.1, 24.2, 27.0, 29.0, 31.0)

# Sentinel values of the metadata method address table
ADDRESS_SENTINELS = (0, 0xFFFFFFFFFFFFFFFF)

# Null index in metadata records
INVALID_INDEX = -1

# Container formats
FORMAT_ELF = "elf"
FORMAT_PE = "pe"
FORMAT_MACHO = "macho"

# Machine names
MACHINE_X86 = "x86"
MACHINE_X86_64 = "x86_64"
MACHINE_ARM = "arm"
MACHINE_ARM64 = "arm64"
MACHINE_UNKNOWN = "unknown"

# Exported registration symbols
CODE_REGISTRATION_SYMBOL = "g_CodeRegistration"
METADATA_REGISTRATION_SYMBOL = "g_MetadataRegistration"

# Longest C string read from an image
MAX_C_STRING_LENGTH = 1024

# Deepest nesting of generic arguments in a type reference
MAX_GENERIC_NESTING = 100

# Default size of worker pools
DEFAULT_MAX_WORKERS = 4

# Type attributes
TYPE_ATTRIBUTE_VISIBILITY_MASK = 0x00000007
TYPE_ATTRIBUTE_INTERFACE = 0x00000020
TYPE_ATTRIBUTE_ABSTRACT = 0x00000080
TYPE_ATTRIBUTE_SEALED = 0x00000100

TYPE_VISIBILITY_NAMES = {
    0x0: "internal",
    0x1: "public",
    0x2: "public",
    0x3: "private",
    0x4: "protected",
    0x5: "internal",
    0x6: "private protected",
    0x7: "protected internal",
}

# Bits of the type definition bitfield
TYPE_BIT_VALUETYPE = 0x1
TYPE_BIT_ENUMTYPE = 0x2

# Method attributes
METHOD_ATTRIBUTE_STATIC = 0x0010
METHOD_ATTRIBUTE_VIRTUAL = 0x0040
METHOD_ATTRIBUTE_ABSTRACT = 0x0400

# Field attributes
FIELD_ATTRIBUTE_STATIC = 0x0010
FIELD_ATTRIBUTE_LITERAL = 0x0040

# Element types of type references
TYPE_END = 0x00
TYPE_VOID = 0x01
TYPE_BOOLEAN = 0x02
TYPE_CHAR = 0x03
TYPE_I1 = 0x04
TYPE_U1 = 0x05
TYPE_I2 = 0x06
TYPE_U2 = 0x07
TYPE_I4 = 0x08
TYPE_U4 = 0x09
TYPE_I8 = 0x0A
TYPE_U8 = 0x0B
TYPE_R4 = 0x0C
TYPE_R8 = 0x0D
TYPE_STRING = 0x0E
TYPE_PTR = 0x0F
TYPE_VALUETYPE = 0x11
TYPE_CLASS = 0x12
TYPE_VAR = 0x13
TYPE_ARRAY = 0x14
TYPE_GENERICINST = 0x15
TYPE_TYPEDBYREF = 0x16
TYPE_I = 0x18
TYPE_U = 0x19
TYPE_OBJECT = 0x1C
TYPE_SZARRAY = 0x1D
TYPE_MVAR = 0x1E

PRIMITIVE_TYPE_NAMES = {
    TYPE_VOID: "void",
    TYPE_BOOLEAN: "bool",
    TYPE_CHAR: "char",
    TYPE_I1: "sbyte",
    TYPE_U1: "byte",
    TYPE_I2: "short",
    TYPE_U2: "ushort",
    TYPE_I4: "int",
    TYPE_U4: "uint",
    TYPE_I8: "long",
    TYPE_U8: "ulong",
    TYPE_R4: "float",
    TYPE_R8: "double",
    TYPE_STRING: "string",
    TYPE_TYPEDBYREF: "TypedReference",
    TYPE_I: "IntPtr",
    TYPE_U: "UIntPtr",
    TYPE_OBJECT: "object",
}
