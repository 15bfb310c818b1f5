from .header import MetadataHeader, parse_header
from .layouts import LAYOUTS, MetadataLayout, get_layout
from .reader import Metadata, MetadataReader
from .strings import StringTable

__all__ = [
    "LAYOUTS",
    "Metadata",
    "MetadataHeader",
    "MetadataLayout",
    "MetadataReader",
    "StringTable",
    "get_layout",
    "parse_header",
]
