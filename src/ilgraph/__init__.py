from .engine import ResolutionEngine, Session
from .graph import TypeGraph, TypeGraphBuilder
from .loader import BinaryImage, Segment, load_image
from .metadata import Metadata, MetadataReader
from .options import ResolverOptions
from .resolver import AddressResolver, ResolutionReport
from .translator import AddressTranslator

__all__ = [
    "AddressResolver",
    "AddressTranslator",
    "BinaryImage",
    "Metadata",
    "MetadataReader",
    "ResolutionEngine",
    "ResolutionReport",
    "ResolverOptions",
    "Segment",
    "Session",
    "TypeGraph",
    "TypeGraphBuilder",
    "load_image",
]
