import logging
import os
from bisect import bisect_right
from typing import List, Optional, Tuple, Union

from .graph import TypeGraph, TypeGraphBuilder
from .loader import BinaryImage, load_image
from .log import get_logger
from .metadata import Metadata, MetadataReader
from .options import ResolverOptions
from .registration import RegistrationLocator, Registrations
from .resolver import AddressResolver, ResolutionReport
from .translator import AddressTranslator
from .types import MethodDefinition, TypeDefinition

PathType = Union[str, os.PathLike]


class Session:
    """The resolved model of one image and metadata pair.

    Query methods return None for unresolved entries and for indices outside
    of their table.
    """

    def __init__(
        self,
        image: BinaryImage,
        translator: AddressTranslator,
        metadata: Metadata,
        graph: TypeGraph,
        registrations: Registrations,
        resolver: AddressResolver,
        report: ResolutionReport,
        logger: logging.Logger,
    ):
        self.image = image
        self.translator = translator
        self.metadata = metadata
        self.graph = graph
        self.registrations = registrations
        self.report = report
        self.logger = logger

        self._resolver = resolver
        self._address_index: Optional[Tuple[List[int], List[int]]] = None

    def resolve(self) -> ResolutionReport:
        """Run address resolution again."""
        self.report = self._resolver.resolve()
        self._address_index = None
        return self.report

    def resolve_method_address(self, method_index: int) -> Optional[int]:
        if not 0 <= method_index < len(self.graph.methods):
            return None
        return self.graph.methods[method_index].address

    def resolve_field_offset(self, field_index: int) -> Optional[int]:
        if not 0 <= field_index < len(self.graph.fields):
            return None
        return self.graph.fields[field_index].offset

    def resolve_generic_method_address(self, instantiation_index: int) -> Optional[int]:
        if not 0 <= instantiation_index < len(self.graph.instantiations):
            return None
        return self.graph.instantiations[instantiation_index].address

    def lookup_type_by_name(self, namespace: str, name: str) -> Optional[TypeDefinition]:
        return self.graph.lookup_type_by_name(namespace, name)

    def method_at_address(self, address: int) -> Optional[MethodDefinition]:
        """Find the method with the closest start address at or below
        `address` in the same segment."""
        if self._address_index is None:
            resolved = sorted(
                (method.address, method.index)
                for method in self.graph.methods
                if method.address is not None
            )
            self._address_index = (
                [item[0] for item in resolved],
                [item[1] for item in resolved],
            )

        addresses, indices = self._address_index

        pos = bisect_right(addresses, address) - 1
        if pos < 0:
            return None

        segment = self.translator.segment_for(address)
        if segment is None or not segment.contains(addresses[pos]):
            return None

        return self.graph.methods[indices[pos]]

    def type_name(self, ref: int) -> Optional[str]:
        if not 0 <= ref < len(self.graph.type_references):
            return None
        return self.graph.type_name(ref)


class ResolutionEngine:
    """Build the type graph of an image and metadata pair and resolve the
    native addresses of its methods.

    Structural and graph errors abort `open`, resolution issues are
    collected in the report of the session.

    Args:
        options: Options of the sessions.
    """

    def __init__(self, options: Optional[ResolverOptions] = None):
        self.options = options or ResolverOptions()
        self.logger = self.options.logger or get_logger(__name__)

    def open(self, image_data: bytes, metadata_data: bytes) -> Session:
        """Analyze an image and a metadata blob."""
        options = self.options

        image = load_image(bytes(image_data), dump_base=options.dump_base, logger=self.logger)
        translator = AddressTranslator(image.segments)

        self.logger.info(f"Loaded {image!r}.")

        metadata = MetadataReader(
            bytes(metadata_data),
            version_override=options.version_override,
            max_workers=options.max_workers,
            logger=self.logger,
        ).read()

        graph = TypeGraphBuilder(metadata, logger=self.logger).build()

        registrations = RegistrationLocator(
            image,
            translator,
            metadata.layout,
            graph,
            code_registration=options.code_registration,
            metadata_registration=options.metadata_registration,
            symbol_search=options.symbol_search,
            logger=self.logger,
        ).locate()

        resolver = AddressResolver(
            graph,
            image,
            translator,
            registrations,
            max_workers=options.max_workers,
            logger=self.logger,
        )
        report = resolver.resolve()

        return Session(
            image=image,
            translator=translator,
            metadata=metadata,
            graph=graph,
            registrations=registrations,
            resolver=resolver,
            report=report,
            logger=self.logger,
        )

    def open_files(self, image_path: PathType, metadata_path: PathType) -> Session:
        """Read an image and a metadata file and analyze them."""
        with open(image_path, "rb") as f:
            image_data = f.read()

        with open(metadata_path, "rb") as f:
            metadata_data = f.read()

        self.logger.info(f"Open {image_path} with {metadata_path}.")

        return self.open(image_data, metadata_data)
